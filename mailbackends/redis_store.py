"""Redis connection handling and the redis processor."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Optional

from mailbackends.core import (
    Decorator,
    ProcessingError,
    Processor,
    Result,
    SelectTask,
    StorageError,
    svc,
)

log = logging.getLogger("mailbackends")


class RedisMockConn:
    """A connection that only logs the commands it is given."""

    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def do(self, command: str, *args: Any) -> Any:
        log.info("redis mock driver command: %s", command)
        return None


class RedisPyConn:
    """A connection backed by a redis-py client."""

    def __init__(self, client: Any) -> None:
        self.client = client

    def close(self) -> None:
        self.client.close()

    def do(self, command: str, *args: Any) -> Any:
        return self.client.execute_command(command, *args)


Dialer = Callable[[str, str], Any]


def _mock_dial(network: str, address: str) -> RedisMockConn:
    return RedisMockConn()


_dialer_state: dict[str, Dialer] = {"dialer": _mock_dial}


def dial(network: str, address: str) -> Any:
    """Open a connection using the current dialer."""
    return _dialer_state["dialer"](network, address)


def set_dialer(dialer: Dialer) -> Dialer:
    """Replace the dialer used by dial(); return the previous one."""
    previous = _dialer_state["dialer"]
    _dialer_state["dialer"] = dialer
    return previous


def _redis_py_dial(network: str, address: str) -> RedisPyConn:
    import redis

    if network == "unix":
        return RedisPyConn(redis.Redis(unix_socket_path=address))
    if network != "tcp":
        raise ValueError(f"unsupported network: {network}")
    host, sep, port = address.rpartition(":")
    if not sep:
        host, port = address, "6379"
    return RedisPyConn(redis.Redis(host=host or "localhost", port=int(port)))


def use_redis_py() -> Dialer:
    """Make dial() open real connections with redis-py; return the previous dialer."""
    return set_dialer(_redis_py_dial)


@dataclasses.dataclass
class RedisProcessorConfig:
    redis_expire_seconds: int = dataclasses.field(
        default=0, metadata={"json": "redis_expire_seconds"}
    )
    redis_interface: str = dataclasses.field(
        default="", metadata={"json": "redis_interface"}
    )


class RedisProcessor:
    """A lazily connected redis client."""

    def __init__(self) -> None:
        self.is_connected = False
        self.conn: Any = None

    def connect(self, redis_interface: str) -> None:
        """Connect if not already connected."""
        if not self.is_connected:
            self.conn = dial("tcp", redis_interface)
            self.is_connected = True


def redis_processor() -> Decorator:
    """Store the message in redis under the first hash with SETEX; needs a hasher before it."""
    config: Optional[RedisProcessorConfig] = None
    client = RedisProcessor()

    def init(backend_config: dict) -> None:
        nonlocal config
        config = svc.extract_config(backend_config, RedisProcessorConfig)
        try:
            client.connect(config.redis_interface)
        except Exception as err:
            raise ConnectionError(f"redis cannot connect, check your settings: {err}") from err

    def shutdown() -> None:
        if client.is_connected:
            client.conn.close()

    svc.add_initializer(init)
    svc.add_shutdowner(shutdown)

    def wrap(next_processor: Processor) -> Processor:
        def process(envelope: Any, task: SelectTask) -> Result:
            if task != SelectTask.SAVE_MAIL:
                return next_processor(envelope, task)
            if config is None:
                raise RuntimeError("redis processor used before initialization")
            if not envelope.hashes:
                log.error("Redis needs a Hasher() process before it")
                raise StorageError()
            hash_id = envelope.hashes[0]
            envelope.queued_id = hash_id
            data_compressor = envelope.values.get("zlib-compressor")
            payload = bytes(data_compressor) if data_compressor is not None else str(envelope)
            try:
                client.connect(config.redis_interface)
            except Exception as err:
                log.warning("Error while connecting to redis: %s", err)
                raise ProcessingError(str(err)) from err
            try:
                client.conn.do("SETEX", hash_id, config.redis_expire_seconds, payload)
            except Exception as err:
                log.warning("Error while SETEX to redis: %s", err)
                raise ProcessingError(str(err)) from err
            envelope.values["redis"] = "redis"
            return next_processor(envelope, task)

        return process

    return wrap


svc.add_processor("redis", redis_processor)