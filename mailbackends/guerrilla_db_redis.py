"""A monolithic processor: message body to redis, metadata to SQL in batched inserts."""

from __future__ import annotations

import dataclasses
import email.utils
import io
import itertools
import logging
import queue
import random
import threading
import time
import zlib
from datetime import datetime
from typing import Any, Optional

from mailbackends.core import Decorator, Processor, Result, SelectTask, svc
from mailbackends.redis_store import RedisProcessor
from mailbackends.sql_store import SQLProcessor, SQLProcessorConfig
from mailbackends.util import md5_hex, trim_to_limit

log = logging.getLogger("mailbackends")

# How many rows to batch into one insert statement.
BATCH_MAX = 50
# Seconds without new rows before a partial batch is inserted.
BATCH_TIMEOUT = 3.0
# How often the batcher checks its stop signal, in seconds.
_POLL_INTERVAL = 0.05
_RETRY_ATTEMPTS = 3

_batcher_ids = itertools.count(1)


def _as_bytes(data: Any) -> bytes:
    if data is None:
        return b""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    if isinstance(data, str):
        return data.encode("utf-8")
    if isinstance(data, io.BytesIO):
        return data.getvalue()
    return bytes(data)


class CompressedData:
    """Extra headers plus message data; bytes() yields them zlib-compressed together."""

    def __init__(self) -> None:
        self.extra_headers: bytes = b""
        self.data: Any = None

    def set(self, extra_headers: bytes, data: Any) -> None:
        """Set the extra headers and the data to compress."""
        self.extra_headers = extra_headers
        self.data = data

    def __bytes__(self) -> bytes:
        if self.data is None:
            return b""
        compressor = zlib.compressobj(1)
        out = compressor.compress(self.extra_headers)
        out += compressor.compress(_as_bytes(self.data))
        return out + compressor.flush()

    def clear(self) -> None:
        """Drop the headers and data."""
        self.extra_headers = b""
        self.data = None


@dataclasses.dataclass
class GuerrillaDBAndRedisConfig:
    number_of_workers: int = dataclasses.field(default=0, metadata={"json": "save_workers_size"})
    table: str = dataclasses.field(default="", metadata={"json": "mail_table"})
    driver: str = dataclasses.field(default="", metadata={"json": "sql_driver"})
    dsn: str = dataclasses.field(default="", metadata={"json": "sql_dsn"})
    redis_expire_seconds: int = dataclasses.field(
        default=0, metadata={"json": "redis_expire_seconds"}
    )
    redis_interface: str = dataclasses.field(default="", metadata={"json": "redis_interface"})
    primary_host: str = dataclasses.field(default="", metadata={"json": "primary_mail_host"})
    batch_timeout: int = dataclasses.field(
        default=0, metadata={"json": "redis_sql_batch_timeout,omitempty"}
    )


_INSERT_HEAD = (
    "INSERT INTO {table}"
    "(`date`, `to`, `from`, `subject`, `body`, `charset`, `mail`, `spam_score`, "
    "`hash`, `content_type`, `recipient`, `has_attach`, `ip_addr`, `return_path`, `is_tls`)"
    " values "
)
_INSERT_VALUES = "(NOW(), ?, ?, ?, ? , 'UTF-8' , ?, 0, ?, '', ?, 0, ?, ?, ?)"


class GuerrillaDBAndRedisBackend:
    """Connects to SQL and batches rows fed to it into multi-row inserts."""

    retry_delay = 1.0

    def __init__(self, config: Optional[GuerrillaDBAndRedisConfig] = None) -> None:
        self.config = config
        self.batcher_stoppers: list[threading.Event] = []
        self.batcher_threads: list[threading.Thread] = []
        self._cache: dict[int, str] = {}
        self._lock = threading.Lock()

    def _require_config(self) -> GuerrillaDBAndRedisConfig:
        if self.config is None:
            raise RuntimeError("guerrillaredisdb processor has no config")
        return self.config

    def prepare_insert_query(self, rows: int, db: Any = None) -> str:
        """Return the insert statement for rows rows, cached per row count."""
        if rows < 1:
            raise ValueError("rows argument cannot be 0")
        if rows > BATCH_MAX:
            raise ValueError(f"rows argument cannot exceed {BATCH_MAX}")
        cached = self._cache.get(rows)
        if cached is not None:
            return cached
        config = self._require_config()
        statement = _INSERT_HEAD.format(table=config.table) + ",".join([_INSERT_VALUES] * rows)
        self._cache[rows] = statement
        return statement

    def do_query(self, rows: int, db: Any, values: list) -> None:
        """Insert the values as rows rows and commit; errors are logged and raised."""
        statement = self.prepare_insert_query(rows, db)
        with self._lock:
            try:
                cursor = db.cursor()
                cursor.execute(statement, values)
                cursor.close()
                db.commit()
            except Exception as err:
                size = sum(len(v) for v in values if isinstance(v, str))
                log.error("There was a problem the insert (size:%d): %s", size, err)
                raise

    def _insert_with_retry(self, rows: int, db: Any, values: list) -> None:
        try:
            self.do_query(rows, db, values)
            return
        except Exception:
            pass
        for _ in range(_RETRY_ATTEMPTS):
            log.info("retrying query rows[%d]", rows)
            time.sleep(self.retry_delay)
            try:
                self.do_query(rows, db, values)
                return
            except Exception:
                continue
        log.error("giving up on inserting %d rows", rows)

    def insert_query_batcher(
        self, feeder: queue.Queue, db: Any, batcher_id: int, stop: threading.Event
    ) -> bool:
        """Batch rows from feeder into inserts until stopped.

        A batch is inserted when it reaches BATCH_MAX rows or when no row arrives
        within the batch timeout. Returns False once stopped (after inserting what
        remains), True if an unexpected error ended the loop and it may be resumed.
        """
        config = self._require_config()
        timeout = float(config.batch_timeout) if config.batch_timeout > 0 else BATCH_TIMEOUT
        values: list = []
        count = 0

        def add(row: list) -> None:
            nonlocal values, count
            values.extend(row)
            count += 1
            log.debug("new feeder row: %s cols: %d count: %d worker %d",
                      row, len(row), count, batcher_id)
            if count >= BATCH_MAX:
                flush()

        def flush() -> None:
            nonlocal values, count
            if count > 0:
                self._insert_with_retry(count, db, values)
            values = []
            count = 0

        try:
            deadline = time.monotonic() + timeout
            while True:
                if stop.is_set():
                    log.info("MySQL query batcher stopped (#%d)", batcher_id)
                    while True:
                        try:
                            add(feeder.get_nowait())
                        except queue.Empty:
                            break
                    flush()
                    return False
                wait = min(_POLL_INTERVAL, max(0.0, deadline - time.monotonic()))
                try:
                    row = feeder.get(timeout=wait)
                except queue.Empty:
                    if time.monotonic() >= deadline:
                        flush()
                        deadline = time.monotonic() + timeout
                    continue
                add(row)
                deadline = time.monotonic() + timeout
        except Exception:
            log.exception("insertQueryBatcher caught an error")
            return True

    def sql_connect(self) -> Any:
        """Open the database and check that the mail table can be selected from."""
        config = self._require_config()
        sql_config = SQLProcessorConfig(table=config.table, driver=config.driver, dsn=config.dsn)
        try:
            return SQLProcessor(sql_config).connect()
        except Exception as err:
            log.error("cannot open database or select table: %s", err)
            raise


def _rfc1123z_now() -> str:
    return email.utils.format_datetime(datetime.now().astimezone())


def guerrilla_db_redis() -> Decorator:
    """Save the compressed message to redis (or SQL as fallback) and its metadata to SQL."""
    backend = GuerrillaDBAndRedisBackend()
    redis_client = RedisProcessor()
    feeders: list[queue.Queue] = []
    db: Any = None

    def init(backend_config: dict) -> None:
        nonlocal db
        backend.config = svc.extract_config(backend_config, GuerrillaDBAndRedisConfig)
        db = backend.sql_connect()
        batcher_id = next(_batcher_ids)
        stop = threading.Event()
        feeder: queue.Queue = queue.Queue()
        connection = db

        def run() -> None:
            while backend.insert_query_batcher(feeder, connection, batcher_id, stop):
                log.debug("resuming insertQueryBatcher")
            log.debug("insertQueryBatcher exited (#%d)", batcher_id)

        thread = threading.Thread(target=run, name=f"query-batcher-{batcher_id}", daemon=True)
        thread.start()
        backend.batcher_stoppers.append(stop)
        backend.batcher_threads.append(thread)
        feeders.append(feeder)

    def shutdown() -> None:
        for stop in backend.batcher_stoppers:
            stop.set()
        for thread in backend.batcher_threads:
            thread.join()
        if db is not None:
            try:
                db.close()
                log.info("closed mysql")
            except Exception as err:
                log.error("close mysql failed: %s", err)
        if redis_client.conn is not None:
            try:
                redis_client.conn.close()
                log.info("closed redis")
            except Exception as err:
                log.error("close redis failed: %s", err)

    svc.add_initializer(init)
    svc.add_shutdowner(shutdown)

    def save(envelope: Any) -> None:
        config = backend._require_config()
        if not feeders:
            raise RuntimeError("guerrillaredisdb processor used before initialization")
        log.debug("Got mail from chan, %s", envelope.remote_ip)
        first = envelope.rcpt_to[0]
        to = trim_to_limit(first.user.strip() + "@" + config.primary_host, 255)
        envelope.helo = trim_to_limit(envelope.helo, 255)
        first.host = trim_to_limit(first.host, 255)
        ts = str(time.time_ns())
        try:
            envelope.parse_headers()
        except Exception as err:
            log.error("failed to parse headers: %s", err)
        mail_from = str(envelope.mail_from)
        hash_id = md5_hex(to, mail_from, envelope.subject, ts)
        envelope.queued_id = hash_id

        protocol = "SMTP"
        if envelope.esmtp:
            protocol = "E" + protocol
        if envelope.tls:
            protocol += "S"
        add_head = (
            f"Delivered-To: {to}\r\n"
            f"Received: from {envelope.remote_ip} ([{envelope.remote_ip}])\r\n"
            f"\tby {first.host} with {protocol} id {hash_id}@{first.host};\r\n"
            f"\t{_rfc1123z_now()}\r\n"
        )
        data = CompressedData()
        data.set(add_head.encode("utf-8"), envelope.data)
        body = "gzencode"
        try:
            redis_client.connect(config.redis_interface)
        except Exception as err:
            log.warning("Error while connecting redis: %s", err)
        else:
            try:
                redis_client.conn.do("SETEX", hash_id, config.redis_expire_seconds, bytes(data))
            except Exception as err:
                log.warning("Error while SETEX to redis: %s", err)
            else:
                body = "redis"
                data.clear()

        row = [
            trim_to_limit(to, 255),
            trim_to_limit(mail_from, 255),
            trim_to_limit(envelope.subject, 255),
            body,
            bytes(data),
            hash_id,
            trim_to_limit(to, 255),
            envelope.remote_ip,
            trim_to_limit(mail_from, 255),
            envelope.tls,
        ]
        random.choice(feeders).put(row)

    def wrap(next_processor: Processor) -> Processor:
        def process(envelope: Any, task: SelectTask) -> Result:
            if task == SelectTask.SAVE_MAIL:
                save(envelope)
            return next_processor(envelope, task)

        return process

    return wrap


svc.add_processor("guerrillaredisdb", guerrilla_db_redis)