"""The backend gateway: hands envelopes to a pool of worker threads that run processor stacks."""

from __future__ import annotations

import dataclasses
import enum
import logging
import queue
import re
import threading
from typing import Any, Optional

# Imported for their side effect of registering the built-in processors.
from mailbackends import guerrilla_db_redis as _guerrilla_db_redis  # noqa: F401
from mailbackends import processors as _processors  # noqa: F401
from mailbackends import redis_store as _redis_store  # noqa: F401
from mailbackends import sql_store as _sql_store  # noqa: F401
from mailbackends.core import (
    BACKEND_RESULT_OK,
    DefaultProcessor,
    NoopProcessor,
    ProcessingError,
    Processor,
    Result,
    SelectTask,
    StorageNotAvailable,
    StorageTimeout,
    decorate,
    new_result,
    svc,
)

log = logging.getLogger("mailbackends")

# Default seconds to wait for a save, if gw_save_timeout is not configured.
SAVE_TIMEOUT = 30.0
# Default seconds to wait for a recipient validation, if gw_val_rcpt_timeout is not configured.
VALIDATE_RCPT_TIMEOUT = 5.0
# How often idle workers check their stop signal, in seconds.
_POLL_INTERVAL = 0.05

_SP = " "
_SUCCESS_MESSAGE_QUEUED = "250 2.0.0 OK: queued as"
_FAIL_BACKEND_NOT_RUNNING = "554 5.3.0 Transaction failed - backend not running"
_FAIL_BACKEND_TRANSACTION = "554 5.3.0 Error:"
_FAIL_BACKEND_TIMEOUT = "554 5.3.0 Error: transaction timeout"

_DURATION_RE = re.compile(r"[-+]?(?:(?:\d+\.?\d*|\.\d+)(?:ns|us|µs|μs|ms|s|m|h))+")
_DURATION_PART_RE = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _parse_duration(text: str) -> float:
    """Parse a duration such as "29s" or "1m30s" into seconds."""
    if text == "0":
        return 0.0
    if not _DURATION_RE.fullmatch(text):
        raise ValueError(f"time: invalid duration {text!r}")
    sign = -1.0 if text.startswith("-") else 1.0
    return sign * sum(
        float(number) * _DURATION_UNITS[unit]
        for number, unit in _DURATION_PART_RE.findall(text)
    )


class BackendState(enum.IntEnum):
    NEW = 0
    RUNNING = 1
    SHUTTERED = 2
    ERROR = 3
    INITIALIZED = 4

    def __str__(self) -> str:
        return _STATE_NAMES.get(self, str(int(self)))


_STATE_NAMES = {
    BackendState.NEW: "NewState",
    BackendState.RUNNING: "RunningState",
    BackendState.SHUTTERED: "ShutteredState",
    BackendState.ERROR: "ErrorSate",
    BackendState.INITIALIZED: "InitializedState",
}


@dataclasses.dataclass
class GatewayConfig:
    workers_size: int = dataclasses.field(
        default=0, metadata={"json": "save_workers_size,omitempty"}
    )
    save_process: str = dataclasses.field(
        default="", metadata={"json": "save_process,omitempty"}
    )
    validate_process: str = dataclasses.field(
        default="", metadata={"json": "validate_process,omitempty"}
    )
    timeout_save: str = dataclasses.field(
        default="", metadata={"json": "gw_save_timeout,omitempty"}
    )
    timeout_validate_rcpt: str = dataclasses.field(
        default="", metadata={"json": "gw_val_rcpt_timeout,omitempty"}
    )


@dataclasses.dataclass
class _Notice:
    result: Optional[Result] = None
    error: Optional[ProcessingError] = None
    queued_id: str = ""


@dataclasses.dataclass
class _WorkerMsg:
    envelope: Any
    task: SelectTask
    notify: queue.Queue = dataclasses.field(default_factory=lambda: queue.Queue(maxsize=1))


class BackendGateway:
    """Distributes envelopes to worker threads, each running its own processor stacks."""

    def __init__(self) -> None:
        self.state = BackendState.NEW
        self.config: Optional[dict] = None
        self.gw_config = GatewayConfig()
        self.conveyor: Optional[queue.Queue] = None
        self.processors: list[Processor] = []
        self.validators: list[Processor] = []
        self._stoppers: list[threading.Event] = []
        self._workers: list[threading.Thread] = []
        self._lock = threading.Lock()

    def process(self, envelope: Any) -> Result:
        """Have a worker save the envelope and return the result for the client."""
        if self.state != BackendState.RUNNING:
            return new_result(_FAIL_BACKEND_NOT_RUNNING, _SP, self.state)
        msg = _WorkerMsg(envelope, SelectTask.SAVE_MAIL)
        self.conveyor.put(msg)
        try:
            notice: _Notice = msg.notify.get(timeout=self.save_timeout())
        except queue.Empty:
            log.error("Backend has timed out while saving email")
            return new_result(_FAIL_BACKEND_TIMEOUT)
        return self._save_result(notice)

    def _save_result(self, notice: _Notice) -> Result:
        if notice.result is BACKEND_RESULT_OK and notice.queued_id:
            return new_result(_SUCCESS_MESSAGE_QUEUED, _SP, notice.queued_id)
        if notice.result is not None:
            if notice.error is not None:
                log.error("%s", notice.error)
            return notice.result
        if notice.error is not None:
            text = str(notice.error)
            head = text[:3]
            if len(head) == 3 and head.isdigit():
                return new_result(text)
            return new_result(_FAIL_BACKEND_TRANSACTION, _SP, text)
        message = "no response from backend - processor did not return a result or an error"
        log.error(message)
        return new_result(_FAIL_BACKEND_TRANSACTION, _SP, message)

    def validate_rcpt(self, envelope: Any) -> None:
        """Have a worker validate the last recipient; raise a RcptError if it is refused."""
        if self.state != BackendState.RUNNING:
            raise StorageNotAvailable()
        if isinstance(self.validators[0], NoopProcessor):
            return
        msg = _WorkerMsg(envelope, SelectTask.VALIDATE_RCPT)
        self.conveyor.put(msg)
        try:
            notice: _Notice = msg.notify.get(timeout=self.validate_rcpt_timeout())
        except queue.Empty:
            log.error("Backend has timed out while validating rcpt")
            raise StorageTimeout() from None
        if notice.error is not None:
            raise notice.error

    def shutdown(self) -> None:
        """Stop the workers and shut down all processors."""
        with self._lock:
            if self.state == BackendState.SHUTTERED:
                return
            for stop in self._stoppers:
                stop.set()
            for worker in self._workers:
                worker.join()
            svc.shutdown()
            self.state = BackendState.SHUTTERED

    def reinitialize(self) -> None:
        """Initialize again with the last good config after a shutdown."""
        if self.state != BackendState.SHUTTERED:
            raise RuntimeError("backend must be in BackendStateshuttered state to Reinitialize")
        svc.reset()
        try:
            self.initialize(self.config or {})
        except Exception as err:
            raise RuntimeError(f"error while initializing the backend: {err}") from err

    def _new_stack(self, stack_config: str) -> Processor:
        cfg = stack_config.strip().lower()
        if not cfg:
            return NoopProcessor()
        decorators = [svc.get_processor(name)() for name in reversed(cfg.split("|"))]
        return decorate(DefaultProcessor(), *decorators)

    def initialize(self, config: dict) -> None:
        """Load the config and build one save and one validate stack per worker."""
        with self._lock:
            if self.state not in (BackendState.NEW, BackendState.SHUTTERED):
                raise RuntimeError(
                    "can only Initialize in BackendStateNew or BackendStateShuttered state"
                )
            try:
                self.gw_config = svc.extract_config(config, GatewayConfig)
                size = self.workers_size()
                processors = []
                validators = []
                for _ in range(size):
                    processors.append(self._new_stack(self.gw_config.save_process))
                    validators.append(self._new_stack(self.gw_config.validate_process))
                self.processors = processors
                self.validators = validators
                svc.initialize(config)
            except Exception:
                self.state = BackendState.ERROR
                raise
            if self.conveyor is None:
                self.conveyor = queue.Queue(maxsize=size)
            self.config = config
            self.state = BackendState.INITIALIZED

    def start(self) -> None:
        """Start the worker threads; the gateway must be initialized or shuttered."""
        with self._lock:
            if self.state not in (BackendState.INITIALIZED, BackendState.SHUTTERED):
                raise RuntimeError(f"cannot start backend because it's in {self.state} state")
            self._stoppers = []
            self._workers = []
            for index in range(self.workers_size()):
                stop = threading.Event()
                worker = threading.Thread(
                    target=self._work,
                    args=(self.processors[index], self.validators[index], index + 1, stop),
                    name=f"backend-worker-{index + 1}",
                    daemon=True,
                )
                self._stoppers.append(stop)
                self._workers.append(worker)
                worker.start()
            self.state = BackendState.RUNNING

    def _work(
        self, save: Processor, validate: Processor, worker_id: int, stop: threading.Event
    ) -> None:
        log.info("processing worker started (#%d)", worker_id)
        while not stop.is_set():
            try:
                msg: _WorkerMsg = self.conveyor.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            msg.notify.put(self._dispatch(msg, save, validate))
        log.info("stop signal for worker (#%d)", worker_id)

    @staticmethod
    def _dispatch(msg: _WorkerMsg, save: Processor, validate: Processor) -> _Notice:
        saving = msg.task == SelectTask.SAVE_MAIL
        processor = save if saving else validate
        try:
            result = processor(msg.envelope, msg.task)
            notice = _Notice(result=result)
        except ProcessingError as err:
            notice = _Notice(result=err.result, error=err)
        except Exception:
            log.exception("worker recovered from an error")
            return _Notice(error=ProcessingError("storage failed"))
        if saving:
            notice.queued_id = getattr(msg.envelope, "queued_id", "") or ""
        return notice

    def workers_size(self) -> int:
        """Return the configured number of workers, or 1 if not set."""
        if self.gw_config.workers_size <= 0:
            return 1
        return self.gw_config.workers_size

    def save_timeout(self) -> float:
        """Return the seconds to wait for a save before timing out."""
        return self._timeout(self.gw_config.timeout_save, SAVE_TIMEOUT)

    def validate_rcpt_timeout(self) -> float:
        """Return the seconds to wait for a recipient validation before timing out."""
        return self._timeout(self.gw_config.timeout_validate_rcpt, VALIDATE_RCPT_TIMEOUT)

    @staticmethod
    def _timeout(text: str, default: float) -> float:
        if not text:
            return default
        try:
            return _parse_duration(text)
        except ValueError:
            return default


def new(backend_config: dict) -> BackendGateway:
    """Create and initialize a gateway from backend_config."""
    gateway = BackendGateway()
    try:
        gateway.initialize(backend_config)
    except Exception as err:
        raise RuntimeError(f"error while initializing the backend: {err}") from err
    return gateway