"""Core types for mail processing backends: results, errors, tasks and the processor service."""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
from typing import Any, Callable, Iterable, Optional

Processor = Callable[[Any, "SelectTask"], "Result"]
Decorator = Callable[[Processor], Processor]
ProcessorConstructor = Callable[[], Decorator]
Initializer = Callable[[dict], None]
Shutdowner = Callable[[], None]

log = logging.getLogger("mailbackends")


class Result:
    """A response to an SMTP client after receiving DATA, e.g. ``250 OK: Message received``."""

    __slots__ = ("_text",)

    def __init__(self, text: str = "") -> None:
        self._text = text

    def __str__(self) -> str:
        return self._text

    def __repr__(self) -> str:
        return f"Result({self._text!r})"

    def code(self) -> int:
        """Return the SMTP code from the first three characters, or 554 if it cannot be parsed."""
        trimmed = self._text.strip()
        if len(trimmed) < 3:
            return 554
        head = trimmed[:3]
        if not (head.isascii() and head.lstrip("+-").isdigit()):
            return 554
        try:
            return int(head)
        except ValueError:
            return 554


def new_result(*args: Any) -> Result:
    """Build a Result by concatenating the string forms of the given items."""
    return Result("".join(str(item) for item in args if item is not None))


BACKEND_RESULT_OK = new_result("200 OK")


class ProcessingError(Exception):
    """An error raised by a processor, optionally carrying a Result for the client."""

    default_message = ""

    def __init__(self, message: Optional[str] = None, result: Optional[Result] = None) -> None:
        text = self.default_message if message is None else message
        super().__init__(text)
        self.message = text
        self.result = result

    def __str__(self) -> str:
        return self.message


class BackendErrors(Exception):
    """A collection of errors gathered while initializing or shutting down processors."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__(str(self))

    def __str__(self) -> str:
        if len(self.errors) == 1:
            return str(self.errors[0])
        return "".join("\n" + str(err) for err in self.errors)

    def __len__(self) -> int:
        return len(self.errors)


class RcptError(ProcessingError):
    """An error raised while validating a recipient."""


class NoSuchUser(RcptError):
    default_message = "no such user"


class StorageNotAvailable(RcptError):
    default_message = "storage not available"


class StorageTooBusy(RcptError):
    default_message = "storage too busy"


class StorageTimeout(RcptError):
    default_message = "storage timeout"


class QuotaExceeded(RcptError):
    default_message = "quota exceeded"


class UserSuspended(RcptError):
    default_message = "user suspended"


class StorageError(RcptError):
    default_message = "storage error"


class SelectTask(enum.IntEnum):
    """The kind of work a processor is asked to do."""

    SAVE_MAIL = 0
    VALIDATE_RCPT = 1

    def __str__(self) -> str:
        if self is SelectTask.SAVE_MAIL:
            return "save mail"
        if self is SelectTask.VALIDATE_RCPT:
            return "validate recipient"
        return "[unnamed task]"


class DefaultProcessor:
    """The innermost processor of a stack: does nothing and reports success."""

    def __call__(self, envelope: Any, task: SelectTask) -> Result:
        log.debug("end of processor stack reached for task: %s", task)
        return BACKEND_RESULT_OK


class NoopProcessor(DefaultProcessor):
    """Used when no processors are configured."""


def decorate(processor: Processor, *args: Decorator) -> Processor:
    """Wrap a processor with each decorator in turn."""
    decorated = processor
    for decorator in args:
        decorated = decorator(decorated)
    return decorated


def _type_name(tp: Any) -> Optional[str]:
    if tp is bool or tp == "bool":
        return "bool"
    if tp is int or tp == "int":
        return "int"
    if tp is str or tp == "str":
        return "string"
    return None


class Service:
    """Keeps processor constructors and the initializers/shutdowners they register."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._initializers: list[Initializer] = []
        self._shutdowners: list[Shutdowner] = []
        self._processors: dict[str, ProcessorConstructor] = {}

    def add_initializer(self, initializer: Initializer) -> None:
        """Register a callable run with the backend config when initializing."""
        with self._lock:
            self._initializers.append(initializer)

    def add_shutdowner(self, shutdowner: Shutdowner) -> None:
        """Register a callable run when shutting down."""
        with self._lock:
            self._shutdowners.append(shutdowner)

    def reset(self) -> None:
        """Forget all initializers and shutdowners."""
        with self._lock:
            self._initializers = []
            self._shutdowners = []

    def initialize(self, backend_config: dict) -> None:
        """Run all initializers, keeping only the failed ones so that a retry calls them again."""
        with self._lock:
            errors: list[BaseException] = []
            failed: list[Initializer] = []
            for initializer in self._initializers:
                try:
                    initializer(backend_config)
                except Exception as err:  # processors may run arbitrary code
                    errors.append(err)
                    failed.append(initializer)
            self._initializers = failed
        if errors:
            raise BackendErrors(errors)

    def shutdown(self) -> None:
        """Run all shutdowners, keeping only the failed ones so that a retry calls them again."""
        with self._lock:
            errors: list[BaseException] = []
            failed: list[Shutdowner] = []
            for shutdowner in self._shutdowners:
                try:
                    shutdowner()
                except Exception as err:
                    errors.append(err)
                    failed.append(shutdowner)
            self._shutdowners = failed
        if errors:
            raise BackendErrors(errors)

    def add_processor(self, name: str, constructor: ProcessorConstructor) -> None:
        """Make a processor available under a case-insensitive name."""
        self._processors[name.lower()] = constructor

    def get_processor(self, name: str) -> ProcessorConstructor:
        """Return the constructor registered under name; raise LookupError if there is none."""
        try:
            return self._processors[name.lower()]
        except KeyError:
            raise LookupError(f"processor [{name.lower()}] not found") from None

    def extract_config(self, config_data: dict, config_type: type) -> Any:
        """Build an instance of the dataclass config_type from config_data.

        Each field's key is taken from its ``json`` metadata (``"name"`` or
        ``"name,omitempty"``), or the field name if absent. Only int, str and
        bool fields are filled; a missing or invalid value raises ValueError
        unless the field is marked omitempty, in which case its default stays.
        """
        config = config_type()
        for fld in dataclasses.fields(config_type):
            tag = fld.metadata.get("json", "")
            omitempty = False
            if tag:
                parts = tag.split(",")
                key = parts[0]
                omitempty = len(parts) > 1 and parts[1] == "omitempty"
            else:
                key = fld.name
            kind = _type_name(fld.type)
            value = config_data.get(key)
            if kind == "int":
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    setattr(config, fld.name, int(value))
                elif not omitempty:
                    raise ValueError(
                        "failed to load backend config (property missing/invalid: "
                        f"'{key}' of expected type: int)"
                    )
            elif kind == "string":
                if isinstance(value, str):
                    setattr(config, fld.name, value)
                elif not omitempty:
                    raise ValueError(
                        f"failed to load backend config (missing/invalid: '{key}' of type: string)"
                    )
            elif kind == "bool":
                if isinstance(value, bool):
                    setattr(config, fld.name, value)
                elif not omitempty:
                    raise ValueError(
                        f"failed to load backend config (missing/invalid: '{key}' of type: bool)"
                    )
        return config


svc = Service()