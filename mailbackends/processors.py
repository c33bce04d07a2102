"""Built-in mail processors: compressor, debugger, hasher, header and headers parser."""

from __future__ import annotations

import dataclasses
import email.utils
import hashlib
import io
import logging
import time
import zlib
from datetime import datetime
from typing import Any, Optional

from mailbackends.core import Decorator, Processor, Result, SelectTask, svc

log = logging.getLogger("mailbackends")


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


class DataCompressor:
    """Holds extra headers and message data; bytes() yields them zlib-compressed together."""

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
class DebuggerConfig:
    log_received_mails: bool = dataclasses.field(
        default=False, metadata={"json": "log_received_mails"}
    )
    sleep_sec: int = dataclasses.field(
        default=0, metadata={"json": "sleep_seconds,omitempty"}
    )


@dataclasses.dataclass
class HeaderConfig:
    primary_host: str = dataclasses.field(
        default="", metadata={"json": "primary_mail_host"}
    )


def _protocol(envelope: Any) -> str:
    protocol = "SMTP"
    if envelope.esmtp:
        protocol = "E" + protocol
    if envelope.tls:
        protocol += "S"
    return protocol


def compressor() -> Decorator:
    """Store a DataCompressor of the delivery header and data in envelope.values."""

    def wrap(next_processor: Processor) -> Processor:
        def process(envelope: Any, task: SelectTask) -> Result:
            if task == SelectTask.SAVE_MAIL:
                data_compressor = DataCompressor()
                data_compressor.set(envelope.delivery_header.encode("utf-8"), envelope.data)
                envelope.values["zlib-compressor"] = data_compressor
            return next_processor(envelope, task)

        return process

    return wrap


def debugger() -> Decorator:
    """Log received mail when log_received_mails is set; optionally sleep for testing."""
    config: Optional[DebuggerConfig] = None

    def init(backend_config: dict) -> None:
        nonlocal config
        config = svc.extract_config(backend_config, DebuggerConfig)

    svc.add_initializer(init)

    def wrap(next_processor: Processor) -> Processor:
        def process(envelope: Any, task: SelectTask) -> Result:
            if task == SelectTask.SAVE_MAIL:
                if config is None:
                    raise RuntimeError("debugger processor used before initialization")
                if config.log_received_mails:
                    log.info("Mail from: %s / to: %s", envelope.mail_from, envelope.rcpt_to)
                    log.info("Headers are: %s", envelope.header)
                if config.sleep_sec > 0:
                    log.info("sleeping for %d", config.sleep_sec)
                    time.sleep(config.sleep_sec)
                    log.info("woke up")
                    if config.sleep_sec == 1:
                        raise RuntimeError("panic on purpose")
            return next_processor(envelope, task)

        return process

    return wrap


def hasher() -> Decorator:
    """Append an MD5 hash per recipient to envelope.hashes.

    The base digest covers sender, subject and a nanosecond timestamp; each
    recipient is then fed into the same running digest.
    """

    def wrap(next_processor: Processor) -> Processor:
        def process(envelope: Any, task: SelectTask) -> Result:
            if task == SelectTask.SAVE_MAIL:
                digest = hashlib.md5()
                digest.update(str(envelope.mail_from).encode("utf-8"))
                digest.update(envelope.subject.encode("utf-8"))
                digest.update(str(time.time_ns()).encode("utf-8"))
                for rcpt in envelope.rcpt_to:
                    digest.update(str(rcpt).encode("utf-8"))
                    envelope.hashes.append(digest.hexdigest())
            return next_processor(envelope, task)

        return process

    return wrap


def header() -> Decorator:
    """Set envelope.delivery_header with Delivered-To and Received headers."""
    config: Optional[HeaderConfig] = None

    def init(backend_config: dict) -> None:
        nonlocal config
        config = svc.extract_config(backend_config, HeaderConfig)

    svc.add_initializer(init)

    def wrap(next_processor: Processor) -> Processor:
        def process(envelope: Any, task: SelectTask) -> Result:
            if task == SelectTask.SAVE_MAIL:
                if config is None:
                    raise RuntimeError("header processor used before initialization")
                to = envelope.rcpt_to[0].user.strip() + "@" + config.primary_host
                hash_id = envelope.hashes[0] if envelope.hashes else "unknown"
                protocol = _protocol(envelope)
                lines = [
                    f"Delivered-To: {to}\n",
                    f"Received: from {envelope.remote_ip} ([{envelope.remote_ip}])\n",
                ]
                if envelope.rcpt_to:
                    host = envelope.rcpt_to[0].host
                    lines.append(f"\tby {host} with {protocol} id {hash_id}@{host};\n")
                now = email.utils.format_datetime(datetime.now().astimezone())
                lines.append(f"\t{now}\n")
                envelope.delivery_header = "".join(lines)
            return next_processor(envelope, task)

        return process

    return wrap


def headers_parser() -> Decorator:
    """Parse the envelope's headers; a parse failure is logged, not raised."""

    def wrap(next_processor: Processor) -> Processor:
        def process(envelope: Any, task: SelectTask) -> Result:
            if task == SelectTask.SAVE_MAIL:
                try:
                    envelope.parse_headers()
                except Exception as err:
                    log.error("parse headers error: %s", err)
            return next_processor(envelope, task)

        return process

    return wrap


svc.add_processor("compressor", compressor)
svc.add_processor("debugger", debugger)
svc.add_processor("hasher", hasher)
svc.add_processor("header", header)
svc.add_processor("headersparser", headers_parser)