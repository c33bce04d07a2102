"""The sql processor: saves each received message as a row in a SQL table."""

from __future__ import annotations

import dataclasses
import email.utils
import ipaddress
import logging
import re
import sqlite3
import threading
from datetime import datetime
from typing import Any, Callable, Optional

from mailbackends.core import (
    Decorator,
    NoSuchUser,
    Processor,
    Result,
    SelectTask,
    StorageError,
    new_result,
    svc,
)
from mailbackends.util import trim_to_limit

log = logging.getLogger("mailbackends")

# Number of batched row counts for which an insert statement is cached.
_STMT_CACHE_SIZE = 50

_DEFAULT_INSERT = (
    "INSERT INTO {table} "
    "(`date`, `to`, `from`, `subject`, `body`,  `mail`, `spam_score`, "
    "`hash`, `content_type`, `recipient`, `has_attach`, `ip_addr`, "
    "`return_path`, `is_tls`, `message_id`, `reply_to`, `sender`)"
    " VALUES "
)
_DEFAULT_VALUES = "(NOW(), ?, ?, ?, ? , ?, 0, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)"

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

SQLConnect = Callable[[str], Any]


def _sqlite_connect(dsn: str) -> sqlite3.Connection:
    conn = sqlite3.connect(dsn, check_same_thread=False)
    conn.create_function(
        "NOW", 0, lambda: datetime.now().isoformat(sep=" ", timespec="seconds")
    )
    return conn


_drivers: dict[str, SQLConnect] = {"sqlite3": _sqlite_connect}


def register_sql_driver(name: str, connect: SQLConnect) -> None:
    """Make a DB-API connect function, called with the DSN, available as sql_driver name."""
    _drivers[name] = connect


def _parse_duration(text: str) -> float:
    """Parse a duration such as "1h30m" or "2.5s" into seconds."""
    if text == "0":
        return 0.0
    if not _DURATION_RE.fullmatch(text):
        raise ValueError(f"time: invalid duration {text!r}")
    sign = -1.0 if text.startswith("-") else 1.0
    total = sum(
        float(number) * _DURATION_UNITS[unit]
        for number, unit in _DURATION_PART_RE.findall(text)
    )
    return sign * total


def _int_to_bytes(value: int) -> bytes:
    return value.to_bytes((value.bit_length() + 7) // 8, "big")


@dataclasses.dataclass
class SQLProcessorConfig:
    table: str = dataclasses.field(default="", metadata={"json": "mail_table"})
    driver: str = dataclasses.field(default="", metadata={"json": "sql_driver"})
    dsn: str = dataclasses.field(default="", metadata={"json": "sql_dsn"})
    sql_insert: str = dataclasses.field(default="", metadata={"json": "sql_insert,omitempty"})
    sql_values: str = dataclasses.field(default="", metadata={"json": "sql_values,omitempty"})
    primary_host: str = dataclasses.field(default="", metadata={"json": "primary_mail_host"})
    max_conn_lifetime: str = dataclasses.field(
        default="", metadata={"json": "sql_max_conn_lifetime,omitempty"}
    )
    max_open_conns: int = dataclasses.field(
        default=0, metadata={"json": "sql_max_open_conns,omitempty"}
    )
    max_idle_conns: int = dataclasses.field(
        default=0, metadata={"json": "sql_max_idle_conns,omitempty"}
    )


class SQLProcessor:
    """Connects to the database and builds and runs the insert statements."""

    def __init__(self, config: Optional[SQLProcessorConfig] = None) -> None:
        self.config = config
        self.conn_max_lifetime: Optional[float] = None
        self._cache: dict[int, str] = {}
        self._lock = threading.Lock()

    def connect(self) -> Any:
        """Open the database and check that the mail table can be selected from."""
        config = self._require_config()
        try:
            driver = _drivers[config.driver]
        except KeyError:
            raise LookupError(
                f"sql: unknown driver {config.driver!r} (forgotten registration?)"
            ) from None
        if config.max_conn_lifetime:
            self.conn_max_lifetime = _parse_duration(config.max_conn_lifetime)
        try:
            db = driver(config.dsn)
        except Exception as err:
            log.error("cannot open database: %s", err)
            raise
        try:
            cursor = db.cursor()
            cursor.execute("SELECT mail_id FROM " + config.table + " LIMIT 1")
            cursor.fetchall()
            cursor.close()
        except Exception:
            db.close()
            raise
        return db

    def prepare_insert_query(self, rows: int) -> str:
        """Return the insert statement for the given number of rows, cached per row count."""
        if rows < 1:
            raise ValueError("rows argument cannot be 0")
        if rows > _STMT_CACHE_SIZE:
            raise ValueError(f"rows argument cannot exceed {_STMT_CACHE_SIZE}")
        cached = self._cache.get(rows)
        if cached is not None:
            return cached
        config = self._require_config()
        if config.sql_insert:
            statement = config.sql_insert
            if not statement.endswith(" "):
                statement += " "
        else:
            statement = _DEFAULT_INSERT.format(table=config.table)
        values = config.sql_values or _DEFAULT_VALUES
        statement += ",".join([values] * rows)
        self._cache[rows] = statement
        return statement

    def do_query(self, db: Any, rows: int, values: list) -> None:
        """Insert the values as rows rows and commit."""
        statement = self.prepare_insert_query(rows)
        with self._lock:
            try:
                cursor = db.cursor()
                cursor.execute(statement, values)
                cursor.close()
                db.commit()
            except Exception as err:
                log.error("There was a problem the insert: %s", err)
                raise

    def ip2bint(self, ip: str) -> int:
        """Convert an IP address to an integer for the ip_addr column; 0 if unparseable.

        Only addresses with '::' after the first position are stored as 16 bytes;
        anything else must have an IPv4 form or it is stored as 0.
        """
        if "%" in ip:
            return 0
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return 0
        if ip.find("::") > 0:
            if isinstance(addr, ipaddress.IPv4Address):
                return int(ipaddress.IPv6Address("::ffff:" + str(addr)))
            return int(addr)
        if isinstance(addr, ipaddress.IPv4Address):
            return int(addr)
        mapped = addr.ipv4_mapped
        return int(mapped) if mapped is not None else 0

    def fill_address_from_header(self, envelope: Any, header_key: str) -> str:
        """Return the address in the first value of the header, or "" if absent or invalid."""
        values = envelope.header.get(header_key) if envelope.header else None
        if not values:
            return ""
        first = values if isinstance(values, str) else values[0]
        _, address = email.utils.parseaddr(first)
        return address

    def _require_config(self) -> SQLProcessorConfig:
        if self.config is None:
            raise RuntimeError("sql processor has no config")
        return self.config


def sql() -> Decorator:
    """Save each recipient's copy of the message as a row in the configured table."""
    processor = SQLProcessor()
    db: Any = None

    def init(backend_config: dict) -> None:
        nonlocal db
        processor.config = svc.extract_config(backend_config, SQLProcessorConfig)
        db = processor.connect()

    def shutdown() -> None:
        if db is not None:
            db.close()

    svc.add_initializer(init)
    svc.add_shutdowner(shutdown)

    def save(envelope: Any) -> None:
        config = processor._require_config()
        hash_id = ""
        if envelope.hashes:
            hash_id = envelope.hashes[0]
            envelope.queued_id = hash_id
        body = ""
        data_compressor = envelope.values.get("zlib-compressor")
        if data_compressor is not None:
            body = "gzip"
        if "redis" in envelope.values:
            body = "redis"
        mail_from = trim_to_limit(str(envelope.mail_from), 255)
        for rcpt in envelope.rcpt_to:
            to = trim_to_limit(processor.fill_address_from_header(envelope, "To"), 255)
            if not to:
                to = trim_to_limit(str(rcpt).strip(), 255)
            mid = trim_to_limit(processor.fill_address_from_header(envelope, "Message-Id"), 255)
            if not mid:
                mid = f"{hash_id}.{rcpt.user}@{config.primary_host}"
            reply_to = trim_to_limit(processor.fill_address_from_header(envelope, "Reply-To"), 255)
            sender = trim_to_limit(processor.fill_address_from_header(envelope, "Sender"), 255)
            recipient = trim_to_limit(str(rcpt).strip(), 255)
            content_type = ""
            content_values = envelope.header.get("Content-Type") if envelope.header else None
            if content_values:
                first = content_values if isinstance(content_values, str) else content_values[0]
                content_type = trim_to_limit(first, 255)
            if body == "redis":
                mail_column: Any = ""
            elif data_compressor is not None:
                mail_column = bytes(data_compressor)
            else:
                mail_column = str(envelope)
            values = [
                to,
                mail_from,
                trim_to_limit(envelope.subject, 255),
                body,
                mail_column,
                hash_id,
                content_type,
                recipient,
                _int_to_bytes(processor.ip2bint(envelope.remote_ip)),
                mail_from,
                envelope.tls,
                mid,
                reply_to,
                sender,
            ]
            try:
                processor.do_query(db, 1, values)
            except Exception as err:
                raise StorageError(
                    result=new_result("554 Error: could not save email")
                ) from err

    def wrap(next_processor: Processor) -> Processor:
        def process(envelope: Any, task: SelectTask) -> Result:
            if task == SelectTask.SAVE_MAIL:
                if db is None:
                    raise RuntimeError("sql processor used before initialization")
                save(envelope)
            elif task == SelectTask.VALIDATE_RCPT:
                if envelope.rcpt_to and len(envelope.rcpt_to[-1].user) > 255:
                    raise NoSuchUser()
            return next_processor(envelope, task)

        return process

    return wrap


svc.add_processor("sql", sql)