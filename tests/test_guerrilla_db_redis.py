import contextlib
import dataclasses
import queue
import sqlite3
import threading
import time
import zlib

import pytest

from mailbackends.core import (
    BackendErrors,
    DefaultProcessor,
    SelectTask,
    decorate,
    svc,
)
from mailbackends.guerrilla_db_redis import (
    CompressedData,
    GuerrillaDBAndRedisBackend,
    GuerrillaDBAndRedisConfig,
    guerrilla_db_redis,
)
from mailbackends.redis_store import set_dialer

CREATE_TABLE = (
    "CREATE TABLE mail (mail_id INTEGER PRIMARY KEY AUTOINCREMENT, `date` TEXT, "
    "`to` TEXT, `from` TEXT, subject TEXT, body TEXT, charset TEXT, mail BLOB, "
    "spam_score INTEGER, hash TEXT, content_type TEXT, recipient TEXT, "
    "has_attach INTEGER, ip_addr TEXT, return_path TEXT, is_tls INTEGER)"
)


@dataclasses.dataclass
class Addr:
    user: str
    host: str

    def __str__(self):
        return f"{self.user}@{self.host}"


@dataclasses.dataclass
class FakeEnvelope:
    remote_ip: str = "127.0.0.1"
    helo: str = "  helo.example.com  "
    mail_from: Addr = dataclasses.field(default_factory=lambda: Addr("sender", "example.com"))
    rcpt_to: list = dataclasses.field(default_factory=lambda: [Addr(" test ", "example.com")])
    data: bytes = b"Subject: Test\r\n\r\nThis is a test."
    subject: str = ""
    header: dict = dataclasses.field(default_factory=dict)
    esmtp: bool = True
    tls: bool = False
    queued_id: str = ""
    values: dict = dataclasses.field(default_factory=dict)
    hashes: list = dataclasses.field(default_factory=list)

    def parse_headers(self):
        head = self.data.split(b"\r\n\r\n", 1)[0].decode()
        for line in head.split("\r\n"):
            name, _, value = line.partition(":")
            self.header.setdefault(name.strip(), []).append(value.strip())
        self.subject = self.header.get("Subject", [""])[0]


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "mail.db"
    with contextlib.closing(sqlite3.connect(path)) as conn:
        conn.execute(CREATE_TABLE)
        conn.commit()
    return path


@pytest.fixture
def clean_service():
    svc.reset()
    yield svc
    with contextlib.suppress(BackendErrors):
        svc.shutdown()
    svc.reset()


def fetch_rows(path):
    with contextlib.closing(sqlite3.connect(path)) as conn:
        return conn.execute(
            "SELECT `to`, `from`, subject, body, mail, hash, recipient, ip_addr, "
            "return_path, is_tls, charset FROM mail"
        ).fetchall()


def make_backend(path, batch_timeout=0):
    config = GuerrillaDBAndRedisConfig(
        table="mail", driver="sqlite3", dsn=str(path), batch_timeout=batch_timeout
    )
    return GuerrillaDBAndRedisBackend(config)


def row_values(n):
    return [f"to{n}@example.com", "from@example.com", "subj", "redis", b"", f"h{n}",
            f"to{n}@example.com", "127.0.0.1", "from@example.com", False]


def backend_config(path):
    return {
        "save_workers_size": 1,
        "mail_table": "mail",
        "sql_driver": "sqlite3",
        "sql_dsn": str(path),
        "redis_expire_seconds": 7200,
        "redis_interface": "127.0.0.1:6379",
        "primary_mail_host": "example.com",
    }


def test_compressed_data_round_trip():
    text = "Hello Hello Hello Hello Hello Hello Hello!"
    subject = "Subject:hello\r\n"
    cd = CompressedData()
    cd.set(subject.encode(), text.encode())
    assert zlib.decompress(bytes(cd)).decode() == subject + text


def test_compressed_data_empty_without_data():
    assert bytes(CompressedData()) == b""


def test_compressed_data_clear():
    cd = CompressedData()
    cd.set(b"X-Head: 1\r\n", b"body")
    cd.clear()
    assert bytes(cd) == b""
    assert cd.extra_headers == b""


def test_prepare_insert_query_single_row():
    backend = GuerrillaDBAndRedisBackend(GuerrillaDBAndRedisConfig(table="mail"))
    assert backend.prepare_insert_query(1) == (
        "INSERT INTO mail(`date`, `to`, `from`, `subject`, `body`, `charset`, `mail`, "
        "`spam_score`, `hash`, `content_type`, `recipient`, `has_attach`, `ip_addr`, "
        "`return_path`, `is_tls`) values "
        "(NOW(), ?, ?, ?, ? , 'UTF-8' , ?, 0, ?, '', ?, 0, ?, ?, ?)"
    )


def test_prepare_insert_query_multiple_rows_cached():
    backend = GuerrillaDBAndRedisBackend(GuerrillaDBAndRedisConfig(table="mail"))
    statement = backend.prepare_insert_query(3)
    assert statement.count("(NOW()") == 3
    assert statement.count("?") == 30
    assert backend.prepare_insert_query(3) is statement


@pytest.mark.parametrize("rows", [0, 51])
def test_prepare_insert_query_rejects_bad_row_count(rows):
    backend = GuerrillaDBAndRedisBackend(GuerrillaDBAndRedisConfig(table="mail"))
    with pytest.raises(ValueError):
        backend.prepare_insert_query(rows)


def test_sql_connect_and_do_query(db_path):
    backend = make_backend(db_path)
    db = backend.sql_connect()
    try:
        backend.do_query(2, db, row_values(1) + row_values(2))
    finally:
        db.close()
    rows = fetch_rows(db_path)
    assert [r[5] for r in rows] == ["h1", "h2"]
    assert rows[0][10] == "UTF-8"


def test_sql_connect_fails_without_table(tmp_path):
    backend = make_backend(tmp_path / "empty.db")
    with pytest.raises(sqlite3.OperationalError):
        backend.sql_connect()


def test_batcher_flushes_on_stop(db_path):
    backend = make_backend(db_path)
    db = backend.sql_connect()
    feeder = queue.Queue()
    stop = threading.Event()
    feeder.put(row_values(1))
    feeder.put(row_values(2))
    stop.set()
    try:
        assert backend.insert_query_batcher(feeder, db, 1, stop) is False
    finally:
        db.close()
    assert sorted(r[5] for r in fetch_rows(db_path)) == ["h1", "h2"]


def test_batcher_flushes_on_timeout(db_path):
    backend = make_backend(db_path, batch_timeout=1)
    db = backend.sql_connect()
    feeder = queue.Queue()
    stop = threading.Event()
    results = []
    thread = threading.Thread(
        target=lambda: results.append(backend.insert_query_batcher(feeder, db, 2, stop))
    )
    thread.start()
    feeder.put(row_values(7))
    found = []
    for _ in range(60):
        found = fetch_rows(db_path)
        if found:
            break
        time.sleep(0.1)
    stop.set()
    thread.join()
    db.close()
    assert [r[5] for r in found] == ["h7"]
    assert results == [False]


def test_processor_stores_metadata_with_redis(db_path, clean_service):
    processor = decorate(DefaultProcessor(), guerrilla_db_redis())
    svc.initialize(backend_config(db_path))
    envelope = FakeEnvelope()
    result = processor(envelope, SelectTask.SAVE_MAIL)
    svc.shutdown()
    assert str(result) == "200 OK"
    assert len(envelope.queued_id) == 32
    assert all(c in "0123456789abcdef" for c in envelope.queued_id)
    assert envelope.helo == "helo.example.com"
    assert envelope.subject == "Test"
    rows = fetch_rows(db_path)
    assert len(rows) == 1
    to, mail_from, subject, body, mail, hash_id, recipient, ip, return_path, is_tls, _ = rows[0]
    assert to == "test@example.com"
    assert mail_from == "sender@example.com"
    assert subject == "Test"
    assert body == "redis"
    assert mail == b""
    assert hash_id == envelope.queued_id
    assert recipient == "test@example.com"
    assert ip == "127.0.0.1"
    assert return_path == "sender@example.com"
    assert is_tls == 0


def test_processor_falls_back_to_sql_when_redis_fails(db_path, clean_service):
    def failing_dial(network, address):
        raise ConnectionError("refused")

    previous = set_dialer(failing_dial)
    try:
        processor = decorate(DefaultProcessor(), guerrilla_db_redis())
        svc.initialize(backend_config(db_path))
        envelope = FakeEnvelope(tls=True)
        processor(envelope, SelectTask.SAVE_MAIL)
        svc.shutdown()
    finally:
        set_dialer(previous)
    rows = fetch_rows(db_path)
    assert rows[0][3] == "gzencode"
    stored = zlib.decompress(rows[0][4]).decode()
    assert stored.startswith("Delivered-To: test@example.com\r\n")
    assert f"with ESMTPS id {envelope.queued_id}@example.com;" in stored
    assert stored.endswith("Subject: Test\r\n\r\nThis is a test.")
    assert rows[0][9] == 1


def test_processor_passes_validation_through(clean_service):
    processor = decorate(DefaultProcessor(), guerrilla_db_redis())
    envelope = FakeEnvelope()
    result = processor(envelope, SelectTask.VALIDATE_RCPT)
    assert str(result) == "200 OK"
    assert envelope.queued_id == ""


def test_processor_registered():
    assert svc.get_processor("GuerrillaRedisDB") is guerrilla_db_redis