import dataclasses

import pytest

from mailbackends.core import (
    BACKEND_RESULT_OK,
    BackendErrors,
    DefaultProcessor,
    NoopProcessor,
    NoSuchUser,
    ProcessingError,
    RcptError,
    Result,
    SelectTask,
    Service,
    StorageError,
    StorageTimeout,
    decorate,
    new_result,
)


@dataclasses.dataclass
class _SampleConfig:
    workers: int = 0
    name: str = ""
    enabled: bool = False
    timeout: str = dataclasses.field(default="5s", metadata={"json": "gw_timeout,omitempty"})
    size: int = dataclasses.field(default=1, metadata={"json": "save_workers_size,omitempty"})


@pytest.mark.parametrize(
    "text, expected",
    [("250 OK", 250), ("  354 go ahead", 354), ("ab", 554), ("abc def", 554), ("", 554)],
)
def test_result_code(text, expected):
    assert Result(text).code() == expected


def test_new_result_concatenates_items():
    result = new_result(ValueError("oops"), " ", "250", SelectTask.SAVE_MAIL)
    assert str(result) == "oops 250save mail"


def test_backend_result_ok():
    assert str(new_result("200 OK")) == str(BACKEND_RESULT_OK) == "200 OK"
    assert DefaultProcessor()(None, SelectTask.SAVE_MAIL).code() == 200


def test_select_task_names():
    assert str(SelectTask(0)) == "save mail"
    assert str(SelectTask(1)) == "validate recipient"
    assert str(new_result(SelectTask(1))) == "validate recipient"


def test_default_and_noop_processors_return_ok():
    assert DefaultProcessor()(None, SelectTask.SAVE_MAIL) is BACKEND_RESULT_OK
    assert NoopProcessor()(None, SelectTask.VALIDATE_RCPT) is BACKEND_RESULT_OK


def test_decorate_applies_in_order():
    calls = []

    def make(tag):
        def decorator(processor):
            def wrapped(envelope, task):
                calls.append(tag)
                return processor(envelope, task)

            return wrapped

        return decorator

    stack = decorate(DefaultProcessor(), make("a"), make("b"))
    assert stack(None, SelectTask.SAVE_MAIL) is BACKEND_RESULT_OK
    assert calls == ["b", "a"]


def test_rcpt_errors_messages_and_hierarchy():
    assert str(NoSuchUser()) == "no such user"
    assert str(StorageTimeout()) == "storage timeout"
    err = StorageError(result=new_result("554 Error"))
    assert isinstance(err, RcptError) and isinstance(err, ProcessingError)
    assert err.result.code() == 554


def test_backend_errors_string():
    assert str(BackendErrors([ValueError("one")])) == "one"
    assert str(BackendErrors([ValueError("one"), ValueError("two")])) == "\none\ntwo"


def test_initialize_retries_only_failed():
    svc = Service()
    calls = {"ok": 0, "bad": 0}

    def ok(cfg):
        calls["ok"] += 1

    def bad(cfg):
        calls["bad"] += 1
        raise RuntimeError("cannot connect")

    svc.add_initializer(ok)
    svc.add_initializer(bad)
    with pytest.raises(BackendErrors) as info:
        svc.initialize({})
    assert str(info.value) == "cannot connect"
    with pytest.raises(BackendErrors):
        svc.initialize({})
    assert calls == {"ok": 1, "bad": 2}


def test_shutdown_and_reset():
    svc = Service()
    calls = []
    svc.add_shutdowner(lambda: calls.append("x"))
    svc.shutdown()
    svc.shutdown()
    assert calls == ["x"]
    svc.add_shutdowner(lambda: calls.append("y"))
    svc.reset()
    svc.shutdown()
    assert calls == ["x"]


def test_processor_registry_is_case_insensitive():
    svc = Service()

    def constructor():
        return lambda p: p

    svc.add_processor("HeadersParser", constructor)
    assert svc.get_processor("headersparser") is constructor
    assert svc.get_processor("HEADERSPARSER") is constructor
    with pytest.raises(LookupError, match=r"processor \[missing\] not found"):
        svc.get_processor("Missing")


def test_extract_config_fills_fields():
    svc = Service()
    cfg = svc.extract_config(
        {"workers": 3.0, "name": "box", "enabled": True, "gw_timeout": "1s"}, _SampleConfig
    )
    assert cfg == _SampleConfig(workers=3, name="box", enabled=True, timeout="1s", size=1)


def test_extract_config_omitempty_ignores_wrong_type():
    svc = Service()
    cfg = svc.extract_config(
        {"workers": 2, "name": "n", "enabled": False, "save_workers_size": "1"}, _SampleConfig
    )
    assert cfg.size == 1
    assert cfg.workers == 2


def test_extract_config_missing_int():
    svc = Service()
    with pytest.raises(ValueError) as info:
        svc.extract_config({"name": "n", "enabled": True}, _SampleConfig)
    assert str(info.value) == (
        "failed to load backend config (property missing/invalid: 'workers' of expected type: int)"
    )


def test_extract_config_invalid_bool():
    svc = Service()
    with pytest.raises(ValueError) as info:
        svc.extract_config({"workers": 1, "name": "n", "enabled": "yes"}, _SampleConfig)
    assert str(info.value) == (
        "failed to load backend config (missing/invalid: 'enabled' of type: bool)"
    )