# mailbackends

Storage and validation backends for a mail server that receives large
volumes of e-mail. A received message (an *envelope*) is handed to a
backend gateway, which passes it to a pool of worker threads. Each worker
runs a configurable chain of *processors*: parse headers, hash the
message, add delivery headers, compress it, store it in Redis or an SQL
database, and so on.

## Installing

```
pip install .
```

Install the test extra to run the test suite:

```
pip install ".[test]"
pytest
```

## Envelopes

The package does not define an envelope type; the server supplies it.
Processors read and write these attributes of the envelope object:
`rcpt_to` (a list of addresses with `user` and `host`, whose `str()` is
the address), `mail_from`, `subject`, `header` (a mapping of header name
to a list of values), `hashes` (a list), `values` (a dict), `data` (bytes,
str or `io.BytesIO`), `delivery_header`, `remote_ip`, `helo`, `esmtp`,
`tls` and `queued_id`, and the method `parse_headers()`. `str(envelope)`
should give the full message.

## The gateway

`mailbackends.gateway.new(backend_config)` builds a `BackendGateway` from a
plain dictionary and initializes it; an error during initialization is
raised as `RuntimeError`. Start it, feed it envelopes and shut it down
when done:

```python
from mailbackends.gateway import new

gateway = new({
    "save_process": "HeadersParser|Hasher|Header|Debugger",
    "save_workers_size": 2,
    "log_received_mails": True,
    "primary_mail_host": "example.com",
    "gw_save_timeout": "30s",
    "gw_val_rcpt_timeout": "5s",
})
gateway.start()

result = gateway.process(envelope)   # an envelope received by the server
print(result.code(), str(result))

gateway.shutdown()
```

`process` always returns a `Result`: `250 2.0.0 OK: queued as <id>` when
the chain succeeds and the envelope has a `queued_id`, otherwise the
chain's own result, or a `554` failure reply when the backend is not
running, a processor fails or the save times out.

`validate_rcpt` checks the last recipient added to the envelope. It
returns nothing when the recipient is accepted (or when no
`validate_process` is configured) and raises a `ProcessingError` when it
is refused — usually one of the `RcptError` subclasses `NoSuchUser`,
`StorageNotAvailable`, `StorageTooBusy`, `StorageTimeout`,
`QuotaExceeded`, `UserSuspended` or `StorageError`.

A gateway that has been shut down can be brought back with
`reinitialize()` followed by `start()`. Its `state` is a `BackendState`
(`NEW`, `INITIALIZED`, `RUNNING`, `SHUTTERED`, `ERROR`).

### Gateway options

| key                   | meaning                                               | default |
|-----------------------|-------------------------------------------------------|---------|
| `save_workers_size`   | number of worker threads                              | 1       |
| `save_process`        | processors run when saving, separated by `\|`         | none    |
| `validate_process`    | processors run when validating a recipient            | none    |
| `gw_save_timeout`     | how long to wait for a save, e.g. `"29s"`, `"1m30s"`  | 30s     |
| `gw_val_rcpt_timeout` | how long to wait for a recipient check, e.g. `"1s"`   | 5s      |

Processor names are case-insensitive and run from left to right. An
unknown name makes initialization fail. An unparseable timeout falls back
to the default.

## Built-in processors

| name               | what it does                                                          | options |
|--------------------|-----------------------------------------------------------------------|---------|
| `headersparser`    | calls `envelope.parse_headers()`, logging any failure                 | none |
| `hasher`           | appends one MD5 hash per recipient to `envelope.hashes`               | none |
| `header`           | sets `envelope.delivery_header` to `Delivered-To` / `Received` lines  | `primary_mail_host` |
| `compressor`       | puts a `DataCompressor` in `envelope.values["zlib-compressor"]`       | none |
| `debugger`         | logs received mails                                                   | `log_received_mails`, `sleep_seconds` |
| `redis`            | stores the message with `SETEX` under the first hash                  | `redis_interface`, `redis_expire_seconds` |
| `sql`              | inserts one row per recipient into an SQL table                       | `mail_table`, `sql_driver`, `sql_dsn`, `primary_mail_host`, `sql_insert`, `sql_values`, `sql_max_conn_lifetime`, `sql_max_open_conns`, `sql_max_idle_conns` |
| `guerrillaredisdb` | body to Redis, metadata batched into SQL inserts by a background thread | `mail_table`, `sql_driver`, `sql_dsn`, `redis_interface`, `redis_expire_seconds`, `primary_mail_host`, `save_workers_size`, `redis_sql_batch_timeout` |

Options without a default in the table above must be present in the
backend configuration with the right type, or initialization fails.
`bytes(data_compressor)` yields the delivery header and message data
compressed together with zlib. `sql_max_open_conns`,
`sql_max_idle_conns` and `sql_max_conn_lifetime` are read and validated
but connection pooling is left to the database driver.

### Redis

By default the Redis processors use `RedisMockConn`, which only logs the
commands it is given. To talk to a real server through the `redis`
library (`RedisPyConn`):

```python
from mailbackends.redis_store import use_redis_py

use_redis_py()
```

`set_dialer(dialer)` installs any other callable that takes
`(network, address)` and returns an object with `do(command, *args)` and
`close()`. Both functions return the dialer they replaced.

### SQL

The `sql` and `guerrillaredisdb` processors look up the `sql_driver`
name in a registry of DB-API connection factories, each called with the
DSN. A `sqlite3` driver is registered already, with a `NOW()` SQL
function added. Register others with:

```python
from mailbackends.sql_store import register_sql_driver

register_sql_driver("mydriver", connect_function)
```

The table named by `mail_table` must exist, and the processor checks that
it can select `mail_id` from it when it starts. The default insert
statement names MySQL-style backquoted columns; use `sql_insert` and
`sql_values` to supply your own.

## Writing a processor

A processor is a callable taking `(envelope, task)` and returning a
`Result`, or raising a `ProcessingError` (which may carry a `result` for
the client). A decorator wraps one processor in another. The chain ends
in `DefaultProcessor`, which answers with `200 OK`:

```python
from mailbackends.core import DefaultProcessor, SelectTask, decorate, new_result

def reject_empty(next_processor):
    def process(envelope, task):
        if task is SelectTask.SAVE_MAIL and not envelope.rcpt_to:
            return new_result("554 5.3.0 Error: no recipients")
        return next_processor(envelope, task)
    return process

chain = decorate(DefaultProcessor(), reject_empty)
```

To make a processor available by name in `save_process` or
`validate_process`, register a constructor that returns a decorator with
`svc.add_processor(name, constructor)` (`svc` is the shared `Service` in
`mailbackends.core`). Use `svc.add_initializer` and `svc.add_shutdowner`
for work that has to happen when the gateway initializes or shuts down;
failures are collected into a `BackendErrors`. `svc.extract_config(data,
config_type)` fills a dataclass from the configuration dictionary using
each field's `json` metadata (`"key"` or `"key,omitempty"`) and raises
`ValueError` for missing or ill-typed keys.

## Utilities

`mailbackends.util` provides `parse_headers(mail_data)`,
`md5_hex(*args)`, `compress(*args)` (zlib at the fastest level, returns
bytes) and `trim_to_limit(text, limit)`.

## What this package does not do

It is the storage and validation layer only. It has no SMTP listener, no
envelope class, no configuration-file loader and no command-line daemon:
the server that accepts connections and builds envelopes must be supplied
by the application that uses these backends.