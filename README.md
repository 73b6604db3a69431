# flowwallet

Building blocks for a custodial wallet service on the Flow blockchain: persistent jobs run by a worker pool, a chain event listener, account records and WSGI handlers and middleware built on Werkzeug.

## Modules

- `flowwallet.datastore`: `ListOptions` and `parse_list_options(limit, offset)`. A limit of 0 becomes 1000. A negative limit becomes -1, which means no limit, and resets the offset to 0. A negative offset becomes 0.
- `flowwallet.errors`: `RequestError` carries an HTTP status code. `RpcError` carries a `GrpcCode`. `is_chain_connection_error(err)` is true for `ConnectionError`, `TimeoutError`, and `RpcError` with code `DEADLINE_EXCEEDED`, `RESOURCE_EXHAUSTED`, `INTERNAL` or `UNAVAILABLE`.
- `flowwallet.flow_helpers`: `hex_string`, `format_address`, `is_valid_address`, `validate_address` and `validate_transaction_id`. The validators raise a 400 `RequestError`. The module also has `latest_block_id`, `wait_for_seal` and `send_and_wait`, which work with any object that follows the `FlowClient` protocol. `wait_for_seal` polls with a backoff between 0.1 and 1 second. It raises `TransactionError` when the result has an error or the transaction expired, and `TimeoutError` when a positive timeout runs out.
- `flowwallet.chain_events`: `Listener` polls a client for events over block-height ranges of at most `max_blocks` blocks. It keeps its height in a store such as `MemoryStatusStore` and passes each event to the handlers registered on the module-level `chain_event` (a `ChainEvent`). `Listener.poll()` runs a single round. `start()` and `stop()` run rounds in a background thread.
- `flowwallet.jobs`: `Job`, `JobState`, `MemoryJobStore` (thread-safe, in memory), `is_acceptable` and `JobService`. `JobService.details` raises a 400 `RequestError` for an invalid id and a 404 `RequestError` for an unknown job.
- `flowwallet.workerpool`: `WorkerPool` holds a bounded queue served by worker threads. A scheduler thread re-queues stalled jobs from the store.
  - A job that raises moves to `ERROR` and is retried later.
  - After more than `max_job_error_count` executions, or when the executor raises `PermanentFailure` (or an error wrapped with `permanent_failure`), the job moves to `FAILED`.
  - When `webhook_url` is given, a finished job whose `should_send_notification` is set triggers a `send_job_status` job. That job POSTs the finished job's JSON to the URL.
- `flowwallet.notification`: `NotificationConfig`, which does the webhook POST and raises `RuntimeError` on failure or on a status other than 200.
- `flowwallet.accounts`: `Account`, `AccountType`, `AccountRequest`, `MemoryAccountStore` (raises `RecordNotFound`) and the `account_added` event (`AccountAddedEvent`).
- `flowwallet.handlers`: `handle_error`, `json_response`, `plain_text`, `check_non_empty_body`, the wrappers `use_cors`, `use_json` and `use_compress`, the views `health_ready`, `liveness(...)` and `debug(...)`, and `JobsHandlers` for listing jobs and showing one job.
- `flowwallet.idempotency`: `idempotency_handler(app, options, store)` requires a new `Idempotency-Key` header on every POST outside `options.ignore_paths`.
  - A missing header gets 400.
  - A key that is already in use gets 409.
  - A store error gets 500.
  - Three stores are provided: `LocalIdempotencyStore` (in memory), `RedisIdempotencyStore` (which has `from_url`) and `SqlIdempotencyStore`. The SQL store needs a connection with `execute` and `commit`, such as `sqlite3.Connection`.
- `flowwallet.middleware`: `logging_handler(app)` logs each request through `logging` once the response is sent. The log line holds the method, path, status, size and duration.

## Installation

```
pip install flowwallet
```

## Example: run jobs through a worker pool

```python
from flowwallet.jobs import JobService, MemoryJobStore
from flowwallet.workerpool import WorkerPool

store = MemoryJobStore()
pool = WorkerPool(store, capacity=10, worker_count=2)

def greet(job):
    job.result = "hello"

pool.register_executor("greet", greet)
pool.start()
job = pool.create_job("greet", "")
pool.schedule(job)
pool.stop(wait=True)

print(JobService(store).details(str(job.id)).to_json_response())
```

## Example: serve job endpoints

```python
from werkzeug.routing import Map, Rule
from werkzeug.serving import run_simple
from werkzeug.wrappers import Request

from flowwallet.handlers import JobsHandlers, use_cors
from flowwallet.idempotency import (
    IdempotencyHandlerOptions, LocalIdempotencyStore, idempotency_handler,
)
from flowwallet.jobs import JobService, MemoryJobStore
from flowwallet.middleware import logging_handler

jobs = JobsHandlers(JobService(MemoryJobStore()))
urls = Map([
    Rule("/v1/jobs", endpoint="list"),
    Rule("/v1/jobs/<job_id>", endpoint="details"),
])

def app(environ, start_response):
    request = Request(environ)
    endpoint, args = urls.bind_to_environ(environ).match()
    response = getattr(jobs, endpoint)(request, **args)
    return response(environ, start_response)

wrapped = use_cors(logging_handler(idempotency_handler(
    app, IdempotencyHandlerOptions(expiry=3600), LocalIdempotencyStore(),
)))
run_simple("localhost", 8080, wrapped)
```

## What the package does not do

- It does not include a Flow access client. You supply an object that follows `FlowClient`.
- It does not create accounts or keys on chain.
- It has no transaction, token or template endpoints.
- It has no database-backed job, account or listener-status stores, and no migrations. The stores provided keep their data in memory.
- It has no command-line program or ready-made server. Routing and configuration are up to the application that uses it.

## Running the tests

```
pip install -e ".[test]"
pytest
```