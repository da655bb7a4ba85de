# dtmlite

dtmlite is the core of a distributed transaction manager. It keeps global
transactions and their branches, calls each branch over HTTP or JSON-RPC, and
moves every transaction toward a final state. It retries with backoff,
compensates what has to be rolled back, and can post an alert to a webhook
when a branch keeps failing.

## Installation

```
pip install dtmlite
```

For the tests:

```
pip install "dtmlite[test]"
pytest
```

## Modules

- `dtmlite.errors`: result strings (`RESULT_SUCCESS`, `RESULT_FAILURE`,
  `RESULT_ONGOING`), statuses (`STATUS_PREPARED`, `STATUS_SUBMITTED`,
  `STATUS_SUCCEED`, `STATUS_FAILED`, `STATUS_ABORTING`), the exceptions
  `DtmError`, `FailureError` and `OngoingError`, and the helpers
  `is_failure`, `is_ongoing` and `result_to_error`. `is_failure` and
  `is_ongoing` also follow the chain of errors an error was raised from.
- `dtmlite.trans`: `TransGlobal`, `TransBranch`, `CronType`, the settings
  object `conf` (a `Config`), the in-memory `Store`, and `set_store`,
  `get_store`, `gen_gid` and `get_trans_global`.
- `dtmlite.processors`: one processor per transaction type
  (`SagaProcessor`, `MsgProcessor`, `TccProcessor`, `XaProcessor`,
  `WorkflowProcessor`) and `create_processor`, which picks one by
  `trans_type`.
- `dtmlite.util`: the Flask app factory `create_app`, the view wrapper
  `wrap_handler` and its `handler_result`, and small helpers
  (`recover_panic`, `split_sql_script`, `get_next_time`, `get_sql_dir`,
  `must_getwd`).
- `dtmlite.admin`: the `dtmlite` command, which serves the admin ui.

## Transaction types

- **saga**: each step becomes a compensate branch and an action branch.
  Actions run one after another, or together when the custom data says
  `{"concurrent": true}`; `orders` in the custom data sets which steps must
  finish before another starts. When an action fails, or the transaction
  times out, the finished actions are compensated in reverse order. With
  `retry_limit` set, an unfinished action is retried up to that many times
  before the saga is aborted.
- **msg**: each step's action becomes a branch. An action of the form
  `topic://name` becomes one branch per url listed in
  `dtmlite.processors.topic_urls["name"]`. A prepared message that has timed
  out is checked against its `query_prepared` url. Delivery can be put off
  with `{"delay": seconds}` in the custom data, and branches run together
  when `concurrent` is set.
- **tcc**: confirm branches run when submitted, cancel branches when aborting,
  last branch first.
- **xa**: commit branches run when submitted, rollback branches when aborting.
- **workflow**: the `query_prepared` url is called with the workflow name and
  data from the custom data, so the owner can resume the workflow.

## Usage

```python
from dtmlite.errors import STATUS_SUBMITTED
from dtmlite.processors import create_processor
from dtmlite.trans import Store, TransGlobal, gen_gid, get_store, set_store

set_store(Store())

busi = "http://localhost:8081/api/busi"
trans = TransGlobal(
    gid=gen_gid(),
    trans_type="saga",
    status=STATUS_SUBMITTED,
    steps=[
        {"action": busi + "/TransOut", "compensate": busi + "/TransOutRevert"},
        {"action": busi + "/TransIn", "compensate": busi + "/TransInRevert"},
    ],
    bin_payloads=[b'{"amount": 30}', b'{"amount": 30}'],
)
processor = create_processor(trans)
branches = processor.gen_branches()
get_store().save_new(trans, branches)
processor.process_once(branches)
print(trans.status)
```

`process_once` raises when the transaction has to be tried again later.
`TransGlobal.get_next_cron_interval` gives the next interval for a
`CronType`: `RESET` goes back to the base interval (the transaction's
`retry_interval`, else a `timeout_to_fail` smaller than `conf.retry_interval`,
else `conf.retry_interval`), `BACKOFF` doubles the current interval and
`KEEP` leaves it as it is. `is_timeout` tells whether the transaction has
passed its `timeout_to_fail` (or `conf.timeout_to_fail` for types other than
saga).

## Branch result protocol

A branch call is judged by its HTTP reply:

- 425, or a body containing `ONGOING`: still going on; retried later at the
  same interval.
- 409, or a body containing `FAILURE`: failed; a failed saga action is not
  retried and leads to compensation.
- 200: success.
- Anything else: an error, retried with backoff.

JSON-RPC branches (protocol `json-rpc` with a `method` in the url) are also
judged by the `error.code` of the JSON-RPC reply.

## HTTP helpers

`create_app()` builds a Flask app that logs each request and answers
`/api/ping` with `{"msg":"pong"}`. `wrap_handler` turns a plain function
into a view: `None` becomes `{"dtm_result":"SUCCESS"}`, a `FailureError`
becomes status 409, an `OngoingError` status 425, any other error status
500 with its `message`, and any other value is sent as JSON.

## Admin server

```
dtmlite --help
dtmlite --port 36789 --dist admin/dist --host 0.0.0.0
```

If `--dist` holds an `index.html`, the command serves it at `/` and
`/admin/...` and serves the files under `assets/` at `/assets/...`.
Otherwise it forwards those paths to the hosted admin ui, picking the host by
the `LANG` environment variable.

## What it does not do

- The server started by `dtmlite` has only the ping and admin routes: there is
  no HTTP API to submit, query or stop transactions.
- There is no cron loop that picks up due transactions; call
  `process_once` yourself.
- `Store` keeps everything in memory. With `conf.store_driver` set to
  `mysql` or `postgres` and no sync updates, branch status changes are put on
  `dtmlite.trans.update_branch_queue`, and nothing in the package writes them
  out.
- gRPC branch urls are not supported; calling one raises `ValueError`.