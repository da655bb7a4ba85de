"""Result codes, transaction statuses and the errors that branch calls report."""

from __future__ import annotations

DEFAULT_HTTP_SERVER = "http://localhost:36789/api/dtmsvr"
"""Default url of the http server, used by tests and examples."""
DEFAULT_JRPC_SERVER = "http://localhost:36789/api/json-rpc"
"""Default url of the http json-rpc server, used by tests and examples."""
DEFAULT_GRPC_SERVER = "localhost:36790"
"""Default address of the grpc server, used by tests and examples."""

RESULT_SUCCESS = "SUCCESS"
RESULT_FAILURE = "FAILURE"
RESULT_ONGOING = "ONGOING"

STATUS_PREPARED = "prepared"
STATUS_SUBMITTED = "submitted"
STATUS_SUCCEED = "succeed"
STATUS_FAILED = "failed"
STATUS_ABORTING = "aborting"


class DtmError(Exception):
    """Base class of the errors with a meaning for a transaction."""


class FailureError(DtmError):
    """The branch failed for good and must not be retried."""

    def __init__(self, message: str = RESULT_FAILURE) -> None:
        super().__init__(message)


class OngoingError(DtmError):
    """The branch is not finished yet and should be tried again later."""

    def __init__(self, message: str = RESULT_ONGOING) -> None:
        super().__init__(message)


def _chain(err: BaseException | None):
    """Yield an error and every error it was raised from."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__ or err.__context__


def is_failure(err: BaseException | None) -> bool:
    """Tell whether the error, or one it was raised from, is a failure."""
    return any(isinstance(e, FailureError) for e in _chain(err))


def is_ongoing(err: BaseException | None) -> bool:
    """Tell whether the error, or one it was raised from, means ongoing."""
    return any(isinstance(e, OngoingError) for e in _chain(err))


def result_to_error(result: str) -> DtmError | None:
    """Turn a result string into the matching error; success and unknown give None."""
    if result == RESULT_FAILURE:
        return FailureError()
    if result == RESULT_ONGOING:
        return OngoingError()
    return None