"""A global transaction on the server: status changes, branch calls and retry timing."""

from __future__ import annotations

import dataclasses
import enum
import logging
import math
import queue
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, urlparse

import requests

from dtmlite.errors import (
    RESULT_FAILURE,
    RESULT_ONGOING,
    STATUS_ABORTING,
    STATUS_FAILED,
    STATUS_PREPARED,
    STATUS_SUBMITTED,
    STATUS_SUCCEED,
    FailureError,
    OngoingError,
    is_failure,
    is_ongoing,
)

logger = logging.getLogger(__name__)

OP_ACTION = "action"
OP_COMPENSATE = "compensate"
OP_CONFIRM = "confirm"
OP_CANCEL = "cancel"
OP_COMMIT = "commit"
OP_ROLLBACK = "rollback"

PROTOCOL_HTTP = "http"
PROTOCOL_GRPC = "grpc"
PROTOCOL_JSONRPC = "json-rpc"

DB_TYPE_MYSQL = "mysql"
DB_TYPE_POSTGRES = "postgres"

JRPC_CODE_FAILURE = -32901
JRPC_CODE_ONGOING = -32902

_HTTP_OK = 200
_HTTP_CONFLICT = 409
_HTTP_TOO_EARLY = 425

_SHORTUUID_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_SHORTUUID_LENGTH = 22


class CronType(enum.Enum):
    """How the next cron interval is derived from the current one."""

    RESET = "reset"
    KEEP = "keep"
    BACKOFF = "backoff"


@dataclass
class Config:
    """Server settings that drive retries, timeouts and storage behaviour."""

    store_driver: str = "boltdb"
    update_branch_sync: int = 0
    timeout_to_fail: int = 35
    retry_interval: int = 10
    request_timeout: int = 3
    alert_retry_limit: int = 3
    alert_webhook: str = ""
    now_forward: timedelta = timedelta(0)
    cron_forward: timedelta = timedelta(0)


conf = Config()


class BranchCallError(Exception):
    """A branch call ended with a result that has no transaction meaning."""


@dataclass
class TransBranch:
    """One branch of a global transaction."""

    gid: str = ""
    branch_id: str = ""
    url: str = ""
    bin_data: bytes = b""
    op: str = ""
    status: str = STATUS_PREPARED
    id: int = 0
    finish_time: datetime | None = None
    update_time: datetime | None = None
    error: BaseException | None = field(default=None, compare=False, repr=False)


@dataclass
class BranchStatus:
    """A branch status change waiting to be written in a batch."""

    gid: str
    branch_id: str
    op: str
    status: str
    finish_time: datetime


update_branch_queue: queue.Queue[BranchStatus] = queue.Queue()
"""Branch status changes that are written later, in batches."""


@dataclass
class TransGlobal:
    """A global transaction with the state the server keeps for it."""

    gid: str = ""
    trans_type: str = ""
    status: str = STATUS_PREPARED
    protocol: str = PROTOCOL_HTTP
    query_prepared: str = ""
    custom_data: str = ""
    steps: list[dict[str, str]] = field(default_factory=list)
    bin_payloads: list[bytes] = field(default_factory=list)
    id: int = 0
    create_time: datetime = field(default_factory=datetime.now)
    update_time: datetime | None = None
    finish_time: datetime | None = None
    rollback_time: datetime | None = None
    rollback_reason: str = ""
    result: str = ""
    next_cron_interval: int = 0
    next_cron_time: datetime | None = None
    ext_headers: dict[str, str] = field(default_factory=dict)
    wait_result: bool = False
    timeout_to_fail: int = 0
    retry_interval: int = 0
    request_timeout: int = 0
    retry_limit: int = 0
    retry_count: int = 0
    concurrent: bool = False
    branch_headers: dict[str, str] = field(default_factory=dict)
    last_touched: datetime | None = field(default=None, compare=False, repr=False)
    update_branch_sync: bool = field(default=False, compare=False, repr=False)

    def touch_cron_time(self, ctype: CronType, delay: int = 0) -> None:
        """Schedule the next cron run: after ``delay`` seconds if given, else by ``ctype``."""
        self.last_touched = datetime.now()
        interval = self.get_next_cron_interval(ctype)
        from dtmlite.util import get_next_time

        next_time = get_next_time(delay if delay > 0 else interval)
        get_store().touch_cron_time(self, interval, next_time)
        logger.info("TouchCronTime for: %s", self.gid)

    def change_status(self, status: str, rollback_reason: str = "", result: str = "") -> None:
        """Move the transaction to a new status and save it."""
        updates = ["status", "update_time"]
        now = datetime.now()
        if status == STATUS_SUCCEED:
            self.finish_time = now
            updates.append("finish_time")
        elif status == STATUS_FAILED:
            self.rollback_time = now
            updates.append("rollback_time")
        if rollback_reason:
            self.rollback_reason = rollback_reason
            updates.append("rollback_reason")
        if result:
            self.result = result
            updates.append("result")
        self.update_time = now
        finished = status in (STATUS_SUCCEED, STATUS_FAILED)
        get_store().change_global_status(self, status, updates, finished)
        logger.info("ChangeGlobalStatus to %s ok for %s", status, self.gid)
        self.status = status

    def change_branch_status(self, branch: TransBranch, status: str, branch_pos: int) -> None:
        """Set a branch's status and save it now or queue it for a batch write."""
        now = datetime.now()
        branch.status = status
        branch.finish_time = now
        branch.update_time = now
        sql_store = conf.store_driver in (DB_TYPE_MYSQL, DB_TYPE_POSTGRES)
        if not sql_store or conf.update_branch_sync > 0 or self.update_branch_sync:
            get_store().lock_global_save_branches(self.gid, self.status, [branch], branch_pos)
            logger.info("LockGlobalSaveBranches ok: gid: %s branch: %s", branch.gid, branch.branch_id)
        else:
            update_branch_queue.put(
                BranchStatus(
                    gid=self.gid,
                    branch_id=branch.branch_id,
                    op=branch.op,
                    status=status,
                    finish_time=now,
                )
            )

    def is_timeout(self) -> bool:
        """Tell whether the transaction has lived longer than its timeout."""
        timeout = self.timeout_to_fail
        if timeout == 0 and self.trans_type != "saga":
            timeout = conf.timeout_to_fail
        if timeout == 0:
            return False
        elapsed = datetime.now() - self.create_time + conf.now_forward
        return elapsed >= timedelta(seconds=timeout)

    def need_delay(self, delay: int) -> bool:
        """Tell whether less than ``delay`` seconds have passed since creation."""
        elapsed = datetime.now() - self.create_time + conf.cron_forward
        return elapsed < timedelta(seconds=delay)

    def need_process(self) -> bool:
        """Tell whether the transaction still has work for the server."""
        return (
            self.status in (STATUS_SUBMITTED, STATUS_ABORTING)
            or (self.status == STATUS_PREPARED and self.is_timeout())
        )

    def get_url_result(self, uri: str, branch_id: str, op: str, payload: bytes | None) -> None:
        """Call a branch url; return on success, raise on any other outcome."""
        if not uri:
            return
        payload = payload or b""
        if self.protocol == PROTOCOL_HTTP or uri.startswith(("http://", "https://")):
            if self.protocol == PROTOCOL_JSONRPC and "method" in uri:
                self._jsonrpc_result(uri, branch_id, op, payload)
            else:
                self._http_result(uri, branch_id, op, payload)
            return
        raise ValueError(f"grpc branch calls are not supported: {uri}")

    def _timeout(self) -> float:
        return float(self.request_timeout or conf.request_timeout)

    def _headers(self) -> dict[str, str]:
        return {"Content-type": "application/json", **self.ext_headers, **self.branch_headers}

    def _http_result(self, uri: str, branch_id: str, op: str, payload: bytes) -> None:
        resp = requests.request(
            self.determine_http_method(payload),
            uri,
            data=payload,
            params={
                "gid": self.gid,
                "trans_type": self.trans_type,
                "branch_id": branch_id,
                "op": op,
            },
            headers=self._headers(),
            timeout=self._timeout(),
        )
        _raise_for_response(resp)

    def _jsonrpc_result(self, uri: str, branch_id: str, op: str, payload: bytes) -> None:
        import json

        params: dict[str, Any] = json.loads(payload) if payload else {}
        if params is None:
            params = {}
        params.update(gid=self.gid, trans_type=self.trans_type, branch_id=branch_id, op=op)
        method = parse_qs(urlparse(uri).query).get("method", [""])[0]
        resp = requests.post(
            uri,
            json={"params": params, "jsonrpc": "2.0", "method": method, "id": gen_gid()},
            headers=self._headers(),
            timeout=self._timeout(),
        )
        _raise_for_response(resp)
        _raise_for_jsonrpc(resp)

    def determine_http_method(self, payload: bytes | None) -> str:
        """Return POST when there is a payload or the transaction is xa, else GET."""
        return "POST" if payload or self.trans_type == "xa" else "GET"

    def get_branch_result(self, branch: TransBranch) -> str:
        """Call a branch and return its new status, or raise if it must be retried."""
        try:
            self.get_url_result(branch.url, branch.branch_id, branch.op, branch.bin_data)
        except Exception as err:
            if self.trans_type == "saga" and branch.op == OP_ACTION and is_failure(err):
                branch.error = FailureError(f"url:{branch.url} return failed: {err}")
                return STATUS_FAILED
            if is_ongoing(err):
                raise OngoingError(str(err)) from err
            raise BranchCallError(
                "your http/grpc result should be SUCCESS, FAILURE or ONGOING;"
                f" unknown result will be retried: {err}"
            ) from err
        return STATUS_SUCCEED

    def exec_branch(self, branch: TransBranch, branch_pos: int) -> None:
        """Run a branch, save its status and reschedule the cron run by the outcome."""
        status = ""
        err: Exception | None = None
        try:
            status = self.get_branch_result(branch)
        except Exception as exc:
            err = exc
        if status:
            self.change_branch_status(branch, status, branch_pos)

        if err is None:
            slow = (
                self.last_touched is None
                or datetime.now() - self.last_touched + conf.now_forward >= timedelta(milliseconds=1500)
            )
            stretched = (
                self.next_cron_interval > conf.retry_interval
                and self.next_cron_interval > self.retry_interval
            )
            if slow or stretched:
                self.touch_cron_time(CronType.RESET)
            return
        if isinstance(err, OngoingError):
            self.touch_cron_time(CronType.KEEP)
            raise err
        self.touch_cron_time(CronType.BACKOFF)
        self._may_alert(branch, err)
        raise err

    def _may_alert(self, branch: TransBranch, err: Exception) -> None:
        origin = self.get_next_cron_interval(CronType.RESET)
        ratio = self.next_cron_interval // origin if origin else 0
        if ratio <= 0:
            return
        retry_count = int(math.log2(ratio))
        logger.debug("origin: %d v: %d retryCount: %d", origin, ratio, retry_count)
        if retry_count >= conf.alert_retry_limit and conf.alert_webhook:
            try:
                requests.post(
                    conf.alert_webhook,
                    json={
                        "gid": self.gid,
                        "status": self.status,
                        "branch": branch.url,
                        "error": str(err),
                        "retry_count": retry_count,
                    },
                    timeout=float(conf.request_timeout),
                )
            except requests.RequestException as exc:
                logger.error("alerting webhook error: %s", exc)

    def get_next_cron_interval(self, ctype: CronType) -> int:
        """Return the interval in seconds until the next cron run."""
        if ctype is CronType.BACKOFF:
            return self.next_cron_interval * 2
        if ctype is CronType.KEEP:
            return self.next_cron_interval
        if self.retry_interval != 0:
            return self.retry_interval
        if 0 < self.timeout_to_fail < conf.retry_interval:
            return self.timeout_to_fail
        return conf.retry_interval


def _raise_for_response(resp: requests.Response) -> None:
    text = resp.text
    if resp.status_code == _HTTP_TOO_EARLY or RESULT_ONGOING in text:
        raise OngoingError(text or RESULT_ONGOING)
    if resp.status_code == _HTTP_CONFLICT or RESULT_FAILURE in text:
        raise FailureError(text or RESULT_FAILURE)
    if resp.status_code != _HTTP_OK:
        raise BranchCallError(text)


def _raise_for_jsonrpc(resp: requests.Response) -> None:
    data = resp.json()
    error = data.get("error") if isinstance(data, dict) else None
    if error is None:
        return
    code = str(error.get("code")) if isinstance(error, dict) else ""
    if code == str(JRPC_CODE_FAILURE):
        raise FailureError()
    if code == str(JRPC_CODE_ONGOING):
        raise OngoingError()
    raise BranchCallError(resp.text)


class Store:
    """In-memory storage of global transactions and their branches."""

    def __init__(self) -> None:
        self._globals: dict[str, TransGlobal] = {}
        self._branches: dict[str, list[TransBranch]] = {}
        self._lock = threading.RLock()

    def save_new(self, trans: TransGlobal, branches: list[TransBranch]) -> None:
        """Store a new transaction with its branches."""
        with self._lock:
            if trans.gid in self._globals:
                raise ValueError(f"transaction {trans.gid} already exists")
            self._globals[trans.gid] = dataclasses.replace(trans)
            self._branches[trans.gid] = [dataclasses.replace(b) for b in branches]

    def find_trans_global_store(self, gid: str) -> TransGlobal | None:
        """Return a copy of the stored transaction, or None."""
        with self._lock:
            found = self._globals.get(gid)
            return dataclasses.replace(found) if found else None

    def find_branches(self, gid: str) -> list[TransBranch]:
        """Return copies of the stored branches of a transaction."""
        with self._lock:
            return [dataclasses.replace(b) for b in self._branches.get(gid, [])]

    def _get(self, gid: str) -> TransGlobal:
        stored = self._globals.get(gid)
        if stored is None:
            raise LookupError(f"no TransGlobal with gid: {gid} found")
        return stored

    def touch_cron_time(self, trans: TransGlobal, interval: int, next_time: datetime) -> None:
        """Record when the transaction is next due for the cron."""
        with self._lock:
            stored = self._get(trans.gid)
            now = datetime.now()
            trans.next_cron_interval = interval
            trans.next_cron_time = next_time
            trans.update_time = now
            stored.next_cron_interval = interval
            stored.next_cron_time = next_time
            stored.update_time = now

    def change_global_status(
        self, trans: TransGlobal, new_status: str, updates: list[str], finished: bool
    ) -> None:
        """Save the listed fields and the new status if the stored status still matches."""
        with self._lock:
            stored = self._get(trans.gid)
            if stored.status != trans.status:
                raise LookupError(
                    f"transaction {trans.gid} is {stored.status}, not {trans.status}"
                )
            for name in updates:
                value = new_status if name == "status" else getattr(trans, name)
                setattr(stored, name, value)
            if finished:
                stored.next_cron_time = None

    def lock_global_save_branches(
        self, gid: str, status: str, branches: list[TransBranch], branch_pos: int
    ) -> None:
        """Save branches at ``branch_pos`` (appended when negative) if the status matches."""
        with self._lock:
            stored = self._get(gid)
            if stored.status != status:
                raise LookupError(f"transaction {gid} is {stored.status}, not {status}")
            saved = self._branches.setdefault(gid, [])
            copies = [dataclasses.replace(b) for b in branches]
            if branch_pos < 0:
                saved.extend(copies)
            else:
                saved[branch_pos:branch_pos + len(copies)] = copies


_store = Store()


def set_store(store: Store) -> None:
    """Use the given store for all transactions."""
    global _store
    _store = store


def get_store() -> Store:
    """Return the store in use."""
    return _store


def gen_gid() -> str:
    """Return a new short unique id."""
    number = uuid.uuid4().int
    base = len(_SHORTUUID_ALPHABET)
    digits = []
    while number:
        number, rem = divmod(number, base)
        digits.append(_SHORTUUID_ALPHABET[rem])
    text = "".join(reversed(digits))
    return text.rjust(_SHORTUUID_LENGTH, _SHORTUUID_ALPHABET[0])


def get_trans_global(gid: str) -> TransGlobal:
    """Load a transaction from the store; raise LookupError if there is none."""
    trans = get_store().find_trans_global_store(gid)
    if trans is None:
        raise LookupError(f"no TransGlobal with gid: {gid} found")
    return trans