"""Per-type processing of a global transaction: saga, msg, tcc, xa and workflow."""

from __future__ import annotations

import abc
import base64
import json
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from dtmlite.errors import (
    STATUS_ABORTING,
    STATUS_FAILED,
    STATUS_PREPARED,
    STATUS_SUBMITTED,
    STATUS_SUCCEED,
    OngoingError,
    is_failure,
    is_ongoing,
)
from dtmlite.trans import (
    OP_ACTION,
    OP_CANCEL,
    OP_COMMIT,
    OP_COMPENSATE,
    OP_CONFIRM,
    OP_ROLLBACK,
    PROTOCOL_GRPC,
    CronType,
    TransBranch,
    TransGlobal,
    conf,
)

logger = logging.getLogger(__name__)

MSG_TOPIC_PREFIX = "topic://"

topic_urls: dict[str, list[str]] = {}
"""Subscribed urls of each msg topic."""

_WAIT_ONCE_SECONDS = 3


def _timeout_reason(trans: TransGlobal) -> str:
    return f"Timeout after {trans.timeout_to_fail} seconds"


class Processor(abc.ABC):
    """Runs one kind of global transaction one step further."""

    def __init__(self, trans: TransGlobal) -> None:
        self.trans = trans

    def gen_branches(self) -> list[TransBranch]:
        """Return the branches that are created when the transaction is submitted."""
        return []

    @abc.abstractmethod
    def process_once(self, branches: list[TransBranch]) -> None:
        """Process the transaction once; raise if it must be retried later."""


# ---------------------------------------------------------------- saga


@dataclass
class _SagaCustom:
    orders: dict[int, list[int]] = field(default_factory=dict)
    concurrent: bool = False
    c_orders: dict[int, list[int]] = field(default_factory=dict)

    @classmethod
    def parse(cls, data: str) -> _SagaCustom:
        custom = cls()
        if not data:
            return custom
        obj = json.loads(data) or {}
        custom.concurrent = bool(obj.get("concurrent", False))
        raw_orders = obj.get("orders") or {}
        custom.orders = {int(k): [int(x) for x in v or []] for k, v in raw_orders.items()}
        for step, pres in custom.orders.items():
            for pre in pres:
                custom.c_orders.setdefault(pre, []).append(step)
        return custom


@dataclass
class _BranchResult:
    index: int
    status: str
    op: str
    started: bool = False
    error: BaseException | None = None


class _SagaRun:
    """State of one pass over the branches of a saga."""

    def __init__(self, trans: TransGlobal, branches: list[TransBranch], custom: _SagaCustom) -> None:
        self.trans = trans
        self.branches = branches
        self.custom = custom
        self.n = len(branches)
        self.results = [_BranchResult(i, b.status, b.op) for i, b in enumerate(branches)]
        self.done: queue.Queue[_BranchResult] = queue.Queue()
        self.failure_error: BaseException | None = None
        self.a_to_start = sum(1 for b in branches if b.op == OP_ACTION and b.status == STATUS_PREPARED)
        self.a_failed = sum(1 for b in branches if b.op == OP_ACTION and b.status == STATUS_FAILED)
        self.a_started = self.a_done = self.a_succeed = 0
        self.c_to_start = self.c_done = self.c_succeed = 0

    def _should_run(self, current: int) -> bool:
        if (
            not self.custom.concurrent
            and current >= 2
            and self.results[current - 2].status != STATUS_SUCCEED
        ):
            return False
        return all(
            self.results[pre * 2 + 1].status == STATUS_SUCCEED
            for pre in self.custom.orders.get(current // 2, [])
        )

    def _rollbacked(self, i: int) -> bool:
        return (
            self.results[i].status == STATUS_SUCCEED
            or self.results[i + 1].status == STATUS_PREPARED
        )

    def _should_rollback(self, current: int) -> bool:
        if self._rollbacked(current):
            return False
        if not self.custom.concurrent and current < self.n - 2 and not self._rollbacked(current + 2):
            return False
        return all(self._rollbacked(2 * nxt) for nxt in self.custom.c_orders.get(current // 2, []))

    def _pick_actions(self) -> list[int]:
        picked = [
            i
            for i in range(1, self.n, 2)
            if not self.results[i].started
            and self.results[i].status == STATUS_PREPARED
            and self._should_run(i)
        ]
        logger.debug("toRun picked for action is: %s", picked)
        return picked

    def _pick_compensates(self) -> list[int]:
        picked = [
            i
            for i in range(self.n - 2, -1, -2)
            if not self.results[i].started
            and self.results[i].status == STATUS_PREPARED
            and self._should_rollback(i)
        ]
        logger.debug("toRun picked for compensate is: %s", picked)
        return picked

    def _exec(self, i: int) -> None:
        branch = self.branches[i]
        try:
            self.trans.exec_branch(branch, i)
        except Exception as err:  # the outcome travels back through the branch status
            if not is_ongoing(err):
                logger.error(
                    "exec branch %s %s %s error: %s", branch.branch_id, branch.op, branch.url, err
                )
        finally:
            self.done.put(_BranchResult(i, branch.status, branch.op, error=branch.error))

    def _spawn(self, i: int) -> None:
        threading.Thread(target=self._exec, args=(i,), daemon=True).start()

    def _start(self, to_run: list[int]) -> None:
        for i in to_run:
            self.results[i].started = True
            if self.results[i].op == OP_ACTION:
                self.a_started += 1
            self._spawn(i)

    def _wait_once(self) -> None:
        try:
            r = self.done.get(timeout=_WAIT_ONCE_SECONDS)
        except queue.Empty:
            logger.debug("wait once for done")
            return
        trans = self.trans
        self.results[r.index].status = r.status
        if r.op == OP_ACTION:
            if trans.retry_limit > 0 and r.status in (STATUS_PREPARED, STATUS_SUBMITTED):
                if trans.retry_count < trans.retry_limit:
                    trans.retry_count += 1
                    branch = self.branches[r.index]
                    logger.info(
                        "Retrying branch %s %s %s, RetryLimit: %d, RetryCount: %d",
                        branch.branch_id, branch.op, branch.url,
                        trans.retry_limit, trans.retry_count,
                    )
                    self._spawn(r.index)
                    return
                trans.change_status(
                    STATUS_ABORTING,
                    rollback_reason=(
                        "RetryCount is greater than RetryLimit, "
                        f"RetryLimit: {trans.retry_limit}"
                    ),
                )
                return
            self.a_done += 1
            if r.status == STATUS_FAILED:
                self.a_failed += 1
                self.failure_error = r.error
            elif r.status == STATUS_SUCCEED:
                self.a_succeed += 1
        else:
            self.c_done += 1
            if r.status == STATUS_SUCCEED:
                self.c_succeed += 1
        logger.debug("branch done: %s", r)

    def _prepare_to_compensate(self) -> None:
        for i in self._pick_actions():
            self.results[i].started = True
        for res in self.results[1::2]:
            # started actions may have run, so their compensates must run too
            if res.started and res.status == STATUS_PREPARED:
                res.status = STATUS_SUCCEED
        self.c_to_start += sum(
            1
            for i, res in enumerate(self.results)
            if res.op == OP_COMPENSATE
            and res.status != STATUS_SUCCEED
            and self.results[i + 1].status != STATUS_PREPARED
        )
        logger.debug("rsCToStart: %d", self.c_to_start)

    def run(self) -> None:
        trans = self.trans
        deadline = time.monotonic() + conf.request_timeout + 2
        while (
            time.monotonic() < deadline
            and trans.status == STATUS_SUBMITTED
            and not trans.is_timeout()
            and self.a_failed == 0
        ):
            self._start(self._pick_actions())
            if self.a_done == self.a_started:
                break
            self._wait_once()

        if trans.status == STATUS_SUBMITTED and self.a_failed == 0 and self.a_to_start == self.a_succeed:
            trans.change_status(STATUS_SUCCEED)
            return
        if trans.status == STATUS_SUBMITTED and self.a_failed > 0:
            reason = str(self.failure_error) if self.failure_error is not None else "fail message lost"
            trans.change_status(STATUS_ABORTING, rollback_reason=reason)
        if trans.status == STATUS_SUBMITTED and trans.is_timeout():
            trans.change_status(STATUS_ABORTING, rollback_reason=_timeout_reason(trans))
        if trans.status == STATUS_ABORTING:
            self._prepare_to_compensate()
        while time.monotonic() < deadline and trans.status == STATUS_ABORTING:
            self._start(self._pick_compensates())
            if self.c_done == self.c_to_start:
                break
            self._wait_once()
        if trans.status == STATUS_ABORTING and self.c_to_start == self.c_succeed:
            trans.change_status(STATUS_FAILED)


class SagaProcessor(Processor):
    """Runs saga actions in order and compensates them when one fails."""

    def gen_branches(self) -> list[TransBranch]:
        branches = []
        for i, step in enumerate(self.trans.steps):
            for op in (OP_COMPENSATE, OP_ACTION):
                branches.append(
                    TransBranch(
                        gid=self.trans.gid,
                        branch_id=f"{i + 1:02d}",
                        bin_data=self.trans.bin_payloads[i],
                        url=step.get(op, ""),
                        op=op,
                        status=STATUS_PREPARED,
                    )
                )
        return branches

    def process_once(self, branches: list[TransBranch]) -> None:
        trans = self.trans
        logger.debug("status: %s timeout: %s", trans.status, trans.is_timeout())
        if trans.status == STATUS_SUBMITTED and trans.is_timeout():
            trans.change_status(STATUS_ABORTING, rollback_reason=_timeout_reason(trans))
        custom = _SagaCustom.parse(trans.custom_data)
        if custom.concurrent or trans.timeout_to_fail > 0:
            trans.update_branch_sync = True
        _SagaRun(trans, branches, custom).run()


# ---------------------------------------------------------------- msg


def _msg_delay(custom_data: str) -> int:
    if not custom_data:
        return 0
    obj = json.loads(custom_data) or {}
    for key, value in obj.items():
        if key.lower() == "delay":
            return int(value or 0)
    return 0


class MsgProcessor(Processor):
    """Delivers a message to every action once the local work is known done."""

    def gen_branches(self) -> list[TransBranch]:
        branches = []
        for i, step in enumerate(self.trans.steps):
            action = step.get(OP_ACTION, "")
            may_topic = action.removeprefix(MSG_TOPIC_PREFIX)
            urls = [may_topic] if may_topic == action else list(topic_urls.get(may_topic, []))
            if not urls:
                raise ValueError("topic not found")
            for j, url in enumerate(urls):
                suffix = "" if len(urls) == 1 else f"-{j + 1:02d}"
                branches.append(
                    TransBranch(
                        gid=self.trans.gid,
                        branch_id=f"{i + 1:02d}{suffix}",
                        bin_data=self.trans.bin_payloads[i],
                        url=url,
                        op=OP_ACTION,
                        status=STATUS_PREPARED,
                    )
                )
        return branches

    def may_query_prepared(self) -> None:
        """Ask the caller whether a prepared message timed out was committed."""
        trans = self.trans
        if not trans.need_process() or trans.status == STATUS_SUBMITTED:
            return
        try:
            trans.get_url_result(trans.query_prepared, "00", "msg", None)
        except Exception as err:
            if is_failure(err):
                trans.change_status(STATUS_FAILED)
            elif is_ongoing(err):
                trans.touch_cron_time(CronType.RESET)
            else:
                logger.error("getting result failed for %s. error: %s", trans.query_prepared, err)
                trans.touch_cron_time(CronType.BACKOFF)
            return
        trans.change_status(STATUS_SUBMITTED)

    def process_once(self, branches: list[TransBranch]) -> None:
        self.may_query_prepared()
        trans = self.trans
        if not trans.need_process() or trans.status == STATUS_PREPARED:
            return
        delay = _msg_delay(trans.custom_data)
        if delay > 0 and trans.need_delay(delay):
            trans.touch_cron_time(CronType.KEEP, delay)
            return

        pending = [
            (i, b) for i, b in enumerate(branches)
            if b.op == OP_ACTION and b.status == STATUS_PREPARED
        ]
        err: BaseException | None = None
        if trans.concurrent and pending:
            with ThreadPoolExecutor(max_workers=len(pending)) as pool:
                futures = [pool.submit(trans.exec_branch, b, i) for i, b in pending]
                for future in as_completed(futures):
                    err = future.exception()
                    if err is not None:
                        break
        else:
            for i, branch in pending:
                try:
                    trans.exec_branch(branch, i)
                except Exception as exc:
                    err = exc
                    break
        if isinstance(err, OngoingError):
            return
        if err is not None:
            raise err
        trans.change_status(STATUS_SUCCEED)


# ---------------------------------------------------------------- tcc / xa


class TccProcessor(Processor):
    """Confirms or cancels the tried branches, last one first."""

    def process_once(self, branches: list[TransBranch]) -> None:
        trans = self.trans
        if not trans.need_process():
            return
        if trans.status == STATUS_PREPARED and trans.is_timeout():
            trans.change_status(STATUS_ABORTING, rollback_reason=_timeout_reason(trans))
        submitted = trans.status == STATUS_SUBMITTED
        op = OP_CONFIRM if submitted else OP_CANCEL
        for current in range(len(branches) - 1, -1, -1):
            branch = branches[current]
            if branch.op == op and branch.status == STATUS_PREPARED:
                logger.debug("branch info: current: %d ID: %d", current, branch.id)
                trans.exec_branch(branch, current)
        trans.change_status(STATUS_SUCCEED if submitted else STATUS_FAILED)


class XaProcessor(Processor):
    """Commits or rolls back every xa branch."""

    def process_once(self, branches: list[TransBranch]) -> None:
        trans = self.trans
        if not trans.need_process():
            return
        if trans.status == STATUS_PREPARED and trans.is_timeout():
            trans.change_status(STATUS_ABORTING, rollback_reason=_timeout_reason(trans))
        submitted = trans.status == STATUS_SUBMITTED
        op = OP_COMMIT if submitted else OP_ROLLBACK
        for i, branch in enumerate(branches):
            if branch.op == op and branch.status != STATUS_SUCCEED:
                trans.exec_branch(branch, i)
        trans.change_status(STATUS_SUCCEED if submitted else STATUS_FAILED)


# ---------------------------------------------------------------- workflow


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _workflow_data_proto(data: bytes) -> bytes:
    """Encode a WorkflowData message: field 1 holds the bytes."""
    if not data:
        return b""
    return b"\x0a" + _varint(len(data)) + data


class WorkflowProcessor(Processor):
    """Asks the workflow owner to resume an unfinished workflow."""

    def process_once(self, branches: list[TransBranch]) -> None:
        trans = self.trans
        if trans.status in (STATUS_FAILED, STATUS_SUCCEED):
            return
        custom = json.loads(trans.custom_data) if trans.custom_data else {}
        custom = custom or {}
        name = custom.get("name", "")
        raw = custom.get("data")
        data = base64.b64decode(raw) if raw else b""
        if trans.protocol == PROTOCOL_GRPC:
            data = _workflow_data_proto(data)
        trans.get_url_result(trans.query_prepared, "00", name, data)


_PROCESSORS: dict[str, type[Processor]] = {
    "saga": SagaProcessor,
    "msg": MsgProcessor,
    "tcc": TccProcessor,
    "xa": XaProcessor,
    "workflow": WorkflowProcessor,
}


def create_processor(trans: TransGlobal) -> Processor:
    """Return the processor for the transaction's type."""
    try:
        cls = _PROCESSORS[trans.trans_type]
    except KeyError:
        raise ValueError(f"unknown trans type: {trans.trans_type}") from None
    return cls(trans)