"""Consumption ledger: metered billing around generation work.

Every billable unit goes through three calls:

- ``begin`` debits one unit and opens a ``pending`` record (or short-circuits
  on an idempotency key that already settled);
- ``settle`` closes the record as ``success``;
- ``abort`` credits the unit back and closes the record as ``failed``.

The idempotency lookup and the debit run under one lock, so concurrent
requests sharing a key yield exactly one pending record. A refund that fails
inside ``abort`` cannot be healed here; it is logged at CRITICAL, counted,
reported to the operator webhook and re-raised as ``RefundFailure``.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from mockmate import config
from mockmate.errors import DuplicateInProgress, InsufficientBalance, LedgerStateError, RefundFailure
from mockmate.metrics import LEDGER_REFUND_FAILURES_TOTAL, LEDGER_REJECTIONS_TOTAL, LEDGER_TRANSITIONS_TOTAL

logger = config.get_logger("ledger")

WORK_TYPES = ("resume_quiz", "special_interview", "behavior_interview")

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"


@dataclass
class ConsumptionRecord:
    record_id: str
    user_id: str
    work_type: str
    status: str
    idempotency_key: Optional[str] = None
    result_id: Optional[str] = None
    input_snapshot: Dict[str, Any] = field(default_factory=dict)
    output_snapshot: Dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    failed_at: Optional[float] = None
    error_message: Optional[str] = None
    refunded: bool = False
    refunded_at: Optional[float] = None

    @property
    def closed(self) -> bool:
        if self.status == SUCCESS:
            return True
        return self.status == FAILED and self.refunded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordId": self.record_id,
            "userId": self.user_id,
            "type": self.work_type,
            "status": self.status,
            "idempotencyKey": self.idempotency_key,
            "resultId": self.result_id,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "failedAt": self.failed_at,
            "errorMessage": self.error_message,
            "isRefunded": self.refunded,
        }


@dataclass(frozen=True)
class PendingTicket:
    record_id: str
    user_id: str
    work_type: str
    result_id: Optional[str]


@dataclass(frozen=True)
class AlreadySettled:
    record: ConsumptionRecord

    @property
    def result_id(self) -> Optional[str]:
        return self.record.result_id


BeginOutcome = Union[PendingTicket, AlreadySettled]


class BalanceStore:
    """In-memory balances keyed by (user id, work type).

    ``decrement_if_positive`` and ``increment`` are the only mutations, each
    atomic with respect to the event loop.
    """

    def __init__(self, free_credits: Optional[int] = None):
        self._free = config.FREE_CREDITS_DEFAULT if free_credits is None else free_credits
        self._balances: Dict[Tuple[str, str], int] = {}

    def _key(self, user_id: str, work_type: str) -> Tuple[str, str]:
        key = (user_id, work_type)
        if key not in self._balances:
            self._balances[key] = self._free
        return key

    def get(self, user_id: str, work_type: str) -> int:
        return self._balances[self._key(user_id, work_type)]

    def decrement_if_positive(self, user_id: str, work_type: str) -> bool:
        key = self._key(user_id, work_type)
        if self._balances[key] <= 0:
            return False
        self._balances[key] -= 1
        return True

    def increment(self, user_id: str, work_type: str, units: int = 1) -> int:
        key = self._key(user_id, work_type)
        self._balances[key] += units
        return self._balances[key]


class ConsumptionLedger:
    def __init__(self, balances: Optional[BalanceStore] = None):
        self.balances = balances or BalanceStore()
        self._records: Dict[str, ConsumptionRecord] = {}
        self._by_key: Dict[Tuple[str, str], List[str]] = {}
        self._lock = asyncio.Lock()

    # ----- saga -----

    async def begin(
        self,
        user_id: str,
        work_type: str,
        idempotency_key: Optional[str] = None,
        input_snapshot: Optional[Dict[str, Any]] = None,
        result_id: Optional[str] = None,
    ) -> BeginOutcome:
        if work_type not in WORK_TYPES:
            raise ValueError(f"unknown work type: {work_type}")
        key = (idempotency_key or "").strip() or None
        async with self._lock:
            if key:
                for rid in self._by_key.get((user_id, key), []):
                    prior = self._records[rid]
                    if prior.status == SUCCESS:
                        logger.info(json.dumps({
                            "event": "ledger_replay_settled",
                            "userId": user_id,
                            "recordId": prior.record_id,
                            "resultId": prior.result_id,
                        }))
                        return AlreadySettled(prior)
                    if prior.status == PENDING:
                        LEDGER_REJECTIONS_TOTAL.labels(work_type=work_type, reason="duplicate_in_progress").inc()
                        raise DuplicateInProgress(
                            "a request with this idempotency key is still in progress",
                            detail={"recordId": prior.record_id},
                        )
            if not self.balances.decrement_if_positive(user_id, work_type):
                LEDGER_REJECTIONS_TOTAL.labels(work_type=work_type, reason="insufficient_balance").inc()
                raise InsufficientBalance(f"no remaining {work_type} credits", detail={"workType": work_type})
            record = ConsumptionRecord(
                record_id=uuid.uuid4().hex,
                user_id=user_id,
                work_type=work_type,
                status=PENDING,
                idempotency_key=key,
                result_id=result_id or uuid.uuid4().hex,
                input_snapshot=dict(input_snapshot or {}),
            )
            self._records[record.record_id] = record
            if key:
                self._by_key.setdefault((user_id, key), []).append(record.record_id)
        LEDGER_TRANSITIONS_TOTAL.labels(work_type=work_type, status=PENDING).inc()
        logger.info(json.dumps({
            "event": "ledger_begin",
            "userId": user_id,
            "workType": work_type,
            "recordId": record.record_id,
            "resultId": record.result_id,
            "idempotent": bool(key),
        }))
        return PendingTicket(record.record_id, user_id, work_type, record.result_id)

    async def settle(self, ticket: PendingTicket, output_snapshot: Optional[Dict[str, Any]] = None) -> ConsumptionRecord:
        async with self._lock:
            record = self._require(ticket)
            if record.status != PENDING:
                raise LedgerStateError(f"cannot settle a {record.status} record", detail={"recordId": record.record_id})
            record.status = SUCCESS
            record.output_snapshot = dict(output_snapshot or {})
            record.completed_at = time.time()
        LEDGER_TRANSITIONS_TOTAL.labels(work_type=record.work_type, status=SUCCESS).inc()
        logger.info(json.dumps({"event": "ledger_settle", "recordId": record.record_id, "resultId": record.result_id}))
        return record

    async def abort(self, ticket: PendingTicket, error_info: Any = None) -> ConsumptionRecord:
        message = str(error_info)[:500] if error_info is not None else None
        async with self._lock:
            record = self._require(ticket)
            if record.status == SUCCESS:
                raise LedgerStateError("cannot abort a settled record", detail={"recordId": record.record_id})
            if record.refunded:
                return record
            record.status = FAILED
            record.failed_at = record.failed_at or time.time()
            record.error_message = message or record.error_message
            try:
                self.balances.increment(record.user_id, record.work_type)
            except Exception as e:
                refund_error = e
            else:
                refund_error = None
                record.refunded = True
                record.refunded_at = time.time()
        if refund_error is not None:
            await self._escalate_refund_failure(record, refund_error)
            raise RefundFailure(
                "refund failed; balance requires operator attention",
                detail={"recordId": record.record_id},
            ) from refund_error
        LEDGER_TRANSITIONS_TOTAL.labels(work_type=record.work_type, status=FAILED).inc()
        logger.info(json.dumps({
            "event": "ledger_abort",
            "recordId": record.record_id,
            "resultId": record.result_id,
            "refunded": True,
            "error": message,
        }))
        return record

    # ----- queries / admin -----

    async def grant(self, user_id: str, work_type: str, units: int) -> int:
        if work_type not in WORK_TYPES:
            raise ValueError(f"unknown work type: {work_type}")
        if units <= 0:
            raise ValueError("units must be positive")
        async with self._lock:
            balance = self.balances.increment(user_id, work_type, units)
        logger.info(json.dumps({"event": "ledger_grant", "userId": user_id, "workType": work_type, "units": units}))
        return balance

    def balance(self, user_id: str, work_type: str) -> int:
        return self.balances.get(user_id, work_type)

    def get_record(self, record_id: str) -> Optional[ConsumptionRecord]:
        return self._records.get(record_id)

    def records_for(self, user_id: str) -> List[ConsumptionRecord]:
        return [r for r in self._records.values() if r.user_id == user_id]

    def pending_count(self) -> int:
        return sum(1 for r in self._records.values() if r.status == PENDING)

    def _require(self, ticket: PendingTicket) -> ConsumptionRecord:
        record = self._records.get(ticket.record_id)
        if record is None:
            raise LedgerStateError("unknown consumption record", detail={"recordId": ticket.record_id})
        return record

    async def _escalate_refund_failure(self, record: ConsumptionRecord, error: BaseException) -> None:
        LEDGER_REFUND_FAILURES_TOTAL.labels(work_type=record.work_type).inc()
        alert = {
            "event": "ledger_refund_failed",
            "severity": "critical",
            "recordId": record.record_id,
            "userId": record.user_id,
            "workType": record.work_type,
            "resultId": record.result_id,
            "error": str(error),
        }
        logger.critical(json.dumps(alert))
        await _send_operator_alert(alert)


async def _send_operator_alert(alert: Dict[str, Any]) -> None:
    url = config.ALERT_WEBHOOK_URL
    if not url:
        return
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.post(url, json=alert, headers={"Content-Type": "application/json"})
            if resp.status_code >= 400:
                logger.critical(json.dumps({"event": "operator_alert_rejected", "status": resp.status_code, "alert": alert}))
    except httpx.HTTPError as e:
        # The CRITICAL log line above remains the alert of record
        logger.critical(json.dumps({"event": "operator_alert_failed", "error": str(e), "alert": alert}))
