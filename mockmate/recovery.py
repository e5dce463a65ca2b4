"""Durable results and the placeholder-then-update writer.

Before generating a turn the writer reserves a pending, empty transcript entry
and bumps the question counter; once the question text is final it fills that
entry by index, then again once the reference answer is final. An interrupted
turn therefore leaves at most one pending entry behind, which ``release``
drops when nothing of it reached the caller.

Writes go to the in-memory ``ResultStore``; when ``RESULTS_PERSIST_URL`` is
set every write is also mirrored to that endpoint. A failed local write raises
``PersistenceFailure``; a failed mirror raises ``MirrorFailure``, which still
carries the local result in ``value``.
"""

from __future__ import annotations

import asyncio
import copy
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from mockmate import config
from mockmate.errors import MirrorFailure, PersistenceFailure
from mockmate.metrics import RECOVERY_MIRROR_SECONDS, RECOVERY_WRITES_TOTAL

logger = config.get_logger("recovery")

IN_PROGRESS = "in_progress"
COMPLETED = "completed"
ABANDONED = "abandoned"

ENTRY_PENDING = "pending"
ENTRY_STREAMING = "streaming"
ENTRY_COMPLETE = "complete"


@dataclass
class Result:
    result_id: str
    user_id: str
    kind: str  # "mock_interview" | "resume_quiz"
    status: str = IN_PROGRESS
    entries: List[Dict[str, Any]] = field(default_factory=list)
    question_count: int = 0
    answered_count: int = 0
    output: Dict[str, Any] = field(default_factory=dict)
    session_snapshot: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resultId": self.result_id,
            "userId": self.user_id,
            "kind": self.kind,
            "status": self.status,
            "entries": copy.deepcopy(self.entries),
            "questionCount": self.question_count,
            "answeredCount": self.answered_count,
            "output": copy.deepcopy(self.output),
            "metadata": copy.deepcopy(self.metadata),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class ResultStore:
    def __init__(self):
        self._results: Dict[str, Result] = {}
        self._lock = asyncio.Lock()

    def get(self, result_id: str) -> Optional[Result]:
        return self._results.get(result_id)

    def __len__(self) -> int:
        return len(self._results)

    async def insert(self, result: Result) -> None:
        async with self._lock:
            if result.result_id in self._results:
                raise KeyError(f"result already exists: {result.result_id}")
            self._results[result.result_id] = result

    async def update(self, result_id: str, fn: Callable[[Result], Any]) -> Any:
        async with self._lock:
            result = self._results.get(result_id)
            if result is None:
                raise KeyError(f"unknown result: {result_id}")
            out = fn(result)
            result.updated_at = time.time()
            return out


def _new_entry(question: str = "", status: str = ENTRY_PENDING, asked_at: Optional[float] = None) -> Dict[str, Any]:
    now = time.time()
    return {
        "question": question,
        "answer": "",
        "referenceAnswer": None,
        "status": status,
        "askedAt": asked_at or now,
        "answeredAt": None,
        "savedAt": now,
    }


class RecoveryWriter:
    def __init__(self, store: ResultStore):
        self.store = store

    async def create_placeholder(self, result: Result) -> None:
        await self._write("create", result.result_id, lambda: self.store.insert(result), mirror=result.to_dict())

    async def append_entry(self, result_id: str, question: str, reference_answer: Optional[str] = None) -> int:
        """Append an already-complete interviewer entry (the opening statement)."""
        def _apply(r: Result) -> int:
            entry = _new_entry(question, ENTRY_COMPLETE)
            entry["referenceAnswer"] = reference_answer
            r.entries.append(entry)
            return len(r.entries) - 1

        return await self._update("append", result_id, _apply, {"question": question})

    async def reserve(self, result_id: str) -> int:
        def _apply(r: Result) -> int:
            r.entries.append(_new_entry())
            r.question_count += 1
            return len(r.entries) - 1

        return await self._update("reserve", result_id, _apply, {})

    async def fill_primary(self, result_id: str, index: int, text: str, final: bool = True) -> None:
        def _apply(r: Result) -> None:
            entry = _entry_at(r, index)
            entry["question"] = text
            entry["status"] = ENTRY_STREAMING if final else ENTRY_PENDING
            entry["savedAt"] = time.time()

        await self._update("fill_primary", result_id, _apply, {"index": index, "question": text})

    async def fill_secondary(self, result_id: str, index: int, text: Optional[str]) -> None:
        def _apply(r: Result) -> None:
            entry = _entry_at(r, index)
            entry["referenceAnswer"] = text
            entry["status"] = ENTRY_COMPLETE
            entry["savedAt"] = time.time()

        await self._update("fill_secondary", result_id, _apply, {"index": index, "referenceAnswer": text})

    async def record_answer(self, result_id: str, index: int, answer: str) -> None:
        def _apply(r: Result) -> None:
            entry = _entry_at(r, index)
            if not entry["answer"]:
                r.answered_count += 1
            entry["answer"] = answer
            entry["answeredAt"] = time.time()
            entry["savedAt"] = time.time()

        await self._update("record_answer", result_id, _apply, {"index": index, "answer": answer})

    async def release(self, result_id: str, index: int) -> bool:
        """Drop a reserved entry that never received question text."""
        def _apply(r: Result) -> bool:
            if index != len(r.entries) - 1:
                return False
            entry = r.entries[index]
            if entry["question"]:
                return False
            r.entries.pop()
            r.question_count = max(0, r.question_count - 1)
            return True

        return await self._update("release", result_id, _apply, {"index": index})

    async def finalize(
        self,
        result_id: str,
        status: str,
        output: Optional[Dict[str, Any]] = None,
        session_snapshot: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        def _apply(r: Result) -> None:
            r.status = status
            if output:
                r.output.update(output)
            if session_snapshot is not None:
                r.session_snapshot = session_snapshot
            if metadata:
                r.metadata.update(metadata)

        await self._update("finalize", result_id, _apply, {"status": status, "output": output or {}})

    async def _update(self, op: str, result_id: str, fn: Callable[[Result], Any], mirror: Dict[str, Any]) -> Any:
        return await self._write(op, result_id, lambda: self.store.update(result_id, fn), mirror=mirror)

    async def _write(self, op: str, result_id: str, do: Callable[[], Any], mirror: Dict[str, Any]) -> Any:
        try:
            out = await do()
        except Exception as e:
            RECOVERY_WRITES_TOTAL.labels(op=op, outcome="error").inc()
            logger.error(json.dumps({"event": "recovery_write_failed", "op": op, "resultId": result_id, "error": str(e)}))
            raise PersistenceFailure(f"{op} failed for result {result_id}: {e}", detail={"op": op, "resultId": result_id}) from e
        RECOVERY_WRITES_TOTAL.labels(op=op, outcome="success").inc()
        try:
            await _mirror_if_configured(op, result_id, mirror)
        except MirrorFailure as e:
            e.value = out
            raise
        return out


def _entry_at(result: Result, index: int) -> Dict[str, Any]:
    if index < 0 or index >= len(result.entries):
        raise IndexError(f"no transcript entry at index {index}")
    return result.entries[index]


async def _mirror_if_configured(op: str, result_id: str, payload: Dict[str, Any]) -> None:
    url = config.RESULTS_PERSIST_URL
    if not url:
        return
    headers = {"Content-Type": "application/json"}
    if config.RESULTS_PERSIST_SECRET:
        headers["Authorization"] = f"Bearer {config.RESULTS_PERSIST_SECRET}"
    body = {"op": op, "resultId": result_id, "payload": payload, "ts": int(time.time() * 1000)}
    detail = {"op": op, "resultId": result_id}
    t0 = time.perf_counter()
    try:
        async with httpx.AsyncClient(timeout=config.RESULTS_PERSIST_TIMEOUT_SECONDS) as client:
            resp = await client.post(url, json=body, headers=headers)
    except httpx.HTTPError as e:
        RECOVERY_WRITES_TOTAL.labels(op=op, outcome="mirror_error").inc()
        logger.error(json.dumps({"event": "recovery_mirror_failed", "op": op, "resultId": result_id, "error": str(e)}))
        raise MirrorFailure(f"result mirror unreachable for {op}: {e}", detail=detail) from e
    finally:
        RECOVERY_MIRROR_SECONDS.observe(time.perf_counter() - t0)
    if resp.status_code >= 400:
        RECOVERY_WRITES_TOTAL.labels(op=op, outcome="mirror_error").inc()
        logger.error(json.dumps({"event": "recovery_mirror_rejected", "op": op, "resultId": result_id, "status": resp.status_code}))
        raise MirrorFailure(f"result mirror rejected {op}: HTTP {resp.status_code}", detail=dict(detail, status=resp.status_code))
