"""In-memory registry of in-progress interview sessions."""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from mockmate import config
from mockmate.errors import SessionBusy, SessionNotFound, ValidationError
from mockmate.metrics import SESSIONS_ACTIVE

logger = config.get_logger("sessions")


class JobKind(str, Enum):
    SPECIAL = "special"
    BEHAVIOR = "behavior"


# (target duration in minutes, planned question count, ledger work type)
JOB_KIND_SETTINGS = {
    JobKind.SPECIAL: (90, 12, "special_interview"),
    JobKind.BEHAVIOR: (60, 8, "behavior_interview"),
}


class SessionState(str, Enum):
    CREATED = "created"
    OPENING_DELIVERED = "opening_delivered"
    AWAITING_ANSWER = "awaiting_answer"
    GENERATING = "generating"
    ENDING = "ending"
    TIMED_OUT = "timed_out"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = {SessionState.COMPLETED, SessionState.FAILED}

_TRANSITIONS = {
    SessionState.CREATED: {SessionState.OPENING_DELIVERED, SessionState.FAILED},
    SessionState.OPENING_DELIVERED: {SessionState.AWAITING_ANSWER, SessionState.FAILED},
    SessionState.AWAITING_ANSWER: {SessionState.GENERATING, SessionState.TIMED_OUT, SessionState.ENDING, SessionState.FAILED},
    SessionState.GENERATING: {SessionState.AWAITING_ANSWER, SessionState.ENDING, SessionState.FAILED},
    SessionState.ENDING: {SessionState.COMPLETED, SessionState.FAILED},
    SessionState.TIMED_OUT: {SessionState.COMPLETED, SessionState.FAILED},
    SessionState.COMPLETED: set(),
    SessionState.FAILED: set(),
}


@dataclass
class Turn:
    role: str  # "interviewer" | "candidate"
    text: str
    timestamp: float = field(default_factory=time.time)
    reference_answer: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"role": self.role, "text": self.text, "timestamp": self.timestamp}
        if self.reference_answer is not None:
            out["referenceAnswer"] = self.reference_answer
        return out


@dataclass
class Session:
    session_id: str
    user_id: str
    job_kind: JobKind
    start_time: float
    target_duration: int
    total_questions: int
    context: Dict[str, Any] = field(default_factory=dict)
    history: List[Turn] = field(default_factory=list)
    question_count: int = 0
    active: bool = True
    state: SessionState = SessionState.CREATED
    result_id: Optional[str] = None
    record_id: Optional[str] = None
    last_activity: float = field(default_factory=time.time)
    evict_at: Optional[float] = None
    # Transcript index of the interviewer entry awaiting an answer
    entry_index: Optional[int] = None
    persistence_errors: List[Dict[str, Any]] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ValidationError(
                f"invalid session transition {self.state.value} -> {new_state.value}",
                detail={"sessionId": self.session_id},
            )
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.active = False

    def append_turn(self, turn: Turn) -> None:
        if not self.active:
            raise ValidationError("session is no longer active", detail={"sessionId": self.session_id})
        self.history.append(turn)
        self.last_activity = turn.timestamp

    def elapsed_minutes(self, now: float) -> int:
        return max(0, int((now - self.start_time) // 60))

    def history_dicts(self) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self.history]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "jobKind": self.job_kind.value,
            "state": self.state.value,
            "active": self.active,
            "questionCount": self.question_count,
            "totalQuestions": self.total_questions,
            "startTime": self.start_time,
            "targetDuration": self.target_duration,
            "resultId": self.result_id,
            "recordId": self.record_id,
            "history": self.history_dicts(),
        }


class SessionRegistry:
    """Sessions keyed by id with lazy and timer-driven eviction.

    Terminated sessions get an ``evict_at`` deadline and stay readable until
    then; ``get`` drops expired entries on access and ``sweep`` collects both
    expired terminated sessions and idle active ones.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._sessions: Dict[str, Session] = {}
        self._clock = clock
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(
        self,
        user_id: str,
        job_kind: JobKind,
        context: Optional[Dict[str, Any]] = None,
        target_duration: Optional[int] = None,
    ) -> Session:
        duration, total, _ = JOB_KIND_SETTINGS[job_kind]
        now = self._clock()
        session = Session(
            session_id=uuid.uuid4().hex,
            user_id=user_id,
            job_kind=job_kind,
            start_time=now,
            target_duration=target_duration or duration,
            total_questions=total,
            context=dict(context or {}),
            last_activity=now,
        )
        self._sessions[session.session_id] = session
        SESSIONS_ACTIVE.set(len(self._sessions))
        logger.info(json.dumps({
            "event": "session_created",
            "sessionId": session.session_id,
            "userId": user_id,
            "jobKind": job_kind.value,
        }))
        return session

    def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is not None and session.evict_at is not None and self._clock() >= session.evict_at:
            self.evict(session_id)
            return None
        return session

    def require(self, session_id: str, user_id: Optional[str] = None) -> Session:
        session = self.get(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFound("session not found", detail={"sessionId": session_id})
        return session

    async def acquire(self, session_id: str, user_id: str) -> Session:
        """Take the session's write lock; concurrent turns are rejected, not queued."""
        session = self.require(session_id, user_id)
        if session.lock.locked():
            raise SessionBusy("a turn is already in progress for this session", detail={"sessionId": session_id})
        await session.lock.acquire()
        return session

    def schedule_eviction(self, session_id: str, delay_s: Optional[float] = None) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        delay = config.SESSION_EVICTION_GRACE_SECONDS if delay_s is None else delay_s
        session.evict_at = self._clock() + delay
        old = self._timers.pop(session_id, None)
        if old is not None:
            old.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: lazy expiry in get()/sweep() still applies
            return
        self._timers[session_id] = loop.call_later(max(0.0, delay), self._evict_if_due, session_id)

    def _evict_if_due(self, session_id: str) -> None:
        self._timers.pop(session_id, None)
        session = self._sessions.get(session_id)
        if session is not None and session.evict_at is not None:
            self.evict(session_id)

    def evict(self, session_id: str) -> None:
        timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()
        if self._sessions.pop(session_id, None) is not None:
            SESSIONS_ACTIVE.set(len(self._sessions))
            logger.info(json.dumps({"event": "session_evicted", "sessionId": session_id}))

    def sweep(self, idle_timeout_s: Optional[float] = None) -> List[Session]:
        """Evict expired sessions; return active sessions idle past the timeout."""
        now = self._clock()
        idle = config.SESSION_IDLE_TIMEOUT_SECONDS if idle_timeout_s is None else idle_timeout_s
        stale: List[Session] = []
        for sid, session in list(self._sessions.items()):
            if session.evict_at is not None:
                if now >= session.evict_at:
                    self.evict(sid)
            elif session.active and not session.lock.locked() and now - session.last_activity >= idle:
                stale.append(session)
        return stale
