"""Session orchestration: the interview state machine and the quiz job.

Every public operation returns a ``Channel`` of events immediately and does
its work in a background task. Whatever goes wrong, the channel receives
exactly one terminal event (``end``/``error`` for interviews,
``complete``/``error`` for the quiz) and is then closed.

Billing wraps each interview as a whole: ``begin`` on start, ``settle`` once
the interview completes (or goes idle) and ``abort`` if a generated turn
fails. A disconnected client only stops event delivery; the turn still runs
to the end so the ticket never stays pending. Work cancelled at shutdown
closes its ticket from a shielded cleanup task.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from mockmate import config, prompts
from mockmate.channel import Channel
from mockmate.errors import (
    GenerationFailure,
    MirrorFailure,
    MockMateError,
    PersistenceFailure,
    RefundFailure,
    ValidationError,
)
from mockmate.events import (
    EndEvent,
    ErrorEvent,
    QuestionEvent,
    ReferenceAnswerEvent,
    StartEvent,
    ThinkingEvent,
    WaitingEvent,
)
from mockmate.gateway import GenerationGateway, PromptContext, parse_json_output
from mockmate.ledger import PENDING, AlreadySettled, ConsumptionLedger, PendingTicket
from mockmate.metrics import SESSIONS_TERMINATED_TOTAL
from mockmate.progress import ProgressEmitter
from mockmate.recovery import ABANDONED, COMPLETED, RecoveryWriter, Result
from mockmate.sessions import JOB_KIND_SETTINGS, JobKind, Session, SessionRegistry, SessionState, Turn
from mockmate.splitter import PRIMARY, SegmentBoundary, SegmentDelta, SegmentSplitter

logger = config.get_logger("orchestrator")

QUIZ_WORK_TYPE = "resume_quiz"
MAX_RESUME_CHARS = 50000
MAX_ANSWER_CHARS = 10000
MAX_QUIZ_QUESTIONS = 30
# Rough size of one generated quiz question, used to pace progress
_QUIZ_CHARS_PER_QUESTION = 400


def _text(payload: Dict[str, Any], key: str, limit: Optional[int] = None) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string", detail={"field": key})
    value = value.strip()
    if limit is not None and len(value) > limit:
        raise ValidationError(f"{key} exceeds {limit} characters", detail={"field": key})
    return value or None


def _salary_range(payload: Dict[str, Any]) -> Optional[str]:
    lo, hi = payload.get("minSalary"), payload.get("maxSalary")
    if lo is None and hi is None:
        return None
    for key, val in (("minSalary", lo), ("maxSalary", hi)):
        if val is not None and (isinstance(val, bool) or not isinstance(val, (int, float)) or val < 0):
            raise ValidationError(f"{key} must be a non-negative number", detail={"field": key})
    if lo is not None and hi is not None:
        if lo > hi:
            raise ValidationError("minSalary must not exceed maxSalary", detail={"field": "minSalary"})
        return f"{lo:g}-{hi:g}"
    return f"{lo:g}+" if lo is not None else f"up to {hi:g}"


def parse_interview_request(payload: Dict[str, Any]) -> Dict[str, Any]:
    kind = payload.get("interviewType")
    try:
        job_kind = JobKind(kind)
    except ValueError:
        raise ValidationError(
            "interviewType must be one of: " + ", ".join(k.value for k in JobKind),
            detail={"field": "interviewType"},
        ) from None
    resume = _text(payload, "resumeContent", MAX_RESUME_CHARS)
    if not resume:
        raise ValidationError("resumeContent is required", detail={"field": "resumeContent"})
    return {
        "job_kind": job_kind,
        "candidate_name": _text(payload, "candidateName", 100),
        "company": _text(payload, "company", 200),
        "position_name": _text(payload, "positionName", 200),
        "salary_range": _salary_range(payload),
        "jd": _text(payload, "jd", MAX_RESUME_CHARS),
        "resume_content": resume,
    }


def parse_quiz_request(payload: Dict[str, Any]) -> Dict[str, Any]:
    out = {
        "position_name": _text(payload, "positionName", 200),
        "jd": _text(payload, "jd", MAX_RESUME_CHARS),
        "resume_content": _text(payload, "resumeContent", MAX_RESUME_CHARS),
        "company": _text(payload, "company", 200),
        "salary_range": _salary_range(payload),
    }
    for key, field_name in (("position_name", "positionName"), ("jd", "jd"), ("resume_content", "resumeContent")):
        if not out[key]:
            raise ValidationError(f"{field_name} is required", detail={"field": field_name})
    count = payload.get("questionCount", 10)
    if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= MAX_QUIZ_QUESTIONS:
        raise ValidationError(
            f"questionCount must be an integer between 1 and {MAX_QUIZ_QUESTIONS}",
            detail={"field": "questionCount"},
        )
    out["question_count"] = count
    return out


def parse_analysis_request(payload: Dict[str, Any]) -> Dict[str, Any]:
    out = {
        "position_name": _text(payload, "positionName", 200),
        "jd": _text(payload, "jd", MAX_RESUME_CHARS),
        "resume_content": _text(payload, "resumeContent", MAX_RESUME_CHARS),
    }
    for key, field_name in (("jd", "jd"), ("resume_content", "resumeContent")):
        if not out[key]:
            raise ValidationError(f"{field_name} is required", detail={"field": field_name})
    return out


def _error_metadata(e: BaseException) -> Dict[str, Any]:
    if isinstance(e, MockMateError):
        meta: Dict[str, Any] = {"code": e.code, "status": e.status_code}
        if e.detail:
            meta["detail"] = e.detail
        return meta
    return {"code": "internal_error", "status": 500}


class SessionOrchestrator:
    def __init__(
        self,
        ledger: ConsumptionLedger,
        registry: SessionRegistry,
        gateway: GenerationGateway,
        writer: RecoveryWriter,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.registry = registry
        self.gateway = gateway
        self.writer = writer
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()

    # ----- public operations -----

    def start_mock_interview(
        self,
        user_id: str,
        request: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Channel:
        channel = self._new_channel()
        self._spawn(self._run_start(channel, user_id, request, idempotency_key, request_id), channel)
        return channel

    def submit_answer(self, user_id: str, session_id: str, answer: Any, request_id: Optional[str] = None) -> Channel:
        channel = self._new_channel()
        self._spawn(self._run_answer(channel, user_id, session_id, answer, request_id), channel, session_id)
        return channel

    def end_interview(self, user_id: str, session_id: str, request_id: Optional[str] = None) -> Channel:
        channel = self._new_channel()
        self._spawn(self._run_end(channel, user_id, session_id, request_id), channel, session_id)
        return channel

    def generate_resume_quiz(
        self,
        user_id: str,
        request: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Channel:
        channel = self._new_channel()
        emitter = ProgressEmitter(channel)
        task = asyncio.create_task(self._guard_quiz(emitter, user_id, request, idempotency_key, request_id))
        self._track(task)
        return channel

    async def analyze_resume(self, user_id: str, request: Dict[str, Any], request_id: Optional[str] = None) -> Dict[str, Any]:
        """Match a resume against a job description. Not metered."""
        req = parse_analysis_request(request)
        report = await self._analyze(req, request_id)
        logger.info(json.dumps({
            "event": "resume_analyzed",
            "requestId": request_id,
            "userId": user_id,
            "matchScore": report.get("matchScore"),
        }))
        return report

    async def expire_idle(self) -> int:
        """Close out sessions idle past ``SESSION_IDLE_TIMEOUT_SECONDS``.

        The interview was delivered, so the ticket is settled and the result
        marked abandoned.
        """
        expired = 0
        for session in self.registry.sweep():
            if session.lock.locked() or session.state != SessionState.AWAITING_ANSWER:
                continue
            await session.lock.acquire()
            try:
                session.transition(SessionState.TIMED_OUT)
                session.transition(SessionState.COMPLETED)
                await self._persist(session.persistence_errors, self.writer.finalize(
                    session.result_id,
                    ABANDONED,
                    session_snapshot=session.snapshot(),
                    metadata={"endReason": "idle"},
                ))
                await self.ledger.settle(self._ticket(session), {
                    "sessionId": session.session_id,
                    "resultId": session.result_id,
                    "reason": "idle",
                    "questionCount": session.question_count,
                })
                self.registry.schedule_eviction(session.session_id)
                SESSIONS_TERMINATED_TOTAL.labels(job_kind=session.job_kind.value, reason="idle").inc()
                logger.info(json.dumps({"event": "session_idle_expired", "sessionId": session.session_id}))
                expired += 1
            except MockMateError as e:
                logger.error(json.dumps({"event": "session_idle_expire_failed", "sessionId": session.session_id, "error": e.message}))
            finally:
                session.lock.release()
        return expired

    async def drain(self) -> None:
        """Wait for all in-flight work, including background assessments."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight work; cancelled sessions still close their tickets."""
        for task in list(self._tasks):
            task.cancel()
        await self.drain()

    # ----- task plumbing -----

    def _new_channel(self) -> Channel:
        return Channel(maxsize=config.STREAM_CHANNEL_SIZE)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _spawn(self, coro: Awaitable[None], channel: Channel, session_id: Optional[str] = None) -> None:
        self._track(asyncio.create_task(self._guard(coro, channel, session_id)))

    async def _shielded(self, coro: Awaitable[None]) -> None:
        """Run cleanup in its own tracked task so a second cancel cannot cut it short."""
        task = asyncio.ensure_future(coro)
        self._track(task)
        try:
            await asyncio.shield(task)
        except MockMateError as e:
            logger.error(json.dumps({"event": "cancel_cleanup_failed", "code": e.code, "error": e.message}))

    async def _guard(self, coro: Awaitable[None], channel: Channel, session_id: Optional[str]) -> None:
        """Turn errors raised before any session work into one ``error`` event."""
        try:
            await coro
        except MockMateError as e:
            logger.info(json.dumps({"event": "request_rejected", "sessionId": session_id, "code": e.code, "error": e.message}))
            await channel.put(ErrorEvent(error=e.message, session_id=session_id, metadata=_error_metadata(e)))
        except Exception as e:
            logger.exception(json.dumps({"event": "orchestrator_unhandled_error", "sessionId": session_id, "error": str(e)}))
            await channel.put(ErrorEvent(error="internal error", session_id=session_id, metadata=_error_metadata(e)))
        finally:
            channel.close()

    async def _persist(self, errors: List[Dict[str, Any]], write: Awaitable[Any]) -> Any:
        """Run a recovery write; failures are recorded, never raised.

        A mirror failure still returns the local result so later updates can
        address the entry it created.
        """
        try:
            return await write
        except MirrorFailure as e:
            errors.append(e.to_dict())
            return e.value
        except PersistenceFailure as e:
            errors.append(e.to_dict())
            return None

    def _ticket(self, session: Session) -> PendingTicket:
        _, _, work_type = JOB_KIND_SETTINGS[session.job_kind]
        return PendingTicket(session.record_id, session.user_id, work_type, session.result_id)

    # ----- interview -----

    async def _run_start(
        self,
        channel: Channel,
        user_id: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str],
        request_id: Optional[str],
    ) -> None:
        req = parse_interview_request(payload)
        job_kind: JobKind = req["job_kind"]
        duration, total, work_type = JOB_KIND_SETTINGS[job_kind]
        outcome = await self.ledger.begin(
            user_id,
            work_type,
            idempotency_key=idempotency_key,
            input_snapshot={
                "jobKind": job_kind.value,
                "company": req["company"],
                "positionName": req["position_name"],
                "resumeChars": len(req["resume_content"]),
            },
        )
        if isinstance(outcome, AlreadySettled):
            prior = outcome.record.output_snapshot
            metadata = {"replayed": True, "recordId": outcome.record.record_id}
            if prior.get("reason"):
                metadata["reason"] = prior["reason"]
            await channel.put(EndEvent(
                session_id=prior.get("sessionId") or "",
                result_id=outcome.result_id,
                metadata=metadata,
            ))
            return

        ticket = outcome
        session = self.registry.create(user_id, job_kind, context=req, target_duration=duration)
        session.result_id = ticket.result_id
        session.record_id = ticket.record_id
        try:
            await self._persist(session.persistence_errors, self.writer.create_placeholder(Result(
                result_id=ticket.result_id,
                user_id=user_id,
                kind="mock_interview",
                session_snapshot=session.snapshot(),
                metadata={"jobKind": job_kind.value, "recordId": ticket.record_id, "targetDuration": duration},
            )))

            opening = prompts.opening_statement(prompts.INTERVIEWER_NAME, req["candidate_name"], req["position_name"])
            size = max(1, config.OPENING_CHUNK_SIZE)
            for i in range(0, len(opening), size):
                await channel.put(StartEvent(
                    session_id=session.session_id,
                    result_id=ticket.result_id,
                    content=opening[i : i + size],
                    is_streaming=True,
                    total_questions=total,
                ))
                if config.OPENING_CHUNK_DELAY_SECONDS > 0:
                    await asyncio.sleep(config.OPENING_CHUNK_DELAY_SECONDS)
            await channel.put(StartEvent(
                session_id=session.session_id,
                result_id=ticket.result_id,
                content=opening,
                is_streaming=False,
                total_questions=total,
                metadata={
                    "jobKind": job_kind.value,
                    "targetDuration": duration,
                    "interviewerName": prompts.INTERVIEWER_NAME,
                },
            ))
            session.transition(SessionState.OPENING_DELIVERED)
            session.append_turn(Turn("interviewer", opening, timestamp=self._clock()))
            session.entry_index = await self._persist(
                session.persistence_errors, self.writer.append_entry(ticket.result_id, opening)
            )
            session.transition(SessionState.AWAITING_ANSWER)
        except asyncio.CancelledError:
            await self._shielded(self._cancel_session(session))
            raise
        except Exception as e:
            await self._fail_session(channel, session, e)
            return
        logger.info(json.dumps({
            "event": "interview_started",
            "requestId": request_id,
            "sessionId": session.session_id,
            "resultId": session.result_id,
            "jobKind": job_kind.value,
        }))
        await channel.put(WaitingEvent(session_id=session.session_id))

    async def _run_answer(
        self,
        channel: Channel,
        user_id: str,
        session_id: str,
        answer: Any,
        request_id: Optional[str],
    ) -> None:
        if not isinstance(answer, str) or not answer.strip():
            raise ValidationError("answer must be a non-empty string", detail={"field": "answer"})
        if len(answer) > MAX_ANSWER_CHARS:
            raise ValidationError(f"answer exceeds {MAX_ANSWER_CHARS} characters", detail={"field": "answer"})
        session = await self.registry.acquire(session_id, user_id)
        try:
            if not session.active or session.state != SessionState.AWAITING_ANSWER:
                raise ValidationError("session is not awaiting an answer", detail={"sessionId": session_id, "state": session.state.value})
            now = self._clock()
            session.append_turn(Turn("candidate", answer.strip(), timestamp=now))
            if session.entry_index is not None:
                await self._persist(
                    session.persistence_errors,
                    self.writer.record_answer(session.result_id, session.entry_index, answer.strip()),
                )
            elapsed = session.elapsed_minutes(now)
            if elapsed >= session.target_duration:
                session.transition(SessionState.TIMED_OUT)
                await self._complete(channel, session, "timeout", elapsed)
            else:
                await self._generate_turn(channel, session, elapsed, request_id)
        except asyncio.CancelledError:
            await self._shielded(self._cancel_session(session))
            raise
        finally:
            session.lock.release()

    async def _run_end(self, channel: Channel, user_id: str, session_id: str, request_id: Optional[str]) -> None:
        session = await self.registry.acquire(session_id, user_id)
        try:
            if not session.active or session.state != SessionState.AWAITING_ANSWER:
                raise ValidationError("session cannot be ended in its current state", detail={"sessionId": session_id, "state": session.state.value})
            session.transition(SessionState.ENDING)
            await self._complete(channel, session, "user_ended", session.elapsed_minutes(self._clock()))
        except asyncio.CancelledError:
            await self._shielded(self._cancel_session(session))
            raise
        finally:
            session.lock.release()

    async def _generate_turn(self, channel: Channel, session: Session, elapsed: int, request_id: Optional[str]) -> None:
        session.transition(SessionState.GENERATING)
        await channel.put(ThinkingEvent(session_id=session.session_id, content="Thinking about the next question"))

        index: Optional[int] = None
        primary_parts: List[str] = []
        splitter: Optional[SegmentSplitter] = None
        try:
            index = await self._persist(session.persistence_errors, self.writer.reserve(session.result_id))
            session.question_count += 1
            number = session.question_count
            ctx = PromptContext(
                prompt=prompts.build_interview_turn_prompt({
                    "job_kind": session.job_kind.value,
                    "elapsed_minutes": elapsed,
                    "target_duration": session.target_duration,
                    "company": session.context.get("company"),
                    "position_name": session.context.get("position_name"),
                    "jd": session.context.get("jd"),
                    "resume_content": session.context.get("resume_content"),
                    "history": session.history_dicts(),
                }),
                request_id=request_id,
                labels={"operation": "interview_turn", "sessionId": session.session_id},
            )
            splitter = SegmentSplitter(ctx.marker, ctx.end_flag)
            stream = self.gateway.generate(ctx)
            try:
                async for fragment in stream:
                    for ev in splitter.feed(fragment):
                        await self._route(channel, session, ev, number, elapsed, index, primary_parts)
                for ev in splitter.finish():
                    await self._route(channel, session, ev, number, elapsed, index, primary_parts)
                result = await stream.result()
            finally:
                stream.close()

            if not result.primary and not result.end_flag:
                raise GenerationFailure("generation produced an empty question", detail={"sessionId": session.session_id})
            if not splitter.boundary_seen and result.primary:
                # No marker: the whole output is the question, finalized now
                await self._route(channel, session, SegmentBoundary(splitter.primary or ""), number, elapsed, index, primary_parts)
            if splitter.secondary is not None:
                await channel.put(ReferenceAnswerEvent(
                    session_id=session.session_id,
                    content=splitter.secondary,
                    is_streaming=False,
                    question_number=number,
                ))
            if index is not None:
                if result.primary:
                    await self._persist(session.persistence_errors, self.writer.fill_secondary(session.result_id, index, result.secondary))
                elif await self._persist(session.persistence_errors, self.writer.release(session.result_id, index)):
                    # Bare end flag: nothing was asked, the closing is synthesized below
                    session.question_count = max(0, session.question_count - 1)
                    index = None
            if result.primary:
                session.append_turn(Turn("interviewer", result.primary, timestamp=self._clock(), reference_answer=result.secondary))
            session.entry_index = index
        except (Exception, asyncio.CancelledError) as e:
            delivered = splitter is not None and splitter.boundary_seen
            # A fully delivered question keeps the entry filled at the boundary
            if index is not None and not delivered:
                if primary_parts:
                    await self._persist(session.persistence_errors, self.writer.fill_primary(
                        session.result_id, index, "".join(primary_parts).strip(), final=False
                    ))
                else:
                    released = await self._persist(session.persistence_errors, self.writer.release(session.result_id, index))
                    if released:
                        session.question_count = max(0, session.question_count - 1)
            if isinstance(e, asyncio.CancelledError):
                raise
            await self._fail_session(channel, session, e)
            return

        if result.end_flag:
            session.transition(SessionState.ENDING)
            await self._complete(channel, session, "completed", elapsed, closing=result.primary or None)
        else:
            session.transition(SessionState.AWAITING_ANSWER)
            await channel.put(WaitingEvent(session_id=session.session_id))

    async def _route(
        self,
        channel: Channel,
        session: Session,
        ev: Any,
        number: int,
        elapsed: int,
        index: Optional[int],
        primary_parts: List[str],
    ) -> None:
        if isinstance(ev, SegmentBoundary):
            await channel.put(QuestionEvent(
                session_id=session.session_id,
                content=ev.primary,
                is_streaming=False,
                question_number=number,
                total_questions=session.total_questions,
                elapsed_minutes=elapsed,
            ))
            if index is not None:
                await self._persist(session.persistence_errors, self.writer.fill_primary(session.result_id, index, ev.primary.strip()))
        elif isinstance(ev, SegmentDelta) and ev.segment == PRIMARY:
            primary_parts.append(ev.delta)
            await channel.put(QuestionEvent(
                session_id=session.session_id,
                content=ev.delta,
                is_streaming=True,
                question_number=number,
                total_questions=session.total_questions,
                elapsed_minutes=elapsed,
            ))
        else:
            await channel.put(ReferenceAnswerEvent(
                session_id=session.session_id,
                content=ev.delta,
                is_streaming=True,
                question_number=number,
            ))

    async def _complete(
        self,
        channel: Channel,
        session: Session,
        reason: str,
        elapsed: int,
        closing: Optional[str] = None,
    ) -> None:
        if closing is None:
            closing = prompts.closing_statement(reason, session.context.get("candidate_name"))
            session.append_turn(Turn("interviewer", closing, timestamp=self._clock()))
        session.transition(SessionState.COMPLETED)
        await self._persist(session.persistence_errors, self.writer.finalize(
            session.result_id,
            COMPLETED,
            output={"closingStatement": closing},
            session_snapshot=session.snapshot(),
            metadata={"endReason": reason, "elapsedMinutes": elapsed},
        ))
        metadata: Dict[str, Any] = {
            "reason": reason,
            "questionCount": session.question_count,
            "totalQuestions": session.total_questions,
        }
        try:
            await self.ledger.settle(self._ticket(session), {
                "sessionId": session.session_id,
                "resultId": session.result_id,
                "reason": reason,
                "questionCount": session.question_count,
            })
        except MockMateError as e:
            logger.error(json.dumps({"event": "interview_settle_failed", "sessionId": session.session_id, "error": e.message}))
            metadata["settleError"] = e.to_dict()
        self.registry.schedule_eviction(session.session_id)
        SESSIONS_TERMINATED_TOTAL.labels(job_kind=session.job_kind.value, reason=reason).inc()
        if session.persistence_errors:
            metadata["persistenceErrors"] = list(session.persistence_errors)
        logger.info(json.dumps({
            "event": "interview_completed",
            "sessionId": session.session_id,
            "resultId": session.result_id,
            "reason": reason,
            "questionCount": session.question_count,
        }))
        await channel.put(EndEvent(
            session_id=session.session_id,
            result_id=session.result_id,
            content=closing,
            elapsed_minutes=elapsed,
            metadata=metadata,
        ))
        if config.ASSESSMENT_ENABLED:
            self._track(asyncio.create_task(self._assess(session)))

    async def _assess(self, session: Session) -> None:
        """Best-effort assessment report stored on the completed result."""
        stored = self.writer.store.get(session.result_id)
        entries = stored.entries if stored is not None else []
        qa_list = [
            {"question": e["question"], "answer": e["answer"], "reference_answer": e.get("referenceAnswer")}
            for e in entries
            if e.get("question")
        ]
        ctx = PromptContext(
            prompt=prompts.build_assessment_prompt({
                "qa_list": qa_list,
                "job_kind": session.job_kind.value,
                "position_name": session.context.get("position_name"),
            }),
            json_mode=True,
            marker=None,
            end_flag=None,
            labels={"operation": "assessment", "sessionId": session.session_id},
        )
        try:
            report = await self.gateway.complete_json(ctx)
            await self.writer.finalize(session.result_id, COMPLETED, output={"assessment": report})
        except MockMateError as e:
            logger.warning(json.dumps({"event": "assessment_failed", "resultId": session.result_id, "error": e.message}))
            return
        logger.info(json.dumps({"event": "assessment_saved", "resultId": session.result_id, "score": report.get("overallScore")}))

    async def _fail_session(self, channel: Channel, session: Session, error: BaseException) -> None:
        if isinstance(error, MockMateError):
            logger.error(json.dumps({"event": "interview_failed", "sessionId": session.session_id, "code": error.code, "error": error.message}))
        else:
            logger.exception(json.dumps({"event": "interview_failed", "sessionId": session.session_id, "error": str(error)}))
        session.transition(SessionState.FAILED)
        metadata = _error_metadata(error)
        try:
            await self.ledger.abort(self._ticket(session), error)
            metadata["refunded"] = True
        except RefundFailure as e:
            metadata["refunded"] = False
            metadata["refundError"] = e.to_dict()
        await self._persist(session.persistence_errors, self.writer.finalize(
            session.result_id,
            ABANDONED,
            session_snapshot=session.snapshot(),
            metadata={"endReason": "failed", "error": str(error)[:500]},
        ))
        if session.persistence_errors:
            metadata["persistenceErrors"] = list(session.persistence_errors)
        self.registry.schedule_eviction(session.session_id)
        SESSIONS_TERMINATED_TOTAL.labels(job_kind=session.job_kind.value, reason="failed").inc()
        message = error.message if isinstance(error, MockMateError) else "internal error"
        await channel.put(ErrorEvent(error=message, session_id=session.session_id, result_id=session.result_id, metadata=metadata))

    async def _cancel_session(self, session: Session) -> None:
        """Close out a session whose task was cancelled mid-operation.

        A session that already reached ``completed`` was delivered, so a still
        pending ticket is settled; anything earlier is aborted and refunded.
        """
        record = self.ledger.get_record(session.record_id) if session.record_id else None
        pending = record is not None and record.status == PENDING
        if not session.active and not pending:
            return
        delivered = session.state == SessionState.COMPLETED
        if session.active:
            session.transition(SessionState.FAILED)
            await self._persist(session.persistence_errors, self.writer.finalize(
                session.result_id,
                ABANDONED,
                session_snapshot=session.snapshot(),
                metadata={"endReason": "cancelled"},
            ))
        if pending:
            if delivered:
                await self.ledger.settle(self._ticket(session), {
                    "sessionId": session.session_id,
                    "resultId": session.result_id,
                    "reason": "cancelled",
                    "questionCount": session.question_count,
                })
            else:
                await self.ledger.abort(self._ticket(session), "cancelled")
        self.registry.schedule_eviction(session.session_id)
        SESSIONS_TERMINATED_TOTAL.labels(job_kind=session.job_kind.value, reason="cancelled").inc()
        logger.warning(json.dumps({
            "event": "interview_cancelled",
            "sessionId": session.session_id,
            "state": session.state.value,
            "refunded": record is not None and record.refunded,
        }))

    # ----- resume quiz -----

    async def _guard_quiz(
        self,
        emitter: ProgressEmitter,
        user_id: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str],
        request_id: Optional[str],
    ) -> None:
        try:
            await self._run_quiz(emitter, user_id, payload, idempotency_key, request_id)
        except MockMateError as e:
            await emitter.fail(e.message)
        except Exception as e:
            logger.exception(json.dumps({"event": "quiz_unhandled_error", "requestId": request_id, "error": str(e)}))
            await emitter.fail("internal error")
        finally:
            emitter.channel.close()

    async def _run_quiz(
        self,
        emitter: ProgressEmitter,
        user_id: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str],
        request_id: Optional[str],
    ) -> None:
        req = parse_quiz_request(payload)
        await emitter.emit(5, "Checking balance", "prepare")
        outcome = await self.ledger.begin(
            user_id,
            QUIZ_WORK_TYPE,
            idempotency_key=idempotency_key,
            input_snapshot={
                "positionName": req["position_name"],
                "company": req["company"],
                "questionCount": req["question_count"],
            },
        )
        if isinstance(outcome, AlreadySettled):
            stored = self.writer.store.get(outcome.result_id or "")
            output = stored.output if stored is not None else {}
            await emitter.complete({
                "resultId": outcome.result_id,
                "questions": output.get("questions", []),
                "summary": output.get("summary"),
                "analysis": output.get("analysis"),
                "remainingCount": self.ledger.balance(user_id, QUIZ_WORK_TYPE),
                "consumptionRecordId": outcome.record.record_id,
                "replayed": True,
            })
            return

        ticket = outcome
        errors: List[Dict[str, Any]] = []
        try:
            await emitter.emit(10, "Preparing prompt", "prepare")
            await self._persist(errors, self.writer.create_placeholder(Result(
                result_id=ticket.result_id,
                user_id=user_id,
                kind="resume_quiz",
                metadata={"recordId": ticket.record_id, "questionCount": req["question_count"]},
            )))
            await emitter.emit(20, "Generating questions", "generating")
            ctx = PromptContext(
                prompt=prompts.build_quiz_prompt(req),
                request_id=request_id,
                json_mode=True,
                marker=None,
                end_flag=None,
                labels={"operation": "resume_quiz"},
            )
            expected = max(1, req["question_count"] * _QUIZ_CHARS_PER_QUESTION)
            received = 0
            stream = self.gateway.generate(ctx)
            try:
                async for fragment in stream:
                    received += len(fragment)
                    progress = 20 + int(50 * min(1.0, received / expected))
                    if progress >= emitter.progress + 5:
                        await emitter.emit(progress, "Generating questions", "generating")
                result = await stream.result()
            finally:
                stream.close()
            parsed = parse_json_output(result.raw)
            questions = [q for q in parsed.get("questions") or [] if isinstance(q, dict) and q.get("question")]
            if not questions:
                raise GenerationFailure("generation returned no quiz questions")
            summary = parsed.get("summary") if isinstance(parsed.get("summary"), str) else None

            await emitter.emit(75, "Analyzing resume match", "generating")
            analysis = await self._quiz_analysis(req, request_id)
            await emitter.emit(85, "Analyzing resume match", "generating")

            await emitter.emit(90, "Saving results", "saving")
            await self._persist(errors, self.writer.finalize(
                ticket.result_id,
                COMPLETED,
                output={"questions": questions, "summary": summary, "analysis": analysis},
                metadata={"persistenceErrors": errors} if errors else None,
            ))
            await self.ledger.settle(ticket, {"resultId": ticket.result_id, "questionCount": len(questions)})
        except asyncio.CancelledError as e:
            await self._shielded(self._abort_quiz(ticket, errors, e))
            raise
        except Exception as e:
            await self._abort_quiz(ticket, errors, e)
            raise

        logger.info(json.dumps({
            "event": "quiz_completed",
            "requestId": request_id,
            "resultId": ticket.result_id,
            "questionCount": len(questions),
            "matchScore": analysis.get("matchScore") if analysis else None,
        }))
        data: Dict[str, Any] = {
            "resultId": ticket.result_id,
            "questions": questions,
            "summary": summary,
            "analysis": analysis,
            "remainingCount": self.ledger.balance(user_id, QUIZ_WORK_TYPE),
            "consumptionRecordId": ticket.record_id,
        }
        if errors:
            data["persistenceErrors"] = errors
        await emitter.complete(data)

    async def _quiz_analysis(self, req: Dict[str, Any], request_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Resume match analysis for the quiz; a failure leaves the questions intact."""
        try:
            return await self._analyze(req, request_id)
        except GenerationFailure as e:
            logger.warning(json.dumps({"event": "quiz_analysis_failed", "requestId": request_id, "error": e.message}))
            return None

    async def _analyze(self, req: Dict[str, Any], request_id: Optional[str]) -> Dict[str, Any]:
        ctx = PromptContext(
            prompt=prompts.build_analysis_prompt(req),
            request_id=request_id,
            json_mode=True,
            marker=None,
            end_flag=None,
            labels={"operation": "resume_analysis"},
        )
        report = await self.gateway.complete_json(ctx)
        score = report.get("matchScore")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise GenerationFailure("analysis is missing a numeric matchScore")
        return report

    async def _abort_quiz(self, ticket: PendingTicket, errors: List[Dict[str, Any]], error: BaseException) -> None:
        reason = str(error) or error.__class__.__name__
        logger.error(json.dumps({"event": "quiz_failed", "resultId": ticket.result_id, "error": reason}))
        try:
            await self.ledger.abort(ticket, reason)
        finally:
            await self._persist(errors, self.writer.finalize(
                ticket.result_id,
                ABANDONED,
                metadata={"error": reason[:500]},
            ))
