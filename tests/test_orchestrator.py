import asyncio

import pytest

import mockmate.recovery as recovery_mod
from mockmate import config
from mockmate.errors import GenerationFailure, ValidationError
from mockmate.ledger import FAILED, SUCCESS
from mockmate.recovery import ABANDONED, COMPLETED, ENTRY_COMPLETE, ENTRY_PENDING, ENTRY_STREAMING
from mockmate.sessions import SessionState

from helpers import FakeClock, FakeGenerationClient, collect, fake_httpx, json_script, make_orchestrator, of_type

INTERVIEW = {
    "interviewType": "special",
    "candidateName": "Dana",
    "company": "Acme",
    "positionName": "Backend Engineer",
    "minSalary": 30000,
    "maxSalary": 45000,
    "jd": "Own the event ingestion platform.",
    "resumeContent": "Go, Postgres, Kafka. Led the ingestion rewrite.",
}

QUIZ = {
    "positionName": "Data Engineer",
    "jd": "Build batch and streaming pipelines.",
    "resumeContent": "Spark, Airflow, dbt.",
    "questionCount": 2,
}

END_SCRIPT = ["Thanks Dana, that wraps it up.\n", "[END_INTERVIEW]"]


@pytest.fixture(autouse=True)
def _no_assessment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(config, "ASSESSMENT_ENABLED", False)


def _assert_streaming_complete(events):
    groups = {}
    for e in events:
        if e["type"] not in ("start", "question", "reference_answer"):
            continue
        g = groups.setdefault((e["type"], e.get("questionNumber")), {"deltas": [], "final": None})
        if e["isStreaming"]:
            g["deltas"].append(e["content"])
        else:
            g["final"] = e["content"]
    assert groups
    for key, g in groups.items():
        assert g["final"] is not None, key
        assert "".join(g["deltas"]) == g["final"], key


async def _start(orch, user="u1", request=None, key=None):
    events = await collect(orch.start_mock_interview(user, request or INTERVIEW, idempotency_key=key))
    final = of_type(events, "start")[-1]
    return events, final["sessionId"], final["resultId"]


@pytest.mark.asyncio
async def test_start_streams_opening_and_waits_for_answer():
    client = FakeGenerationClient()
    orch = make_orchestrator(client)
    events, sid, rid = await _start(orch)

    starts = of_type(events, "start")
    assert len(starts) > 2
    assert all(e["isStreaming"] for e in starts[:-1])
    assert starts[-1]["isStreaming"] is False
    assert starts[-1]["totalQuestions"] == 12
    assert starts[-1]["metadata"]["jobKind"] == "special"
    assert "Dana" in starts[-1]["content"]
    _assert_streaming_complete(events)
    assert events[-1] == {"type": "waiting", "sessionId": sid}

    assert orch.ledger.balance("u1", "special_interview") == 2
    session = orch.registry.get(sid)
    assert session.state == SessionState.AWAITING_ANSWER
    assert session.context["salary_range"] == "30000-45000"
    assert [t.role for t in session.history] == ["interviewer"]
    result = orch.writer.store.get(rid)
    assert [e["question"] for e in result.entries] == [starts[-1]["content"]]
    # The opening is synthesized locally
    assert client.prompts == []


@pytest.mark.asyncio
async def test_answer_streams_question_then_reference_answer():
    client = FakeGenerationClient()
    orch = make_orchestrator(client)
    _, sid, rid = await _start(orch)

    events = await collect(orch.submit_answer("u1", sid, "I build data platforms."))

    assert events[0]["type"] == "thinking"
    assert events[-1] == {"type": "waiting", "sessionId": sid}
    kinds = [e["type"] for e in events]
    last_question = max(i for i, k in enumerate(kinds) if k == "question")
    first_reference = kinds.index("reference_answer")
    assert last_question < first_reference
    assert all(e["questionNumber"] == 1 for e in of_type(events, "question"))
    _assert_streaming_complete(events)

    entries = orch.writer.store.get(rid).entries
    assert entries[0]["answer"] == "I build data platforms."
    assert entries[1]["question"] == "Nice. Next question: how did you scale the ingestion service?"
    assert entries[1]["referenceAnswer"] == "Describe the bottleneck, the sharding scheme and the measured result."
    assert entries[1]["status"] == ENTRY_COMPLETE
    assert "I build data platforms." in client.prompts[0]


@pytest.mark.asyncio
async def test_three_turns_keep_transcript_aligned_with_questions():
    orch = make_orchestrator(FakeGenerationClient())
    _, sid, rid = await _start(orch)

    for n in range(3):
        events = await collect(orch.submit_answer("u1", sid, f"answer {n}"))
        assert events[-1]["type"] == "waiting"

    result = orch.writer.store.get(rid)
    assert len(result.entries) == 4
    assert result.question_count == 3
    assert orch.registry.get(sid).question_count == 3
    assert all(e["question"] for e in result.entries)
    assert [e["answer"] for e in result.entries] == ["answer 0", "answer 1", "answer 2", ""]


@pytest.mark.asyncio
async def test_elapsed_past_target_duration_times_out():
    clock = FakeClock()
    client = FakeGenerationClient()
    orch = make_orchestrator(client, clock=clock)
    _, sid, rid = await _start(orch, request=dict(INTERVIEW, interviewType="behavior"))

    clock.advance(61 * 60)
    events = await collect(orch.submit_answer("u1", sid, "one more thing"))

    assert len(events) == 1
    end = events[0]
    assert end["type"] == "end"
    assert end["metadata"]["reason"] == "timeout"
    assert end["elapsedMinutes"] == 61
    assert end["resultId"] == rid
    assert "end of our scheduled time" in end["content"]
    assert client.prompts == []

    session = orch.registry.get(sid)
    assert session.state == SessionState.COMPLETED
    assert not session.active
    assert session.evict_at == clock() + config.SESSION_EVICTION_GRACE_SECONDS
    assert orch.ledger.get_record(session.record_id).status == SUCCESS
    result = orch.writer.store.get(rid)
    assert result.status == COMPLETED
    assert result.entries[0]["answer"] == "one more thing"


@pytest.mark.asyncio
async def test_end_flag_completes_the_interview():
    orch = make_orchestrator(FakeGenerationClient([END_SCRIPT]))
    _, sid, rid = await _start(orch)

    events = await collect(orch.submit_answer("u1", sid, "That's all from me."))

    assert [e["type"] for e in events][-1] == "end"
    end = events[-1]
    assert end["metadata"]["reason"] == "completed"
    assert end["content"] == "Thanks Dana, that wraps it up."
    assert not of_type(events, "reference_answer")
    assert "[END_INTERVIEW]" not in "".join(e.get("content", "") for e in events)
    _assert_streaming_complete(events)

    session = orch.registry.get(sid)
    assert session.state == SessionState.COMPLETED
    assert orch.ledger.get_record(session.record_id).status == SUCCESS
    assert orch.writer.store.get(rid).status == COMPLETED


@pytest.mark.asyncio
async def test_generation_failure_refunds_and_emits_one_error():
    orch = make_orchestrator(FakeGenerationClient([[RuntimeError("provider down")]]))
    before = orch.ledger.balance("u1", "special_interview")
    _, sid, rid = await _start(orch)

    events = await collect(orch.submit_answer("u1", sid, "My answer"))

    errors = of_type(events, "error")
    assert len(errors) == 1
    assert events[-1] is errors[0]
    assert errors[0]["metadata"]["code"] == "generation_failure"
    assert errors[0]["metadata"]["refunded"] is True
    assert errors[0]["resultId"] == rid

    assert orch.ledger.balance("u1", "special_interview") == before
    session = orch.registry.get(sid)
    assert session is not None
    assert session.state == SessionState.FAILED
    assert not session.active
    record = orch.ledger.get_record(session.record_id)
    assert record.status == FAILED and record.refunded
    result = orch.writer.store.get(rid)
    assert result.status == ABANDONED
    # The reserved entry never reached the caller
    assert len(result.entries) == 1
    assert result.question_count == 0


@pytest.mark.asyncio
async def test_failure_after_partial_question_keeps_emitted_text():
    orch = make_orchestrator(FakeGenerationClient([["Could you describe", RuntimeError("connection reset")]]))
    _, sid, rid = await _start(orch)

    events = await collect(orch.submit_answer("u1", sid, "Sure"))

    assert of_type(events, "question")[0]["content"] == "Could you describe"
    assert events[-1]["type"] == "error"
    entries = orch.writer.store.get(rid).entries
    assert len(entries) == 2
    assert entries[1]["question"] == "Could you describe"
    assert entries[1]["status"] == ENTRY_PENDING


@pytest.mark.asyncio
async def test_failure_in_reference_answer_keeps_the_delivered_question():
    script = ["What is a partition key?\n[STANDARD_ANSWER]\nA column that", RuntimeError("connection reset")]
    orch = make_orchestrator(FakeGenerationClient([script]))
    _, sid, rid = await _start(orch)

    events = await collect(orch.submit_answer("u1", sid, "Sure"))

    finals = [e for e in of_type(events, "question") if not e["isStreaming"]]
    assert [e["content"].strip() for e in finals] == ["What is a partition key?"]
    assert events[-1]["type"] == "error"
    assert events[-1]["metadata"]["refunded"] is True
    result = orch.writer.store.get(rid)
    assert len(result.entries) == 2
    assert result.entries[1]["question"] == "What is a partition key?"
    assert result.entries[1]["status"] == ENTRY_STREAMING
    assert result.entries[1]["referenceAnswer"] is None
    assert result.question_count == 1


@pytest.mark.asyncio
async def test_mirror_outage_keeps_transcript_aligned_and_reports_errors(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(recovery_mod, "httpx", fake_httpx(status_code=503))
    monkeypatch.setattr(config, "RESULTS_PERSIST_URL", "https://store.example/results")
    orch = make_orchestrator(FakeGenerationClient())
    events, sid, rid = await _start(orch)
    assert events[-1]["type"] == "waiting"

    turn = await collect(orch.submit_answer("u1", sid, "my answer"))
    assert turn[-1]["type"] == "waiting"
    ended = await collect(orch.end_interview("u1", sid))

    entries = orch.writer.store.get(rid).entries
    assert entries[0]["answer"] == "my answer"
    assert entries[1]["question"] == "Nice. Next question: how did you scale the ingestion service?"
    assert entries[1]["referenceAnswer"] == "Describe the bottleneck, the sharding scheme and the measured result."
    assert entries[1]["status"] == ENTRY_COMPLETE

    end = ended[-1]
    assert end["type"] == "end"
    assert end["metadata"]["reason"] == "user_ended"
    errors = end["metadata"]["persistenceErrors"]
    assert errors and {e["code"] for e in errors} == {"persistence_failure"}
    assert orch.ledger.balance("u1", "special_interview") == 2
    assert orch.ledger.get_record(orch.registry.get(sid).record_id).status == SUCCESS


@pytest.mark.asyncio
async def test_invalid_request_is_rejected_before_any_debit():
    orch = make_orchestrator(FakeGenerationClient())
    events = await collect(orch.start_mock_interview("u1", dict(INTERVIEW, interviewType="painting")))

    assert len(events) == 1
    assert events[0]["type"] == "error"
    assert events[0]["metadata"]["code"] == "validation_error"
    assert events[0]["metadata"]["status"] == 400
    assert orch.ledger.records_for("u1") == []
    assert orch.ledger.balance("u1", "special_interview") == 3


@pytest.mark.asyncio
async def test_insufficient_balance_is_reported_on_the_stream():
    orch = make_orchestrator(FakeGenerationClient(), free_credits=0)
    events = await collect(orch.start_mock_interview("u1", INTERVIEW))
    assert [e["metadata"]["code"] for e in events] == ["insufficient_balance"]
    assert len(orch.registry) == 0


@pytest.mark.asyncio
async def test_replaying_a_settled_start_returns_the_original_result():
    orch = make_orchestrator(FakeGenerationClient())
    _, sid, rid = await _start(orch, key="req-1")
    ended = await collect(orch.end_interview("u1", sid))
    assert ended[-1]["metadata"]["reason"] == "user_ended"
    balance = orch.ledger.balance("u1", "special_interview")

    events = await collect(orch.start_mock_interview("u1", INTERVIEW, idempotency_key="req-1"))

    assert len(events) == 1
    assert events[0]["type"] == "end"
    assert events[0]["resultId"] == rid
    assert events[0]["sessionId"] == sid
    assert events[0]["metadata"]["replayed"] is True
    assert orch.ledger.balance("u1", "special_interview") == balance
    assert len(orch.ledger.records_for("u1")) == 1


@pytest.mark.asyncio
async def test_same_key_while_interview_in_progress_is_duplicate():
    orch = make_orchestrator(FakeGenerationClient())
    await _start(orch, key="req-2")
    events = await collect(orch.start_mock_interview("u1", INTERVIEW, idempotency_key="req-2"))
    assert [e["metadata"]["code"] for e in events] == ["duplicate_in_progress"]
    assert orch.ledger.balance("u1", "special_interview") == 2


@pytest.mark.asyncio
async def test_concurrent_answer_is_rejected_without_side_effects():
    orch = make_orchestrator(FakeGenerationClient())
    _, sid, _ = await _start(orch)
    session = orch.registry.get(sid)

    await session.lock.acquire()
    try:
        events = await collect(orch.submit_answer("u1", sid, "second answer"))
    finally:
        session.lock.release()

    assert [e["metadata"]["code"] for e in events] == ["session_busy"]
    assert len(session.history) == 1


@pytest.mark.asyncio
async def test_answer_checks_owner_state_and_content():
    orch = make_orchestrator(FakeGenerationClient())
    _, sid, _ = await _start(orch)

    other = await collect(orch.submit_answer("intruder", sid, "hi"))
    assert other[0]["metadata"]["code"] == "session_not_found"

    blank = await collect(orch.submit_answer("u1", sid, "   "))
    assert blank[0]["metadata"]["code"] == "validation_error"

    await collect(orch.end_interview("u1", sid))
    late = await collect(orch.submit_answer("u1", sid, "after the end"))
    assert late[0]["metadata"]["code"] == "validation_error"
    assert len(orch.ledger.records_for("u1")) == 1


@pytest.mark.asyncio
async def test_idle_sessions_are_settled_and_abandoned():
    clock = FakeClock()
    orch = make_orchestrator(FakeGenerationClient(), clock=clock)
    _, sid, rid = await _start(orch)

    clock.advance(config.SESSION_IDLE_TIMEOUT_SECONDS + 1)
    assert await orch.expire_idle() == 1

    session = orch.registry.get(sid)
    assert session.state == SessionState.COMPLETED
    assert orch.ledger.get_record(session.record_id).status == SUCCESS
    assert orch.ledger.pending_count() == 0
    assert orch.writer.store.get(rid).status == ABANDONED
    assert await orch.expire_idle() == 0


@pytest.mark.asyncio
async def test_assessment_is_stored_after_completion(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(config, "ASSESSMENT_ENABLED", True)
    report = {"overallScore": 77, "overallLevel": "good", "strengths": ["structure"]}
    client = FakeGenerationClient([END_SCRIPT, json_script(report)])
    orch = make_orchestrator(client)
    _, sid, rid = await _start(orch)

    await collect(orch.submit_answer("u1", sid, "I led the migration to Kafka."))
    await orch.drain()

    assert orch.writer.store.get(rid).output["assessment"] == report
    assert "Candidate answer: I led the migration to Kafka." in client.prompts[-1]


@pytest.mark.asyncio
async def test_client_disconnect_still_finishes_the_turn():
    orch = make_orchestrator(FakeGenerationClient(delay_s=0.001))
    _, sid, rid = await _start(orch)

    channel = orch.submit_answer("u1", sid, "answer then hang up")
    channel.cancel()
    await orch.drain()

    session = orch.registry.get(sid)
    assert session.state == SessionState.AWAITING_ANSWER
    assert orch.writer.store.get(rid).entries[1]["status"] == ENTRY_COMPLETE


@pytest.mark.asyncio
async def test_resume_quiz_reports_progress_and_completes():
    quiz = {
        "questions": [
            {"question": "How do you backfill a partitioned table?", "answer": "Idempotent writes per partition."},
            {"question": "When would you pick streaming over batch?", "answer": "Latency requirements."},
        ],
        "summary": "Revisit incremental models.",
    }
    orch = make_orchestrator(FakeGenerationClient([json_script(quiz)]))

    events = await collect(orch.generate_resume_quiz("u1", QUIZ, idempotency_key="quiz-1"))

    progress = [e["progress"] for e in events]
    assert progress == sorted(progress)
    assert events[0]["stage"] == "prepare"
    assert "saving" in [e.get("stage") for e in events]
    done = events[-1]
    assert done["type"] == "complete"
    assert done["data"]["questions"] == quiz["questions"]
    assert done["data"]["summary"] == quiz["summary"]
    # No JSON for the analysis: the quiz still completes without it
    assert done["data"]["analysis"] is None
    assert done["data"]["remainingCount"] == 2
    record = orch.ledger.get_record(done["data"]["consumptionRecordId"])
    assert record.status == SUCCESS
    assert orch.writer.store.get(done["data"]["resultId"]).output["questions"] == quiz["questions"]

    replay = await collect(orch.generate_resume_quiz("u1", QUIZ, idempotency_key="quiz-1"))
    assert replay[-1]["data"]["replayed"] is True
    assert replay[-1]["data"]["resultId"] == done["data"]["resultId"]
    assert orch.ledger.balance("u1", "resume_quiz") == 2


@pytest.mark.asyncio
async def test_resume_quiz_failure_refunds():
    orch = make_orchestrator(FakeGenerationClient([["Sorry, no JSON here."]]))
    events = await collect(orch.generate_resume_quiz("u1", QUIZ))

    assert events[-1]["type"] == "error"
    assert len(of_type(events, "error")) == 1
    assert orch.ledger.balance("u1", "resume_quiz") == 3
    (record,) = orch.ledger.records_for("u1")
    assert record.status == FAILED and record.refunded
    assert orch.writer.store.get(record.result_id).status == ABANDONED


@pytest.mark.asyncio
async def test_resume_quiz_validation_happens_before_billing():
    orch = make_orchestrator(FakeGenerationClient())
    events = await collect(orch.generate_resume_quiz("u1", dict(QUIZ, jd="")))
    assert [e["type"] for e in events] == ["error"]
    assert "jd" in events[0]["error"]
    assert orch.ledger.records_for("u1") == []


ANALYSIS = {
    "matchScore": 72,
    "matchLevel": "good",
    "matchedSkills": [{"skill": "Spark", "matched": True, "proficiency": "production use"}],
    "missingSkills": ["Flink"],
    "knowledgeGaps": ["stream processing semantics"],
    "learningPriorities": [{"topic": "Flink", "priority": "high", "reason": "named in the job description"}],
    "radarData": [
        {"dimension": "technical skills", "score": 75, "description": "solid batch tooling"},
        {"dimension": "project experience", "score": 70, "description": "two pipelines shipped"},
        {"dimension": "problem solving", "score": 72, "description": "clear trade-offs"},
        {"dimension": "soft skills", "score": 68, "description": "some mentoring"},
    ],
    "strengths": ["Airflow orchestration"],
    "weaknesses": ["no streaming work"],
    "interviewTips": ["prepare a backfill story"],
}


@pytest.mark.asyncio
async def test_resume_quiz_stores_the_match_analysis():
    quiz = {"questions": [{"question": "How do you test a DAG?", "answer": "Unit test the tasks.", "tips": "Be concrete."}]}
    client = FakeGenerationClient([json_script(quiz), json_script(ANALYSIS)])
    orch = make_orchestrator(client)

    events = await collect(orch.generate_resume_quiz("u1", QUIZ, idempotency_key="quiz-a"))

    assert "Analyzing resume match" in [e["label"] for e in events]
    done = events[-1]
    assert done["type"] == "complete"
    assert done["data"]["questions"][0]["tips"] == "Be concrete."
    assert done["data"]["analysis"] == ANALYSIS
    assert orch.writer.store.get(done["data"]["resultId"]).output["analysis"] == ANALYSIS
    assert '"matchScore"' in client.prompts[1]

    replay = await collect(orch.generate_resume_quiz("u1", QUIZ, idempotency_key="quiz-a"))
    assert replay[-1]["data"]["analysis"] == ANALYSIS


@pytest.mark.asyncio
async def test_analyze_resume_is_not_metered():
    orch = make_orchestrator(FakeGenerationClient([json_script(ANALYSIS)]))

    report = await orch.analyze_resume("u1", {"jd": "Streaming pipelines.", "resumeContent": "Spark, Airflow."})

    assert report == ANALYSIS
    assert orch.ledger.records_for("u1") == []
    assert orch.ledger.balance("u1", "resume_quiz") == 3


@pytest.mark.asyncio
async def test_analyze_resume_rejects_bad_input_and_bad_output():
    orch = make_orchestrator(FakeGenerationClient([json_script({"matchLevel": "good"})]))
    with pytest.raises(ValidationError):
        await orch.analyze_resume("u1", {"resumeContent": "Spark."})
    with pytest.raises(GenerationFailure):
        await orch.analyze_resume("u1", {"jd": "Pipelines.", "resumeContent": "Spark."})


@pytest.mark.asyncio
async def test_shutdown_mid_turn_refunds_and_closes_the_session():
    orch = make_orchestrator(FakeGenerationClient(delay_s=0.05))
    _, sid, rid = await _start(orch)

    orch.submit_answer("u1", sid, "a slow one")
    await asyncio.sleep(0.02)
    await orch.shutdown()

    session = orch.registry.get(sid)
    assert session.state == SessionState.FAILED
    assert not session.active
    assert not session.lock.locked()
    record = orch.ledger.get_record(session.record_id)
    assert record.status == FAILED and record.refunded
    assert orch.ledger.pending_count() == 0
    assert orch.ledger.balance("u1", "special_interview") == 3
    result = orch.writer.store.get(rid)
    assert result.status == ABANDONED
    assert result.metadata["endReason"] == "cancelled"
    # The reserved entry never reached the caller
    assert len(result.entries) == 1


@pytest.mark.asyncio
async def test_shutdown_mid_quiz_refunds():
    orch = make_orchestrator(FakeGenerationClient(delay_s=0.05))

    orch.generate_resume_quiz("u1", QUIZ)
    await asyncio.sleep(0.02)
    await orch.shutdown()

    (record,) = orch.ledger.records_for("u1")
    assert record.status == FAILED and record.refunded
    assert orch.ledger.pending_count() == 0
    assert orch.ledger.balance("u1", "resume_quiz") == 3
    assert orch.writer.store.get(record.result_id).status == ABANDONED
