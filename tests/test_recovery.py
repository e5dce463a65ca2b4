import httpx
import pytest
from prometheus_client import REGISTRY

import mockmate.recovery as recovery_mod
from mockmate import config
from mockmate.errors import MirrorFailure, PersistenceFailure
from mockmate.recovery import (
    ABANDONED,
    COMPLETED,
    ENTRY_COMPLETE,
    ENTRY_PENDING,
    RecoveryWriter,
    Result,
    ResultStore,
)

from helpers import fake_httpx


def _writer():
    return RecoveryWriter(ResultStore())


@pytest.mark.asyncio
async def test_placeholder_then_update_for_three_turns():
    w = _writer()
    await w.create_placeholder(Result(result_id="r1", user_id="u1", kind="mock_interview"))

    for n in range(1, 4):
        idx = await w.reserve("r1")
        pending = w.store.get("r1").entries[idx]
        assert pending["status"] == ENTRY_PENDING and pending["question"] == ""
        await w.fill_primary("r1", idx, f"Question {n}?")
        await w.fill_secondary("r1", idx, f"Reference {n}.")
        await w.record_answer("r1", idx, f"Answer {n}")

    r = w.store.get("r1")
    assert len(r.entries) == 3
    assert [e["question"] for e in r.entries] == ["Question 1?", "Question 2?", "Question 3?"]
    assert all(e["question"] and e["referenceAnswer"] and e["status"] == ENTRY_COMPLETE for e in r.entries)
    assert r.question_count == 3
    assert r.answered_count == 3


@pytest.mark.asyncio
async def test_release_only_drops_an_empty_trailing_entry():
    w = _writer()
    await w.create_placeholder(Result(result_id="r1", user_id="u1", kind="mock_interview"))
    first = await w.reserve("r1")
    await w.fill_primary("r1", first, "Asked already?")
    assert await w.release("r1", first) is False

    second = await w.reserve("r1")
    assert await w.release("r1", second) is True
    r = w.store.get("r1")
    assert len(r.entries) == 1
    assert r.question_count == 1


@pytest.mark.asyncio
async def test_answer_recorded_twice_counts_once():
    w = _writer()
    await w.create_placeholder(Result(result_id="r1", user_id="u1", kind="mock_interview"))
    idx = await w.append_entry("r1", "Tell me about yourself.")
    await w.record_answer("r1", idx, "first")
    await w.record_answer("r1", idx, "edited")
    r = w.store.get("r1")
    assert r.answered_count == 1
    assert r.entries[idx]["answer"] == "edited"


@pytest.mark.asyncio
async def test_bad_writes_raise_persistence_failure():
    w = _writer()
    with pytest.raises(PersistenceFailure):
        await w.reserve("missing")
    await w.create_placeholder(Result(result_id="r1", user_id="u1", kind="resume_quiz"))
    with pytest.raises(PersistenceFailure):
        await w.create_placeholder(Result(result_id="r1", user_id="u1", kind="resume_quiz"))
    with pytest.raises(PersistenceFailure):
        await w.fill_primary("r1", 5, "out of range")


@pytest.mark.asyncio
async def test_finalize_merges_output_and_sets_status():
    w = _writer()
    await w.create_placeholder(Result(result_id="r1", user_id="u1", kind="mock_interview"))
    await w.finalize("r1", COMPLETED, output={"closingStatement": "bye"}, session_snapshot={"state": "completed"})
    await w.finalize("r1", COMPLETED, output={"assessment": {"overallScore": 70}})
    r = w.store.get("r1").to_dict()
    assert r["status"] == COMPLETED
    assert r["output"] == {"closingStatement": "bye", "assessment": {"overallScore": 70}}


@pytest.mark.asyncio
async def test_writes_are_mirrored_with_bearer_secret(monkeypatch: pytest.MonkeyPatch):
    calls = []
    monkeypatch.setattr(recovery_mod, "httpx", fake_httpx(calls))
    monkeypatch.setattr(config, "RESULTS_PERSIST_URL", "https://store.example/results")
    monkeypatch.setattr(config, "RESULTS_PERSIST_SECRET", "s3cret")

    w = _writer()
    await w.create_placeholder(Result(result_id="r1", user_id="u1", kind="mock_interview"))
    idx = await w.reserve("r1")
    await w.fill_primary("r1", idx, "Q?")

    assert [c["json"]["op"] for c in calls] == ["create", "reserve", "fill_primary"]
    assert all(c["headers"]["Authorization"] == "Bearer s3cret" for c in calls)
    assert calls[2]["json"]["payload"] == {"index": 0, "question": "Q?"}


@pytest.mark.asyncio
async def test_mirror_failures_surface_but_keep_local_state(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(recovery_mod, "httpx", fake_httpx([], status_code=503))
    monkeypatch.setattr(config, "RESULTS_PERSIST_URL", "https://store.example/results")

    w = _writer()
    with pytest.raises(PersistenceFailure):
        await w.create_placeholder(Result(result_id="r1", user_id="u1", kind="mock_interview"))
    assert w.store.get("r1") is not None

    monkeypatch.setattr(recovery_mod, "httpx", fake_httpx([], raise_exc=httpx.ConnectError("refused")))
    with pytest.raises(PersistenceFailure):
        await w.finalize("r1", ABANDONED)
    assert w.store.get("r1").status == ABANDONED


def _mirror_errors(op):
    return REGISTRY.get_sample_value("mockmate_recovery_writes_total", {"op": op, "outcome": "mirror_error"}) or 0.0


@pytest.mark.asyncio
async def test_mirror_rejection_is_counted_and_carries_the_local_result(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(recovery_mod, "httpx", fake_httpx(status_code=503))
    monkeypatch.setattr(config, "RESULTS_PERSIST_URL", "https://store.example/results")
    before = _mirror_errors("reserve")

    w = _writer()
    with pytest.raises(MirrorFailure):
        await w.create_placeholder(Result(result_id="r1", user_id="u1", kind="mock_interview"))
    with pytest.raises(MirrorFailure) as ei:
        await w.reserve("r1")

    assert ei.value.value == 0
    assert ei.value.detail["status"] == 503
    assert ei.value.code == "persistence_failure"
    assert _mirror_errors("reserve") == before + 1
    assert w.store.get("r1").question_count == 1


@pytest.mark.asyncio
async def test_local_write_failure_is_not_a_mirror_failure():
    w = _writer()
    with pytest.raises(PersistenceFailure) as ei:
        await w.reserve("missing")
    assert not isinstance(ei.value, MirrorFailure)
