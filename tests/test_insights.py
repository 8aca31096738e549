"""
Insight enrichment: at-most-once, validated LLM output, template fallback
"""

import json

import pytest

from conftest import FakeConnection, seed_finished_session
from kindred.games.families import FAMILIES
from kindred.models.game import GameSession, SessionStatus
from kindred.realtime.rooms import RoomRouter, session_room
from kindred.services.insights import ENRICH_JOB, InsightEnricher, build_prompt


class FakeLLM:
    available = True

    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def chat_completion(self, messages, json_mode=False, **kwargs):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.reply


class RecordingQueue:
    def __init__(self):
        self.jobs = []

    def enqueue(self, func, *args, **kwargs):
        self.jobs.append((func, args, kwargs))


NHIE_ROUNDS = [(True, True), (True, False), (False, False)]


@pytest.fixture
async def finished_session(session_factory, pair) -> str:
    alice, bob, match_id = pair
    return await seed_finished_session(session_factory, "nhie", match_id, alice, bob, NHIE_ROUNDS)


@pytest.mark.asyncio
async def test_mock_provider_stores_fallback(session_factory, finished_session):
    rooms = RoomRouter()
    watcher = FakeConnection("watcher")
    rooms.join(watcher, session_room(finished_session))
    enricher = InsightEnricher(session_factory, rooms=rooms, use_mock=True, mode="INLINE")

    insights = await enricher.enrich(finished_session)

    assert insights["generated"] == "fallback"
    assert insights["compatibilityScore"] == 67
    assert "1 secrets" in insights["summary"]
    assert watcher.last("game:nhie:insights")["insights"] == insights

    async with session_factory() as db:
        session = await db.get(GameSession, finished_session)
        assert session.insights == insights
        assert session.insights_generated is True


@pytest.mark.asyncio
async def test_enrichment_runs_at_most_once(session_factory, finished_session):
    llm = FakeLLM(reply=json.dumps({"summary": "Great pair.", "tip": "Talk.", "compatibilityScore": 90}))
    enricher = InsightEnricher(session_factory, llm=llm, use_mock=False, mode="INLINE")

    first = await enricher.enrich(finished_session)
    second = await enricher.enrich(finished_session)

    assert first["generated"] == "llm"
    assert first["compatibilityScore"] == 90
    assert second is None
    assert len(llm.calls) == 1


@pytest.mark.parametrize(
    "reply",
    [
        "not json at all",
        json.dumps({"summary": "Missing the tip"}),
        json.dumps({"summary": "Out of range", "tip": "x", "compatibilityScore": 140}),
    ],
)
@pytest.mark.asyncio
async def test_invalid_llm_output_falls_back(session_factory, finished_session, reply):
    enricher = InsightEnricher(session_factory, llm=FakeLLM(reply=reply), use_mock=False, mode="INLINE")

    insights = await enricher.enrich(finished_session)

    assert insights["generated"] == "fallback"
    assert insights["tip"]


@pytest.mark.asyncio
async def test_llm_failure_falls_back(session_factory, finished_session):
    enricher = InsightEnricher(
        session_factory, llm=FakeLLM(error=ValueError("OpenAI API key not provided")), use_mock=False, mode="INLINE"
    )
    assert (await enricher.enrich(finished_session))["generated"] == "fallback"


@pytest.mark.asyncio
async def test_unexpected_llm_error_still_stores_fallback(session_factory, finished_session):
    llm = FakeLLM(error=RuntimeError("connection reset"))
    enricher = InsightEnricher(session_factory, llm=llm, use_mock=False, mode="INLINE")

    insights = await enricher.enrich(finished_session)

    assert insights["generated"] == "fallback"
    async with session_factory() as db:
        session = await db.get(GameSession, finished_session)
        assert session.insights_generated is True
        assert session.insights == insights


@pytest.mark.asyncio
async def test_missing_score_is_filled_from_results(session_factory, finished_session):
    llm = FakeLLM(reply=json.dumps({"summary": "Nice.", "highlights": ["a"], "tip": "Ask more."}))
    enricher = InsightEnricher(session_factory, llm=llm, use_mock=False, mode="INLINE")

    insights = await enricher.enrich(finished_session)
    assert insights["generated"] == "llm"
    assert insights["compatibilityScore"] == 67


@pytest.mark.asyncio
async def test_unfinished_session_is_not_enriched(session_factory, pair):
    alice, bob, match_id = pair
    session_id = await seed_finished_session(
        session_factory, "nhie", match_id, alice, bob, NHIE_ROUNDS, status=SessionStatus.ABANDONED
    )
    enricher = InsightEnricher(session_factory, use_mock=True, mode="INLINE")
    assert await enricher.enrich(session_id) is None


@pytest.mark.asyncio
async def test_rq_mode_enqueues_job(session_factory):
    queue = RecordingQueue()
    enricher = InsightEnricher(session_factory, queue=queue, mode="RQ", use_mock=True)

    enricher.schedule("s-1")

    assert queue.jobs == [(ENRICH_JOB, ("s-1",), {"job_id": "insights:s-1"})]
    await enricher.drain()


@pytest.mark.asyncio
async def test_prompt_describes_every_round(session_factory, finished_session):
    async with session_factory() as db:
        session = await db.get(GameSession, finished_session)
    messages = build_prompt(session, FAMILIES["nhie"])

    assert messages[0]["role"] == "system"
    lines = [line for line in messages[1]["content"].splitlines() if line[:2] in ("1.", "2.", "3.")]
    assert len(lines) == 3
    assert "Player 1: I have | Player 2: I haven't" in lines[1]
