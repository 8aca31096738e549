"""
Compatibility aggregation across game families
"""

import pytest

from conftest import connect, seed_finished_session, seed_users
from kindred.core.errors import NotFoundError
from kindred.services.compatibility import CompatibilityAggregator, confidence_for


def test_confidence_levels():
    assert [confidence_for(n) for n in range(6)] == ["none", "low", "moderate", "moderate", "high", "high"]


@pytest.mark.asyncio
async def test_no_games_yet(session_factory, pair):
    alice, bob, _ = pair
    view = await CompatibilityAggregator(session_factory).view(alice, bob)

    assert view["completedCount"] == 0
    assert view["totalFamilies"] == 6
    assert view["overallScore"] is None
    assert view["confidence"] == "none"
    assert {f["status"] for f in view["families"]} == {"not_started"}


@pytest.mark.asyncio
async def test_aggregates_finished_sessions_per_family(session_factory, pair):
    alice, bob, match_id = pair
    await seed_finished_session(session_factory, "nhie", match_id, alice, bob, [(True, True), (False, False)])
    await seed_finished_session(session_factory, "wyr", match_id, bob, alice, [("A", "A"), ("A", "B")])
    voice = {"audioUrl": "/media/a.mp3", "duration": 10.0, "transcription": None}
    await seed_finished_session(
        session_factory,
        "wwyd",
        match_id,
        alice,
        bob,
        [(voice, voice)],
        insights={"compatibilityScore": 81, "generated": "llm"},
    )

    view = await CompatibilityAggregator(session_factory).view(bob, alice)
    by_family = {f["family"]: f for f in view["families"]}

    assert by_family["nhie"]["score"] == 100
    assert by_family["wyr"]["score"] == 50
    assert by_family["wwyd"]["score"] == 81
    assert by_family["spectrum"]["status"] == "not_started"
    assert view["completedCount"] == 3
    assert view["overallScore"] == round((100 + 50 + 81) / 3)
    assert view["summaryAvailable"] is True
    assert view["confidence"] == "moderate"


@pytest.mark.asyncio
async def test_in_progress_session_is_reported(hub, pair):
    alice, bob, match_id = pair
    session = await hub.engine.invite(await connect(hub, alice), "spectrum", match_id)

    view = await hub.compatibility.view(alice, bob)
    spectrum = next(f for f in view["families"] if f["family"] == "spectrum")
    assert spectrum == {**spectrum, "status": "in_progress", "sessionId": session.id}


@pytest.mark.asyncio
async def test_unmatched_pair(session_factory):
    alice, carol = await seed_users(session_factory, "Alice", "Carol")
    with pytest.raises(NotFoundError):
        await CompatibilityAggregator(session_factory).view(alice, carol)
