"""
Game session engine: invitation lifecycle, timed rounds, reveal, pause/resume
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from conftest import connect, fast_families, wait_for
from kindred.core.errors import BlockedError, ConflictError, ExpiredError, ForbiddenError, ValidationError
from kindred.games.families import answer_log
from kindred.models.game import GameSession, SessionStatus


def _state(conn, family="nhie"):
    return conn.last(f"game:{family}:state")


async def start_game(hub, alice_conn, bob_conn, match_id, family="nhie") -> str:
    session = await hub.engine.invite(alice_conn, family, match_id)
    await hub.engine.accept(bob_conn, session.id)
    if not hub.engine.family(family).is_async:
        await wait_for(lambda: (_state(alice_conn, family) or {}).get("status") == SessionStatus.PLAYING)
    return session.id


async def play_to_completion(hub, alice, bob, alice_conn, session_id, rounds=3):
    for index in range(rounds):
        await wait_for(lambda: _state(alice_conn)["currentQuestionIndex"] == index and not _state(alice_conn).get("revealed"))
        await hub.engine.answer(alice, session_id, True, question_index=index)
        await hub.engine.answer(bob, session_id, index % 2 == 0, question_index=index)
    await wait_for(lambda: alice_conn.events("game:nhie:completed"))


# ----------------------------------------------------------------------
# Invitations
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_invitation_reaches_invitee(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)

    session = await hub.engine.invite(alice_conn, "nhie", match_id, client_request_id="r1")

    assert session.status == SessionStatus.PENDING
    assert alice_conn.last("game:nhie:invitation_sent")["toUserId"] == bob
    invited = bob_conn.last("game:nhie:invited")
    assert invited["sessionId"] == session.id
    assert invited["fromUserId"] == alice

    replay = await hub.engine.invite(alice_conn, "nhie", match_id, client_request_id="r1")
    assert replay.id == session.id
    pending = await hub.engine.get_pending_invitation(bob, "nhie")
    assert pending["sessionId"] == session.id


@pytest.mark.asyncio
async def test_one_active_session_per_pair_and_family(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session = await hub.engine.invite(alice_conn, "nhie", match_id)

    with pytest.raises(ConflictError) as exc:
        await hub.engine.invite(bob_conn, "nhie", match_id)
    assert exc.value.details == {"sessionId": session.id}

    other = await hub.engine.invite(alice_conn, "wyr", match_id)
    assert other.id != session.id


@pytest.mark.asyncio
async def test_decline_then_reinvite(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)

    first = await hub.engine.invite(alice_conn, "nhie", match_id)
    declined = await hub.engine.decline(bob, first.id)
    assert declined.status == SessionStatus.DECLINED
    assert _state(alice_conn)["status"] == SessionStatus.DECLINED

    with pytest.raises(ForbiddenError):
        await hub.engine.decline(alice, first.id)

    second = await hub.engine.invite(alice_conn, "nhie", match_id)
    assert second.id != first.id
    assert second.status == SessionStatus.PENDING


@pytest.mark.asyncio
async def test_blocked_pair_cannot_invite(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    await hub.block_user(bob, alice)

    with pytest.raises(BlockedError):
        await hub.engine.invite(alice_conn, "nhie", match_id)


@pytest.mark.asyncio
async def test_pending_invitation_expires_lazily(make_hub, pair):
    alice, bob, match_id = pair
    now = [datetime(2026, 6, 1, 18, 0, 0)]
    hub = make_hub(clock=lambda: now[0])
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session = await hub.engine.invite(alice_conn, "nhie", match_id)

    now[0] += timedelta(hours=24, seconds=1)
    with pytest.raises(ExpiredError):
        await hub.engine.accept(bob_conn, session.id)
    assert _state(bob_conn)["status"] == SessionStatus.EXPIRED

    fresh = await hub.engine.invite(alice_conn, "nhie", match_id)
    assert fresh.status == SessionStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_family_via_dispatch(hub, pair):
    alice, _, match_id = pair
    alice_conn = await connect(hub, alice)

    await hub.dispatch(alice_conn, "game:chess:invite", {"matchId": match_id})
    assert alice_conn.last("game:chess:error")["code"] == "notFound"


# ----------------------------------------------------------------------
# Rounds
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_answer_then_reveal_then_next_round(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id)
    assert alice_conn.events("game:nhie:countdown")

    await hub.dispatch(alice_conn, "game:nhie:answer", {"sessionId": session_id, "answer": True, "questionIndex": 0})

    assert alice_conn.last("game:nhie:answer_recorded") == {"sessionId": session_id, "questionIndex": 0, "answer": True}
    assert bob_conn.last("game:nhie:waiting")["partnerAnswered"] is True
    # The partner's value never reaches bob before the reveal
    assert all("answer" not in data for event, data in bob_conn.sent if isinstance(data, dict) and event != "game:nhie:reveal")
    bob_view = await hub.engine.get_state(bob, session_id)
    assert bob_view["partnerAnswered"] is True
    assert "partnerAnswer" not in bob_view

    await hub.dispatch(bob_conn, "game:nhie:answer", {"sessionId": session_id, "answer": False, "questionIndex": 0})

    reveal = bob_conn.last("game:nhie:reveal")
    assert reveal["answers"] == {"player1": True, "player2": False}
    assert reveal["outcome"] == "secretUnlocked"
    assert reveal["points"] == {alice: 5, bob: 0}
    assert reveal["runningTotal"] == {alice: 5, bob: 0}

    await wait_for(lambda: _state(bob_conn)["currentQuestionIndex"] == 1)
    state = _state(bob_conn)
    assert state["status"] == SessionStatus.PLAYING
    assert state["myAnswer"] is None
    assert state["progress"]["completedRounds"] == 1


@pytest.mark.asyncio
async def test_round_timeout_reveals_nulls(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id)

    await wait_for(lambda: bob_conn.events("game:nhie:reveal"))
    reveal = bob_conn.last("game:nhie:reveal")
    assert reveal["questionIndex"] == 0
    assert reveal["answers"] == {"player1": None, "player2": None}
    assert reveal["outcome"] == "timedOut"

    with pytest.raises(ConflictError):
        await hub.engine.answer(alice, session_id, True, question_index=0)

    await wait_for(lambda: _state(alice_conn)["currentQuestionIndex"] == 1)
    assert _state(alice_conn)["you"]["totalTimedOut"] == 1


def _scorer_failing(times, score):
    calls = []

    def scorer(question, v1, v2):
        calls.append(question.id)
        if times is None or len(calls) <= times:
            raise RuntimeError("scoring unavailable")
        return score(question, v1, v2)

    return scorer


@pytest.mark.asyncio
async def test_round_timeout_retries_after_scoring_failure(make_hub, pair):
    alice, bob, match_id = pair
    families = fast_families(round_seconds=0.1)
    families["nhie"] = replace(families["nhie"], score_round=_scorer_failing(1, families["nhie"].score_round))
    hub = make_hub(families=families)
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    await start_game(hub, alice_conn, bob_conn, match_id)

    await wait_for(lambda: bob_conn.events("game:nhie:reveal"))
    reveal = bob_conn.last("game:nhie:reveal")
    assert reveal["questionIndex"] == 0
    assert reveal["outcome"] == "timedOut"
    await wait_for(lambda: _state(alice_conn)["currentQuestionIndex"] == 1)


@pytest.mark.asyncio
async def test_reveal_goes_out_unscored_when_scoring_keeps_failing(make_hub, pair):
    alice, bob, match_id = pair
    families = fast_families(round_seconds=5.0)
    families["nhie"] = replace(families["nhie"], score_round=_scorer_failing(None, families["nhie"].score_round))
    hub = make_hub(families=families)
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id)

    await hub.engine.answer(alice, session_id, True, question_index=0)
    await hub.engine.answer(bob, session_id, False, question_index=0)

    await wait_for(lambda: bob_conn.events("game:nhie:reveal"))
    reveal = bob_conn.last("game:nhie:reveal")
    assert reveal["answers"] == {"player1": True, "player2": False}
    assert reveal["outcome"] == "unscored"
    assert set(reveal["points"].values()) == {0}
    await wait_for(lambda: _state(alice_conn)["currentQuestionIndex"] == 1)


@pytest.mark.asyncio
async def test_duplicate_and_invalid_answers(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id)

    with pytest.raises(ValidationError):
        await hub.engine.answer(alice, session_id, "yes", question_index=0)

    await hub.engine.answer(alice, session_id, True, question_index=0)
    with pytest.raises(ConflictError) as exc:
        await hub.engine.answer(alice, session_id, False, question_index=0)
    assert exc.value.details == {"answer": True}

    with pytest.raises(ConflictError):
        await hub.engine.answer(bob, session_id, True, question_index=2)


@pytest.mark.asyncio
async def test_full_game_results_are_replayable(hub, pair, session_factory):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id)

    await play_to_completion(hub, alice, bob, alice_conn, session_id)

    completed = alice_conn.last("game:nhie:completed")
    results = completed["results"]
    assert results["totalSharedExperiences"] == 2
    assert results["totalSecretsUnlocked"] == 1
    assert results["player1Points"] == 11
    assert results["player2Points"] == 6
    assert _state(bob_conn)["status"] == SessionStatus.COMPLETED

    family = hub.engine.family("nhie")
    async with session_factory() as db:
        session = await db.get(GameSession, session_id)
        assert family.compute_results(answer_log(session, family.bank)) == session.results

    payload = await hub.engine.get_results(bob, session_id)
    assert payload["results"] == results
    history = await hub.engine.get_history(alice, "nhie")
    assert [h["sessionId"] for h in history] == [session_id]

    await wait_for(lambda: alice_conn.events("game:nhie:insights"))
    assert alice_conn.last("game:nhie:insights")["insights"]["generated"] == "fallback"


@pytest.mark.asyncio
async def test_quit_abandons_and_stops_timers(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id)

    await hub.dispatch(bob_conn, "game:nhie:quit", {"sessionId": session_id})

    assert _state(alice_conn)["status"] == SessionStatus.ABANDONED
    assert hub.timers.kinds(f"session:{session_id}") == []
    again = await hub.engine.quit(alice, session_id)
    assert again.status == SessionStatus.ABANDONED


# ----------------------------------------------------------------------
# Disconnects
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_disconnect_pauses_and_rejoin_resumes(make_hub, pair):
    alice, bob, match_id = pair
    hub = make_hub(families=fast_families(round_seconds=5.0))
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id)

    await hub.disconnect(bob_conn)
    assert alice_conn.last("game:nhie:partner_disconnected")["userId"] == bob

    await wait_for(lambda: _state(alice_conn)["status"] == SessionStatus.PAUSED)
    paused = _state(alice_conn)
    assert 0 < paused["timeRemaining"] <= 5000
    assert not hub.timers.active(f"session:{session_id}", "round")

    bob_again = await connect(hub, bob)
    await hub.dispatch(bob_again, "game:nhie:join", {"sessionId": session_id})

    assert alice_conn.last("game:nhie:partner_connected")["userId"] == bob
    resumed = _state(bob_again)
    assert resumed["status"] == SessionStatus.PLAYING
    assert resumed["currentQuestionIndex"] == 0
    assert resumed["timeRemaining"] <= paused["timeRemaining"]
    assert hub.timers.active(f"session:{session_id}", "round")


@pytest.mark.asyncio
async def test_quick_reconnect_does_not_pause(make_hub, pair):
    alice, bob, match_id = pair
    hub = make_hub(families=fast_families(round_seconds=5.0))
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id)

    await hub.disconnect(bob_conn)
    bob_again = await connect(hub, bob)
    await hub.engine.join(bob_again, "nhie")

    assert not hub.timers.active(f"session:{session_id}", f"grace:{bob}")
    assert _state(bob_again)["status"] == SessionStatus.PLAYING


@pytest.mark.asyncio
async def test_disconnect_during_countdown_waits_for_rejoin(make_hub, pair, session_factory):
    alice, bob, match_id = pair
    hub = make_hub(countdown_seconds=0.2, reconnect_grace_seconds=5.0)
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session = await hub.engine.invite(alice_conn, "nhie", match_id)
    await hub.engine.accept(bob_conn, session.id)
    owner = f"session:{session.id}"
    assert hub.timers.active(owner, "countdown")

    await hub.disconnect(bob_conn)
    assert not hub.timers.active(owner, "countdown")

    await asyncio.sleep(0.3)
    async with session_factory() as db:
        assert (await db.get(GameSession, session.id)).status == SessionStatus.STARTING
    assert _state(alice_conn)["status"] == SessionStatus.STARTING

    bob_again = await connect(hub, bob)
    await hub.engine.join(bob_again, "nhie", session.id)
    assert hub.timers.active(owner, "countdown")
    assert bob_again.last("game:nhie:countdown")["sessionId"] == session.id

    await wait_for(lambda: _state(alice_conn)["status"] == SessionStatus.PLAYING)
    assert _state(bob_again)["currentQuestionIndex"] == 0


# ----------------------------------------------------------------------
# Async family and discussion
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_async_family_completes_when_both_answer_everything(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id, family="wwyd")
    assert _state(alice_conn, "wwyd")["status"] == SessionStatus.PLAYING

    answer = {"audioUrl": "/media/a.mp3", "duration": 42}
    await hub.engine.answer(alice, session_id, answer, question_index=1)
    assert bob_conn.last("game:wwyd:partner_progress") == {"sessionId": session_id, "answered": 1, "total": 2}

    with pytest.raises(ValidationError):
        await hub.engine.answer(alice, session_id, answer, question_index=5)
    with pytest.raises(ValidationError):
        await hub.engine.answer(alice, session_id, {"audioUrl": "/media/a.mp3", "duration": 181}, question_index=0)

    await hub.engine.answer(alice, session_id, answer, question_index=0)
    await hub.engine.answer(bob, session_id, answer, question_index=0)
    assert alice_conn.events("game:wwyd:completed") == []
    await hub.engine.answer(bob, session_id, answer, question_index=1)

    completed = alice_conn.last("game:wwyd:completed")
    assert completed["results"]["player1Answered"] == 2
    assert completed["results"]["player2Answered"] == 2

    results = await hub.engine.get_results(alice, session_id)
    assert results["compatibilityPercent"] == 50
    assert results["compatibilityLevel"] == "needs_discussion"


@pytest.mark.asyncio
async def test_two_truths_guess_needs_partner_statements(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id, family="two_truths_lie")

    with pytest.raises(ConflictError):
        await hub.engine.answer(alice, session_id, {"guess": 0}, question_index=1)
    with pytest.raises(ValidationError):
        await hub.engine.answer(bob, session_id, {"guess": 0}, question_index=0)

    bob_lines = ["I met a famous chef", "I have never flown", "I speak three languages"]
    await hub.engine.answer(bob, session_id, {"statements": bob_lines, "lieIndex": 1}, question_index=0)

    state = await hub.engine.get_state(alice, session_id)
    guess_round = state["questions"][1]
    assert guess_round["partnerStatements"] == bob_lines
    assert "lieIndex" not in str(guess_round)
    assert (await hub.engine.get_state(bob, session_id))["questions"][1]["partnerStatements"] is None

    alice_lines = ["I broke my arm skiing", "I own a cactus", "I was born in June"]
    await hub.engine.answer(alice, session_id, {"statements": alice_lines, "lieIndex": 0}, question_index=0)
    await hub.engine.answer(alice, session_id, {"guess": 1}, question_index=1)
    await hub.engine.answer(bob, session_id, {"guess": 2}, question_index=1)

    results = alice_conn.last("game:two_truths_lie:completed")["results"]
    assert results["totalRounds"] == 1
    assert results["player1Correct"] + results["player2Correct"] == 1
    assert results["compatibilityPercent"] == 50


@pytest.mark.asyncio
async def test_dream_board_plays_as_async_family(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id, family="dream_board")

    state = await hub.engine.get_state(alice, session_id)
    assert state["questions"][0]["metadata"]["cards"]["A"]["title"] == "City Heartbeat"

    same = {"cardId": "A", "priority": "dream", "timeline": "someday"}
    for user in (alice, bob):
        await hub.engine.answer(user, session_id, same, question_index=0)
        await hub.engine.answer(user, session_id, same, question_index=1)

    results = await hub.engine.get_results(bob, session_id)
    assert results["results"]["alignedCount"] == 2
    assert results["compatibilityPercent"] == 100
    assert results["compatibilityLevel"] == "highly_compatible"


@pytest.mark.asyncio
async def test_voice_answer_upload_allows_longer_than_chat_limit(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id, family="wwyd")

    answer = await hub.engine.submit_voice_answer(alice, session_id, 0, b"ID3answer", "audio/mpeg", 120)
    assert answer.value["duration"] == 120
    assert answer.value["audioUrl"].startswith("/media/games/")

    with pytest.raises(ValidationError):
        await hub.engine.submit_voice_answer(alice, session_id, 1, b"ID3answer", "audio/mpeg", 181)


@pytest.mark.asyncio
async def test_voice_notes_open_discussion(hub, pair):
    alice, bob, match_id = pair
    alice_conn = await connect(hub, alice)
    bob_conn = await connect(hub, bob)
    session_id = await start_game(hub, alice_conn, bob_conn, match_id)

    with pytest.raises(ConflictError):
        await hub.engine.add_voice_note(alice, session_id, "/media/n.mp3", 20)

    await play_to_completion(hub, alice, bob, alice_conn, session_id)
    note = await hub.engine.upload_voice_note(alice, session_id, b"ID3note", "audio/mpeg", 20, question_index=1)

    assert bob_conn.last("game:nhie:voice_note")["note"]["id"] == note.id
    assert _state(bob_conn)["status"] == SessionStatus.DISCUSSION

    with pytest.raises(ForbiddenError):
        await hub.engine.mark_voice_note_listened(alice, session_id, note.id)
    await hub.dispatch(bob_conn, "game:nhie:voice_note_listened", {"sessionId": session_id, "noteId": note.id})
    assert alice_conn.last("game:nhie:voice_note_listened")["listenedBy"] == bob

    with pytest.raises(ValidationError):
        await hub.engine.add_voice_note(bob, session_id, "/media/m.mp3", 61)
