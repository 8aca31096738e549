"""
Game egress payloads

build_state_payload is the only way session state leaves the server. The
partner's answer for a round is included only once that round is revealed.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from kindred.core.time import millis_between, to_iso
from kindred.games.families import FamilyDescriptor, compatibility_level
from kindred.models.game import GamePlayer, GameSession, GameVoiceNote, SessionStatus


def _player_view(player: Optional[GamePlayer], private: bool) -> Optional[Dict[str, Any]]:
    if player is None:
        return None
    view = {
        "userId": player.user_id,
        "slot": player.slot,
        "isConnected": player.is_connected,
        "isReady": player.is_ready,
        "points": player.points,
        "totalAnswered": player.total_answered,
        "totalTimedOut": player.total_timed_out,
    }
    if private:
        view["counters"] = dict(player.counters or {})
    return view


def voice_note_payload(note: GameVoiceNote) -> Dict[str, Any]:
    return {
        "id": note.id,
        "userId": note.user_id,
        "audioUrl": note.audio_url,
        "duration": note.duration,
        "questionIndex": note.question_index,
        "listenedByPartner": note.listened_by_partner,
        "createdAt": to_iso(note.created_at),
    }


def question_payload(family: FamilyDescriptor, session: GameSession, index: int) -> Dict[str, Any]:
    question = family.bank.get(session.question_order[index])
    return {
        "index": index,
        "id": question.id,
        "number": question.number,
        "category": question.category,
        "text": question.text,
        "metadata": dict(question.metadata),
    }


def async_question_payload(
    family: FamilyDescriptor, session: GameSession, recipient_id: str, index: int, my_answer: Any
) -> Dict[str, Any]:
    question = question_payload(family, session, index)
    if family.question_view is not None:
        question.update(family.question_view(session, family.bank.get(question["id"]), recipient_id))
    question["myAnswer"] = my_answer
    return question

def build_state_payload(
    session: GameSession,
    recipient_id: str,
    family: FamilyDescriptor,
    now: datetime,
) -> Dict[str, Any]:
    me = session.player(recipient_id)
    partner = session.partner_of(recipient_id)
    index = session.current_index
    total = session.total_questions

    payload: Dict[str, Any] = {
        "sessionId": session.id,
        "family": family.key,
        "status": session.status,
        "currentQuestionIndex": index,
        "totalQuestions": total,
        "partner": _player_view(partner, private=False),
        "you": _player_view(me, private=True),
        "currentQuestion": None,
        "timeRemaining": None,
        "myAnswer": None,
        "partnerAnswered": False,
        "invitedAt": to_iso(session.invited_at),
        "expiresAt": to_iso(session.expires_at),
    }

    if family.is_async:
        mine = {a.question_index: a.value for a in session.answers_of(recipient_id)}
        partner_done = len(session.answers_of(partner.user_id)) if partner else 0
        payload["progress"] = {"answered": len(mine), "total": total, "partnerAnswered": partner_done}
        payload["questions"] = [
            async_question_payload(family, session, recipient_id, i, mine.get(i)) for i in range(total)
        ]
    else:
        completed_rounds = session.revealed_index + 1
        payload["progress"] = {
            "round": min(index + 1, total),
            "completedRounds": completed_rounds,
            "total": total,
            "percent": round(completed_rounds / total * 100) if total else 0,
        }
        if session.status in (SessionStatus.PLAYING, SessionStatus.PAUSED) and index < total:
            revealed = session.revealed_index >= index
            question = question_payload(family, session, index)
            question["expiresAt"] = to_iso(session.current_question_expires_at)
            payload["currentQuestion"] = question
            payload["revealed"] = revealed

            if session.status == SessionStatus.PAUSED:
                payload["timeRemaining"] = session.paused_remaining_ms
            elif session.current_question_expires_at is not None and not revealed:
                payload["timeRemaining"] = max(0, millis_between(now, session.current_question_expires_at))
            else:
                payload["timeRemaining"] = 0

            my_answer = session.answer_for(recipient_id, index)
            payload["myAnswer"] = my_answer.value if my_answer is not None else None
            partner_answer = session.answer_for(partner.user_id, index) if partner else None
            payload["partnerAnswered"] = partner_answer is not None and not partner_answer.timed_out
            if revealed:
                payload["partnerAnswer"] = partner_answer.value if partner_answer is not None else None

    if session.status in SessionStatus.FINISHED:
        payload["results"] = session.results
        payload["insights"] = session.insights
        payload["voiceNotes"] = [voice_note_payload(n) for n in session.voice_notes]
    return payload


def results_payload(session: GameSession, family: FamilyDescriptor) -> Dict[str, Any]:
    score = family.headline_score(session.results or {}, session.insights)
    payload = {
        "sessionId": session.id,
        "family": family.key,
        "status": session.status,
        "completedAt": to_iso(session.completed_at),
        "players": {
            "player1": _player_view(session.player_in_slot(1), private=False),
            "player2": _player_view(session.player_in_slot(2), private=False),
        },
        "results": session.results,
        "aiInsights": session.insights,
        "compatibilityPercent": score,
        "voiceNotes": [voice_note_payload(n) for n in session.voice_notes],
    }
    if family.is_async and score is not None:
        payload["compatibilityLevel"] = compatibility_level(score)
    return payload


def history_entry(session: GameSession, family: FamilyDescriptor, viewer_id: str) -> Dict[str, Any]:
    partner = session.partner_of(viewer_id)
    return {
        "sessionId": session.id,
        "family": family.key,
        "status": session.status,
        "partnerId": partner.user_id if partner else None,
        "completedAt": to_iso(session.completed_at),
        "compatibilityPercent": family.headline_score(session.results or {}, session.insights),
        "hasInsights": session.insights is not None,
    }
