"""
Game Endpoints

Read-side views and uploads for discovery games. Live play (invite, answer,
reveal) happens on the push channel.
"""

from typing import Optional

from fastapi import APIRouter, File, Form, Query, UploadFile, status

from kindred.core.deps import CurrentUserDep, HubDep
from kindred.core.errors import NotFoundError
from kindred.games.payloads import voice_note_payload
from kindred.realtime.hub import RealtimeHub

router = APIRouter()


async def _check_family(hub: RealtimeHub, family: str, session_id: str) -> None:
    hub.engine.family(family)
    if await hub.engine.session_family(session_id) != family:
        raise NotFoundError("Game session not found")


@router.get("/{family}/sessions/{session_id}")
async def get_state(family: str, session_id: str, user_id: CurrentUserDep, hub: HubDep):
    """Same per-player snapshot the state event carries."""
    await _check_family(hub, family, session_id)
    return await hub.engine.get_state(user_id, session_id)


@router.get("/{family}/sessions/{session_id}/results")
async def get_results(family: str, session_id: str, user_id: CurrentUserDep, hub: HubDep):
    await _check_family(hub, family, session_id)
    return await hub.engine.get_results(user_id, session_id)


@router.get("/{family}/history")
async def get_history(family: str, user_id: CurrentUserDep, hub: HubDep, limit: int = Query(default=20, ge=1, le=100)):
    return {"sessions": await hub.engine.get_history(user_id, family, limit=limit)}


@router.get("/{family}/pending")
async def get_pending_invitation(family: str, user_id: CurrentUserDep, hub: HubDep):
    return {"invitation": await hub.engine.get_pending_invitation(user_id, family)}


@router.post("/{family}/sessions/{session_id}/voice-notes", status_code=status.HTTP_201_CREATED)
async def upload_voice_note(
    family: str,
    session_id: str,
    user_id: CurrentUserDep,
    hub: HubDep,
    file: UploadFile = File(...),
    duration: float = Form(..., gt=0),
    question_index: Optional[int] = Form(default=None, alias="questionIndex", ge=0),
):
    """Post-game voice note; the first one opens the discussion phase."""
    await _check_family(hub, family, session_id)
    data = await file.read()
    note = await hub.engine.upload_voice_note(
        user_id, session_id, data, file.content_type or "", duration, question_index=question_index
    )
    return voice_note_payload(note)


@router.post("/{family}/sessions/{session_id}/voice-notes/{note_id}/listened")
async def mark_voice_note_listened(family: str, session_id: str, note_id: str, user_id: CurrentUserDep, hub: HubDep):
    await _check_family(hub, family, session_id)
    note = await hub.engine.mark_voice_note_listened(user_id, session_id, note_id)
    return voice_note_payload(note)


@router.post("/{family}/sessions/{session_id}/answers/{question_index}", status_code=status.HTTP_201_CREATED)
async def submit_voice_answer(
    family: str,
    session_id: str,
    question_index: int,
    user_id: CurrentUserDep,
    hub: HubDep,
    file: UploadFile = File(...),
    duration: float = Form(..., gt=0),
):
    """Voice answer for an asynchronous family (What Would You Do)."""
    await _check_family(hub, family, session_id)
    data = await file.read()
    answer = await hub.engine.submit_voice_answer(
        user_id, session_id, question_index, data, file.content_type or "", duration
    )
    return {
        "sessionId": session_id,
        "questionIndex": answer.question_index,
        "answer": answer.value,
    }
