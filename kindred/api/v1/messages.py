"""
Message Endpoints

Per-message actions that have no live counterpart: reports and bookmarks.
"""

from fastapi import APIRouter, Query, status

from kindred.core.deps import CurrentUserDep, HubDep
from kindred.core.time import to_iso
from kindred.schemas.chat import ReportIn, message_payload

router = APIRouter()


@router.get("/saved")
async def list_saved(user_id: CurrentUserDep, hub: HubDep, limit: int = Query(default=50, ge=1, le=100)):
    messages = await hub.conversations.list_saved(user_id, limit=limit)
    return {"messages": [message_payload(m, user_id) for m in messages]}


@router.post("/{message_id}/report", status_code=status.HTTP_201_CREATED)
async def report_message(message_id: str, body: ReportIn, user_id: CurrentUserDep, hub: HubDep):
    report = await hub.conversations.report_message(message_id, user_id, body.reason, body.details)
    return {
        "id": report.id,
        "messageId": message_id,
        "reason": report.reason,
        "createdAt": to_iso(report.created_at),
    }


@router.post("/{message_id}/save")
async def toggle_save(message_id: str, user_id: CurrentUserDep, hub: HubDep):
    saved = await hub.conversations.toggle_save(message_id, user_id)
    return {"messageId": message_id, "saved": saved}
