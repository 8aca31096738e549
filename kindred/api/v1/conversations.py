"""
Conversation Endpoints

REST side of chat: history, uploads and per-participant settings. Live
delivery of anything sent here still goes out over the push channel.
"""

from typing import Optional

from fastapi import APIRouter, File, Form, Query, Response, UploadFile, status

from kindred.core.config import settings
from kindred.core.deps import CurrentUserDep, HubDep
from kindred.core.time import to_iso
from kindred.schemas.chat import MuteIn, StartConversationIn, conversation_payload, message_payload

router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_conversation(body: StartConversationIn, user_id: CurrentUserDep, hub: HubDep, response: Response):
    """Open the conversation for a mutual match, or return the existing one."""
    conversation, created = await hub.conversations.start_conversation(user_id, body.match_id)
    if not created:
        response.status_code = status.HTTP_200_OK
    partner = conversation.other_participant(user_id)
    return conversation_payload(conversation, user_id, hub.presence.is_online(partner.user_id) if partner else None)


@router.get("")
async def list_conversations(user_id: CurrentUserDep, hub: HubDep):
    conversations = await hub.conversations.list_conversations(user_id)
    items = []
    for conversation in conversations:
        partner = conversation.other_participant(user_id)
        items.append(
            conversation_payload(conversation, user_id, hub.presence.is_online(partner.user_id) if partner else None)
        )
    return {"conversations": items}


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, user_id: CurrentUserDep, hub: HubDep):
    conversation = await hub.conversations.get_conversation(conversation_id, user_id)
    partner = conversation.other_participant(user_id)
    return conversation_payload(conversation, user_id, hub.presence.is_online(partner.user_id) if partner else None)


@router.get("/{conversation_id}/messages")
async def get_messages(
    conversation_id: str,
    user_id: CurrentUserDep,
    hub: HubDep,
    before: Optional[int] = Query(default=None, ge=1, description="Return messages with seq below this"),
    limit: int = Query(default=50, ge=1, le=100),
):
    messages = await hub.conversations.get_messages(conversation_id, user_id, before_seq=before, limit=limit)
    return {
        "messages": [message_payload(m, user_id) for m in messages],
        "hasMore": len(messages) == limit,
    }


@router.get("/{conversation_id}/search")
async def search_messages(
    conversation_id: str,
    user_id: CurrentUserDep,
    hub: HubDep,
    q: str = Query(..., min_length=1, max_length=100),
):
    messages = await hub.conversations.search_messages(conversation_id, user_id, q)
    return {"messages": [message_payload(m, user_id) for m in messages]}


@router.post("/{conversation_id}/photos", status_code=status.HTTP_201_CREATED)
async def send_photo(
    conversation_id: str,
    user_id: CurrentUserDep,
    hub: HubDep,
    file: UploadFile = File(...),
    client_message_id: Optional[str] = Form(default=None, alias="clientMessageId", max_length=64),
):
    # One byte past the cap is enough to reject without buffering the rest
    data = await file.read(settings.photo_max_bytes + 1)
    message, _ = await hub.chat.send_photo(
        conversation_id, user_id, data, file.content_type or "", client_message_id=client_message_id
    )
    return message_payload(message, user_id)


@router.post("/{conversation_id}/voice", status_code=status.HTTP_201_CREATED)
async def send_voice(
    conversation_id: str,
    user_id: CurrentUserDep,
    hub: HubDep,
    file: UploadFile = File(...),
    duration: float = Form(..., gt=0),
    client_message_id: Optional[str] = Form(default=None, alias="clientMessageId", max_length=64),
):
    data = await file.read()
    message, _ = await hub.chat.send_voice(
        conversation_id, user_id, data, file.content_type or "", duration, client_message_id=client_message_id
    )
    return message_payload(message, user_id)


@router.post("/{conversation_id}/ice-breakers/{index}", status_code=status.HTTP_201_CREATED)
async def send_ice_breaker(conversation_id: str, index: int, user_id: CurrentUserDep, hub: HubDep):
    message, _ = await hub.chat.send_ice_breaker(conversation_id, user_id, index)
    return message_payload(message, user_id)


@router.post("/{conversation_id}/mute")
async def toggle_mute(conversation_id: str, user_id: CurrentUserDep, hub: HubDep, body: Optional[MuteIn] = None):
    participant = await hub.conversations.toggle_mute(conversation_id, user_id, body.minutes if body else None)
    return {
        "conversationId": conversation_id,
        "isMuted": participant.is_muted,
        "mutedUntil": to_iso(participant.muted_until),
    }


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(conversation_id: str, user_id: CurrentUserDep, hub: HubDep):
    await hub.conversations.delete_conversation(conversation_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
