"""
Chat Schemas

Ingress event payloads (camelCase on the wire) and egress renderers.
Raw ORM rows are never emitted; everything leaves through these functions.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from kindred.core.time import to_iso
from kindred.models.block import Block
from kindred.models.conversation import Conversation
from kindred.models.message import Message


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# Ingress ------------------------------------------------------------
class ConversationRef(WireModel):
    conversation_id: str


class SendMessageIn(WireModel):
    conversation_id: str
    text: str
    client_message_id: Optional[str] = Field(default=None, max_length=64)
    reply_to_message_id: Optional[str] = None


class ReadIn(WireModel):
    conversation_id: str
    message_id: str


class MessageRef(WireModel):
    message_id: str


class DeleteMessageIn(WireModel):
    message_id: str
    for_everyone: bool = False


class EditMessageIn(WireModel):
    message_id: str
    text: str


class ReactIn(WireModel):
    message_id: str
    emoji: str


# REST ---------------------------------------------------------------
class StartConversationIn(WireModel):
    match_id: str


class MuteIn(WireModel):
    minutes: Optional[int] = Field(default=None, ge=1, le=60 * 24 * 365)


class ReportIn(WireModel):
    reason: str = Field(min_length=1, max_length=60)
    details: Optional[str] = Field(default=None, max_length=500)


class BlockIn(WireModel):
    user_id: str
    reason: str = "other"
    details: Optional[str] = Field(default=None, max_length=500)
    expires_in_hours: Optional[int] = Field(default=None, ge=1)


# Egress -------------------------------------------------------------
def message_payload(message: Message, viewer_id: Optional[str] = None) -> dict[str, Any]:
    """Render a message; a delete-for-everyone message carries no body and no media"""
    erased = message.is_deleted and message.delete_for_everyone
    payload: dict[str, Any] = {
        "id": message.id,
        "conversationId": message.conversation_id,
        "seq": message.seq,
        "senderId": message.sender_id,
        "kind": message.kind,
        "systemType": message.system_type,
        "text": None if erased else message.text,
        "media": None if erased else message.media,
        "status": message.status,
        "sentAt": to_iso(message.sent_at),
        "deliveredAt": to_iso(message.delivered_at),
        "readAt": to_iso(message.read_at),
        "readBy": list(message.read_by or []),
        "isEdited": message.is_edited,
        "editedAt": to_iso(message.edited_at),
        "isDeleted": message.is_deleted,
        "deletedForEveryone": erased,
        "replyTo": message.reply_to,
        "reactions": [
            {"userId": r.user_id, "emoji": r.emoji}
            for r in sorted(message.reactions, key=lambda r: r.reacted_at)
        ],
        "clientMessageId": message.client_message_id,
        "createdAt": to_iso(message.created_at),
    }
    if viewer_id is not None and viewer_id == message.sender_id:
        payload["moderation"] = {
            "flagged": message.moderation_flagged,
            "reason": message.moderation_reason,
            "status": message.moderation_status,
        }
    return payload


def conversation_payload(
    conversation: Conversation,
    viewer_id: str,
    partner_online: Optional[bool] = None,
) -> dict[str, Any]:
    me = conversation.participant(viewer_id)
    partner = conversation.other_participant(viewer_id)
    return {
        "id": conversation.id,
        "matchId": conversation.match_id,
        "status": conversation.status,
        "lastMessagePreview": conversation.last_message_preview,
        "lastMessageAt": to_iso(conversation.last_message_at),
        "messageCount": conversation.message_count,
        "unreadCount": me.unread_count if me else 0,
        "isMuted": me.is_muted if me else False,
        "lastReadAt": to_iso(me.last_read_at) if me else None,
        "partner": {
            "userId": partner.user_id if partner else None,
            "isOnline": partner_online,
        },
        "iceBreakers": list(conversation.ice_breakers or []),
        "createdAt": to_iso(conversation.created_at),
    }


def block_payload(block: Block) -> dict[str, Any]:
    return {
        "id": block.id,
        "blockedUserId": block.blocked_id,
        "reason": block.reason,
        "expiresAt": to_iso(block.expires_at),
        "createdAt": to_iso(block.created_at),
    }
