"""
Message Models

Messages, reactions, reports and saves. Ordering inside a conversation is `seq`.
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kindred.models.base import Base, TimestampMixin, new_id


class MessageKind:
    TEXT = "text"
    PHOTO = "photo"
    VOICE = "voice"
    SYSTEM = "system"
    ICE_BREAKER = "iceBreaker"


class DeliveryStatus:
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    ORDER = {SENDING: 0, SENT: 1, DELIVERED: 2, READ: 3}

    @classmethod
    def can_advance(cls, current: str, target: str) -> bool:
        """Delivery only moves forward; failed is terminal"""
        if current in (cls.FAILED, target):
            return False
        if target == cls.FAILED:
            return current in (cls.SENDING, cls.SENT)
        return cls.ORDER.get(target, -1) > cls.ORDER.get(current, -1)


class ModerationStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_FLAGGED = "autoFlagged"


SYSTEM_MESSAGE_TEXTS = {
    "conversation_started": "You matched! Start the conversation.",
    "match_created": "You are now connected. Say hi!",
    "user_blocked": "This conversation is no longer available.",
    "user_unblocked": "This conversation has been restored.",
    "message_deleted": "Message was deleted",
    "media_expired": "This media has expired.",
    "safety_warning": "Remember to keep personal information private until you trust your match.",
}


class Message(Base, TimestampMixin):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), index=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    sender_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id"), nullable=True)
    kind: Mapped[str] = mapped_column(String(20), default=MessageKind.TEXT)
    system_type: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media: Mapped[Optional[dict[str, Any]]] = mapped_column(nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=DeliveryStatus.SENT)
    sent_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    read_by: Mapped[list[Any]] = mapped_column(default=list)

    is_edited: Mapped[bool] = mapped_column(Boolean, default=False)
    edited_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    original_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    deleted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    deleted_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    delete_for_everyone: Mapped[bool] = mapped_column(Boolean, default=False)

    reply_to: Mapped[Optional[dict[str, Any]]] = mapped_column(nullable=True)

    moderation_flagged: Mapped[bool] = mapped_column(Boolean, default=False)
    moderation_reason: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    moderation_severity: Mapped[str] = mapped_column(String(10), default="none")
    moderation_status: Mapped[str] = mapped_column(String(20), default=ModerationStatus.APPROVED)

    client_message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    reactions: Mapped[List["MessageReaction"]] = relationship(
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("conversation_id", "seq"),
        UniqueConstraint("conversation_id", "sender_id", "client_message_id"),
        Index("ix_messages_conversation_status", "conversation_id", "status"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def hidden_for(self, user_id: Optional[str]) -> bool:
        """Delete-for-me hides the message from the deleter only"""
        return self.is_deleted and not self.delete_for_everyone and self.deleted_by == user_id


class MessageReaction(Base):
    __tablename__ = "message_reactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    message_id: Mapped[str] = mapped_column(ForeignKey("messages.id"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"))
    emoji: Mapped[str] = mapped_column(String(16))
    reacted_at: Mapped[datetime] = mapped_column()

    message: Mapped["Message"] = relationship(back_populates="reactions")

    __table_args__ = (UniqueConstraint("message_id", "user_id"),)


class MessageReport(Base, TimestampMixin):
    """User report or automatic high-severity moderation report"""
    __tablename__ = "message_reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    message_id: Mapped[str] = mapped_column(ForeignKey("messages.id"), index=True)
    reporter_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reason: Mapped[str] = mapped_column(String(60))
    details: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    auto: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (UniqueConstraint("message_id", "reporter_id"),)


class MessageSave(Base, TimestampMixin):
    """Durable per-user bookmark"""
    __tablename__ = "message_saves"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    message_id: Mapped[str] = mapped_column(ForeignKey("messages.id"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)

    __table_args__ = (UniqueConstraint("message_id", "user_id"),)
