"""
Conversation Models

One conversation per mutual match, always exactly two participants.
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kindred.core.time import utcnow
from kindred.models.base import Base, TimestampMixin, new_id


class ConversationStatus:
    ACTIVE = "active"
    BLOCKED = "blocked"
    DELETED = "deleted"
    ARCHIVED = "archived"


class Conversation(Base, TimestampMixin):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    match_id: Mapped[str] = mapped_column(ForeignKey("matches.id"), unique=True)
    status: Mapped[str] = mapped_column(String(20), default=ConversationStatus.ACTIVE)

    last_message_preview: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_message_sender_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    last_seq: Mapped[int] = mapped_column(Integer, default=0)
    first_message_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    ice_breakers: Mapped[list[Any]] = mapped_column(default=list)

    participants: Mapped[List["ConversationParticipant"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ConversationParticipant.joined_at",
    )

    def participant(self, user_id: str) -> Optional["ConversationParticipant"]:
        return next((p for p in self.participants if p.user_id == user_id), None)

    def other_participant(self, user_id: str) -> Optional["ConversationParticipant"]:
        return next((p for p in self.participants if p.user_id != user_id), None)


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    joined_at: Mapped[datetime] = mapped_column(default=utcnow)
    last_read_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_seen_message_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    unread_count: Mapped[int] = mapped_column(Integer, default=0)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    is_muted: Mapped[bool] = mapped_column(Boolean, default=False)
    muted_until: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    has_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    conversation: Mapped["Conversation"] = relationship(back_populates="participants")

    __table_args__ = (UniqueConstraint("conversation_id", "user_id"),)

    def muted(self, now: datetime) -> bool:
        if not self.is_muted:
            return False
        return self.muted_until is None or self.muted_until > now
