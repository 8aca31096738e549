"""
User and Match Models

Both are owned by the profile and matching services; this backend reads them
and only mutates presence fields and match blocking.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from kindred.models.base import Base, TimestampMixin, new_id


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    photo_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class MatchStatus:
    PENDING = "pending"
    MUTUAL = "mutual"
    BLOCKED = "blocked"


class Match(Base, TimestampMixin):
    """Ordered pair; user_low/user_high canonicalize the unordered pair"""
    __tablename__ = "matches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    matched_user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    user_low: Mapped[str] = mapped_column(String(36))
    user_high: Mapped[str] = mapped_column(String(36))
    status: Mapped[str] = mapped_column(String(20), default=MatchStatus.PENDING)

    __table_args__ = (UniqueConstraint("user_low", "user_high"),)

    @classmethod
    def between(cls, user_id: str, matched_user_id: str, status: str = MatchStatus.MUTUAL) -> "Match":
        low, high = sorted((user_id, matched_user_id))
        return cls(
            user_id=user_id,
            matched_user_id=matched_user_id,
            user_low=low,
            user_high=high,
            status=status,
        )

    def includes(self, user_id: str) -> bool:
        return user_id in (self.user_id, self.matched_user_id)

    def other(self, user_id: str) -> str:
        return self.matched_user_id if user_id == self.user_id else self.user_id
