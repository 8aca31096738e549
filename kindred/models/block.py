"""
Block Model
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from kindred.models.base import Base, TimestampMixin, new_id

BLOCK_REASONS = (
    "spam",
    "harassment",
    "inappropriate_content",
    "fake_profile",
    "scam",
    "underage",
    "other",
)


class Block(Base, TimestampMixin):
    """Directed block: blocker -> blocked"""
    __tablename__ = "blocks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    blocker_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    blocked_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    reason: Mapped[str] = mapped_column(String(40), default="other")
    details: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (UniqueConstraint("blocker_id", "blocked_id"),)
