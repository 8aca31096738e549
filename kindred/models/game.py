"""
Game Session Models

A session is one play-through of a game family by two matched users.
Answers live in their own table so the unique key (session, user, round)
is the at-most-once guard for answer recording.
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import JSON, Boolean, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kindred.core.time import utcnow
from kindred.models.base import Base, TimestampMixin, new_id


class SessionStatus:
    PENDING = "pending"
    STARTING = "starting"
    PLAYING = "playing"
    PAUSED = "paused"
    COMPLETED = "completed"
    DISCUSSION = "discussion"
    DECLINED = "declined"
    EXPIRED = "expired"
    ABANDONED = "abandoned"

    ACTIVE = (PENDING, STARTING, PLAYING, PAUSED)
    FINISHED = (COMPLETED, DISCUSSION)
    TERMINAL = (COMPLETED, DISCUSSION, DECLINED, EXPIRED, ABANDONED)


def pair_key(family: str, user_a: str, user_b: str) -> str:
    low, high = sorted((user_a, user_b))
    return f"{family}:{low}:{high}"


class GameSession(Base, TimestampMixin):
    __tablename__ = "game_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    family: Mapped[str] = mapped_column(String(20), index=True)
    match_id: Mapped[str] = mapped_column(ForeignKey("matches.id"), index=True)
    player1_id: Mapped[str] = mapped_column(String(36), index=True)
    player2_id: Mapped[str] = mapped_column(String(36), index=True)
    status: Mapped[str] = mapped_column(String(20), default=SessionStatus.PENDING, index=True)
    paused_from: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    question_order: Mapped[list[Any]] = mapped_column(default=list)
    current_index: Mapped[int] = mapped_column(Integer, default=0)
    revealed_index: Mapped[int] = mapped_column(Integer, default=-1)
    current_question_started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    current_question_expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    paused_remaining_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    results: Mapped[Optional[dict[str, Any]]] = mapped_column(nullable=True)
    insights: Mapped[Optional[dict[str, Any]]] = mapped_column(nullable=True)
    insights_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    insights_generated_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Correlation and uniqueness guards; active_pair_key is cleared on terminal states
    invite_key: Mapped[Optional[str]] = mapped_column(String(120), unique=True, nullable=True)
    active_pair_key: Mapped[Optional[str]] = mapped_column(String(120), unique=True, nullable=True)

    invited_at: Mapped[datetime] = mapped_column(default=utcnow)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(default=utcnow)
    expires_at: Mapped[datetime] = mapped_column()

    players: Mapped[List["GamePlayer"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="GamePlayer.slot",
    )
    answers: Mapped[List["GameAnswer"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="GameAnswer.question_index",
    )
    voice_notes: Mapped[List["GameVoiceNote"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="GameVoiceNote.created_at",
    )

    @property
    def total_questions(self) -> int:
        return len(self.question_order)

    @property
    def is_terminal(self) -> bool:
        return self.status in SessionStatus.TERMINAL

    def player(self, user_id: str) -> Optional["GamePlayer"]:
        return next((p for p in self.players if p.user_id == user_id), None)

    def partner_of(self, user_id: str) -> Optional["GamePlayer"]:
        return next((p for p in self.players if p.user_id != user_id), None)

    def player_in_slot(self, slot: int) -> "GamePlayer":
        return next(p for p in self.players if p.slot == slot)

    def answer_for(self, user_id: str, question_index: int) -> Optional["GameAnswer"]:
        return next(
            (a for a in self.answers if a.user_id == user_id and a.question_index == question_index),
            None,
        )

    def answers_of(self, user_id: str) -> list["GameAnswer"]:
        return [a for a in self.answers if a.user_id == user_id]

    def round_complete(self, question_index: int) -> bool:
        return all(self.answer_for(p.user_id, question_index) is not None for p in self.players)


class GamePlayer(Base):
    __tablename__ = "game_players"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(ForeignKey("game_sessions.id"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    slot: Mapped[int] = mapped_column(Integer)
    is_connected: Mapped[bool] = mapped_column(Boolean, default=False)
    is_ready: Mapped[bool] = mapped_column(Boolean, default=False)
    total_answered: Mapped[int] = mapped_column(Integer, default=0)
    total_timed_out: Mapped[int] = mapped_column(Integer, default=0)
    counters: Mapped[dict[str, Any]] = mapped_column(default=dict)
    points: Mapped[int] = mapped_column(Integer, default=0)

    session: Mapped["GameSession"] = relationship(back_populates="players")

    __table_args__ = (UniqueConstraint("session_id", "user_id"),)

    def bump(self, **increments: int) -> None:
        """Add to family-specific counters; reassigns so the JSON column is flushed"""
        counters = dict(self.counters or {})
        for key, value in increments.items():
            counters[key] = counters.get(key, 0) + value
        self.counters = counters


class GameAnswer(Base):
    __tablename__ = "game_answers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(ForeignKey("game_sessions.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(36))
    question_index: Mapped[int] = mapped_column(Integer)
    question_id: Mapped[str] = mapped_column(String(40))
    value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    answered_at: Mapped[datetime] = mapped_column(default=utcnow)
    response_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timed_out: Mapped[bool] = mapped_column(Boolean, default=False)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    session: Mapped["GameSession"] = relationship(back_populates="answers")

    __table_args__ = (UniqueConstraint("session_id", "user_id", "question_index"),)


class GameVoiceNote(Base):
    __tablename__ = "game_voice_notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(ForeignKey("game_sessions.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(36))
    audio_url: Mapped[str] = mapped_column(String(512))
    duration: Mapped[float] = mapped_column(Float)
    question_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    listened_by_partner: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    session: Mapped["GameSession"] = relationship(back_populates="voice_notes")
