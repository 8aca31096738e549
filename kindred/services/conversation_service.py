"""
Conversation Service

Conversation lifecycle and read-side chat operations. Send-path operations
live in the chat pipeline; both share the per-conversation lock.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kindred.core.errors import (
    BlockedError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from kindred.core.logging import get_logger, log_event
from kindred.core.time import utcnow
from kindred.models.base import new_id
from kindred.models.conversation import Conversation, ConversationParticipant, ConversationStatus
from kindred.models.message import (
    SYSTEM_MESSAGE_TEXTS,
    DeliveryStatus,
    Message,
    MessageKind,
    MessageReport,
    MessageSave,
)
from kindred.models.user import Match, MatchStatus
from kindred.realtime.locks import KeyedLocks
from kindred.services.blocks import BlockRegistry

logger = get_logger(__name__)

ICE_BREAKERS = (
    "What's the best trip you've ever taken?",
    "What does your ideal Sunday look like?",
    "What's something you're really passionate about?",
    "What's the most spontaneous thing you've ever done?",
    "Coffee or cocktails for a first date?",
)

MAX_PAGE_SIZE = 100


def conversation_lock_key(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def preview_for(kind: str, text: Optional[str]) -> str:
    if kind in (MessageKind.TEXT, MessageKind.ICE_BREAKER, MessageKind.SYSTEM) and text:
        return text[:100]
    return f"Sent a {kind}"


async def load_participating(db: AsyncSession, conversation_id: str, user_id: str) -> Conversation:
    """Load a conversation the user takes part in, or raise notFound/forbidden"""
    conversation = await db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    if conversation.participant(user_id) is None:
        raise ForbiddenError("You are not a participant in this conversation")
    return conversation


def apply_new_message(conversation: Conversation, message: Message, now: datetime) -> None:
    """Conversation-side bookkeeping for a freshly persisted message"""
    conversation.last_seq = message.seq
    conversation.last_message_preview = preview_for(message.kind, message.text)
    conversation.last_message_at = now
    conversation.last_message_sender_id = message.sender_id
    if message.sender_id is None:
        return
    conversation.message_count += 1
    if conversation.first_message_at is None:
        conversation.first_message_at = now
    other = conversation.other_participant(message.sender_id)
    if other is not None:
        other.unread_count += 1
        other.has_deleted = False


def system_message(conversation: Conversation, system_type: str, now: datetime) -> Message:
    return Message(
        id=new_id(),
        conversation_id=conversation.id,
        seq=conversation.last_seq + 1,
        sender_id=None,
        kind=MessageKind.SYSTEM,
        system_type=system_type,
        text=SYSTEM_MESSAGE_TEXTS[system_type],
        status=DeliveryStatus.SENT,
        sent_at=now,
        created_at=now,
        updated_at=now,
        read_by=[],
        reactions=[],
    )


class ConversationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLocks,
        blocks: BlockRegistry,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.blocks = blocks
        self.clock = clock

    async def start_conversation(self, user_id: str, match_id: str) -> tuple[Conversation, bool]:
        """Return the match's conversation, creating it on first use"""
        async with self.locks.hold(f"match:{match_id}"):
            async with self.session_factory() as db:
                match = await db.get(Match, match_id)
                if match is None:
                    raise NotFoundError("Match not found")
                if not match.includes(user_id):
                    raise ForbiddenError("You are not part of this match")
                partner_id = match.other(user_id)
                if await self.blocks.is_either_blocked(user_id, partner_id, db=db):
                    raise BlockedError("This conversation is not available")
                if await self.blocks.restore_if_lapsed(db, match):
                    await db.commit()
                if match.status != MatchStatus.MUTUAL:
                    raise ForbiddenError("Conversations require a mutual match")

                existing = (
                    await db.execute(select(Conversation).where(Conversation.match_id == match_id))
                ).scalar_one_or_none()
                if existing is not None:
                    return existing, False

                now = self.clock()
                conversation = Conversation(
                    id=new_id(),
                    match_id=match_id,
                    status=ConversationStatus.ACTIVE,
                    message_count=0,
                    last_seq=0,
                    ice_breakers=list(ICE_BREAKERS),
                    participants=[
                        ConversationParticipant(user_id=match.user_id, joined_at=now, unread_count=0),
                        ConversationParticipant(user_id=match.matched_user_id, joined_at=now, unread_count=0),
                    ],
                )
                db.add(conversation)
                opening = system_message(conversation, "match_created", now)
                db.add(opening)
                apply_new_message(conversation, opening, now)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise ConflictError("Conversation already exists for this match")

        log_event(logger, "conversation.created", conversation=conversation.id, match=match_id)
        return conversation, True

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        async with self.session_factory() as db:
            stmt = (
                select(Conversation)
                .join(ConversationParticipant)
                .where(
                    and_(
                        ConversationParticipant.user_id == user_id,
                        ConversationParticipant.has_deleted.is_(False),
                        Conversation.status != ConversationStatus.DELETED,
                    )
                )
                .order_by(Conversation.last_message_at.desc())
            )
            return list((await db.execute(stmt)).scalars().unique().all())

    async def active_conversation_ids(self, user_id: str) -> List[str]:
        async with self.session_factory() as db:
            stmt = (
                select(Conversation.id)
                .join(ConversationParticipant)
                .where(
                    and_(
                        ConversationParticipant.user_id == user_id,
                        Conversation.status.in_((ConversationStatus.ACTIVE, ConversationStatus.BLOCKED)),
                    )
                )
            )
            return list((await db.execute(stmt)).scalars().all())

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        async with self.session_factory() as db:
            return await load_participating(db, conversation_id, user_id)

    async def get_messages(
        self,
        conversation_id: str,
        user_id: str,
        before_seq: Optional[int] = None,
        limit: int = 50,
    ) -> List[Message]:
        """Newest-first page; the partner's sent messages become delivered"""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        async with self.locks.hold(conversation_lock_key(conversation_id)):
            async with self.session_factory() as db:
                await load_participating(db, conversation_id, user_id)
                conditions = [Message.conversation_id == conversation_id]
                if before_seq is not None:
                    conditions.append(Message.seq < before_seq)
                stmt = select(Message).where(and_(*conditions)).order_by(Message.seq.desc()).limit(limit)
                messages = [m for m in (await db.execute(stmt)).scalars().all() if not m.hidden_for(user_id)]

                now = self.clock()
                changed = False
                for message in messages:
                    if (
                        message.sender_id not in (None, user_id)
                        and DeliveryStatus.can_advance(message.status, DeliveryStatus.DELIVERED)
                    ):
                        message.status = DeliveryStatus.DELIVERED
                        message.delivered_at = now
                        changed = True
                if changed:
                    await db.commit()
                return messages

    async def search_messages(self, conversation_id: str, user_id: str, query: str, limit: int = 50) -> List[Message]:
        query = query.strip()
        if len(query) < 2:
            raise ValidationError("Search query must be at least 2 characters")
        async with self.session_factory() as db:
            await load_participating(db, conversation_id, user_id)
            stmt = (
                select(Message)
                .where(
                    and_(
                        Message.conversation_id == conversation_id,
                        Message.kind == MessageKind.TEXT,
                        Message.deleted_at.is_(None),
                        Message.text.ilike(f"%{query}%"),
                    )
                )
                .order_by(Message.seq.desc())
                .limit(max(1, min(limit, MAX_PAGE_SIZE)))
            )
            return list((await db.execute(stmt)).scalars().all())

    async def toggle_mute(self, conversation_id: str, user_id: str, minutes: Optional[int] = None) -> ConversationParticipant:
        async with self.session_factory() as db:
            conversation = await load_participating(db, conversation_id, user_id)
            participant = conversation.participant(user_id)
            if participant.muted(self.clock()):
                participant.is_muted = False
                participant.muted_until = None
            else:
                participant.is_muted = True
                participant.muted_until = self.clock() + timedelta(minutes=minutes) if minutes else None
            await db.commit()
            return participant

    async def delete_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        """Soft delete for the caller; deleted for both marks the conversation deleted"""
        async with self.locks.hold(conversation_lock_key(conversation_id)):
            async with self.session_factory() as db:
                conversation = await load_participating(db, conversation_id, user_id)
                participant = conversation.participant(user_id)
                participant.has_deleted = True
                participant.deleted_at = self.clock()
                participant.unread_count = 0
                if all(p.has_deleted for p in conversation.participants):
                    conversation.status = ConversationStatus.DELETED
                await db.commit()
                return conversation

    async def report_message(
        self, message_id: str, reporter_id: str, reason: str, details: Optional[str] = None
    ) -> MessageReport:
        async with self.session_factory() as db:
            message = await db.get(Message, message_id)
            if message is None:
                raise NotFoundError("Message not found")
            await load_participating(db, message.conversation_id, reporter_id)
            if message.sender_id == reporter_id:
                raise ValidationError("You cannot report your own message")
            report = MessageReport(
                message_id=message_id,
                reporter_id=reporter_id,
                reason=reason,
                details=details,
                auto=False,
            )
            db.add(report)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("You already reported this message")
        log_event(logger, "message.reported", message=message_id, reporter=reporter_id, reason=reason)
        return report

    async def toggle_save(self, message_id: str, user_id: str) -> bool:
        """Returns True when the message is now saved"""
        async with self.session_factory() as db:
            message = await db.get(Message, message_id)
            if message is None or message.hidden_for(user_id):
                raise NotFoundError("Message not found")
            await load_participating(db, message.conversation_id, user_id)
            result = await db.execute(
                delete(MessageSave).where(
                    and_(MessageSave.message_id == message_id, MessageSave.user_id == user_id)
                )
            )
            if result.rowcount:
                await db.commit()
                return False
            db.add(MessageSave(message_id=message_id, user_id=user_id))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
            return True

    async def list_saved(self, user_id: str, limit: int = 50) -> List[Message]:
        async with self.session_factory() as db:
            stmt = (
                select(Message)
                .join(MessageSave, MessageSave.message_id == Message.id)
                .where(
                    and_(
                        MessageSave.user_id == user_id,
                        or_(Message.deleted_at.is_(None), Message.delete_for_everyone.is_(False)),
                    )
                )
                .order_by(MessageSave.created_at.desc())
                .limit(max(1, min(limit, MAX_PAGE_SIZE)))
            )
            return [m for m in (await db.execute(stmt)).scalars().all() if not m.hidden_for(user_id)]
