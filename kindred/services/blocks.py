"""
Block Registry

Symmetric block predicate plus block/unblock bookkeeping. Blocking also
freezes the shared conversation and the match.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kindred.core.errors import ConflictError, NotFoundError, ValidationError
from kindred.core.logging import get_logger, log_event
from kindred.core.time import utcnow
from kindred.models.block import BLOCK_REASONS, Block
from kindred.models.conversation import Conversation, ConversationStatus
from kindred.models.user import Match, MatchStatus

logger = get_logger(__name__)


def _either_direction(a: str, b: str):
    return or_(
        and_(Block.blocker_id == a, Block.blocked_id == b),
        and_(Block.blocker_id == b, Block.blocked_id == a),
    )


def _active(now: datetime):
    return or_(Block.expires_at.is_(None), Block.expires_at > now)


class BlockRegistry:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def is_either_blocked(self, a: str, b: str, db: Optional[AsyncSession] = None) -> bool:
        # Both conditions must hold: either direction AND still active
        stmt = select(Block.id).where(and_(_either_direction(a, b), _active(self.clock()))).limit(1)
        if db is not None:
            return (await db.execute(stmt)).first() is not None
        async with self.session_factory() as session:
            return (await session.execute(stmt)).first() is not None

    async def block(
        self,
        blocker_id: str,
        blocked_id: str,
        reason: str = "other",
        details: Optional[str] = None,
        expires_in_hours: Optional[int] = None,
    ) -> tuple[Block, Optional[Conversation]]:
        if blocker_id == blocked_id:
            raise ValidationError("You cannot block yourself")
        if reason not in BLOCK_REASONS:
            raise ValidationError(f"Unknown block reason: {reason}")

        now = self.clock()
        expires_at = now + timedelta(hours=expires_in_hours) if expires_in_hours else None

        async with self.session_factory() as db:
            block = Block(
                blocker_id=blocker_id,
                blocked_id=blocked_id,
                reason=reason,
                details=details,
                expires_at=expires_at,
            )
            db.add(block)
            try:
                await db.flush()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("User is already blocked")

            match = await self._match_between(db, blocker_id, blocked_id)
            conversation = None
            if match is not None:
                match.status = MatchStatus.BLOCKED
                conversation = await self._conversation_for(db, match.id)
                if conversation is not None:
                    conversation.status = ConversationStatus.BLOCKED
                    participant = conversation.participant(blocker_id)
                    if participant is not None:
                        participant.is_blocked = True
            await db.commit()

        log_event(logger, "block.created", blocker=blocker_id, blocked=blocked_id, reason=reason)
        return block, conversation

    async def unblock(self, blocker_id: str, blocked_id: str) -> Optional[Conversation]:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(Block).where(and_(Block.blocker_id == blocker_id, Block.blocked_id == blocked_id))
            )
            if result.rowcount == 0:
                raise NotFoundError("Block not found")
            await db.flush()

            still_blocked = await self.is_either_blocked(blocker_id, blocked_id, db=db)
            match = await self._match_between(db, blocker_id, blocked_id)
            conversation = None
            if match is not None:
                conversation = await self._conversation_for(db, match.id)
                if conversation is not None:
                    participant = conversation.participant(blocker_id)
                    if participant is not None:
                        participant.is_blocked = False
                if not still_blocked:
                    match.status = MatchStatus.MUTUAL
                    if conversation is not None and conversation.status == ConversationStatus.BLOCKED:
                        conversation.status = ConversationStatus.ACTIVE
            await db.commit()

        log_event(logger, "block.removed", blocker=blocker_id, blocked=blocked_id)
        return conversation

    async def list_blocked(self, blocker_id: str) -> List[Block]:
        async with self.session_factory() as db:
            stmt = (
                select(Block)
                .where(and_(Block.blocker_id == blocker_id, _active(self.clock())))
                .order_by(Block.created_at.desc())
            )
            return list((await db.execute(stmt)).scalars().all())

    async def purge_expired(self) -> int:
        """Delete lapsed blocks and thaw the pairs they were freezing"""
        now = self.clock()
        async with self.session_factory() as db:
            expired = (
                await db.execute(select(Block).where(and_(Block.expires_at.is_not(None), Block.expires_at <= now)))
            ).scalars().all()
            pairs = {tuple(sorted((b.blocker_id, b.blocked_id))) for b in expired}
            for block in expired:
                await db.delete(block)
            await db.flush()
            for a, b in pairs:
                match = await self._match_between(db, a, b)
                if match is not None:
                    await self.restore_if_lapsed(db, match)
            await db.commit()

        if expired:
            log_event(logger, "block.purged", count=len(expired))
        return len(expired)

    async def restore_if_lapsed(self, db: AsyncSession, match: Match) -> bool:
        """
        A match frozen by a block that has since expired goes back to mutual,
        along with its conversation. The caller commits.
        """
        if match.status != MatchStatus.BLOCKED:
            return False
        if await self.is_either_blocked(match.user_id, match.matched_user_id, db=db):
            return False
        match.status = MatchStatus.MUTUAL
        conversation = await self._conversation_for(db, match.id)
        if conversation is not None:
            if conversation.status == ConversationStatus.BLOCKED:
                conversation.status = ConversationStatus.ACTIVE
            for participant in conversation.participants:
                participant.is_blocked = False
        log_event(logger, "block.lapsed", match=match.id)
        return True

    @staticmethod
    async def _match_between(db: AsyncSession, a: str, b: str) -> Optional[Match]:
        low, high = sorted((a, b))
        stmt = select(Match).where(and_(Match.user_low == low, Match.user_high == high))
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _conversation_for(db: AsyncSession, match_id: str) -> Optional[Conversation]:
        stmt = select(Conversation).where(Conversation.match_id == match_id)
        return (await db.execute(stmt)).scalar_one_or_none()
