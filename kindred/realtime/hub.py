"""
Realtime Hub

Process-wide container for the push-channel services. One instance lives on
app.state for the lifetime of the application; every component shares the same
timer registry, lock table and room router.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kindred.core.config import settings
from kindred.core.logging import get_logger, log_event
from kindred.core.time import to_iso, utcnow
from kindred.games.engine import GameEngine
from kindred.games.families import FamilyDescriptor
from kindred.infra.push import PushNotifier
from kindred.infra.queue import JobQueue
from kindred.infra.storage import LocalMediaStorage, MediaStorage
from kindred.models.block import Block
from kindred.models.user import User
from kindred.realtime.dispatch import dispatch_event
from kindred.realtime.locks import KeyedLocks
from kindred.realtime.presence import PresenceRegistry
from kindred.realtime.ratelimit import SlidingWindowLimiter
from kindred.realtime.rooms import Addressable, RoomRouter, conversation_room, user_room
from kindred.realtime.timers import TimerRegistry
from kindred.services.blocks import BlockRegistry
from kindred.services.chat_pipeline import ChatPipeline
from kindred.services.compatibility import CompatibilityAggregator
from kindred.services.conversation_service import ConversationService
from kindred.services.insights import InsightEnricher
from kindred.services.llm_clients.openai_client import OpenAIClient, Transcriber
from kindred.services.media import MediaService
from kindred.services.moderation import ModerationGate

logger = get_logger(__name__)

SESSION_ROOM_PREFIX = "session:"


class RealtimeHub:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        llm: Optional[OpenAIClient] = None,
        storage: Optional[MediaStorage] = None,
        push: Optional[PushNotifier] = None,
        queue: Optional[JobQueue] = None,
        families: Optional[Dict[str, FamilyDescriptor]] = None,
        clock: Callable[[], datetime] = utcnow,
        events_per_minute: Optional[int] = None,
        presence_grace_seconds: Optional[float] = None,
        typing_timeout_seconds: Optional[float] = None,
        edit_window_seconds: Optional[float] = None,
        countdown_seconds: Optional[float] = None,
        reveal_seconds: Optional[float] = None,
        reconnect_grace_seconds: Optional[float] = None,
        timer_retry_seconds: Optional[float] = None,
        insight_mode: Optional[str] = None,
        use_mock_insights: Optional[bool] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock

        self.timers = TimerRegistry()
        self.locks = KeyedLocks()
        self.rooms = RoomRouter()
        self.presence = PresenceRegistry(
            self.timers,
            grace_seconds=(
                presence_grace_seconds if presence_grace_seconds is not None else settings.presence_grace_seconds
            ),
            clock=clock,
        )
        self.limiter = SlidingWindowLimiter(
            events_per_minute if events_per_minute is not None else settings.ws_events_per_minute
        )

        transcriber = Transcriber(llm)
        self.blocks = BlockRegistry(session_factory, clock=clock)
        self.moderation = ModerationGate()
        self.media = MediaService(storage or LocalMediaStorage())

        self.conversations = ConversationService(session_factory, locks=self.locks, blocks=self.blocks, clock=clock)
        self.chat = ChatPipeline(
            session_factory,
            rooms=self.rooms,
            presence=self.presence,
            timers=self.timers,
            locks=self.locks,
            blocks=self.blocks,
            moderation=self.moderation,
            media=self.media,
            transcriber=transcriber,
            push=push,
            clock=clock,
            edit_window_seconds=edit_window_seconds,
            typing_timeout_seconds=typing_timeout_seconds,
        )
        self.engine = GameEngine(
            session_factory,
            rooms=self.rooms,
            timers=self.timers,
            locks=self.locks,
            blocks=self.blocks,
            media=self.media,
            transcriber=transcriber,
            families=families,
            clock=clock,
            countdown_seconds=countdown_seconds,
            reveal_seconds=reveal_seconds,
            grace_seconds=reconnect_grace_seconds,
            retry_seconds=timer_retry_seconds,
        )
        self.enricher = InsightEnricher(
            session_factory,
            llm=llm,
            rooms=self.rooms,
            families=families,
            queue=queue,
            mode=insight_mode,
            use_mock=use_mock_insights,
            clock=clock,
        )
        self.compatibility = CompatibilityAggregator(session_factory, families=families)

        self.engine.on_completed(self.enricher.schedule)
        self.presence.subscribe(self._on_presence_change)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self, conn: Addressable) -> None:
        await self.presence.attach(conn, conn.user_id)
        self.rooms.join(conn, user_room(conn.user_id))
        for conversation_id in await self.conversations.active_conversation_ids(conn.user_id):
            self.rooms.join(conn, conversation_room(conversation_id))
        log_event(logger, "ws.connected", conn=conn.id, user=conn.user_id)

    async def disconnect(self, conn: Addressable) -> None:
        self.chat.stop_all_typing(conn)
        rooms = self.rooms.leave_all(conn)
        for room in rooms:
            if not room.startswith(SESSION_ROOM_PREFIX):
                continue
            session_id = room[len(SESSION_ROOM_PREFIX):]
            try:
                await self.engine.handle_disconnect(conn.user_id, session_id)
            except Exception:
                logger.exception(f"Disconnect handling failed for session {session_id}")
        await self.presence.detach(conn)
        self.limiter.forget(conn.id)
        log_event(logger, "ws.disconnected", conn=conn.id, user=conn.user_id, rooms=len(rooms))

    async def dispatch(self, conn: Addressable, event: str, data: Any) -> None:
        await dispatch_event(self, conn, event, data)

    async def _on_presence_change(self, user_id: str, is_online: bool, last_seen: datetime) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(User).where(User.id == user_id).values(is_online=is_online, last_seen_at=last_seen)
            )
            await db.commit()

        payload = {"userId": user_id, "isOnline": is_online, "lastSeen": to_iso(last_seen)}
        for conversation_id in await self.conversations.active_conversation_ids(user_id):
            self.rooms.emit_to_room(conversation_room(conversation_id), "user:status", payload)

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------
    async def block_user(
        self,
        blocker_id: str,
        blocked_id: str,
        reason: str = "other",
        details: Optional[str] = None,
        expires_in_hours: Optional[int] = None,
    ) -> Block:
        block, conversation = await self.blocks.block(blocker_id, blocked_id, reason, details, expires_in_hours)
        if conversation is not None:
            self.rooms.emit_to_user(blocker_id, "conversation:blocked", {"conversationId": conversation.id})
        return block

    async def unblock_user(self, blocker_id: str, blocked_id: str) -> None:
        conversation = await self.blocks.unblock(blocker_id, blocked_id)
        if conversation is not None:
            self.rooms.emit_to_user(blocker_id, "conversation:unblocked", {"conversationId": conversation.id})

    async def shutdown(self) -> None:
        await self.timers.shutdown()
        await self.chat.drain()
        await self.enricher.drain()
