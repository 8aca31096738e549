"""
Chat Delivery Pipeline

Send, edit, delete, react, read receipts and typing. Every compound
persist-then-fan-out step runs under the per-conversation lock, so the order of
message:new frames equals the seq order in the database.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Set

from sqlalchemy import and_, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kindred.core.config import settings
from kindred.core.errors import (
    BlockedError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from kindred.core.logging import get_logger, log_event
from kindred.core.time import to_iso, utcnow
from kindred.infra.push import LoggingPushNotifier, PushNotifier
from kindred.models.base import new_id
from kindred.models.conversation import Conversation, ConversationStatus
from kindred.models.message import (
    DeliveryStatus,
    Message,
    MessageKind,
    MessageReaction,
    MessageReport,
    ModerationStatus,
)
from kindred.models.user import Match, MatchStatus
from kindred.realtime.locks import KeyedLocks
from kindred.realtime.presence import PresenceRegistry
from kindred.realtime.rooms import Addressable, RoomRouter, conversation_room, user_room
from kindred.realtime.timers import TimerRegistry
from kindred.schemas.chat import message_payload
from kindred.services.blocks import BlockRegistry
from kindred.services.conversation_service import (
    apply_new_message,
    conversation_lock_key,
    load_participating,
    preview_for,
    system_message,
)
from kindred.services.llm_clients.openai_client import Transcriber
from kindred.services.media import VOICE_MIME_TYPES, MediaService
from kindred.services.moderation import ALLOW, ModerationGate, Verdict

logger = get_logger(__name__)

REACTION_EMOJIS = ("❤️", "😂", "😮", "😢", "😡", "👍")


class ChatPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        rooms: RoomRouter,
        presence: PresenceRegistry,
        timers: TimerRegistry,
        locks: KeyedLocks,
        blocks: BlockRegistry,
        moderation: ModerationGate,
        media: MediaService,
        transcriber: Optional[Transcriber] = None,
        push: Optional[PushNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
        max_length: Optional[int] = None,
        edit_window_seconds: Optional[float] = None,
        typing_timeout_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.rooms = rooms
        self.presence = presence
        self.timers = timers
        self.locks = locks
        self.blocks = blocks
        self.moderation = moderation
        self.media = media
        self.transcriber = transcriber or Transcriber()
        self.push = push or LoggingPushNotifier()
        self.clock = clock
        self.max_length = max_length or settings.message_max_length
        self.edit_window = timedelta(
            seconds=edit_window_seconds if edit_window_seconds is not None else settings.edit_window_seconds
        )
        self.typing_timeout = (
            typing_timeout_seconds if typing_timeout_seconds is not None else settings.typing_timeout_seconds
        )
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------
    async def join(self, conn: Addressable, conversation_id: str) -> None:
        async with self.session_factory() as db:
            await load_participating(db, conversation_id, conn.user_id)
        self.rooms.join(conn, conversation_room(conversation_id))

    async def leave(self, conn: Addressable, conversation_id: str) -> None:
        self._stop_typing(conn, conversation_id)
        self.rooms.leave(conn, conversation_room(conversation_id))

    # ------------------------------------------------------------------
    # Send path
    # ------------------------------------------------------------------
    def validate_text(self, text: Optional[str]) -> str:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty")
        if len(text) > self.max_length:
            raise ValidationError(f"Message exceeds {self.max_length} characters")
        return text

    async def send_text(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        client_message_id: Optional[str] = None,
        reply_to_message_id: Optional[str] = None,
    ) -> tuple[Message, bool]:
        """Returns (message, created); a replayed clientMessageId returns the stored message"""
        text = self.validate_text(text)
        verdict = self.moderation.screen_text(text)
        return await self._deliver(
            conversation_id,
            sender_id,
            kind=MessageKind.TEXT,
            text=text,
            client_message_id=client_message_id,
            reply_to_message_id=reply_to_message_id,
            verdict=verdict,
        )

    async def send_ice_breaker(self, conversation_id: str, sender_id: str, index: int) -> tuple[Message, bool]:
        async with self.session_factory() as db:
            conversation = await load_participating(db, conversation_id, sender_id)
            prompts = list(conversation.ice_breakers or [])
        if not 0 <= index < len(prompts):
            raise ValidationError("Unknown ice breaker")
        return await self._deliver(
            conversation_id,
            sender_id,
            kind=MessageKind.ICE_BREAKER,
            text=prompts[index],
            client_message_id=f"ice-breaker:{index}",
        )

    async def send_photo(
        self,
        conversation_id: str,
        sender_id: str,
        data: bytes,
        mime: str,
        client_message_id: Optional[str] = None,
    ) -> tuple[Message, bool]:
        existing = await self._replay(conversation_id, sender_id, client_message_id)
        if existing is not None:
            return existing, False

        media = await self.media.store_photo(data, mime, prefix=f"conversations/{conversation_id}")
        safe = await self.moderation.screen_image(media["url"])
        try:
            message, created = await self._deliver(
                conversation_id,
                sender_id,
                kind=MessageKind.PHOTO,
                media=media,
                client_message_id=client_message_id,
                moderation_status=ModerationStatus.APPROVED if safe else ModerationStatus.AUTO_FLAGGED,
            )
        except Exception:
            await self.media.release(media)
            raise
        if not created:
            self._spawn(self.media.release(media))
        return message, created

    async def send_voice(
        self,
        conversation_id: str,
        sender_id: str,
        data: bytes,
        mime: str,
        duration: float,
        client_message_id: Optional[str] = None,
    ) -> tuple[Message, bool]:
        existing = await self._replay(conversation_id, sender_id, client_message_id)
        if existing is not None:
            return existing, False

        media = await self.media.store_voice(data, mime, duration, prefix=f"conversations/{conversation_id}")
        extension = VOICE_MIME_TYPES[mime.lower()]
        transcription = await self.transcriber.transcribe(data, f"voice.{extension}")
        verdict = self.moderation.screen_text(transcription) if transcription else ALLOW
        try:
            message, created = await self._deliver(
                conversation_id,
                sender_id,
                kind=MessageKind.VOICE,
                text=transcription,
                media=media,
                client_message_id=client_message_id,
                verdict=verdict,
            )
        except Exception:
            await self.media.release(media)
            raise
        if not created:
            self._spawn(self.media.release(media))
        return message, created

    async def _deliver(
        self,
        conversation_id: str,
        sender_id: str,
        *,
        kind: str,
        text: Optional[str] = None,
        media: Optional[dict[str, Any]] = None,
        client_message_id: Optional[str] = None,
        reply_to_message_id: Optional[str] = None,
        verdict: Verdict = ALLOW,
        moderation_status: Optional[str] = None,
    ) -> tuple[Message, bool]:
        async with self.locks.hold(conversation_lock_key(conversation_id)):
            async with self.session_factory() as db:
                conversation = await load_participating(db, conversation_id, sender_id)
                await self._ensure_writable(db, conversation, sender_id)

                if client_message_id:
                    existing = await self._by_client_id(db, conversation_id, sender_id, client_message_id)
                    if existing is not None:
                        return existing, False

                reply_to = None
                if reply_to_message_id:
                    reply_to = await self._reply_snapshot(db, conversation_id, reply_to_message_id)

                now = self.clock()
                if moderation_status is None:
                    moderation_status = ModerationStatus.AUTO_FLAGGED if verdict.flagged else ModerationStatus.APPROVED
                message = Message(
                    id=new_id(),
                    conversation_id=conversation_id,
                    seq=conversation.last_seq + 1,
                    sender_id=sender_id,
                    kind=kind,
                    text=text,
                    media=media,
                    status=DeliveryStatus.SENT,
                    sent_at=now,
                    created_at=now,
                    updated_at=now,
                    read_by=[],
                    reply_to=reply_to,
                    moderation_flagged=verdict.flagged or moderation_status == ModerationStatus.AUTO_FLAGGED,
                    moderation_reason=verdict.reason,
                    moderation_severity=verdict.severity.value,
                    moderation_status=moderation_status,
                    client_message_id=client_message_id,
                    reactions=[],
                )
                db.add(message)
                if verdict.auto_report:
                    db.add(
                        MessageReport(
                            message_id=message.id,
                            reporter_id=None,
                            reason=verdict.rule or "auto",
                            details=verdict.reason,
                            auto=True,
                        )
                    )
                apply_new_message(conversation, message, now)
                recipient = conversation.other_participant(sender_id)

                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    if client_message_id:
                        existing = await self._by_client_id(db, conversation_id, sender_id, client_message_id)
                        if existing is not None:
                            return existing, False
                    raise TransientError("Message could not be stored, retry with the same clientMessageId")
                except DBAPIError as e:
                    await db.rollback()
                    logger.error(f"Persisting message in {conversation_id} failed: {e}")
                    raise TransientError("Message could not be stored, retry with the same clientMessageId")

            self.rooms.emit_to_room(
                conversation_room(conversation_id),
                "message:new",
                {"message": message_payload(message), "conversationId": conversation_id},
            )

        if verdict.flagged:
            log_event(
                logger,
                "moderation.flagged",
                message=message.id,
                rule=verdict.rule,
                severity=verdict.severity.value,
            )
        if recipient is not None and not self.presence.is_online(recipient.user_id) and not recipient.muted(now):
            await self.push.notify(
                recipient.user_id,
                "New message",
                preview_for(kind, text),
                {"type": "message", "conversationId": conversation_id, "messageId": message.id},
            )
        return message, True

    async def _ensure_writable(self, db: AsyncSession, conversation: Conversation, sender_id: str) -> None:
        partner = conversation.other_participant(sender_id)
        if partner is not None and await self.blocks.is_either_blocked(sender_id, partner.user_id, db=db):
            raise BlockedError("You cannot message this user")
        if conversation.status == ConversationStatus.BLOCKED:
            # The block that froze the conversation has expired
            match = await db.get(Match, conversation.match_id)
            if match is not None and match.status == MatchStatus.BLOCKED:
                match.status = MatchStatus.MUTUAL
            conversation.status = ConversationStatus.ACTIVE
            for participant in conversation.participants:
                participant.is_blocked = False
        if conversation.status != ConversationStatus.ACTIVE:
            raise ForbiddenError("Conversation is not active")

    async def _replay(self, conversation_id: str, sender_id: str, client_message_id: Optional[str]) -> Optional[Message]:
        if not client_message_id:
            return None
        async with self.session_factory() as db:
            await load_participating(db, conversation_id, sender_id)
            return await self._by_client_id(db, conversation_id, sender_id, client_message_id)

    @staticmethod
    async def _by_client_id(
        db: AsyncSession, conversation_id: str, sender_id: str, client_message_id: str
    ) -> Optional[Message]:
        stmt = select(Message).where(
            and_(
                Message.conversation_id == conversation_id,
                Message.sender_id == sender_id,
                Message.client_message_id == client_message_id,
            )
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _reply_snapshot(db: AsyncSession, conversation_id: str, message_id: str) -> dict[str, Any]:
        target = await db.get(Message, message_id)
        if target is None or target.conversation_id != conversation_id:
            raise NotFoundError("Replied-to message not found")
        erased = target.is_deleted and target.delete_for_everyone
        return {
            "messageId": target.id,
            "senderId": target.sender_id,
            "kind": target.kind,
            "text": None if erased else (target.text or "")[:100],
        }

    # ------------------------------------------------------------------
    # Edit / delete
    # ------------------------------------------------------------------
    async def _conversation_of(self, message_id: str) -> str:
        async with self.session_factory() as db:
            message = await db.get(Message, message_id)
            if message is None:
                raise NotFoundError("Message not found")
            return message.conversation_id

    def _check_window(self, message: Message, action: str) -> None:
        if self.clock() - message.created_at > self.edit_window:
            minutes = int(self.edit_window.total_seconds() // 60)
            raise ExpiredError(f"Messages can only be {action} within {minutes} minutes")

    async def edit(self, message_id: str, editor_id: str, new_text: str) -> Message:
        text = self.validate_text(new_text)
        conversation_id = await self._conversation_of(message_id)
        async with self.locks.hold(conversation_lock_key(conversation_id)):
            async with self.session_factory() as db:
                conversation = await load_participating(db, conversation_id, editor_id)
                message = await db.get(Message, message_id)
                if message is None or message.is_deleted:
                    raise NotFoundError("Message not found")
                if message.sender_id != editor_id:
                    raise ForbiddenError("Only the sender can edit a message")
                if message.kind != MessageKind.TEXT:
                    raise ValidationError("Only text messages can be edited")
                self._check_window(message, "edited")

                verdict = self.moderation.screen_text(text)
                now = self.clock()
                if not message.is_edited:
                    message.original_text = message.text
                message.text = text
                message.is_edited = True
                message.edited_at = now
                message.moderation_flagged = verdict.flagged
                message.moderation_reason = verdict.reason
                message.moderation_severity = verdict.severity.value
                message.moderation_status = (
                    ModerationStatus.AUTO_FLAGGED if verdict.flagged else ModerationStatus.APPROVED
                )
                if conversation.last_seq == message.seq:
                    conversation.last_message_preview = preview_for(message.kind, text)
                await db.commit()

            self.rooms.emit_to_room(
                conversation_room(conversation_id),
                "message:edited",
                {"message": message_payload(message), "editedBy": editor_id},
            )
        return message

    async def delete(self, message_id: str, user_id: str, for_everyone: bool = False) -> Message:
        conversation_id = await self._conversation_of(message_id)
        released: Optional[dict[str, Any]] = None
        notice: Optional[Message] = None
        async with self.locks.hold(conversation_lock_key(conversation_id)):
            async with self.session_factory() as db:
                conversation = await load_participating(db, conversation_id, user_id)
                message = await db.get(Message, message_id)
                if message is None:
                    raise NotFoundError("Message not found")
                if message.sender_id != user_id:
                    raise ForbiddenError("Only the sender can delete a message")
                if message.is_deleted and (message.delete_for_everyone or not for_everyone):
                    return message
                self._check_window(message, "deleted")

                now = self.clock()
                message.deleted_at = now
                message.deleted_by = user_id
                message.delete_for_everyone = for_everyone
                if for_everyone:
                    released = message.media
                    message.text = None
                    message.original_text = None
                    message.media = None
                    notice = system_message(conversation, "message_deleted", now)
                    db.add(notice)
                    apply_new_message(conversation, notice, now)
                await db.commit()

            payload = {"messageId": message.id, "conversationId": conversation_id, "deletedBy": user_id}
            if for_everyone:
                self.rooms.emit_to_room(conversation_room(conversation_id), "message:deleted", payload)
                self.rooms.emit_to_room(
                    conversation_room(conversation_id),
                    "message:new",
                    {"message": message_payload(notice), "conversationId": conversation_id},
                )
            else:
                self.rooms.emit_to_room(user_room(user_id), "message:deleted", payload)

        if released:
            self._spawn(self.media.release(released))
        log_event(logger, "message.deleted", message=message_id, by=user_id, everyone=for_everyone)
        return message

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------
    async def react(self, message_id: str, user_id: str, emoji: str) -> Message:
        if emoji not in REACTION_EMOJIS:
            raise ValidationError("Unsupported reaction")
        return await self._set_reaction(message_id, user_id, emoji)

    async def unreact(self, message_id: str, user_id: str) -> Message:
        return await self._set_reaction(message_id, user_id, None)

    async def _set_reaction(self, message_id: str, user_id: str, emoji: Optional[str]) -> Message:
        conversation_id = await self._conversation_of(message_id)
        async with self.locks.hold(conversation_lock_key(conversation_id)):
            async with self.session_factory() as db:
                conversation = await load_participating(db, conversation_id, user_id)
                await self._ensure_writable(db, conversation, user_id)
                message = await db.get(Message, message_id)
                if message is None or message.delete_for_everyone or message.hidden_for(user_id):
                    raise NotFoundError("Message not found")

                current = next((r for r in message.reactions if r.user_id == user_id), None)
                if emoji is None:
                    if current is None:
                        return message
                    message.reactions.remove(current)
                elif current is not None:
                    if current.emoji == emoji:
                        return message
                    current.emoji = emoji
                    current.reacted_at = self.clock()
                else:
                    message.reactions.append(
                        MessageReaction(user_id=user_id, emoji=emoji, reacted_at=self.clock())
                    )
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise TransientError("Reaction could not be stored")

            self.rooms.emit_to_room(
                conversation_room(conversation_id),
                "message:reaction",
                {
                    "messageId": message_id,
                    "conversationId": conversation_id,
                    "userId": user_id,
                    "emoji": emoji,
                    "action": "add" if emoji else "remove",
                },
            )
        return message

    # ------------------------------------------------------------------
    # Read receipts
    # ------------------------------------------------------------------
    async def mark_read(self, conversation_id: str, reader_id: str, up_to_message_id: str) -> int:
        """Mark every partner message up to the target as read; returns how many changed"""
        async with self.locks.hold(conversation_lock_key(conversation_id)):
            async with self.session_factory() as db:
                conversation = await load_participating(db, conversation_id, reader_id)
                target = await db.get(Message, up_to_message_id)
                if target is None or target.conversation_id != conversation_id:
                    raise NotFoundError("Message not found")

                stmt = (
                    select(Message)
                    .where(
                        and_(
                            Message.conversation_id == conversation_id,
                            Message.seq <= target.seq,
                            Message.sender_id.is_not(None),
                            Message.sender_id != reader_id,
                            Message.status != DeliveryStatus.READ,
                        )
                    )
                    .order_by(Message.seq)
                )
                now = self.clock()
                affected = []
                for message in (await db.execute(stmt)).scalars().all():
                    if not DeliveryStatus.can_advance(message.status, DeliveryStatus.READ):
                        continue
                    message.status = DeliveryStatus.READ
                    message.read_at = now
                    if message.delivered_at is None:
                        message.delivered_at = now
                    if reader_id not in (message.read_by or []):
                        message.read_by = [*(message.read_by or []), reader_id]
                    affected.append(message)

                participant = conversation.participant(reader_id)
                participant.last_read_at = now
                participant.last_seen_message_id = target.id
                participant.unread_count = 0
                await db.commit()

            for message in affected:
                self.rooms.emit_to_user(
                    message.sender_id,
                    "message:read:receipt",
                    {
                        "conversationId": conversation_id,
                        "messageId": message.id,
                        "readBy": reader_id,
                        "readAt": to_iso(now),
                    },
                )
        return len(affected)

    # ------------------------------------------------------------------
    # Typing
    # ------------------------------------------------------------------
    def typing(self, conn: Addressable, conversation_id: str, started: bool) -> None:
        room = conversation_room(conversation_id)
        if not self.rooms.is_member(conn, room):
            raise ForbiddenError("Join the conversation first")
        if not started:
            self._stop_typing(conn, conversation_id)
            return
        self.timers.schedule(
            self._typing_owner(conn),
            conversation_id,
            self.typing_timeout,
            lambda: self._typing_expired(conn, conversation_id),
        )
        self.rooms.emit_to_room_except(
            room, conn, "typing:started", {"userId": conn.user_id, "conversationId": conversation_id}
        )

    async def _typing_expired(self, conn: Addressable, conversation_id: str) -> None:
        self.rooms.emit_to_room_except(
            conversation_room(conversation_id),
            conn,
            "typing:stopped",
            {"userId": conn.user_id, "conversationId": conversation_id},
        )

    def _stop_typing(self, conn: Addressable, conversation_id: str) -> None:
        if self.timers.cancel(self._typing_owner(conn), conversation_id):
            self.rooms.emit_to_room_except(
                conversation_room(conversation_id),
                conn,
                "typing:stopped",
                {"userId": conn.user_id, "conversationId": conversation_id},
            )

    def stop_all_typing(self, conn: Addressable) -> None:
        for conversation_id in self.timers.kinds(self._typing_owner(conn)):
            self._stop_typing(conn, conversation_id)

    @staticmethod
    def _typing_owner(conn: Addressable) -> str:
        return f"typing:{conn.id}"

    # ------------------------------------------------------------------
    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for pending media releases (shutdown and tests)"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
