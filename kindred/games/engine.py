"""
Game Session Engine

One two-player, turn-timed state machine for every game family:

    pending -> starting -> playing -> completed -> discussion
    alternates: declined, expired, abandoned, paused

Every operation and every timer callback runs under the per-session lock and
re-reads the session before acting, so a late timer or a duplicate event finds
the state already advanced and does nothing.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kindred.core.config import settings
from kindred.core.errors import (
    BlockedError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from kindred.core.logging import get_logger, log_event
from kindred.core.time import millis_between, to_iso, utcnow
from kindred.games.families import FAMILIES, FamilyDescriptor, answer_log, get_family
from kindred.games.payloads import (
    build_state_payload,
    history_entry,
    results_payload,
    voice_note_payload,
)
from kindred.models.base import new_id
from kindred.models.game import (
    GameAnswer,
    GamePlayer,
    GameSession,
    GameVoiceNote,
    SessionStatus,
    pair_key,
)
from kindred.models.user import Match, MatchStatus
from kindred.realtime.locks import KeyedLocks
from kindred.realtime.rooms import Addressable, RoomRouter, session_room
from kindred.realtime.timers import TimerRegistry
from kindred.services.blocks import BlockRegistry
from kindred.services.llm_clients.openai_client import Transcriber
from kindred.services.media import VOICE_MIME_TYPES, MediaService

logger = get_logger(__name__)

# Attempts at closing a round or advancing past it before the timer gives up
TIMER_RETRY_LIMIT = 3


def _seconds_until(moment: datetime, now: datetime) -> float:
    return max(0.0, (moment - now).total_seconds())


class GameEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        rooms: RoomRouter,
        timers: TimerRegistry,
        locks: KeyedLocks,
        blocks: BlockRegistry,
        media: Optional[MediaService] = None,
        transcriber: Optional[Transcriber] = None,
        families: Optional[Dict[str, FamilyDescriptor]] = None,
        clock: Callable[[], datetime] = utcnow,
        countdown_seconds: Optional[float] = None,
        reveal_seconds: Optional[float] = None,
        grace_seconds: Optional[float] = None,
        voice_note_max_seconds: Optional[float] = None,
        retry_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.rooms = rooms
        self.timers = timers
        self.locks = locks
        self.blocks = blocks
        self.media = media
        self.transcriber = transcriber or Transcriber()
        self.families = families or FAMILIES
        self.clock = clock
        self.countdown_seconds = (
            countdown_seconds if countdown_seconds is not None else settings.game_countdown_seconds
        )
        self.reveal_seconds = reveal_seconds if reveal_seconds is not None else settings.game_reveal_seconds
        self.grace_seconds = grace_seconds if grace_seconds is not None else settings.game_reconnect_grace_seconds
        self.voice_note_max_seconds = (
            voice_note_max_seconds if voice_note_max_seconds is not None else settings.voice_max_seconds
        )
        self.retry_seconds = retry_seconds if retry_seconds is not None else settings.game_timer_retry_seconds
        self._completion_listeners: List[Callable[[str], Any]] = []

    def on_completed(self, listener: Callable[[str], Any]) -> None:
        self._completion_listeners.append(listener)

    def family(self, key: str) -> FamilyDescriptor:
        return get_family(key, self.families)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _lock_key(session_id: str) -> str:
        return f"session:{session_id}"

    _timer_owner = _lock_key

    async def _load(self, db: AsyncSession, session_id: str) -> GameSession:
        session = await db.get(GameSession, session_id)
        if session is None:
            raise NotFoundError("Game session not found")
        return session

    @staticmethod
    def _player_of(session: GameSession, user_id: str) -> GamePlayer:
        player = session.player(user_id)
        if player is None:
            raise ForbiddenError("You are not a player in this game")
        return player

    def _expire_if_stale(self, session: GameSession, now: datetime) -> bool:
        """Lazy expiry: pending invitations and unfinished async games past their deadline"""
        stale = session.status == SessionStatus.PENDING or (
            self.families[session.family].is_async and session.status == SessionStatus.PLAYING
        )
        if not stale or session.expires_at >= now:
            return False
        session.status = SessionStatus.EXPIRED
        session.active_pair_key = None
        session.last_activity_at = now
        log_event(logger, "game.expired", session=session.id, family=session.family)
        return True

    def _emit_state(self, session: GameSession, family: FamilyDescriptor) -> None:
        now = self.clock()
        for player in session.players:
            self.rooms.emit_to_user(
                player.user_id, family.event("state"), build_state_payload(session, player.user_id, family, now)
            )

    def _emit_players(self, session: GameSession, event: str, payload: Dict[str, Any]) -> None:
        for player in session.players:
            self.rooms.emit_to_user(player.user_id, event, payload)

    def _emit_room(self, session: GameSession, event: str, payload: Dict[str, Any]) -> None:
        self.rooms.emit_to_room(session_room(session.id), event, payload)

    def _open_round(self, session: GameSession, family: FamilyDescriptor, index: int, now: datetime) -> None:
        session.current_index = index
        session.current_question_started_at = now
        session.current_question_expires_at = now + timedelta(seconds=family.round_seconds)
        session.paused_remaining_ms = None
        session.last_activity_at = now

    def _arm_round(self, session: GameSession) -> None:
        index = session.current_index
        self.timers.schedule(
            self._timer_owner(session.id),
            "round",
            _seconds_until(session.current_question_expires_at, self.clock()),
            lambda: self._on_round_timeout(session.id, index),
        )

    def _arm_advance(self, session: GameSession) -> None:
        index = session.current_index
        self.timers.schedule(
            self._timer_owner(session.id),
            "advance",
            self.reveal_seconds,
            lambda: self._on_advance(session.id, index),
        )

    def _arm_retry(self, session_id: str, kind: str, callback: Callable[[], Any]) -> None:
        self.timers.schedule(self._timer_owner(session_id), kind, self.retry_seconds, callback)

    def _arm_countdown(self, session: GameSession, family: FamilyDescriptor) -> None:
        owner = self._timer_owner(session.id)
        if self.timers.active(owner, "countdown"):
            return
        starts_at = self.clock() + timedelta(seconds=self.countdown_seconds)
        self.timers.schedule(owner, "countdown", self.countdown_seconds, lambda: self._on_countdown(session.id))
        self._emit_room(
            session,
            family.event("countdown"),
            {"sessionId": session.id, "countdown": self.countdown_seconds, "startsAt": to_iso(starts_at)},
        )

    @staticmethod
    def _all_connected(session: GameSession) -> bool:
        return all(p.is_connected for p in session.players)

    # ------------------------------------------------------------------
    # Invitation lifecycle
    # ------------------------------------------------------------------
    async def invite(
        self,
        conn: Addressable,
        family_key: str,
        match_id: str,
        client_request_id: Optional[str] = None,
    ) -> GameSession:
        family = self.family(family_key)
        inviter_id = conn.user_id
        invite_key = f"{inviter_id}:{client_request_id}" if client_request_id else None

        async with self.session_factory() as db:
            match = await db.get(Match, match_id)
            if match is None:
                raise NotFoundError("Match not found")
            if not match.includes(inviter_id):
                raise ForbiddenError("You are not part of this match")
            invitee_id = match.other(inviter_id)
            if await self.blocks.is_either_blocked(inviter_id, invitee_id, db=db):
                raise BlockedError("You cannot invite this user")
            if await self.blocks.restore_if_lapsed(db, match):
                await db.commit()
            if match.status != MatchStatus.MUTUAL:
                raise ForbiddenError("Games require a mutual match")

            if invite_key:
                replay = await self._by_invite_key(db, invite_key)
                if replay is not None:
                    return replay

            now = self.clock()
            active_key = pair_key(family.key, inviter_id, invitee_id)
            current = (
                await db.execute(select(GameSession).where(GameSession.active_pair_key == active_key))
            ).scalar_one_or_none()
            if current is not None:
                if not self._expire_if_stale(current, now):
                    raise ConflictError("A game is already in progress with this match", details={"sessionId": current.id})
                await db.commit()

            session_id = new_id()
            session = GameSession(
                id=session_id,
                family=family.key,
                match_id=match_id,
                player1_id=inviter_id,
                player2_id=invitee_id,
                status=SessionStatus.PENDING,
                question_order=family.question_order(session_id),
                current_index=0,
                revealed_index=-1,
                invite_key=invite_key,
                active_pair_key=active_key,
                invited_at=now,
                last_activity_at=now,
                expires_at=now + timedelta(hours=family.invitation_ttl_hours),
                insights_generated=False,
                players=[
                    GamePlayer(user_id=inviter_id, slot=1, is_connected=True, is_ready=True, counters={}),
                    GamePlayer(user_id=invitee_id, slot=2, is_connected=False, is_ready=False, counters={}),
                ],
                answers=[],
                voice_notes=[],
            )
            db.add(session)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                if invite_key:
                    replay = await self._by_invite_key(db, invite_key)
                    if replay is not None:
                        return replay
                raise ConflictError("A game is already in progress with this match")

        self.rooms.join(conn, session_room(session.id))
        log_event(logger, "game.invited", session=session.id, family=family.key, inviter=inviter_id)
        self.rooms.emit_to_user(
            inviter_id,
            family.event("invitation_sent"),
            {"sessionId": session.id, "toUserId": invitee_id, "expiresAt": to_iso(session.expires_at)},
        )
        self.rooms.emit_to_user(
            invitee_id,
            family.event("invited"),
            {
                "sessionId": session.id,
                "family": family.key,
                "name": family.name,
                "fromUserId": inviter_id,
                "matchId": match_id,
                "expiresAt": to_iso(session.expires_at),
            },
        )
        return session

    @staticmethod
    async def _by_invite_key(db: AsyncSession, invite_key: str) -> Optional[GameSession]:
        stmt = select(GameSession).where(GameSession.invite_key == invite_key)
        return (await db.execute(stmt)).scalar_one_or_none()

    async def accept(self, conn: Addressable, session_id: str) -> GameSession:
        user_id = conn.user_id
        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await self._load(db, session_id)
                family = self.families[session.family]
                player = self._player_of(session, user_id)
                now = self.clock()
                if self._expire_if_stale(session, now):
                    await db.commit()
                    self._emit_state(session, family)
                    raise ExpiredError("This invitation has expired")
                if player.slot != 2:
                    raise ForbiddenError("Only the invited player can accept")
                if session.status != SessionStatus.PENDING:
                    if session.status in SessionStatus.ACTIVE:
                        return session
                    raise ConflictError("This invitation is no longer pending")
                partner = session.partner_of(user_id)
                if await self.blocks.is_either_blocked(user_id, partner.user_id, db=db):
                    raise BlockedError("You cannot play with this user")

                session.accepted_at = now
                session.last_activity_at = now
                player.is_connected = True
                player.is_ready = True
                if family.is_async:
                    session.status = SessionStatus.PLAYING
                    session.started_at = now
                    session.expires_at = now + timedelta(hours=family.invitation_ttl_hours)
                else:
                    session.status = SessionStatus.STARTING
                await db.commit()

            self.rooms.join(conn, session_room(session_id))
            log_event(logger, "game.accepted", session=session_id, family=family.key)
            self._emit_state(session, family)
            if session.status == SessionStatus.STARTING and self._all_connected(session):
                self._arm_countdown(session, family)
        return session

    async def decline(self, user_id: str, session_id: str) -> GameSession:
        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await self._load(db, session_id)
                family = self.families[session.family]
                player = self._player_of(session, user_id)
                if self._expire_if_stale(session, self.clock()):
                    await db.commit()
                    self._emit_state(session, family)
                    raise ExpiredError("This invitation has expired")
                if player.slot != 2:
                    raise ForbiddenError("Only the invited player can decline")
                if session.status == SessionStatus.DECLINED:
                    return session
                if session.status != SessionStatus.PENDING:
                    raise ConflictError("This invitation is no longer pending")
                session.status = SessionStatus.DECLINED
                session.active_pair_key = None
                session.last_activity_at = self.clock()
                await db.commit()

            log_event(logger, "game.declined", session=session_id, family=family.key)
            self._emit_state(session, family)
        return session

    async def quit(self, user_id: str, session_id: str) -> GameSession:
        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await self._load(db, session_id)
                family = self.families[session.family]
                self._player_of(session, user_id)
                if session.status == SessionStatus.ABANDONED:
                    return session
                if session.status not in SessionStatus.ACTIVE:
                    raise ConflictError("This game has already ended")
                session.status = SessionStatus.ABANDONED
                session.active_pair_key = None
                session.current_question_expires_at = None
                session.last_activity_at = self.clock()
                await db.commit()

            self.timers.cancel_owner(self._timer_owner(session_id))
            log_event(logger, "game.abandoned", session=session_id, family=family.key, by=user_id)
            self._emit_state(session, family)
        return session

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    async def _active_session_id(self, user_id: str, family_key: str) -> str:
        async with self.session_factory() as db:
            stmt = (
                select(GameSession.id)
                .where(
                    and_(
                        GameSession.family == family_key,
                        GameSession.active_pair_key.is_not(None),
                        or_(GameSession.player1_id == user_id, GameSession.player2_id == user_id),
                    )
                )
                .order_by(GameSession.invited_at.desc())
                .limit(1)
            )
            session_id = (await db.execute(stmt)).scalar_one_or_none()
        if session_id is None:
            raise NotFoundError("No active game found")
        return session_id

    async def join(self, conn: Addressable, family_key: str, session_id: Optional[str] = None) -> GameSession:
        user_id = conn.user_id
        if session_id is None:
            session_id = await self._active_session_id(user_id, family_key)

        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await self._load(db, session_id)
                family = self.families[session.family]
                player = self._player_of(session, user_id)
                now = self.clock()
                self._expire_if_stale(session, now)

                self.timers.cancel(self._timer_owner(session_id), f"grace:{user_id}")
                was_connected = player.is_connected
                player.is_connected = True
                resumed = session.status == SessionStatus.PAUSED and self._all_connected(session)
                if resumed:
                    self._resume(session, family, now)
                await db.commit()

            self.rooms.join(conn, session_room(session_id))
            conn.send(family.event("state"), build_state_payload(session, user_id, family, self.clock()))
            partner = session.partner_of(user_id)
            if not was_connected and partner is not None:
                self.rooms.emit_to_user(
                    partner.user_id, family.event("partner_connected"), {"sessionId": session_id, "userId": user_id}
                )

            if resumed:
                log_event(logger, "game.resumed", session=session_id, family=family.key)
                self._emit_state(session, family)
                if session.status == SessionStatus.PLAYING:
                    if session.revealed_index >= session.current_index:
                        self._arm_advance(session)
                    else:
                        self._arm_round(session)
            if session.status == SessionStatus.STARTING and self._all_connected(session):
                self._arm_countdown(session, family)
        return session

    def _resume(self, session: GameSession, family: FamilyDescriptor, now: datetime) -> None:
        session.status = session.paused_from or SessionStatus.PLAYING
        session.paused_from = None
        if session.status == SessionStatus.PLAYING and session.revealed_index < session.current_index:
            budget_ms = int(family.round_seconds * 1000)
            remaining = session.paused_remaining_ms
            remaining = budget_ms if remaining is None else min(remaining, budget_ms)
            session.current_question_expires_at = now + timedelta(milliseconds=remaining)
            session.current_question_started_at = session.current_question_expires_at - timedelta(
                seconds=family.round_seconds
            )
        session.paused_remaining_ms = None
        session.last_activity_at = now

    async def handle_disconnect(self, user_id: str, session_id: str) -> None:
        """Called once a connection has left a session room"""
        if self.rooms.user_in_room(user_id, session_room(session_id)):
            return
        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await db.get(GameSession, session_id)
                if session is None:
                    return
                player = session.player(user_id)
                if player is None or not player.is_connected:
                    return
                player.is_connected = False
                await db.commit()

            family = self.families[session.family]
            owner = self._timer_owner(session_id)
            self.timers.cancel(owner, "countdown")
            partner = session.partner_of(user_id)
            if partner is not None and not session.is_terminal:
                self.rooms.emit_to_user(
                    partner.user_id, family.event("partner_disconnected"), {"sessionId": session_id, "userId": user_id}
                )
            if session.status in (SessionStatus.STARTING, SessionStatus.PLAYING) and not family.is_async:
                self.timers.schedule(
                    owner,
                    f"grace:{user_id}",
                    self.grace_seconds,
                    lambda: self._on_grace_expired(session_id, user_id),
                )
            log_event(logger, "game.player_disconnected", session=session_id, user=user_id)

    async def _on_grace_expired(self, session_id: str, user_id: str) -> None:
        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await db.get(GameSession, session_id)
                if session is None:
                    return
                player = session.player(user_id)
                if player is None or player.is_connected:
                    return
                if session.status not in (SessionStatus.STARTING, SessionStatus.PLAYING):
                    return
                now = self.clock()
                remaining = None
                if (
                    session.status == SessionStatus.PLAYING
                    and session.revealed_index < session.current_index
                    and session.current_question_expires_at is not None
                ):
                    remaining = max(0, millis_between(now, session.current_question_expires_at))
                session.paused_from = session.status
                session.paused_remaining_ms = remaining
                session.status = SessionStatus.PAUSED
                session.last_activity_at = now
                await db.commit()

            owner = self._timer_owner(session_id)
            for kind in ("round", "advance", "countdown"):
                self.timers.cancel(owner, kind)
            family = self.families[session.family]
            log_event(logger, "game.paused", session=session_id, family=family.key, remaining_ms=remaining)
            self._emit_state(session, family)

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------
    async def _on_countdown(self, session_id: str) -> None:
        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await db.get(GameSession, session_id)
                if session is None or session.status != SessionStatus.STARTING or not self._all_connected(session):
                    return
                family = self.families[session.family]
                now = self.clock()
                session.status = SessionStatus.PLAYING
                session.started_at = now
                self._open_round(session, family, 0, now)
                await db.commit()

            log_event(logger, "game.started", session=session_id, family=family.key)
            self._emit_state(session, family)
            self._arm_round(session)

    async def answer(
        self,
        user_id: str,
        session_id: str,
        value: Any,
        question_index: Optional[int] = None,
        client_request_id: Optional[str] = None,
    ) -> GameAnswer:
        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await self._load(db, session_id)
                family = self.families[session.family]
                player = self._player_of(session, user_id)
                if family.is_async:
                    return await self._record_async(db, session, family, player, value, question_index, client_request_id)

                if session.status != SessionStatus.PLAYING:
                    raise ConflictError("This game is not accepting answers")
                index = session.current_index
                if question_index is not None and question_index != index:
                    raise ConflictError("The round has advanced", details={"currentQuestionIndex": index})
                if session.revealed_index >= index:
                    raise ConflictError("The round has already been revealed")
                stored = session.answer_for(user_id, index)
                if stored is not None:
                    raise ConflictError("You already answered this round", details={"answer": stored.value})

                parsed = family.parse_answer(value)
                now = self.clock()
                answer = GameAnswer(
                    user_id=user_id,
                    question_index=index,
                    question_id=session.question_order[index],
                    value=parsed,
                    answered_at=now,
                    response_time_ms=max(0, millis_between(session.current_question_started_at, now)),
                    timed_out=False,
                    correlation_id=client_request_id,
                )
                session.answers.append(answer)
                player.total_answered += 1
                session.last_activity_at = now
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise ConflictError("You already answered this round")

                self.rooms.emit_to_user(
                    user_id,
                    family.event("answer_recorded"),
                    {"sessionId": session_id, "questionIndex": index, "answer": parsed},
                )
                if session.round_complete(index):
                    self.timers.cancel(self._timer_owner(session_id), "round")
                    try:
                        await self._reveal(db, session, family)
                    except Exception:
                        logger.exception(f"Reveal of round {index} failed for session {session_id}")
                        self._arm_retry(
                            session_id, "round", lambda: self._on_round_timeout(session_id, index, attempt=1)
                        )
                else:
                    partner = session.partner_of(user_id)
                    self.rooms.emit_to_user(
                        partner.user_id,
                        family.event("waiting"),
                        {"sessionId": session_id, "questionIndex": index, "partnerAnswered": True},
                    )
        return answer

    async def _on_round_timeout(self, session_id: str, index: int, attempt: int = 0) -> None:
        try:
            await self._close_round(session_id, index, forced=attempt > 0)
        except Exception:
            if attempt + 1 >= TIMER_RETRY_LIMIT:
                raise
            logger.exception(f"Closing round {index} failed for session {session_id}, retrying")
            self._arm_retry(session_id, "round", lambda: self._on_round_timeout(session_id, index, attempt + 1))

    async def _close_round(self, session_id: str, index: int, forced: bool) -> None:
        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await db.get(GameSession, session_id)
                if (
                    session is None
                    or session.status != SessionStatus.PLAYING
                    or session.current_index != index
                    or session.revealed_index >= index
                ):
                    return
                family = self.families[session.family]
                now = self.clock()
                for player in session.players:
                    if session.answer_for(player.user_id, index) is None:
                        session.answers.append(
                            GameAnswer(
                                user_id=player.user_id,
                                question_index=index,
                                question_id=session.question_order[index],
                                value=None,
                                answered_at=now,
                                timed_out=True,
                            )
                        )
                        player.total_timed_out += 1
                await db.commit()
                log_event(logger, "game.round_timeout", session=session_id, round=index)
                await self._reveal(db, session, family, forced=forced)

    async def _reveal(
        self, db: AsyncSession, session: GameSession, family: FamilyDescriptor, forced: bool = False
    ) -> None:
        """A forced reveal goes out unscored when scoring itself keeps failing"""
        index = session.current_index
        if session.revealed_index >= index:
            return
        question = family.bank.get(session.question_order[index])
        first, second = session.player_in_slot(1), session.player_in_slot(2)
        values = []
        for player in (first, second):
            answer = session.answer_for(player.user_id, index)
            values.append(answer.value if answer is not None and not answer.timed_out else None)

        try:
            outcome, (points1, points2) = family.score_round(question, values[0], values[1])
            counters = [family.counters(value) if value is not None else {} for value in values]
        except Exception:
            if not forced:
                raise
            logger.exception(f"Scoring round {index} failed for session {session.id}, revealing unscored")
            outcome, points1, points2, counters = "unscored", 0, 0, [{}, {}]
        first.points += points1
        second.points += points2
        for player, bumps in zip((first, second), counters):
            player.bump(**bumps)
        session.revealed_index = index
        session.last_activity_at = self.clock()
        await db.commit()

        self._emit_room(
            session,
            family.event("reveal"),
            {
                "sessionId": session.id,
                "questionIndex": index,
                "questionId": question.id,
                "answers": {"player1": values[0], "player2": values[1]},
                "points": {first.user_id: points1, second.user_id: points2},
                "outcome": outcome,
                "runningTotal": {first.user_id: first.points, second.user_id: second.points},
            },
        )
        self._arm_advance(session)

    async def _on_advance(self, session_id: str, index: int, attempt: int = 0) -> None:
        try:
            await self._advance(session_id, index, forced=attempt > 0)
        except Exception:
            if attempt + 1 >= TIMER_RETRY_LIMIT:
                raise
            logger.exception(f"Advancing past round {index} failed for session {session_id}, retrying")
            self._arm_retry(session_id, "advance", lambda: self._on_advance(session_id, index, attempt + 1))

    async def _advance(self, session_id: str, index: int, forced: bool) -> None:
        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await db.get(GameSession, session_id)
                if (
                    session is None
                    or session.status != SessionStatus.PLAYING
                    or session.current_index != index
                    or session.revealed_index < index
                ):
                    return
                family = self.families[session.family]
                if index + 1 >= session.total_questions:
                    await self._complete(db, session, family, forced=forced)
                    return
                self._open_round(session, family, index + 1, self.clock())
                await db.commit()

            self._emit_state(session, family)
            self._arm_round(session)

    async def _complete(
        self, db: AsyncSession, session: GameSession, family: FamilyDescriptor, forced: bool = False
    ) -> None:
        now = self.clock()
        try:
            session.results = family.compute_results(answer_log(session, family.bank))
        except Exception:
            if not forced:
                raise
            logger.exception(f"Computing results failed for session {session.id}, completing without them")
            session.results = {}
        session.status = (
            SessionStatus.DISCUSSION if family.discussion_policy == "on_completion" else SessionStatus.COMPLETED
        )
        session.completed_at = now
        session.last_activity_at = now
        session.active_pair_key = None
        session.current_question_expires_at = None
        await db.commit()

        self.timers.cancel_owner(self._timer_owner(session.id))
        log_event(logger, "game.completed", session=session.id, family=family.key, status=session.status)
        payload = {"sessionId": session.id, "results": session.results}
        if session.insights:
            payload["aiInsights"] = session.insights
        self._emit_players(session, family.event("completed"), payload)
        self._emit_state(session, family)
        for listener in self._completion_listeners:
            try:
                listener(session.id)
            except Exception:
                logger.exception(f"Completion listener failed for session {session.id}")

    # ------------------------------------------------------------------
    # Async family (voice responses)
    # ------------------------------------------------------------------
    async def _record_async(
        self,
        db: AsyncSession,
        session: GameSession,
        family: FamilyDescriptor,
        player: GamePlayer,
        value: Any,
        question_index: Optional[int],
        client_request_id: Optional[str],
    ) -> GameAnswer:
        now = self.clock()
        if self._expire_if_stale(session, now):
            await db.commit()
            self._emit_state(session, family)
            raise ExpiredError("This game has expired")
        if session.status != SessionStatus.PLAYING:
            raise ConflictError("This game is not accepting answers")
        if question_index is None or not 0 <= question_index < session.total_questions:
            raise ValidationError("questionIndex is required and must be within the game")
        stored = session.answer_for(player.user_id, question_index)
        if stored is not None:
            raise ConflictError("You already answered this question", details={"answer": stored.value})

        parsed = family.parse_answer(value)
        if family.check_answer is not None:
            question = family.bank.get(session.question_order[question_index])
            family.check_answer(session, question, player.user_id, parsed)
        answer = GameAnswer(
            user_id=player.user_id,
            question_index=question_index,
            question_id=session.question_order[question_index],
            value=parsed,
            answered_at=now,
            timed_out=False,
            correlation_id=client_request_id,
        )
        session.answers.append(answer)
        player.total_answered += 1
        session.last_activity_at = now
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("You already answered this question")

        total = session.total_questions
        self.rooms.emit_to_user(
            player.user_id,
            family.event("answer_recorded"),
            {"sessionId": session.id, "questionIndex": question_index, "answer": parsed},
        )
        partner = session.partner_of(player.user_id)
        self.rooms.emit_to_user(
            partner.user_id,
            family.event("partner_progress"),
            {"sessionId": session.id, "answered": player.total_answered, "total": total},
        )
        if all(len(session.answers_of(p.user_id)) >= total for p in session.players):
            await self._complete(db, session, family)
        return answer

    async def submit_voice_answer(
        self,
        user_id: str,
        session_id: str,
        question_index: int,
        data: bytes,
        mime: str,
        duration: float,
    ) -> GameAnswer:
        """Store an uploaded voice response, transcribe it, then record it as the answer"""
        if self.media is None:
            raise NotFoundError("Voice uploads are not configured")
        family = self.families[await self.session_family(session_id)]
        if not family.is_async:
            raise ConflictError("This game takes answers over the live channel")
        if family.max_answer_seconds is None:
            raise ConflictError("This game does not take voice answers")
        media = await self.media.store_voice(
            data, mime, duration, prefix=f"games/{session_id}", max_seconds=family.max_answer_seconds
        )
        transcription = await self.transcriber.transcribe(data, f"answer.{VOICE_MIME_TYPES[mime.lower()]}")
        value = {"audioUrl": media["url"], "duration": duration, "transcription": transcription}
        try:
            return await self.answer(user_id, session_id, value, question_index=question_index)
        except Exception:
            await self.media.release(media)
            raise

    # ------------------------------------------------------------------
    # Discussion phase
    # ------------------------------------------------------------------
    async def add_voice_note(
        self,
        user_id: str,
        session_id: str,
        audio_url: str,
        duration: float,
        question_index: Optional[int] = None,
    ) -> GameVoiceNote:
        if duration <= 0:
            raise ValidationError("Voice note duration is required")
        if duration > self.voice_note_max_seconds:
            raise ValidationError(f"Voice note exceeds {self.voice_note_max_seconds:g} seconds")

        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await self._load(db, session_id)
                family = self.families[session.family]
                self._player_of(session, user_id)
                if session.status not in SessionStatus.FINISHED:
                    raise ConflictError("Voice notes open once the game is complete")
                if len(session.voice_notes) >= family.max_voice_notes:
                    raise ConflictError("Voice note limit reached for this game")
                if question_index is not None and not 0 <= question_index < session.total_questions:
                    raise ValidationError("questionIndex is outside the game")

                now = self.clock()
                note = GameVoiceNote(
                    id=new_id(),
                    user_id=user_id,
                    audio_url=audio_url,
                    duration=float(duration),
                    question_index=question_index,
                    listened_by_partner=False,
                    created_at=now,
                )
                session.voice_notes.append(note)
                entered_discussion = session.status == SessionStatus.COMPLETED
                if entered_discussion:
                    session.status = SessionStatus.DISCUSSION
                session.last_activity_at = now
                await db.commit()

            self._emit_players(
                session, family.event("voice_note"), {"sessionId": session_id, "note": voice_note_payload(note)}
            )
            if entered_discussion:
                log_event(logger, "game.discussion", session=session_id, family=family.key)
                self._emit_state(session, family)
        return note

    async def upload_voice_note(
        self,
        user_id: str,
        session_id: str,
        data: bytes,
        mime: str,
        duration: float,
        question_index: Optional[int] = None,
    ) -> GameVoiceNote:
        if self.media is None:
            raise NotFoundError("Voice uploads are not configured")
        media = await self.media.store_voice(data, mime, duration, prefix=f"games/{session_id}/notes")
        try:
            return await self.add_voice_note(user_id, session_id, media["url"], duration, question_index)
        except Exception:
            await self.media.release(media)
            raise

    async def mark_voice_note_listened(self, user_id: str, session_id: str, note_id: str) -> GameVoiceNote:
        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await self._load(db, session_id)
                family = self.families[session.family]
                self._player_of(session, user_id)
                note = next((n for n in session.voice_notes if n.id == note_id), None)
                if note is None:
                    raise NotFoundError("Voice note not found")
                if note.user_id == user_id:
                    raise ForbiddenError("Only your partner can mark this note as listened")
                if note.listened_by_partner:
                    return note
                note.listened_by_partner = True
                await db.commit()

            self.rooms.emit_to_user(
                note.user_id,
                family.event("voice_note_listened"),
                {"sessionId": session_id, "noteId": note_id, "listenedBy": user_id},
            )
        return note

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    async def get_state(self, user_id: str, session_id: str) -> Dict[str, Any]:
        async with self.locks.hold(self._lock_key(session_id)):
            async with self.session_factory() as db:
                session = await self._load(db, session_id)
                family = self.families[session.family]
                self._player_of(session, user_id)
                if self._expire_if_stale(session, self.clock()):
                    await db.commit()
                return build_state_payload(session, user_id, family, self.clock())

    async def get_results(self, user_id: str, session_id: str) -> Dict[str, Any]:
        async with self.session_factory() as db:
            session = await self._load(db, session_id)
            family = self.families[session.family]
            self._player_of(session, user_id)
            if session.status not in SessionStatus.FINISHED:
                raise ConflictError("Results are available once the game is complete")
            return results_payload(session, family)

    async def get_history(self, user_id: str, family_key: str, limit: int = 20) -> List[Dict[str, Any]]:
        family = self.family(family_key)
        async with self.session_factory() as db:
            stmt = (
                select(GameSession)
                .where(
                    and_(
                        GameSession.family == family.key,
                        GameSession.status.in_(SessionStatus.FINISHED),
                        or_(GameSession.player1_id == user_id, GameSession.player2_id == user_id),
                    )
                )
                .order_by(GameSession.completed_at.desc())
                .limit(max(1, min(limit, 100)))
            )
            sessions = (await db.execute(stmt)).scalars().all()
            return [history_entry(s, family, user_id) for s in sessions]

    async def get_pending_invitation(self, user_id: str, family_key: str) -> Optional[Dict[str, Any]]:
        family = self.family(family_key)
        async with self.session_factory() as db:
            stmt = (
                select(GameSession)
                .where(
                    and_(
                        GameSession.family == family.key,
                        GameSession.status == SessionStatus.PENDING,
                        GameSession.player2_id == user_id,
                    )
                )
                .order_by(GameSession.invited_at.desc())
            )
            now = self.clock()
            pending = None
            expired_any = False
            for session in (await db.execute(stmt)).scalars().all():
                if self._expire_if_stale(session, now):
                    expired_any = True
                elif pending is None:
                    pending = session
            if expired_any:
                await db.commit()
            if pending is None:
                return None
            return {
                "sessionId": pending.id,
                "family": family.key,
                "fromUserId": pending.player1_id,
                "matchId": pending.match_id,
                "invitedAt": to_iso(pending.invited_at),
                "expiresAt": to_iso(pending.expires_at),
            }

    async def session_family(self, session_id: str) -> str:
        async with self.session_factory() as db:
            return (await self._load(db, session_id)).family
