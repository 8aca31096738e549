"""
Ingress event dispatch

Routes `{"event", "data"}` frames from a connection to the chat pipeline or the
game engine. A failed event produces an error frame to the caller only; nothing
is broadcast.
"""

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError as SchemaError

from kindred.core.errors import (
    AppError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    ValidationError,
    jsonable_errors,
)
from kindred.core.logging import get_logger, log_event
from kindred.realtime.rooms import Addressable
from kindred.schemas.chat import (
    ConversationRef,
    DeleteMessageIn,
    EditMessageIn,
    MessageRef,
    ReactIn,
    ReadIn,
    SendMessageIn,
)
from kindred.schemas.game import AnswerIn, InviteIn, JoinIn, SessionRef, VoiceNoteListenedIn

if TYPE_CHECKING:
    from kindred.realtime.hub import RealtimeHub

logger = get_logger(__name__)

Handler = Callable[["RealtimeHub", Addressable, Dict[str, Any]], Awaitable[None]]
GameHandler = Callable[["RealtimeHub", Addressable, str, Dict[str, Any]], Awaitable[None]]

CHAT_HANDLERS: Dict[str, Handler] = {}
GAME_HANDLERS: Dict[str, GameHandler] = {}


def chat_event(name: str):
    def decorator(fn: Handler) -> Handler:
        CHAT_HANDLERS[name] = fn
        return fn
    return decorator


def game_action(name: str):
    def decorator(fn: GameHandler) -> GameHandler:
        GAME_HANDLERS[name] = fn
        return fn
    return decorator


async def dispatch_event(hub: "RealtimeHub", conn: Addressable, event: str, data: Any) -> None:
    payload = data if isinstance(data, dict) else {}
    if not hub.limiter.allow(conn.id):
        _send_error(conn, event, payload, RateLimitedError("Too many events, slow down"))
        return

    try:
        if not isinstance(event, str) or not event:
            raise ValidationError("Frame is missing an event name")
        if event.startswith("game:"):
            await _dispatch_game(hub, conn, event, payload)
        else:
            handler = CHAT_HANDLERS.get(event)
            if handler is None:
                raise ValidationError(f"Unknown event: {event}")
            await handler(hub, conn, payload)
    except AppError as e:
        _send_error(conn, event, payload, e)
    except SchemaError as e:
        _send_error(
            conn,
            event,
            payload,
            ValidationError("Invalid payload", details={"errors": jsonable_errors(e.errors())}),
        )
    except Exception:
        logger.exception(f"Unhandled error for {event} on {conn.id}")
        _send_error(conn, event, payload, TransientError("Something went wrong, please retry"))


async def _dispatch_game(hub: "RealtimeHub", conn: Addressable, event: str, payload: Dict[str, Any]) -> None:
    parts = event.split(":")
    if len(parts) != 3:
        raise ValidationError(f"Unknown event: {event}")
    _, family_key, action = parts
    family = hub.engine.family(family_key)
    handler = GAME_HANDLERS.get(action)
    if handler is None:
        raise ValidationError(f"Unknown event: {event}")
    await handler(hub, conn, family.key, payload)


def _send_error(conn: Addressable, event: Optional[str], payload: Dict[str, Any], error: AppError) -> None:
    body: Dict[str, Any] = {"code": error.code.value, "message": error.message}
    if error.details:
        body["details"] = error.details
    if isinstance(event, str) and event.startswith("game:") and event.count(":") == 2:
        conn.send(f"game:{event.split(':')[1]}:error", body)
    else:
        if payload.get("clientMessageId"):
            body["clientMessageId"] = payload["clientMessageId"]
        conn.send("error", body)
    log_event(logger, "ws.rejected", conn=conn.id, ingress=event, code=error.code.value)


# ----------------------------------------------------------------------
# Chat
# ----------------------------------------------------------------------
@chat_event("conversation:join")
async def _join_conversation(hub: "RealtimeHub", conn: Addressable, data: Dict[str, Any]) -> None:
    body = ConversationRef.model_validate(data)
    await hub.chat.join(conn, body.conversation_id)


@chat_event("conversation:leave")
async def _leave_conversation(hub: "RealtimeHub", conn: Addressable, data: Dict[str, Any]) -> None:
    body = ConversationRef.model_validate(data)
    await hub.chat.leave(conn, body.conversation_id)


@chat_event("message:send")
async def _send_message(hub: "RealtimeHub", conn: Addressable, data: Dict[str, Any]) -> None:
    body = SendMessageIn.model_validate(data)
    message, created = await hub.chat.send_text(
        body.conversation_id,
        conn.user_id,
        body.text,
        client_message_id=body.client_message_id,
        reply_to_message_id=body.reply_to_message_id,
    )
    if not created:
        # Retried send: message:new went out once already, the caller only gets the ack
        conn.send(
            "message:sent",
            {
                "conversationId": body.conversation_id,
                "messageId": message.id,
                "clientMessageId": message.client_message_id,
                "seq": message.seq,
            },
        )


@chat_event("message:read")
async def _read(hub: "RealtimeHub", conn: Addressable, data: Dict[str, Any]) -> None:
    body = ReadIn.model_validate(data)
    await hub.chat.mark_read(body.conversation_id, conn.user_id, body.message_id)


@chat_event("message:delete")
async def _delete(hub: "RealtimeHub", conn: Addressable, data: Dict[str, Any]) -> None:
    body = DeleteMessageIn.model_validate(data)
    await hub.chat.delete(body.message_id, conn.user_id, for_everyone=body.for_everyone)


@chat_event("message:edit")
async def _edit(hub: "RealtimeHub", conn: Addressable, data: Dict[str, Any]) -> None:
    body = EditMessageIn.model_validate(data)
    await hub.chat.edit(body.message_id, conn.user_id, body.text)


@chat_event("message:react")
async def _react(hub: "RealtimeHub", conn: Addressable, data: Dict[str, Any]) -> None:
    body = ReactIn.model_validate(data)
    await hub.chat.react(body.message_id, conn.user_id, body.emoji)


@chat_event("message:unreact")
async def _unreact(hub: "RealtimeHub", conn: Addressable, data: Dict[str, Any]) -> None:
    body = MessageRef.model_validate(data)
    await hub.chat.unreact(body.message_id, conn.user_id)


@chat_event("typing:start")
async def _typing_start(hub: "RealtimeHub", conn: Addressable, data: Dict[str, Any]) -> None:
    body = ConversationRef.model_validate(data)
    hub.chat.typing(conn, body.conversation_id, True)


@chat_event("typing:stop")
async def _typing_stop(hub: "RealtimeHub", conn: Addressable, data: Dict[str, Any]) -> None:
    body = ConversationRef.model_validate(data)
    hub.chat.typing(conn, body.conversation_id, False)


# ----------------------------------------------------------------------
# Games
# ----------------------------------------------------------------------
async def _require_family(hub: "RealtimeHub", session_id: str, family_key: str) -> None:
    if await hub.engine.session_family(session_id) != family_key:
        raise NotFoundError("Game session not found")


@game_action("invite")
async def _invite(hub: "RealtimeHub", conn: Addressable, family_key: str, data: Dict[str, Any]) -> None:
    body = InviteIn.model_validate(data)
    await hub.engine.invite(conn, family_key, body.match_id, client_request_id=body.client_request_id)


@game_action("join")
async def _join_game(hub: "RealtimeHub", conn: Addressable, family_key: str, data: Dict[str, Any]) -> None:
    body = JoinIn.model_validate(data)
    if body.session_id is not None:
        await _require_family(hub, body.session_id, family_key)
    await hub.engine.join(conn, family_key, body.session_id)


@game_action("accept")
async def _accept(hub: "RealtimeHub", conn: Addressable, family_key: str, data: Dict[str, Any]) -> None:
    body = SessionRef.model_validate(data)
    await _require_family(hub, body.session_id, family_key)
    await hub.engine.accept(conn, body.session_id)


@game_action("decline")
async def _decline(hub: "RealtimeHub", conn: Addressable, family_key: str, data: Dict[str, Any]) -> None:
    body = SessionRef.model_validate(data)
    await _require_family(hub, body.session_id, family_key)
    await hub.engine.decline(conn.user_id, body.session_id)


@game_action("answer")
async def _answer(hub: "RealtimeHub", conn: Addressable, family_key: str, data: Dict[str, Any]) -> None:
    body = AnswerIn.model_validate(data)
    await _require_family(hub, body.session_id, family_key)
    await hub.engine.answer(
        conn.user_id,
        body.session_id,
        body.answer,
        question_index=body.question_index,
        client_request_id=body.client_request_id,
    )


@game_action("quit")
async def _quit(hub: "RealtimeHub", conn: Addressable, family_key: str, data: Dict[str, Any]) -> None:
    body = SessionRef.model_validate(data)
    await _require_family(hub, body.session_id, family_key)
    await hub.engine.quit(conn.user_id, body.session_id)


@game_action("voice_note_listened")
async def _voice_note_listened(hub: "RealtimeHub", conn: Addressable, family_key: str, data: Dict[str, Any]) -> None:
    body = VoiceNoteListenedIn.model_validate(data)
    await _require_family(hub, body.session_id, family_key)
    await hub.engine.mark_voice_note_listened(conn.user_id, body.session_id, body.note_id)
