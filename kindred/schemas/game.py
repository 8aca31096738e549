"""
Game Schemas

Ingress payloads for game:<family>:* events.
"""

from typing import Any, Optional

from pydantic import Field

from kindred.schemas.chat import WireModel


class InviteIn(WireModel):
    match_id: str
    client_request_id: Optional[str] = Field(default=None, max_length=64)


class JoinIn(WireModel):
    session_id: Optional[str] = None


class SessionRef(WireModel):
    session_id: str


class AnswerIn(WireModel):
    session_id: str
    answer: Any = None
    question_index: Optional[int] = None
    client_request_id: Optional[str] = Field(default=None, max_length=64)


class VoiceNoteListenedIn(WireModel):
    session_id: str
    note_id: str
