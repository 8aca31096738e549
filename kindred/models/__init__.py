from kindred.models.base import Base
from kindred.models.block import Block
from kindred.models.conversation import Conversation, ConversationParticipant
from kindred.models.game import GameAnswer, GamePlayer, GameSession, GameVoiceNote
from kindred.models.message import Message, MessageReaction, MessageReport, MessageSave
from kindred.models.user import Match, User

__all__ = [
    "Base",
    "User",
    "Match",
    "Block",
    "Conversation",
    "ConversationParticipant",
    "Message",
    "MessageReaction",
    "MessageReport",
    "MessageSave",
    "GameSession",
    "GamePlayer",
    "GameAnswer",
    "GameVoiceNote",
]
