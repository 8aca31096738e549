"""
API Router configuration
"""

from fastapi import APIRouter

from kindred.api.v1 import (
    blocks,
    compatibility,
    conversations,
    games,
    health,
    messages,
    ws,
)

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(ws.router, tags=["websocket"])
api_router.include_router(conversations.router, prefix="/conversations", tags=["conversations"])
api_router.include_router(messages.router, prefix="/messages", tags=["messages"])
api_router.include_router(blocks.router, prefix="/blocks", tags=["blocks"])
api_router.include_router(games.router, prefix="/games", tags=["games"])
api_router.include_router(compatibility.router, prefix="/compatibility", tags=["compatibility"])
