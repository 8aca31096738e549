"""
Block Endpoints
"""

from fastapi import APIRouter, Response, status

from kindred.core.deps import CurrentUserDep, HubDep
from kindred.schemas.chat import BlockIn, block_payload

router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def block_user(body: BlockIn, user_id: CurrentUserDep, hub: HubDep):
    """
    Block another user.
    The blocked user is not notified; delivery and game invites stop in both directions.
    """
    block = await hub.block_user(
        user_id,
        body.user_id,
        reason=body.reason,
        details=body.details,
        expires_in_hours=body.expires_in_hours,
    )
    return block_payload(block)


@router.delete("/{blocked_user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unblock_user(blocked_user_id: str, user_id: CurrentUserDep, hub: HubDep):
    await hub.unblock_user(user_id, blocked_user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("")
async def list_blocked(user_id: CurrentUserDep, hub: HubDep):
    blocks = await hub.blocks.list_blocked(user_id)
    return {"blocks": [block_payload(b) for b in blocks]}
