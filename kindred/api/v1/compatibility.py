"""
Compatibility Endpoint
"""

from fastapi import APIRouter

from kindred.core.deps import CurrentUserDep, HubDep

router = APIRouter()


@router.get("/{partner_id}")
async def get_compatibility(partner_id: str, user_id: CurrentUserDep, hub: HubDep):
    """Couple profile built from every finished game with this match."""
    return await hub.compatibility.view(user_id, partner_id)
