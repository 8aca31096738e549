"""
Dependency Injection

FastAPI dependencies for routes.
"""

from typing import Annotated, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from kindred.core.errors import AuthenticationError, UnavailableError
from kindred.core.security import verify_token
from kindred.realtime.hub import RealtimeHub

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
) -> str:
    """
    Validate token and return current user ID.
    Does not fetch full user object to save DB call.
    """
    user_id = verify_token(credentials.credentials if credentials else None)
    if not user_id:
        raise AuthenticationError("Could not validate credentials")
    return user_id


CurrentUserDep = Annotated[str, Depends(get_current_user_id)]


def get_hub(request: Request) -> RealtimeHub:
    """Realtime services container created in the app lifespan"""
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise UnavailableError("Realtime services are not running")
    return hub


HubDep = Annotated[RealtimeHub, Depends(get_hub)]
