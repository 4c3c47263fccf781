from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from helpdesk.identity import Role, UserDirectory, UserProfile
from helpdesk.tickets.policy import Actor

bearer_scheme = HTTPBearer(auto_error=False)


async def get_user_directory(request: Request) -> UserDirectory:
    directory = getattr(request.app.state, "user_directory", None)
    if directory is None:
        raise HTTPException(status_code=503, detail="User directory is not configured")
    return directory


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    directory: Annotated[UserDirectory, Depends(get_user_directory)],
) -> UserProfile:
    """Resolve the bearer token to a stored user.

    Tokens are issued out of band; this only looks them up. A missing or
    unknown token is rejected with 401.
    """

    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await directory.get_user_by_token(credentials.credentials)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def role_required(role: Role) -> Callable[[UserProfile], UserProfile]:
    """Dependency factory ensuring the current user has the requested role."""

    async def dependency(user: Annotated[UserProfile, Depends(get_current_user)]) -> UserProfile:
        if user.role != role:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


async def get_actor(user: Annotated[UserProfile, Depends(get_current_user)]) -> Actor:
    return Actor.from_profile(user)


CurrentUser = Annotated[UserProfile, Depends(get_current_user)]
CurrentActor = Annotated[Actor, Depends(get_actor)]
