from typing import Annotated, Optional
from fastapi import Depends, Request, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.auth.service.identity_service import Identity, IdentityService
from app.chat.errors import AuthenticationError


# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


def get_identity_service(request: Request) -> IdentityService:
    """Get identity service from app state."""
    if not hasattr(request.app.state, "identity_service"):
        raise RuntimeError("Identity service not initialized. Ensure main.py startup wires app.state.*")
    return request.app.state.identity_service


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Identity:
    """
    Dependency to get the current authenticated user from the access token.

    Usage:
        @router.get("/protected")
        async def protected_route(current_user: Identity = Depends(get_current_user)):
            user_id = current_user.user_id
            ...
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await get_identity_service(request).resolve_token(credentials.credentials)
    except AuthenticationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


CurrentUserDep = Annotated[Identity, Depends(get_current_user)]
