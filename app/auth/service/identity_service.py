from dataclasses import dataclass
import logging

from app.chat.errors import AuthenticationError
from pkg.auth_token_client.client import TokenClient
from pkg.log.logger import get_logger


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str
    display_name: str = ""


class IdentityService:
    """Resolves access tokens minted by the auth service into an Identity."""

    def __init__(self, token_client: TokenClient, logger: logging.Logger | None = None):
        self.token_client = token_client
        self.logger = logger or get_logger(__name__)

    async def resolve_token(self, token: str | None) -> Identity:
        if not token:
            raise AuthenticationError("Authentication token required")

        try:
            payload = self.token_client.decode_token(token, is_refresh=False)
        except ValueError as e:
            self.logger.warning(f"Rejected token: {e}")
            raise AuthenticationError("Authentication failed") from e

        user_id = payload.get("user_id")
        role = payload.get("role")
        if not user_id or not role:
            raise AuthenticationError("Authentication failed")

        return Identity(
            user_id=str(user_id),
            role=str(role),
            display_name=payload.get("name") or payload.get("email") or "",
        )
