from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt


@dataclass
class TokenPayload:
    user_id: str
    role: str
    name: str = ""
    email: str | None = None


class TokenClient:
    def __init__(self, secret_key: str, refresh_secret_key: str, leeway_seconds: int = 10):
        self.secret_key = secret_key
        self.refresh_secret_key = refresh_secret_key
        # Allow small clock skew when decoding tokens
        self.leeway_seconds = leeway_seconds

    def create_tokens(self, payload: TokenPayload) -> dict[str, str]:
        """Create access and refresh tokens"""
        token_data = {
            "user_id": str(payload.user_id),
            "role": payload.role,
            "name": payload.name,
            "email": payload.email,
        }

        access_token = self._encode(token_data, self.secret_key, timedelta(hours=24))
        refresh_token = self._encode(token_data, self.refresh_secret_key, timedelta(days=14))

        return {"access_token": access_token, "refresh_token": refresh_token}

    def _encode(self, data: dict, secret: str, lifetime: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "iat": int(now.timestamp()),
            "exp": now + lifetime
        })
        return jwt.encode(to_encode, secret, algorithm="HS256")

    def decode_token(self, token: str, is_refresh: bool = False) -> dict:
        """Decode and verify a token"""
        try:
            secret = self.refresh_secret_key if is_refresh else self.secret_key
            return jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                leeway=self.leeway_seconds,
            )
        except jwt.ExpiredSignatureError:
            raise ValueError("Token has expired")
        except jwt.InvalidTokenError:
            raise ValueError("Invalid token")
