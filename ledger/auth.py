from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from jose import JWTError, jwt

from .config import AuthSettings
from .models import User
from .service import Unauthenticated

logger = structlog.get_logger(__name__)


class TokenAuthority:
    """Issues and verifies the bearer tokens that bind a caller to a user id."""

    def __init__(self, settings: Optional[AuthSettings] = None):
        self.settings = settings or AuthSettings()

    def issue(self, user: User) -> str:
        expire = datetime.now(timezone.utc) + timedelta(days=self.settings.expires_days)
        claims = {
            "userId": user.id,
            "walletAddress": user.wallet_address,
            "exp": expire,
        }
        return jwt.encode(claims, self.settings.secret, algorithm=self.settings.algorithm)

    def verify(self, token: Optional[str]) -> int:
        if not token or not isinstance(token, str):
            raise Unauthenticated("Access token required")
        try:
            payload = jwt.decode(token, self.settings.secret, algorithms=[self.settings.algorithm])
        except JWTError as e:
            logger.info("token_rejected", error=str(e))
            raise Unauthenticated("Invalid or expired token") from e

        user_id = payload.get("userId")
        if not isinstance(user_id, int):
            raise Unauthenticated("Token carries no user id")
        return user_id

    def verify_header(self, authorization: Optional[str]) -> int:
        token = None
        if authorization:
            scheme, _, credentials = authorization.partition(" ")
            if scheme.lower() == "bearer":
                token = credentials.strip()
        return self.verify(token)
