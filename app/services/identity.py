"""
Session identity provider for browser users.

Sessions are owned by the hosted identity provider (Supabase-style auth).
The access token from the session cookie is either verified locally with the
project's JWT secret or exchanged for the user record over HTTP.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

import httpx
import jwt
from structlog import get_logger

from app.config import Settings, get_settings
from app.models.domain import SessionUser

logger = get_logger(__name__)


def _parse_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_user_id(value: Any) -> UUID | None:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


class SessionIdentityProvider:
    """Resolves a session access token to the signed-in user."""

    USER_PATH = "/auth/v1/user"

    def __init__(
        self,
        auth_url: str,
        anon_key: str = "",
        jwt_secret: str = "",
        audience: str = "authenticated",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ):
        self.auth_url = auth_url.rstrip("/")
        self.anon_key = anon_key
        self.jwt_secret = jwt_secret
        self.audience = audience
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, http_client: httpx.AsyncClient | None = None
    ) -> "SessionIdentityProvider":
        """Build a provider from application settings."""
        settings = settings or get_settings()
        return cls(
            auth_url=settings.auth_url,
            anon_key=settings.auth_anon_key,
            jwt_secret=settings.auth_jwt_secret,
            audience=settings.auth_jwt_audience,
            http_client=http_client,
            timeout_seconds=settings.auth_timeout_seconds,
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def get_current_user(self, access_token: str) -> SessionUser | None:
        """
        Resolve an access token.

        Returns:
            SessionUser, or None if the token is not a valid session
        """
        if not access_token:
            return None
        if self.jwt_secret:
            return self._decode_locally(access_token)
        return await self._fetch_user(access_token)

    def _decode_locally(self, access_token: str) -> SessionUser | None:
        try:
            claims = jwt.decode(
                access_token,
                self.jwt_secret,
                algorithms=["HS256"],
                audience=self.audience,
            )
        except jwt.PyJWTError as e:
            logger.info("session_token_rejected", error=str(e))
            return None

        user_id = _parse_user_id(claims.get("sub"))
        if user_id is None:
            logger.warning("session_token_missing_subject")
            return None

        return SessionUser(id=user_id, email=claims.get("email"))

    async def _fetch_user(self, access_token: str) -> SessionUser | None:
        if not self.auth_url:
            logger.warning("session_auth_not_configured")
            return None

        try:
            response = await self.http_client.get(
                f"{self.auth_url}{self.USER_PATH}",
                headers={
                    "apikey": self.anon_key,
                    "Authorization": f"Bearer {access_token}",
                },
            )
        except httpx.HTTPError as e:
            logger.error("session_user_fetch_error", error=str(e))
            return None

        if response.status_code in (401, 403):
            return None
        if not response.is_success:
            logger.error(
                "session_user_fetch_failed", status=response.status_code, text=response.text[:200]
            )
            return None

        try:
            user_data = response.json()
        except ValueError:
            logger.error("session_user_invalid_json")
            return None

        user_id = _parse_user_id(user_data.get("id")) if isinstance(user_data, dict) else None
        if user_id is None:
            return None

        return SessionUser(
            id=user_id,
            email=user_data.get("email"),
            email_confirmed_at=_parse_datetime(user_data.get("email_confirmed_at")),
            last_sign_in_at=_parse_datetime(user_data.get("last_sign_in_at")),
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
