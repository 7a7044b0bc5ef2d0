"""
API Token Service - Issuing, listing, deleting and validating API tokens.

NO DICTIONARIES - All data uses typed dataclasses.

Tokens are bearer credentials for external integrations. They are looked up
verbatim, so the value shown at creation is also what the owner sees when
listing their tokens.
"""

import secrets
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import get_settings
from app.db.models import ApiToken
from app.exceptions import AuthenticationError, InvalidInputError, ResourceNotFoundError
from app.models.domain import ApiTokenData

logger = get_logger(__name__)

TOKEN_RANDOM_BYTES = 32


def _to_data(row: ApiToken) -> ApiTokenData:
    return ApiTokenData(
        token_id=row.id,
        user_id=row.user_id,
        name=row.name,
        token=row.token,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        expires_at=row.expires_at,
        is_active=row.is_active,
    )


class ApiTokenService:
    """Service for API token management."""

    def __init__(self, db: AsyncSession, prefix: str | None = None):
        self.db = db
        self.prefix = prefix if prefix is not None else get_settings().api_token_prefix

    def generate_token(self) -> str:
        """
        Generate a new token value.

        Returns:
            Prefix followed by 64 hex characters
        """
        return f"{self.prefix}{secrets.token_hex(TOKEN_RANDOM_BYTES)}"

    async def create_token(
        self, user_id: UUID, name: str, expires_in_days: int | None = None
    ) -> ApiTokenData:
        """
        Create a token owned by user_id.

        Raises:
            InvalidInputError: Blank name
            PersistenceError: Insert failed
        """
        name = name.strip()
        if not name:
            raise InvalidInputError("Token name is required")

        expires_at = None
        if expires_in_days is not None:
            expires_at = datetime.now(UTC) + timedelta(days=expires_in_days)

        api_token = ApiToken(
            user_id=user_id,
            name=name,
            token=self.generate_token(),
            is_active=True,
            expires_at=expires_at,
        )
        self.db.add(api_token)
        await self.db.commit()
        await self.db.refresh(api_token)

        logger.info(
            "api_token_created",
            token_id=str(api_token.id),
            user_id=str(user_id),
            name=name,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return _to_data(api_token)

    async def list_tokens(self, user_id: UUID) -> list[ApiTokenData]:
        """The owner's tokens, newest first."""
        result = await self.db.execute(
            select(ApiToken)
            .where(ApiToken.user_id == user_id)
            .order_by(ApiToken.created_at.desc())
        )
        return [_to_data(row) for row in result.scalars().all()]

    async def delete_token(self, user_id: UUID, token_id: UUID) -> None:
        """
        Delete one of the owner's tokens.

        Raises:
            ResourceNotFoundError: No such token for this owner
        """
        result = await self.db.execute(
            delete(ApiToken)
            .where(ApiToken.id == token_id, ApiToken.user_id == user_id)
            .returning(ApiToken.id)
        )
        deleted = result.scalar_one_or_none()
        if deleted is None:
            await self.db.rollback()
            raise ResourceNotFoundError("API token", token_id)

        await self.db.commit()
        logger.info("api_token_deleted", token_id=str(token_id), user_id=str(user_id))

    async def validate_token(self, provided_token: str) -> ApiTokenData:
        """
        Validate a bearer token and return its record.

        Args:
            provided_token: Value of the Authorization header after "Bearer "

        Returns:
            ApiTokenData if valid

        Raises:
            AuthenticationError: Unknown, inactive, or expired token
        """
        result = await self.db.execute(select(ApiToken).where(ApiToken.token == provided_token))
        api_token = result.scalar_one_or_none()

        if api_token is None:
            logger.warning("api_token_not_found", prefix=provided_token[:10])
            raise AuthenticationError("Invalid API token")

        if not api_token.is_active:
            logger.warning("api_token_inactive", token_id=str(api_token.id))
            raise AuthenticationError("API token is inactive")

        now = datetime.now(UTC)
        if api_token.expires_at is not None and api_token.expires_at < now:
            logger.warning(
                "api_token_expired",
                token_id=str(api_token.id),
                expired_at=api_token.expires_at.isoformat(),
            )
            raise AuthenticationError("API token has expired")

        await self._touch_last_used(api_token.id, now)

        logger.info("api_token_validated", token_id=str(api_token.id), user_id=str(api_token.user_id))
        return _to_data(api_token)

    async def _touch_last_used(self, token_id: UUID, used_at: datetime) -> None:
        """Record token usage; a failure here never rejects the request."""
        try:
            await self.db.execute(
                update(ApiToken).where(ApiToken.id == token_id).values(last_used_at=used_at)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning("api_token_last_used_update_failed", token_id=str(token_id), error=str(e))
