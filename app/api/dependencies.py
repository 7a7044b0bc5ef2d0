"""
FastAPI Dependencies - Caller resolution, authorization and shared clients.

NO DICTIONARIES - All dependencies return typed objects.

Callers authenticate either with an API token (``Authorization: Bearer``)
or with the hosted identity provider's session cookie. A rejected bearer
token falls back to the session, so browser users are never locked out by a
stale header.
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_write_db
from app.exceptions import AuthenticationError, AuthorizationError
from app.models.api import AuthMethod
from app.models.domain import CallerIdentity
from app.services.api_token import ApiTokenService
from app.services.identity import SessionIdentityProvider
from app.services.job_platform import JobPlatformClient

logger = get_logger(__name__)

# Bearer token scheme for API tokens
bearer_scheme = HTTPBearer(auto_error=False)

UNAUTHENTICATED_MESSAGE = "Unauthorized - No valid authentication found"


# ============================================================================
# Shared clients
# ============================================================================

_job_client: JobPlatformClient | None = None
_identity_provider: SessionIdentityProvider | None = None


def get_job_client() -> JobPlatformClient:
    """Get the process-wide job platform client."""
    global _job_client
    if _job_client is None:
        _job_client = JobPlatformClient.from_settings(settings)
    return _job_client


def get_identity_provider() -> SessionIdentityProvider:
    """Get the process-wide session identity provider."""
    global _identity_provider
    if _identity_provider is None:
        _identity_provider = SessionIdentityProvider.from_settings(settings)
    return _identity_provider


async def close_clients() -> None:
    """Close shared HTTP clients (for graceful shutdown)."""
    global _job_client, _identity_provider
    if _job_client is not None:
        await _job_client.aclose()
        _job_client = None
    if _identity_provider is not None:
        await _identity_provider.close()
        _identity_provider = None


# ============================================================================
# Caller resolution
# ============================================================================


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=message,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _session_caller(
    request: Request, provider: SessionIdentityProvider
) -> CallerIdentity | None:
    access_token = request.cookies.get(settings.session_cookie_name)
    if not access_token:
        return None

    user = await provider.get_current_user(access_token)
    if user is None:
        return None

    return CallerIdentity(user_id=user.id, auth_method=AuthMethod.SESSION, email=user.email)


async def resolve_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_write_db),
    provider: SessionIdentityProvider = Depends(get_identity_provider),
) -> CallerIdentity:
    """
    Resolve the caller from an API token or, failing that, the session.

    Usage:
        @router.get("/api/balance")
        async def get_balance(caller: CallerIdentity = Depends(resolve_caller)):
            # caller.user_id scopes every query
            pass

    Raises:
        HTTPException 401 if neither authenticates; a rejected token's
        reason is reported
    """
    token_error: str | None = None

    if credentials is not None:
        try:
            token = await ApiTokenService(db).validate_token(credentials.credentials)
        except AuthenticationError as exc:
            token_error = exc.message
        else:
            return CallerIdentity(
                user_id=token.user_id,
                auth_method=AuthMethod.API_TOKEN,
                token_id=token.token_id,
            )

    caller = await _session_caller(request, provider)
    if caller is not None:
        return caller

    logger.info("caller_unauthenticated", path=request.url.path, token_error=token_error)
    raise _unauthorized(token_error or UNAUTHENTICATED_MESSAGE)


async def resolve_session_caller(
    request: Request,
    provider: SessionIdentityProvider = Depends(get_identity_provider),
) -> CallerIdentity:
    """
    Resolve the caller from the session only; bearer tokens are ignored.

    Used for token management, manual charges and admin endpoints.
    """
    caller = await _session_caller(request, provider)
    if caller is None:
        raise _unauthorized("Unauthorized")
    return caller


async def require_admin(
    caller: CallerIdentity = Depends(resolve_session_caller),
) -> CallerIdentity:
    """
    Require a session user whose email is listed in ADMIN_EMAILS.

    Raises:
        HTTPException 403 if not an admin
    """
    email = (caller.email or "").strip().lower()
    if not email or email not in settings.admin_email_list:
        logger.warning("admin_access_denied", user_id=str(caller.user_id), email=caller.email)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(AuthorizationError("admin")),
        )
    return caller
