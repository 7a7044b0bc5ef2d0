"""
API token management routes.

Session only: a token can never be used to mint or delete tokens.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import resolve_session_caller
from app.db.session import get_write_db
from app.exceptions import InvalidInputError, ResourceNotFoundError
from app.models.api import (
    ApiTokenCreateRequest,
    ApiTokenCreateResponse,
    ApiTokenListResponse,
    ApiTokenResponse,
    SuccessResponse,
)
from app.models.domain import ApiTokenData, CallerIdentity
from app.services.api_token import ApiTokenService

router = APIRouter(prefix="/api/api-tokens", tags=["api-tokens"])


def _token_response(token: ApiTokenData) -> ApiTokenResponse:
    return ApiTokenResponse(
        id=token.token_id,
        name=token.name,
        token=token.token,
        created_at=token.created_at,
        last_used_at=token.last_used_at,
        expires_at=token.expires_at,
        is_active=token.is_active,
    )


@router.get("", response_model=ApiTokenListResponse)
async def list_tokens(
    caller: CallerIdentity = Depends(resolve_session_caller),
    db: AsyncSession = Depends(get_write_db),
) -> ApiTokenListResponse:
    """List the signed-in user's tokens, newest first."""
    tokens = await ApiTokenService(db).list_tokens(caller.user_id)
    return ApiTokenListResponse(tokens=[_token_response(token) for token in tokens])


@router.post("", response_model=ApiTokenCreateResponse)
async def create_token(
    body: ApiTokenCreateRequest,
    caller: CallerIdentity = Depends(resolve_session_caller),
    db: AsyncSession = Depends(get_write_db),
) -> ApiTokenCreateResponse:
    """Create a token for the signed-in user."""
    try:
        token = await ApiTokenService(db).create_token(
            caller.user_id, body.name, expires_in_days=body.expires_in_days
        )
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc

    return ApiTokenCreateResponse(token=_token_response(token))


@router.delete("/{token_id}", response_model=SuccessResponse)
async def delete_token(
    token_id: UUID,
    caller: CallerIdentity = Depends(resolve_session_caller),
    db: AsyncSession = Depends(get_write_db),
) -> SuccessResponse:
    """Delete one of the signed-in user's tokens."""
    try:
        await ApiTokenService(db).delete_token(caller.user_id, token_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return SuccessResponse(success=True)
