"""
API Routes - FastAPI endpoints for generations, balances and transactions.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import get_job_client, resolve_caller, resolve_session_caller
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    AuthenticationError,
    AuthorizationError,
    InsufficientFundsError,
    InvalidInputError,
    ResourceNotFoundError,
    ServiceError,
)
from app.models.api import (
    BalanceResponse,
    ChargeRequest,
    ChargeResponse,
    GenerationAcceptedResponse,
    GenerationKind,
    GenerationListResponse,
    GenerationRecordResponse,
    HealthResponse,
    ImageGenerationRequest,
    ImageGenerationResponse,
    SpeechGenerationRequest,
    SpeechGenerationResponse,
    TransactionItem,
    TransactionListResponse,
)
from app.models.domain import CallerIdentity, GenerationData, GenerationRequest
from app.observability import metrics
from app.services.generation import GenerationStore, build_generation_service
from app.services.generation_runner import run_generation
from app.services.job_platform import JobPlatformClient
from app.services.ledger import LedgerService

logger = get_logger(__name__)
router = APIRouter()

DEFAULT_CHARGE_DESCRIPTION = "Image generation charge"


def _to_http_exception(exc: ServiceError) -> HTTPException:
    """Map a service error to its HTTP status."""
    if isinstance(exc, InvalidInputError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, AuthenticationError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(exc, AuthorizationError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, InsufficientFundsError):
        return HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc))
    if isinstance(exc, ResourceNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _record_response(record: GenerationData) -> GenerationRecordResponse:
    return GenerationRecordResponse(
        id=record.generation_id,
        kind=record.kind,
        prompt=record.prompt,
        size=record.size,
        status=record.status,
        result_url=record.result_url,
        error_message=record.error_message,
        cost=record.cost,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


# ============================================================================
# Request validation
# ============================================================================


def _require_prompt(kind: GenerationKind, prompt: str) -> None:
    """Reject blank prompts before the caller is resolved."""
    if not prompt.strip():
        metrics.record_rejection(kind.value, "invalid_input")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Prompt is required")


async def image_generation_request(body: ImageGenerationRequest) -> GenerationRequest:
    _require_prompt(GenerationKind.IMAGE, body.prompt)
    return GenerationRequest(kind=GenerationKind.IMAGE, prompt=body.prompt, size=body.size)


async def speech_generation_request(body: SpeechGenerationRequest) -> GenerationRequest:
    _require_prompt(GenerationKind.SPEECH, body.prompt)
    return GenerationRequest(kind=GenerationKind.SPEECH, prompt=body.prompt)


# ============================================================================
# Synchronous generation
# ============================================================================


@router.post(
    "/api/generateImage",
    response_model=ImageGenerationResponse,
    response_model_exclude_none=True,
)
async def generate_image(
    request: GenerationRequest = Depends(image_generation_request),
    caller: CallerIdentity = Depends(resolve_caller),
    db: AsyncSession = Depends(get_write_db),
    job_client: JobPlatformClient = Depends(get_job_client),
) -> ImageGenerationResponse:
    """
    Generate an image and wait for the result.

    Blocks until the job platform reports a terminal outcome. Failed,
    declined and timed-out tasks are reported with success=false and are
    not charged.
    """
    service = build_generation_service(db, job_client)

    try:
        outcome = await service.generate(caller, request)
    except ServiceError as exc:
        raise _to_http_exception(exc) from exc

    if not outcome.success:
        return ImageGenerationResponse(
            success=False, generation_id=outcome.generation_id, message=outcome.message
        )
    return ImageGenerationResponse(
        success=True,
        image_url=outcome.result_url,
        generation_id=outcome.generation_id,
        cost=outcome.cost,
    )


@router.post(
    "/api/tts/generate",
    response_model=SpeechGenerationResponse,
    response_model_exclude_none=True,
)
async def generate_speech(
    request: GenerationRequest = Depends(speech_generation_request),
    caller: CallerIdentity = Depends(resolve_caller),
    db: AsyncSession = Depends(get_write_db),
    job_client: JobPlatformClient = Depends(get_job_client),
) -> SpeechGenerationResponse:
    """
    Generate speech audio and wait for the result.

    Priced per word of the trimmed prompt.
    """
    service = build_generation_service(db, job_client)

    try:
        outcome = await service.generate(caller, request)
    except ServiceError as exc:
        raise _to_http_exception(exc) from exc

    if not outcome.success:
        return SpeechGenerationResponse(
            success=False, generation_id=outcome.generation_id, message=outcome.message
        )
    return SpeechGenerationResponse(
        success=True,
        audio_url=outcome.result_url,
        generation_id=outcome.generation_id,
        cost=outcome.cost,
    )


# ============================================================================
# Background generation
# ============================================================================


async def _admit_in_background(
    request: GenerationRequest,
    caller: CallerIdentity,
    db: AsyncSession,
    job_client: JobPlatformClient,
    background_tasks: BackgroundTasks,
) -> GenerationAcceptedResponse:
    service = build_generation_service(db, job_client)
    try:
        record, quote = await service.admit(caller, request)
    except ServiceError as exc:
        raise _to_http_exception(exc) from exc

    background_tasks.add_task(run_generation, record.kind, record.generation_id, job_client)

    return GenerationAcceptedResponse(
        generation_id=record.generation_id,
        kind=record.kind,
        status=record.status,
        cost=quote.cost,
    )


@router.post(
    "/v1/generations/image",
    response_model=GenerationAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_image_generation(
    background_tasks: BackgroundTasks,
    request: GenerationRequest = Depends(image_generation_request),
    caller: CallerIdentity = Depends(resolve_caller),
    db: AsyncSession = Depends(get_write_db),
    job_client: JobPlatformClient = Depends(get_job_client),
) -> GenerationAcceptedResponse:
    """Admit an image generation and run it in the background."""
    return await _admit_in_background(request, caller, db, job_client, background_tasks)


@router.post(
    "/v1/generations/speech",
    response_model=GenerationAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_speech_generation(
    background_tasks: BackgroundTasks,
    request: GenerationRequest = Depends(speech_generation_request),
    caller: CallerIdentity = Depends(resolve_caller),
    db: AsyncSession = Depends(get_write_db),
    job_client: JobPlatformClient = Depends(get_job_client),
) -> GenerationAcceptedResponse:
    """Admit a speech generation and run it in the background."""
    return await _admit_in_background(request, caller, db, job_client, background_tasks)


@router.get("/v1/generations/{kind}/{generation_id}", response_model=GenerationRecordResponse)
async def get_generation(
    kind: GenerationKind,
    generation_id: UUID,
    caller: CallerIdentity = Depends(resolve_caller),
    db: AsyncSession = Depends(get_read_db),
) -> GenerationRecordResponse:
    """Get one of the caller's generation records."""
    record = await GenerationStore(db).get(kind, generation_id, user_id=caller.user_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(ResourceNotFoundError("Generation", generation_id)),
        )
    return _record_response(record)


# ============================================================================
# History, balance and transactions
# ============================================================================


@router.get("/api/generations", response_model=GenerationListResponse)
async def list_generations(
    kind: GenerationKind = Query(GenerationKind.IMAGE),
    limit: int = Query(100, ge=1, le=500),
    caller: CallerIdentity = Depends(resolve_caller),
    db: AsyncSession = Depends(get_read_db),
) -> GenerationListResponse:
    """The caller's generations of one kind, newest first."""
    records = await GenerationStore(db).list_for_user(caller.user_id, kind, limit=limit)
    return GenerationListResponse(generations=[_record_response(record) for record in records])


@router.get("/api/balance", response_model=BalanceResponse)
async def get_balance(
    caller: CallerIdentity = Depends(resolve_caller),
    db: AsyncSession = Depends(get_read_db),
) -> BalanceResponse:
    """Current balance of the caller (zero if never credited)."""
    balance = await LedgerService(db).get_balance(caller.user_id)
    return BalanceResponse(balance=balance)


@router.get("/api/transactions", response_model=TransactionListResponse)
async def list_transactions(
    limit: int = Query(100, ge=1, le=500),
    caller: CallerIdentity = Depends(resolve_caller),
    db: AsyncSession = Depends(get_read_db),
) -> TransactionListResponse:
    """The caller's ledger transactions, newest first."""
    transactions = await LedgerService(db).list_transactions(caller.user_id, limit=limit)
    return TransactionListResponse(
        transactions=[
            TransactionItem(
                id=t.transaction_id,
                type=t.type,
                amount=t.amount,
                description=t.description,
                payment_id=t.payment_id,
                status=t.status,
                created_at=t.created_at,
            )
            for t in transactions
        ]
    )


@router.post("/api/charge", response_model=ChargeResponse)
async def charge(
    body: ChargeRequest,
    caller: CallerIdentity = Depends(resolve_session_caller),
    db: AsyncSession = Depends(get_write_db),
) -> ChargeResponse:
    """
    Debit the signed-in user directly.

    Session only; no balance check is made before the debit.
    """
    result = await LedgerService(db).charge(
        caller.user_id,
        body.amount,
        body.description or DEFAULT_CHARGE_DESCRIPTION,
        body.generation_id,
    )
    if not result.success or result.new_balance is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update balance",
        )

    logger.info(
        "manual_charge_applied",
        user_id=str(caller.user_id),
        amount=str(body.amount),
        generation_id=str(body.generation_id) if body.generation_id else None,
    )
    return ChargeResponse(success=True, new_balance=result.new_balance, message="Charge successful")


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
