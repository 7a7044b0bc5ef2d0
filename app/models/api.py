"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

# Money is stored as NUMERIC and rendered as a JSON number
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class GenerationKind(str, Enum):
    """Product modality of a generation."""

    IMAGE = "image"
    SPEECH = "speech"


class GenerationStatus(str, Enum):
    """Lifecycle status of a generation record."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Terminal states are absorbing."""
        return self in (GenerationStatus.COMPLETED, GenerationStatus.FAILED)


class TransactionType(str, Enum):
    """Ledger transaction direction."""

    CREDIT = "credit"
    DEBIT = "debit"


class TransactionStatus(str, Enum):
    """Ledger transaction status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BalanceOperation(str, Enum):
    """Direction of an atomic balance adjustment."""

    ADD = "add"
    SUBTRACT = "subtract"


class AuthMethod(str, Enum):
    """How the caller authenticated."""

    API_TOKEN = "api_token"
    SESSION = "session"


# ============================================================================
# Generation Models
# ============================================================================


class ImageGenerationRequest(BaseModel):
    """POST /api/generateImage request body."""

    # Emptiness is checked by the orchestrator so it maps to 400, not 422
    prompt: str = Field("", max_length=4000)
    size: str = Field("1024x1024", min_length=1, max_length=32)


class SpeechGenerationRequest(BaseModel):
    """POST /api/tts/generate request body."""

    prompt: str = Field("", max_length=20000)


class ImageGenerationResponse(BaseModel):
    """POST /api/generateImage response."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    image_url: str | None = Field(None, alias="imageUrl")
    generation_id: UUID | None = None
    cost: Money | None = None
    message: str | None = None


class SpeechGenerationResponse(BaseModel):
    """POST /api/tts/generate response."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    audio_url: str | None = Field(None, alias="audioUrl")
    generation_id: UUID | None = None
    cost: Money | None = None
    message: str | None = None


class GenerationAcceptedResponse(BaseModel):
    """202 response for background generations."""

    generation_id: UUID
    kind: GenerationKind
    status: GenerationStatus
    cost: Money


class GenerationRecordResponse(BaseModel):
    """A single generation record as shown in history."""

    id: UUID
    kind: GenerationKind
    prompt: str
    size: str | None = None
    status: GenerationStatus
    result_url: str | None = None
    error_message: str | None = None
    cost: Money
    created_at: datetime
    updated_at: datetime


class GenerationListResponse(BaseModel):
    """GET /api/generations response."""

    generations: list[GenerationRecordResponse]


# ============================================================================
# Balance & Ledger Models
# ============================================================================


class BalanceResponse(BaseModel):
    """GET /api/balance response."""

    balance: Money


class TransactionItem(BaseModel):
    """A single ledger transaction."""

    id: UUID
    type: TransactionType
    amount: Money
    description: str | None = None
    payment_id: str | None = None
    status: TransactionStatus
    created_at: datetime


class TransactionListResponse(BaseModel):
    """GET /api/transactions response."""

    transactions: list[TransactionItem]


class ChargeRequest(BaseModel):
    """POST /api/charge request body."""

    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=4)
    description: str | None = Field(None, max_length=500)
    generation_id: UUID | None = None


class ChargeResponse(BaseModel):
    """POST /api/charge response."""

    success: bool
    new_balance: Money
    message: str


# ============================================================================
# API Token Models
# ============================================================================


class ApiTokenCreateRequest(BaseModel):
    """POST /api/api-tokens request body."""

    name: str = Field("", max_length=100)
    expires_in_days: int | None = Field(None, ge=1, le=3650)


class ApiTokenResponse(BaseModel):
    """API token as listed to its owner."""

    id: UUID
    name: str
    token: str
    created_at: datetime
    last_used_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool


class ApiTokenListResponse(BaseModel):
    """GET /api/api-tokens response."""

    tokens: list[ApiTokenResponse]


class ApiTokenCreateResponse(BaseModel):
    """POST /api/api-tokens response."""

    token: ApiTokenResponse


class SuccessResponse(BaseModel):
    """Generic acknowledgement."""

    success: bool = True
    message: str | None = None


# ============================================================================
# Pricing Models
# ============================================================================


class ImagePriceItem(BaseModel):
    """One image size price row."""

    size_key: str
    price: Money
    description: str | None = None


class ImagePricingResponse(BaseModel):
    """GET /api/pricing response."""

    pricing: list[ImagePriceItem]


class ImagePriceUpdate(BaseModel):
    """One image price change."""

    size_key: str = Field(..., min_length=1, max_length=32)
    price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=4)


class ImagePricingUpdateRequest(BaseModel):
    """POST /api/pricing request body."""

    pricing: list[ImagePriceUpdate] = Field(..., min_length=1)


class SpeechPriceItem(BaseModel):
    """The per-word speech rate row."""

    id: UUID
    price: Money
    description: str | None = None


class SpeechPricingResponse(BaseModel):
    """GET /api/tts/pricing response."""

    pricing: list[SpeechPriceItem]


class SpeechPriceUpdate(BaseModel):
    """Speech rate change."""

    id: UUID
    price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=4)


class SpeechPricingUpdateRequest(BaseModel):
    """POST /api/tts/pricing request body."""

    pricing: list[SpeechPriceUpdate] = Field(..., min_length=1)


# ============================================================================
# Admin Models
# ============================================================================


class CreditGrantRequest(BaseModel):
    """POST /admin/balances/{user_id}/credits request body."""

    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=4)
    description: str = Field("Manual credit", min_length=1, max_length=500)
    payment_id: str | None = Field(None, max_length=255)


class CreditGrantResponse(BaseModel):
    """POST /admin/balances/{user_id}/credits response."""

    user_id: UUID
    new_balance: Money


class GenerationCounts(BaseModel):
    """Per-kind generation counters."""

    total: int = 0
    generating: int = 0
    completed: int = 0
    failed: int = 0


class AdminMetricsResponse(BaseModel):
    """GET /admin/metrics response."""

    total_users: int
    recent_users: int
    active_users: int
    image_generations: GenerationCounts
    speech_generations: GenerationCounts
    total_revenue: Money
    revenue_last_30d: Money
    total_credited: Money
    total_balance: Money
    active_api_tokens: int


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
