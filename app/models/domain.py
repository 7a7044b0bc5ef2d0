"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from app.models.api import (
    AuthMethod,
    GenerationKind,
    GenerationStatus,
    TransactionStatus,
    TransactionType,
)


@dataclass(frozen=True)
class CallerIdentity:
    """Resolved caller of a request, however it authenticated."""

    user_id: UUID
    auth_method: AuthMethod
    email: str | None = None
    token_id: UUID | None = None

    @property
    def privileged(self) -> bool:
        """
        Token callers run on the service's own handle.

        They carry no session for the store to check ownership against, so
        every downstream query is scoped to user_id explicitly instead.
        """
        return self.auth_method == AuthMethod.API_TOKEN


@dataclass(frozen=True)
class SessionUser:
    """User as reported by the hosted identity provider."""

    id: UUID
    email: str | None = None
    email_confirmed_at: datetime | None = None
    last_sign_in_at: datetime | None = None


@dataclass(frozen=True)
class GenerationRequest:
    """What the caller asked to generate."""

    kind: GenerationKind
    prompt: str
    size: str | None = None

    @property
    def word_count(self) -> int:
        """Number of whitespace-delimited tokens in the trimmed prompt."""
        return len(self.prompt.split())


@dataclass(frozen=True)
class PriceQuote:
    """Cost snapshot taken at admission time."""

    kind: GenerationKind
    variant_key: str
    unit_price: Decimal
    units: int
    cost: Decimal
    is_fallback: bool = False


@dataclass(frozen=True)
class JobProfile:
    """How one modality is submitted to and read back from the job platform."""

    kind: GenerationKind
    job_id: str
    input_field: str
    proof_field: str
    failure_message: str
    timeout_message: str


@dataclass(frozen=True)
class JobTask:
    """One task attempt as listed by the job platform."""

    task_id: str | None
    status: str
    comment: str | None
    failure_reason: str | None
    job_proof: str | None
    added: datetime | None
    planned_task: str | None


@dataclass(frozen=True)
class TerminalOutcome:
    """Final result of polling a submitted task."""

    succeeded: bool
    result_url: str | None
    message: str
    detail: str | None = None
    attempts: int = 0
    timed_out: bool = False

    @classmethod
    def success(cls, result_url: str | None, attempts: int) -> "TerminalOutcome":
        """Task produced a result (the locator may still be empty)."""
        return cls(succeeded=True, result_url=result_url, message="", attempts=attempts)

    @classmethod
    def failure(
        cls, message: str, detail: str | None, attempts: int, timed_out: bool = False
    ) -> "TerminalOutcome":
        """Task failed, was declined, or never finished."""
        return cls(
            succeeded=False,
            result_url=None,
            message=message,
            detail=detail,
            attempts=attempts,
            timed_out=timed_out,
        )


@dataclass(frozen=True)
class GenerationData:
    """Immutable generation record snapshot."""

    generation_id: UUID
    kind: GenerationKind
    user_id: UUID
    prompt: str
    size: str | None
    status: GenerationStatus
    result_url: str | None
    error_message: str | None
    cost: Decimal
    submitted_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class GenerationOutcome:
    """What a generation request resolved to."""

    generation_id: UUID
    kind: GenerationKind
    success: bool
    cost: Decimal
    result_url: str | None = None
    message: str | None = None
    charged: bool = False


@dataclass(frozen=True)
class ChargeResult:
    """Result of debiting a user after a successful generation."""

    success: bool
    new_balance: Decimal | None
    transaction_logged: bool
    error: str | None = None


@dataclass(frozen=True)
class TransactionData:
    """Immutable ledger transaction snapshot."""

    transaction_id: UUID
    user_id: UUID
    type: TransactionType
    amount: Decimal
    description: str | None
    payment_id: str | None
    status: TransactionStatus
    created_at: datetime


@dataclass(frozen=True)
class ApiTokenData:
    """Immutable API token snapshot."""

    token_id: UUID
    user_id: UUID
    name: str
    token: str
    created_at: datetime
    last_used_at: datetime | None
    expires_at: datetime | None
    is_active: bool


@dataclass(frozen=True)
class GenerationTally:
    """Generation counts for one kind."""

    total: int
    generating: int
    completed: int
    failed: int


@dataclass(frozen=True)
class DashboardStats:
    """Admin overview counters."""

    total_users: int
    recent_users: int
    active_users: int
    image_generations: GenerationTally
    speech_generations: GenerationTally
    total_revenue: Decimal
    revenue_last_30d: Decimal
    total_credited: Decimal
    total_balance: Decimal
    active_api_tokens: int
