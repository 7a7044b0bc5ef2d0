"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.api import GenerationStatus, TransactionStatus, TransactionType

# Prices and balances keep four decimals so per-word rates like $0.003 survive
MONEY = Numeric(12, 4)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_column(enum_cls: type, name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda x: [e.value for e in x],
    )


# ============================================================================
# Pricing
# ============================================================================


class PricingSetting(Base):
    """
    ORM model for pricing_settings table.

    One row per supported image size.
    """

    __tablename__ = "pricing_settings"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    size_key: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("price >= 0", name="ck_pricing_price_non_negative"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<PricingSetting(size_key={self.size_key}, price={self.price})>"


class TTSPricingSetting(Base):
    """
    ORM model for tts_pricing_settings table.

    Holds a single global per-word rate.
    """

    __tablename__ = "tts_pricing_settings"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("price >= 0", name="ck_tts_pricing_price_non_negative"),)


# ============================================================================
# Ledger
# ============================================================================


class UserBalance(Base):
    """
    ORM model for user_balances table.

    Non-negativity is enforced at admission, not by a constraint here.
    """

    __tablename__ = "user_balances"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, unique=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<UserBalance(user_id={self.user_id}, balance={self.balance})>"


class Transaction(Base):
    """
    ORM model for transactions table.

    Append-only log of credits and debits.
    """

    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    type: Mapped[TransactionType] = mapped_column(
        _enum_column(TransactionType, "transaction_type"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Generation id for debits, gateway payment id for credits
    payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[TransactionStatus] = mapped_column(
        _enum_column(TransactionStatus, "transaction_status"),
        nullable=False,
        default=TransactionStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transaction_amount_positive"),
        Index("idx_transactions_user_created", "user_id", "created_at"),
        Index(
            "idx_transactions_payment_id",
            "payment_id",
            postgresql_where=(payment_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Transaction(id={self.id}, type={self.type}, amount={self.amount})>"


# ============================================================================
# Generations
# ============================================================================


class _GenerationColumns:
    """Columns shared by image and speech generation records."""

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[GenerationStatus] = mapped_column(
        _enum_column(GenerationStatus, "generation_status"),
        nullable=False,
        default=GenerationStatus.PENDING,
    )
    result_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class ImageGeneration(_GenerationColumns, Base):
    """ORM model for image_generations table."""

    __tablename__ = "image_generations"

    size: Mapped[str | None] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        CheckConstraint("cost >= 0", name="ck_image_generation_cost_non_negative"),
        Index("idx_image_generations_user_created", "user_id", "created_at"),
        Index("idx_image_generations_status", "status"),
    )


class TTSGeneration(_GenerationColumns, Base):
    """ORM model for tts_generations table."""

    __tablename__ = "tts_generations"

    __table_args__ = (
        CheckConstraint("cost >= 0", name="ck_tts_generation_cost_non_negative"),
        Index("idx_tts_generations_user_created", "user_id", "created_at"),
        Index("idx_tts_generations_status", "status"),
    )


# ============================================================================
# API Tokens
# ============================================================================


class ApiToken(Base):
    """
    ORM model for api_tokens table.

    Token values are looked up verbatim, so they are stored as issued.
    """

    __tablename__ = "api_tokens"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    token: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("token", name="uq_api_tokens_token"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ApiToken(id={self.id}, user_id={self.user_id}, name={self.name})>"
