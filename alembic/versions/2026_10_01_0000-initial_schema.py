"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_01_0000"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

MONEY = sa.Numeric(12, 4)

DEFAULT_IMAGE_PRICES = [
    ("512x512", "0.25", "Small square image"),
    ("1024x1024", "0.50", "Square image"),
    ("1024x1792", "0.75", "Portrait image"),
    ("1792x1024", "0.75", "Landscape image"),
]
DEFAULT_SPEECH_PRICE = ("0.003", "Text-to-speech price per word")


def _id_column() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    ]


def _generation_columns() -> list[sa.Column]:
    return [
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("result_url", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("cost", MONEY, nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    ]


def upgrade() -> None:
    """Create tables and seed default prices."""

    # ========================================================================
    # Pricing
    # ========================================================================
    pricing_settings = op.create_table(
        "pricing_settings",
        _id_column(),
        sa.Column("size_key", sa.String(32), nullable=False),
        sa.Column("price", MONEY, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("size_key", name="uq_pricing_settings_size_key"),
        sa.CheckConstraint("price >= 0", name="ck_pricing_price_non_negative"),
    )

    tts_pricing_settings = op.create_table(
        "tts_pricing_settings",
        _id_column(),
        sa.Column("price", MONEY, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("price >= 0", name="ck_tts_pricing_price_non_negative"),
    )

    # ========================================================================
    # Ledger
    # ========================================================================
    op.create_table(
        "user_balances",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("balance", MONEY, nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", name="uq_user_balances_user_id"),
    )

    op.create_table(
        "transactions",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("payment_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_transaction_amount_positive"),
        sa.CheckConstraint("type IN ('credit', 'debit')", name="ck_transaction_type"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name="ck_transaction_status",
        ),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index("idx_transactions_user_created", "transactions", ["user_id", "created_at"])
    op.create_index(
        "idx_transactions_payment_id",
        "transactions",
        ["payment_id"],
        postgresql_where=sa.text("payment_id IS NOT NULL"),
    )

    # ========================================================================
    # Generations
    # ========================================================================
    op.create_table(
        "image_generations",
        *_generation_columns(),
        sa.Column("size", sa.String(32), nullable=True),
        sa.CheckConstraint("cost >= 0", name="ck_image_generation_cost_non_negative"),
        sa.CheckConstraint(
            "status IN ('pending', 'generating', 'completed', 'failed')",
            name="ck_image_generation_status",
        ),
    )
    op.create_index("ix_image_generations_user_id", "image_generations", ["user_id"])
    op.create_index("idx_image_generations_user_created", "image_generations", ["user_id", "created_at"])
    op.create_index("idx_image_generations_status", "image_generations", ["status"])

    op.create_table(
        "tts_generations",
        *_generation_columns(),
        sa.CheckConstraint("cost >= 0", name="ck_tts_generation_cost_non_negative"),
        sa.CheckConstraint(
            "status IN ('pending', 'generating', 'completed', 'failed')",
            name="ck_tts_generation_status",
        ),
    )
    op.create_index("ix_tts_generations_user_id", "tts_generations", ["user_id"])
    op.create_index("idx_tts_generations_user_created", "tts_generations", ["user_id", "created_at"])
    op.create_index("idx_tts_generations_status", "tts_generations", ["status"])

    # ========================================================================
    # API tokens
    # ========================================================================
    op.create_table(
        "api_tokens",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("token", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("token", name="uq_api_tokens_token"),
    )
    op.create_index("ix_api_tokens_user_id", "api_tokens", ["user_id"])

    # ========================================================================
    # Seed prices
    # ========================================================================
    op.bulk_insert(
        pricing_settings,
        [
            {"size_key": size_key, "price": price, "description": description}
            for size_key, price, description in DEFAULT_IMAGE_PRICES
        ],
    )
    op.bulk_insert(
        tts_pricing_settings,
        [{"price": DEFAULT_SPEECH_PRICE[0], "description": DEFAULT_SPEECH_PRICE[1]}],
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("api_tokens")
    op.drop_table("tts_generations")
    op.drop_table("image_generations")
    op.drop_table("transactions")
    op.drop_table("user_balances")
    op.drop_table("tts_pricing_settings")
    op.drop_table("pricing_settings")
