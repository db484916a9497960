"""discount sets, codes, batches and order attribution

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "merchant_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("merchant_id", sa.String(length=255), nullable=False),
        sa.Column("access_token", sa.String(length=255), nullable=False),
        sa.Column("scope", sa.String(length=1000), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_merchant_sessions_merchant_id", "merchant_sessions", ["merchant_id"], unique=True)

    op.create_table(
        "discount_sets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("merchant_id", sa.String(length=255), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("prefix_code", sa.String(length=40), nullable=False, server_default=""),
        sa.Column("code_length", sa.Integer(), nullable=False, server_default="8"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discount_type", sa.String(length=20), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("target_selection", sa.String(length=20), nullable=False),
        sa.Column("entitled_collection_ids", sa.JSON(), nullable=True),
        sa.Column("entitled_product_ids", sa.JSON(), nullable=True),
        sa.Column("minimum_requirement", sa.String(length=20), nullable=False),
        sa.Column("minimum_subtotal", sa.Numeric(10, 2), nullable=True),
        sa.Column("minimum_quantity", sa.Integer(), nullable=True),
        sa.Column("allocation_limit", sa.Integer(), nullable=True),
        sa.Column("customer_selection", sa.String(length=40), nullable=False, server_default="all"),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("promotion_rule_id", sa.String(length=64), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revenue", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("replenish_epoch", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("button_style_type", sa.String(length=40), nullable=False, server_default="sticker"),
        sa.Column("standard_btn_bg_color", sa.String(length=40), nullable=True),
        sa.Column("standard_btn_border_color", sa.String(length=40), nullable=True),
        sa.Column("standard_btn_text", sa.String(length=255), nullable=True),
        sa.Column("standard_btn_text_color", sa.String(length=40), nullable=True),
        sa.Column("success_btn_bg_color", sa.String(length=40), nullable=True),
        sa.Column("success_btn_border_color", sa.String(length=40), nullable=True),
        sa.Column("success_btn_text", sa.String(length=255), nullable=True),
        sa.Column("success_btn_text_color", sa.String(length=40), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_discount_sets_merchant_id", "discount_sets", ["merchant_id"], unique=False)
    op.create_index("ix_discount_sets_deleted_at", "discount_sets", ["deleted_at"], unique=False)
    op.create_index("ix_discount_sets_promotion_rule_id", "discount_sets", ["promotion_rule_id"], unique=False)

    op.create_table(
        "code_batches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("set_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("discount_sets.id"), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("requested_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sync_status", sa.String(length=20), nullable=False),
        sa.Column("sync_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_code_batches_set_id", "code_batches", ["set_id"], unique=False)
    op.create_index("ix_code_batches_sync_status", "code_batches", ["sync_status"], unique=False)

    op.create_table(
        "discount_codes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("merchant_id", sa.String(length=255), nullable=False),
        sa.Column("set_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("discount_sets.id"), nullable=False),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("code_batches.id"), nullable=False),
        sa.Column("code", sa.String(length=80), nullable=False),
        sa.Column("revealed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("revealed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("use_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usable_qty", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("revenue", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("merchant_id", "code", name="uq_discount_codes_merchant_code"),
    )
    op.create_index("ix_discount_codes_set_id", "discount_codes", ["set_id"], unique=False)
    op.create_index("ix_discount_codes_batch_id", "discount_codes", ["batch_id"], unique=False)
    op.create_index("ix_discount_codes_code", "discount_codes", ["code"], unique=False)

    op.create_table(
        "order_attributions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("merchant_id", sa.String(length=255), nullable=False),
        sa.Column("order_number", sa.String(length=64), nullable=True),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("correlation_value", sa.String(length=255), nullable=True),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("line_items_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credited_codes", sa.JSON(), nullable=True),
        sa.Column("skipped_codes", sa.JSON(), nullable=True),
        sa.Column("failed_codes", sa.JSON(), nullable=True),
        sa.Column("order_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credited_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("order_id", "merchant_id", name="uq_order_attributions_order_merchant"),
    )
    op.create_index("ix_order_attributions_merchant_id", "order_attributions", ["merchant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_order_attributions_merchant_id", table_name="order_attributions")
    op.drop_table("order_attributions")
    op.drop_index("ix_discount_codes_code", table_name="discount_codes")
    op.drop_index("ix_discount_codes_batch_id", table_name="discount_codes")
    op.drop_index("ix_discount_codes_set_id", table_name="discount_codes")
    op.drop_table("discount_codes")
    op.drop_index("ix_code_batches_sync_status", table_name="code_batches")
    op.drop_index("ix_code_batches_set_id", table_name="code_batches")
    op.drop_table("code_batches")
    op.drop_index("ix_discount_sets_promotion_rule_id", table_name="discount_sets")
    op.drop_index("ix_discount_sets_deleted_at", table_name="discount_sets")
    op.drop_index("ix_discount_sets_merchant_id", table_name="discount_sets")
    op.drop_table("discount_sets")
    op.drop_index("ix_merchant_sessions_merchant_id", table_name="merchant_sessions")
    op.drop_table("merchant_sessions")
