"""create_catalog_sync_tables

Revision ID: 3f8e2b7c1a90
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "3f8e2b7c1a90"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SYNC_STATUS = sa.Enum("RUNNING", "COMPLETED", "FAILED", "CANCELLED", name="syncstatus")
SYNC_RUN_TYPE = sa.Enum("INCREMENTAL", "FULL", "MANUAL_SKU", name="syncruntype")


def upgrade() -> None:
    op.create_table(
        "catalog_products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("external_id", sa.String(length=100), nullable=False),
        sa.Column("sku", sa.String(length=100), nullable=False),
        sa.Column("upc", sa.String(length=32), nullable=True),
        sa.Column("api_schema_version", sa.String(length=20), nullable=True),
        sa.Column("brand", sa.String(length=100), nullable=False),
        sa.Column("model_number", sa.String(length=100), nullable=True),
        sa.Column("model_name", sa.String(length=300), nullable=False),
        sa.Column("category_slug", sa.String(length=100), nullable=True),
        sa.Column("product_link", sa.Text(), nullable=True),
        sa.Column("msrp", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("weight_kg", sa.Float(), nullable=True),
        sa.Column("width_cm", sa.Float(), nullable=True),
        sa.Column("height_cm", sa.Float(), nullable=True),
        sa.Column("depth_cm", sa.Float(), nullable=True),
        sa.Column("specs", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("images", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("warranty", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("variant_group_id", sa.String(length=100), nullable=True),
        sa.Column("variant_type", sa.String(length=50), nullable=True),
        sa.Column("variant_value", sa.String(length=100), nullable=True),
        sa.Column("buyback_value", sa.Float(), nullable=True),
        sa.Column("is_discontinued", sa.Boolean(), nullable=False),
        sa.Column("discontinued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_stale", sa.Boolean(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_catalog_products_external_id"), "catalog_products", ["external_id"], unique=False)
    op.create_index(op.f("ix_catalog_products_sku"), "catalog_products", ["sku"], unique=True)
    op.create_index(op.f("ix_catalog_products_category_slug"), "catalog_products", ["category_slug"], unique=False)
    op.create_index(
        op.f("ix_catalog_products_variant_group_id"), "catalog_products", ["variant_group_id"], unique=False
    )
    op.create_index(op.f("ix_catalog_products_last_synced_at"), "catalog_products", ["last_synced_at"], unique=False)

    op.create_table(
        "catalog_sync_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("run_type", SYNC_RUN_TYPE, nullable=False),
        sa.Column("triggered_by", sa.String(length=200), nullable=False),
        sa.Column("status", SYNC_STATUS, nullable=False),
        sa.Column("start_cursor", sa.Text(), nullable=True),
        sa.Column("api_cursor", sa.Text(), nullable=True),
        sa.Column("last_successful_sku", sa.String(length=100), nullable=True),
        sa.Column("processed", sa.Integer(), nullable=False),
        sa.Column("created", sa.Integer(), nullable=False),
        sa.Column("updated", sa.Integer(), nullable=False),
        sa.Column("failed", sa.Integer(), nullable=False),
        sa.Column("rate_limit_hits", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_catalog_sync_runs_status"), "catalog_sync_runs", ["status"], unique=False)
    op.create_index(op.f("ix_catalog_sync_runs_completed_at"), "catalog_sync_runs", ["completed_at"], unique=False)
    # At most one running run at a time.
    op.create_index(
        "uq_catalog_sync_runs_one_running",
        "catalog_sync_runs",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'RUNNING'"),
    )

    op.create_table(
        "catalog_sync_sku_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sync_run_id", sa.Integer(), nullable=False),
        sa.Column("external_id", sa.String(length=100), nullable=True),
        sa.Column("sku", sa.String(length=100), nullable=False),
        sa.Column("outcome", sa.String(length=20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("logged_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["sync_run_id"], ["catalog_sync_runs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_catalog_sync_sku_log_sync_run_id"), "catalog_sync_sku_log", ["sync_run_id"], unique=False)
    op.create_index(op.f("ix_catalog_sync_sku_log_sku"), "catalog_sync_sku_log", ["sku"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_catalog_sync_sku_log_sku"), table_name="catalog_sync_sku_log")
    op.drop_index(op.f("ix_catalog_sync_sku_log_sync_run_id"), table_name="catalog_sync_sku_log")
    op.drop_table("catalog_sync_sku_log")

    op.drop_index("uq_catalog_sync_runs_one_running", table_name="catalog_sync_runs")
    op.drop_index(op.f("ix_catalog_sync_runs_completed_at"), table_name="catalog_sync_runs")
    op.drop_index(op.f("ix_catalog_sync_runs_status"), table_name="catalog_sync_runs")
    op.drop_table("catalog_sync_runs")
    SYNC_STATUS.drop(op.get_bind(), checkfirst=True)
    SYNC_RUN_TYPE.drop(op.get_bind(), checkfirst=True)

    op.drop_index(op.f("ix_catalog_products_last_synced_at"), table_name="catalog_products")
    op.drop_index(op.f("ix_catalog_products_variant_group_id"), table_name="catalog_products")
    op.drop_index(op.f("ix_catalog_products_category_slug"), table_name="catalog_products")
    op.drop_index(op.f("ix_catalog_products_sku"), table_name="catalog_products")
    op.drop_index(op.f("ix_catalog_products_external_id"), table_name="catalog_products")
    op.drop_table("catalog_products")
