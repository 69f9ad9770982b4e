"""Inventory core: items, per-location levels, alerts, transaction ledger, forecasts

Revision ID: 20261019_inventory_core
Revises:
Create Date: 2026-10-19 09:00:00.000000

This migration adds:
1. inventory_items (catalog with reorder defaults)
2. inventory_levels (quantities per item and location, version-locked)
3. stock_alerts (at most one open alert per level)
4. inventory_transactions (ledger with approval lifecycle)
5. demand_forecasts (per-day forecast batches)
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_inventory_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. ITEMS
    # ==========================================================================
    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("barcode", sa.String(length=64), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False, server_default="CONSUMABLE"),
        sa.Column("purchase_cost_cents", sa.Integer(), nullable=True),
        sa.Column("current_value_cents", sa.Integer(), nullable=True),
        sa.Column("depreciation_rate_bps", sa.Integer(), nullable=True),
        sa.Column("useful_life_months", sa.Integer(), nullable=True),
        sa.Column("reorder_point", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reorder_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_quantity", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("condition", sa.String(length=16), nullable=False, server_default="NEW"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.CheckConstraint("reorder_point >= 0", name="ck_items_reorder_point_nonneg"),
        sa.CheckConstraint("reorder_quantity >= 0", name="ck_items_reorder_quantity_nonneg"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sku"),
        sa.UniqueConstraint("barcode"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_inventory_items_category", "inventory_items", ["category"], unique=False)
    op.create_index("ix_items_category_active", "inventory_items", ["category", "is_active"], unique=False)

    # ==========================================================================
    # 2. LEVELS
    # ==========================================================================
    op.create_table(
        "inventory_levels",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.String(length=64), nullable=False),
        sa.Column("unit_id", sa.String(length=64), nullable=True),
        sa.Column("room_id", sa.String(length=64), nullable=True),
        sa.Column("location_key", sa.String(length=255), nullable=False),
        sa.Column("location_name", sa.String(length=255), nullable=True),
        sa.Column("location_path", sa.String(length=512), nullable=False),
        sa.Column("quantity_on_hand", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quantity_reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quantity_available", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("min_quantity", sa.Integer(), nullable=True),
        sa.Column("max_quantity", sa.Integer(), nullable=True),
        sa.Column("reorder_point", sa.Integer(), nullable=True),
        sa.Column("alert_level", sa.String(length=16), nullable=False, server_default="NORMAL"),
        sa.Column("last_counted_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_counted_by", sa.String(length=64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.CheckConstraint("quantity_on_hand >= 0", name="ck_levels_on_hand_nonneg"),
        sa.CheckConstraint("quantity_reserved >= 0", name="ck_levels_reserved_nonneg"),
        sa.CheckConstraint("quantity_reserved <= quantity_on_hand", name="ck_levels_reserved_le_on_hand"),
        sa.ForeignKeyConstraint(["item_id"], ["inventory_items.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("item_id", "location_key", name="uq_levels_item_location"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_inventory_levels_item_id", "inventory_levels", ["item_id"], unique=False)
    op.create_index("ix_inventory_levels_property_id", "inventory_levels", ["property_id"], unique=False)
    op.create_index("ix_inventory_levels_alert_level", "inventory_levels", ["alert_level"], unique=False)
    op.create_index("ix_levels_property_alert", "inventory_levels", ["property_id", "alert_level"], unique=False)

    # ==========================================================================
    # 3. ALERTS
    # ==========================================================================
    op.create_table(
        "stock_alerts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("level_id", sa.Integer(), nullable=False),
        sa.Column("alert_type", sa.String(length=16), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("message", sa.String(length=512), nullable=False),
        sa.Column("current_quantity", sa.Integer(), nullable=False),
        sa.Column("reorder_point", sa.Integer(), nullable=True),
        sa.Column("is_resolved", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["inventory_items.id"]),
        sa.ForeignKeyConstraint(["level_id"], ["inventory_levels.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_stock_alerts_item_id", "stock_alerts", ["item_id"], unique=False)
    op.create_index("ix_stock_alerts_level_id", "stock_alerts", ["level_id"], unique=False)
    op.create_index(
        "uq_alerts_open_per_level",
        "stock_alerts",
        ["item_id", "level_id"],
        unique=True,
        sqlite_where=sa.text("is_resolved = 0"),
        postgresql_where=sa.text("is_resolved = false"),
    )

    # ==========================================================================
    # 4. TRANSACTIONS
    # ==========================================================================
    op.create_table(
        "inventory_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("from_property_id", sa.String(length=64), nullable=True),
        sa.Column("from_unit_id", sa.String(length=64), nullable=True),
        sa.Column("from_room_id", sa.String(length=64), nullable=True),
        sa.Column("from_location", sa.String(length=512), nullable=True),
        sa.Column("to_property_id", sa.String(length=64), nullable=True),
        sa.Column("to_unit_id", sa.String(length=64), nullable=True),
        sa.Column("to_room_id", sa.String(length=64), nullable=True),
        sa.Column("to_location", sa.String(length=512), nullable=True),
        sa.Column("unit_cost_cents", sa.Integer(), nullable=True),
        sa.Column("total_cost_cents", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("reason_code", sa.String(length=32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("staging_design_id", sa.String(length=64), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("approved_by", sa.String(length=64), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by", sa.String(length=64), nullable=True),
        sa.Column("rejection_reason", sa.String(length=255), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transaction_date", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.CheckConstraint("quantity >= 0", name="ck_txn_quantity_nonneg"),
        sa.ForeignKeyConstraint(["item_id"], ["inventory_items.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("inventory_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_inventory_transactions_type", ["type"], unique=False)
        batch_op.create_index("ix_inventory_transactions_status", ["status"], unique=False)
        batch_op.create_index("ix_inventory_transactions_item_id", ["item_id"], unique=False)
        batch_op.create_index("ix_inventory_transactions_staging_design_id", ["staging_design_id"], unique=False)
        batch_op.create_index("ix_inventory_transactions_transaction_date", ["transaction_date"], unique=False)
        batch_op.create_index("ix_txn_item_type_status_date", ["item_id", "type", "status", "transaction_date"], unique=False)
        batch_op.create_index("ix_txn_from_property", ["from_property_id"], unique=False)
        batch_op.create_index("ix_txn_to_property", ["to_property_id"], unique=False)

    # ==========================================================================
    # 5. FORECASTS
    # ==========================================================================
    op.create_table(
        "demand_forecasts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.String(length=64), nullable=True),
        sa.Column("forecast_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("predicted_demand", sa.Float(), nullable=False),
        sa.Column("lower_bound", sa.Float(), nullable=True),
        sa.Column("upper_bound", sa.Float(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("model_version", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["inventory_items.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_forecasts_item_property_period", "demand_forecasts", ["item_id", "property_id", "period_start"], unique=False)
    op.create_index("ix_forecasts_item_property_generated", "demand_forecasts", ["item_id", "property_id", "forecast_date"], unique=False)


def downgrade():
    op.drop_index("ix_forecasts_item_property_generated", table_name="demand_forecasts")
    op.drop_index("ix_forecasts_item_property_period", table_name="demand_forecasts")
    op.drop_table("demand_forecasts")

    op.drop_table("inventory_transactions")

    op.drop_index("uq_alerts_open_per_level", table_name="stock_alerts")
    op.drop_index("ix_stock_alerts_level_id", table_name="stock_alerts")
    op.drop_index("ix_stock_alerts_item_id", table_name="stock_alerts")
    op.drop_table("stock_alerts")

    op.drop_index("ix_levels_property_alert", table_name="inventory_levels")
    op.drop_index("ix_inventory_levels_alert_level", table_name="inventory_levels")
    op.drop_index("ix_inventory_levels_property_id", table_name="inventory_levels")
    op.drop_index("ix_inventory_levels_item_id", table_name="inventory_levels")
    op.drop_table("inventory_levels")

    op.drop_index("ix_items_category_active", table_name="inventory_items")
    op.drop_index("ix_inventory_items_category", table_name="inventory_items")
    op.drop_table("inventory_items")
