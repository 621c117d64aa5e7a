"""create_auction_tables

Revision ID: 5b7e2d9c1a40
Revises:
Create Date: 2026-10-16

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "5b7e2d9c1a40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "auction_items",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("seller_user_id", sa.UUID(), nullable=False),
        sa.Column("seller_profile_id", sa.UUID(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("images", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("primary_image", sa.Text(), nullable=True),
        sa.Column("medium", sa.Text(), nullable=True),
        sa.Column("dimensions", sa.Text(), nullable=True),
        sa.Column("year_created", sa.Integer(), nullable=True),
        sa.Column("weight_kg", sa.Numeric(8, 2), nullable=True),
        sa.Column("is_original", sa.Boolean(), nullable=True),
        sa.Column("is_framed", sa.Boolean(), nullable=True),
        sa.Column("condition", sa.Text(), nullable=True),
        sa.Column("categories", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("tags", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_auction_items_seller_user_id", "auction_items", ["seller_user_id"])

    op.create_table(
        "auctions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("auction_item_id", sa.UUID(), nullable=False),
        sa.Column("seller_user_id", sa.UUID(), nullable=False),
        sa.Column("start_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("reserve_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_increment", sa.Numeric(12, 2), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("single_bid_only", sa.Boolean(), nullable=False),
        sa.Column("allow_bid_updates", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("winner_user_id", sa.UUID(), nullable=True),
        sa.Column("winning_bid_id", sa.UUID(), nullable=True),
        sa.Column("payment_due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settlement_order_id", sa.UUID(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.UUID(), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.ForeignKeyConstraint(["auction_item_id"], ["auction_items.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_auctions_seller_user_id", "auctions", ["seller_user_id"])
    op.create_index("ix_auctions_status_start_at", "auctions", ["status", "start_at"])
    op.create_index("ix_auctions_status_end_at", "auctions", ["status", "end_at"])

    op.create_table(
        "auction_bids",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("auction_id", sa.UUID(), nullable=False),
        sa.Column("bidder_user_id", sa.UUID(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_withdrawn", sa.Boolean(), nullable=False),
        sa.Column("idempotency_key", sa.Text(), nullable=True),
        sa.Column("user_address_id", sa.UUID(), nullable=True),
        sa.Column("courier", sa.Text(), nullable=True),
        sa.Column("courier_service", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["auction_id"], ["auctions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "auction_id", "bidder_user_id", "idempotency_key",
            name="uq_auction_bids_auction_bidder_idempotency_key",
        ),
    )
    op.create_index("ix_auction_bids_auction_bidder", "auction_bids", ["auction_id", "bidder_user_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("auction_id", sa.UUID(), nullable=True),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("seller_user_id", sa.UUID(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("shipping_cost", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("shipping_method", sa.Text(), nullable=True),
        sa.Column("courier", sa.Text(), nullable=True),
        sa.Column("courier_service", sa.Text(), nullable=True),
        sa.Column("user_address_id", sa.UUID(), nullable=True),
        sa.Column("order_notes", sa.Text(), nullable=True),
        sa.Column("is_auction", sa.Boolean(), nullable=False),
        sa.Column("payment_provider", sa.Text(), nullable=True),
        sa.Column("payment_link_id", sa.Text(), nullable=True),
        sa.Column("payment_reference", sa.Text(), nullable=True),
        sa.Column("checkout_url", sa.Text(), nullable=True),
        sa.Column("payment_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.ForeignKeyConstraint(["auction_id"], ["auctions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_reference"),
    )
    op.create_index("ix_orders_auction_user", "orders", ["auction_id", "user_id"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("order_id", sa.UUID(), nullable=False),
        sa.Column("auction_item_id", sa.UUID(), nullable=True),
        sa.Column("seller_user_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("price_at_purchase", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("item_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("seller_earnings", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["auction_item_id"], ["auction_items.id"]),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "order_status_history",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("order_id", sa.UUID(), nullable=False),
        sa.Column("from_status", sa.Text(), nullable=True),
        sa.Column("to_status", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_order_status_history_order_id", "order_status_history", ["order_id"])

    op.create_table(
        "auction_scheduler_runs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("step", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("auction_scheduler_runs")
    op.drop_index("ix_order_status_history_order_id", table_name="order_status_history")
    op.drop_table("order_status_history")
    op.drop_table("order_items")
    op.drop_index("ix_orders_auction_user", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_auction_bids_auction_bidder", table_name="auction_bids")
    op.drop_table("auction_bids")
    op.drop_index("ix_auctions_status_end_at", table_name="auctions")
    op.drop_index("ix_auctions_status_start_at", table_name="auctions")
    op.drop_index("ix_auctions_seller_user_id", table_name="auctions")
    op.drop_table("auctions")
    op.drop_index("ix_auction_items_seller_user_id", table_name="auction_items")
    op.drop_table("auction_items")
