"""Canonical listings, option catalog and listing/option associations.

Revision ID: 0001_canonical_listings
Revises: None
Create Date: 2026-10-19 09:12:00
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_canonical_listings"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "listings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("source_url", sa.Text(), nullable=False),
        sa.Column("vin", sa.String(length=17), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("model", sa.Text(), nullable=True),
        sa.Column("trim", sa.Text(), nullable=True),
        sa.Column("generation", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("mileage", sa.Integer(), nullable=True),
        sa.Column("exterior_color", sa.Text(), nullable=True),
        sa.Column("interior_color", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("options_text", sa.Text(), nullable=True),
        sa.Column("sold_date", sa.Date(), nullable=True),
        sa.Column("scraped_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("provenance", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("source_url", name="uq_listings_source_url"),
        sa.UniqueConstraint("vin", name="uq_listings_vin"),
    )
    op.create_index("ix_listings_model_trim", "listings", ["model", "trim", "generation"])
    op.create_index("ix_listings_sold_date", "listings", ["sold_date"])
    op.create_index("ix_listings_source", "listings", ["source"])

    op.create_table(
        "options",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=True),
        sa.UniqueConstraint("name", name="uq_options_name"),
    )

    op.create_table(
        "listing_options",
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("option_id", sa.Integer(), sa.ForeignKey("options.id", ondelete="CASCADE"), primary_key=True),
    )
    op.create_index("ix_listing_options_option", "listing_options", ["option_id"])


def downgrade() -> None:
    op.drop_index("ix_listing_options_option", table_name="listing_options")
    op.drop_table("listing_options")
    op.drop_table("options")
    op.drop_index("ix_listings_source", table_name="listings")
    op.drop_index("ix_listings_sold_date", table_name="listings")
    op.drop_index("ix_listings_model_trim", table_name="listings")
    op.drop_table("listings")
