"""Initial schema for deals, client mappings, owner aliases and deal tags.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "deals",
        sa.Column("deal_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("piece_cid", sa.Text(), nullable=False),
        sa.Column("piece_size", sa.Numeric(78, 0), nullable=False),
        sa.Column("verified_deal", sa.Boolean(), nullable=False),
        sa.Column("client", sa.Text(), nullable=False),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.Column("start_epoch", sa.Integer(), nullable=False),
        sa.Column("end_epoch", sa.Integer(), nullable=False),
        sa.Column("storage_price_per_epoch", sa.Numeric(78, 0), nullable=False),
        sa.Column("provider_collateral", sa.Numeric(78, 0), nullable=False),
        sa.Column("client_collateral", sa.Numeric(78, 0), nullable=False),
        sa.Column("sector_start_epoch", sa.Integer(), nullable=False),
        sa.Column("last_updated_epoch", sa.Integer(), nullable=False),
        sa.Column("slash_epoch", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("deal_id"),
    )
    op.create_index("idx_deals_piece_cid", "deals", ["piece_cid"])
    op.create_index("idx_deals_client", "deals", ["client"])
    op.create_index("idx_deals_provider", "deals", ["provider"])

    op.create_table(
        "client_mappings",
        sa.Column("client", sa.Text(), nullable=False),
        sa.Column("client_address", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("client"),
    )

    op.create_table(
        "owner_aliases",
        sa.Column("client_address", sa.Text(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("client_address"),
    )
    op.create_index("idx_owner_aliases_owner_id", "owner_aliases", ["owner_id"])

    op.create_table(
        "deal_tags",
        sa.Column("deal_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("cid_overreplicated", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("cid_shared", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("cid_unique", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("sector_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("piece_size", sa.Numeric(78, 0), nullable=True),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.deal_id"]),
        sa.PrimaryKeyConstraint("deal_id"),
    )


def downgrade() -> None:
    op.drop_table("deal_tags")
    op.drop_index("idx_owner_aliases_owner_id", table_name="owner_aliases")
    op.drop_table("owner_aliases")
    op.drop_table("client_mappings")
    op.drop_index("idx_deals_provider", table_name="deals")
    op.drop_index("idx_deals_client", table_name="deals")
    op.drop_index("idx_deals_piece_cid", table_name="deals")
    op.drop_table("deals")
