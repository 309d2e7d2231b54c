"""Create netflow tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- EXCHANGE_ADDRESSES ---
    op.create_table(
        "exchange_addresses",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("exchange_id", sa.Integer, nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("exchange_id", "address", name="uq_exchange_address"),
    )

    # --- BLOCKS ---
    op.create_table(
        "blocks",
        sa.Column("number", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("timestamp", sa.BigInteger, nullable=False),
    )

    # --- ERC20_TRANSFERS ---
    op.create_table(
        "erc20_transfers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("block_number", sa.BigInteger, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("amount_raw", sa.String(78), nullable=False),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("direction", sa.String(8), nullable=False),
        sa.Column("occurred_at", sa.BigInteger, nullable=False),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_erc20_transfer_event"),
    )
    op.create_index("idx_erc20_transfers_block", "erc20_transfers", ["block_number"])
    op.create_index(
        "idx_erc20_transfers_token", "erc20_transfers", ["token_address", "block_number"]
    )

    # --- NET_FLOWS ---
    op.create_table(
        "net_flows",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("exchange_id", sa.Integer, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("token_symbol", sa.String(32), nullable=False),
        sa.Column("token_decimals", sa.Integer, nullable=False),
        sa.Column("cumulative_in", sa.Float, nullable=False, server_default="0"),
        sa.Column("cumulative_out", sa.Float, nullable=False, server_default="0"),
        sa.Column("cumulative_net", sa.Float, nullable=False, server_default="0"),
        sa.Column("last_updated_block", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("exchange_id", "token_address", name="uq_net_flow_key"),
    )

    # --- CHECKPOINTS ---
    op.create_table(
        "checkpoints",
        sa.Column("name", sa.String(64), primary_key=True),
        sa.Column("last_block_seen", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("checkpoints")
    op.drop_table("net_flows")
    op.drop_index("idx_erc20_transfers_token", table_name="erc20_transfers")
    op.drop_index("idx_erc20_transfers_block", table_name="erc20_transfers")
    op.drop_table("erc20_transfers")
    op.drop_table("blocks")
    op.drop_table("exchange_addresses")
