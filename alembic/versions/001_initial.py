"""Initial directory schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("display_name", sa.String(300), nullable=False),
        sa.Column("email", sa.String(320), nullable=False, server_default=""),
        sa.Column("role", sa.String(30), nullable=False, server_default="none"),
        sa.Column("remote_constituent_id", sa.String(64), nullable=True),
        sa.Column("membership_type", sa.String(200), nullable=True),
        sa.Column("membership_start", sa.Date(), nullable=True),
        sa.Column("renewal_date", sa.Date(), nullable=True),
        sa.Column("membership_state", sa.String(30), nullable=False, server_default="unknown"),
        sa.Column("payment_method", sa.String(20), nullable=False, server_default="online"),
        sa.Column("parent_account_id", sa.String(64), nullable=True),
        sa.Column("profile", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_accounts_remote_constituent_id", "accounts", ["remote_constituent_id"])
    op.create_index("ix_accounts_renewal_date", "accounts", ["renewal_date"])
    op.create_index("ix_accounts_parent_account_id", "accounts", ["parent_account_id"])

    op.create_table(
        "payment_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("gift_id", sa.String(64), nullable=False),
        sa.Column("constituent_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("order_id", name="uq_payment_records_order_id"),
    )

    op.create_table(
        "family_slot_ledgers",
        sa.Column("owner_id", sa.String(64), primary_key=True),
        sa.Column("total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("used >= 0", name="ck_family_slots_used_non_negative"),
        sa.CheckConstraint("total >= 0", name="ck_family_slots_total_non_negative"),
    )

    op.create_table(
        "notification_markers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("renewal_date", sa.Date(), nullable=False),
        sa.Column("day_offset", sa.Integer(), nullable=False),
        sa.Column("template_id", sa.String(50), nullable=False),
        sa.Column("outcome", sa.String(30), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "account_id", "renewal_date", "day_offset", name="uq_notification_marker"
        ),
    )
    op.create_index("ix_notification_markers_account_id", "notification_markers", ["account_id"])

    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "sync_failures",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=True),
        sa.Column("order_id", sa.String(64), nullable=True),
        sa.Column("step", sa.String(50), nullable=False),
        sa.Column("error_type", sa.String(100), nullable=False),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_failures_account_id", "sync_failures", ["account_id"])
    op.create_index("ix_sync_failures_order_id", "sync_failures", ["order_id"])


def downgrade() -> None:
    op.drop_table("sync_failures")
    op.drop_table("settings")
    op.drop_table("notification_markers")
    op.drop_table("family_slot_ledgers")
    op.drop_table("payment_records")
    op.drop_table("accounts")
