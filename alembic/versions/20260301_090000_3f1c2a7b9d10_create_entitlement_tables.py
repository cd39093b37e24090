"""Create entitlement tables

Creates users, user_entitlements, entitlement_events and trial_history.
trial_history has no foreign key so it survives account deletion.

Revision ID: 3f1c2a7b9d10
Revises:
Create Date: 2026-03-01 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f1c2a7b9d10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

membership_status = postgresql.ENUM("demo", "trial", "premium", name="membership_status", create_type=False)
product_tier = postgresql.ENUM("monthly", "annual", "lifetime", name="product_tier", create_type=False)
purchase_platform = postgresql.ENUM("ios", "android", name="purchase_platform", create_type=False)
event_source = postgresql.ENUM(
    "validation",
    "play_store_notification",
    "app_store_notification",
    name="entitlement_event_source",
    create_type=False,
)

ENUMS = (membership_status, product_tier, purchase_platform, event_source)


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    # =========================================================================
    # users
    # =========================================================================
    op.create_table(
        "users",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # =========================================================================
    # user_entitlements
    # =========================================================================
    op.create_table(
        "user_entitlements",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("membership_status", membership_status, nullable=False),
        sa.Column("is_premium", sa.Boolean(), nullable=False),
        sa.Column("is_lifetime", sa.Boolean(), nullable=False),
        sa.Column("subscription_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renewing", sa.Boolean(), nullable=False),
        sa.Column("product_id", product_tier, nullable=True),
        sa.Column("has_used_trial", sa.Boolean(), nullable=False),
        sa.Column("last_validated", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("platform", purchase_platform, nullable=True),
        sa.Column("android_purchase_token", sa.String(length=512), nullable=True),
        sa.Column("app_account_token", sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index(
        "ix_user_entitlements_android_purchase_token",
        "user_entitlements",
        ["android_purchase_token"],
    )
    op.create_index(
        "ix_user_entitlements_app_account_token",
        "user_entitlements",
        ["app_account_token"],
    )

    # =========================================================================
    # entitlement_events
    # =========================================================================
    op.create_table(
        "entitlement_events",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source", event_source, nullable=False),
        sa.Column("notification_type", sa.String(length=64), nullable=True),
        sa.Column("previous_status", sa.String(length=20), nullable=True),
        sa.Column("new_status", sa.String(length=20), nullable=False),
        sa.Column("product_id", sa.String(length=20), nullable=True),
        sa.Column("subscription_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user_entitlements.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("idx_entitlement_events_user", "entitlement_events", ["user_id", "created_at"])
    op.create_index("idx_entitlement_events_source", "entitlement_events", ["source", "created_at"])

    # =========================================================================
    # trial_history (no foreign key to users)
    # =========================================================================
    op.create_table(
        "trial_history",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("identity_hash", sa.String(length=64), nullable=True),
        sa.Column("first_trial_date", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_trial_history_identity_hash", "trial_history", ["identity_hash"])


def downgrade() -> None:
    op.drop_index("ix_trial_history_identity_hash", table_name="trial_history")
    op.drop_table("trial_history")

    op.drop_index("idx_entitlement_events_source", table_name="entitlement_events")
    op.drop_index("idx_entitlement_events_user", table_name="entitlement_events")
    op.drop_table("entitlement_events")

    op.drop_index("ix_user_entitlements_app_account_token", table_name="user_entitlements")
    op.drop_index("ix_user_entitlements_android_purchase_token", table_name="user_entitlements")
    op.drop_table("user_entitlements")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
