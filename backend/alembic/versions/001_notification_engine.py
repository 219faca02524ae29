"""Notification engine tables

Revision ID: 001
Revises:
Create Date: (run alembic upgrade head)

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "saved_searches",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("owner_email", sa.String(256), nullable=True),
        sa.Column("name", sa.String(256), nullable=False, server_default=""),
        sa.Column("filters", JSON, nullable=False),
        sa.Column("notification_frequency", sa.String(16), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_saved_searches_user_id", "saved_searches", ["user_id"])

    op.create_table(
        "favorites",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("listing_id", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", "listing_id", name="uq_favorites_user_listing"),
    )
    op.create_index("ix_favorites_user_id", "favorites", ["user_id"])
    op.create_index("ix_favorites_listing_id", "favorites", ["listing_id"])

    op.create_table(
        "listing_change_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("listing_id", sa.String(64), nullable=False),
        sa.Column("change_kind", sa.String(32), nullable=False),
        sa.Column("previous_value", sa.String(128), nullable=True),
        sa.Column("current_value", sa.String(128), nullable=True),
        sa.Column("listing_snapshot", JSON, nullable=False),
        sa.Column("details", JSON, nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
    )
    op.create_index("ix_listing_change_events_listing_id", "listing_change_events", ["listing_id"])
    op.create_index("ix_listing_change_events_processed_at", "listing_change_events", ["processed_at"])

    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        *[
            sa.Column(f"{kind}_{channel}", sa.Boolean(), nullable=False, server_default=sa.true())
            for kind in ("new_listing", "price_change", "status_change", "open_house", "saved_search")
            for channel in ("push", "email")
        ],
        sa.Column("quiet_hours_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("quiet_hours_start", sa.String(5), nullable=False, server_default="22:00"),
        sa.Column("quiet_hours_end", sa.String(5), nullable=False, server_default="08:00"),
        sa.Column("quiet_hours_timezone", sa.String(64), nullable=False, server_default="America/New_York"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_notification_preferences_user_id", "notification_preferences", ["user_id"], unique=True)

    op.create_table(
        "device_endpoints",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("device_token", sa.String(256), nullable=False),
        sa.Column("platform", sa.String(16), nullable=False, server_default="ios"),
        sa.Column("is_sandbox", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivation_reason", sa.String(32), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", "device_token", name="uq_device_endpoints_user_token"),
    )
    op.create_index("ix_device_endpoints_user_id", "device_endpoints", ["user_id"])
    op.create_index("ix_device_endpoints_device_token", "device_endpoints", ["device_token"])

    op.create_table(
        "delivery_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("notification_type", sa.String(32), nullable=False),
        sa.Column("listing_id", sa.String(64), nullable=True),
        sa.Column("channel", sa.String(16), nullable=False, server_default="push"),
        sa.Column("title", sa.String(256), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("payload", JSON, nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("reason", sa.String(256), nullable=True),
        sa.Column("dedup_signature", sa.String(255), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dismissed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("channel", "dedup_signature", name="uq_delivery_log_channel_signature"),
    )
    op.create_index("ix_delivery_log_user_id", "delivery_log", ["user_id"])
    op.create_index(
        "ix_delivery_log_user_type_listing", "delivery_log", ["user_id", "notification_type", "listing_id"]
    )

    op.create_table(
        "push_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("delivery_log_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("device_token", sa.String(32), nullable=False),
        sa.Column("notification_type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("apns_status_code", sa.Integer(), nullable=True),
        sa.Column("apns_reason", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("is_sandbox", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("source", sa.String(16), nullable=False, server_default="immediate"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_push_attempts_delivery_log_id", "push_attempts", ["delivery_log_id"])
    op.create_index("ix_push_attempts_user_id", "push_attempts", ["user_id"])

    op.create_table(
        "deferred_notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("notification_type", sa.String(32), nullable=False),
        sa.Column("listing_id", sa.String(64), nullable=True),
        sa.Column("payload", JSON, nullable=False),
        sa.Column("deliver_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_deferred_notifications_user_id", "deferred_notifications", ["user_id"])
    op.create_index(
        "ix_deferred_notifications_status_deliver_after", "deferred_notifications", ["status", "deliver_after"]
    )

    op.create_table(
        "push_retry_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("endpoint_id", sa.Integer(), nullable=True),
        sa.Column("device_token", sa.String(256), nullable=False),
        sa.Column("payload", JSON, nullable=False),
        sa.Column("notification_type", sa.String(32), nullable=False),
        sa.Column("delivery_log_id", sa.Integer(), nullable=True),
        sa.Column("is_sandbox", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_push_retry_queue_user_id", "push_retry_queue", ["user_id"])
    op.create_index("ix_push_retry_queue_status_next_retry_at", "push_retry_queue", ["status", "next_retry_at"])

    op.create_table(
        "badge_counts",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_notification_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_read_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "job_leases",
        sa.Column("name", sa.String(64), primary_key=True),
        sa.Column("holder", sa.String(128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "rate_limit_windows",
        sa.Column("name", sa.String(64), primary_key=True),
        sa.Column("window_start", sa.Float(), nullable=False),
        sa.Column("hits", sa.Integer(), nullable=False, server_default="0"),
    )


def downgrade() -> None:
    op.drop_table("rate_limit_windows")
    op.drop_table("job_leases")
    op.drop_table("badge_counts")
    op.drop_index("ix_push_retry_queue_status_next_retry_at", table_name="push_retry_queue")
    op.drop_index("ix_push_retry_queue_user_id", table_name="push_retry_queue")
    op.drop_table("push_retry_queue")
    op.drop_index("ix_deferred_notifications_status_deliver_after", table_name="deferred_notifications")
    op.drop_index("ix_deferred_notifications_user_id", table_name="deferred_notifications")
    op.drop_table("deferred_notifications")
    op.drop_index("ix_push_attempts_user_id", table_name="push_attempts")
    op.drop_index("ix_push_attempts_delivery_log_id", table_name="push_attempts")
    op.drop_table("push_attempts")
    op.drop_index("ix_delivery_log_user_type_listing", table_name="delivery_log")
    op.drop_index("ix_delivery_log_user_id", table_name="delivery_log")
    op.drop_table("delivery_log")
    op.drop_index("ix_device_endpoints_device_token", table_name="device_endpoints")
    op.drop_index("ix_device_endpoints_user_id", table_name="device_endpoints")
    op.drop_table("device_endpoints")
    op.drop_index("ix_notification_preferences_user_id", table_name="notification_preferences")
    op.drop_table("notification_preferences")
    op.drop_index("ix_listing_change_events_processed_at", table_name="listing_change_events")
    op.drop_index("ix_listing_change_events_listing_id", table_name="listing_change_events")
    op.drop_table("listing_change_events")
    op.drop_index("ix_favorites_listing_id", table_name="favorites")
    op.drop_index("ix_favorites_user_id", table_name="favorites")
    op.drop_table("favorites")
    op.drop_index("ix_saved_searches_user_id", table_name="saved_searches")
    op.drop_table("saved_searches")
