"""create_gateway_tables

Revision ID: 5e1a0c7d9b21
Revises:
Create Date: 2026-10-18 10:02:11.418330

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "5e1a0c7d9b21"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ban_table(name: str, key: str, key_length: int) -> None:
    op.create_table(
        name,
        sa.Column(key, sa.String(length=key_length), primary_key=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("banned_by", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("banned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def upgrade() -> None:
    op.create_table(
        "usage_limits",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("limit_key", sa.String(length=255), nullable=False),
        sa.Column("voice_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("text_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("owns_pooled_credential", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("limit_key", name="uq_usage_limits_limit_key"),
    )
    op.create_index("ix_usage_limits_reset_at", "usage_limits", ["reset_at"])

    op.create_table(
        "user_limits",
        sa.Column("user_id", sa.String(length=255), primary_key=True),
        sa.Column("custom_voice_limit", sa.Integer(), nullable=True),
        sa.Column("custom_text_limit", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "global_settings",
        sa.Column("key", sa.String(length=100), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.bulk_insert(
        sa.table(
            "global_settings",
            sa.column("key", sa.String),
            sa.column("value", sa.Text),
            sa.column("description", sa.Text),
        ),
        [
            {"key": "default_voice_limit", "value": "3", "description": "Voice requests per identity per day"},
            {"key": "default_text_limit", "value": "100", "description": "Text requests per identity per day"},
        ],
    )

    _ban_table("banned_users", "user_id", 255)
    _ban_table("banned_devices", "device_id", 255)
    _ban_table("banned_ips", "ip_address", 64)

    op.create_table(
        "banned_access_attempts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("device_id", sa.String(length=255), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("ban_type", sa.String(length=20), nullable=False),
        sa.Column("request_details", postgresql.JSONB(), nullable=True),
        sa.Column("attempted_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_banned_access_attempts_user_id", "banned_access_attempts", ["user_id"])

    op.create_table(
        "device_tracking",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("device_id", sa.String(length=255), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("first_seen", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_seen", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "device_id", name="uq_device_tracking_user_device"),
    )
    op.create_index("ix_device_tracking_user_id", "device_tracking", ["user_id"])

    op.create_table(
        "ai_interactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("request_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("session_id", sa.String(length=255), nullable=True),
        sa.Column("coach_id", sa.String(length=255), nullable=True),
        sa.Column("feature_name", sa.String(length=100), nullable=True),
        sa.Column("provider", sa.String(length=30), nullable=False),
        sa.Column("model", sa.String(length=100), nullable=True),
        sa.Column("prompt_type", sa.String(length=100), nullable=True),
        sa.Column("interaction_type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("message_length", sa.Integer(), nullable=True),
        sa.Column("response_length", sa.Integer(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("stream_aborted", sa.Boolean(), server_default=sa.false()),
        sa.Column("error_code", sa.String(length=50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("stack_trace", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_ai_interactions_request_id", "ai_interactions", ["request_id"])
    op.create_index("ix_ai_interactions_user_id", "ai_interactions", ["user_id"])
    op.create_index("ix_ai_interactions_session_id", "ai_interactions", ["session_id"])
    op.create_index("ix_ai_interactions_prompt_type", "ai_interactions", ["prompt_type"])
    op.create_index("ix_ai_interactions_created_at", "ai_interactions", ["created_at"])

    op.create_table(
        "credential_usage",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("key_hash", sa.String(length=64), nullable=False),
        sa.Column("short_key", sa.String(length=40), nullable=False),
        sa.Column("character_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("character_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remaining_characters", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_over_limit", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_near_limit", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("next_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_checked", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("key_hash", name="uq_credential_usage_key_hash"),
    )


def downgrade() -> None:
    op.drop_table("credential_usage")
    op.drop_table("ai_interactions")
    op.drop_table("device_tracking")
    op.drop_table("banned_access_attempts")
    op.drop_table("banned_ips")
    op.drop_table("banned_devices")
    op.drop_table("banned_users")
    op.drop_table("global_settings")
    op.drop_table("user_limits")
    op.drop_table("usage_limits")
