"""initial schema: profiles, sessions, messages, prompt templates, usage logs

Revision ID: 4f2a9c1d7e3b
Revises: 
Create Date: 2026-10-19 09:12:44.201733

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4f2a9c1d7e3b'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_plan = sa.Enum("FREE", "PRO", "ELITE", name="subscriptionplan")
_agent_type = sa.Enum("ARQUITECTO_DECISIONES", name="agenttype")
_status = sa.Enum("ACTIVE", "COMPLETED", "ABANDONED", "ERROR", name="sessionstatus")
_role = sa.Enum("SYSTEM", "USER", "ASSISTANT", name="messagerole")
_event_type = sa.Enum("FORM_COMPLETED", "CHAT_MESSAGE", name="usageeventtype")


def upgrade() -> None:
    op.create_table(
        "user_profiles",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("avatar_url", sa.String(1000), nullable=True),
        sa.Column("subscription_plan", _plan, nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_usage_reset", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_user_profiles_email", "user_profiles", ["email"], unique=True)
    op.create_index("ix_user_profiles_created_at", "user_profiles", ["created_at"])

    op.create_table(
        "prompt_templates",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("agent_type", sa.String(100), nullable=False),
        sa.Column("version", sa.String(50), nullable=False),
        sa.Column("template_content", sa.Text(), nullable=False),
        sa.Column("variables", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("performance_score", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_prompt_templates_agent_type", "prompt_templates", ["agent_type"])
    op.create_index("ix_prompt_templates_created_at", "prompt_templates", ["created_at"])

    op.create_table(
        "agent_sessions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("user_profiles.id"), nullable=False),
        sa.Column("agent_type", _agent_type, nullable=False),
        sa.Column("form_data", sa.JSON(), nullable=False),
        sa.Column("generated_prompt", sa.Text(), nullable=True),
        sa.Column("prompt_template_id", sa.Uuid(), sa.ForeignKey("prompt_templates.id"), nullable=True),
        sa.Column("status", _status, nullable=False),
        sa.Column("session_metadata", sa.JSON(), nullable=True),
        sa.Column("cost_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_agent_sessions_user_id", "agent_sessions", ["user_id"])
    op.create_index("ix_agent_sessions_created_at", "agent_sessions", ["created_at"])

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("session_id", sa.Uuid(), sa.ForeignKey("agent_sessions.id"), nullable=False),
        sa.Column("role", _role, nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("turn_index", sa.Integer(), nullable=False),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_chat_messages_session_id", "chat_messages", ["session_id"])
    op.create_index("ix_chat_messages_created_at", "chat_messages", ["created_at"])

    op.create_table(
        "usage_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("user_profiles.id"), nullable=False),
        sa.Column("session_id", sa.Uuid(), sa.ForeignKey("agent_sessions.id"), nullable=True),
        sa.Column("message_id", sa.Uuid(), nullable=True, unique=True),
        sa.Column("event_type", _event_type, nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=True),
        sa.Column("cost_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_usage_logs_user_id", "usage_logs", ["user_id"])
    op.create_index("ix_usage_logs_session_id", "usage_logs", ["session_id"])
    op.create_index("ix_usage_logs_created_at", "usage_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("usage_logs")
    op.drop_table("chat_messages")
    op.drop_table("agent_sessions")
    op.drop_table("prompt_templates")
    op.drop_table("user_profiles")
    for enum in (_event_type, _role, _status, _agent_type, _plan):
        enum.drop(op.get_bind(), checkfirst=True)
