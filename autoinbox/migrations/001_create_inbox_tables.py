"""Create the inbox tables: messages, rules, rule applications, queue, accounts."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001_create_inbox_tables"
down_revision = None
branch_labels = None
depends_on = None


_UUID = postgresql.UUID(as_uuid=True)


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    """Create inbox tables and the indexes that enforce idempotency."""

    op.create_table(
        "messages",
        sa.Column(
            "id",
            _UUID,
            primary_key=True,
            nullable=False,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("workspace_id", sa.Text(), nullable=False),
        sa.Column("agent_id", sa.Text(), nullable=True),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("external_id", sa.Text(), nullable=False),
        sa.Column("conversation_id", sa.Text(), nullable=False),
        sa.Column("sender_id", sa.Text(), nullable=False),
        sa.Column("sender_name", sa.Text(), nullable=True),
        sa.Column("text", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("post_id", sa.Text(), nullable=True),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column(
            "status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'new'"),
        ),
        sa.Column("ai_response", sa.Text(), nullable=True),
        sa.Column("ai_confidence", sa.Numeric(3, 2), nullable=True),
        sa.Column("assigned_employee_id", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('new', 'in_progress', 'queued', 'escalated', 'completed')",
            name="ck_messages_status",
        ),
        sa.CheckConstraint(
            "ai_confidence IS NULL OR (ai_confidence >= 0 AND ai_confidence <= 1)",
            name="ck_messages_ai_confidence",
        ),
    )
    op.create_index(
        "ix_messages_workspace_channel_external_unique",
        "messages",
        ["workspace_id", "channel", "external_id"],
        unique=True,
    )
    op.create_index(
        "ix_messages_workspace_status_created",
        "messages",
        ["workspace_id", "status", "created_at"],
    )
    op.create_index(
        "ix_messages_workspace_conversation",
        "messages",
        ["workspace_id", "conversation_id"],
    )

    op.create_table(
        "automation_rules",
        sa.Column("id", sa.Text(), primary_key=True, nullable=False),
        sa.Column("workspace_id", sa.Text(), nullable=False),
        sa.Column("agent_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("trigger_type", sa.String(length=16), nullable=False),
        sa.Column(
            "trigger_words",
            postgresql.ARRAY(sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column(
            "trigger_platforms",
            postgresql.ARRAY(sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("private_reply_template", sa.Text(), nullable=True),
        sa.Column("public_reply_template", sa.Text(), nullable=True),
        sa.Column(
            "auto_skip_replies", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "delay_seconds", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("webhook_url", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint("delay_seconds >= 0", name="ck_automation_rules_delay"),
    )
    op.create_index(
        "ix_automation_rules_workspace_agent_enabled",
        "automation_rules",
        ["workspace_id", "agent_id", "enabled"],
    )

    op.create_table(
        "rule_applications",
        sa.Column(
            "message_id",
            _UUID,
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("rule_id", sa.Text(), nullable=False),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("workspace_id", sa.Text(), nullable=False),
        sa.Column("conversation_id", sa.Text(), nullable=False),
        sa.Column(
            "outcome",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint(
            "message_id", "rule_id", "action_type", name="pk_rule_applications"
        ),
    )
    op.create_index(
        "ix_rule_applications_workspace_conversation",
        "rule_applications",
        ["workspace_id", "conversation_id"],
    )

    op.create_table(
        "escalation_queue",
        sa.Column(
            "id",
            _UUID,
            primary_key=True,
            nullable=False,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "message_id",
            _UUID,
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("workspace_id", sa.Text(), nullable=False),
        sa.Column("reason", sa.String(length=32), nullable=False),
        sa.Column("assigned_employee_id", sa.Text(), nullable=True),
        _timestamp("claimed_at", nullable=True),
        sa.Column("offered_to", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("closed_at", nullable=True),
    )
    op.create_index(
        "ix_escalation_queue_open_message_unique",
        "escalation_queue",
        ["message_id"],
        unique=True,
        postgresql_where=sa.text("closed_at IS NULL"),
    )
    op.create_index(
        "ix_escalation_queue_workspace_created",
        "escalation_queue",
        ["workspace_id", "created_at"],
    )

    op.create_table(
        "channel_accounts",
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("account_id", sa.Text(), nullable=False),
        sa.Column("workspace_id", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("channel", "account_id", name="pk_channel_accounts"),
    )


def downgrade() -> None:
    """Drop inbox tables and their indexes."""

    op.drop_table("channel_accounts")

    op.drop_index("ix_escalation_queue_workspace_created", table_name="escalation_queue")
    op.drop_index("ix_escalation_queue_open_message_unique", table_name="escalation_queue")
    op.drop_table("escalation_queue")

    op.drop_index(
        "ix_rule_applications_workspace_conversation", table_name="rule_applications"
    )
    op.drop_table("rule_applications")

    op.drop_index(
        "ix_automation_rules_workspace_agent_enabled", table_name="automation_rules"
    )
    op.drop_table("automation_rules")

    op.drop_index("ix_messages_workspace_conversation", table_name="messages")
    op.drop_index("ix_messages_workspace_status_created", table_name="messages")
    op.drop_index("ix_messages_workspace_channel_external_unique", table_name="messages")
    op.drop_table("messages")
