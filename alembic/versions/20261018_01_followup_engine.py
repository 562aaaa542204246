"""create follow-up engine tables

Revision ID: 20261018_01
Revises: 
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "followup_connections",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("host", sa.String(length=256), nullable=True),
        sa.Column("port", sa.Integer(), nullable=True),
        sa.Column("database", sa.String(length=512), nullable=False),
        sa.Column("username", sa.String(length=128), nullable=True),
        sa.Column("password_encrypted", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="ACTIVE"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_tested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_followup_connections_tenant_id", "followup_connections", ["tenant_id"])
    op.create_index("ix_followup_connections_tenant_name", "followup_connections", ["tenant_id", "name"])

    op.create_table(
        "followup_mappings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column(
            "connection_id",
            sa.String(length=36),
            sa.ForeignKey("followup_connections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("resource", sa.String(length=256), nullable=False),
        sa.Column("fields", sa.JSON(), nullable=False),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_followup_mappings_tenant_id", "followup_mappings", ["tenant_id"])
    op.create_index("ix_followup_mappings_connection_id", "followup_mappings", ["connection_id"])

    op.create_table(
        "followup_rules",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column(
            "mapping_id",
            sa.String(length=36),
            sa.ForeignKey("followup_mappings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("schedule_cron", sa.String(length=64), nullable=False, server_default="0 */3 * * *"),
        sa.Column("condition", sa.JSON(), nullable=False),
        sa.Column("action", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_followup_rules_tenant_id", "followup_rules", ["tenant_id"])
    op.create_index("ix_followup_rules_mapping_id", "followup_rules", ["mapping_id"])
    op.create_index("ix_followup_rules_active_tenant", "followup_rules", ["active", "tenant_id"])

    op.create_table(
        "followup_deliveries",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "rule_id",
            sa.String(length=36),
            sa.ForeignKey("followup_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("entity_pk", sa.String(length=256), nullable=True),
        sa.Column("contact", sa.String(length=256), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("dedupe_key", sa.String(length=512), nullable=False),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=512), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_followup_deliveries_rule_id", "followup_deliveries", ["rule_id"])
    op.create_index("ix_followup_deliveries_idempotency_key", "followup_deliveries", ["idempotency_key"])
    op.create_index("ix_followup_deliveries_rule_status", "followup_deliveries", ["rule_id", "status"])
    # Only pending and sent rows hold a dedupe slot; failed rows may be retried.
    op.create_index(
        "uq_followup_deliveries_dedupe_active",
        "followup_deliveries",
        ["dedupe_key"],
        unique=True,
        sqlite_where=sa.text("status != 'failed'"),
        postgresql_where=sa.text("status != 'failed'"),
    )


def downgrade() -> None:
    op.drop_index("uq_followup_deliveries_dedupe_active", table_name="followup_deliveries")
    op.drop_index("ix_followup_deliveries_rule_status", table_name="followup_deliveries")
    op.drop_index("ix_followup_deliveries_idempotency_key", table_name="followup_deliveries")
    op.drop_index("ix_followup_deliveries_rule_id", table_name="followup_deliveries")
    op.drop_table("followup_deliveries")
    op.drop_index("ix_followup_rules_active_tenant", table_name="followup_rules")
    op.drop_index("ix_followup_rules_mapping_id", table_name="followup_rules")
    op.drop_index("ix_followup_rules_tenant_id", table_name="followup_rules")
    op.drop_table("followup_rules")
    op.drop_index("ix_followup_mappings_connection_id", table_name="followup_mappings")
    op.drop_index("ix_followup_mappings_tenant_id", table_name="followup_mappings")
    op.drop_table("followup_mappings")
    op.drop_index("ix_followup_connections_tenant_name", table_name="followup_connections")
    op.drop_index("ix_followup_connections_tenant_id", table_name="followup_connections")
    op.drop_table("followup_connections")
