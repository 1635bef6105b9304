"""Create capability lease, attention, work item, change event and kind tables.

Revision ID: 3c9e1a7b5d20
Revises:
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from src.constants import DB_SCHEMA

revision = "3c9e1a7b5d20"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "capability_leases",
        sa.Column("instance_id", sa.String(128), primary_key=True),
        sa.Column("lease_token", sa.String(128), nullable=False),
        sa.Column("agent_name", sa.String(128), nullable=False),
        sa.Column("project_id", sa.String(128), nullable=False),
        sa.Column("scope_type", sa.String(16), nullable=False),
        sa.Column("scope_id", sa.String(128), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("parent_instance_id", sa.String(128), nullable=False, server_default=""),
        sa.Column(
            "allow_equal_scope_delegation", sa.Boolean(), nullable=False,
            server_default=sa.false(),
        ),
        _ts("issued_at"),
        _ts("expires_at"),
        _ts("heartbeat_at"),
        _ts("revoked_at", nullable=True),
        sa.Column("revoked_reason", sa.Text(), nullable=False, server_default=""),
        schema=DB_SCHEMA,
    )
    op.create_index(
        "idx_capability_leases_scope",
        "capability_leases",
        ["project_id", "scope_type", "scope_id"],
        schema=DB_SCHEMA,
    )

    op.create_table(
        "capability_policies",
        sa.Column("project_id", sa.String(128), primary_key=True),
        sa.Column(
            "allow_orchestrator_override", sa.Boolean(), nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "orchestrator_override_token", sa.String(256), nullable=False, server_default="",
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False,
            server_default=sa.func.now(),
        ),
        schema=DB_SCHEMA,
    )

    op.create_table(
        "attention_items",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("project_id", sa.String(128), nullable=False),
        sa.Column("branch_id", sa.String(128), nullable=False, server_default=""),
        sa.Column("scope_type", sa.String(16), nullable=False),
        sa.Column("scope_id", sa.String(128), nullable=False),
        sa.Column("state", sa.String(16), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("body_markdown", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "requires_user_action", sa.Boolean(), nullable=False, server_default=sa.false(),
        ),
        sa.Column("created_by_actor", sa.String(128), nullable=False),
        sa.Column("created_by_type", sa.String(16), nullable=False),
        _ts("created_at"),
        sa.Column("acknowledged_by_actor", sa.String(128), nullable=True),
        sa.Column("acknowledged_by_type", sa.String(16), nullable=True),
        _ts("acknowledged_at", nullable=True),
        sa.Column("resolved_by_actor", sa.String(128), nullable=True),
        sa.Column("resolved_by_type", sa.String(16), nullable=True),
        _ts("resolved_at", nullable=True),
        schema=DB_SCHEMA,
    )
    op.create_index(
        "idx_attention_items_scope",
        "attention_items",
        ["project_id", "scope_type", "scope_id"],
        schema=DB_SCHEMA,
    )

    op.create_table(
        "work_items",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("project_id", sa.String(128), nullable=False),
        sa.Column("parent_id", sa.String(128), nullable=False, server_default=""),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("scope", sa.String(16), nullable=False),
        sa.Column("lifecycle_state", sa.String(16), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("contract", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_by_actor", sa.String(128), nullable=False),
        sa.Column("created_by_type", sa.String(16), nullable=False),
        sa.Column("updated_by_actor", sa.String(128), nullable=False),
        sa.Column("updated_by_type", sa.String(16), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("started_at", nullable=True),
        _ts("completed_at", nullable=True),
        _ts("archived_at", nullable=True),
        schema=DB_SCHEMA,
    )
    op.create_index(
        "idx_work_items_parent", "work_items", ["project_id", "parent_id"], schema=DB_SCHEMA,
    )

    op.create_table(
        "change_events",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("project_id", sa.String(128), nullable=False),
        sa.Column("work_item_id", sa.String(128), nullable=False),
        sa.Column("operation", sa.String(16), nullable=False),
        sa.Column("actor_id", sa.String(128), nullable=False),
        sa.Column("actor_type", sa.String(16), nullable=False),
        sa.Column("lease_instance_id", sa.String(128), nullable=False, server_default=""),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _ts("occurred_at"),
        schema=DB_SCHEMA,
    )
    op.create_index(
        "idx_change_events_project",
        "change_events",
        ["project_id", "occurred_at"],
        schema=DB_SCHEMA,
    )

    op.create_table(
        "kind_definitions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column("description_markdown", sa.Text(), nullable=False, server_default=""),
        sa.Column("applies_to", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column(
            "allowed_parent_scopes", JSONB(), nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        _ts("created_at", nullable=True),
        _ts("updated_at", nullable=True),
        schema=DB_SCHEMA,
    )


def downgrade() -> None:
    op.drop_table("kind_definitions", schema=DB_SCHEMA)
    op.drop_index("idx_change_events_project", table_name="change_events", schema=DB_SCHEMA)
    op.drop_table("change_events", schema=DB_SCHEMA)
    op.drop_index("idx_work_items_parent", table_name="work_items", schema=DB_SCHEMA)
    op.drop_table("work_items", schema=DB_SCHEMA)
    op.drop_index("idx_attention_items_scope", table_name="attention_items", schema=DB_SCHEMA)
    op.drop_table("attention_items", schema=DB_SCHEMA)
    op.drop_table("capability_policies", schema=DB_SCHEMA)
    op.drop_index(
        "idx_capability_leases_scope", table_name="capability_leases", schema=DB_SCHEMA,
    )
    op.drop_table("capability_leases", schema=DB_SCHEMA)
