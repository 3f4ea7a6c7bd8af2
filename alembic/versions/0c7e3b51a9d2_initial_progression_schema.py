"""Initial progression & access-gating schema

Revision ID: 0c7e3b51a9d2
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0c7e3b51a9d2"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, **kw) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kw)


def upgrade() -> None:
    op.create_table(
        "scored_events",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("base_points", sa.Integer(), nullable=False),
        sa.Column("impact_multiplier", sa.Numeric(6, 3), nullable=False, server_default="1.0"),
        _ts("occurred_at", nullable=False),
        sa.Column("verified", sa.Boolean(), server_default="false"),
        sa.Column("verified_by", sa.String(100), nullable=True),
        _ts("verified_at", nullable=True),
        sa.Column("source_system", sa.String(30), nullable=False, server_default="actions"),
        sa.Column("source_event_id", sa.String(100), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _ts("recorded_at", server_default=sa.func.now()),
        sa.CheckConstraint("base_points >= 0", name="ck_scored_events_base_points"),
        sa.CheckConstraint("impact_multiplier > 0", name="ck_scored_events_multiplier"),
    )
    op.create_index(
        "ix_scored_events_idempotent",
        "scored_events",
        ["source_system", "source_event_id"],
        unique=True,
        postgresql_where=sa.text("source_event_id IS NOT NULL"),
    )
    op.create_index("ix_scored_events_user_time", "scored_events", ["user_id", "occurred_at"])

    op.create_table(
        "assessment_records",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        _ts("taken_at", nullable=False),
        sa.Column("kind", sa.String(20), nullable=False, server_default="progress"),
        sa.Column("buyer_analysis_score", sa.Numeric(5, 2), nullable=True),
        sa.Column("value_communication_score", sa.Numeric(5, 2), nullable=True),
        sa.Column("sales_execution_score", sa.Numeric(5, 2), nullable=True),
        sa.Column("overall_score", sa.Numeric(5, 2), nullable=True),
        _ts("recorded_at", server_default=sa.func.now()),
    )
    op.create_index(
        "ix_assessment_records_user_time", "assessment_records", ["user_id", "taken_at"],
    )

    op.create_table(
        "user_milestones",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("milestone_type", sa.String(40), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        _ts("attempted_at", nullable=False),
        _ts("completed_at", nullable=True),
        _ts("expired_at", nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "milestone_type", name="uq_user_milestone"),
    )
    op.create_index("ix_user_milestones_status", "user_milestones", ["status"])

    op.create_table(
        "subscriptions",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="none"),
        _ts("trial_end_at", nullable=True),
        _ts("current_period_end", nullable=True),
        _ts("cancel_at", nullable=True),
        _ts("past_due_since", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])

    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text(), nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("description", sa.Text(), nullable=True),
        _ts("updated_at", server_default=sa.func.now()),
    )

    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        _ts("timestamp", server_default=sa.func.now()),
    )
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"],
    )


def downgrade() -> None:
    op.drop_index("ix_admin_log_target", table_name="admin_log")
    op.drop_table("admin_log")
    op.drop_table("settings")
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_user_milestones_status", table_name="user_milestones")
    op.drop_table("user_milestones")
    op.drop_index("ix_assessment_records_user_time", table_name="assessment_records")
    op.drop_table("assessment_records")
    op.drop_index("ix_scored_events_user_time", table_name="scored_events")
    op.drop_index("ix_scored_events_idempotent", table_name="scored_events")
    op.drop_table("scored_events")
