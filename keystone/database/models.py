"""
keystone.database.models — SQLAlchemy 2.0 Data Models
======================================================

Tables:
- scored_events       — Append-only journal of scored professional actions
- assessment_records  — Append-only competency assessment history
- user_milestones     — One row per (user, milestone type); never deleted
- subscriptions       — One live billing-lifecycle record per user
- settings            — JSON tuning values (levels, capability rules, ...)
- admin_log           — Append-only audit trail for settings changes
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Keystone ORM models."""


class UtcDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on storage; values read back are re-tagged as UTC.
    Naive datetimes passed in are assumed to already be UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Category(enum.StrEnum):
    """Competency area a scored action counts toward."""
    BUYER_ANALYSIS = "buyer_analysis"
    VALUE_COMMUNICATION = "value_communication"
    SALES_EXECUTION = "sales_execution"

    @classmethod
    def _missing_(cls, value):
        # Upstream payloads spell categories with hyphens ("buyer-analysis")
        if isinstance(value, str) and "-" in value:
            try:
                return cls(value.replace("-", "_"))
            except ValueError:
                return None
        return None


class AssessmentKind(enum.StrEnum):
    BASELINE = "baseline"
    PROGRESS = "progress"
    RETAKE = "retake"
    MILESTONE = "milestone"


class MilestoneType(enum.StrEnum):
    """Closed set of once-only achievements in a user's journey."""
    ACCOUNT_CREATED = "account_created"
    ASSESSMENT_STARTED = "assessment_started"
    ASSESSMENT_COMPLETED = "assessment_completed"
    DEMO_VIEWED = "demo_viewed"
    WAITLIST_JOINED = "waitlist_joined"
    WAITLIST_PAID = "waitlist_paid"
    URGENT_ASSISTANCE_BOOKED = "urgent_assistance_booked"
    EARLY_ACCESS_GRANTED = "early_access_granted"
    FIRST_ICP_GENERATED = "first_icp_generated"
    SLACK_COMMUNITY_JOINED = "slack_community_joined"
    FOUNDING_MEMBER_ONBOARDED = "founding_member_onboarded"
    UPGRADED_TO_FULL_PLATFORM = "upgraded_to_full_platform"


class MilestoneStatus(enum.StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class SubscriptionStatus(enum.StrEnum):
    """Billing lifecycle states, independent of the billing provider."""
    NONE = "none"
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"


# ---------------------------------------------------------------------------
# ScoredEvent — append-only journal of scored actions
# ---------------------------------------------------------------------------
class ScoredEvent(Base):
    """One scored professional action.

    Immutable once recorded except for the one-way ``verified`` flip, which
    is owned by the verification collaborator.
    """
    __tablename__ = "scored_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    base_points: Mapped[int] = mapped_column(Integer, nullable=False)
    impact_multiplier: Mapped[Decimal] = mapped_column(
        Numeric(6, 3), nullable=False, default=Decimal("1.0")
    )
    occurred_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    verified_by: Mapped[str | None] = mapped_column(String(100), default=None)
    verified_at: Mapped[datetime | None] = mapped_column(UtcDateTime, default=None)
    source_system: Mapped[str] = mapped_column(
        String(30), nullable=False, default="actions"
    )
    source_event_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        UtcDateTime, server_default=func.now()
    )

    __table_args__ = (
        # Idempotent insert for upstream at-least-once delivery
        Index(
            "ix_scored_events_idempotent",
            "source_system",
            "source_event_id",
            unique=True,
            postgresql_where=source_event_id.isnot(None),
        ),
        Index("ix_scored_events_user_time", "user_id", "occurred_at"),
        CheckConstraint("base_points >= 0", name="ck_scored_events_base_points"),
        CheckConstraint("impact_multiplier > 0", name="ck_scored_events_multiplier"),
    )

    def __repr__(self) -> str:
        return (
            f"<ScoredEvent id={self.id} user={self.user_id} "
            f"category={self.category} verified={self.verified}>"
        )


# ---------------------------------------------------------------------------
# AssessmentRecord — competency assessment history
# ---------------------------------------------------------------------------
class AssessmentRecord(Base):
    __tablename__ = "assessment_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    taken_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AssessmentKind.PROGRESS.value
    )
    buyer_analysis_score: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    value_communication_score: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    sales_execution_score: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    overall_score: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    recorded_at: Mapped[datetime] = mapped_column(
        UtcDateTime, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_assessment_records_user_time", "user_id", "taken_at"),
    )

    def dimension_scores(self) -> dict[str, Decimal | None]:
        return {
            Category.BUYER_ANALYSIS.value: self.buyer_analysis_score,
            Category.VALUE_COMMUNICATION.value: self.value_communication_score,
            Category.SALES_EXECUTION.value: self.sales_execution_score,
        }

    def __repr__(self) -> str:
        return (
            f"<AssessmentRecord id={self.id} user={self.user_id} "
            f"kind={self.kind} overall={self.overall_score}>"
        )


# ---------------------------------------------------------------------------
# Milestone — at most one row per (user, milestone type)
# ---------------------------------------------------------------------------
class Milestone(Base):
    __tablename__ = "user_milestones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    milestone_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MilestoneStatus.PENDING.value
    )
    attempted_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, default=None)
    expired_at: Mapped[datetime | None] = mapped_column(UtcDateTime, default=None)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "milestone_type", name="uq_user_milestone"),
        Index("ix_user_milestones_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Milestone user={self.user_id} type={self.milestone_type} "
            f"status={self.status}>"
        )


# ---------------------------------------------------------------------------
# Subscription — one live billing record per user
# ---------------------------------------------------------------------------
class Subscription(Base):
    __tablename__ = "subscriptions"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.NONE.value
    )
    trial_end_at: Mapped[datetime | None] = mapped_column(UtcDateTime, default=None)
    current_period_end: Mapped[datetime | None] = mapped_column(
        UtcDateTime, default=None
    )
    cancel_at: Mapped[datetime | None] = mapped_column(UtcDateTime, default=None)
    past_due_since: Mapped[datetime | None] = mapped_column(UtcDateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_subscriptions_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Subscription user={self.user_id} status={self.status}>"


# ---------------------------------------------------------------------------
# Setting — JSON tuning values read through ConfigCache
# ---------------------------------------------------------------------------
class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Setting key={self.key!r}>"


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        UtcDateTime, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"
