"""
CarePath Database Models
SQLAlchemy 2.0 ORM models for the care-pathway scheduling engine
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text,
    Index, CheckConstraint, UniqueConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend (SQLite drops tzinfo)"""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


# =============================================================================
# Reference Models (owned by other subsystems)
# =============================================================================

class Patient(Base, TimestampMixin):
    """Patient reference row (record CRUD lives outside the scheduling core)"""
    __tablename__ = "patients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[Optional[str]] = mapped_column(String(200))

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, name={self.name})>"


class Provider(Base, TimestampMixin):
    """Clinician who owns worklists and time slots"""
    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[Optional[str]] = mapped_column(String(200))

    def __repr__(self) -> str:
        return f"<Provider(id={self.id}, name={self.name})>"


class PatientDocument(Base, TimestampMixin):
    """Document reference; only the tags are read (e.g. 'offer')"""
    __tablename__ = "patient_documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    patient_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tags: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)


# =============================================================================
# Care Pathway Models
# =============================================================================

class CarePathway(Base, TimestampMixin):
    """Named, versioned ordered list of treatment steps"""
    __tablename__ = "care_pathways"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # [{"step_code", "label", "pool", "duration_minutes", "default_days_offset",
    #   "requires_precommit", "optional"}, ...]
    steps_json: Mapped[Optional[list]] = mapped_column(JSON)

    __table_args__ = (
        CheckConstraint("version >= 1", name="positive_pathway_version"),
    )

    def __repr__(self) -> str:
        return f"<CarePathway(id={self.id}, name={self.name}, version={self.version})>"


class CarePathwayAnalytics(Base):
    """Calibrated visit/cadence statistics per pathway"""
    __tablename__ = "care_pathway_analytics"

    care_pathway_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("care_pathways.id", ondelete="CASCADE"), primary_key=True
    )
    n_episodes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    median_visits: Mapped[Optional[float]] = mapped_column(Float)
    p80_visits: Mapped[Optional[float]] = mapped_column(Float)
    median_cadence_days: Mapped[Optional[float]] = mapped_column(Float)
    p80_cadence_days: Mapped[Optional[float]] = mapped_column(Float)
    is_insufficient_sample: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


# =============================================================================
# Episode Models
# =============================================================================

class Episode(Base, TimestampMixin):
    """A patient's care journey instance"""
    __tablename__ = "patient_episodes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    patient_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="open", nullable=False, index=True)
    opened_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    assigned_provider_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("providers.id", ondelete="SET NULL"), index=True
    )
    # Legacy single pathway; episode_pathways wins when present
    care_pathway_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("care_pathways.id", ondelete="SET NULL")
    )
    treatment_type_id: Mapped[Optional[str]] = mapped_column(String(36))

    stage_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    snapshot_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    pathways: Mapped[List["EpisodePathway"]] = relationship(
        "EpisodePathway",
        back_populates="episode",
        cascade="all, delete-orphan",
        order_by="EpisodePathway.ordinal",
        lazy="select"
    )

    __table_args__ = (
        CheckConstraint("status IN ('open', 'closed')", name="valid_episode_status"),
        Index("idx_episode_patient_status", "patient_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Episode(id={self.id}, patient_id={self.patient_id}, status={self.status})>"


class EpisodePathway(Base):
    """Pathway attached to an episode; several may be active, merged by ordinal"""
    __tablename__ = "episode_pathways"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    care_pathway_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("care_pathways.id", ondelete="CASCADE"), nullable=False
    )
    ordinal: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    episode: Mapped["Episode"] = relationship("Episode", back_populates="pathways")
    care_pathway: Mapped["CarePathway"] = relationship("CarePathway", lazy="joined")

    __table_args__ = (
        UniqueConstraint("episode_id", "care_pathway_id", name="uq_episode_pathway"),
    )


class EpisodeCareTeam(Base):
    """Care team membership; the primary member owns the worklist when unassigned"""
    __tablename__ = "episode_care_team"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("providers.id", ondelete="CASCADE"), nullable=False
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class EpisodeBlock(Base, TimestampMixin):
    """Clinical hold that stops scheduling until it expires or is deactivated"""
    __tablename__ = "episode_blocks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_block_episode_active", "episode_id", "active"),
    )


class EpisodeStep(Base, TimestampMixin):
    """Materialised per-episode copy of a pathway step; never deleted"""
    __tablename__ = "episode_steps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    step_code: Mapped[str] = mapped_column(String(100), nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(200))
    pool: Mapped[str] = mapped_column(String(20), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    default_days_offset: Mapped[int] = mapped_column(Integer, default=14, nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    appointment_id: Mapped[Optional[str]] = mapped_column(String(36))
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    __table_args__ = (
        UniqueConstraint("episode_id", "seq", name="uq_episode_step_seq"),
        CheckConstraint(
            "status IN ('pending', 'scheduled', 'completed', 'skipped')",
            name="valid_episode_step_status"
        ),
        CheckConstraint("pool IN ('consult', 'work', 'control')", name="valid_episode_step_pool"),
    )

    def __repr__(self) -> str:
        return f"<EpisodeStep(episode_id={self.episode_id}, seq={self.seq}, code={self.step_code}, status={self.status})>"


class EpisodeTask(Base, TimestampMixin):
    """Follow-up task (recall) attached to an episode"""
    __tablename__ = "episode_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    task_type: Mapped[str] = mapped_column(String(50), nullable=False)
    due_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)


# =============================================================================
# Stage Models
# =============================================================================

class StageEvent(Base):
    """Append-only record of a clinical phase reached; current stage = latest by `at`"""
    __tablename__ = "stage_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stage_code: Mapped[str] = mapped_column(String(20), nullable=False)
    at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(200))

    __table_args__ = (
        Index("idx_stage_event_episode_at", "episode_id", "at"),
    )


class PatientMilestone(Base):
    """Discrete clinical fact recorded against an episode"""
    __tablename__ = "patient_milestones"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class StageRuleSet(Base, TimestampMixin):
    """Versioned stage transition rules; only one PUBLISHED version is visible"""
    __tablename__ = "stage_transition_rulesets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    version: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="DRAFT", nullable=False, index=True)
    # [{"id", "from_stage", "to_stage", "conditions": [...]}, ...]
    rules: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    published_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    __table_args__ = (
        CheckConstraint("status IN ('DRAFT', 'PUBLISHED', 'ARCHIVED')", name="valid_ruleset_status"),
    )


class StageSuggestion(Base):
    """Single live stage suggestion per episode"""
    __tablename__ = "stage_suggestions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    suggested_stage: Mapped[str] = mapped_column(String(20), nullable=False)
    from_stage: Mapped[Optional[str]] = mapped_column(String(20))
    ruleset_version: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot_version: Mapped[int] = mapped_column(Integer, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_ids: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class DismissedStageSuggestion(Base):
    """Time-limited suppression of a suggestion dedupe key"""
    __tablename__ = "dismissed_stage_suggestions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), nullable=False
    )
    dedupe_key: Mapped[str] = mapped_column(String(64), nullable=False)
    dismissed_by: Mapped[Optional[str]] = mapped_column(String(200))
    dismissed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("episode_id", "dedupe_key", name="uq_dismissed_suggestion"),
    )


class StageSuggestionLog(Base):
    """Immutable audit log of persisted suggestions"""
    __tablename__ = "episode_stage_suggestion_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    episode_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    suggested_stage: Mapped[str] = mapped_column(String(20), nullable=False)
    from_stage: Mapped[Optional[str]] = mapped_column(String(20))
    ruleset_version: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot_version: Mapped[int] = mapped_column(Integer, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_ids: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


# =============================================================================
# Capacity Models
# =============================================================================

class TimeSlot(Base, TimestampMixin):
    """Unit of bookable capacity"""
    __tablename__ = "available_time_slots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    provider_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("providers.id", ondelete="SET NULL"), index=True
    )
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    state: Mapped[str] = mapped_column(String(20), default="free", nullable=False)
    slot_purpose: Mapped[Optional[str]] = mapped_column(String(20))

    __table_args__ = (
        CheckConstraint("state IN ('free', 'held', 'booked', 'blocked')", name="valid_slot_state"),
        Index("idx_slot_state_start", "state", "start_time"),
    )

    def __repr__(self) -> str:
        return f"<TimeSlot(id={self.id}, start={self.start_time}, state={self.state}, purpose={self.slot_purpose})>"


class SlotPurposeEvent(Base):
    """Audit row per pool retag"""
    __tablename__ = "slot_purpose_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slot_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    old_purpose: Mapped[Optional[str]] = mapped_column(String(20))
    new_purpose: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    job_run_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class CapacityPoolConfig(Base):
    """Weekly pool quotas; missing weeks fall back to settings"""
    __tablename__ = "capacity_pool_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_start: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    consult_min: Mapped[int] = mapped_column(Integer, nullable=False)
    consult_target: Mapped[int] = mapped_column(Integer, nullable=False)
    work_target: Mapped[int] = mapped_column(Integer, nullable=False)
    control_target: Mapped[int] = mapped_column(Integer, nullable=False)
    flex_target: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


# =============================================================================
# Booking Models
# =============================================================================

class SlotIntent(Base, TimestampMixin):
    """Projected, not-yet-booked future scheduling need"""
    __tablename__ = "slot_intents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    step_code: Mapped[str] = mapped_column(String(100), nullable=False)
    step_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    pool: Mapped[str] = mapped_column(String(20), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    window_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    state: Mapped[str] = mapped_column(String(20), default="open", nullable=False, index=True)
    source_pathway_hash: Mapped[Optional[str]] = mapped_column(String(64))
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, index=True)
    appointment_id: Mapped[Optional[str]] = mapped_column(String(36))

    __table_args__ = (
        UniqueConstraint("episode_id", "step_code", "step_seq", name="uq_slot_intent_step"),
        CheckConstraint(
            "state IN ('open', 'expired', 'converted', 'cancelled')",
            name="valid_intent_state"
        ),
        Index("idx_intent_state_window", "state", "window_start"),
    )

    def __repr__(self) -> str:
        return f"<SlotIntent(episode_id={self.episode_id}, step={self.step_code}#{self.step_seq}, state={self.state})>"


class Appointment(Base):
    """Booked encounter"""
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    patient_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    episode_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="SET NULL"), index=True
    )
    time_slot_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("available_time_slots.id", ondelete="SET NULL")
    )
    slot_intent_id: Mapped[Optional[str]] = mapped_column(String(36))
    pool: Mapped[Optional[str]] = mapped_column(String(20))
    step_code: Mapped[Optional[str]] = mapped_column(String(100))
    step_seq: Mapped[Optional[int]] = mapped_column(Integer)
    start_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, index=True)

    # NULL = active
    appointment_status: Mapped[Optional[str]] = mapped_column(String(30))
    completion_notes: Mapped[Optional[str]] = mapped_column(Text)

    no_show_risk: Mapped[Optional[float]] = mapped_column(Float)
    requires_confirmation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_precommit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    hold_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_appointment_episode_status", "episode_id", "appointment_status"),
        Index("idx_appointment_hold", "hold_expires_at"),
        CheckConstraint(
            "no_show_risk IS NULL OR (no_show_risk >= 0.0 AND no_show_risk <= 1.0)",
            name="valid_no_show_risk"
        ),
    )

    def __repr__(self) -> str:
        return f"<Appointment(id={self.id}, episode_id={self.episode_id}, status={self.appointment_status})>"


class AppointmentStatusEvent(Base):
    """Audit row per appointment status change"""
    __tablename__ = "appointment_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    old_status: Mapped[Optional[str]] = mapped_column(String(30))
    new_status: Mapped[Optional[str]] = mapped_column(String(30))
    created_by: Mapped[Optional[str]] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class NoShowRiskConfig(Base):
    """Coefficient overrides for the no-show formula"""
    __tablename__ = "no_show_risk_config"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[float] = mapped_column(Float, nullable=False)


# =============================================================================
# Derived Caches
# =============================================================================

class EpisodeNextStepCache(Base):
    """Recomputable next-step answer per episode; overwritten by the outbox worker"""
    __tablename__ = "episode_next_step_cache"

    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), primary_key=True
    )
    provider_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    pool: Mapped[Optional[str]] = mapped_column(String(20))
    step_code: Mapped[Optional[str]] = mapped_column(String(100))
    step_label: Mapped[Optional[str]] = mapped_column(String(200))
    duration_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    window_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    window_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    blocked_code: Mapped[Optional[str]] = mapped_column(String(50))
    blocked_reason: Mapped[Optional[str]] = mapped_column(Text)
    overdue_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_next_step_cache_window", "window_start", "window_end"),
    )


class EpisodeForecastCache(Base):
    """Recomputable completion forecast per episode"""
    __tablename__ = "episode_forecast_cache"

    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("patient_episodes.id", ondelete="CASCADE"), primary_key=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    next_step: Mapped[Optional[str]] = mapped_column(String(100))
    remaining_visits_p50: Mapped[Optional[int]] = mapped_column(Integer)
    remaining_visits_p80: Mapped[Optional[int]] = mapped_column(Integer)
    completion_end_p50: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completion_end_p80: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    assumptions: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    inputs_hash: Mapped[Optional[str]] = mapped_column(String(64))
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


# =============================================================================
# Outbox
# =============================================================================

class SchedulingEvent(Base):
    """Append-only change log drained by the scheduling events worker"""
    __tablename__ = "scheduling_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    __table_args__ = (
        Index("idx_scheduling_event_pending", "processed_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<SchedulingEvent(id={self.id}, {self.entity_type}:{self.entity_id}, type={self.event_type})>"
