"""
CarePath - Scheduling Engine Schemas
Pydantic models and enums exchanged between engine modules, services and workers
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any, Literal, Union
from datetime import datetime, date
from enum import Enum


# ============================================================================
# Enumerations
# ============================================================================

class PoolType(str, Enum):
    """Demand class of a pathway step"""
    CONSULT = "consult"
    WORK = "work"
    CONTROL = "control"


class SlotPurpose(str, Enum):
    """Pool tag of a time slot"""
    CONSULT = "consult"
    WORK = "work"
    CONTROL = "control"
    FLEXIBLE = "flexible"


class SlotState(str, Enum):
    """Time slot state"""
    FREE = "free"
    HELD = "held"
    BOOKED = "booked"
    BLOCKED = "blocked"


class StepStatus(str, Enum):
    """Materialised episode step status"""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class IntentState(str, Enum):
    """Slot intent lifecycle"""
    OPEN = "open"
    EXPIRED = "expired"
    CONVERTED = "converted"
    CANCELLED = "cancelled"


class AppointmentStatus(str, Enum):
    """Terminal appointment statuses (NULL = active)"""
    COMPLETED = "completed"
    CANCELLED_BY_DOCTOR = "cancelled_by_doctor"
    CANCELLED_BY_PATIENT = "cancelled_by_patient"
    NO_SHOW = "no_show"


class EpisodeStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class RuleSetStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class StageCode(str, Enum):
    """Clinical phases of an episode"""
    STAGE_0 = "STAGE_0"
    STAGE_1 = "STAGE_1"
    STAGE_2 = "STAGE_2"
    STAGE_3 = "STAGE_3"
    STAGE_4 = "STAGE_4"
    STAGE_5 = "STAGE_5"
    STAGE_6 = "STAGE_6"
    STAGE_7 = "STAGE_7"


class MilestoneCode(str, Enum):
    DELIVERY_DONE = "DELIVERY_DONE"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    NO_SURGICAL_PHASE = "NO_SURGICAL_PHASE"
    SURG_IMPLANT_PLACED = "SURG_IMPLANT_PLACED"


class EntityType(str, Enum):
    """Entity kinds named by scheduling events"""
    EPISODE = "episode"
    APPOINTMENT = "appointment"
    STAGE = "stage"
    BLOCK = "block"
    TEAM = "team"
    EPISODE_STEP = "episode_step"


class SchedulingEventType(str, Enum):
    """Outbox event types"""
    REPROJECT_INTENTS = "REPROJECT_INTENTS"
    EPISODE_UPDATED = "EPISODE_UPDATED"
    EPISODE_CLOSED = "EPISODE_CLOSED"
    APPOINTMENT_UPDATED = "APPOINTMENT_UPDATED"
    STAGE_CHANGED = "STAGE_CHANGED"
    BLOCK_CHANGED = "BLOCK_CHANGED"
    TEAM_CHANGED = "TEAM_CHANGED"
    STEP_UPDATED = "STEP_UPDATED"


class InvalidationReason(str, Enum):
    """Why open intents of an episode were expired"""
    EPISODE_CLOSED = "episode_closed"
    PATHWAY_CHANGED = "pathway_changed"
    PROVIDER_CHANGED = "provider_changed"
    STAGE_CHANGED = "stage_changed"


class NextStepCacheStatus(str, Enum):
    READY = "ready"
    BLOCKED = "blocked"
    COMPLETE = "complete"


class BlockedCode(str, Enum):
    """Machine-readable reasons for a blocked engine answer"""
    EPISODE_BLOCKED = "EPISODE_BLOCKED"
    NO_CARE_PATHWAY = "NO_CARE_PATHWAY"
    EPISODE_NOT_FOUND = "EPISODE_NOT_FOUND"
    BLOCKED_CAPACITY = "BLOCKED_CAPACITY"


# ============================================================================
# Pathway & Window Models
# ============================================================================

class PathwayStep(BaseModel):
    """One step of a care pathway template"""
    step_code: str = Field(..., min_length=1)
    label: Optional[str] = None
    pool: PoolType
    duration_minutes: int = Field(default=30, ge=0)
    default_days_offset: Optional[int] = Field(default=None, ge=0)
    requires_precommit: bool = False
    optional: bool = False

    @field_validator("pool", mode="before")
    @classmethod
    def normalize_pool(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


class StepWindow(BaseModel):
    """Legal booking window; end instant is where the next chained step anchors"""
    window_start: datetime
    window_end: datetime


# ============================================================================
# Next-Step Engine Results
# ============================================================================

class NextStep(BaseModel):
    """Ready answer of the next-step engine"""
    status: Literal["ready"] = "ready"
    step_code: str
    label: Optional[str] = None
    pool: PoolType
    duration_minutes: int
    window_start: datetime
    window_end: datetime
    earliest_date: date
    latest_date: date
    reason: str
    anchor: datetime
    seq: Optional[int] = None
    requires_precommit: bool = False
    pathway_complete: bool = False
    inputs_used: Dict[str, Any] = Field(default_factory=dict)


class BlockedResult(BaseModel):
    """Blocked answer; always actionable through code and prerequisite keys"""
    status: Literal["blocked"] = "blocked"
    code: BlockedCode
    reason: str
    required_prereq_keys: List[str] = Field(default_factory=list)
    block_keys: List[str] = Field(default_factory=list)


NextStepResult = Union[NextStep, BlockedResult]


# ============================================================================
# Stage Reducer Models
# ============================================================================

class EpisodeSnapshot(BaseModel):
    """Facts the stage reducer evaluates, gathered from one open episode"""
    episode_id: str
    patient_id: str
    current_stage: str = StageCode.STAGE_0.value
    stage_version: int = 0
    snapshot_version: int = 0
    treatment_type_id: Optional[str] = None
    care_pathway_id: Optional[str] = None

    has_completed_consult: bool = False
    has_treatment_plan: bool = False
    has_offer: bool = False
    offer_accepted: bool = False
    has_surgical_appointment_completed: bool = False
    has_prosthetic_appointment_started: bool = False
    no_surgical_phase: bool = False
    has_delivery_completed: bool = False
    delivery_older_than_30_days: bool = False


class StageRule(BaseModel):
    id: str
    from_stage: str
    to_stage: str
    conditions: List[str] = Field(default_factory=list)


class ReducerResult(BaseModel):
    """At most one suggested stage transition"""
    episode_id: str
    from_stage: str
    to_stage: str
    rule_ids: List[str]
    ruleset_version: int
    snapshot_version: int
    dedupe_key: str


class StageSuggestionOut(BaseModel):
    episode_id: str
    suggested_stage: str
    from_stage: Optional[str] = None
    rule_ids: List[str] = Field(default_factory=list)
    ruleset_version: int
    snapshot_version: int
    dedupe_key: str
    computed_at: datetime

    class Config:
        from_attributes = True


# ============================================================================
# Worker Results
# ============================================================================

class ProjectionResult(BaseModel):
    episode_id: str
    projected: int = 0
    expired: int = 0
    pathway_hash: Optional[str] = None
    reason: Optional[Literal["NO_EPISODE", "NO_PATHWAY"]] = None


class RebalanceResult(BaseModel):
    job_run_id: str
    week_start: str
    demand: Dict[str, int] = Field(default_factory=dict)
    goals: Dict[str, int] = Field(default_factory=dict)
    final_counts: Dict[str, int] = Field(default_factory=dict)
    retagged: int = 0
    errors: List[str] = Field(default_factory=list)


class HoldExpiryResult(BaseModel):
    found: int = 0
    expired: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)


class OutboxRunResult(BaseModel):
    fetched: int = 0
    processed: int = 0
    unresolved: int = 0
    episodes_refreshed: int = 0
    episodes_failed: int = 0
    errors: List[str] = Field(default_factory=list)


class CalibrationResult(BaseModel):
    pathways: int = 0
    calibrated: int = 0
    insufficient: int = 0
    errors: List[str] = Field(default_factory=list)


# ============================================================================
# No-Show Risk Models
# ============================================================================

class NoShowRiskInput(BaseModel):
    """Precomputed inputs of the no-show formula"""
    prior_no_shows_12m: int = Field(default=0, ge=0)
    lead_days: int = 0
    start_hour: int = Field(default=12, ge=0, le=23)


class NoShowRiskCoefficients(BaseModel):
    base_risk: float = 0.05
    no_show_1_penalty: float = 0.15
    no_show_2_penalty: float = 0.10
    lead_time_penalty: float = 0.05
    lead_time_threshold_days: int = 21
    early_morning_penalty: float = 0.05
    early_morning_start_hour: int = 7
    early_morning_end_hour: int = 10
    max_risk: float = 0.95
    requires_confirmation_threshold: float = 0.20
    short_hold_threshold: float = 0.35
    short_hold_hours: int = 24
    default_hold_hours: int = 48


class NoShowRisk(BaseModel):
    risk: float = Field(..., ge=0.0, le=1.0)
    requires_confirmation: bool
    hold_hours: int


class AppointmentRiskSettings(BaseModel):
    """Returned to the booking flow on appointment creation"""
    no_show_risk: float
    requires_confirmation: bool
    hold_hours: int
    hold_expires_at: datetime
    prior_no_shows_12m: int
    lead_days: int


class OneHardNextCheck(BaseModel):
    """Whether another future work appointment may be booked for an episode"""
    allowed: bool
    existing_appointment_id: Optional[str] = None
    reason: Optional[str] = None


# ============================================================================
# Forecast & Feed Models
# ============================================================================

class EpisodeForecast(BaseModel):
    episode_id: str
    status: Literal["ready", "blocked", "complete"]
    next_step: Optional[str] = None
    remaining_visits_p50: Optional[int] = None
    remaining_visits_p80: Optional[int] = None
    completion_window_start: Optional[datetime] = None
    completion_end_p50: Optional[datetime] = None
    completion_end_p80: Optional[datetime] = None
    assumptions: List[str] = Field(default_factory=list)
    inputs_hash: Optional[str] = None


class NextStepCacheOut(BaseModel):
    episode_id: str
    provider_id: Optional[str] = None
    pool: Optional[str] = None
    step_code: Optional[str] = None
    step_label: Optional[str] = None
    duration_minutes: int = 0
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    status: str
    blocked_code: Optional[str] = None
    blocked_reason: Optional[str] = None
    overdue_days: int = 0
    updated_at: datetime

    class Config:
        from_attributes = True


class ForecastCacheOut(BaseModel):
    episode_id: str
    status: str
    next_step: Optional[str] = None
    remaining_visits_p50: Optional[int] = None
    remaining_visits_p80: Optional[int] = None
    completion_end_p50: Optional[datetime] = None
    completion_end_p80: Optional[datetime] = None
    assumptions: List[str] = Field(default_factory=list)
    inputs_hash: Optional[str] = None
    computed_at: datetime

    class Config:
        from_attributes = True


class SlotIntentOut(BaseModel):
    id: str
    episode_id: str
    step_code: str
    step_seq: int
    pool: str
    duration_minutes: int
    window_start: datetime
    window_end: datetime
    state: IntentState
    source_pathway_hash: Optional[str] = None
    expires_at: Optional[datetime] = None
    appointment_id: Optional[str] = None

    class Config:
        from_attributes = True


class VirtualFeedParams(BaseModel):
    range_start: date
    range_end: date
    provider_id: Optional[str] = None
    pool: Optional[PoolType] = None
    ready_only: bool = False


class VirtualAppointment(BaseModel):
    """Derived, read-only worklist item built from the next-step cache"""
    virtual_key: str
    episode_id: str
    patient_id: str
    patient_name: Optional[str] = None
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    step_code: str
    step_label: Optional[str] = None
    pool: str
    duration_minutes: int
    window_start_date: date
    window_end_date: date
    status: str
    overdue_days: int = 0
    blocked_code: Optional[str] = None
    blocked_reason: Optional[str] = None


class VirtualFeedResult(BaseModel):
    items: List[VirtualAppointment] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)
