"""
Shared fixtures: in-memory SQLite database and data builders
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("CACHE_ENABLED", "false")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from carepath.models import (
    Appointment, Base, CarePathway, Episode, EpisodeBlock, EpisodeStep, Patient,
    PatientMilestone, Provider, SlotIntent, StageEvent, TimeSlot
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

STANDARD_STEPS = [
    {"step_code": "consult_1", "label": "First consultation", "pool": "consult",
     "duration_minutes": 30, "default_days_offset": 7},
    {"step_code": "impression_1", "label": "Impression", "pool": "work",
     "duration_minutes": 45, "default_days_offset": 14},
    {"step_code": "try_in_1", "label": "Try-in", "pool": "work",
     "duration_minutes": 45, "default_days_offset": 14},
    {"step_code": "delivery", "label": "Delivery", "pool": "work",
     "duration_minutes": 60, "default_days_offset": 14},
    {"step_code": "control_6m", "label": "6 month control", "pool": "control",
     "duration_minutes": 20, "default_days_offset": 180},
]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=True, expire_on_commit=False)
    session = factory()
    yield session
    session.rollback()
    session.close()


class Builder:
    """Creates flushed rows with sensible defaults"""

    def __init__(self, session):
        self.session = session

    def _add(self, obj):
        self.session.add(obj)
        self.session.flush()
        return obj

    def patient(self, name="Test Patient"):
        return self._add(Patient(name=name))

    def provider(self, name="Dr. Test"):
        return self._add(Provider(name=name))

    def pathway(self, steps=None, name="Implant pathway"):
        return self._add(CarePathway(name=name, steps_json=list(STANDARD_STEPS if steps is None else steps)))

    def episode(self, patient=None, pathway=None, opened_at=T0, status="open", provider=None, stage=None):
        patient = patient or self.patient()
        episode = self._add(Episode(
            patient_id=patient.id,
            care_pathway_id=pathway.id if pathway else None,
            opened_at=opened_at,
            status=status,
            assigned_provider_id=provider.id if provider else None,
        ))
        if stage:
            self.stage(episode, stage, opened_at)
        return episode

    def stage(self, episode, code, at=T0):
        return self._add(StageEvent(episode_id=episode.id, stage_code=code, at=at))

    def milestone(self, episode, code, at=T0):
        return self._add(PatientMilestone(episode_id=episode.id, code=code, at=at))

    def block(self, episode, key="medical_hold", expires_at=None, active=True):
        return self._add(EpisodeBlock(
            episode_id=episode.id,
            key=key,
            active=active,
            expires_at=expires_at or T0 + timedelta(days=365),
        ))

    def step(self, episode, seq, step_code, pool="work", status="pending", offset=14, completed_at=None):
        return self._add(EpisodeStep(
            episode_id=episode.id,
            seq=seq,
            step_code=step_code,
            pool=pool,
            status=status,
            default_days_offset=offset,
            completed_at=completed_at,
        ))

    def appointment(self, episode=None, patient_id=None, pool=None, step_code=None, step_seq=None,
                    start_time=None, status=None, created_at=None, **kwargs):
        return self._add(Appointment(
            patient_id=patient_id or episode.patient_id,
            episode_id=episode.id if episode else None,
            pool=pool,
            step_code=step_code,
            step_seq=step_seq,
            start_time=start_time,
            appointment_status=status,
            created_at=created_at or T0,
            **kwargs,
        ))

    def slot(self, start_time, purpose=None, state="free", duration=None, provider=None):
        return self._add(TimeSlot(
            start_time=start_time,
            slot_purpose=purpose,
            state=state,
            duration_minutes=duration,
            provider_id=provider.id if provider else None,
        ))

    def intent(self, episode, step_code="impression_1", step_seq=1, state="open", expires_at=None,
               window_start=T0, window_end=None):
        return self._add(SlotIntent(
            episode_id=episode.id,
            step_code=step_code,
            step_seq=step_seq,
            pool="work",
            duration_minutes=30,
            window_start=window_start,
            window_end=window_end or window_start + timedelta(days=21),
            state=state,
            expires_at=expires_at,
        ))


@pytest.fixture
def build(session):
    return Builder(session)
