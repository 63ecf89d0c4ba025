"""
CarePath - Booking Support
Slot state rules, one-hard-next guard and risk settings used when an appointment is created
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from dateutil import tz
from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from carepath.config import settings
from carepath.models import Appointment, SlotIntent
from carepath.modules.no_show_risk import compute_no_show_risk, load_coefficients
from carepath.schemas import (
    AppointmentRiskSettings, AppointmentStatus, IntentState, NoShowRiskInput, OneHardNextCheck, PoolType, SlotState
)

logger = logging.getLogger(__name__)

# Highest first; rebalancing only ever touches free slots
SLOT_STATE_PRECEDENCE = (
    SlotState.BLOCKED.value,
    SlotState.BOOKED.value,
    SlotState.HELD.value,
    SlotState.FREE.value,
)

NO_SHOW_LOOKBACK_DAYS = 365


def resolve_slot_state(*states: Optional[str]) -> str:
    """Effective state when several sources disagree about one slot"""
    present = {s for s in states if s}
    for state in SLOT_STATE_PRECEDENCE:
        if state in present:
            return state
    return SlotState.FREE.value


def can_consume_slot(state: Optional[str]) -> bool:
    return not state or state == SlotState.FREE.value


def is_rebalance_eligible(state: Optional[str]) -> bool:
    return state == SlotState.FREE.value


def count_prior_no_shows(session: Session, patient_id: str, now: Optional[datetime] = None) -> int:
    """No-shows of a patient in the last twelve months"""
    now = now or datetime.now(timezone.utc)
    return (
        session.query(func.count(Appointment.id))
        .filter(
            Appointment.patient_id == patient_id,
            Appointment.appointment_status == AppointmentStatus.NO_SHOW.value,
            Appointment.created_at > now - timedelta(days=NO_SHOW_LOOKBACK_DAYS),
        )
        .scalar()
    ) or 0


def get_appointment_risk_settings(
    session: Session,
    patient_id: str,
    slot_start: datetime,
    now: Optional[datetime] = None,
) -> AppointmentRiskSettings:
    """
    No-show risk, confirmation flag and hold expiry for a new booking

    The start hour is read in the clinic timezone; coefficients come from
    no_show_risk_config overrides when present.
    """
    now = now or datetime.now(timezone.utc)
    if slot_start.tzinfo is None:
        slot_start = slot_start.replace(tzinfo=timezone.utc)

    prior = count_prior_no_shows(session, patient_id, now)
    lead_days = math.ceil((slot_start - now).total_seconds() / 86400)
    start_hour = slot_start.astimezone(tz.gettz(settings.clinic_timezone)).hour

    risk = compute_no_show_risk(
        NoShowRiskInput(prior_no_shows_12m=prior, lead_days=lead_days, start_hour=start_hour),
        load_coefficients(session),
    )
    hold_expires_at = now + timedelta(hours=risk.hold_hours)

    logger.debug(
        f"Risk for patient {patient_id}: {risk.risk} (no-shows {prior}, lead {lead_days}d, hour {start_hour})"
    )
    return AppointmentRiskSettings(
        no_show_risk=risk.risk,
        requires_confirmation=risk.requires_confirmation,
        hold_hours=risk.hold_hours,
        hold_expires_at=hold_expires_at,
        prior_no_shows_12m=prior,
        lead_days=lead_days,
    )


def check_one_hard_next(
    session: Session,
    episode_id: Optional[str],
    pool: PoolType,
    requires_precommit: bool = False,
    now: Optional[datetime] = None,
) -> OneHardNextCheck:
    """
    At most one future hard work appointment per episode

    Precommit steps may hold two future work appointments, but only when
    both are precommit. Non-work pools and appointments outside an
    episode are always allowed.
    """
    if not episode_id or PoolType(pool) != PoolType.WORK:
        return OneHardNextCheck(allowed=True)

    now = now or datetime.now(timezone.utc)
    future = (
        session.query(Appointment.id, Appointment.requires_precommit)
        .filter(
            Appointment.episode_id == episode_id,
            Appointment.pool == PoolType.WORK.value,
            Appointment.start_time > now,
            or_(
                Appointment.appointment_status.is_(None),
                Appointment.appointment_status == AppointmentStatus.COMPLETED.value,
            ),
        )
        .order_by(Appointment.start_time)
        .all()
    )
    regular = [appointment_id for appointment_id, precommit in future if not precommit]

    if regular:
        reason = (
            "Episode has a non-precommit future work appointment; cannot add precommit"
            if requires_precommit
            else "Episode already has a future work appointment"
        )
        return OneHardNextCheck(allowed=False, existing_appointment_id=regular[0], reason=reason)
    if requires_precommit and len(future) >= 2:
        return OneHardNextCheck(
            allowed=False,
            existing_appointment_id=future[0][0],
            reason="Episode already has 2 future precommit work appointments",
        )
    return OneHardNextCheck(allowed=True)


def mark_intent_converted(session: Session, intent_id: str, appointment_id: str) -> bool:
    """Link an open intent to the appointment that fulfilled it"""
    result = session.execute(
        update(SlotIntent)
        .where(SlotIntent.id == intent_id, SlotIntent.state == IntentState.OPEN.value)
        .values(
            state=IntentState.CONVERTED.value,
            appointment_id=appointment_id,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    converted = result.rowcount == 1
    if not converted:
        logger.warning(f"Intent {intent_id} was not open; not converted")
    return converted
