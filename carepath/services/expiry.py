"""
CarePath - Expiry Workers
Releases lapsed appointment holds and expires stale slot intents
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from carepath.models import Appointment, AppointmentStatusEvent, SlotIntent, TimeSlot
from carepath.schemas import AppointmentStatus, EntityType, HoldExpiryResult, IntentState, SchedulingEventType, SlotState
from carepath.services.scheduling_events import emit_scheduling_event

logger = logging.getLogger(__name__)

HOLD_EXPIRED_NOTE = "hold_expired"
HOLD_EXPIRY_ACTOR = "hold-expiry-worker"
RELEASABLE_SLOT_STATES = (SlotState.HELD.value, SlotState.BOOKED.value)


def _expire_hold(session: Session, appointment_id: str, time_slot_id: Optional[str], now: datetime) -> bool:
    """Cancel one lapsed hold; False when the appointment moved on since it was selected"""
    cancelled = session.execute(
        update(Appointment)
        .where(
            Appointment.id == appointment_id,
            Appointment.appointment_status.is_(None),
            Appointment.hold_expires_at.isnot(None),
            Appointment.hold_expires_at <= now,
        )
        .values(
            appointment_status=AppointmentStatus.CANCELLED_BY_DOCTOR.value,
            completion_notes=HOLD_EXPIRED_NOTE,
            hold_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if cancelled.rowcount != 1:
        return False

    if time_slot_id:
        session.execute(
            update(TimeSlot)
            .where(TimeSlot.id == time_slot_id, TimeSlot.state.in_(RELEASABLE_SLOT_STATES))
            .values(state=SlotState.FREE.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
    session.add(AppointmentStatusEvent(
        appointment_id=appointment_id,
        old_status=None,
        new_status=AppointmentStatus.CANCELLED_BY_DOCTOR.value,
        created_by=HOLD_EXPIRY_ACTOR,
        created_at=now,
    ))
    emit_scheduling_event(session, EntityType.APPOINTMENT, appointment_id, SchedulingEventType.APPOINTMENT_UPDATED)
    return True


def run_hold_expiry(session: Session, now: Optional[datetime] = None) -> HoldExpiryResult:
    """
    Cancel active appointments whose confirmation hold has lapsed

    Each appointment is handled in its own transaction; a failure rolls
    back only that appointment and is reported in errors. Appointments
    confirmed, completed or re-held after the scan are skipped untouched.
    """
    now = now or datetime.now(timezone.utc)
    lapsed = (
        session.query(Appointment.id, Appointment.time_slot_id)
        .filter(
            Appointment.hold_expires_at.isnot(None),
            Appointment.hold_expires_at <= now,
            Appointment.appointment_status.is_(None),
        )
        .order_by(Appointment.hold_expires_at)
        .all()
    )
    session.commit()

    result = HoldExpiryResult(found=len(lapsed))
    for appointment_id, time_slot_id in lapsed:
        try:
            expired = _expire_hold(session, appointment_id, time_slot_id, now)
            session.commit()
            if expired:
                result.expired += 1
            else:
                result.skipped += 1
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to expire hold of appointment {appointment_id}: {e}", exc_info=True)
            result.errors.append(f"appointment {appointment_id}: {e}")

    logger.info(f"✓ Hold expiry: {result.expired}/{result.found} expired, {result.skipped} skipped, {len(result.errors)} errors")
    return result


def run_intent_expiry(session: Session, now: Optional[datetime] = None) -> int:
    """Bulk-expire open intents whose expires_at has passed"""
    now = now or datetime.now(timezone.utc)
    count = session.execute(
        update(SlotIntent)
        .where(
            SlotIntent.state == IntentState.OPEN.value,
            SlotIntent.expires_at.isnot(None),
            SlotIntent.expires_at < now,
        )
        .values(state=IntentState.EXPIRED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    session.commit()
    logger.info(f"✓ Intent expiry: {count} intents expired")
    return count
