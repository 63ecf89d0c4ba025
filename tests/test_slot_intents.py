"""
Unit tests for the slot-intent projector, invalidation and expiry workers
"""

from datetime import timedelta

from carepath.models import (
    Appointment, AppointmentStatusEvent, CarePathway, SchedulingEvent, SlotIntent, TimeSlot
)
from carepath.schemas import InvalidationReason
from carepath.services.booking import mark_intent_converted
from carepath.services import expiry
from carepath.services.expiry import run_hold_expiry, run_intent_expiry
from carepath.services.intent_invalidation import (
    invalidate_intents_for_episode, invalidate_intents_for_episodes
)
from carepath.services.slot_intent_projector import project_remaining_steps

from tests.conftest import T0

CONSULT_DONE = T0 + timedelta(days=4)


def _intents(session, episode_id):
    session.expire_all()
    return {
        i.step_seq: i for i in session.query(SlotIntent).filter(SlotIntent.episode_id == episode_id)
    }


def _consulted(build):
    episode = build.episode(pathway=build.pathway())
    build.appointment(episode, pool="consult", step_code="consult_1", step_seq=0,
                      start_time=CONSULT_DONE, status="completed")
    return episode


class TestProjector:
    """Test projection of remaining pathway steps"""

    def test_projects_uncovered_steps_with_cumulative_anchor(self, session, build):
        """Test each step is anchored at the last completion plus skipped offsets"""
        episode = _consulted(build)

        result = project_remaining_steps(session, episode.id, now=T0)
        intents = _intents(session, episode.id)

        assert result.projected == 4
        assert sorted(intents) == [1, 2, 3, 4]
        assert intents[1].window_start == CONSULT_DONE + timedelta(days=7)
        assert intents[1].window_end == CONSULT_DONE + timedelta(days=28)
        assert intents[2].window_start == CONSULT_DONE + timedelta(days=14 + 7)
        assert intents[3].window_end == CONSULT_DONE + timedelta(days=28 + 28)
        assert intents[1].expires_at == intents[1].window_end + timedelta(days=30)
        assert all(i.state == "open" for i in intents.values())
        assert intents[1].source_pathway_hash == result.pathway_hash

    def test_idempotent(self, session, build):
        """Test re-running with unchanged inputs leaves identical rows"""
        episode = _consulted(build)

        project_remaining_steps(session, episode.id, now=T0)
        before = {seq: (i.id, i.window_start, i.window_end, i.state) for seq, i in _intents(session, episode.id).items()}
        second = project_remaining_steps(session, episode.id, now=T0)
        after = {seq: (i.id, i.window_start, i.window_end, i.state) for seq, i in _intents(session, episode.id).items()}

        assert second.expired == 0
        assert before == after

    def test_active_appointment_covers_step(self, session, build):
        """Test a booked step expires its open intent"""
        episode = _consulted(build)
        project_remaining_steps(session, episode.id, now=T0)
        build.appointment(episode, pool="work", step_code="impression_1", step_seq=1,
                          start_time=CONSULT_DONE + timedelta(days=10))

        result = project_remaining_steps(session, episode.id, now=T0)
        intents = _intents(session, episode.id)

        assert result.expired == 1
        assert intents[1].state == "expired"
        assert intents[2].state == "open"

    def test_converted_intents_untouched(self, session, build):
        """Test converted intents survive pathway changes"""
        episode = _consulted(build)
        project_remaining_steps(session, episode.id, now=T0)
        converted = _intents(session, episode.id)[1]
        mark_intent_converted(session, converted.id, "appt-1")
        original_window = converted.window_end

        pathway = session.get(CarePathway, episode.care_pathway_id)
        steps = [dict(s) for s in pathway.steps_json]
        steps[1]["default_days_offset"] = 30
        pathway.steps_json = steps
        session.flush()
        result = project_remaining_steps(session, episode.id, now=T0)
        intents = _intents(session, episode.id)

        assert intents[1].state == "converted"
        assert intents[1].window_end == original_window
        assert intents[2].source_pathway_hash == result.pathway_hash
        assert intents[2].state == "open"

    def test_reasons(self, session, build):
        """Test missing episodes and pathways are reported"""
        assert project_remaining_steps(session, "missing", now=T0).reason == "NO_EPISODE"
        assert project_remaining_steps(session, build.episode().id, now=T0).reason == "NO_PATHWAY"


class TestInvalidation:
    """Test reason-tagged intent invalidation"""

    def test_pathway_change_requests_reprojection(self, session, build):
        episode = _consulted(build)
        project_remaining_steps(session, episode.id, now=T0)

        count = invalidate_intents_for_episode(session, episode.id, InvalidationReason.PATHWAY_CHANGED, now=T0)
        session.flush()

        assert count == 4
        events = session.query(SchedulingEvent).filter(SchedulingEvent.entity_id == episode.id).all()
        assert [e.event_type for e in events] == ["REPROJECT_INTENTS"]

    def test_closed_episode_emits_nothing(self, session, build):
        episode = _consulted(build)
        project_remaining_steps(session, episode.id, now=T0)

        count = invalidate_intents_for_episode(session, episode.id, InvalidationReason.EPISODE_CLOSED, now=T0)
        session.flush()

        assert count == 4
        assert session.query(SchedulingEvent).count() == 0
        assert invalidate_intents_for_episode(session, episode.id, InvalidationReason.EPISODE_CLOSED) == 0

    def test_bulk(self, session, build):
        first = build.episode()
        second = build.episode()
        build.intent(first)
        build.intent(second)

        assert invalidate_intents_for_episodes(session, [first.id, second.id], InvalidationReason.PROVIDER_CHANGED) == 2
        assert invalidate_intents_for_episodes(session, [], InvalidationReason.PROVIDER_CHANGED) == 0


class TestExpiryWorkers:
    """Test hold and intent expiry"""

    def test_hold_expiry_releases_slot(self, session, build):
        """Test a lapsed hold cancels the appointment and frees its slot"""
        episode = build.episode()
        slot = build.slot(T0 + timedelta(days=3), state="held")
        lapsed = build.appointment(episode, time_slot_id=slot.id, start_time=slot.start_time,
                                   hold_expires_at=T0 - timedelta(hours=1))
        blocked_slot = build.slot(T0 + timedelta(days=4), state="blocked")
        build.appointment(episode, time_slot_id=blocked_slot.id, hold_expires_at=T0 - timedelta(hours=1))
        build.appointment(episode, hold_expires_at=T0 + timedelta(hours=5))
        session.commit()

        result = run_hold_expiry(session, now=T0)
        session.expire_all()

        assert result.found == 2
        assert result.expired == 2
        assert result.errors == []
        appointment = session.get(Appointment, lapsed.id)
        assert appointment.appointment_status == "cancelled_by_doctor"
        assert appointment.completion_notes == "hold_expired"
        assert appointment.hold_expires_at is None
        assert session.get(TimeSlot, slot.id).state == "free"
        assert session.get(TimeSlot, blocked_slot.id).state == "blocked"
        audit = session.query(AppointmentStatusEvent).filter_by(appointment_id=lapsed.id).one()
        assert audit.created_by == "hold-expiry-worker"
        assert session.query(SchedulingEvent).filter_by(entity_id=lapsed.id).count() == 1

    def test_hold_confirmed_after_scan_is_skipped(self, session, build, monkeypatch):
        """Test a hold cleared between the scan and the cancel leaves the booking alone"""
        episode = build.episode()
        slot = build.slot(T0 + timedelta(days=3), state="held")
        appointment = build.appointment(episode, time_slot_id=slot.id, start_time=slot.start_time,
                                        hold_expires_at=T0 - timedelta(hours=1))
        session.commit()
        original = expiry._expire_hold

        def confirm_then_expire(session, appointment_id, time_slot_id, now):
            session.get(Appointment, appointment_id).hold_expires_at = None
            session.get(TimeSlot, time_slot_id).state = "booked"
            session.flush()
            return original(session, appointment_id, time_slot_id, now)

        monkeypatch.setattr(expiry, "_expire_hold", confirm_then_expire)
        result = run_hold_expiry(session, now=T0)
        session.expire_all()

        assert result.found == 1
        assert result.expired == 0
        assert result.skipped == 1
        assert session.get(Appointment, appointment.id).appointment_status is None
        assert session.get(TimeSlot, slot.id).state == "booked"
        assert session.query(AppointmentStatusEvent).count() == 0
        assert session.query(SchedulingEvent).count() == 0

    def test_completed_appointment_is_not_released(self, session, build):
        episode = build.episode()
        slot = build.slot(T0 - timedelta(days=1), state="booked")
        appointment = build.appointment(episode, time_slot_id=slot.id, start_time=slot.start_time,
                                        status="completed", hold_expires_at=T0 - timedelta(hours=1))

        assert expiry._expire_hold(session, appointment.id, slot.id, T0) is False

        session.expire_all()
        assert session.get(Appointment, appointment.id).appointment_status == "completed"
        assert session.get(TimeSlot, slot.id).state == "booked"
        assert session.query(AppointmentStatusEvent).count() == 0

    def test_hold_extended_after_scan_is_not_released(self, session, build):
        episode = build.episode()
        slot = build.slot(T0 + timedelta(days=3), state="held")
        appointment = build.appointment(episode, time_slot_id=slot.id, start_time=slot.start_time,
                                        hold_expires_at=T0 + timedelta(hours=2))

        assert expiry._expire_hold(session, appointment.id, slot.id, T0) is False

        session.expire_all()
        assert session.get(TimeSlot, slot.id).state == "held"

    def test_intent_expiry(self, session, build):
        """Test open intents past expires_at expire and others are untouched"""
        episode = build.episode()
        stale = build.intent(episode, expires_at=T0 - timedelta(days=1))
        fresh = build.intent(episode, step_code="try_in_1", step_seq=2, expires_at=T0 + timedelta(days=1))
        converted = build.intent(episode, step_code="delivery", step_seq=3, state="converted",
                                 expires_at=T0 - timedelta(days=1))

        assert run_intent_expiry(session, now=T0) == 1

        session.expire_all()
        assert session.get(SlotIntent, stale.id).state == "expired"
        assert session.get(SlotIntent, fresh.id).state == "open"
        assert session.get(SlotIntent, converted.id).state == "converted"
