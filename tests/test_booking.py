"""
Unit tests for no-show risk, booking guards and slot state rules
"""

from datetime import datetime, timedelta, timezone
from itertools import product

import pytest

from carepath.models import NoShowRiskConfig, SlotIntent
from carepath.modules.no_show_risk import compute_no_show_risk, load_coefficients
from carepath.schemas import NoShowRiskInput, PoolType
from carepath.services.booking import (
    can_consume_slot, check_one_hard_next, get_appointment_risk_settings, is_rebalance_eligible,
    mark_intent_converted, resolve_slot_state
)

from tests.conftest import T0


class TestNoShowRisk:
    """Test the additive risk formula"""

    def test_high_risk_booking(self):
        """Test two prior no-shows, long lead time and an 8am start"""
        risk = compute_no_show_risk(NoShowRiskInput(prior_no_shows_12m=2, lead_days=30, start_hour=8))

        assert risk.risk == pytest.approx(0.40)
        assert risk.requires_confirmation is True
        assert risk.hold_hours == 24

    def test_baseline(self):
        """Test a reliable patient booking a midday slot soon"""
        risk = compute_no_show_risk(NoShowRiskInput(prior_no_shows_12m=0, lead_days=3, start_hour=13))

        assert risk.risk == pytest.approx(0.05)
        assert risk.requires_confirmation is False
        assert risk.hold_hours == 48

    def test_monotonic_and_bounded(self):
        """Test more no-shows never lower the risk and results stay in [0, 0.95]"""
        for lead_days, hour in product([0, 21, 22, 90], [6, 7, 9, 10, 15]):
            previous = -1.0
            for no_shows in range(0, 6):
                risk = compute_no_show_risk(
                    NoShowRiskInput(prior_no_shows_12m=no_shows, lead_days=lead_days, start_hour=hour)
                ).risk
                assert 0.0 <= risk <= 0.95
                assert risk >= previous
                previous = risk

    def test_config_overrides(self, session):
        """Test no_show_risk_config rows override coefficients"""
        session.add(NoShowRiskConfig(key="base_risk", value=0.9))
        session.add(NoShowRiskConfig(key="unknown_key", value=1.0))
        session.flush()

        coefficients = load_coefficients(session)
        risk = compute_no_show_risk(NoShowRiskInput(prior_no_shows_12m=2, lead_days=30, start_hour=8), coefficients)

        assert coefficients.base_risk == 0.9
        assert risk.risk == pytest.approx(0.95)


class TestAppointmentRiskSettings:
    """Test risk settings returned to the booking flow"""

    def test_counts_recent_no_shows_and_clinic_hour(self, session, build):
        """Test only no-shows from the last 12 months count and the hour is clinic-local"""
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        episode = build.episode()
        build.appointment(episode, status="no_show", created_at=now - timedelta(days=30))
        build.appointment(episode, status="no_show", created_at=now - timedelta(days=400))

        # 06:30 UTC is 08:30 in Budapest (CEST)
        slot_start = datetime(2024, 6, 10, 6, 30, tzinfo=timezone.utc)
        settings = get_appointment_risk_settings(session, episode.patient_id, slot_start, now=now)

        assert settings.prior_no_shows_12m == 1
        assert settings.lead_days == 41
        assert settings.no_show_risk == pytest.approx(0.30)
        assert settings.requires_confirmation is True
        assert settings.hold_hours == 48
        assert settings.hold_expires_at == now + timedelta(hours=48)


class TestOneHardNext:
    """Test at most one future hard work appointment per episode"""

    def test_non_work_pools_always_allowed(self, session, build):
        episode = build.episode()
        build.appointment(episode, pool="work", start_time=T0 + timedelta(days=5))

        assert check_one_hard_next(session, episode.id, PoolType.CONSULT, now=T0).allowed is True
        assert check_one_hard_next(session, None, PoolType.WORK, now=T0).allowed is True

    def test_second_regular_work_appointment_rejected(self, session, build):
        """Test an existing future work appointment blocks another"""
        episode = build.episode()
        existing = build.appointment(episode, pool="work", start_time=T0 + timedelta(days=5))

        check = check_one_hard_next(session, episode.id, PoolType.WORK, now=T0)

        assert check.allowed is False
        assert check.existing_appointment_id == existing.id

    def test_past_and_cancelled_appointments_ignored(self, session, build):
        """Test only future active appointments count"""
        episode = build.episode()
        build.appointment(episode, pool="work", start_time=T0 - timedelta(days=5))
        build.appointment(episode, pool="work", start_time=T0 + timedelta(days=5), status="cancelled_by_patient")

        assert check_one_hard_next(session, episode.id, PoolType.WORK, now=T0).allowed is True

    def test_precommit_allows_two(self, session, build):
        """Test precommit steps may hold two future work appointments"""
        episode = build.episode()
        build.appointment(episode, pool="work", start_time=T0 + timedelta(days=5), requires_precommit=True)

        assert check_one_hard_next(session, episode.id, PoolType.WORK, requires_precommit=True, now=T0).allowed

        build.appointment(episode, pool="work", start_time=T0 + timedelta(days=9), requires_precommit=True)
        check = check_one_hard_next(session, episode.id, PoolType.WORK, requires_precommit=True, now=T0)

        assert check.allowed is False

    def test_precommit_rejected_next_to_regular(self, session, build):
        episode = build.episode()
        build.appointment(episode, pool="work", start_time=T0 + timedelta(days=5))

        check = check_one_hard_next(session, episode.id, PoolType.WORK, requires_precommit=True, now=T0)

        assert check.allowed is False


class TestSlotStates:
    """Test slot state precedence helpers"""

    def test_precedence(self):
        assert resolve_slot_state("free", "held") == "held"
        assert resolve_slot_state("held", "booked") == "booked"
        assert resolve_slot_state("booked", "blocked", "free") == "blocked"
        assert resolve_slot_state(None) == "free"

    def test_consume_and_rebalance(self):
        assert can_consume_slot("free") is True
        assert can_consume_slot(None) is True
        assert can_consume_slot("held") is False
        assert is_rebalance_eligible("free") is True
        assert is_rebalance_eligible("booked") is False


class TestIntentConversion:
    """Test linking intents to appointments"""

    def test_only_open_intents_convert(self, session, build):
        episode = build.episode()
        open_intent = build.intent(episode)
        expired = build.intent(episode, step_code="try_in_1", step_seq=2, state="expired")

        assert mark_intent_converted(session, open_intent.id, "appt-1") is True
        assert mark_intent_converted(session, expired.id, "appt-2") is False

        session.expire_all()
        converted = session.get(SlotIntent, open_intent.id)
        assert converted.state == "converted"
        assert converted.appointment_id == "appt-1"
