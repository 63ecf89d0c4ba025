"""
Unit tests for the next-step/forecast caches, the forecast model and read queries
"""

from datetime import date, timedelta

import pytest

from carepath.models import CarePathwayAnalytics, EpisodeCareTeam
from carepath.modules.forecast import compute_episode_forecast, compute_inputs_hash
from carepath.services.cache_refresh import (
    has_free_slot_in_window, refresh_episode_forecast_cache, refresh_episode_next_step_cache
)
from carepath.services.queries import (
    get_forecast_cache, get_next_step_cache, list_next_step_cache, list_slot_intents
)

from tests.conftest import T0

WORK_ONLY = [{"step_code": "impression_1", "pool": "work", "duration_minutes": 45, "default_days_offset": 14}]
NOW = T0 + timedelta(days=1)


class TestNextStepCache:
    """Test the worklist cache row"""

    def test_work_step_without_capacity_is_blocked(self, session, build):
        """Test a work step with no free slot keeps its window but is blocked"""
        episode = build.episode(pathway=build.pathway(WORK_ONLY))

        values = refresh_episode_next_step_cache(session, episode.id, NOW)
        row = get_next_step_cache(session, episode.id)

        assert values["status"] == "blocked"
        assert row.blocked_code == "BLOCKED_CAPACITY"
        assert row.step_code == "impression_1"
        assert row.window_start == T0 + timedelta(days=7)

    def test_free_untagged_slot_makes_it_ready(self, session, build):
        """Test an untagged free slot inside the window counts as capacity"""
        episode = build.episode(pathway=build.pathway(WORK_ONLY))
        build.slot(T0 + timedelta(days=9))

        refresh_episode_next_step_cache(session, episode.id, NOW)
        row = get_next_step_cache(session, episode.id)

        assert row.status == "ready"
        assert row.blocked_code is None
        assert row.overdue_days == 0
        assert row.duration_minutes == 45

    def test_slot_usability(self, session, build):
        """Test pool tag, length and past slots are respected"""
        window_start, window_end = T0, T0 + timedelta(days=20)
        build.slot(T0 + timedelta(days=3), purpose="consult")
        build.slot(T0 + timedelta(days=4), purpose="work", duration=30)
        build.slot(T0 + timedelta(hours=12), purpose="work")

        assert has_free_slot_in_window(session, "work", window_start, window_end, 45, NOW) is False

        build.slot(T0 + timedelta(days=5), purpose="flexible", duration=60)

        assert has_free_slot_in_window(session, "work", window_start, window_end, 45, NOW) is True

    def test_overdue_and_complete(self, session, build):
        """Test overdue days and pathway completion"""
        consult_only = [{"step_code": "consult_1", "pool": "consult", "default_days_offset": 7}]
        late = build.episode(pathway=build.pathway(consult_only))
        done = build.episode(pathway=build.pathway(WORK_ONLY))
        build.appointment(done, start_time=T0, status="completed")

        # Consult window ends T0+21
        later = T0 + timedelta(days=23, hours=1)
        refresh_episode_next_step_cache(session, late.id, later)
        refresh_episode_next_step_cache(session, done.id, later)

        late_row = get_next_step_cache(session, late.id)
        assert late_row.status == "ready"
        assert late_row.overdue_days == 3
        assert get_next_step_cache(session, done.id).status == "complete"

    def test_blocked_engine_answer(self, session, build):
        episode = build.episode()

        refresh_episode_next_step_cache(session, episode.id, NOW)

        row = get_next_step_cache(session, episode.id)
        assert row.status == "blocked"
        assert row.blocked_code == "NO_CARE_PATHWAY"
        assert row.step_code is None

    def test_provider_falls_back_to_primary_care_team(self, session, build):
        """Test unassigned episodes land on the primary care-team member's worklist"""
        provider = build.provider()
        episode = build.episode(pathway=build.pathway())
        session.add(EpisodeCareTeam(episode_id=episode.id, provider_id=provider.id, is_primary=True))
        session.flush()

        refresh_episode_next_step_cache(session, episode.id, NOW)

        assert get_next_step_cache(session, episode.id).provider_id == provider.id
        assert [r.episode_id for r in list_next_step_cache(session, provider_id=provider.id)] == [episode.id]

    def test_missing_episode(self, session):
        assert refresh_episode_next_step_cache(session, "missing", NOW) is None
        assert refresh_episode_forecast_cache(session, "missing", NOW) is None


class TestForecast:
    """Test remaining-visit forecasts"""

    def test_heuristic_from_work_steps(self, session, build):
        """Test three work steps give 2 visits at p50 and 3 at p80"""
        episode = build.episode(pathway=build.pathway(), stage="STAGE_0")

        forecast = compute_episode_forecast(session, episode.id, NOW)

        assert forecast.status == "ready"
        assert forecast.next_step == "consult_1"
        assert forecast.remaining_visits_p50 == 2
        assert forecast.remaining_visits_p80 == 3
        assert forecast.completion_end_p50 == T0 + timedelta(days=28)
        assert forecast.completion_end_p80 == T0 + timedelta(days=21 + 42)
        assert "NO_ANALYTICS_FALLBACK" in forecast.assumptions

    def test_calibrated_analytics_win(self, session, build):
        """Test pathway analytics replace the heuristic and the cadence"""
        pathway = build.pathway()
        episode = build.episode(pathway=pathway, stage="STAGE_0")
        session.add(CarePathwayAnalytics(
            care_pathway_id=pathway.id, n_episodes=12, median_visits=2.5, p80_visits=2.8,
            median_cadence_days=10.0, p80_cadence_days=12.4, is_insufficient_sample=False,
        ))
        session.flush()

        forecast = compute_episode_forecast(session, episode.id, NOW)

        assert forecast.remaining_visits_p50 == 3
        assert forecast.remaining_visits_p80 == 3
        assert forecast.completion_end_p50 == T0 + timedelta(days=30)
        assert "calibrated-pathway" in forecast.assumptions

    def test_blocked_and_complete(self, session, build):
        blocked = build.episode()
        done = build.episode(pathway=build.pathway(WORK_ONLY))
        build.appointment(done, start_time=T0, status="completed")

        assert compute_episode_forecast(session, blocked.id, NOW).status == "blocked"
        complete = compute_episode_forecast(session, done.id, NOW)
        assert complete.status == "complete"
        assert complete.remaining_visits_p50 == 0

    def test_inputs_hash_tracks_inputs(self, session, build):
        """Test the hash is stable across reruns and changes with the episode's data"""
        episode = build.episode(pathway=build.pathway())
        first = compute_inputs_hash(session, episode.id, "abc", NOW)

        assert compute_inputs_hash(session, episode.id, "abc", NOW) == first
        assert compute_inputs_hash(session, episode.id, "def", NOW) != first

        build.appointment(episode, start_time=T0, status="completed")

        assert compute_inputs_hash(session, episode.id, "abc", NOW) != first

    def test_forecast_cache_row(self, session, build):
        episode = build.episode(pathway=build.pathway(), stage="STAGE_0")

        refresh_episode_forecast_cache(session, episode.id, NOW)
        row = get_forecast_cache(session, episode.id)

        assert row.status == "ready"
        assert row.remaining_visits_p80 == 3
        assert len(row.inputs_hash) == 64


class TestQueries:
    """Test worklist and intent listings"""

    def test_worklist_date_range(self, session, build):
        """Test only windows overlapping the range are listed"""
        first = build.episode(pathway=build.pathway(WORK_ONLY))
        refresh_episode_next_step_cache(session, first.id, NOW)

        inside = list_next_step_cache(session, range_start=date(2024, 1, 20), range_end=date(2024, 1, 31))
        outside = list_next_step_cache(session, range_start=date(2024, 3, 1), range_end=date(2024, 3, 31))

        assert [r.episode_id for r in inside] == [first.id]
        assert outside == []
        assert list_next_step_cache(session, status="ready") == []

    def test_intents_by_provider_default_to_open(self, session, build):
        provider = build.provider()
        episode = build.episode(provider=provider)
        open_intent = build.intent(episode)
        build.intent(episode, step_code="try_in_1", step_seq=2, state="expired")

        listed = list_slot_intents(session, provider_id=provider.id)
        all_states = list_slot_intents(session, episode_id=episode.id)

        assert [i.id for i in listed] == [open_intent.id]
        assert len(all_states) == 2

    def test_intents_need_a_scope(self, session):
        with pytest.raises(ValueError):
            list_slot_intents(session)
