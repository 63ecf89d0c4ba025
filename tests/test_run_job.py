"""
Unit tests for the cron job runner's exit codes
"""

from contextlib import contextmanager

import pytest

from scripts import run_job


@pytest.fixture
def offline(monkeypatch):
    """Run jobs without a database"""
    @contextmanager
    def fake_scope():
        yield None

    monkeypatch.setattr(run_job, "wait_for_database", lambda: None)
    monkeypatch.setattr(run_job, "session_scope", fake_scope)
    return monkeypatch


class TestRunJob:
    """Test job dispatch and exit codes"""

    def test_success_exits_zero(self, offline):
        calls = []
        offline.setitem(run_job.JOBS, "rebalance", lambda session, args: calls.append(args.run_id) or ({}, []))

        assert run_job.run(["rebalance", "--run-id", "nightly-1"]) == 0
        assert calls == ["nightly-1"]

    def test_reported_errors_exit_one(self, offline):
        offline.setitem(run_job.JOBS, "hold-expiry", lambda session, args: ({"found": 1}, ["appointment a: boom"]))

        assert run_job.run(["hold-expiry"]) == 1

    def test_exception_exits_one(self, offline):
        def explode(session, args):
            raise RuntimeError("database gone")

        offline.setitem(run_job.JOBS, "outbox-drain", explode)

        assert run_job.run(["outbox-drain", "--batch-size", "10"]) == 1

    def test_unknown_job_rejected(self, offline):
        with pytest.raises(SystemExit):
            run_job.run(["reindex"])
