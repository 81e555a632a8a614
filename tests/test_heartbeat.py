"""
Tests for the maintenance scheduler.
"""

import threading
import time
from unittest.mock import patch

import pytest

from sparkmarket.core import heartbeat
from sparkmarket.core.heartbeat import (
    get_status,
    list_tasks,
    register_daily_maintenance,
    register_task,
    reset_task,
    run_pending,
    run_task,
    should_run_task,
    start,
    stop,
    unregister_task,
)


@pytest.fixture(autouse=True)
def reset_heartbeat():
    """Reset heartbeat state between tests."""
    heartbeat.tasks.clear()
    heartbeat.running = False
    heartbeat.shutdown_event = None
    yield
    heartbeat.tasks.clear()
    heartbeat.running = False
    heartbeat.shutdown_event = None


class TestRegistration:

    def test_register_and_list(self):
        register_task("sweep", 30, lambda: None)
        assert list_tasks() == ["sweep"]

    def test_non_callable_rejected(self):
        with pytest.raises(ValueError, match="Task function must be callable"):
            register_task("bad", 30, "not_callable")

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError, match="Interval must be >= 1 second"):
            register_task("bad", 0, lambda: None)

    def test_same_name_replaces(self):
        register_task("dup", 30, lambda: None)
        register_task("dup", 60, lambda: None)
        assert len(list_tasks()) == 1
        assert heartbeat.tasks["dup"]["interval"] == 60

    def test_unregister(self):
        register_task("sweep", 30, lambda: None)
        unregister_task("sweep")
        unregister_task("never-registered")
        assert list_tasks() == []

    def test_inconsistent_env_rejected(self, monkeypatch):
        monkeypatch.setenv("HEARTBEAT_ENABLED", "true")
        monkeypatch.delenv("MAINTENANCE_ENABLED", raising=False)
        with pytest.raises(ValueError, match="MAINTENANCE_ENABLED"):
            register_task("sweep", 30, lambda: None)

    def test_daily_maintenance_registration(self):
        register_daily_maintenance(3600)
        assert heartbeat.tasks["daily_maintenance"]["interval"] == 3600


class TestScheduling:

    def test_first_run_is_due(self):
        assert should_run_task("t", {"last_run": None, "interval": 30})

    def test_not_due_inside_interval(self):
        assert not should_run_task("t", {"last_run": time.monotonic(), "interval": 30})

    def test_due_after_interval(self):
        assert should_run_task("t", {"last_run": time.monotonic() - 31, "interval": 30})

    def test_run_task_records_last_run(self):
        calls = []
        info = {"func": lambda: calls.append(1), "interval": 30, "last_run": None}
        run_task("t", info)
        assert calls == [1]
        assert info["last_run"] is not None

    def test_failure_still_records_last_run(self):
        def broken():
            raise ValueError("nope")

        info = {"func": broken, "interval": 30, "last_run": None}
        with pytest.raises(RuntimeError, match="Task 't' failed"):
            run_task("t", info)
        assert info["last_run"] is not None

    def test_run_pending_isolates_failures(self):
        calls = []

        def broken():
            raise ValueError("nope")

        register_task("broken", 30, broken)
        register_task("healthy", 30, lambda: calls.append(1))

        run_pending()
        run_pending()

        assert calls == [1]

    def test_reset_forces_rerun(self):
        calls = []
        register_task("t", 30, lambda: calls.append(1))
        run_pending()
        reset_task("t")
        run_pending()
        assert calls == [1, 1]


class TestLoop:

    def test_start_is_noop_when_disabled(self, monkeypatch):
        monkeypatch.delenv("HEARTBEAT_ENABLED", raising=False)
        start()
        assert heartbeat.running is False

    def test_start_and_stop(self, monkeypatch):
        monkeypatch.setenv("HEARTBEAT_ENABLED", "true")
        monkeypatch.setenv("MAINTENANCE_ENABLED", "true")
        ran = threading.Event()
        register_task("t", 60, ran.set)

        thread = threading.Thread(target=start, kwargs={"poll_interval_sec": 0.01})
        thread.start()
        assert ran.wait(2)
        stop()
        thread.join(2)

        assert not thread.is_alive()
        assert heartbeat.running is False

    def test_status_when_disabled(self, monkeypatch):
        monkeypatch.delenv("HEARTBEAT_ENABLED", raising=False)
        assert get_status()["status"] == "disabled"

    def test_status_lists_tasks(self, monkeypatch):
        monkeypatch.setenv("HEARTBEAT_ENABLED", "true")
        monkeypatch.setenv("MAINTENANCE_ENABLED", "true")
        register_task("t", 60, lambda: None)

        with patch("sparkmarket.core.heartbeat.running", True):
            status = get_status()

        assert status["status"] == "running"
        assert status["tasks"]["t"]["interval_sec"] == 60
        assert status["tasks"]["t"]["next_run"] is None
