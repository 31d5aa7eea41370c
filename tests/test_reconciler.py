"""Tests for the consistency reconciler and its worker thread."""

import logging
import time

from accessgate.errors import PersistenceError
from accessgate.services.reconciler import Reconciler, ReconciliationWorker

MAC = "aa:bb:cc:dd:ee:ff"
OTHER_MAC = "11:22:33:44:55:66"


def assert_enforced(manager):
    for session in manager.list_active():
        assert manager.driver.is_allowed(session.mac_address) is (not session.paused)


class TestRunOnce:
    """Tests for Reconciler.run_once."""

    def test_consistent_state_is_left_alone(self, manager, reconciler):
        """A pass over consistent state should change nothing."""
        manager.start(MAC, 1)
        manager.start(OTHER_MAC, 1)
        manager.pause(OTHER_MAC)
        report = reconciler.run_once()
        assert report.changes == 0
        assert report.errors == []

    def test_restores_missing_session(self, manager, reconciler):
        """A persisted session missing from memory should be restored."""
        started = manager.start(MAC, 1)
        manager.table.pop(MAC)
        manager.scheduler.cancel(MAC)
        manager.driver.forget(MAC)
        report = reconciler.run_once()
        assert report.restored == [MAC]
        assert manager.get_session(MAC).end_time == started.end_time
        assert manager.scheduler.deadline(MAC) == started.end_time
        assert manager.driver.is_allowed(MAC) is True

    def test_expired_missing_session_is_ended(self, manager, reconciler, clock):
        """A missing session that already expired is finalized, not restored."""
        manager.start(MAC, 1)
        manager.table.pop(MAC)
        clock.advance(minutes=31)
        report = reconciler.run_once()
        assert report.restored == []
        assert manager.store.get_active_session(MAC) is None
        assert manager.driver.is_allowed(MAC) is False

    def test_ends_ghost_session(self, manager, reconciler):
        """A memory session without an active record should be ended."""
        manager.start(MAC, 1)
        manager.store.update_session(MAC, active=False)
        report = reconciler.run_once()
        assert report.ghosts_ended == [MAC]
        assert manager.get_session(MAC) is None
        assert manager.driver.is_allowed(MAC) is False

    def test_self_heals_paused_but_allowed(self, manager, reconciler, caplog):
        """A paused device that is allowed gets blocked, with a log entry."""
        manager.start(MAC, 1)
        manager.pause(MAC)
        manager.driver.allow(MAC)
        with caplog.at_level(logging.WARNING, logger="accessgate.services.reconciler"):
            report = reconciler.run_once()
        assert report.firewall_corrections == [MAC]
        assert manager.driver.is_allowed(MAC) is False
        assert "Self-healing firewall for aa:bb:cc:dd:ee:ff" in caplog.text
        assert "allowed before=True after=False" in caplog.text
        assert_enforced(manager)

    def test_self_heals_active_but_blocked(self, manager, reconciler):
        """A running session whose rules were lost gets allowed again."""
        manager.start(MAC, 1, "10.0.0.20")
        manager.driver.block(MAC)
        report = reconciler.run_once()
        assert report.firewall_corrections == [MAC]
        assert manager.driver.is_allowed(MAC) is True

    def test_blocks_orphan_allow_rules(self, manager, reconciler):
        """A device allowed without any session should be blocked."""
        manager.driver.allow(OTHER_MAC)
        report = reconciler.run_once()
        assert report.orphans_blocked == [OTHER_MAC]
        assert manager.driver.is_allowed(OTHER_MAC) is False

    def test_is_idempotent(self, manager, reconciler):
        """A second pass after a repair should find nothing to do."""
        manager.start(MAC, 1)
        manager.pause(MAC)
        manager.driver.allow(MAC)
        reconciler.run_once()
        assert reconciler.run_once().changes == 0

    def test_firewall_errors_are_collected(self, manager, reconciler, backend):
        """Per-device failures are reported, not raised."""
        manager.start(MAC, 1)
        manager.driver.forget(MAC)
        backend.failing = True
        report = reconciler.run_once()
        assert len(report.errors) == 1
        assert MAC in report.errors[0]
        backend.failing = False
        assert reconciler.run_once().firewall_corrections == [MAC]

    def test_storage_errors_do_not_stop_firewall_repair(self, manager, reconciler, monkeypatch):
        """If storage cannot be read, the firewall steps still run."""
        manager.start(MAC, 1)
        manager.driver.forget(MAC)

        def fail():
            raise PersistenceError("database is locked")

        monkeypatch.setattr(manager.store, "get_active_sessions", fail)
        report = reconciler.run_once()
        assert report.firewall_corrections == [MAC]
        assert any("database is locked" in e for e in report.errors)


class TestWorker:
    """Tests for the background reconciliation worker."""

    def test_cycle_sweeps_then_reconciles(self, manager, reconciler, clock):
        """One cycle should end expired sessions and repair drift."""
        manager.start(MAC, 1)
        manager.start(OTHER_MAC, 5)
        manager.driver.forget(OTHER_MAC)
        clock.advance(minutes=31)
        worker = ReconciliationWorker(manager, reconciler, interval_seconds=60)
        report = worker.run_cycle()
        assert manager.is_session_active(MAC) is False
        assert report.firewall_corrections == [OTHER_MAC]

    def test_start_and_stop(self, manager):
        """The worker thread should stop promptly when asked."""
        worker = ReconciliationWorker(manager, Reconciler(manager), interval_seconds=0.01)
        worker.start()
        worker.stop()
        worker.stop()

    def test_thread_runs_cycles(self, manager, clock):
        """The running thread should repair drift without being called."""
        manager.driver.allow(MAC)
        worker = ReconciliationWorker(manager, Reconciler(manager), interval_seconds=0.01)
        worker.start()
        try:
            for _ in range(200):
                if not manager.driver.is_allowed(MAC):
                    break
                time.sleep(0.01)
        finally:
            worker.stop()
        assert manager.driver.is_allowed(MAC) is False
