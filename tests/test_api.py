"""Tests for all HTTP API endpoints.

Covers the health check and the session endpoints, including the error
mapping for state-machine violations and enforcement failures.
"""

from datetime import timedelta

MAC = "aa:bb:cc:dd:ee:ff"
OTHER_MAC = "11:22:33:44:55:66"
BASE = "/api/v1/sessions"


def _start(client, mac="AA:BB:CC:DD:EE:FF", pesos=5, ip="10.0.0.20"):
    return client.post(BASE, json={"mac_address": mac, "pesos": pesos, "ip_address": ip})


class TestHealthCheck:
    """Tests for the GET / health check endpoint."""

    def test_returns_healthy_status(self, client):
        """Health check should return status 'healthy' and the enforcement mode."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["enforcement"] == "simulated"
        assert data["active_sessions"] == 0


class TestStartEndpoints:
    """Tests for POST /api/v1/sessions, /timed and /credit."""

    def test_start_session(self, client, clock):
        """A paid start should return the new session with its remaining time."""
        response = _start(client)
        assert response.status_code == 201
        data = response.json()
        assert data["mac_address"] == MAC
        assert data["minutes"] == 240
        assert data["time_remaining"] == 240 * 60
        assert data["paused"] is False
        assert data["end_time"] == (clock.now + timedelta(minutes=240)).isoformat()

    def test_duplicate_start_returns_409(self, client):
        """Starting twice for one device should return 409."""
        _start(client)
        response = _start(client, pesos=1)
        assert response.status_code == 409
        assert "already exists" in response.json()["detail"]

    def test_invalid_mac_returns_400(self, client):
        """A malformed MAC should return 400."""
        response = _start(client, mac="zz:zz")
        assert response.status_code == 400
        assert "Invalid MAC address" in response.json()["detail"]

    def test_non_positive_pesos_rejected(self, client):
        """Request validation should reject zero pesos."""
        assert _start(client, pesos=0).status_code == 422

    def test_firewall_failure_returns_502(self, client, backend):
        """If access cannot be confirmed the caller gets 502."""
        backend.failing = True
        response = _start(client)
        assert response.status_code == 502
        assert "Enforcement failed" in response.json()["detail"]

    def test_timed_session(self, client):
        """A timed start should grant the requested minutes."""
        response = client.post(f"{BASE}/timed", json={"mac_address": MAC, "minutes": 45})
        assert response.status_code == 201
        assert response.json()["minutes"] == 45
        assert response.json()["pesos"] == 0

    def test_credit_starts_then_extends(self, client):
        """Credit events should start a session and then extend it."""
        first = client.post(f"{BASE}/credit", json={"mac_address": MAC, "pesos": 1})
        assert first.json()["action"] == "started"
        second = client.post(f"{BASE}/credit", json={"mac_address": MAC, "pesos": 1})
        assert second.json()["action"] == "extended"
        assert second.json()["session"]["minutes"] == 60


class TestSessionTransitions:
    """Tests for extend, pause, resume, end and IP updates."""

    def test_extend(self, client):
        """Extending should add minutes to the session."""
        _start(client)
        response = client.post(f"{BASE}/{MAC}/extend", json={"minutes": 15, "pesos": 1})
        assert response.status_code == 200
        assert response.json()["minutes"] == 255
        assert response.json()["pesos"] == 6

    def test_extend_missing_returns_404(self, client):
        """Extending an unknown device should return 404."""
        response = client.post(f"{BASE}/{MAC}/extend", json={"minutes": 15})
        assert response.status_code == 404

    def test_pause_and_resume(self, client, clock):
        """Pause blocks the device; resume credits the paused time back."""
        start = _start(client).json()
        paused = client.post(f"{BASE}/{MAC}/pause")
        assert paused.status_code == 200
        assert paused.json()["paused"] is True
        assert client.get(f"{BASE}/{MAC}/firewall").json()["is_allowed"] is False

        clock.advance(seconds=90)
        resumed = client.post(f"{BASE}/{MAC}/resume")
        assert resumed.status_code == 200
        data = resumed.json()
        assert data["paused"] is False
        assert data["paused_duration"] == 90.0
        assert data["time_remaining"] == start["time_remaining"]
        assert client.get(f"{BASE}/{MAC}/firewall").json()["is_allowed"] is True

    def test_pause_rejections(self, client):
        """Pausing an unknown or paused device should name the reason."""
        missing = client.post(f"{BASE}/{MAC}/pause")
        assert missing.status_code == 404
        assert "not found" in missing.json()["detail"]
        _start(client)
        client.post(f"{BASE}/{MAC}/pause")
        again = client.post(f"{BASE}/{MAC}/pause")
        assert again.status_code == 409
        assert "already paused" in again.json()["detail"]

    def test_resume_not_paused_returns_409(self, client):
        """Resuming a running session should return 409."""
        _start(client)
        response = client.post(f"{BASE}/{MAC}/resume")
        assert response.status_code == 409
        assert "not paused" in response.json()["detail"]

    def test_end_session(self, client):
        """DELETE should end the session and block the device."""
        _start(client)
        assert client.delete(f"{BASE}/{MAC}").status_code == 204
        assert client.get(f"{BASE}/{MAC}").status_code == 404
        assert client.get(f"{BASE}/{MAC}/firewall").json()["is_allowed"] is False

    def test_end_unknown_is_idempotent(self, client):
        """Ending a device without a session should still succeed."""
        assert client.delete(f"{BASE}/{OTHER_MAC}").status_code == 204

    def test_update_ip(self, client):
        """PUT ip should move the IP index to the new address."""
        _start(client)
        response = client.put(f"{BASE}/{MAC}/ip", json={"ip_address": "10.0.0.99"})
        assert response.status_code == 200
        assert client.get(f"{BASE}/by-ip/10.0.0.99").json()["mac_address"] == MAC
        assert client.get(f"{BASE}/by-ip/10.0.0.20").status_code == 404


class TestQueries:
    """Tests for the read endpoints."""

    def test_get_session(self, client):
        """A session should be retrievable with a hyphenated MAC."""
        _start(client)
        response = client.get(f"{BASE}/AA-BB-CC-DD-EE-FF")
        assert response.status_code == 200
        assert response.json()["ip_address"] == "10.0.0.20"

    def test_list_sessions(self, client):
        """The list should include every active session."""
        _start(client)
        _start(client, mac=OTHER_MAC, ip=None)
        data = client.get(BASE).json()
        assert data["count"] == 2
        assert [s["mac_address"] for s in data["data"]] == [OTHER_MAC, MAC]

    def test_remaining_for_unknown_device(self, client):
        """An unknown device should report zero seconds, not 404."""
        response = client.get(f"{BASE}/{MAC}/remaining")
        assert response.status_code == 200
        assert response.json() == {
            "mac_address": MAC,
            "active": False,
            "paused": False,
            "time_remaining": 0,
        }

    def test_remaining_frozen_while_paused(self, client, clock):
        """Remaining time should not change while paused."""
        _start(client)
        client.post(f"{BASE}/{MAC}/pause")
        before = client.get(f"{BASE}/{MAC}/remaining").json()["time_remaining"]
        clock.advance(seconds=2)
        assert client.get(f"{BASE}/{MAC}/remaining").json()["time_remaining"] == before

    def test_stats(self, client):
        """Stats should include revenue for sessions started today."""
        _start(client, pesos=5)
        _start(client, mac=OTHER_MAC, pesos=1, ip=None)
        data = client.get(f"{BASE}/stats").json()
        assert data["total_sessions"] == 2
        assert data["active_sessions"] == 2
        assert data["total_revenue"] == 6
        assert data["today_revenue"] == 6

    def test_revenue_for_day(self, client):
        """Revenue for a day should sum sessions started on it."""
        _start(client, pesos=10)
        response = client.get(f"{BASE}/revenue/2024-03-01")
        assert response.json() == {"date": "2024-03-01", "revenue": 10}
        assert client.get(f"{BASE}/revenue/not-a-date").status_code == 422

    def test_reconcile(self, client, access_engine):
        """A manual reconcile should report the repairs it made."""
        _start(client)
        access_engine.driver.forget(MAC)
        access_engine.driver.allow(OTHER_MAC)
        data = client.post(f"{BASE}/reconcile").json()
        assert data["firewall_corrections"] == [MAC]
        assert data["orphans_blocked"] == [OTHER_MAC]
        assert data["errors"] == []

    def test_firewall_status_invalid_mac(self, client):
        """A malformed MAC in the path should return 400."""
        assert client.get(f"{BASE}/bogus/firewall").status_code == 400


class TestWithoutEngine:
    """Tests for requests arriving before the engine exists."""

    def test_returns_503(self):
        """Session routes should answer 503 when no engine is attached."""
        from fastapi import FastAPI
        from fastapi.testclient import TestClient

        from accessgate.routers.sessions import router

        bare = FastAPI()
        bare.include_router(router)
        with TestClient(bare) as c:
            assert c.get(BASE).status_code == 503
