"""Tests for the admin/health HTTP API."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from cryptobot.database import engine
from cryptobot.main import app
from cryptobot.models.position import Position, SIDE_LONG
from cryptobot.models.system_log import SystemLog


@pytest.fixture
def client(db):
    yield TestClient(app)
    if hasattr(app.state, "runtime"):
        del app.state.runtime


def _open_position(pair_id, strategy_name="momentum"):
    with Session(engine) as session:
        session.add(Position(pair_id=pair_id, strategy_name=strategy_name, side=SIDE_LONG,
                             quantity=Decimal("1"), entry_price=Decimal("100"), current_price=Decimal("100")))
        session.commit()


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------

class TestSystem:
    def test_health_engine_disabled(self, client):
        resp = client.get("/api/system/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "engine": "disabled"}

    def test_health_stale_gateway_is_503(self, client):
        app.state.runtime = MagicMock()
        app.state.runtime.health.return_value = {"healthy": False, "gateway": {"status": "failed", "stale": True}}

        resp = client.get("/api/system/health")

        assert resp.status_code == 503
        assert resp.json()["gateway"]["status"] == "failed"

    def test_health_ok(self, client):
        app.state.runtime = MagicMock()
        app.state.runtime.health.return_value = {"healthy": True, "gateway": {"status": "connected", "stale": False}}
        assert client.get("/api/system/health").status_code == 200

    def test_tick_requires_engine(self, client):
        assert client.post("/api/system/tick").status_code == 503

    def test_scheduler_status(self, client):
        body = client.get("/api/system/scheduler").json()
        assert body["running"] is False

    def test_logs_filter(self, client):
        with Session(engine) as session:
            session.add(SystemLog(level="ERROR", component="x", event="POSITION_OPEN_FAILED", message="a"))
            session.add(SystemLog(level="INFO", component="x", event="POSITION_OPENED", message="b"))
            session.commit()

        rows = client.get("/api/system/logs", params={"event": "position_opened"}).json()

        assert [r["message"] for r in rows] == ["b"]


# ---------------------------------------------------------------------------
# Pairs
# ---------------------------------------------------------------------------

class TestPairs:
    def test_create_and_list(self, client):
        resp = client.post("/api/pairs", json={"symbol": "eth/usdt", "base_asset": "eth", "min_qty": "0.01"})
        assert resp.status_code == 201
        assert resp.json()["symbol"] == "ETHUSDT"
        assert Decimal(resp.json()["min_qty"]) == Decimal("0.01")

        assert [p["symbol"] for p in client.get("/api/pairs").json()] == ["ETHUSDT"]

    def test_duplicate_symbol_conflict(self, client):
        client.post("/api/pairs", json={"symbol": "BTCUSDT", "base_asset": "BTC"})
        assert client.post("/api/pairs", json={"symbol": "BTCUSDT", "base_asset": "BTC"}).status_code == 409

    def test_quantity_bounds_validated(self, client):
        resp = client.post("/api/pairs", json={"symbol": "BTCUSDT", "base_asset": "BTC",
                                               "min_qty": "2", "max_qty": "1"})
        assert resp.status_code == 422

        resp = client.post("/api/pairs", json={"symbol": "BTCUSDT", "base_asset": "BTC",
                                               "min_qty": "0.5", "max_position_size": "0.1"})
        assert resp.status_code == 422

    def test_partial_update_cannot_break_bounds(self, client, pair):
        resp = client.put(f"/api/pairs/{pair.id}", json={"max_position_size": "0.0001"})
        assert resp.status_code == 422
        detail = resp.json()["detail"]
        assert "max_position_size must be >= min_qty" in detail[0]["msg"]
        assert "input" not in detail[0]

    def test_update_keeps_bounds_when_valid(self, client, pair):
        resp = client.put(f"/api/pairs/{pair.id}", json={"max_position_size": "2"})
        assert resp.status_code == 200
        assert float(resp.json()["max_position_size"]) == 2

    def test_deactivate_with_open_position_conflict(self, client, pair):
        _open_position(pair.id)

        assert client.post(f"/api/pairs/{pair.id}/toggle").status_code == 409
        assert client.put(f"/api/pairs/{pair.id}", json={"is_active": False}).status_code == 409

    def test_toggle(self, client, pair):
        assert client.post(f"/api/pairs/{pair.id}/toggle").json()["is_active"] is False
        assert client.post(f"/api/pairs/{pair.id}/toggle").json()["is_active"] is True

    def test_risk_metrics(self, client, pair):
        _open_position(pair.id)
        body = client.get(f"/api/pairs/{pair.id}/risk").json()
        assert body["symbol"] == "BTCUSDT"
        assert body["position_count"] == 1
        assert body["exposure"] == 100

    def test_missing_pair(self, client, db):
        assert client.get("/api/pairs/999").status_code == 404


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class TestStrategies:
    def test_create(self, client):
        resp = client.post("/api/strategies", json={
            "name": "momentum",
            "trading_hours": {"monday": [{"start": "09:00", "end": "17:00"}]},
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["version"] == "1.0.0"
        assert body["change_history"] == []

    def test_invalid_trading_hours(self, client):
        resp = client.post("/api/strategies", json={
            "name": "momentum", "trading_hours": {"funday": [{"start": "09:00", "end": "17:00"}]},
        })
        assert resp.status_code == 422

    def test_update_bumps_version(self, client, strategy):
        resp = client.put(f"/api/strategies/{strategy.id}", json={
            "stop_loss_pct": 3.0, "change_description": "tighter stop",
        })
        body = resp.json()
        assert body["version"] == "1.0.1"
        assert body["stop_loss_pct"] == 3.0
        assert body["change_history"][-1]["description"] == "tighter stop"

    def test_disable_with_open_positions_conflict(self, client, pair, strategy):
        _open_position(pair.id, strategy.name)
        resp = client.post(f"/api/strategies/{strategy.id}/toggle")
        assert resp.status_code == 409
        assert "open position" in resp.json()["detail"]

    def test_metrics(self, client, strategy):
        body = client.get(f"/api/strategies/{strategy.id}/metrics").json()
        assert body["strategy"] == "momentum"
        assert body["total_trades"] == 0
