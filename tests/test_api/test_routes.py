"""Tests for the control API routes using FastAPI's TestClient."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from sniper.api.app import create_control_app
from sniper.models import CycleOutcome, CycleState, OrderResult, OrderSide
from sniper.selection import SymbolSelection


@pytest.fixture()
def executor() -> MagicMock:
    mock = MagicMock()
    mock.is_busy = False
    mock.last_outcome = None
    mock.run_cycle = AsyncMock(return_value=None)
    mock.get_status = MagicMock(
        return_value={"cycle_running": False, "feed_running": False, "last_outcome": None}
    )
    return mock


@pytest.fixture()
def force_close() -> MagicMock:
    mock = MagicMock()
    mock.armed = False
    mock.request_close = AsyncMock(return_value=None)
    return mock


@pytest.fixture()
def client(executor: MagicMock, force_close: MagicMock):
    app = create_control_app()
    app.state.executor = executor
    app.state.selection = SymbolSelection(configured_symbol="BTCUSDT")
    app.state.force_close = force_close
    app.state.scheduler = None
    with TestClient(app) as test_client:
        yield test_client


class TestSymbolRoutes:
    def test_get_symbol(self, client: TestClient) -> None:
        response = client.get("/api/symbol")
        assert response.status_code == 200
        assert response.json() == {"override": None, "configured": "BTCUSDT"}

    def test_put_and_delete_override(self, client: TestClient) -> None:
        response = client.put("/api/symbol", json={"symbol": "ethusdt"})
        assert response.status_code == 200
        assert response.json()["override"] == "ETHUSDT"

        response = client.delete("/api/symbol")
        assert response.json()["override"] is None

    def test_put_requires_symbol(self, client: TestClient) -> None:
        assert client.put("/api/symbol", json={}).status_code == 400
        assert client.put("/api/symbol", content=b"{not json").status_code == 400


class TestCycleRoutes:
    def test_trigger_cycle(self, client: TestClient, executor: MagicMock) -> None:
        response = client.post("/api/cycle", json={"symbol": "solusdt"})

        assert response.status_code == 202
        assert response.json() == {"status": "started", "symbol": "SOLUSDT"}
        executor.run_cycle.assert_called_once_with("SOLUSDT")

    def test_trigger_without_body_uses_selection(self, client: TestClient, executor: MagicMock) -> None:
        response = client.post("/api/cycle")

        assert response.status_code == 202
        executor.run_cycle.assert_called_once_with(None)

    def test_busy_executor_conflicts(self, client: TestClient, executor: MagicMock) -> None:
        executor.is_busy = True
        assert client.post("/api/cycle").status_code == 409
        executor.run_cycle.assert_not_called()

    def test_last_cycle(self, client: TestClient, executor: MagicMock) -> None:
        assert client.get("/api/cycle/last").status_code == 404

        outcome = CycleOutcome(cycle_id="abc", symbol="BTCUSDT", state=CycleState.CLOSED)
        outcome.quantity = Decimal("0.020")
        outcome.entry = OrderResult(
            order_id="1",
            symbol="BTCUSDT",
            side=OrderSide.BUY,
            filled_qty=Decimal("0.020"),
            avg_price=Decimal("45000.10"),
            status="FILLED",
        )
        executor.last_outcome = outcome

        body = client.get("/api/cycle/last").json()
        assert body["state"] == "closed"
        assert body["quantity"] == "0.020"
        assert body["entry"]["avg_price"] == "45000.10"


class TestStatusAndClose:
    def test_status(self, client: TestClient) -> None:
        body = client.get("/api/status").json()
        assert body["cycle_running"] is False
        assert body["symbol"]["configured"] == "BTCUSDT"
        assert body["force_close_armed"] is False
        assert body["scheduled_jobs"] == {}

    def test_close_without_position(self, client: TestClient, force_close: MagicMock) -> None:
        assert client.post("/api/position/close").json() == {"status": "no_action"}
        force_close.request_close.assert_awaited_once_with(reason="api")

    def test_close_position(self, client: TestClient, force_close: MagicMock) -> None:
        force_close.request_close = AsyncMock(
            return_value=OrderResult(
                order_id="c-1",
                symbol="BTCUSDT",
                side=OrderSide.SELL,
                filled_qty=Decimal("0.020"),
                avg_price=Decimal("45010"),
                status="FILLED",
            )
        )
        body = client.post("/api/position/close").json()
        assert body == {"status": "closed", "order_id": "c-1", "filled_qty": "0.020"}
