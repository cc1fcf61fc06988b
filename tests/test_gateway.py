import asyncio

import pytest
from fastapi.testclient import TestClient

from fxwatch.common.symbol_map import SUPPORTED_PAIRS
from fxwatch.live_gateway.main import create_app
from fxwatch.writer.flusher import Flusher

from conftest import T0, trade
from test_flusher import FakeStore, recording_engine


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


def test_health_and_status(client):
    assert client.get("/health").json() == {"ok": True}
    body = client.get("/status").json()
    assert set(body["market"]) >= {"is_open", "reason", "timezone"}
    assert body["recorder"]["enabled"] is False


def test_rates_cover_every_pair(client, engine):
    trade(engine, T0, 1.1000)
    pairs = {p["pair"]: p for p in client.get("/rates").json()["pairs"]}
    assert set(pairs) == set(SUPPORTED_PAIRS)
    assert pairs["EUR/USD"]["mid"] == 1.1


def test_history(client, engine):
    for i in range(3):
        trade(engine, T0 + i * 1000, 1.1000)
    res = client.get("/history/EURUSD", params={"points": 2})
    assert res.status_code == 200
    assert res.json()["pair"] == "EUR/USD"
    assert len(res.json()["history"]) == 2
    assert client.get("/history/DOGEUSD").status_code == 400


def test_candles(client, engine):
    trade(engine, T0, 1.1000, volume=1)
    trade(engine, T0 + 1000, 1.1010, volume=1)
    body = client.get("/candles/EUR-USD", params={"interval": "15m"}).json()
    [candle] = body["candles"]
    assert (candle["open"], candle["high"], candle["volume"]) == (1.1, 1.101, 2)
    assert client.get("/candles/EURUSD", params={"interval": "2m"}).status_code == 400


def test_alerts_from_memory(client, engine):
    trade(engine, T0, 1.0000)
    trade(engine, T0 + 60_000, 1.0013)
    alerts = client.get("/alerts", params={"pair": "EURUSD"}).json()["alerts"]
    assert len(alerts) == 1
    assert alerts[0]["severity"] == "medium"
    assert client.get("/alerts", params={"pair": "GBPUSD"}).json()["alerts"] == []
    assert client.get("/alerts", params={"since": str(T0 + 120_000)}).json()["alerts"] == []
    assert client.get("/alerts", params={"since": "yesterday"}).status_code == 400


def test_alerts_prefer_the_store():
    engine = recording_engine()
    store = FakeStore()
    client = TestClient(create_app(engine, flusher=Flusher(engine, store)))
    trade(engine, T0, 1.0000)
    [alert] = trade(engine, T0 + 60_000, 1.0013)
    store.alerts.append(alert.model_copy(update={"id": "from-store"}))

    ids = [a["id"] for a in client.get("/alerts").json()["alerts"]]
    assert ids == ["from-store"]


def test_alerts_fall_back_when_the_store_fails():
    class BrokenStore(FakeStore):
        async def fetch_alerts(self, pair=None, limit=50, since=None):
            raise OSError("connection refused")

    engine = recording_engine()
    client = TestClient(create_app(engine, flusher=Flusher(engine, BrokenStore())))
    trade(engine, T0, 1.0000)
    [alert] = trade(engine, T0 + 60_000, 1.0013)
    assert [a["id"] for a in client.get("/alerts").json()["alerts"]] == [alert.id]


def test_snapshot(client, engine):
    assert client.get("/snapshot/EURUSD").status_code == 404
    trade(engine, T0, 1.0000)
    trade(engine, T0 + 60_000, 1.0011)
    body = client.get("/snapshot/EURUSD", params={"windows": "1,15"}).json()
    assert body["pair"] == "EUR/USD"
    assert [w["window_minutes"] for w in body["windows"]] == [1, 15]
    assert body["windows"][0]["from_price"] == 1.0
    assert body["windows"][1]["change_percent"] is None
    assert client.get("/snapshot/EURUSD", params={"windows": "a,b"}).status_code == 400
    assert client.get("/snapshot/EURUSD", params={"windows": "0"}).status_code == 400


def test_metrics_are_exposed(client, engine):
    trade(engine, T0, 1.1000)
    res = client.get("/metrics/")
    assert res.status_code == 200
    assert "fxwatch_ticks_accepted_total" in res.text


def test_alert_websocket_streams_new_alerts(client, engine):
    trade(engine, T0, 1.0000)
    with client.websocket_connect("/ws/alerts") as ws:
        assert engine.bus.subscriber_count == 1
        [alert] = trade(engine, T0 + 60_000, 1.0013)
        msg = ws.receive_json()
        assert msg["id"] == alert.id
        assert msg["pair"] == "EUR/USD"


class IdleRedis:
    def __init__(self):
        self.closed = False

    async def xgroup_create(self, stream, group, id="0-0", mkstream=False):
        return True

    async def xreadgroup(self, **_kw):
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


def test_pipeline_tasks_and_connections_are_closed_on_shutdown(monkeypatch):
    redis = IdleRedis()
    monkeypatch.setattr("fxwatch.live_gateway.main.get_redis", lambda: redis)
    engine = recording_engine()
    store = FakeStore()
    app = create_app(engine, flusher=Flusher(engine, store), run_pipeline=True)

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        tasks = list(app.state.tasks)
        assert len(tasks) == 2
        assert engine.bus.subscriber_count == 1

    assert all(t.done() for t in tasks)
    assert app.state.tasks == []
    assert engine.bus.subscriber_count == 0
    assert redis.closed
    assert store.closed
