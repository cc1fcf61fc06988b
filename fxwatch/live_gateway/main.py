import asyncio
import logging
import os
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from prometheus_client import make_asgi_app

from fxwatch.common.logs import setup_logging
from fxwatch.common.models import INTERVALS
from fxwatch.common.redis_streams import get_redis
from fxwatch.common.session import get_forex_market_status
from fxwatch.common.settings import EngineSettings
from fxwatch.common.symbol_map import normalize_pair
from fxwatch.normalizer.alerts import MAX_QUERY_LIMIT, parse_since
from fxwatch.normalizer.engine import MarketEngine
from fxwatch.normalizer.consumer import consume, forward_alerts
from fxwatch.writer.flusher import Flusher, open_flusher

log = logging.getLogger(__name__)

GATEWAY_HOST = os.getenv("GATEWAY_HOST", "0.0.0.0")
GATEWAY_PORT = int(os.getenv("GATEWAY_PORT", "8000"))


def _pair_or_400(raw: str) -> str:
    pair = normalize_pair(raw)
    if pair is None:
        raise HTTPException(status_code=400, detail=f"Unsupported pair: {raw}")
    return pair


def create_app(engine: Optional[MarketEngine] = None, flusher: Optional[Flusher] = None,
               run_pipeline: bool = False) -> FastAPI:
    """
    Query surface over one MarketEngine. With run_pipeline the app also owns
    the Redis consumer, alert forwarder and flusher tasks; it is then the only
    process that may consume RAW_STREAM, since every engine keeps its own
    ledgers and candles.
    """
    app = FastAPI(title="fxwatch gateway", version="1.0.0")
    app.state.engine = engine or MarketEngine(EngineSettings.from_env())
    app.state.flusher = flusher
    app.state.tasks = []
    app.state.redis = None
    app.mount("/metrics", make_asgi_app())

    @app.on_event("startup")
    async def startup():
        if not run_pipeline:
            return
        eng = app.state.engine
        if app.state.flusher is None:
            app.state.flusher = await open_flusher(eng)
        app.state.flusher.start()
        r = app.state.redis = get_redis()
        consumer = f"fxwatch-{os.getpid()}"
        app.state.tasks = [
            asyncio.create_task(consume(eng, r, consumer)),
            asyncio.create_task(forward_alerts(eng, r)),
        ]

    @app.on_event("shutdown")
    async def shutdown():
        tasks, app.state.tasks = app.state.tasks, []
        for t in tasks:
            t.cancel()
        for res in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(res, Exception):
                log.warning("Pipeline task ended with error: %s", res)
        if app.state.flusher is not None:
            await app.state.flusher.stop()
        if app.state.redis is not None:
            await app.state.redis.aclose()
            app.state.redis = None

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/status")
    def status():
        f = app.state.flusher
        return {
            "market": get_forex_market_status(),
            "recorder": f.status() if f else {"enabled": False, "disabled_reason": "not started"},
        }

    @app.get("/rates")
    def rates():
        return {"pairs": [q.model_dump() for q in app.state.engine.get_live_rates_from_cache()]}

    @app.get("/history/{pair}")
    def history(pair: str, points: int = Query(60, ge=1, le=2000)):
        canonical = _pair_or_400(pair)
        return {"pair": canonical, "history": app.state.engine.get_history(canonical, points)}

    @app.get("/candles/{pair}")
    def candles(pair: str, interval: str = "1m", limit: int = Query(100, ge=1, le=5000)):
        canonical = _pair_or_400(pair)
        if interval not in INTERVALS:
            raise HTTPException(status_code=400, detail=f"interval must be one of {', '.join(INTERVALS)}")
        rows = app.state.engine.get_candles(canonical, interval, limit)
        return {"pair": canonical, "interval": interval, "candles": [c.model_dump() for c in rows]}

    @app.get("/alerts")
    async def alerts(pair: Optional[str] = None, limit: int = 50, since: Optional[str] = None):
        canonical = _pair_or_400(pair) if pair else None
        limit = max(1, min(MAX_QUERY_LIMIT, limit))
        try:
            since_dt = parse_since(since)
        except ValueError:
            raise HTTPException(status_code=400, detail="since must be ISO-8601 or epoch ms")

        f = app.state.flusher
        if f is not None and f.enabled and f.store is not None:
            try:
                rows = await f.store.fetch_alerts(canonical, limit, since_dt)
                return {"alerts": [a.model_dump(mode="json") for a in rows]}
            except Exception as e:
                log.warning("Alert history query failed, serving memory feed: %s", e)

        rows = app.state.engine.get_recent_market_alerts(canonical, limit, since_dt)
        return {"alerts": [a.model_dump(mode="json") for a in rows]}

    @app.get("/snapshot/{pair}")
    def snapshot(pair: str, windows: Optional[str] = None):
        canonical = _pair_or_400(pair)
        wins = None
        if windows:
            try:
                wins = [int(w) for w in windows.split(",") if w.strip()]
            except ValueError:
                raise HTTPException(status_code=400, detail="windows must be comma separated minutes")
            if any(w <= 0 for w in wins):
                raise HTTPException(status_code=400, detail="windows must be positive")
        snap = app.state.engine.get_market_window_snapshot(canonical, wins)
        if snap is None:
            raise HTTPException(status_code=404, detail=f"No ticks for {canonical}")
        return snap.model_dump(mode="json")

    @app.websocket("/ws/alerts")
    async def ws_alerts(ws: WebSocket):
        bus = app.state.engine.bus
        q = bus.subscribe(maxsize=256)
        await ws.accept()

        async def push():
            while True:
                alert = await q.get()
                await ws.send_json(alert.model_dump(mode="json"))

        async def drain():
            # client messages are ignored; this only notices the disconnect
            while True:
                await ws.receive_text()

        tasks = [asyncio.create_task(push()), asyncio.create_task(drain())]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in tasks:
                t.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            bus.unsubscribe(q)
        for res in results:
            if isinstance(res, Exception) and not isinstance(res, WebSocketDisconnect):
                log.warning("Alert websocket closed with error: %s", res)

    return app


def main():
    setup_logging()
    app = create_app(run_pipeline=True)
    # single worker: the engine state lives in this process
    uvicorn.run(app, host=GATEWAY_HOST, port=GATEWAY_PORT)


if __name__ == "__main__":
    main()
