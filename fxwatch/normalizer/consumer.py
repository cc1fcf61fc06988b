import asyncio
import logging
import os

from redis.exceptions import ConnectionError as RedisConnectionError

from fxwatch.common.redis_streams import (
    ALERT_STREAM,
    ALERT_STREAM_MAXLEN,
    RAW_GROUP,
    RAW_STREAM,
    ensure_group,
    get_redis,
)
from fxwatch.normalizer.engine import MarketEngine

log = logging.getLogger(__name__)

BATCH = int(os.getenv("RAW_BATCH", "200"))


def handle_fields(engine: MarketEngine, fields: dict):
    """One raw stream entry: a quote if it has bid/ask, otherwise a trade."""
    data = {k: v for k, v in fields.items() if v not in (None, "")}
    if "bid" in data and "ask" in data:
        return engine.ingest_quote(data)
    return engine.ingest_trade(data)


def alert_fields(alert) -> dict:
    return {k: str(v) for k, v in alert.model_dump(mode="json").items()}


async def consume(engine: MarketEngine, r, consumer: str):
    await ensure_group(r, RAW_STREAM, RAW_GROUP)
    while True:
        try:
            resp = await r.xreadgroup(
                groupname=RAW_GROUP,
                consumername=consumer,
                streams={RAW_STREAM: ">"},
                count=BATCH,
                block=1000,
            )
        except RedisConnectionError as e:
            # backoff
            log.warning("Redis read failed, retrying in 2s: %s", e)
            await asyncio.sleep(2)
            continue
        if not resp:
            continue

        ids = []
        for _stream, messages in resp:
            for msg_id, fields in messages:
                ids.append(msg_id)
                # the engine swallows its own errors; ack no matter what
                handle_fields(engine, fields)
        if ids:
            await r.xack(RAW_STREAM, RAW_GROUP, *ids)


async def forward_alerts(engine: MarketEngine, r):
    q = engine.bus.subscribe(maxsize=1000)
    try:
        while True:
            alert = await q.get()
            try:
                await r.xadd(ALERT_STREAM, alert_fields(alert), maxlen=ALERT_STREAM_MAXLEN, approximate=True)
            except Exception as e:
                log.warning("Could not forward alert %s to %s: %s", alert.id, ALERT_STREAM, e)
    finally:
        engine.bus.unsubscribe(q)

