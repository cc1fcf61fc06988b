import datetime
import logging
import os
from typing import List, Optional

import asyncpg

from fxwatch.common.errors import PersistenceDisabled
from fxwatch.common.models import Alert, Candle

log = logging.getLogger(__name__)

PG_DSN = os.getenv("PG_DSN", "")
SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schema.sql")

UPSERT_CANDLE = """
    INSERT INTO market_candles(pair, interval, bucket_start, open, high, low, close, volume)
    VALUES($1,$2,$3,$4,$5,$6,$7,$8)
    ON CONFLICT (pair, interval, bucket_start) DO UPDATE
       SET open = EXCLUDED.open,
           high = EXCLUDED.high,
           low = EXCLUDED.low,
           close = EXCLUDED.close,
           volume = EXCLUDED.volume,
           updated_at = NOW()
"""

INSERT_ALERT = """
    INSERT INTO market_alerts(id, pair, window_minutes, price_type, from_price, to_price,
                              change_percent, severity, triggered_at)
    VALUES($1,$2,$3,$4,$5,$6,$7,$8,$9)
    ON CONFLICT (id) DO NOTHING
"""


def _ts(ms: int) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(ms / 1000.0, tz=datetime.timezone.utc)


class PgStore:
    """Upsert-capable candle/alert store on a small asyncpg pool."""

    def __init__(self, pool):
        self.pool = pool

    @classmethod
    async def connect(cls, dsn: Optional[str] = None, timeout: float = 10.0) -> "PgStore":
        dsn = dsn or PG_DSN
        if not dsn:
            raise PersistenceDisabled("PG_DSN not configured")
        pool = await asyncpg.create_pool(dsn, min_size=1, max_size=4, timeout=timeout, command_timeout=timeout)
        store = cls(pool)
        await store.ensure_schema()
        return store

    async def ensure_schema(self):
        with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
            sql = f.read()
        async with self.pool.acquire() as conn:
            await conn.execute(sql)

    async def upsert_candle(self, c: Candle):
        async with self.pool.acquire() as conn:
            await conn.execute(
                UPSERT_CANDLE,
                c.pair, c.interval, _ts(c.bucket_start_ms),
                c.open, c.high, c.low, c.close, c.volume,
            )

    async def insert_alert(self, a: Alert):
        async with self.pool.acquire() as conn:
            await conn.execute(
                INSERT_ALERT,
                a.id, a.pair, a.window_minutes, a.price_type.value,
                a.from_price, a.to_price, a.change_percent,
                a.severity.value, a.triggered_at,
            )

    async def fetch_alerts(self, pair: Optional[str] = None, limit: int = 50,
                           since: Optional[datetime.datetime] = None) -> List[Alert]:
        sql = """
          SELECT id, pair, window_minutes, price_type, from_price, to_price,
                 change_percent, severity, triggered_at
          FROM market_alerts
          WHERE ($1::text IS NULL OR pair = $1)
            AND ($2::timestamptz IS NULL OR triggered_at >= $2)
          ORDER BY triggered_at DESC
          LIMIT $3
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, pair, since, limit)
        return [Alert(**dict(r)) for r in rows]

    async def close(self):
        await self.pool.close()
