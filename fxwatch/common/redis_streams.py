import os
import redis.asyncio as redis
from redis.exceptions import ResponseError


def get_redis():
    return redis.from_url(os.getenv("REDIS_URL", "redis://redis:6379/0"), decode_responses=True)


RAW_STREAM = os.getenv("RAW_STREAM", "fx_ticks_raw")
RAW_GROUP = os.getenv("RAW_GROUP", "fx_engine")
ALERT_STREAM = os.getenv("ALERT_STREAM", "fx_alerts")
ALERT_STREAM_MAXLEN = int(os.getenv("ALERT_STREAM_MAXLEN", "10000"))


async def ensure_group(r, stream: str, group: str):
    try:
        await r.xgroup_create(stream, group, id="0-0", mkstream=True)
    except ResponseError as e:
        # BUSYGROUP: already there
        if "BUSYGROUP" not in str(e):
            raise
