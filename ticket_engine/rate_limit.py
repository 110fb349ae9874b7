import time

BUCKET_TTL_SECONDS = 3600


async def token_bucket(redis, key: str, capacity: int, refill_per_sec: float) -> bool:
    """Take one token from the bucket at `rl:{key}`; False when it is empty."""
    now = time.time()
    bucket_key = f"rl:{key}"

    # read-modify-write, not atomic: two racing requests may both read the same bucket
    state = await redis.hgetall(bucket_key)
    tokens = float(state.get("tokens", capacity))
    last = float(state.get("last", now))

    tokens = min(float(capacity), tokens + max(0.0, now - last) * refill_per_sec)
    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0

    async with redis.pipeline(transaction=True) as pipe:
        pipe.hset(bucket_key, mapping={"tokens": tokens, "last": now})
        pipe.expire(bucket_key, BUCKET_TTL_SECONDS)
        await pipe.execute()
    return allowed
