import json


def _key(scope: str, idem_key: str) -> str:
    return f"idem:{scope}:{idem_key}"


async def get_cached_response(redis, scope: str, idem_key: str) -> dict | None:
    raw = await redis.get(_key(scope, idem_key))
    return json.loads(raw) if raw else None


async def set_cached_response(redis, scope: str, idem_key: str, response: dict, ttl_seconds: int = 300) -> None:
    await redis.setex(_key(scope, idem_key), ttl_seconds, json.dumps(response, default=str))
