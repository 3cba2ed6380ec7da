PROCESSED_TTL_SECONDS = 86400

def _key(prefix: str, event_id: str) -> str:
    return f"{prefix}:processed_event:{event_id}"

async def is_processed(redis_client, prefix: str, event_id: str) -> bool:
    return bool(await redis_client.exists(_key(prefix, event_id)))

async def mark_processed(redis_client, prefix: str, event_id: str, ttl: int = PROCESSED_TTL_SECONDS) -> bool:
    """
    Claim an event id. Returns False when another delivery already claimed it.
    """
    claimed = await redis_client.set(_key(prefix, event_id), "1", ex=ttl, nx=True)
    return bool(claimed)

async def release(redis_client, prefix: str, event_id: str):
    await redis_client.delete(_key(prefix, event_id))
