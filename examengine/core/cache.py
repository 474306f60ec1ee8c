import redis
from datetime import datetime, timezone
from examengine.core.config import REDIS_URL, MAX_DAILY_EXPOSURES, EXPOSURE_CONTROL_ENABLED

redis_client = redis.Redis.from_url(REDIS_URL, decode_responses=True)

def exposure_key(question_id: int) -> str:
    day = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"exp:{day}:{question_id}"

def exposure_counts(question_ids: list[int]) -> dict[int, int]:
    if not EXPOSURE_CONTROL_ENABLED or not question_ids: return {}
    values = redis_client.mget([exposure_key(q) for q in question_ids])
    return {q: int(v or 0) for q, v in zip(question_ids, values)}

def bump_exposure(question_id: int) -> None:
    if not EXPOSURE_CONTROL_ENABLED: return
    key = exposure_key(question_id)
    pipe = redis_client.pipeline()
    pipe.incr(key, 1)
    pipe.expire(key, 86400)
    pipe.execute()

def over_exposed(question_ids: list[int]) -> set[int]:
    return {q for q, n in exposure_counts(question_ids).items() if n >= MAX_DAILY_EXPOSURES}
