from rq import Queue
from redis import Redis
from examengine.core.config import REDIS_URL, RQ_QUEUE
from examengine.jobs.sweep_job import finalize_expired_sessions

redis = Redis.from_url(REDIS_URL)
queue = Queue(RQ_QUEUE, connection=redis)

SWEEP_TIMEOUT_SEC = 600
SWEEP_RESULT_TTL_SEC = 86400

def enqueue_sweep(limit: int):
    return queue.enqueue(finalize_expired_sessions, limit, job_timeout=SWEEP_TIMEOUT_SEC,
                         result_ttl=SWEEP_RESULT_TTL_SEC, description=f"finalize expired sessions (limit={limit})")
