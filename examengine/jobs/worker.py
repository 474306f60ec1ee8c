import logging
from rq import Worker
from examengine.jobs.queue import redis
from examengine.core.config import RQ_QUEUE, LOG_LEVEL
if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    w = Worker([RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)
