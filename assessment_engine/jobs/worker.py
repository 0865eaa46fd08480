import logging
from rq import Worker
from assessment_engine.jobs.queue import redis
from assessment_engine.core.config import settings
if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)
