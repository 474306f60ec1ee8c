"""
Background finalization of sessions whose time ran out while nobody was calling.

Enforcement is lazy: a session only notices it is out of time on its next
request. This job walks the open sessions whose deadline has passed or whose budget
is spent and runs the same enforcement,
so abandoned sessions get a score and stop blocking new ones.
"""
import logging
from datetime import datetime
from typing import Callable, Optional
from rq import get_current_job
from sqlalchemy import select, or_
from examengine.core.database import SessionLocal
from examengine.models.orm import ExamSession
from examengine.services.lifecycle import SessionLifecycle, utcnow

logger = logging.getLogger(__name__)

def finalize_expired_sessions(limit: int = 500, session_factory: Callable = SessionLocal,
                              clock: Callable[[], datetime] = utcnow) -> dict:
    job = get_current_job()
    def meta(**kw):
        if job is None: return
        job.meta.update(kw); job.save_meta()

    meta(state="running", checked=0, finalized=0)
    db = session_factory()
    try:
        now = clock()
        # only sessions that are already out of time, oldest deadline first
        ids = list(db.scalars(
            select(ExamSession.id).where(
                ExamSession.finished_at.is_(None),
                or_(ExamSession.deadline_at <= now, ExamSession.remaining_time_sec <= 0),
            ).order_by(ExamSession.deadline_at, ExamSession.id).limit(limit)
        ))
        engine = SessionLifecycle(db, clock=clock)
        finalized = 0
        for n, sid in enumerate(ids, start=1):
            if engine.enforce_time(sid).finished:
                finalized += 1
            meta(checked=n, finalized=finalized)
        result = {"checked": len(ids), "finalized": finalized}
        logger.info("adaptive.sweep %s", result)
        meta(state="done")
        return result
    except Exception:
        meta(state="failed")
        logger.exception("adaptive.sweep failed")
        raise
    finally:
        db.close()
