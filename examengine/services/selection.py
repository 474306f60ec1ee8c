"""
Frozen question-set selection.

A curated exam list wins when one exists. Otherwise items are drawn from the
published inventory: an even per-topic quota sampled at random, then a random
fill pass from whatever is left until the requested count is reached.
"""
import random
from typing import List, Optional, Sequence, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import select, func

from examengine.core.cache import over_exposed
from examengine.core.errors import InsufficientInventoryError
from examengine.models.orm import Question, ExamItem, SERVABLE_STATES

def normalize_topics(topics: Optional[Sequence[str]]) -> List[str]:
    out: List[str] = []
    for t in topics or []:
        t = str(t or "").strip().lower()
        if t and t not in ("-", "\u2014") and t not in out:
            out.append(t)
    return out

def _published():
    return func.lower(func.trim(Question.status)).in_(SERVABLE_STATES)

def published_inventory(db: Session, topics: Sequence[str], band: Optional[int]) -> List[Tuple[int, str]]:
    """(question id, normalized topic) for every servable item matching the filters, ordered by id."""
    topic_col = func.lower(func.trim(Question.topic))
    stmt = select(Question.id, topic_col).where(_published())
    if topics:
        stmt = stmt.where(topic_col.in_(list(topics)))
    if band is not None:
        stmt = stmt.where(Question.band == band)
    return [(r[0], r[1]) for r in db.execute(stmt.order_by(Question.id)).all()]

def curated_items(db: Session, exam_id: Optional[int]) -> List[int]:
    if exam_id is None:
        return []
    rows = db.execute(
        select(ExamItem.question_id).join(Question, Question.id == ExamItem.question_id)
        .where(ExamItem.exam_id == exam_id, _published())
        .order_by(ExamItem.position, ExamItem.id)
    ).all()
    return [r[0] for r in rows]

def curated_exists(db: Session, exam_id: Optional[int]) -> bool:
    if exam_id is None:
        return False
    return db.scalar(select(func.count()).select_from(ExamItem).where(ExamItem.exam_id == exam_id)) > 0

def pick_auto(pool: List[Tuple[int, str]], topics: Sequence[str], item_count: int, rng: random.Random) -> List[int]:
    """Per-topic quota with random sampling, then a random fill pass."""
    picked: List[int] = []
    if topics:
        per_topic = max(1, item_count // max(1, len(topics)))
        for topic in topics:
            ids = [qid for qid, t in pool if t == topic]
            picked.extend(rng.sample(ids, min(per_topic, len(ids))))
    taken = set(picked)
    rest = [qid for qid, _ in pool if qid not in taken]
    rng.shuffle(rest)
    picked.extend(rest[:max(0, item_count - len(picked))])
    return picked[:item_count]

def build_question_set(db: Session, *, exam_id: Optional[int], topics: Sequence[str], band: Optional[int],
                       item_count: int, rng: random.Random) -> List[Tuple[int, int]]:
    """Return (question id, position) pairs, positions starting at 1.

    Raises InsufficientInventoryError when fewer than ``item_count`` eligible
    items exist; nothing is returned partially.
    """
    if curated_exists(db, exam_id):
        chosen = curated_items(db, exam_id)
        if len(chosen) < item_count:
            raise InsufficientInventoryError(
                "Curated list has fewer published questions than requested",
                requested=item_count, available=len(chosen), exam_id=exam_id)
        return [(qid, i + 1) for i, qid in enumerate(chosen[:item_count])]

    pool = published_inventory(db, topics, band)
    if len(pool) < item_count:
        raise InsufficientInventoryError(
            "Not enough published questions for the requested criteria",
            requested=item_count, available=len(pool), topics=list(topics), band=band)
    # leave out items served too often today, unless that would starve the session
    hot = over_exposed([qid for qid, _ in pool])
    if hot and len(pool) - len(hot) >= item_count:
        pool = [(qid, t) for qid, t in pool if qid not in hot]
    chosen = pick_auto(pool, topics, item_count, rng)
    return [(qid, i + 1) for i, qid in enumerate(chosen)]

def topic_inventory(db: Session, band: Optional[int] = None) -> List[dict]:
    topic_col = func.lower(func.trim(Question.topic)).label("topic")
    stmt = select(topic_col, func.count().label("available")).where(_published(), func.trim(Question.topic) != "")
    if band is not None:
        stmt = stmt.where(Question.band == band)
    rows = db.execute(stmt.group_by(topic_col).order_by(topic_col)).all()
    return [{"topic": r[0], "available": int(r[1])} for r in rows]

def available_count(db: Session, topic: str, band: Optional[int] = None) -> int:
    return len(published_inventory(db, normalize_topics([topic]), band))
