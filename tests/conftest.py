import os
os.environ["EXPOSURE_CONTROL_ENABLED"] = "0"
os.environ.setdefault("DATABASE_URL", "sqlite://")

import random
from datetime import datetime, timedelta
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from examengine.core.auth import Actor, create_token
from examengine.models.orm import Base, Question, Exam, ExamItem
from examengine.services.lifecycle import SessionLifecycle

# Use SQLite in-memory database for tests
engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

class FakeClock:
    def __init__(self, start: datetime):
        self.now = start
    def __call__(self) -> datetime:
        return self.now
    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)

@pytest.fixture(scope="function")
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)

@pytest.fixture
def session_factory(db):
    return TestingSessionLocal

@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 9, 0, 0))

@pytest.fixture
def lifecycle(db, clock):
    return SessionLifecycle(db, clock=clock, rng=random.Random(7))

@pytest.fixture
def candidate():
    return Actor(candidate_id="cand-1")

def add_questions(db, topic="algebra", band=3, n=10, status="published", correct_index=0, rating=1200):
    qs = [Question(topic=topic, band=band, text=f"{topic} q{i}", options=["a", "b", "c", "d"],
                   correct_index=correct_index, rating=rating, status=status) for i in range(n)]
    db.add_all(qs)
    db.commit()
    return [q.id for q in qs]

def add_exam(db, question_ids, **kw):
    exam = Exam(title=kw.pop("title", "Curated"), topics=kw.pop("topics", []), **kw)
    db.add(exam)
    db.flush()
    db.add_all([ExamItem(exam_id=exam.id, question_id=qid, position=i + 1) for i, qid in enumerate(question_ids)])
    db.commit()
    return exam.id

def auth_headers(user_id="cand-1", roles=("candidate",)):
    return {"Authorization": f"Bearer {create_token(user_id, list(roles))}"}
