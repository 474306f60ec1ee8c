from datetime import datetime
from typing import Optional, List, Dict, Any
import enum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    BigInteger, Integer, String, Text, Float, ForeignKey, JSON, DateTime,
    UniqueConstraint, Index, CheckConstraint,
)

# SQLite only autoincrements INTEGER primary keys
BigId = BigInteger().with_variant(Integer, "sqlite")

class Base(DeclarativeBase): pass

class QuestionState(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"

# "approved" is what some curators call a published item
SERVABLE_STATES = ("published", "approved")

class FinishReason(str, enum.Enum):
    TIME = "time"
    MANUAL = "manual"
    SUBMITTED = "submitted"

# ========== Question bank (owned by the authoring collaborator) ==========

class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_topic_status", "topic", "status"),
        Index("idx_questions_band", "band"),
        CheckConstraint("band >= 1 AND band <= 5", name="ck_questions_band"),
        CheckConstraint("correct_index >= 0 AND correct_index <= 3", name="ck_questions_correct_index"),
    )
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    topic: Mapped[str] = mapped_column(String(255))
    band: Mapped[int] = mapped_column(Integer, default=3)
    text: Mapped[str] = mapped_column(Text)
    options: Mapped[List[str]] = mapped_column(JSON)
    correct_index: Mapped[int] = mapped_column(Integer)
    rating: Mapped[int] = mapped_column(Integer, default=1200)
    exposure_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default=QuestionState.DRAFT.value)

class Exam(Base):
    __tablename__ = "exams"
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    title: Mapped[str] = mapped_column(String(255))
    topics: Mapped[List[str]] = mapped_column(JSON, default=list)
    band: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    item_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    time_budget_sec: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

class ExamItem(Base):
    __tablename__ = "exam_items"
    __table_args__ = (UniqueConstraint("exam_id", "question_id", name="uq_exam_item"),)
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    exam_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("exams.id", ondelete="CASCADE"))
    question_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("questions.id"))
    position: Mapped[int] = mapped_column(Integer)

# ========== Ratings ==========

class CandidateRating(Base):
    __tablename__ = "candidate_ratings"
    candidate_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    rating: Mapped[int] = mapped_column(Integer, default=1200)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

# ========== Delivery ==========

class ExamSession(Base):
    __tablename__ = "exam_sessions"
    __table_args__ = (
        Index("idx_es_candidate_scope", "candidate_id", "scope_key"),
        Index("idx_es_open_deadline", "finished_at", "deadline_at"),
        CheckConstraint("current_band >= 1 AND current_band <= 5", name="ck_es_band"),
    )
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    candidate_id: Mapped[str] = mapped_column(String(255))
    exam_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("exams.id"), nullable=True)
    scope_key: Mapped[str] = mapped_column(String(512))
    topics: Mapped[List[str]] = mapped_column(JSON, default=list)
    band_filter: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_items: Mapped[int] = mapped_column(Integer)
    total_time_sec: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    remaining_time_sec: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    deadline_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # wall-clock seconds enforcement has charged since the last graded answer
    charged_since_answer_sec: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime)
    current_band: Mapped[int] = mapped_column(Integer, default=3)
    stage_index: Mapped[int] = mapped_column(Integer, default=0)
    config: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finish_reason: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    correct_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

class SessionItem(Base):
    __tablename__ = "session_items"
    __table_args__ = (
        UniqueConstraint("session_id", "position", name="uq_session_item_position"),
        UniqueConstraint("session_id", "question_id", name="uq_session_item_question"),
    )
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    session_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("exam_sessions.id", ondelete="CASCADE"))
    question_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("questions.id"))
    position: Mapped[int] = mapped_column(Integer)

class Answer(Base):
    __tablename__ = "answers"
    __table_args__ = (
        Index("idx_answers_session", "session_id"),
        UniqueConstraint("session_id", "question_id", name="uq_answer_session_question"),
    )
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    session_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("exam_sessions.id", ondelete="CASCADE"))
    question_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("questions.id"))
    selected_index: Mapped[int] = mapped_column(Integer)
    is_correct: Mapped[bool] = mapped_column()
    time_taken_sec: Mapped[int] = mapped_column(Integer, default=0)
    band: Mapped[int] = mapped_column(Integer)
    question_rating: Mapped[int] = mapped_column(Integer)
    expected_ms: Mapped[int] = mapped_column(Integer)
    pace_ratio: Mapped[float] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)
