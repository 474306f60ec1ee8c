from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, StrictInt
from typing import List, Optional
from dataclasses import asdict
from datetime import datetime
from sqlalchemy.orm import Session
from examengine.core.database import get_db
from examengine.core.auth import Actor, get_actor
from examengine.services.lifecycle import SessionLifecycle, SubmittedAnswer

router = APIRouter()

def get_lifecycle(db: Session = Depends(get_db)) -> SessionLifecycle:
    return SessionLifecycle(db)

class SessionCreate(BaseModel):
    exam_id: Optional[int] = None
    topics: Optional[List[str]] = None
    item_count: Optional[int] = Field(default=None, ge=1)
    time_budget_sec: Optional[int] = Field(default=None, ge=1)
    band: Optional[int] = Field(default=None, ge=1, le=5)

class SessionOut(BaseModel):
    session_id: int
    candidate_id: str
    exam_id: Optional[int] = None
    topics: List[str]
    total_items: int
    total_time_sec: Optional[int] = None
    remaining_time_sec: Optional[int] = None
    deadline_at: Optional[datetime] = None
    current_band: int
    stage_index: int
    started_at: datetime
    finished: bool
    repaired: bool = False

class NextItemOut(BaseModel):
    session_id: int
    question_id: int
    position: int
    text: str
    options: List[str]
    topic: str
    band: int
    expected_ms: int
    current_band: int
    remaining_time_sec: Optional[int] = None
    deadline_at: Optional[datetime] = None

class AnswerIn(BaseModel):
    # strict: "0", true or 1.0 are rejected rather than graded
    question_id: StrictInt
    selected_index: StrictInt
    time_taken_sec: StrictInt = 0

class AnswerOut(BaseModel):
    answer_id: int
    question_id: int
    is_correct: bool
    expected_ms: int
    pace_ratio: float
    current_band: int
    stage_index: int
    remaining_time_sec: Optional[int] = None
    routing: Optional[str] = None
    replayed: bool = False

class ExamSubmit(BaseModel):
    answers: List[AnswerIn]

class ResultOut(BaseModel):
    session_id: int
    correct: int
    total: int
    score: int
    finished_at: Optional[datetime] = None
    finish_reason: Optional[str] = None
    already_submitted: bool = False

class RemainingOut(BaseModel):
    session_id: int
    remaining: Optional[int] = None
    deadline_at: Optional[datetime] = None
    finished: bool
    total: Optional[int] = None

class SessionSummary(BaseModel):
    session_id: int
    exam_id: Optional[int] = None
    topic: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    total_items: int
    correct: Optional[int] = None
    score: Optional[int] = None

class SessionQuestion(BaseModel):
    position: int
    question_id: int
    text: str
    options: List[str]
    topic: str
    band: int

@router.post("", response_model=SessionOut, status_code=201)
def create_session(payload: SessionCreate, actor: Actor = Depends(get_actor), engine: SessionLifecycle = Depends(get_lifecycle)):
    view = engine.create(actor, exam_id=payload.exam_id, topics=payload.topics, item_count=payload.item_count,
                         time_budget_sec=payload.time_budget_sec, band=payload.band)
    return SessionOut(**asdict(view))

@router.get("/mine", response_model=List[SessionSummary])
def my_sessions(actor: Actor = Depends(get_actor), engine: SessionLifecycle = Depends(get_lifecycle)):
    return [SessionSummary(**row) for row in engine.list_sessions(actor)]

@router.post("/{session_id}/resume", response_model=SessionOut)
def resume_session(session_id: int, actor: Actor = Depends(get_actor), engine: SessionLifecycle = Depends(get_lifecycle)):
    return SessionOut(**asdict(engine.resume(actor, session_id)))

@router.get("/{session_id}/next", response_model=NextItemOut)
def next_item(session_id: int, actor: Actor = Depends(get_actor), engine: SessionLifecycle = Depends(get_lifecycle)):
    return NextItemOut(**asdict(engine.next_item(actor, session_id)))

@router.post("/{session_id}/answers", response_model=AnswerOut, status_code=201)
def submit_answer(session_id: int, payload: AnswerIn, actor: Actor = Depends(get_actor), engine: SessionLifecycle = Depends(get_lifecycle)):
    out = engine.submit_answer(actor, session_id, payload.question_id, payload.selected_index, payload.time_taken_sec)
    return AnswerOut(**asdict(out))

@router.post("/{session_id}/finalize", response_model=ResultOut)
def finalize_session(session_id: int, actor: Actor = Depends(get_actor), engine: SessionLifecycle = Depends(get_lifecycle)):
    return ResultOut(**asdict(engine.finalize(actor, session_id)))

@router.post("/{session_id}/submit", response_model=ResultOut)
def submit_exam(session_id: int, payload: ExamSubmit, actor: Actor = Depends(get_actor), engine: SessionLifecycle = Depends(get_lifecycle)):
    answers = [SubmittedAnswer(question_id=a.question_id, selected_index=a.selected_index, time_taken_sec=a.time_taken_sec) for a in payload.answers]
    return ResultOut(**asdict(engine.submit_exam(actor, session_id, answers)))

@router.get("/{session_id}/remaining", response_model=RemainingOut)
def remaining_time(session_id: int, actor: Actor = Depends(get_actor), engine: SessionLifecycle = Depends(get_lifecycle)):
    return RemainingOut(**asdict(engine.remaining_time(actor, session_id)))

@router.get("/{session_id}/questions", response_model=List[SessionQuestion])
def session_questions(session_id: int, actor: Actor = Depends(get_actor), engine: SessionLifecycle = Depends(get_lifecycle)):
    return [SessionQuestion(**row) for row in engine.session_questions(actor, session_id)]
