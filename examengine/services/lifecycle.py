"""
Session lifecycle manager.

Owns the exam session state machine (OPEN -> FINISHED) and orchestrates the
rating model, the time budget model and the stage router. Every operation runs
in one database transaction that holds a row lock on the session, so concurrent
requests against the same session are serialized.

Elapsed time is never tracked by a running timer: each operation recomputes it
from the last recorded event (see ``enforce_time``).
"""
import json
import logging
import random
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from examengine.core import cache
from examengine.core.auth import Actor
from examengine.core.config import (
    DEFAULT_RATING, DEFAULT_ITEM_COUNT, MAX_ITEMS_PER_SESSION, MAX_TIME_BUDGET_SEC, DEFAULT_ITEM_TIME_SEC,
)
from examengine.core.errors import (
    ConflictError, ExpiredError, ForbiddenError, InvalidInputError, NotFoundError, SessionFinishedError,
)
from examengine.models.orm import (
    Answer, CandidateRating, Exam, ExamSession, FinishReason, Question, SessionItem, SERVABLE_STATES,
)
from examengine.services.rating import band_for_rating, expected_win_probability, round_half_up, update_pair
from examengine.services.routing import AdaptiveConfig, build_stage_item, route_block
from examengine.services.selection import build_question_set, normalize_topics
from examengine.services.timing import budget_for_expectation, expected_ms, pace_ratio

logger = logging.getLogger(__name__)

OPTION_COUNT = 4

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

def scope_key(exam_id: Optional[int], topics: Sequence[str]) -> str:
    if exam_id is not None:
        return f"exam:{exam_id}"
    return "topics:" + (",".join(sorted(topics)) if topics else "*")

def _log(event: str, payload: Dict[str, Any]) -> None:
    logger.info("%s %s", event, json.dumps(payload, default=str))

# ========== Results ==========

@dataclass
class SessionView:
    session_id: int
    candidate_id: str
    exam_id: Optional[int]
    topics: List[str]
    total_items: int
    total_time_sec: Optional[int]
    remaining_time_sec: Optional[int]
    deadline_at: Optional[datetime]
    current_band: int
    stage_index: int
    started_at: datetime
    finished: bool
    repaired: bool = False

@dataclass
class NextItem:
    session_id: int
    question_id: int
    position: int
    text: str
    options: List[str]
    topic: str
    band: int
    expected_ms: int
    current_band: int
    remaining_time_sec: Optional[int]
    deadline_at: Optional[datetime]

@dataclass
class AnswerOutcome:
    answer_id: int
    question_id: int
    is_correct: bool
    expected_ms: int
    pace_ratio: float
    current_band: int
    stage_index: int
    remaining_time_sec: Optional[int]
    routing: Optional[str] = None
    replayed: bool = False

@dataclass
class ExamResult:
    session_id: int
    correct: int
    total: int
    score: int
    finished_at: Optional[datetime]
    finish_reason: Optional[str]
    already_submitted: bool = False

@dataclass
class RemainingTime:
    session_id: int
    remaining: Optional[int]
    deadline_at: Optional[datetime]
    finished: bool
    total: Optional[int]

@dataclass
class SubmittedAnswer:
    question_id: int
    selected_index: int
    time_taken_sec: int = 0

@dataclass
class _Intake:
    answer: Answer
    inserted: bool
    expected_ms: int
    pace: float
    rating: Any = field(default=None)

# ========== Lifecycle ==========

class SessionLifecycle:
    """Engine entry point. One instance per request/DB session."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow,
                 rng: Optional[random.Random] = None, config: Optional[AdaptiveConfig] = None):
        self.db = db
        self.clock = clock
        self.rng = rng or random.Random()
        self.config = config or AdaptiveConfig()

    # ----- transaction & loading helpers -----

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.db.commit()
        except ExpiredError:
            # the session was finalized on the way to this error; keep that
            self.db.commit()
            raise
        except Exception:
            self.db.rollback()
            raise

    def _lock(self, session_id: int) -> ExamSession:
        s = self.db.execute(
            select(ExamSession).where(ExamSession.id == session_id)
            .with_for_update().execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if s is None:
            raise NotFoundError("Session not found", session_id=session_id)
        return s

    def _check_owner(self, s: ExamSession, actor: Actor, write: bool = True) -> None:
        if s.candidate_id == actor.candidate_id:
            return
        if actor.is_admin and not write:
            return
        raise ForbiddenError("Session belongs to another candidate", session_id=s.id)

    def _session_config(self, s: ExamSession) -> AdaptiveConfig:
        return AdaptiveConfig.model_validate(s.config or {})

    def _candidate_rating(self, candidate_id: str) -> CandidateRating:
        """Lock the candidate's rating row, creating it at the default rating on first use.

        The insert is a no-op when the row exists, so two first-time requests
        for the same candidate queue on the row instead of colliding on its key.
        """
        insert = sqlite_insert if self.db.get_bind().dialect.name == "sqlite" else pg_insert
        self.db.execute(
            insert(CandidateRating).values(candidate_id=candidate_id, rating=DEFAULT_RATING)
            .on_conflict_do_nothing(index_elements=[CandidateRating.candidate_id])
        )
        return self.db.execute(
            select(CandidateRating).where(CandidateRating.candidate_id == candidate_id)
            .with_for_update().execution_options(populate_existing=True)
        ).scalar_one()

    def _answered_count(self, session_id: int) -> int:
        return self.db.scalar(select(func.count()).select_from(Answer).where(Answer.session_id == session_id)) or 0

    def _has_frozen_set(self, session_id: int) -> bool:
        return self.db.scalar(select(func.count()).select_from(SessionItem).where(SessionItem.session_id == session_id)) > 0

    def _view(self, s: ExamSession, repaired: bool = False) -> SessionView:
        return SessionView(
            session_id=s.id, candidate_id=s.candidate_id, exam_id=s.exam_id, topics=list(s.topics or []),
            total_items=s.total_items, total_time_sec=s.total_time_sec, remaining_time_sec=s.remaining_time_sec,
            deadline_at=s.deadline_at, current_band=s.current_band, stage_index=s.stage_index,
            started_at=s.started_at, finished=s.is_finished, repaired=repaired,
        )

    def _result(self, s: ExamSession, already_submitted: bool = False) -> ExamResult:
        return ExamResult(
            session_id=s.id, correct=s.correct_count or 0, total=s.total_items, score=s.score or 0,
            finished_at=s.finished_at, finish_reason=s.finish_reason, already_submitted=already_submitted,
        )

    def _require_open(self, s: ExamSession) -> None:
        if not s.is_finished:
            return
        if s.finish_reason == FinishReason.TIME.value:
            raise ExpiredError("Time is up", session_id=s.id, finished=True)
        raise SessionFinishedError("Session is already finished", session_id=s.id)

    # ----- time -----

    def _enforce(self, s: ExamSession, now: datetime) -> int:
        """Charge wall-clock time since the last event; finish on exhaustion.

        Returns the whole seconds charged.
        """
        if s.is_finished:
            return 0
        charged = 0
        last = s.last_event_at or s.started_at
        elapsed = (now - last).total_seconds()
        if elapsed < 0:
            # clock went backwards; restart the interval instead of crediting time
            s.last_event_at = now
        else:
            whole = int(elapsed)
            if s.remaining_time_sec is not None:
                new_remaining = max(0, s.remaining_time_sec - whole)
                charged = s.remaining_time_sec - new_remaining
                s.remaining_time_sec = new_remaining
                s.charged_since_answer_sec = (s.charged_since_answer_sec or 0) + charged
            # carry the sub-second remainder into the next interval
            s.last_event_at = last + timedelta(seconds=whole)
        out_of_time = s.remaining_time_sec is not None and s.remaining_time_sec <= 0
        deadline_passed = s.deadline_at is not None and s.deadline_at <= now
        if out_of_time or deadline_passed:
            s.remaining_time_sec = 0
            self._finish(s, now, FinishReason.TIME)
        return charged

    def _finish(self, s: ExamSession, now: datetime, reason: FinishReason) -> None:
        if s.is_finished:
            return
        correct = self.db.scalar(
            select(func.count()).select_from(Answer).where(Answer.session_id == s.id, Answer.is_correct.is_(True))
        ) or 0
        s.finished_at = now
        s.finish_reason = reason.value
        s.correct_count = correct
        s.score = round_half_up(100.0 * correct / s.total_items) if s.total_items > 0 else 0
        _log("adaptive.finish", {"sessionId": s.id, "reason": reason.value, "correct": correct,
                                 "total": s.total_items, "score": s.score})

    def _backfill_timers(self, s: ExamSession, now: datetime) -> None:
        if s.total_time_sec is not None:
            if s.remaining_time_sec is None:
                s.remaining_time_sec = s.total_time_sec
            if s.deadline_at is None:
                s.deadline_at = s.started_at + timedelta(seconds=s.total_time_sec)
        if s.last_event_at is None:
            s.last_event_at = now
        if s.charged_since_answer_sec is None:
            s.charged_since_answer_sec = 0
        if not s.config:
            s.config = self.config.model_dump(mode="json")

    def _expected_ms(self, s: ExamSession, cfg: AdaptiveConfig, answered: int) -> int:
        remaining_items = max(1, s.total_items - answered)
        budget = budget_for_expectation(s.remaining_time_sec, remaining_items, DEFAULT_ITEM_TIME_SEC)
        return expected_ms(budget, remaining_items, s.current_band, cfg.time_weights)

    # ----- frozen set -----

    def _freeze(self, s: ExamSession) -> None:
        pairs = build_question_set(
            self.db, exam_id=s.exam_id, topics=s.topics or [], band=s.band_filter,
            item_count=s.total_items, rng=self.rng,
        )
        self.db.add_all([SessionItem(session_id=s.id, question_id=qid, position=pos) for qid, pos in pairs])
        self.db.flush()

    def _ensure_frozen(self, s: ExamSession) -> bool:
        """Rebuild the frozen set of a session whose creation was interrupted. Idempotent."""
        if self._has_frozen_set(s.id):
            return False
        self._freeze(s)
        _log("adaptive.repair", {"sessionId": s.id, "totalItems": s.total_items})
        return True

    # ----- operations -----

    def create(self, actor: Actor, *, exam_id: Optional[int] = None, topics: Optional[Iterable[str]] = None,
               item_count: Optional[int] = None, time_budget_sec: Optional[int] = None,
               band: Optional[int] = None) -> SessionView:
        now = self.clock()
        with self._transaction():
            exam = None
            if exam_id is not None:
                exam = self.db.get(Exam, exam_id)
                if exam is None:
                    raise NotFoundError("Exam not found", exam_id=exam_id)
            chosen_topics = normalize_topics(topics) or normalize_topics(exam.topics if exam else [])
            band_filter = band if band is not None else (exam.band if exam else None)
            if band_filter is not None and not 1 <= band_filter <= 5:
                raise InvalidInputError("band must be between 1 and 5", band=band_filter)
            count = item_count if item_count is not None else ((exam.item_count if exam else None) or DEFAULT_ITEM_COUNT)
            if count < 1:
                raise InvalidInputError("item_count must be positive", item_count=count)
            count = min(count, MAX_ITEMS_PER_SESSION)
            budget = time_budget_sec if time_budget_sec is not None else (exam.time_budget_sec if exam else None)
            if budget is not None:
                if budget <= 0:
                    raise InvalidInputError("time_budget_sec must be positive", time_budget_sec=budget)
                budget = min(budget, MAX_TIME_BUDGET_SEC)

            # the rating row lock serializes concurrent creates for one candidate
            rating = self._candidate_rating(actor.candidate_id)
            scope = scope_key(exam_id, chosen_topics)
            open_id = self.db.scalar(
                select(ExamSession.id).where(
                    ExamSession.candidate_id == actor.candidate_id, ExamSession.scope_key == scope,
                    ExamSession.finished_at.is_(None),
                ).order_by(ExamSession.started_at.desc()).limit(1)
            )
            if open_id is not None:
                raise ConflictError("An open session already exists for this test", session_id=open_id)

            pairs = build_question_set(
                self.db, exam_id=exam_id, topics=chosen_topics, band=band_filter, item_count=count, rng=self.rng,
            )
            start_band = band_for_rating(rating.rating)
            s = ExamSession(
                candidate_id=actor.candidate_id, exam_id=exam_id, scope_key=scope, topics=chosen_topics,
                band_filter=band_filter, total_items=len(pairs), total_time_sec=budget, remaining_time_sec=budget,
                deadline_at=(now + timedelta(seconds=budget)) if budget is not None else None,
                last_event_at=now, charged_since_answer_sec=0, started_at=now, current_band=start_band, stage_index=0,
                config=self.config.model_dump(mode="json"),
            )
            self.db.add(s)
            self.db.flush()
            self.db.add_all([SessionItem(session_id=s.id, question_id=qid, position=pos) for qid, pos in pairs])
            self.db.flush()
            _log("adaptive.start", {
                "sessionId": s.id, "candidateId": actor.candidate_id, "examId": exam_id, "topics": chosen_topics,
                "totalItems": s.total_items, "totalTimeSec": budget,
                "seed": {"rating": rating.rating, "startBand": start_band},
            })
            return self._view(s)

    def resume(self, actor: Actor, session_id: int) -> SessionView:
        now = self.clock()
        with self._transaction():
            s = self._lock(session_id)
            self._check_owner(s, actor)
            if s.is_finished:
                return self._view(s)
            repaired = self._ensure_frozen(s)
            self._backfill_timers(s, now)
            self._enforce(s, now)
            return self._view(s, repaired=repaired)

    def enforce_time(self, session_id: int) -> RemainingTime:
        """Recompute remaining time and finish the session if it ran out. Idempotent."""
        now = self.clock()
        with self._transaction():
            s = self._lock(session_id)
            self._enforce(s, now)
            return RemainingTime(session_id=s.id, remaining=s.remaining_time_sec, deadline_at=s.deadline_at,
                                 finished=s.is_finished, total=s.total_time_sec)

    def next_item(self, actor: Actor, session_id: int) -> NextItem:
        now = self.clock()
        with self._transaction():
            s = self._lock(session_id)
            self._check_owner(s, actor)
            self._enforce(s, now)
            self._require_open(s)

            rows = self.db.execute(
                select(SessionItem.position, Question)
                .join(Question, Question.id == SessionItem.question_id)
                .where(SessionItem.session_id == s.id)
                .order_by(SessionItem.position)
            ).all()
            if not rows:
                raise NotFoundError("Session has no frozen question set; resume it first", session_id=s.id)
            answered = set(self.db.scalars(select(Answer.question_id).where(Answer.session_id == s.id)))
            unanswered = [(pos, q) for pos, q in rows if q.id not in answered]
            if not unanswered:
                raise NotFoundError("No question available", session_id=s.id)
            # current band first; any band otherwise so the candidate is never blocked
            pos, q = next(((p, q) for p, q in unanswered if q.band == s.current_band), unanswered[0])

            cfg = self._session_config(s)
            exp = self._expected_ms(s, cfg, len(answered))
            stored = self.db.get(CandidateRating, s.candidate_id)
            rating = stored.rating if stored is not None else DEFAULT_RATING
            _log("adaptive.next", {
                "sessionId": s.id, "currentBand": s.current_band, "questionId": q.id, "band": q.band,
                "exposureCount": q.exposure_count,
                "rating": {"candidate": rating, "item": q.rating,
                           "expectedWinProb": round(expected_win_probability(rating, q.rating), 3)},
                "time": {"remainingSec": s.remaining_time_sec, "expectedMs": exp},
            })
            item = NextItem(
                session_id=s.id, question_id=q.id, position=pos, text=q.text, options=list(q.options),
                topic=q.topic, band=q.band, expected_ms=exp, current_band=s.current_band,
                remaining_time_sec=s.remaining_time_sec, deadline_at=s.deadline_at,
            )
        cache.bump_exposure(item.question_id)
        return item

    def _validate_index(self, selected_index: Any) -> int:
        if isinstance(selected_index, bool) or not isinstance(selected_index, int) or not 0 <= selected_index < OPTION_COUNT:
            raise InvalidInputError("selected_index out of bounds", selected_index=selected_index)
        return selected_index

    def _servable_question(self, s: ExamSession, question_id: int) -> Question:
        in_set = self.db.scalar(
            select(SessionItem.id).where(SessionItem.session_id == s.id, SessionItem.question_id == question_id)
        )
        if in_set is None:
            raise InvalidInputError("Question does not belong to this session", question_id=question_id)
        q = self.db.get(Question, question_id)
        if q is None:
            raise NotFoundError("Question not found", question_id=question_id)
        if (q.status or "").strip().lower() not in SERVABLE_STATES:
            raise InvalidInputError("Question is not published", question_id=question_id)
        return q

    def _intake(self, s: ExamSession, q: Question, selected: int, time_taken_sec: int,
                cfg: AdaptiveConfig, now: datetime) -> _Intake:
        existing = self.db.execute(
            select(Answer).where(Answer.session_id == s.id, Answer.question_id == q.id)
        ).scalar_one_or_none()
        if existing is not None and existing.selected_index == selected and existing.time_taken_sec == time_taken_sec:
            return _Intake(answer=existing, inserted=False, expected_ms=existing.expected_ms, pace=existing.pace_ratio)

        is_correct = selected == q.correct_index
        exp = self._expected_ms(s, cfg, self._answered_count(s.id))
        pace = pace_ratio(time_taken_sec * 1000, exp)

        candidate = self._candidate_rating(s.candidate_id)
        upd = update_pair(candidate.rating, q.rating, is_correct, pace)
        candidate.rating = upd.candidate_after
        candidate.updated_at = now
        item_before = q.rating
        q.rating = upd.item_after
        q.exposure_count = (q.exposure_count or 0) + 1

        fields = dict(selected_index=selected, is_correct=is_correct, time_taken_sec=time_taken_sec, band=q.band,
                      question_rating=item_before, expected_ms=exp, pace_ratio=pace, updated_at=now)
        if existing is None:
            answer = Answer(session_id=s.id, question_id=q.id, created_at=now, **fields)
            self.db.add(answer)
        else:
            answer = existing
            for k, v in fields.items():
                setattr(answer, k, v)
        self.db.flush()
        _log("adaptive.rating", {
            "sessionId": s.id, "questionId": q.id, "isCorrect": is_correct, "paceRatio": round(pace, 3),
            "rating": {"candidateBefore": upd.candidate_before, "itemBefore": upd.item_before,
                       "expectedWinProb": round(upd.expected, 3), "actualScore": round(upd.actual, 3),
                       "dCandidate": upd.candidate_delta, "dItem": upd.item_delta,
                       "candidateAfter": upd.candidate_after, "itemAfter": upd.item_after},
        })
        return _Intake(answer=answer, inserted=existing is None, expected_ms=exp, pace=pace, rating=upd)

    def _route_stage(self, s: ExamSession, cfg: AdaptiveConfig) -> str:
        block = list(self.db.scalars(
            select(Answer).where(Answer.session_id == s.id).order_by(Answer.id.desc()).limit(cfg.stage_size)
        ))
        block.reverse()
        items = [build_stage_item(a.band, a.is_correct, a.pace_ratio, cfg) for a in block]
        agg, decision, band = route_block(items, s.current_band, cfg)
        _log("adaptive.route", {
            "sessionId": s.id,
            "stage": {"size": cfg.stage_size, "index": s.stage_index + 1, "aggregates": agg.as_log()},
            "decision": {"fromBand": s.current_band, "route": decision.value, "toBand": band},
        })
        s.current_band = band
        s.stage_index += 1
        return decision.value

    def submit_answer(self, actor: Actor, session_id: int, question_id: int, selected_index: int,
                      time_taken_sec: int = 0) -> AnswerOutcome:
        now = self.clock()
        time_taken = max(0, int(time_taken_sec or 0))
        with self._transaction():
            s = self._lock(session_id)
            self._check_owner(s, actor)
            self._enforce(s, now)
            self._require_open(s)
            q = self._servable_question(s, question_id)
            selected = self._validate_index(selected_index)
            cfg = self._session_config(s)

            intake = self._intake(s, q, selected, time_taken, cfg, now)
            routing = None
            if intake.rating is not None:
                # only the reported time the wall clock has not already charged since the previous answer
                already = s.charged_since_answer_sec or 0
                if s.remaining_time_sec is not None:
                    s.remaining_time_sec = max(0, s.remaining_time_sec - max(0, time_taken - already))
                s.charged_since_answer_sec = 0
                if intake.inserted and self._answered_count(s.id) % cfg.stage_size == 0:
                    routing = self._route_stage(s, cfg)
            return AnswerOutcome(
                answer_id=intake.answer.id, question_id=q.id, is_correct=intake.answer.is_correct,
                expected_ms=intake.expected_ms, pace_ratio=intake.pace, current_band=s.current_band,
                stage_index=s.stage_index, remaining_time_sec=s.remaining_time_sec, routing=routing,
                replayed=intake.rating is None,
            )

    def finalize(self, actor: Actor, session_id: int) -> ExamResult:
        now = self.clock()
        with self._transaction():
            s = self._lock(session_id)
            self._check_owner(s, actor)
            was_finished = s.is_finished
            self._enforce(s, now)
            self._finish(s, now, FinishReason.MANUAL)
            return self._result(s, already_submitted=was_finished)

    def submit_exam(self, actor: Actor, session_id: int, answers: Sequence[SubmittedAnswer]) -> ExamResult:
        """Batch-submit the whole exam and finalize it.

        A finished session returns its stored result instead of being reprocessed.
        """
        now = self.clock()
        with self._transaction():
            s = self._lock(session_id)
            self._check_owner(s, actor)
            self._enforce(s, now)
            if s.is_finished:
                return self._result(s, already_submitted=True)
            if not answers:
                raise InvalidInputError("No answers provided")
            seen = set()
            checked = []
            for a in answers:
                if a.question_id in seen:
                    raise InvalidInputError("Duplicate question in submission", question_id=a.question_id)
                seen.add(a.question_id)
                q = self._servable_question(s, a.question_id)
                checked.append((q, self._validate_index(a.selected_index), max(0, int(a.time_taken_sec or 0))))
            cfg = self._session_config(s)
            for q, selected, time_taken in checked:
                self._intake(s, q, selected, time_taken, cfg, now)
            self._finish(s, now, FinishReason.SUBMITTED)
            return self._result(s)

    def remaining_time(self, actor: Actor, session_id: int) -> RemainingTime:
        now = self.clock()
        with self._transaction():
            s = self._lock(session_id)
            self._check_owner(s, actor, write=False)
            self._enforce(s, now)
            return RemainingTime(session_id=s.id, remaining=s.remaining_time_sec, deadline_at=s.deadline_at,
                                 finished=s.is_finished, total=s.total_time_sec)

    # ----- read models -----

    def list_sessions(self, actor: Actor) -> List[Dict[str, Any]]:
        sessions = self.db.scalars(
            select(ExamSession).where(ExamSession.candidate_id == actor.candidate_id)
            .order_by(ExamSession.started_at.desc(), ExamSession.id.desc())
        ).all()
        out = []
        for s in sessions:
            topic = self.db.scalar(
                select(Question.topic).join(SessionItem, SessionItem.question_id == Question.id)
                .where(SessionItem.session_id == s.id).order_by(SessionItem.position).limit(1)
            )
            out.append({
                "session_id": s.id, "exam_id": s.exam_id, "topic": topic, "started_at": s.started_at,
                "finished_at": s.finished_at, "total_items": s.total_items, "correct": s.correct_count,
                "score": s.score,
            })
        return out

    def session_questions(self, actor: Actor, session_id: int) -> List[Dict[str, Any]]:
        s = self.db.get(ExamSession, session_id)
        if s is None:
            raise NotFoundError("Session not found", session_id=session_id)
        self._check_owner(s, actor, write=False)
        rows = self.db.execute(
            select(SessionItem.position, Question)
            .join(Question, Question.id == SessionItem.question_id)
            .where(SessionItem.session_id == s.id)
            .order_by(SessionItem.position)
        ).all()
        return [{"position": pos, "question_id": q.id, "text": q.text, "options": list(q.options),
                 "topic": q.topic, "band": q.band} for pos, q in rows]
