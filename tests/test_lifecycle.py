import pytest
from datetime import timedelta
from sqlalchemy import select, func, delete

from examengine.core.auth import Actor
from examengine.core.errors import (
    ConflictError, ExpiredError, ForbiddenError, InsufficientInventoryError, InvalidInputError, NotFoundError,
    SessionFinishedError,
)
from examengine.models.orm import Answer, CandidateRating, ExamSession, Question, SessionItem
from examengine.services.lifecycle import SubmittedAnswer
from tests.conftest import add_questions, add_exam

def count(db, model, **where):
    stmt = select(func.count()).select_from(model)
    for k, v in where.items():
        stmt = stmt.where(getattr(model, k) == v)
    return db.scalar(stmt)

def answer_all(lifecycle, actor, session_id, n, correct_index=0, time_taken=30):
    outcomes = []
    for _ in range(n):
        item = lifecycle.next_item(actor, session_id)
        outcomes.append(lifecycle.submit_answer(actor, session_id, item.question_id, correct_index, time_taken))
    return outcomes

class TestCreate:
    def test_seeds_band_and_timers(self, db, lifecycle, candidate, clock):
        add_questions(db, n=12)
        view = lifecycle.create(candidate, topics=["Algebra"], item_count=10, time_budget_sec=600)
        assert view.current_band == 3
        assert view.stage_index == 0
        assert view.total_items == 10
        assert view.remaining_time_sec == 600
        assert view.deadline_at == clock.now + timedelta(seconds=600)
        assert count(db, SessionItem, session_id=view.session_id) == 10
        assert count(db, CandidateRating, candidate_id="cand-1") == 1

    def test_rating_row_created_once_per_candidate(self, db, lifecycle, candidate, session_factory):
        add_questions(db, n=10)
        add_questions(db, topic="geometry", n=10)
        lifecycle.create(candidate, topics=["algebra"], item_count=3)
        lifecycle.create(candidate, topics=["geometry"], item_count=3)
        assert count(db, CandidateRating) == 1
        # a row committed by a concurrent request is reused, not re-inserted or reset
        other = session_factory()
        other.add(CandidateRating(candidate_id="cand-9", rating=1460))
        other.commit()
        other.close()
        assert lifecycle.create(Actor("cand-9"), topics=["algebra"], item_count=3).current_band == 5
        assert db.get(CandidateRating, "cand-9").rating == 1460

    def test_high_rating_starts_higher(self, db, lifecycle, candidate):
        add_questions(db, n=10)
        db.add(CandidateRating(candidate_id="cand-1", rating=1500))
        db.commit()
        assert lifecycle.create(candidate, topics=["algebra"], item_count=5).current_band == 5

    def test_duplicate_open_session_conflicts(self, db, lifecycle, candidate):
        add_questions(db, n=10)
        add_questions(db, topic="geometry", n=10)
        first = lifecycle.create(candidate, topics=["algebra"], item_count=5)
        with pytest.raises(ConflictError) as err:
            lifecycle.create(candidate, topics=[" ALGEBRA "], item_count=5)
        assert err.value.session_id == first.session_id
        assert not isinstance(err.value, SessionFinishedError)
        # another test or another candidate is fine
        lifecycle.create(candidate, topics=["geometry"], item_count=5)
        lifecycle.create(Actor("cand-2"), topics=["algebra"], item_count=5)

    def test_new_session_allowed_after_finish(self, db, lifecycle, candidate):
        add_questions(db, n=10)
        first = lifecycle.create(candidate, topics=["algebra"], item_count=5)
        lifecycle.finalize(candidate, first.session_id)
        second = lifecycle.create(candidate, topics=["algebra"], item_count=5)
        assert second.session_id != first.session_id

    def test_insufficient_inventory_creates_nothing(self, db, lifecycle, candidate):
        add_questions(db, n=5)
        with pytest.raises(InsufficientInventoryError):
            lifecycle.create(candidate, topics=["algebra"], item_count=20)
        assert count(db, ExamSession) == 0
        assert count(db, SessionItem) == 0

    def test_exam_defaults_and_curated_order(self, db, lifecycle, candidate):
        ids = add_questions(db, n=6)
        exam_id = add_exam(db, ids[::-1], item_count=4, time_budget_sec=300)
        view = lifecycle.create(candidate, exam_id=exam_id)
        assert view.total_items == 4
        assert view.total_time_sec == 300
        assert [q["question_id"] for q in lifecycle.session_questions(candidate, view.session_id)] == ids[::-1][:4]

    def test_unknown_exam(self, db, lifecycle, candidate):
        with pytest.raises(NotFoundError):
            lifecycle.create(candidate, exam_id=999)

    @pytest.mark.parametrize("kw", [{"band": 0}, {"band": 6}, {"item_count": 0}, {"time_budget_sec": -5}])
    def test_invalid_parameters(self, db, lifecycle, candidate, kw):
        add_questions(db, n=10)
        with pytest.raises(InvalidInputError):
            lifecycle.create(candidate, topics=["algebra"], **kw)

    def test_limits_are_capped(self, db, lifecycle, candidate):
        add_questions(db, n=120)
        view = lifecycle.create(candidate, item_count=500, time_budget_sec=10**7)
        assert view.total_items == 100
        assert view.total_time_sec == 24 * 3600

class TestNextItem:
    def test_first_expected_time(self, db, lifecycle, candidate):
        add_questions(db, n=10)
        view = lifecycle.create(candidate, topics=["algebra"], item_count=10, time_budget_sec=600)
        item = lifecycle.next_item(candidate, view.session_id)
        assert item.expected_ms == 60000
        assert item.position == 1
        assert len(item.options) == 4

    def test_prefers_current_band_then_falls_back(self, db, lifecycle, candidate):
        add_questions(db, band=2, n=3)
        band3 = add_questions(db, band=3, n=1)
        view = lifecycle.create(candidate, item_count=4)
        first = lifecycle.next_item(candidate, view.session_id)
        assert first.question_id == band3[0]
        lifecycle.submit_answer(candidate, view.session_id, first.question_id, 0, 5)
        second = lifecycle.next_item(candidate, view.session_id)
        assert second.band == 2

    def test_exhausted_session(self, db, lifecycle, candidate):
        add_questions(db, n=2)
        view = lifecycle.create(candidate, item_count=2)
        answer_all(lifecycle, candidate, view.session_id, 2)
        with pytest.raises(NotFoundError):
            lifecycle.next_item(candidate, view.session_id)

    def test_unlimited_session_uses_default_item_time(self, db, lifecycle, candidate, clock):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5)
        assert view.deadline_at is None
        clock.advance(10 * 3600)
        item = lifecycle.next_item(candidate, view.session_id)
        assert item.expected_ms == 60000
        assert item.remaining_time_sec is None

class TestSubmitAnswer:
    def test_ten_fast_correct_answers_promote(self, db, lifecycle, candidate):
        add_questions(db, n=10)
        view = lifecycle.create(candidate, topics=["algebra"], item_count=10, time_budget_sec=600)
        outcomes = answer_all(lifecycle, candidate, view.session_id, 10)
        assert outcomes[0].pace_ratio == pytest.approx(0.5)
        assert all(o.is_correct for o in outcomes)
        assert [o.routing for o in outcomes[:9]] == [None] * 9
        assert outcomes[-1].routing == "PROMOTE"
        assert outcomes[-1].current_band == 4
        assert outcomes[-1].stage_index == 1
        assert db.get(CandidateRating, "cand-1").rating > 1200

    def test_wrong_answers_demote(self, db, lifecycle, candidate):
        add_questions(db, n=10)
        view = lifecycle.create(candidate, item_count=10, time_budget_sec=600)
        outcomes = answer_all(lifecycle, candidate, view.session_id, 10, correct_index=2, time_taken=50)
        assert outcomes[-1].routing == "DEMOTE"
        assert outcomes[-1].current_band == 2

    def test_identical_resubmission_is_applied_once(self, db, lifecycle, candidate):
        qids = add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5, time_budget_sec=600)
        item = lifecycle.next_item(candidate, view.session_id)
        first = lifecycle.submit_answer(candidate, view.session_id, item.question_id, 0, 20)
        rating = db.get(CandidateRating, "cand-1").rating
        item_rating = db.get(Question, item.question_id).rating
        again = lifecycle.submit_answer(candidate, view.session_id, item.question_id, 0, 20)
        assert again.replayed and not first.replayed
        assert again.answer_id == first.answer_id
        assert count(db, Answer, session_id=view.session_id) == 1
        assert db.get(CandidateRating, "cand-1").rating == rating
        assert db.get(Question, item.question_id).rating == item_rating
        assert again.remaining_time_sec == 580
        assert db.get(Question, item.question_id).exposure_count == 1

    def test_changed_resubmission_overwrites(self, db, lifecycle, candidate):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5)
        item = lifecycle.next_item(candidate, view.session_id)
        lifecycle.submit_answer(candidate, view.session_id, item.question_id, 1, 20)
        out = lifecycle.submit_answer(candidate, view.session_id, item.question_id, 0, 25)
        assert out.is_correct
        rows = db.scalars(select(Answer).where(Answer.session_id == view.session_id)).all()
        assert len(rows) == 1
        assert rows[0].selected_index == 0

    def test_wall_clock_and_reported_time_are_not_double_counted(self, db, lifecycle, candidate, clock):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5, time_budget_sec=600)
        item = lifecycle.next_item(candidate, view.session_id)
        clock.advance(20)
        out = lifecycle.submit_answer(candidate, view.session_id, item.question_id, 0, 30)
        assert out.remaining_time_sec == 570

    def test_timer_polls_do_not_change_the_answer_charge(self, db, lifecycle, clock):
        add_questions(db, n=10)
        polled, quiet = Actor("polled"), Actor("quiet")
        sessions = {a: lifecycle.create(a, item_count=5, time_budget_sec=600).session_id for a in (polled, quiet)}
        items = {a: lifecycle.next_item(a, sid).question_id for a, sid in sessions.items()}
        clock.advance(20)
        assert lifecycle.remaining_time(polled, sessions[polled]).remaining == 580
        clock.advance(10)
        for a, sid in sessions.items():
            assert lifecycle.submit_answer(a, sid, items[a], 0, 30).remaining_time_sec == 570
        # the wall-clock credit starts over after each graded answer
        for a, sid in sessions.items():
            nxt = lifecycle.next_item(a, sid).question_id
            items[a] = nxt
        clock.advance(10)
        lifecycle.remaining_time(polled, sessions[polled])
        for a, sid in sessions.items():
            assert lifecycle.submit_answer(a, sid, items[a], 0, 15).remaining_time_sec == 555

    def test_after_deadline_expires_and_leaves_answers_untouched(self, db, lifecycle, candidate, clock):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5, time_budget_sec=60)
        item = lifecycle.next_item(candidate, view.session_id)
        clock.advance(61)
        with pytest.raises(ExpiredError):
            lifecycle.submit_answer(candidate, view.session_id, item.question_id, 0, 5)
        db.expire_all()
        s = db.get(ExamSession, view.session_id)
        assert s.finished_at is not None
        assert s.finish_reason == "time"
        assert s.score == 0
        assert s.remaining_time_sec == 0
        assert count(db, Answer) == 0
        with pytest.raises(ExpiredError):
            lifecycle.next_item(candidate, view.session_id)

    def test_finished_session_rejects_answers(self, db, lifecycle, candidate):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5)
        item = lifecycle.next_item(candidate, view.session_id)
        lifecycle.finalize(candidate, view.session_id)
        with pytest.raises(SessionFinishedError):
            lifecycle.submit_answer(candidate, view.session_id, item.question_id, 0, 5)

    def test_question_outside_frozen_set(self, db, lifecycle, candidate):
        add_questions(db, n=5)
        stray = add_questions(db, topic="geometry", n=1)[0]
        view = lifecycle.create(candidate, topics=["algebra"], item_count=5)
        with pytest.raises(InvalidInputError):
            lifecycle.submit_answer(candidate, view.session_id, stray, 0, 5)

    @pytest.mark.parametrize("index", [-1, 4, 7, True])
    def test_selected_index_out_of_range(self, db, lifecycle, candidate, index):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5)
        item = lifecycle.next_item(candidate, view.session_id)
        with pytest.raises(InvalidInputError):
            lifecycle.submit_answer(candidate, view.session_id, item.question_id, index, 5)
        assert count(db, Answer) == 0

    def test_unpublished_after_freeze(self, db, lifecycle, candidate):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5)
        item = lifecycle.next_item(candidate, view.session_id)
        db.get(Question, item.question_id).status = "archived"
        db.commit()
        with pytest.raises(InvalidInputError):
            lifecycle.submit_answer(candidate, view.session_id, item.question_id, 0, 5)

    def test_other_candidate_is_forbidden(self, db, lifecycle, candidate):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5)
        item = lifecycle.next_item(candidate, view.session_id)
        with pytest.raises(ForbiddenError):
            lifecycle.submit_answer(Actor("intruder"), view.session_id, item.question_id, 0, 5)
        with pytest.raises(ForbiddenError):
            lifecycle.submit_answer(Actor("root", role="admin"), view.session_id, item.question_id, 0, 5)
        assert lifecycle.remaining_time(Actor("root", role="admin"), view.session_id).finished is False

    def test_unknown_session(self, db, lifecycle, candidate):
        with pytest.raises(NotFoundError):
            lifecycle.next_item(candidate, 12345)

class TestFinishing:
    def test_remaining_time_counts_down_and_ignores_clock_skew(self, db, lifecycle, candidate, clock):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5, time_budget_sec=600)
        clock.advance(100)
        assert lifecycle.remaining_time(candidate, view.session_id).remaining == 500
        clock.advance(-50)
        assert lifecycle.remaining_time(candidate, view.session_id).remaining == 500
        clock.advance(600)
        left = lifecycle.remaining_time(candidate, view.session_id)
        assert left.remaining == 0 and left.finished

    def test_enforce_time_is_idempotent(self, db, lifecycle, candidate, clock):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5, time_budget_sec=30)
        clock.advance(45)
        assert lifecycle.enforce_time(view.session_id).finished
        finished_at = db.get(ExamSession, view.session_id).finished_at
        clock.advance(45)
        assert lifecycle.enforce_time(view.session_id).finished
        db.expire_all()
        assert db.get(ExamSession, view.session_id).finished_at == finished_at

    def test_finalize_scores_and_is_idempotent(self, db, lifecycle, candidate):
        add_questions(db, n=3)
        view = lifecycle.create(candidate, item_count=3)
        answer_all(lifecycle, candidate, view.session_id, 2)
        result = lifecycle.finalize(candidate, view.session_id)
        assert (result.correct, result.total, result.score) == (2, 3, 67)
        assert result.finish_reason == "manual"
        again = lifecycle.finalize(candidate, view.session_id)
        assert again.already_submitted and again.score == 67

    def test_submit_exam_grades_batch_once(self, db, lifecycle, candidate):
        add_questions(db, n=4)
        view = lifecycle.create(candidate, item_count=4, time_budget_sec=600)
        qids = [q["question_id"] for q in lifecycle.session_questions(candidate, view.session_id)]
        answers = [SubmittedAnswer(qid, 0 if i < 3 else 1, 20) for i, qid in enumerate(qids)]
        result = lifecycle.submit_exam(candidate, view.session_id, answers)
        assert (result.correct, result.total, result.score) == (3, 4, 75)
        assert not result.already_submitted
        rating = db.get(CandidateRating, "cand-1").rating
        again = lifecycle.submit_exam(candidate, view.session_id, answers)
        assert again.already_submitted and again.score == 75
        assert db.get(CandidateRating, "cand-1").rating == rating
        assert count(db, Answer) == 4

    def test_submit_exam_rejects_bad_batch(self, db, lifecycle, candidate):
        add_questions(db, n=4)
        view = lifecycle.create(candidate, item_count=4)
        qid = lifecycle.session_questions(candidate, view.session_id)[0]["question_id"]
        with pytest.raises(InvalidInputError):
            lifecycle.submit_exam(candidate, view.session_id, [SubmittedAnswer(qid, 0), SubmittedAnswer(qid, 1)])
        with pytest.raises(InvalidInputError):
            lifecycle.submit_exam(candidate, view.session_id, [])
        assert count(db, Answer) == 0
        assert db.get(ExamSession, view.session_id).finished_at is None

class TestResume:
    def test_rebuilds_missing_frozen_set_once(self, db, lifecycle, candidate):
        add_questions(db, n=6)
        view = lifecycle.create(candidate, item_count=5, time_budget_sec=600)
        db.execute(delete(SessionItem).where(SessionItem.session_id == view.session_id))
        db.commit()
        resumed = lifecycle.resume(candidate, view.session_id)
        assert resumed.repaired
        assert count(db, SessionItem, session_id=view.session_id) == 5
        assert not lifecycle.resume(candidate, view.session_id).repaired

    def test_backfills_timer_fields(self, db, lifecycle, candidate, clock):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5, time_budget_sec=600)
        s = db.get(ExamSession, view.session_id)
        s.remaining_time_sec = None
        s.deadline_at = None
        s.config = {}
        db.commit()
        resumed = lifecycle.resume(candidate, view.session_id)
        assert resumed.remaining_time_sec == 600
        assert resumed.deadline_at == clock.now + timedelta(seconds=600)
        assert db.get(ExamSession, view.session_id).config["stage_size"] == 10

    def test_next_item_does_not_repair(self, db, lifecycle, candidate):
        add_questions(db, n=5)
        view = lifecycle.create(candidate, item_count=5)
        db.execute(delete(SessionItem).where(SessionItem.session_id == view.session_id))
        db.commit()
        with pytest.raises(NotFoundError):
            lifecycle.next_item(candidate, view.session_id)

class TestReadModels:
    def test_list_sessions_newest_first_with_topic(self, db, lifecycle, candidate, clock):
        add_questions(db, topic="algebra", n=5)
        add_questions(db, topic="geometry", n=5)
        first = lifecycle.create(candidate, topics=["algebra"], item_count=3)
        clock.advance(5)
        second = lifecycle.create(candidate, topics=["geometry"], item_count=3)
        rows = lifecycle.list_sessions(candidate)
        assert [r["session_id"] for r in rows] == [second.session_id, first.session_id]
        assert [r["topic"] for r in rows] == ["geometry", "algebra"]
        assert lifecycle.list_sessions(Actor("cand-2")) == []

    def test_session_questions_hide_answer_key(self, db, lifecycle, candidate):
        add_questions(db, n=3)
        view = lifecycle.create(candidate, item_count=3)
        rows = lifecycle.session_questions(candidate, view.session_id)
        assert [r["position"] for r in rows] == [1, 2, 3]
        assert all("correct_index" not in r for r in rows)
        with pytest.raises(ForbiddenError):
            lifecycle.session_questions(Actor("cand-2"), view.session_id)
