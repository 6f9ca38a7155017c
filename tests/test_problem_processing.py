import pytest

import db
import problem_processing
from answers import decode_answers
from conftest import COURSE, DAY, NOW
from problem_processing import (
    MSG_LMS_NOT_SENT,
    MSG_LMS_SENT,
    MSG_NOT_ASSIGNED,
    MSG_NOT_RECORDED,
    MSG_RECORDED,
    MSG_SET_CLOSED,
    MSG_STORAGE_FAILURE,
    process_and_log_answer,
)
from schemas import (
    AnswerGroup,
    GradedState,
    MergedProblem,
    ProblemFlag,
    SubmissionOptions,
    SubmissionStatus,
    UserSet,
)


class FakeGrader:
    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def submit_course_grade(self, user_id):
        self.calls.append(("course", user_id))
        if self.error:
            raise self.error
        return self.result

    def submit_set_grade(self, user_id, set_id):
        self.calls.append(("homework", user_id, set_id))
        if self.error:
            raise self.error
        return self.result


class ExplodingSensor:
    def send_events(self, user_id, events):
        raise ConnectionError("sensor unreachable")


def _pg(score, *, essay=False, correct=1, incorrect=1):
    answer_type = "essay" if essay else "value"
    return GradedState(
        recorded_score=score,
        num_of_correct_ans=correct,
        num_of_incorrect_ans=incorrect,
        answers={
            "AnSwEr0001": AnswerGroup(answer_id="AnSwEr0001", score=1, type=answer_type,
                                      response_order=["AnSwEr0001"]),
            "AnSwEr0002": AnswerGroup(answer_id="AnSwEr0002", score=0, response_order=["AnSwEr0002"]),
        },
        answer_entry_order=["AnSwEr0001", "AnSwEr0002"],
    )


def _submit(ce, authz, pg, *, problem_id="1", submit_time=NOW, record=True, submit=True,
            effective_user="alice", form=None, **collaborators):
    problem = db.get_merged_problem(COURSE, "alice", "hw1", problem_id)
    problem_set = db.get_merged_set(COURSE, "alice", "hw1")
    return process_and_log_answer(
        ce,
        authz,
        problem=problem,
        problem_set=problem_set,
        pg=pg,
        form_fields=form if form is not None else {"AnSwEr0001": "42", "AnSwEr0002": "7"},
        submit_time=submit_time,
        options=SubmissionOptions(submit_answers=submit, record_answers=record, start_time=NOW - 60),
        effective_user=effective_user,
        **collaborators,
    )


@pytest.fixture
def ce(course_env, seeded_course):
    return course_env


def test_recorded_submission_updates_both_views(ce, authz):
    problem = db.get_merged_problem(COURSE, "alice", "hw1", "1")
    outcome = process_and_log_answer(
        ce,
        authz,
        problem=problem,
        problem_set=db.get_merged_set(COURSE, "alice", "hw1"),
        pg=_pg(0.5, correct=1, incorrect=1),
        form_fields={"AnSwEr0001": "42", "AnSwEr0002": "7"},
        submit_time=NOW,
        options=SubmissionOptions(record_answers=True),
        effective_user="alice",
    )

    assert outcome.status is SubmissionStatus.RECORDED
    assert outcome.message == MSG_RECORDED
    stored = db.get_user_problem(COURSE, "alice", "hw1", "1")
    for field in ("status", "sub_status", "attempted", "num_correct", "num_incorrect", "last_answer"):
        assert getattr(stored, field) == getattr(problem, field)
    assert stored.status == pytest.approx(0.5)
    assert stored.attempted is True
    assert decode_answers(stored.last_answer) == {"AnSwEr0001": "42", "AnSwEr0002": "7"}


def test_audit_trail_written(ce, authz):
    _submit(ce, authz, _pg(0.5), submit_time=NOW + 0.9)

    answers = db.list_past_answers(COURSE, "alice", "hw1", "1")
    assert len(answers) == 1
    assert answers[0].timestamp == NOW
    assert answers[0].scores == "10"
    assert answers[0].answer_string == "42\t7"
    assert answers[0].course_id == "math101"
    assert answers[0].source_file == "Library/hw1/p1.pg"

    answer_log = ce.answer_log_path.read_text(encoding="utf-8")
    assert f"|alice|hw1|1|10\t{NOW}\t42\t7" in answer_log
    transaction_log = ce.transaction_log_path.read_text(encoding="utf-8")
    assert "1\thw1\talice\tLibrary/hw1/p1.pg" in transaction_log


def test_status_never_regresses_but_counters_follow_latest(ce, authz):
    _submit(ce, authz, _pg(0.8, correct=4, incorrect=1))
    _submit(ce, authz, _pg(0.3, correct=1, incorrect=4))

    stored = db.get_user_problem(COURSE, "alice", "hw1", "1")
    assert stored.status == pytest.approx(0.8)
    assert (stored.num_correct, stored.num_incorrect) == (1, 4)


def test_reduced_scoring_period_discounts_new_gain(ce, authz):
    ce = ce.model_copy(update={"enable_reduced_scoring": True, "reduced_scoring_value": 0.5})
    db.put_user_set(COURSE, UserSet(user_id="alice", set_id="hw1", reduced_scoring_date=NOW - DAY))
    record = db.get_user_problem(COURSE, "alice", "hw1", "1")
    record.status = 0.4
    record.sub_status = 0.4
    db.put_user_problem(COURSE, record)

    outcome = _submit(ce, authz, _pg(0.8))

    assert outcome.recorded
    stored = db.get_user_problem(COURSE, "alice", "hw1", "1")
    assert stored.status == pytest.approx(0.6)
    assert stored.sub_status == pytest.approx(0.4)


def test_before_reduced_scoring_date_sub_status_tracks_status(ce, authz):
    ce = ce.model_copy(update={"enable_reduced_scoring": True, "reduced_scoring_value": 0.5})
    _submit(ce, authz, _pg(0.7))
    stored = db.get_user_problem(COURSE, "alice", "hw1", "1")
    assert stored.status == pytest.approx(0.7)
    assert stored.sub_status == pytest.approx(0.7)


def test_essay_submission_flags_record_and_global_problem(ce, authz):
    record = db.get_user_problem(COURSE, "alice", "hw1", "1")
    record.flags = {ProblemFlag.GRADED}
    db.put_user_problem(COURSE, record)

    _submit(ce, authz, _pg(0.0, essay=True))
    _submit(ce, authz, _pg(0.0, essay=True))

    assert db.get_user_problem(COURSE, "alice", "hw1", "1").flags == {ProblemFlag.NEEDS_GRADING}
    assert db.get_global_problem(COURSE, "hw1", "1").flags == {ProblemFlag.ESSAY}
    rows = db._query(
        "SELECT flags FROM problem WHERE course_id = ? AND set_id = ? AND problem_id = ?", (COURSE, "hw1", "1")
    )
    assert rows[0]["flags"] == "essay,"

    _submit(ce, authz, _pg(0.5, essay=False))
    assert ProblemFlag.ESSAY not in db.get_global_problem(COURSE, "hw1", "1").flags


def test_unassigned_problem_is_not_recorded(ce, authz):
    problem = MergedProblem(user_id="alice", set_id="hw1", problem_id="7")
    outcome = process_and_log_answer(
        ce,
        authz,
        problem=problem,
        problem_set=db.get_merged_set(COURSE, "alice", "hw1"),
        pg=_pg(1.0),
        form_fields={},
        submit_time=NOW,
        options=SubmissionOptions(record_answers=True),
        effective_user="alice",
    )
    assert outcome.status is SubmissionStatus.NOT_ASSIGNED
    assert outcome.message == MSG_NOT_ASSIGNED
    assert db.list_past_answers(COURSE, "alice", "hw1", "7") == []


def test_practice_submission_keeps_sticky_answers_and_history(ce, authz):
    outcome = _submit(ce, authz, _pg(1.0), record=False, form={"AnSwEr0001": "1", "AnSwEr0002": "2"})

    assert outcome.status is SubmissionStatus.NOT_RECORDED
    assert outcome.message == MSG_NOT_RECORDED
    stored = db.get_user_problem(COURSE, "alice", "hw1", "1")
    assert stored.status == 0.0
    assert stored.attempted is False
    assert decode_answers(stored.last_answer) == {"AnSwEr0001": "1", "AnSwEr0002": "2"}
    assert len(db.list_past_answers(COURSE, "alice", "hw1", "1")) == 1


@pytest.mark.parametrize("when", [NOW + 3 * DAY, NOW - 6 * DAY])
def test_submission_outside_open_window_reports_closed_set(ce, authz, when):
    outcome = _submit(ce, authz, _pg(1.0), record=False, submit_time=when)
    assert outcome.status is SubmissionStatus.SET_CLOSED
    assert outcome.message == MSG_SET_CLOSED


def test_nothing_submitted(ce, authz):
    outcome = _submit(ce, authz, _pg(1.0), submit=False)
    assert outcome.status is SubmissionStatus.NOT_SUBMITTED
    assert outcome.message == ""
    assert db.list_past_answers(COURSE, "alice", "hw1", "1") == []


def test_storage_failure_still_reports_lms_result(ce, authz, monkeypatch):
    ce = ce.model_copy(update={"lti_grade_mode": "homework", "lti_grade_on_submit": True})
    monkeypatch.setattr(problem_processing.db, "put_user_problem", lambda course_id, record: False)
    grader = FakeGrader(result=True)

    outcome = _submit(ce, authz, _pg(1.0), grader=grader)

    assert outcome.status is SubmissionStatus.STORAGE_FAILURE
    assert outcome.notices == [MSG_STORAGE_FAILURE, MSG_LMS_SENT]
    assert outcome.lms_synced is True
    assert grader.calls == [("homework", "alice", "hw1")]


def test_course_grade_mode_and_lms_failure(ce, authz):
    ce = ce.model_copy(update={"lti_grade_mode": "course", "lti_grade_on_submit": True})
    grader = FakeGrader(error=RuntimeError("LMS down"))

    outcome = _submit(ce, authz, _pg(1.0), grader=grader)

    assert outcome.status is SubmissionStatus.RECORDED
    assert outcome.notices == [MSG_RECORDED, MSG_LMS_NOT_SENT]
    assert outcome.lms_synced is False
    assert grader.calls == [("course", "alice")]
    assert db.get_user_problem(COURSE, "alice", "hw1", "1").status == pytest.approx(1.0)


def test_lms_not_contacted_unless_grading_on_submit(ce, authz):
    ce = ce.model_copy(update={"lti_grade_mode": "course", "lti_grade_on_submit": False})
    grader = FakeGrader()
    outcome = _submit(ce, authz, _pg(1.0), grader=grader)
    assert grader.calls == []
    assert outcome.lms_synced is None


def test_caliper_events_emitted(ce, authz):
    ce = ce.model_copy(update={"caliper_enabled": True})
    _submit(ce, authz, _pg(0.5))

    events = db.list_caliper_events(COURSE, "alice")
    assert [(e["type"], e["action"]) for e in events] == [
        ("AssessmentItemEvent", "Completed"),
        ("AssessmentEvent", "Submitted"),
        ("ToolUseEvent", "Used"),
    ]
    assert events[0]["object"]["id"].endswith("/courses/math101/sets/hw1/problems/1")


def test_caliper_failure_does_not_affect_outcome(ce, authz):
    ce = ce.model_copy(update={"caliper_enabled": True})
    outcome = _submit(ce, authz, _pg(0.5), sensor=ExplodingSensor())
    assert outcome.status is SubmissionStatus.RECORDED
    assert outcome.message == MSG_RECORDED


def test_instructor_acting_as_student_is_not_logged(ce, authz):
    ce = ce.model_copy(update={"caliper_enabled": True})
    outcome = _submit(ce, authz, _pg(0.5), effective_user="prof")

    assert outcome.recorded
    assert db.list_past_answers(COURSE, "alice", "hw1", "1") == []
    assert db.list_caliper_events(COURSE) == []
