import pytest
import requests

import db
import lti_grades
from conftest import COURSE
from lti_grades import LTIGradeSubmitter
from schemas import User, UserSet


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")


@pytest.fixture
def graded_course(seeded_course):
    for problem_id, status in (("1", 1.0), ("2", 0.5)):
        record = db.get_user_problem(COURSE, "alice", "hw1", problem_id)
        record.status = status
        db.put_user_problem(COURSE, record)
    return seeded_course


@pytest.fixture
def posts(monkeypatch):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json, timeout))
        return FakeResponse()

    monkeypatch.setattr(lti_grades.requests, "post", fake_post)
    return calls


@pytest.fixture
def lti_env(course_env):
    return course_env.model_copy(update={"lti_grade_service_url": "https://lms.example.edu/grades"})


def test_set_grade_uses_set_source_id(graded_course, posts, lti_env):
    db.put_user_set(COURSE, UserSet(user_id="alice", set_id="hw1", lis_source_did="src-hw1"))

    assert LTIGradeSubmitter(lti_env, timeout=3).submit_set_grade("alice", "hw1") is True
    assert posts == [("https://lms.example.edu/grades", {"sourcedid": "src-hw1", "score": 0.75}, 3)]


def test_course_grade_uses_user_source_id(graded_course, posts, lti_env):
    db.add_user(COURSE, User(user_id="carol", lis_source_did="src-carol"))
    assert LTIGradeSubmitter(lti_env).submit_course_grade("carol") is False

    db._exec(
        "UPDATE course_user SET lis_source_did = ? WHERE course_id = ? AND user_id = ?", ("src-alice", COURSE, "alice")
    )
    assert LTIGradeSubmitter(lti_env).submit_course_grade("alice") is True
    assert posts[-1][1] == {"sourcedid": "src-alice", "score": 0.75}


def test_missing_source_id_skips_request(graded_course, posts, lti_env):
    assert LTIGradeSubmitter(lti_env).submit_set_grade("alice", "hw1") is False
    assert LTIGradeSubmitter(lti_env).submit_course_grade("alice") is False
    assert posts == []


def test_missing_service_url_is_not_sent(graded_course, posts, course_env):
    db.put_user_set(COURSE, UserSet(user_id="alice", set_id="hw1", lis_source_did="src-hw1"))
    assert LTIGradeSubmitter(course_env).submit_set_grade("alice", "hw1") is False
    assert posts == []


def test_http_errors_report_failure(graded_course, monkeypatch, lti_env):
    monkeypatch.setattr(lti_grades.requests, "post", lambda *args, **kwargs: FakeResponse(502))
    db.put_user_set(COURSE, UserSet(user_id="alice", set_id="hw1", lis_source_did="src-hw1"))
    assert LTIGradeSubmitter(lti_env).submit_set_grade("alice", "hw1") is False


def test_weighted_scores(graded_course, lti_env):
    db.put_global_problem(COURSE, db.get_global_problem(COURSE, "hw1", "2").model_copy(update={"value": 3.0}))
    submitter = LTIGradeSubmitter(lti_env)
    assert submitter.set_score("alice", "hw1") == pytest.approx((1.0 + 0.5 * 3) / 4)
    assert submitter.course_score("alice") == pytest.approx((1.0 + 0.5 * 3) / 4)
