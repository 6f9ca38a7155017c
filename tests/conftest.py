import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

HOUR = 3600
DAY = 24 * HOUR
# Fixed "now" for dated scenarios.
NOW = 1_700_000_000
COURSE = "math101"


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DB_PATH", str(db_path))
    db.use_database(str(db_path))
    return str(db_path)


@pytest.fixture
def course_env(tmp_path):
    from course_env import CourseEnvironment

    course_dir = tmp_path / "courses" / COURSE
    return CourseEnvironment(
        course_id=COURSE,
        course_dir=course_dir,
        logs_dir=course_dir / "logs",
        base_url="https://hw.example.edu",
    )


@pytest.fixture
def authz(course_env):
    from functools import partial

    import db
    from authz import Authz

    return Authz(course_env, partial(db.get_user, course_env.course_id))


@pytest.fixture
def seeded_course(temp_db):
    """One student, one instructor, and set ``hw1`` (open now) with two problems."""

    import db
    from schemas import GlobalProblem, GlobalSet, User, UserProblem, UserSet

    db.add_user(COURSE, User(user_id="alice", first_name="Alice", last_name="Liddell",
                             email_address="alice@example.edu", section="01", recitation="A"))
    db.add_user(COURSE, User(user_id="prof", first_name="Pat", last_name="Prof",
                             email_address="prof@example.edu", permission_level=10))
    db.add_global_set(COURSE, GlobalSet(
        set_id="hw1",
        open_date=NOW - 5 * DAY,
        due_date=NOW + 2 * DAY,
        answer_date=NOW + 3 * DAY,
        reduced_scoring_date=NOW + DAY,
        enable_reduced_scoring=True,
    ))
    db.add_user_set(COURSE, UserSet(user_id="alice", set_id="hw1"))
    for problem_id in ("1", "2"):
        db.add_global_problem(COURSE, GlobalProblem(set_id="hw1", problem_id=problem_id,
                                                    source_file=f"Library/hw1/p{problem_id}.pg"))
        db.add_user_problem(COURSE, UserProblem(user_id="alice", set_id="hw1", problem_id=problem_id,
                                                problem_seed=1234))
    return temp_db
