"""Test cases for db operations."""

import sqlite3

import pytest

import db
from conftest import COURSE, DAY, NOW
from schemas import GlobalProblem, GlobalSet, PastAnswer, ProblemFlag, User, UserProblem, UserSet


def test_user_problem_round_trip(seeded_course):
    record = db.get_user_problem(COURSE, "alice", "hw1", "1")
    assert record is not None
    assert record.problem_seed == 1234
    assert record.flags == set()

    record.status = 0.5
    record.attempted = True
    record.flags = {ProblemFlag.NEEDS_GRADING}
    assert db.put_user_problem(COURSE, record)

    stored = db.get_user_problem(COURSE, "alice", "hw1", "1")
    assert stored.status == 0.5
    assert stored.attempted is True
    assert stored.flags == {ProblemFlag.NEEDS_GRADING}


def test_put_user_problem_requires_existing_record(seeded_course):
    missing = UserProblem(user_id="bob", set_id="hw1", problem_id="1")
    assert db.put_user_problem(COURSE, missing) is False
    assert db.get_user_problem(COURSE, "bob", "hw1", "1") is None


def test_put_user_problem_reports_storage_errors(seeded_course, monkeypatch):
    def broken_exec(sql, params=()):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "_exec", broken_exec)
    record = UserProblem(user_id="alice", set_id="hw1", problem_id="1")
    assert db.put_user_problem(COURSE, record) is False


def test_merged_views(seeded_course):
    db.put_user_set(COURSE, UserSet(user_id="alice", set_id="hw1", due_date=NOW + 9))
    merged_set = db.get_merged_set(COURSE, "alice", "hw1")
    assert merged_set.due_date == NOW + 9
    assert merged_set.enable_reduced_scoring is True
    assert db.get_merged_set(COURSE, "bob", "hw1") is None

    merged_problem = db.get_merged_problem(COURSE, "alice", "hw1", "2")
    assert merged_problem.source_file == "Library/hw1/p2.pg"
    assert [p.problem_id for p in db.list_merged_problems(COURSE, "alice", "hw1")] == ["1", "2"]
    assert [s.set_id for s in db.list_merged_sets(COURSE, "alice")] == ["hw1"]


def test_global_problem_flags(seeded_course):
    problem = db.get_global_problem(COURSE, "hw1", "1")
    problem.flags.add(ProblemFlag.ESSAY)
    assert db.put_global_problem(COURSE, problem)
    assert db.get_global_problem(COURSE, "hw1", "1").flags == {ProblemFlag.ESSAY}
    assert db.put_global_problem(COURSE, GlobalProblem(set_id="hw1", problem_id="99")) is False


def test_past_answers_are_listed_newest_first(seeded_course):
    for offset, answer in enumerate(["a", "b", "c"]):
        answer_id = db.add_past_answer(
            PastAnswer(course_id=COURSE, user_id="alice", set_id="hw1", problem_id="1",
                       timestamp=NOW + offset, scores="0", answer_string=answer)
        )
        assert answer_id is not None

    answers = db.list_past_answers(COURSE, "alice", "hw1", "1", limit=2)
    assert [a.answer_string for a in answers] == ["c", "b"]


def test_achievement_blob_upsert(seeded_course):
    assert db.get_global_user_achievement(COURSE, "alice") is None
    assert db.put_global_user_achievement(COURSE, "alice", "blob-1")
    assert db.put_global_user_achievement(COURSE, "alice", "blob-2")
    assert db.get_global_user_achievement(COURSE, "alice") == "blob-2"


def test_user_set_requires_global_set(temp_db):
    with pytest.raises(sqlite3.IntegrityError):
        db.add_user_set(COURSE, UserSet(user_id="alice", set_id="missing"))


def test_courses_sharing_ids_stay_separate(seeded_course):
    db.add_user("physics200", User(user_id="alice", permission_level=0))
    db.add_global_set("physics200", GlobalSet(set_id="hw1", open_date=NOW, due_date=NOW + 1, answer_date=NOW + 1))
    db.add_user_set("physics200", UserSet(user_id="alice", set_id="hw1"))
    db.add_global_problem("physics200", GlobalProblem(set_id="hw1", problem_id="1", source_file="phys.pg"))
    db.add_user_problem("physics200", UserProblem(user_id="alice", set_id="hw1", problem_id="1", problem_seed=9))

    record = db.get_user_problem("physics200", "alice", "hw1", "1")
    record.status = 1.0
    assert db.put_user_problem("physics200", record)
    assert db.put_global_user_achievement("physics200", "alice", "physics-blob")

    assert db.get_user_problem(COURSE, "alice", "hw1", "1").status == 0.0
    assert db.get_user_problem(COURSE, "alice", "hw1", "1").problem_seed == 1234
    assert db.get_merged_problem("physics200", "alice", "hw1", "1").source_file == "phys.pg"
    assert db.get_merged_set(COURSE, "alice", "hw1").due_date == NOW + 2 * DAY
    assert [p.problem_id for p in db.list_user_problems("physics200", "alice")] == ["1"]
    assert db.get_global_user_achievement(COURSE, "alice") is None
    assert [u.user_id for u in db.list_users("physics200")] == ["alice"]
    assert db.get_user("physics200", "prof") is None
