import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from db_pool import SQLiteConnectionPool
from schemas import (
    GlobalProblem,
    GlobalSet,
    MergedProblem,
    MergedSet,
    PastAnswer,
    User,
    UserProblem,
    UserSet,
    format_flags,
    parse_flags,
)

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def use_database(path: str) -> None:
    """Point the module at another SQLite file and create its tables."""
    global DB_PATH, _pool
    _pool.close_all()
    DB_PATH = str(path)
    _pool = SQLiteConnectionPool(DB_PATH, max_connections=10)
    init()


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        # Every course table is keyed by course_id so courses sharing one
        # database file never see each other's rows.
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS course_user (
              course_id        TEXT NOT NULL,
              user_id          TEXT NOT NULL,
              first_name       TEXT DEFAULT '',
              last_name        TEXT DEFAULT '',
              email_address    TEXT DEFAULT '',
              student_id       TEXT DEFAULT '',
              section          TEXT DEFAULT '',
              recitation       TEXT DEFAULT '',
              comment          TEXT DEFAULT '',
              permission_level INTEGER DEFAULT 0,
              lis_source_did   TEXT,
              PRIMARY KEY (course_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS problem_set (
              course_id              TEXT NOT NULL,
              set_id                 TEXT NOT NULL,
              open_date              INTEGER NOT NULL DEFAULT 0,
              due_date               INTEGER NOT NULL DEFAULT 0,
              answer_date            INTEGER NOT NULL DEFAULT 0,
              reduced_scoring_date   INTEGER,
              enable_reduced_scoring INTEGER NOT NULL DEFAULT 0,
              assignment_type        TEXT NOT NULL DEFAULT 'default',
              email_instructor       INTEGER NOT NULL DEFAULT 0,
              PRIMARY KEY (course_id, set_id)
            );

            CREATE TABLE IF NOT EXISTS set_user (
              course_id              TEXT NOT NULL,
              user_id                TEXT NOT NULL,
              set_id                 TEXT NOT NULL,
              open_date              INTEGER,
              due_date               INTEGER,
              answer_date            INTEGER,
              reduced_scoring_date   INTEGER,
              enable_reduced_scoring INTEGER,
              lis_source_did         TEXT,
              PRIMARY KEY (course_id, user_id, set_id),
              FOREIGN KEY(course_id, set_id) REFERENCES problem_set(course_id, set_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS problem (
              course_id            TEXT NOT NULL,
              set_id               TEXT NOT NULL,
              problem_id           TEXT NOT NULL,
              source_file          TEXT DEFAULT '',
              value                REAL DEFAULT 1,
              max_attempts         INTEGER DEFAULT -1,
              flags                TEXT DEFAULT '',
              counts_parent_grade  INTEGER DEFAULT 0,
              att_to_open_children INTEGER DEFAULT 0,
              PRIMARY KEY (course_id, set_id, problem_id),
              FOREIGN KEY(course_id, set_id) REFERENCES problem_set(course_id, set_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS problem_user (
              course_id     TEXT NOT NULL,
              user_id       TEXT NOT NULL,
              set_id        TEXT NOT NULL,
              problem_id    TEXT NOT NULL,
              problem_seed  INTEGER DEFAULT 0,
              status        REAL DEFAULT 0,
              sub_status    REAL DEFAULT 0,
              attempted     INTEGER DEFAULT 0,
              last_answer   TEXT DEFAULT '',
              num_correct   INTEGER DEFAULT 0,
              num_incorrect INTEGER DEFAULT 0,
              flags         TEXT DEFAULT '',
              source_file   TEXT,
              value         REAL,
              max_attempts  INTEGER,
              PRIMARY KEY (course_id, user_id, set_id, problem_id),
              FOREIGN KEY(course_id, set_id, problem_id)
                REFERENCES problem(course_id, set_id, problem_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_problem_user_set ON problem_user(course_id, user_id, set_id);

            CREATE TABLE IF NOT EXISTS past_answer (
              answer_id     INTEGER PRIMARY KEY AUTOINCREMENT,
              course_id     TEXT NOT NULL,
              user_id       TEXT NOT NULL,
              set_id        TEXT NOT NULL,
              problem_id    TEXT NOT NULL,
              timestamp     INTEGER NOT NULL,
              scores        TEXT DEFAULT '',
              answer_string TEXT DEFAULT '',
              source_file   TEXT DEFAULT ''
            );

            CREATE INDEX IF NOT EXISTS idx_past_answer_problem
              ON past_answer(course_id, user_id, set_id, problem_id, timestamp);

            CREATE TABLE IF NOT EXISTS global_user_achievement (
              course_id   TEXT NOT NULL,
              user_id     TEXT NOT NULL,
              frozen_hash TEXT,
              PRIMARY KEY (course_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS caliper_events (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              course_id   TEXT NOT NULL,
              event_id    TEXT NOT NULL,
              user_id     TEXT,
              type        TEXT NOT NULL,
              action      TEXT NOT NULL,
              object_id   TEXT,
              payload     TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        con.commit()


def _put(sql: str, params: Iterable, what: str) -> bool:
    """Run an UPDATE for ``what``; False when nothing matched or the write failed."""
    try:
        cur = _exec(sql, params)
    except sqlite3.Error:
        logger.exception("Failed to store %s", what)
        return False
    if cur.rowcount != 1:
        logger.warning("No existing record to replace for %s", what)
        return False
    return True


def _opt_bool(value: Any) -> Optional[bool]:
    return None if value is None else bool(value)


def _without_course(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data.pop("course_id", None)
    return data


# -------------- users --------------
def _row_to_user(row: sqlite3.Row) -> User:
    data = _without_course(row)
    return User(**{k: ("" if v is None and k not in {"lis_source_did"} else v) for k, v in data.items()})


def add_user(course_id: str, user: User) -> None:
    _exec(
        """
        INSERT INTO course_user(course_id, user_id, first_name, last_name, email_address, student_id,
                                section, recitation, comment, permission_level, lis_source_did)
        VALUES (?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            course_id,
            user.user_id,
            user.first_name,
            user.last_name,
            user.email_address,
            user.student_id,
            user.section,
            user.recitation,
            user.comment,
            int(user.permission_level),
            user.lis_source_did,
        ),
    )


def get_user(course_id: str, user_id: str) -> Optional[User]:
    rows = _query("SELECT * FROM course_user WHERE course_id = ? AND user_id = ?", (course_id, user_id))
    return _row_to_user(rows[0]) if rows else None


def list_users(course_id: str) -> list[User]:
    rows = _query("SELECT * FROM course_user WHERE course_id = ? ORDER BY user_id", (course_id,))
    return [_row_to_user(row) for row in rows]


# -------------- sets --------------
def _row_to_global_set(row: sqlite3.Row) -> GlobalSet:
    data = _without_course(row)
    data["enable_reduced_scoring"] = bool(data["enable_reduced_scoring"])
    data["email_instructor"] = bool(data["email_instructor"])
    return GlobalSet(**data)


def _row_to_user_set(row: sqlite3.Row) -> UserSet:
    data = _without_course(row)
    data["enable_reduced_scoring"] = _opt_bool(data["enable_reduced_scoring"])
    return UserSet(**data)


def add_global_set(course_id: str, problem_set: GlobalSet) -> None:
    _exec(
        """
        INSERT INTO problem_set(course_id, set_id, open_date, due_date, answer_date, reduced_scoring_date,
                                enable_reduced_scoring, assignment_type, email_instructor)
        VALUES (?,?,?,?,?,?,?,?,?)
        """,
        (
            course_id,
            problem_set.set_id,
            problem_set.open_date,
            problem_set.due_date,
            problem_set.answer_date,
            problem_set.reduced_scoring_date,
            int(problem_set.enable_reduced_scoring),
            problem_set.assignment_type,
            int(problem_set.email_instructor),
        ),
    )


def get_global_set(course_id: str, set_id: str) -> Optional[GlobalSet]:
    rows = _query("SELECT * FROM problem_set WHERE course_id = ? AND set_id = ?", (course_id, set_id))
    return _row_to_global_set(rows[0]) if rows else None


def _user_set_values(user_set: UserSet) -> tuple:
    return (
        user_set.open_date,
        user_set.due_date,
        user_set.answer_date,
        user_set.reduced_scoring_date,
        None if user_set.enable_reduced_scoring is None else int(user_set.enable_reduced_scoring),
        user_set.lis_source_did,
    )


def add_user_set(course_id: str, user_set: UserSet) -> None:
    _exec(
        """
        INSERT INTO set_user(open_date, due_date, answer_date, reduced_scoring_date,
                             enable_reduced_scoring, lis_source_did, course_id, user_id, set_id)
        VALUES (?,?,?,?,?,?,?,?,?)
        """,
        (*_user_set_values(user_set), course_id, user_set.user_id, user_set.set_id),
    )


def put_user_set(course_id: str, user_set: UserSet) -> bool:
    return _put(
        """
        UPDATE set_user SET open_date = ?, due_date = ?, answer_date = ?, reduced_scoring_date = ?,
                            enable_reduced_scoring = ?, lis_source_did = ?
        WHERE course_id = ? AND user_id = ? AND set_id = ?
        """,
        (*_user_set_values(user_set), course_id, user_set.user_id, user_set.set_id),
        f"user set {course_id}/{user_set.user_id}/{user_set.set_id}",
    )


def get_user_set(course_id: str, user_id: str, set_id: str) -> Optional[UserSet]:
    rows = _query(
        "SELECT * FROM set_user WHERE course_id = ? AND user_id = ? AND set_id = ?",
        (course_id, user_id, set_id),
    )
    return _row_to_user_set(rows[0]) if rows else None


def get_merged_set(course_id: str, user_id: str, set_id: str) -> Optional[MergedSet]:
    user_set = get_user_set(course_id, user_id, set_id)
    if user_set is None:
        return None
    global_set = get_global_set(course_id, set_id)
    if global_set is None:
        return None
    return MergedSet.merge(global_set, user_set)


def list_merged_sets(course_id: str, user_id: str) -> list[MergedSet]:
    rows = _query(
        "SELECT set_id FROM set_user WHERE course_id = ? AND user_id = ? ORDER BY set_id",
        (course_id, user_id),
    )
    merged = (get_merged_set(course_id, user_id, row["set_id"]) for row in rows)
    return [problem_set for problem_set in merged if problem_set is not None]


# -------------- problems --------------
def _row_to_global_problem(row: sqlite3.Row) -> GlobalProblem:
    data = _without_course(row)
    data["flags"] = parse_flags(data["flags"])
    data["counts_parent_grade"] = bool(data["counts_parent_grade"])
    data["source_file"] = data["source_file"] or ""
    return GlobalProblem(**data)


def _row_to_user_problem(row: sqlite3.Row) -> UserProblem:
    data = _without_course(row)
    data["flags"] = parse_flags(data["flags"])
    data["attempted"] = bool(data["attempted"])
    data["last_answer"] = data["last_answer"] or ""
    return UserProblem(**data)


def _global_problem_params(course_id: str, problem: GlobalProblem) -> tuple:
    return (
        problem.source_file,
        float(problem.value),
        int(problem.max_attempts),
        format_flags(problem.flags),
        int(problem.counts_parent_grade),
        int(problem.att_to_open_children),
        course_id,
        problem.set_id,
        problem.problem_id,
    )


def add_global_problem(course_id: str, problem: GlobalProblem) -> None:
    _exec(
        """
        INSERT INTO problem(source_file, value, max_attempts, flags, counts_parent_grade,
                            att_to_open_children, course_id, set_id, problem_id)
        VALUES (?,?,?,?,?,?,?,?,?)
        """,
        _global_problem_params(course_id, problem),
    )


def put_global_problem(course_id: str, problem: GlobalProblem) -> bool:
    return _put(
        """
        UPDATE problem SET source_file = ?, value = ?, max_attempts = ?, flags = ?,
                           counts_parent_grade = ?, att_to_open_children = ?
        WHERE course_id = ? AND set_id = ? AND problem_id = ?
        """,
        _global_problem_params(course_id, problem),
        f"problem {course_id}/{problem.set_id}/{problem.problem_id}",
    )


def get_global_problem(course_id: str, set_id: str, problem_id: str) -> Optional[GlobalProblem]:
    rows = _query(
        "SELECT * FROM problem WHERE course_id = ? AND set_id = ? AND problem_id = ?",
        (course_id, set_id, problem_id),
    )
    return _row_to_global_problem(rows[0]) if rows else None


def list_global_problems(course_id: str, set_id: str) -> list[GlobalProblem]:
    rows = _query(
        "SELECT * FROM problem WHERE course_id = ? AND set_id = ? ORDER BY problem_id",
        (course_id, set_id),
    )
    return [_row_to_global_problem(row) for row in rows]


def _user_problem_params(course_id: str, problem: UserProblem) -> tuple:
    return (
        int(problem.problem_seed),
        float(problem.status),
        float(problem.sub_status),
        int(problem.attempted),
        problem.last_answer,
        int(problem.num_correct),
        int(problem.num_incorrect),
        format_flags(problem.flags),
        problem.source_file,
        problem.value,
        problem.max_attempts,
        course_id,
        problem.user_id,
        problem.set_id,
        problem.problem_id,
    )


def add_user_problem(course_id: str, problem: UserProblem) -> None:
    _exec(
        """
        INSERT INTO problem_user(problem_seed, status, sub_status, attempted, last_answer,
                                 num_correct, num_incorrect, flags, source_file, value,
                                 max_attempts, course_id, user_id, set_id, problem_id)
        VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        _user_problem_params(course_id, problem),
    )


def put_user_problem(course_id: str, problem: UserProblem) -> bool:
    """Replace the stored record for ``problem``; False if it could not be written."""
    return _put(
        """
        UPDATE problem_user SET problem_seed = ?, status = ?, sub_status = ?, attempted = ?,
                                last_answer = ?, num_correct = ?, num_incorrect = ?, flags = ?,
                                source_file = ?, value = ?, max_attempts = ?
        WHERE course_id = ? AND user_id = ? AND set_id = ? AND problem_id = ?
        """,
        _user_problem_params(course_id, problem),
        f"user problem {course_id}/{problem.user_id}/{problem.set_id}/{problem.problem_id}",
    )


def get_user_problem(course_id: str, user_id: str, set_id: str, problem_id: str) -> Optional[UserProblem]:
    rows = _query(
        "SELECT * FROM problem_user WHERE course_id = ? AND user_id = ? AND set_id = ? AND problem_id = ?",
        (course_id, user_id, set_id, problem_id),
    )
    return _row_to_user_problem(rows[0]) if rows else None


def get_merged_problem(course_id: str, user_id: str, set_id: str, problem_id: str) -> Optional[MergedProblem]:
    user_problem = get_user_problem(course_id, user_id, set_id, problem_id)
    global_problem = get_global_problem(course_id, set_id, problem_id)
    if user_problem is None or global_problem is None:
        return None
    return MergedProblem.merge(global_problem, user_problem)


def list_user_problems(course_id: str, user_id: str, set_id: Optional[str] = None) -> list[UserProblem]:
    if set_id is None:
        rows = _query(
            "SELECT * FROM problem_user WHERE course_id = ? AND user_id = ? ORDER BY set_id, problem_id",
            (course_id, user_id),
        )
    else:
        rows = _query(
            "SELECT * FROM problem_user WHERE course_id = ? AND user_id = ? AND set_id = ? ORDER BY problem_id",
            (course_id, user_id, set_id),
        )
    return [_row_to_user_problem(row) for row in rows]


def list_merged_problems(course_id: str, user_id: str, set_id: str) -> list[MergedProblem]:
    globals_by_id = {problem.problem_id: problem for problem in list_global_problems(course_id, set_id)}
    merged: list[MergedProblem] = []
    for user_problem in list_user_problems(course_id, user_id, set_id):
        global_problem = globals_by_id.get(user_problem.problem_id)
        if global_problem is not None:
            merged.append(MergedProblem.merge(global_problem, user_problem))
    return merged


# -------------- past answers --------------
def add_past_answer(answer: PastAnswer) -> Optional[int]:
    """Append a past answer; returns its id, or None when the insert failed."""
    try:
        cur = _exec(
            """
            INSERT INTO past_answer(course_id, user_id, set_id, problem_id, timestamp,
                                    scores, answer_string, source_file)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (
                answer.course_id,
                answer.user_id,
                answer.set_id,
                answer.problem_id,
                int(answer.timestamp),
                answer.scores,
                answer.answer_string,
                answer.source_file,
            ),
        )
    except sqlite3.Error:
        logger.exception(
            "Failed to add past answer for %s/%s/%s/%s",
            answer.course_id, answer.user_id, answer.set_id, answer.problem_id,
        )
        return None
    return cur.lastrowid


def list_past_answers(
    course_id: str, user_id: str, set_id: str, problem_id: str, limit: int = 100
) -> list[PastAnswer]:
    rows = _query(
        """
        SELECT * FROM past_answer
        WHERE course_id = ? AND user_id = ? AND set_id = ? AND problem_id = ?
        ORDER BY timestamp DESC, answer_id DESC
        LIMIT ?
        """,
        (course_id, user_id, set_id, problem_id, int(limit)),
    )
    return [PastAnswer(**dict(row)) for row in rows]


# -------------- achievements --------------
def get_global_user_achievement(course_id: str, user_id: str) -> Optional[str]:
    """Return the stored achievement blob for ``user_id``, if any."""
    rows = _query(
        "SELECT frozen_hash FROM global_user_achievement WHERE course_id = ? AND user_id = ?",
        (course_id, user_id),
    )
    if not rows:
        return None
    return rows[0]["frozen_hash"]


def put_global_user_achievement(course_id: str, user_id: str, frozen_hash: str) -> bool:
    try:
        _exec(
            """
            INSERT INTO global_user_achievement(course_id, user_id, frozen_hash) VALUES (?, ?, ?)
            ON CONFLICT(course_id, user_id) DO UPDATE SET frozen_hash = excluded.frozen_hash
            """,
            (course_id, user_id, frozen_hash),
        )
    except sqlite3.Error:
        logger.exception("Failed to store achievement data for %s/%s", course_id, user_id)
        return False
    return True


# -------------- analytics --------------
def record_caliper_event(course_id: str, event: Dict[str, Any]) -> None:
    actor = event.get("actor") or {}
    obj = event.get("object") or {}
    _exec(
        """
        INSERT INTO caliper_events(course_id, event_id, user_id, type, action, object_id, payload)
        VALUES (?,?,?,?,?,?,?)
        """,
        (
            course_id,
            event["id"],
            actor.get("name") if isinstance(actor, dict) else None,
            event["type"],
            event["action"],
            obj.get("id") if isinstance(obj, dict) else None,
            json_dumps(event),
        ),
    )


def list_caliper_events(course_id: str, user_id: Optional[str] = None, limit: int = 100) -> list[Dict[str, Any]]:
    if user_id:
        rows = _query(
            "SELECT payload FROM caliper_events WHERE course_id = ? AND user_id = ? ORDER BY id LIMIT ?",
            (course_id, user_id, int(limit)),
        )
    else:
        rows = _query(
            "SELECT payload FROM caliper_events WHERE course_id = ? ORDER BY id LIMIT ?",
            (course_id, int(limit)),
        )
    return [json.loads(row["payload"]) for row in rows]
