"""Pydantic value objects for homework sets, problems and submissions."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field, ValidationError

__all__ = [
    "ProblemFlag",
    "parse_flags",
    "format_flags",
    "GlobalSet",
    "UserSet",
    "MergedSet",
    "GlobalProblem",
    "UserProblem",
    "MergedProblem",
    "ATTEMPT_FIELDS",
    "sync_attempt",
    "PastAnswer",
    "User",
    "AchievementCounters",
    "AnswerGroup",
    "GradedState",
    "SubmissionOptions",
    "SubmissionStatus",
    "SubmissionOutcome",
]

logger = logging.getLogger(__name__)


class ProblemFlag(str, Enum):
    ESSAY = "essay"
    NEEDS_GRADING = "needs_grading"
    GRADED = "graded"


def parse_flags(text: Optional[str]) -> Set[ProblemFlag]:
    """Parse the stored comma separated flag string into a set of tags."""

    flags: Set[ProblemFlag] = set()
    for part in (text or "").split(","):
        tag = part.strip()
        if not tag:
            continue
        try:
            flags.add(ProblemFlag(tag))
        except ValueError:
            logger.debug("Ignoring unknown problem flag: %s", tag)
    return flags


def format_flags(flags: Iterable[ProblemFlag]) -> str:
    return "".join(f"{flag.value}," for flag in sorted(set(flags), key=lambda f: f.value))


# ---------------------------------------------------------------------------
# Sets
# ---------------------------------------------------------------------------


class GlobalSet(BaseModel):
    set_id: str
    open_date: int = 0
    due_date: int = 0
    answer_date: int = 0
    reduced_scoring_date: Optional[int] = None
    enable_reduced_scoring: bool = False
    assignment_type: str = "default"
    email_instructor: bool = False


class UserSet(BaseModel):
    """Per-user set record; ``None`` fields fall back to the global set."""

    user_id: str
    set_id: str
    open_date: Optional[int] = None
    due_date: Optional[int] = None
    answer_date: Optional[int] = None
    reduced_scoring_date: Optional[int] = None
    enable_reduced_scoring: Optional[bool] = None
    lis_source_did: Optional[str] = None


class MergedSet(GlobalSet):
    user_id: str
    lis_source_did: Optional[str] = None

    @classmethod
    def merge(cls, global_set: GlobalSet, user_set: UserSet) -> "MergedSet":
        values = global_set.model_dump()
        for field in ("open_date", "due_date", "answer_date", "reduced_scoring_date", "enable_reduced_scoring"):
            override = getattr(user_set, field)
            if override is not None:
                values[field] = override
        return cls(user_id=user_set.user_id, lis_source_did=user_set.lis_source_did, **values)


# ---------------------------------------------------------------------------
# Problems
# ---------------------------------------------------------------------------


class GlobalProblem(BaseModel):
    set_id: str
    problem_id: str
    source_file: str = ""
    value: float = 1.0
    max_attempts: int = -1
    flags: Set[ProblemFlag] = Field(default_factory=set)
    counts_parent_grade: bool = False
    att_to_open_children: int = 0


class UserProblem(BaseModel):
    """Persisted per-user problem record."""

    user_id: str
    set_id: str
    problem_id: str
    problem_seed: int = 0
    status: float = 0.0
    sub_status: float = 0.0
    attempted: bool = False
    last_answer: str = ""
    num_correct: int = 0
    num_incorrect: int = 0
    flags: Set[ProblemFlag] = Field(default_factory=set)
    source_file: Optional[str] = None
    value: Optional[float] = None
    max_attempts: Optional[int] = None


class MergedProblem(BaseModel):
    """Effective problem view: user attempt state over global metadata."""

    user_id: str
    set_id: str
    problem_id: str
    problem_seed: int = 0
    status: float = 0.0
    sub_status: float = 0.0
    attempted: bool = False
    last_answer: str = ""
    num_correct: int = 0
    num_incorrect: int = 0
    flags: Set[ProblemFlag] = Field(default_factory=set)
    source_file: str = ""
    value: float = 1.0
    max_attempts: int = -1
    counts_parent_grade: bool = False
    att_to_open_children: int = 0

    @classmethod
    def merge(cls, global_problem: GlobalProblem, user_problem: UserProblem) -> "MergedProblem":
        values = user_problem.model_dump(exclude={"source_file", "value", "max_attempts", "flags"})
        return cls(
            **values,
            flags=set(user_problem.flags),
            source_file=user_problem.source_file or global_problem.source_file,
            value=global_problem.value if user_problem.value is None else user_problem.value,
            max_attempts=(
                global_problem.max_attempts if user_problem.max_attempts is None else user_problem.max_attempts
            ),
            counts_parent_grade=global_problem.counts_parent_grade,
            att_to_open_children=global_problem.att_to_open_children,
        )


# Fields a graded submission changes; both views must agree on them afterwards.
ATTEMPT_FIELDS = ("last_answer", "status", "sub_status", "attempted", "num_correct", "num_incorrect")


def sync_attempt(merged: MergedProblem, record: UserProblem) -> UserProblem:
    """Copy the attempt fields of ``merged`` onto ``record`` and return it."""

    for field in ATTEMPT_FIELDS:
        setattr(record, field, getattr(merged, field))
    return record


# ---------------------------------------------------------------------------
# Users, answers, achievements
# ---------------------------------------------------------------------------


class PastAnswer(BaseModel):
    answer_id: Optional[int] = None
    course_id: str
    user_id: str
    set_id: str
    problem_id: str
    timestamp: int
    scores: str = ""
    answer_string: str = ""
    source_file: str = ""


class User(BaseModel):
    user_id: str
    first_name: str = ""
    last_name: str = ""
    email_address: str = ""
    student_id: str = ""
    section: str = ""
    recitation: str = ""
    comment: str = ""
    permission_level: int = 0
    lis_source_did: Optional[str] = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    @property
    def rfc822_mailbox(self) -> str:
        if not self.email_address:
            return ""
        if self.full_name:
            return f'"{self.full_name}" <{self.email_address}>'
        return self.email_address


class AchievementCounters(BaseModel):
    """Remaining uses of each achievement item held by one user."""

    counts: Dict[str, int] = Field(default_factory=dict)

    def remaining(self, item_id: str) -> int:
        return self.counts.get(item_id, 0)

    def consume(self, item_id: str) -> None:
        if self.remaining(item_id) <= 0:
            raise ValueError(f"No remaining uses of {item_id}")
        self.counts[item_id] -= 1

    def grant(self, item_id: str, uses: int = 1) -> None:
        self.counts[item_id] = self.remaining(item_id) + uses

    def to_blob(self) -> str:
        payload = json.dumps(self.counts, sort_keys=True, separators=(",", ":"))
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")

    @classmethod
    def from_blob(cls, blob: Optional[str]) -> Optional["AchievementCounters"]:
        """Decode a stored blob; ``None`` when the blob is empty or unreadable."""

        if not blob:
            return None
        try:
            raw = json.loads(base64.b64decode(blob.encode("ascii"), validate=True).decode("utf-8"))
            return cls(counts=raw)
        except (binascii.Error, UnicodeError, ValueError, ValidationError):
            logger.warning("Discarding unreadable achievement blob")
            return None


# ---------------------------------------------------------------------------
# Submission input and outcome
# ---------------------------------------------------------------------------


class AnswerGroup(BaseModel):
    answer_id: str
    score: float = 0.0
    type: str = ""
    response_order: List[str] = Field(default_factory=list)


class GradedState(BaseModel):
    """Grader output for one submission."""

    recorded_score: float = Field(default=0.0, ge=0.0, le=1.0)
    num_of_correct_ans: int = 0
    num_of_incorrect_ans: int = 0
    answers: Dict[str, AnswerGroup] = Field(default_factory=dict)
    answer_entry_order: List[str] = Field(default_factory=list)
    kept_extra_answers: List[str] = Field(default_factory=list)


class SubmissionOptions(BaseModel):
    submit_answers: bool = True
    record_answers: bool = False
    start_time: Optional[float] = None


class SubmissionStatus(str, Enum):
    NOT_SUBMITTED = "not_submitted"
    RECORDED = "recorded"
    STORAGE_FAILURE = "storage_failure"
    NOT_ASSIGNED = "not_assigned"
    SET_CLOSED = "set_closed"
    NOT_RECORDED = "not_recorded"


class SubmissionOutcome(BaseModel):
    status: SubmissionStatus
    notices: List[str] = Field(default_factory=list)
    lms_synced: Optional[bool] = None

    @property
    def message(self) -> str:
        return "\n".join(self.notices)

    @property
    def recorded(self) -> bool:
        return self.status is SubmissionStatus.RECORDED
