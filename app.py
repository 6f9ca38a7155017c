# app.py: homework submission service
# - Records graded answer submissions for a course
# - Exposes achievement items to students

import logging
import time
from contextlib import asynccontextmanager
from functools import lru_cache, partial
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

import db
from achievements import get_item
from authz import Authz
from course_env import CourseConfigError, CourseEnvironment
from jitar import jitar_problem_closed
from problem_processing import MSG_NOT_ASSIGNED, process_and_log_answer
from schemas import GradedState, MergedProblem, MergedSet, SubmissionOptions, SubmissionOutcome, SubmissionStatus

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import describe_environment, validate_environment
        validate_environment()

        db.init()
        logger.info("Homework service configuration: %s", describe_environment())
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Homework submission service", version="1.0.0", lifespan=_lifespan)


@lru_cache(maxsize=64)
def _course_env(course_id: str) -> CourseEnvironment:
    return CourseEnvironment.from_env(course_id)


def _load_course(course_id: str) -> CourseEnvironment:
    try:
        return _course_env(course_id)
    except CourseConfigError as exc:
        logger.error("Course %s is misconfigured: %s", course_id, exc)
        raise HTTPException(status_code=500, detail=f"course {course_id} is misconfigured") from exc


def _outcome_payload(outcome: SubmissionOutcome) -> Dict[str, Any]:
    return {
        "status": outcome.status.value,
        "recorded": outcome.recorded,
        "message": outcome.message,
        "notices": list(outcome.notices),
        "lms_synced": outcome.lms_synced,
    }


def _can_record(
    ce: CourseEnvironment,
    authz: Authz,
    problem_set: MergedSet,
    problem: MergedProblem,
    effective_user: str,
    now: float,
) -> bool:
    if effective_user != problem.user_id:
        return False
    if not authz.has_permissions(effective_user, "record_answers_when_open"):
        return False
    if not problem_set.open_date <= now <= problem_set.due_date:
        return False
    if problem_set.assignment_type == "jitar":
        set_problems = db.list_merged_problems(ce.course_id, problem.user_id, problem.set_id)
        return not jitar_problem_closed(problem, set_problems)
    return True


class SubmitAnswersBody(BaseModel):
    user_id: str
    set_id: str
    problem_id: str
    effective_user: Optional[str] = None
    pg: GradedState
    form_fields: Dict[str, Union[str, List[str]]] = Field(default_factory=dict)
    submit_answers: bool = True
    record_answers: Optional[bool] = None
    start_time: Optional[float] = None
    submit_time: Optional[float] = None


@app.post("/courses/{course_id}/problems/submit")
def submit_answers(course_id: str, body: SubmitAnswersBody):
    ce = _load_course(course_id)
    authz = Authz(ce, partial(db.get_user, ce.course_id))

    problem_set = db.get_merged_set(ce.course_id, body.user_id, body.set_id)
    if problem_set is None:
        raise HTTPException(status_code=404, detail="set not assigned")
    problem = db.get_merged_problem(ce.course_id, body.user_id, body.set_id, body.problem_id)
    if problem is None:
        outcome = SubmissionOutcome(status=SubmissionStatus.NOT_ASSIGNED, notices=[MSG_NOT_ASSIGNED])
        return _outcome_payload(outcome)

    effective_user = body.effective_user or body.user_id
    submit_time = body.submit_time if body.submit_time is not None else time.time()
    # Only graders may force recording on or off.
    if body.record_answers is not None and authz.has_permissions(effective_user, "score_sets"):
        record_answers = body.record_answers
    else:
        record_answers = _can_record(ce, authz, problem_set, problem, effective_user, submit_time)

    outcome = process_and_log_answer(
        ce,
        authz,
        problem=problem,
        problem_set=problem_set,
        pg=body.pg,
        form_fields=body.form_fields,
        submit_time=submit_time,
        options=SubmissionOptions(
            submit_answers=body.submit_answers,
            record_answers=record_answers,
            start_time=body.start_time,
        ),
        effective_user=effective_user,
    )
    logger.info(
        "Submission %s/%s/%s by %s: %s",
        body.user_id,
        body.set_id,
        body.problem_id,
        effective_user,
        outcome.status.value,
    )
    return _outcome_payload(outcome)


@app.get("/courses/{course_id}/past_answers")
def list_past_answers(course_id: str, user_id: str, set_id: str, problem_id: str, limit: int = 20):
    ce = _load_course(course_id)
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id required")
    answers = db.list_past_answers(ce.course_id, user_id, set_id, problem_id, limit=max(1, min(limit, 200)))
    return {"answers": [answer.model_dump() for answer in answers]}


class UseItemBody(BaseModel):
    user_id: str
    set_id: Optional[str] = None


def _require_item(item_id: str):
    item = get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"unknown achievement item {item_id}")
    return item


@app.get("/courses/{course_id}/achievements/{item_id}/sets")
def list_item_sets(course_id: str, item_id: str, user_id: str):
    ce = _load_course(course_id)
    item = _require_item(item_id)
    sets = item.eligible_sets(db.list_merged_sets(ce.course_id, user_id), time.time())
    return {"item": item.id, "name": item.name, "sets": [problem_set.set_id for problem_set in sets]}


@app.post("/courses/{course_id}/achievements/{item_id}/use")
def use_achievement_item(course_id: str, item_id: str, body: UseItemBody):
    ce = _load_course(course_id)
    item = _require_item(item_id)
    authz = Authz(ce, partial(db.get_user, ce.course_id))
    if not authz.has_permissions(body.user_id, "use_achievement_items"):
        raise HTTPException(status_code=403, detail="achievement items are not available to this user")

    error = item.use_item(ce.course_id, body.user_id, body.set_id, time.time())
    if error:
        raise HTTPException(status_code=400, detail=error)
    return {"status": "ok", "item": item.id, "set_id": body.set_id}
