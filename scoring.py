"""Reduced scoring: discounting score gains made after the reduced scoring date."""

from __future__ import annotations

from typing import Optional

from course_env import CourseEnvironment
from schemas import MergedProblem, MergedSet, UserProblem


def reduced_scoring_active(ce: CourseEnvironment, problem_set: MergedSet) -> bool:
    """Return True when the set has a usable reduced scoring period."""

    return bool(
        ce.enable_reduced_scoring
        and problem_set.enable_reduced_scoring
        and problem_set.reduced_scoring_date
        and problem_set.reduced_scoring_date != problem_set.due_date
    )


def compute_reduced_score(
    ce: CourseEnvironment,
    problem: MergedProblem | UserProblem,
    problem_set: MergedSet,
    score: float,
    submit_time: float,
) -> float:
    """Return ``score`` with any gain made during the reduced scoring period discounted.

    Only the part of ``score`` above ``problem.sub_status`` (the score held when
    the reduced scoring period began) is scaled by ``ce.reduced_scoring_value``.
    """

    if (
        not reduced_scoring_active(ce, problem_set)
        or submit_time < problem_set.reduced_scoring_date
        or score <= problem.sub_status
    ):
        return score

    return problem.sub_status + ce.reduced_scoring_value * (score - problem.sub_status)


def tracks_full_status(ce: CourseEnvironment, problem_set: MergedSet, submit_time: float) -> bool:
    """Whether ``sub_status`` should follow ``status`` for a submission at ``submit_time``."""

    reduced_date: Optional[int] = problem_set.reduced_scoring_date
    if not (ce.enable_reduced_scoring and problem_set.enable_reduced_scoring) or not reduced_date:
        return True
    return submit_time < reduced_date
