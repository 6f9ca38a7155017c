"""Grade passback to the LMS that launched the course."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

import requests

import db
from course_env import CourseEnvironment
from schemas import MergedProblem

LOGGER = logging.getLogger("hwd.lti")


def _weighted_score(problems: Iterable[MergedProblem]) -> Optional[float]:
    total = 0.0
    earned = 0.0
    for problem in problems:
        total += problem.value
        earned += problem.status * problem.value
    if total <= 0:
        return None
    return earned / total


class LTIGradeSubmitter:
    """Pushes set or course scores for a user to the configured grade service."""

    def __init__(self, ce: CourseEnvironment, *, timeout: float = 10.0):
        self.ce = ce
        self.timeout = timeout

    def set_score(self, user_id: str, set_id: str) -> Optional[float]:
        return _weighted_score(db.list_merged_problems(self.ce.course_id, user_id, set_id))

    def course_score(self, user_id: str) -> Optional[float]:
        problems: list[MergedProblem] = []
        for problem_set in db.list_merged_sets(self.ce.course_id, user_id):
            problems.extend(db.list_merged_problems(self.ce.course_id, user_id, problem_set.set_id))
        return _weighted_score(problems)

    def submit_course_grade(self, user_id: str) -> bool:
        user = db.get_user(self.ce.course_id, user_id)
        if user is None or not user.lis_source_did:
            LOGGER.info("No LMS source id for %s; course grade not sent", user_id)
            return False
        score = self.course_score(user_id)
        if score is None:
            LOGGER.info("No weighted problems for %s; course grade not sent", user_id)
            return False
        return self._post(user.lis_source_did, score, user_id=user_id)

    def submit_set_grade(self, user_id: str, set_id: str) -> bool:
        problem_set = db.get_merged_set(self.ce.course_id, user_id, set_id)
        if problem_set is None or not problem_set.lis_source_did:
            LOGGER.info("No LMS source id for %s/%s; set grade not sent", user_id, set_id)
            return False
        score = self.set_score(user_id, set_id)
        if score is None:
            LOGGER.info("Set %s has no weighted problems for %s; grade not sent", set_id, user_id)
            return False
        return self._post(problem_set.lis_source_did, score, user_id=user_id)

    def _post(self, sourcedid: str, score: float, *, user_id: str) -> bool:
        url = self.ce.lti_grade_service_url
        if not url:
            LOGGER.warning("LTI grade passback requested but LTI_GRADE_SERVICE_URL is not set")
            return False
        payload = {"sourcedid": sourcedid, "score": round(min(max(score, 0.0), 1.0), 6)}
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("Grade passback for %s failed: %s", user_id, exc)
            return False
        LOGGER.debug("Sent score %.4f for %s", payload["score"], user_id)
        return True
