"""Robe of Longevity: push a homework close date back by 48 hours."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

import db
from achievements.base import AchievementItem
from schemas import AchievementCounters, MergedSet

logger = logging.getLogger(__name__)

TWO_DAYS = 172800


class SuperExtendDueDate(AchievementItem):
    id = "SuperExtendDueDate"
    name = "Robe of Longevity"
    description = (
        "Adds 48 hours to the close date of a homework. "
        "This will randomize problem details if used after the original close date."
    )

    def eligible_sets(self, sets: Iterable[MergedSet], now: float) -> List[MergedSet]:
        return [
            problem_set
            for problem_set in sets
            if problem_set.assignment_type == "default"
            and problem_set.open_date <= now <= problem_set.due_date + TWO_DAYS
        ]

    def use_item(self, course_id: str, user_id: str, set_id: Optional[str], now: float) -> Optional[str]:
        counters = AchievementCounters.from_blob(db.get_global_user_achievement(course_id, user_id))
        if counters is None:
            return "No achievement data?!?!?!"
        if counters.remaining(self.id) <= 0:
            return f"You are {self.id} trying to use an item you don't have"

        if not set_id:
            return "You need to input a Set Name"

        problem_set = db.get_merged_set(course_id, user_id, set_id)
        user_set = db.get_user_set(course_id, user_id, set_id)
        if problem_set is None or user_set is None:
            return "Couldn't find that set!"
        if not self.eligible_sets([problem_set], now):
            return "That set can no longer be extended."

        if problem_set.reduced_scoring_date:
            user_set.reduced_scoring_date = problem_set.reduced_scoring_date + TWO_DAYS
        user_set.due_date = problem_set.due_date + TWO_DAYS
        # The answer date never moves earlier.
        if user_set.due_date > problem_set.answer_date:
            user_set.answer_date = user_set.due_date
        if not db.put_user_set(course_id, user_set):
            return "Couldn't save the new close date."

        # A closed set gets new problem versions, only once the new date is
        # stored. The seed is folded with ``seed % 2**31 + 1`` rather than
        # drawn fresh, so seeds below 2**31 simply move up by one.
        if now > problem_set.due_date:
            for problem in db.list_user_problems(course_id, user_id, set_id):
                problem.problem_seed = problem.problem_seed % 2**31 + 1
                if not db.put_user_problem(course_id, problem):
                    logger.warning("Could not reseed %s/%s/%s", user_id, set_id, problem.problem_id)

        counters.consume(self.id)
        if not db.put_global_user_achievement(course_id, user_id, counters.to_blob()):
            logger.error("Extended %s for %s but could not store the used item", set_id, user_id)
        logger.info("%s extended %s to %s", user_id, set_id, user_set.due_date)
        return None
