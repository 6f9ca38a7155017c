from __future__ import annotations

from typing import Iterable, List, Optional

from schemas import MergedSet


class AchievementItem:
    """A reward a student can spend once per held use."""

    id: str = ""
    name: str = ""
    description: str = ""

    def eligible_sets(self, sets: Iterable[MergedSet], now: float) -> List[MergedSet]:
        """Sets the item may be used on at ``now``."""
        raise NotImplementedError

    def use_item(self, course_id: str, user_id: str, set_id: Optional[str], now: float) -> Optional[str]:
        """Apply the item; returns None on success or a message explaining the refusal."""
        raise NotImplementedError
