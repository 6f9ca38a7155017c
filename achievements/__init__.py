from typing import Dict, Optional

from achievements.base import AchievementItem
from achievements.super_extend_due_date import TWO_DAYS, SuperExtendDueDate

__all__ = ["AchievementItem", "SuperExtendDueDate", "TWO_DAYS", "ACHIEVEMENT_ITEMS", "get_item"]

ACHIEVEMENT_ITEMS: Dict[str, AchievementItem] = {
    item.id: item for item in (SuperExtendDueDate(),)
}


def get_item(item_id: str) -> Optional[AchievementItem]:
    return ACHIEVEMENT_ITEMS.get(item_id)
