"""Role based permission checks for course users."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional

from course_env import CourseEnvironment
from schemas import User

logger = logging.getLogger(__name__)

ROLE_LEVELS: Dict[str, int] = {
    "guest": -5,
    "student": 0,
    "login_proctor": 2,
    "grade_proctor": 3,
    "ta": 5,
    "professor": 10,
    "admin": 20,
    "nobody": 1000,
}


class Authz:
    """Answers "may this user do X" from the course permission table."""

    def __init__(self, ce: CourseEnvironment, user_lookup: Callable[[str], Optional[User]]):
        self._permissions = dict(ce.permission_levels)
        self._user_lookup = user_lookup

    def required_level(self, permission: str) -> Optional[int]:
        role = self._permissions.get(permission)
        if role is None:
            return None
        if role not in ROLE_LEVELS:
            logger.warning("Unknown role '%s' configured for permission %s", role, permission)
            return None
        return ROLE_LEVELS[role]

    def has_permissions(self, user_id: str, permission: str) -> bool:
        required = self.required_level(permission)
        if required is None:
            return False
        user = self._user_lookup(user_id)
        if user is None:
            return False
        return user.permission_level >= required

    def users_with_permission(self, permission: str, users: Iterable[User]) -> List[User]:
        required = self.required_level(permission)
        if required is None:
            return []
        return [user for user in users if user.permission_level >= required]
