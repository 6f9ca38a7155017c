"""Course environment: the per-course configuration bundle.

Values come from environment variables first and may be overridden by a
``course.yaml`` file inside the course directory. Callers receive an explicit
``CourseEnvironment`` instead of reading process-wide settings.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

import env_validation
from env_validation import get_env_bool, get_env_float, get_env_list

__all__ = ["CourseConfigError", "CourseEnvironment", "DEFAULT_PERMISSION_LEVELS"]

DEFAULT_FEEDBACK_SUBJECT = "WeBWorK question from %c: %u set %s/prob %p"

# Minimum role required for each permission used by this package.
DEFAULT_PERMISSION_LEVELS: Dict[str, str] = {
    "dont_log_past_answers": "professor",
    "score_sets": "professor",
    "record_answers_when_open": "student",
    "use_achievement_items": "student",
}


class CourseConfigError(ValueError):
    """Raised when a course configuration file cannot be used."""


class CourseEnvironment(BaseModel):
    course_id: str
    course_dir: Path
    logs_dir: Path
    answer_log: Optional[str] = Field(
        default="answer_log",
        description="Name of the past-answer log file inside logs_dir; None disables answer logging.",
    )
    transaction_log: str = "transaction.log"

    enable_reduced_scoring: bool = False
    reduced_scoring_value: float = Field(default=1.0, ge=0.0, le=1.0)

    lti_grade_mode: Literal["", "course", "homework"] = ""
    lti_grade_on_submit: bool = False
    lti_grade_service_url: Optional[str] = None

    caliper_enabled: bool = False
    caliper_host: Optional[str] = None
    caliper_api_key: Optional[str] = None
    base_url: str = "https://local.webwork"

    smtp_server: Optional[str] = None
    smtp_port: int = 25
    set_return_path: Optional[str] = None
    feedback_subject_format: str = DEFAULT_FEEDBACK_SUBJECT
    feedback_recipients: List[str] = Field(default_factory=list)

    permission_levels: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_PERMISSION_LEVELS)
    )

    @property
    def answer_log_path(self) -> Optional[Path]:
        if not self.answer_log:
            return None
        return self.logs_dir / self.answer_log

    @property
    def transaction_log_path(self) -> Path:
        return self.logs_dir / self.transaction_log

    def course_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/courses/{self.course_id}"

    @classmethod
    def from_env(cls, course_id: str, *, courses_dir: str | Path | None = None) -> "CourseEnvironment":
        """Build the environment for ``course_id`` from env vars and ``course.yaml``."""

        root = Path(courses_dir or os.getenv("COURSES_DIR", "courses"))
        course_dir = root / course_id
        try:
            reduced_scoring_value = get_env_float("REDUCED_SCORING_VALUE", 1.0)
        except env_validation.EnvironmentError as exc:
            raise CourseConfigError(f"Invalid environment for course {course_id}: {exc}") from exc
        raw_port = os.getenv("SMTP_PORT") or "25"
        try:
            smtp_port = int(raw_port)
        except ValueError as exc:
            raise CourseConfigError(f"SMTP_PORT must be an integer, got '{raw_port}'") from exc

        values: Dict[str, Any] = {
            "course_id": course_id,
            "course_dir": course_dir,
            "logs_dir": course_dir / "logs",
            "enable_reduced_scoring": get_env_bool("ENABLE_REDUCED_SCORING"),
            "reduced_scoring_value": reduced_scoring_value,
            "lti_grade_mode": (os.getenv("LTI_GRADE_MODE") or "").strip().lower(),
            "lti_grade_on_submit": get_env_bool("LTI_GRADE_ON_SUBMIT"),
            "lti_grade_service_url": os.getenv("LTI_GRADE_SERVICE_URL") or None,
            "caliper_enabled": get_env_bool("CALIPER_ENABLED"),
            "caliper_host": os.getenv("CALIPER_HOST") or None,
            "caliper_api_key": os.getenv("CALIPER_API_KEY") or None,
            "base_url": os.getenv("APP_BASE_URL", "https://local.webwork"),
            "smtp_server": os.getenv("SMTP_SERVER") or None,
            "smtp_port": smtp_port,
            "set_return_path": os.getenv("MAIL_SET_RETURN_PATH") or None,
            "feedback_subject_format": os.getenv("MAIL_FEEDBACK_SUBJECT") or DEFAULT_FEEDBACK_SUBJECT,
            "feedback_recipients": get_env_list("MAIL_FEEDBACK_RECIPIENTS"),
        }
        values.update(_load_course_file(course_dir / "course.yaml"))
        try:
            return cls(**values)
        except ValidationError as exc:
            raise CourseConfigError(f"Invalid configuration for course {course_id}: {exc}") from exc


def _load_course_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise CourseConfigError(f"Could not parse {path}: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise CourseConfigError(f"{path} must contain a mapping at the top level")

    # course.yaml may nest the permission table; everything else is flat.
    overrides = dict(raw)
    permissions = overrides.pop("permissions", None)
    if permissions is not None:
        if not isinstance(permissions, dict):
            raise CourseConfigError(f"'permissions' in {path} must be a mapping")
        merged = dict(DEFAULT_PERMISSION_LEVELS)
        merged.update({str(k): str(v) for k, v in permissions.items()})
        overrides["permission_levels"] = merged
    for key in ("course_id", "course_dir", "logs_dir"):
        overrides.pop(key, None)
    return overrides
