"""Environment variable validation and typed accessors."""

import os
import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

_LTI_GRADE_MODES = {"", "course", "homework"}


def validate_environment() -> None:
    """Validate the environment variables read by ``course_env``.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "COURSES_DIR": os.getenv("COURSES_DIR") or "courses",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "CALIPER_HOST": "Caliper analytics endpoint",
        "LTI_GRADE_SERVICE_URL": "LMS grade passback endpoint",
        "SMTP_SERVER": "Outgoing mail server",
    }

    url_vars = {"CALIPER_HOST", "LTI_GRADE_SERVICE_URL", "APP_BASE_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    mode = (os.getenv("LTI_GRADE_MODE") or "").strip().lower()
    if mode not in _LTI_GRADE_MODES:
        raise EnvironmentError(
            f"Invalid LTI_GRADE_MODE '{mode}'; expected one of: course, homework"
        )

    raw_value = os.getenv("REDUCED_SCORING_VALUE")
    if raw_value:
        value = get_env_float("REDUCED_SCORING_VALUE", 1.0)
        if not 0.0 <= value <= 1.0:
            raise EnvironmentError(f"REDUCED_SCORING_VALUE must be within [0, 1]: {raw_value}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise EnvironmentError(f"{name} must be a number, got '{value}'") from exc


def get_env_list(name: str, default: Optional[List[str]] = None) -> List[str]:
    """Split a comma separated environment variable into trimmed entries."""
    value = os.getenv(name)
    if not value:
        return list(default or [])
    return [part.strip() for part in value.split(",") if part.strip()]


def describe_environment() -> Dict[str, Optional[str]]:
    """Return the configuration variables that are set, with secrets masked."""
    names = (
        "DB_PATH",
        "COURSES_DIR",
        "ENABLE_REDUCED_SCORING",
        "REDUCED_SCORING_VALUE",
        "LTI_GRADE_MODE",
        "LTI_GRADE_ON_SUBMIT",
        "CALIPER_ENABLED",
        "CALIPER_HOST",
        "CALIPER_API_KEY",
        "SMTP_SERVER",
    )
    described: Dict[str, Optional[str]] = {}
    for name in names:
        value = os.getenv(name)
        if value and name.endswith("_KEY"):
            value = "***"
        described[name] = value
    return described
