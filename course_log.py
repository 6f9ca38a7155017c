"""Append-only course log files (answer log, transaction log)."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Optional

from course_env import CourseEnvironment

logger = logging.getLogger(__name__)

_write_lock = threading.Lock()


def _stamp(timestamp: float) -> str:
    return time.strftime("%a %b %d %H:%M:%S %Y", time.localtime(timestamp))


def _append(path: Path, line: str) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with _write_lock, path.open("a", encoding="utf-8") as fh:
            fh.write(line)
    except OSError as exc:
        logger.error("Unable to write course log %s: %s", path, exc)
        return False
    return True


def write_course_log(
    ce: CourseEnvironment,
    log_name: str,
    message: str,
    timestamp: Optional[float] = None,
) -> bool:
    """Append ``message`` to the course log ``log_name`` with a readable timestamp.

    ``log_name`` is ``"answer_log"`` or ``"transaction"``; other names map to
    ``<name>.log`` inside the course logs directory.
    """

    if log_name == "answer_log":
        path = ce.answer_log_path
        if path is None:
            logger.debug("Answer log disabled for course %s", ce.course_id)
            return False
    elif log_name == "transaction":
        path = ce.transaction_log_path
    else:
        path = ce.logs_dir / f"{log_name}.log"

    when = time.time() if timestamp is None else timestamp
    return _append(path, f"[{_stamp(when)}] {message}\n")
