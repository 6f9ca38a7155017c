"""Caliper analytics sensor for answer submissions.

Events are validated against the small Caliper profile used by the submission
workflow, stored locally, and forwarded to the configured Caliper endpoint in
the background with retry/backoff. Forwarding never blocks the request that
produced the events.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import requests

import db
from course_env import CourseEnvironment
from schemas import GradedState, MergedProblem, MergedSet

LOGGER = logging.getLogger("hwd.caliper")

CALIPER_CONTEXT = "http://purl.imsglobal.org/ctx/caliper/v1p1"

# ---------------------------------------------------------------------------
# Caliper profile definition
# ---------------------------------------------------------------------------

CALIPER_PROFILE_EVENTS: dict[str, dict[str, Any]] = {
    "AssessmentItemEvent": {
        "profile": "AssessmentProfile",
        "actions": ("Started", "Skipped", "Completed"),
    },
    "AssessmentEvent": {
        "profile": "AssessmentProfile",
        "actions": ("Started", "Paused", "Resumed", "Restarted", "Reset", "Submitted"),
    },
    "ToolUseEvent": {
        "profile": "ToolUseProfile",
        "actions": ("Used",),
    },
}

_ALLOWED_TYPES_TEXT = ", ".join(sorted(CALIPER_PROFILE_EVENTS))

# ---------------------------------------------------------------------------


def validate_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and normalise a Caliper event according to the local profile."""

    if not isinstance(event, dict):
        raise ValueError("event must be a dict")

    event_type = event.get("type")
    if event_type not in CALIPER_PROFILE_EVENTS:
        raise ValueError(f"Unsupported event type '{event_type}'. Allowed types: {_ALLOWED_TYPES_TEXT}")
    rules = CALIPER_PROFILE_EVENTS[event_type]

    action = event.get("action")
    if action not in rules["actions"]:
        allowed = ", ".join(rules["actions"])
        raise ValueError(f"Unsupported action '{action}' for {event_type}. Allowed actions: {allowed}")

    profile = event.get("profile") or rules["profile"]
    if profile != rules["profile"]:
        raise ValueError(f"{event_type} belongs to {rules['profile']}, not {profile}")
    event["profile"] = profile

    obj = event.get("object")
    if not isinstance(obj, dict) or not isinstance(obj.get("id"), str) or not obj["id"].strip():
        raise ValueError("object.id must be provided")

    actor = event.get("actor")
    if not isinstance(actor, dict) or not isinstance(actor.get("id"), str) or not actor["id"].strip():
        raise ValueError("actor.id must be provided")

    generated = event.get("generated")
    if generated is not None and (not isinstance(generated, dict) or "id" not in generated):
        raise ValueError("generated must be an entity with an id when provided")

    event.setdefault("@context", CALIPER_CONTEXT)
    event.setdefault("id", f"urn:uuid:{uuid.uuid4()}")
    event.setdefault("eventTime", _iso_now())
    return event


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _iso(epoch: Optional[float]) -> Optional[str]:
    if epoch is None:
        return None
    moment = datetime.fromtimestamp(float(epoch), tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


def webwork_app(ce: CourseEnvironment) -> Dict[str, Any]:
    return {"id": ce.base_url.rstrip("/"), "type": "SoftwareApplication", "name": "WeBWorK"}


def person(ce: CourseEnvironment, user_id: str) -> Dict[str, Any]:
    return {"id": f"{ce.course_url()}/users/{user_id}", "type": "Person", "name": user_id}


def problem_set(ce: CourseEnvironment, set_id: str) -> Dict[str, Any]:
    return {"id": f"{ce.course_url()}/sets/{set_id}", "type": "Assessment", "name": set_id}


def problem_set_attempt(
    ce: CourseEnvironment,
    set_id: str,
    user_id: str,
    start_time: Optional[float],
    end_time: Optional[float],
    version: int = 0,
) -> Dict[str, Any]:
    entity = {
        "id": f"{ce.course_url()}/sets/{set_id}/users/{user_id}/versions/{version}",
        "type": "Attempt",
        "assignee": person(ce, user_id),
        "assignable": problem_set(ce, set_id),
        "startedAtTime": _iso(start_time),
        "endedAtTime": _iso(end_time),
    }
    return {k: v for k, v in entity.items() if v is not None}


def problem_user(ce: CourseEnvironment, problem: MergedProblem, version: int = 0) -> Dict[str, Any]:
    return {
        "id": f"{ce.course_url()}/sets/{problem.set_id}/problems/{problem.problem_id}",
        "type": "AssessmentItem",
        "name": problem.problem_id,
        "isPartOf": problem_set(ce, problem.set_id),
        "extensions": {
            "source_file": problem.source_file,
            "version": version,
            "max_attempts": problem.max_attempts,
            "problem_seed": problem.problem_seed,
        },
    }


def answer(
    ce: CourseEnvironment,
    problem: MergedProblem,
    pg: GradedState,
    start_time: Optional[float],
    end_time: Optional[float],
    version: int = 0,
) -> Dict[str, Any]:
    entity = {
        "id": (
            f"{ce.course_url()}/sets/{problem.set_id}/problems/{problem.problem_id}"
            f"/users/{problem.user_id}/versions/{version}/answer"
        ),
        "type": "Response",
        "attempt": {
            "id": f"{ce.course_url()}/sets/{problem.set_id}/users/{problem.user_id}/versions/{version}",
            "type": "Attempt",
            "assignee": person(ce, problem.user_id),
            "count": problem.num_correct + problem.num_incorrect,
        },
        "startedAtTime": _iso(start_time),
        "endedAtTime": _iso(end_time),
        "extensions": {
            "recorded_score": pg.recorded_score,
            "num_correct": pg.num_of_correct_ans,
            "num_incorrect": pg.num_of_incorrect_ans,
            "answers": {
                ans_id: {"score": group.score, "type": group.type} for ans_id, group in pg.answers.items()
            },
        },
    }
    return {k: v for k, v in entity.items() if v is not None}


# ---------------------------------------------------------------------------
# Forwarding
# ---------------------------------------------------------------------------


async def _forward_envelope_with_retry(
    envelope: Dict[str, Any],
    *,
    host: str,
    headers: Dict[str, str],
    timeout: float = 5.0,
    max_attempts: int = 3,
) -> None:
    """Forward an envelope to the Caliper endpoint with exponential backoff."""

    delay = 0.5
    for attempt in range(1, max_attempts + 1):
        try:
            response = await asyncio.to_thread(
                requests.post,
                host,
                json=envelope,
                headers=headers,
                timeout=timeout,
            )
            if response.status_code < 500:
                if response.status_code >= 400:
                    LOGGER.warning("Caliper endpoint rejected events with status %s", response.status_code)
                return
            LOGGER.warning(
                "Caliper endpoint responded with status %s on attempt %s", response.status_code, attempt
            )
        except requests.RequestException as exc:
            LOGGER.warning("Failed to forward Caliper events (attempt %s): %s", attempt, exc)
        if attempt == max_attempts:
            break
        await asyncio.sleep(delay)
        delay *= 2


def _schedule_forward(envelope: Dict[str, Any], *, host: str, headers: Dict[str, str]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    coro = _forward_envelope_with_retry(envelope, host=host, headers=headers)

    if loop and loop.is_running():
        loop.create_task(coro)
    else:
        threading.Thread(target=lambda: asyncio.run(coro), daemon=True).start()


class CaliperSensor:
    """Collects events for one course and ships them to the Caliper endpoint."""

    def __init__(self, ce: CourseEnvironment):
        self.ce = ce

    def envelope(self, events: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "sensor": f"{self.ce.base_url.rstrip('/')}/caliper/sensor",
            "sendTime": _iso_now(),
            "dataVersion": CALIPER_CONTEXT,
            "data": list(events),
        }

    def send_events(self, user_id: str, events: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Complete, validate, store and forward ``events``; returns the validated events."""

        validated: List[Dict[str, Any]] = []
        for event in events:
            event = dict(event)
            event.setdefault("actor", person(self.ce, user_id))
            event.setdefault("edApp", webwork_app(self.ce))
            validated.append(validate_event(event))

        for event in validated:
            db.record_caliper_event(self.ce.course_id, event)

        host = self.ce.caliper_host
        if not host:
            LOGGER.debug("No Caliper host configured; %s events stored locally", len(validated))
            return validated

        headers = {"Content-Type": "application/json"}
        if self.ce.caliper_api_key:
            headers["Authorization"] = f"Bearer {self.ce.caliper_api_key}"

        _schedule_forward(self.envelope(validated), host=host, headers=headers)
        return validated


def submission_events(
    ce: CourseEnvironment,
    problem: MergedProblem,
    problem_set_record: MergedSet,
    pg: GradedState,
    start_time: Optional[float],
    end_time: Optional[float],
) -> List[Dict[str, Any]]:
    """The three events describing one graded, non-gateway submission."""

    completed_question_event = {
        "type": "AssessmentItemEvent",
        "action": "Completed",
        "profile": "AssessmentProfile",
        "object": problem_user(ce, problem),
        "generated": answer(ce, problem, pg, start_time, end_time),
    }
    submitted_set_event = {
        "type": "AssessmentEvent",
        "action": "Submitted",
        "profile": "AssessmentProfile",
        "object": problem_set(ce, problem_set_record.set_id),
        "generated": problem_set_attempt(ce, problem_set_record.set_id, problem.user_id, start_time, end_time),
    }
    tool_use_event = {
        "type": "ToolUseEvent",
        "action": "Used",
        "profile": "ToolUseProfile",
        "object": webwork_app(ce),
    }
    return [completed_question_event, submitted_set_event, tool_use_event]
