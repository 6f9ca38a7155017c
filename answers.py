"""Answer strings: the past-answer audit format and the sticky answer blob."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from schemas import GradedState

logger = logging.getLogger(__name__)

# Joins the parts of a multi-part answer inside the tab separated audit string.
ANSWER_PART_SEPARATOR = "&#9070;"

FormValue = Union[str, List[str]]


def encode_answers(answers: Mapping[str, Any], order: Sequence[str]) -> str:
    """Encode ``answers`` as a JSON list of alternating keys and values in ``order``."""

    flat: List[Any] = []
    for key in order:
        value = answers.get(key)
        if isinstance(value, tuple):
            value = list(value)
        flat.extend([key, value])
    return json.dumps(flat, ensure_ascii=False, separators=(",", ":"))


def decode_answers(blob: Optional[str]) -> Dict[str, Any]:
    """Invert :func:`encode_answers`; unreadable blobs decode to an empty mapping."""

    if not blob:
        return {}
    try:
        flat = json.loads(blob)
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable last answer blob")
        return {}
    if not isinstance(flat, list) or len(flat) % 2:
        logger.warning("Discarding malformed last answer blob")
        return {}
    return {str(flat[i]): flat[i + 1] for i in range(0, len(flat), 2)}


def _audit_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ANSWER_PART_SEPARATOR.join("" if part is None else str(part) for part in value)
    if value is None:
        return ""
    return str(value)


def create_ans_str_from_responses(
    form_fields: Mapping[str, FormValue], pg: GradedState
) -> Tuple[str, str, str, bool]:
    """Build the strings stored for a submission.

    Returns ``(past_answers_string, encoded_last_answer_string, scores, is_essay)``.
    The past answers string holds only the graded responses; the last answer
    blob also keeps ``pg.kept_extra_answers`` so that persistent form state
    survives to the next page load.
    """

    scores = ""
    is_essay = False
    answers_to_store: Dict[str, Any] = {}
    past_answers_order: List[str] = []
    last_answer_order: List[str] = []

    for ans_id in pg.answer_entry_order:
        group = pg.answers.get(ans_id)
        score = group.score if group else 0
        scores += "1" if score >= 1 else "0"
        if group is None:
            continue
        if group.type == "essay":
            is_essay = True
        for response_id in group.response_order:
            answers_to_store[response_id] = form_fields.get(response_id)
            past_answers_order.append(response_id)
            last_answer_order.append(response_id)

    for entry_id in pg.kept_extra_answers:
        if entry_id in answers_to_store:
            continue
        answers_to_store[entry_id] = form_fields.get(entry_id)
        last_answer_order.append(entry_id)

    past_answers_string = "\t".join(_audit_value(answers_to_store[key]) for key in past_answers_order)
    encoded_last_answer_string = encode_answers(answers_to_store, last_answer_order)
    return past_answers_string, encoded_last_answer_string, scores, is_essay
