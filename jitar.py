"""Just-in-time additional review (JITAR) problem numbering and scoring.

A JITAR problem id packs the problem's position in the review tree, e.g.
``(2, 1)`` for the first review problem under problem 2, into a single integer.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

from schemas import MergedProblem

JITAR_MASK: Tuple[int, ...] = (0xFF000000, 0x00FC0000, 0x0003F000, 0x00000F00, 0x000000F0, 0x0000000F)
JITAR_SHIFT: Tuple[int, ...] = (24, 18, 12, 8, 4, 0)


def seq_to_jitar_id(seq: Sequence[int]) -> int:
    if not seq:
        raise ValueError("a JITAR sequence needs at least one level")
    if len(seq) > len(JITAR_MASK):
        raise ValueError(f"JITAR sequences are limited to {len(JITAR_MASK)} levels")
    problem_id = 0
    for level, index in enumerate(seq):
        limit = JITAR_MASK[level] >> JITAR_SHIFT[level]
        if not 1 <= int(index) <= limit:
            raise ValueError(f"JITAR index {index} at level {level + 1} must be within 1..{limit}")
        problem_id |= int(index) << JITAR_SHIFT[level]
    return problem_id


def jitar_id_to_seq(problem_id: int | str) -> List[int]:
    value = int(problem_id)
    seq: List[int] = []
    for mask, shift in zip(JITAR_MASK, JITAR_SHIFT):
        index = (value & mask) >> shift
        if index == 0:
            break
        seq.append(index)
    return seq


def format_jitar_id(problem_id: int | str) -> str:
    """Human readable form of a JITAR id, e.g. ``2.1``."""

    return ".".join(str(index) for index in jitar_id_to_seq(problem_id))


def _children(parent_seq: List[int], problems: Iterable[MergedProblem]) -> List[MergedProblem]:
    depth = len(parent_seq) + 1
    children = []
    for problem in problems:
        seq = jitar_id_to_seq(problem.problem_id)
        if len(seq) == depth and seq[:-1] == parent_seq:
            children.append(problem)
    return children


def jitar_problem_adjusted_status(problem: MergedProblem, set_problems: Sequence[MergedProblem]) -> float:
    """Score of ``problem`` after crediting the review problems that count toward it.

    The adjusted status is the larger of the problem's own status and the
    value-weighted mean of the adjusted statuses of its children flagged
    ``counts_parent_grade``.
    """

    if problem.status >= 1:
        return problem.status

    by_id: Dict[str, MergedProblem] = {p.problem_id: p for p in set_problems}
    counting = [
        child
        for child in _children(jitar_id_to_seq(problem.problem_id), by_id.values())
        if child.counts_parent_grade
    ]
    if not counting:
        return problem.status

    total_weight = sum(child.value for child in counting)
    if total_weight <= 0:
        return problem.status
    child_score = sum(
        jitar_problem_adjusted_status(child, set_problems) * child.value for child in counting
    ) / total_weight
    return max(problem.status, child_score)


def _out_of_attempts(problem: MergedProblem) -> bool:
    return problem.max_attempts != -1 and problem.num_correct + problem.num_incorrect >= problem.max_attempts


def jitar_children_open(problem: MergedProblem) -> bool:
    """Review problems open once the parent has used ``att_to_open_children`` attempts or run out."""

    attempts = problem.num_correct + problem.num_incorrect
    return _out_of_attempts(problem) or attempts >= problem.att_to_open_children


def jitar_problem_closed(problem: MergedProblem, set_problems: Sequence[MergedProblem]) -> bool:
    """A review problem stays closed until every ancestor has opened its children."""

    seq = jitar_id_to_seq(problem.problem_id)
    by_id: Dict[str, MergedProblem] = {p.problem_id: p for p in set_problems}
    for depth in range(1, len(seq)):
        ancestor = by_id.get(str(seq_to_jitar_id(seq[:depth])))
        if ancestor is not None and not jitar_children_open(ancestor):
            return True
    return False


def jitar_problem_finished(problem: MergedProblem, set_problems: Sequence[MergedProblem]) -> bool:
    """True when the student is done with ``problem`` and all of its review problems.

    A problem is done when it is correct, or when it is out of attempts and
    every review problem below it is done as well.
    """

    if problem.status >= 1:
        return True
    if not _out_of_attempts(problem):
        return False
    children = _children(jitar_id_to_seq(problem.problem_id), set_problems)
    return all(jitar_problem_finished(child, set_problems) for child in children)


def jitar_top_level_id(problem_id: int | str) -> str:
    """Id of the top level problem of the review tree containing ``problem_id``."""

    seq = jitar_id_to_seq(problem_id)
    return str(seq_to_jitar_id(seq[:1])) if seq else str(problem_id)
