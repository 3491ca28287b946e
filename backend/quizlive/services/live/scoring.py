import math
from typing import Any, Dict, Optional


SHORT_ANSWER = 'short-answer'
DEFAULT_BASE_POINTS = 1


def correct_answer(question: Dict[str, Any]) -> Optional[str]:
    """Text of the answer that counts as correct, or None if the question has none."""
    answers = question.get('answers') or []
    if question.get('type') == SHORT_ANSWER:
        return answers[0].get('text') if answers else None
    for answer in answers:
        if answer.get('correct'):
            return answer.get('text')
    return None


def is_correct(question: Dict[str, Any], submitted: Any) -> bool:
    expected = correct_answer(question)
    if expected is None:
        return False
    if question.get('type') == SHORT_ANSWER:
        if not isinstance(submitted, str):
            return False
        return submitted.strip().lower() == str(expected).strip().lower()
    return submitted == expected


def time_bonus_factor(elapsed_ms: Optional[float], time_limit_ms: Optional[float]) -> float:
    if elapsed_ms is None or not time_limit_ms or time_limit_ms <= 0:
        return 0.0
    return min(1.0, max(0.0, 1 - float(elapsed_ms) / float(time_limit_ms)))


def score(question: Dict[str, Any], submitted: Any, elapsed_ms: Optional[float], time_limit_ms: Optional[float]) -> int:
    """Points for one submitted answer.

    Incorrect answers earn 0. A correct answer earns its base points plus a
    speed bonus of up to the same amount again, shrinking linearly to nothing
    at the time limit: ``round(base * (1 + factor))``. Unknown elapsed time
    means no bonus.
    """
    if not is_correct(question, submitted):
        return 0
    base = question.get('points')
    if base is None:
        base = DEFAULT_BASE_POINTS
    factor = time_bonus_factor(elapsed_ms, time_limit_ms)
    # half-up, so 1.5 rounds to 2 rather than to the even neighbour
    return int(math.floor(base * (1 + factor) + 0.5))
