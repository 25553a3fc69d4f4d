# question_types.py
# Question type vocabulary shared by the server grader and the attempt screen.
from typing import Any

SINGLE = "SINGLE"
MULTIPLE = "MULTIPLE"
TRUEFALSE = "TRUEFALSE"
QUESTION_TYPES = (SINGLE, MULTIPLE, TRUEFALSE)

_TYPE_ALIASES = {
    "SINGLE": SINGLE, "SINGLE_CHOICE": SINGLE,
    "MULTIPLE": MULTIPLE, "MULTIPLE_CHOICE": MULTIPLE,
    "TRUEFALSE": TRUEFALSE, "TRUE_FALSE": TRUEFALSE,
}


def normalize_type(q_type: Any) -> str:
    t = str(q_type or "").strip().upper()
    if t not in _TYPE_ALIASES:
        raise ValueError(f"unsupported question type: {q_type!r}")
    return _TYPE_ALIASES[t]


def is_single_choice(q_type: Any) -> bool:
    """SINGLE and TRUEFALSE allow at most one selected option."""
    return normalize_type(q_type) in (SINGLE, TRUEFALSE)


__all__ = ["SINGLE", "MULTIPLE", "TRUEFALSE", "QUESTION_TYPES", "normalize_type", "is_single_choice"]
