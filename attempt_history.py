# attempt_history.py
# Per-learner, per-quiz attempt aggregate. Derived only: every change goes through
# append_attempt, never a direct edit of total/best/passed.
from typing import Any, Dict, Iterable, Optional


def empty_history(quiz_id: Any, user_id: Any) -> Dict[str, Any]:
    return {
        "quiz_id": quiz_id,
        "user_id": user_id,
        "attempts": [],
        "total_attempts": 0,
        "best_percentage": 0,
        "passed": False,
    }


def append_attempt(history: Dict[str, Any], attempt: Dict[str, Any]) -> Dict[str, Any]:
    """Returns a new history with `attempt` prepended (most-recent-first).

    best_percentage and passed are max/OR folds, so the aggregate does not depend on
    the order attempts are appended in.
    """
    attempts = [attempt] + list(history.get("attempts") or [])
    best_prev = int(history.get("best_percentage") or 0) if history.get("total_attempts") else 0
    return {
        "quiz_id": history.get("quiz_id"),
        "user_id": history.get("user_id"),
        "attempts": attempts,
        "total_attempts": len(attempts),
        "best_percentage": max(best_prev, int(attempt.get("percentage") or 0)),
        "passed": bool(history.get("passed")) or bool(attempt.get("passed")),
    }


def history_from_attempts(quiz_id: Any, user_id: Any, attempts: Iterable[Dict[str, Any]],
                          newest_first: bool = True) -> Dict[str, Any]:
    rows = list(attempts or [])
    if newest_first:
        rows.reverse()
    h = empty_history(quiz_id, user_id)
    for a in rows:
        h = append_attempt(h, a)
    return h


def last_attempt(history: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    attempts = history.get("attempts") or []
    return attempts[0] if attempts else None


def attempts_remaining(history: Dict[str, Any], max_attempts: int) -> Optional[int]:
    """None means unlimited (max_attempts <= 0)."""
    if max_attempts <= 0:
        return None
    return max(0, int(max_attempts) - int(history.get("total_attempts") or 0))


__all__ = ["empty_history", "append_attempt", "history_from_attempts", "last_attempt", "attempts_remaining"]
