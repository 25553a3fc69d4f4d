# grading.py
# -----------------------------------------------------------------------------
# Server-side quiz grading. Correctness flags only exist in this module's inputs;
# the learner-facing preview is built here too so the two shapes never mix.
# - All-or-nothing per question (selected set == correct set)
# - percentage rounded half-up; degenerate quizzes score 0
# -----------------------------------------------------------------------------

import hashlib
import json
from typing import Any, Dict, Iterable, List, Mapping, Optional

from question_types import is_single_choice, normalize_type


# ------------------------------- answers --------------------------------------
def answers_to_map(answers: Any) -> Dict[str, set]:
    """Accepts {qid: ids} or [{question_id, selected_option_ids}] and returns {qid: set(ids)}."""
    out: Dict[str, set] = {}
    if not answers:
        return out
    if isinstance(answers, Mapping):
        items = answers.items()
    else:
        items = []
        for a in answers:
            if isinstance(a, Mapping):
                items.append((a.get("question_id"), a.get("selected_option_ids") or []))
    for qid, ids in items:
        if qid is None:
            continue
        out[str(qid)] = {str(i) for i in (ids or [])}
    return out


def answers_to_payload(answers: Mapping[str, Iterable[str]]) -> List[Dict[str, Any]]:
    return [
        {"question_id": str(qid), "selected_option_ids": sorted(str(i) for i in ids)}
        for qid, ids in answers.items()
        if ids
    ]


def correct_option_ids(question: Dict[str, Any]) -> set:
    return {str(o.get("id")) for o in (question.get("options") or []) if o.get("is_correct")}


def validate_answers(quiz: Dict[str, Any], answers: Any) -> List[str]:
    """Returns human-readable problems; an empty list means the submission is well-formed."""
    errs: List[str] = []
    by_id = {str(q.get("id")): q for q in (quiz.get("questions") or [])}
    for qid, ids in answers_to_map(answers).items():
        q = by_id.get(qid)
        if q is None:
            errs.append(f"{qid}: unknown question")
            continue
        known = {str(o.get("id")) for o in (q.get("options") or [])}
        unknown = sorted(ids - known)
        if unknown:
            errs.append(f"{qid}: unknown option(s) {', '.join(unknown)}")
        try:
            single = is_single_choice(q.get("type"))
        except ValueError as e:
            errs.append(f"{qid}: {e}")
            continue
        if single and len(ids) > 1:
            errs.append(f"{qid}: only one option may be selected")
    return errs


# ------------------------------- grading --------------------------------------
def _round_half_up_percent(score: int, max_score: int) -> int:
    # floor(100*s/m + 0.5) without floats
    return int((200 * score + max_score) // (2 * max_score))


def grade(quiz: Dict[str, Any], answers: Any) -> Dict[str, Any]:
    questions = quiz.get("questions") or []
    selected = answers_to_map(answers)

    max_score = 0
    score = 0
    for q in questions:
        weight = int(q.get("weight") or 0)
        max_score += weight
        chosen = selected.get(str(q.get("id")))
        if chosen is not None and chosen == correct_option_ids(q):
            score += weight

    percentage = _round_half_up_percent(score, max_score) if max_score > 0 else 0
    passed = percentage >= int(quiz.get("passing_score") or 0)
    return {"score": score, "max_score": max_score, "percentage": percentage, "passed": passed}


def grade_breakdown(quiz: Dict[str, Any], answers: Any) -> List[Dict[str, Any]]:
    """Per-question result rows for the submission response (answered questions only)."""
    selected = answers_to_map(answers)
    rows: List[Dict[str, Any]] = []
    for q in quiz.get("questions") or []:
        qid = str(q.get("id"))
        if qid not in selected:
            continue
        correct = correct_option_ids(q)
        ok = selected[qid] == correct
        rows.append({
            "question_id": qid,
            "selected_option_ids": sorted(selected[qid]),
            "is_correct": ok,
            "points": int(q.get("weight") or 0) if ok else 0,
        })
    return rows


# ------------------------------- learner views --------------------------------
def total_points(quiz: Dict[str, Any]) -> int:
    return sum(int(q.get("weight") or 0) for q in (quiz.get("questions") or []))


def quiz_summary(quiz: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": quiz.get("id"),
        "title": quiz.get("title"),
        "description": quiz.get("description"),
        "module_id": quiz.get("module_id"),
        "time_limit_minutes": quiz.get("time_limit_minutes"),
        "passing_score": int(quiz.get("passing_score") or 0),
        "questions_count": len(quiz.get("questions") or []),
        "total_points": total_points(quiz),
    }


def quiz_preview(quiz: Dict[str, Any]) -> Dict[str, Any]:
    """Learner-facing payload: options carry id + text only."""
    preview = quiz_summary(quiz)
    preview["questions"] = [
        {
            "id": q.get("id"),
            "text": q.get("text"),
            "type": normalize_type(q.get("type")),
            "weight": int(q.get("weight") or 0),
            "image_url": q.get("image_url"),
            "options": [{"id": o.get("id"), "text": o.get("text")} for o in (q.get("options") or [])],
        }
        for q in (quiz.get("questions") or [])
    ]
    return preview


def definition_signature(quiz: Dict[str, Any]) -> str:
    basis = json.dumps(quiz, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()


def build_attempt(quiz: Dict[str, Any], answers: Any, *, attempt_id: Any, user_id: Any,
                  submitted_at: Optional[str]) -> Dict[str, Any]:
    result = grade(quiz, answers)
    return {
        "id": attempt_id,
        "quiz_id": quiz.get("id"),
        "user_id": user_id,
        "answers": answers_to_payload(answers_to_map(answers)),
        "submitted_at": submitted_at,
        **result,
    }


__all__ = [
    "answers_to_map", "answers_to_payload",
    "correct_option_ids", "validate_answers", "grade", "grade_breakdown",
    "total_points", "quiz_summary", "quiz_preview", "definition_signature", "build_attempt",
]
