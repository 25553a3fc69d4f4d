# quiz.py
# -----------------------------------------------------------------------------
# Quiz attempt backend (preview -> submit -> results -> continue).
# - Preview issues an attempt token and snapshots the full definition for it
# - Submit grades against that snapshot; idempotent per attempt token
# - Attempt cap counts graded attempts (QUIZ_MAX_ATTEMPTS, 0 = unlimited)
# - Results fold stored attempts into the learner's history
# - Next = first lesson of the next module, else end of course
# - Optional server-side time limit with grace (QUIZ_ENFORCE_TIME_LIMIT)
# -----------------------------------------------------------------------------

import os, json, uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, List, Callable

from flask import Blueprint, request, jsonify, g

from attempt_history import history_from_attempts, attempts_remaining, last_attempt
from grading import (
    answers_to_map, answers_to_payload, definition_signature, grade, grade_breakdown,
    quiz_preview, quiz_summary, validate_answers,
)
from progression import end_of_course, lesson_id_of, module_id_of, resolve_progression, sort_by_order
from question_types import normalize_type

TAMPER_EVENTS = (
    "context_menu", "copy", "view_source", "devtools", "print", "save",
    "screenshot", "tab_switch", "devtools_open",
)


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_quiz_blueprint(base_path: str, deps: Dict[str, Any], name: str = "quiz") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path (e.g. "/learn").
    Required deps: fetch_one, fetch_all, execute, execute_returning
    Optional deps: ensure_structure, log_activity
    """
    url_prefix = base_path or "/learn"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Required deps -------------------------------------------------------
    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute:   Callable = deps["execute"]
    execute_returning: Callable = deps["execute_returning"]
    ensure_structure: Callable = deps.get("ensure_structure") or _ensure_structure_fallback
    log_activity: Callable = deps.get("log_activity") or _log_activity_noop

    # ---- Config --------------------------------------------------------------
    MAX_ATTEMPTS       = int(os.getenv("QUIZ_MAX_ATTEMPTS") or 3)
    ENFORCE_TIME_LIMIT = os.getenv("QUIZ_ENFORCE_TIME_LIMIT", "0").lower() in ("1", "true", "yes")
    TIME_GRACE_SEC     = int(os.getenv("QUIZ_TIME_GRACE_SEC") or 30)

    # ------------------------------- tables -----------------------------------
    _tables_ready = False

    def _ensure_tables():
        nonlocal _tables_ready
        if _tables_ready:
            return
        try:
            execute("""
                CREATE TABLE IF NOT EXISTS public.quiz_attempt_starts (
                    attempt_token  TEXT PRIMARY KEY,
                    quiz_id        TEXT        NOT NULL,
                    course_id      INTEGER     NOT NULL,
                    user_id        INTEGER     NOT NULL,
                    definition     JSONB       NOT NULL,
                    definition_sig TEXT        NOT NULL,
                    started_at     TIMESTAMPTZ NOT NULL DEFAULT now()
                );
            """)
            execute("""
                CREATE TABLE IF NOT EXISTS public.quiz_attempts (
                    id             BIGSERIAL PRIMARY KEY,
                    attempt_token  TEXT        NOT NULL UNIQUE,
                    quiz_id        TEXT        NOT NULL,
                    course_id      INTEGER     NOT NULL,
                    user_id        INTEGER     NOT NULL,
                    answers        JSONB       NOT NULL DEFAULT '[]'::jsonb,
                    score          INTEGER     NOT NULL,
                    max_score      INTEGER     NOT NULL,
                    percentage     INTEGER     NOT NULL,
                    passed         BOOLEAN     NOT NULL,
                    submitted_at   TIMESTAMPTZ NOT NULL DEFAULT now()
                );
            """)
            execute("""
                CREATE INDEX IF NOT EXISTS quiz_attempts_user_quiz_idx
                    ON public.quiz_attempts (user_id, quiz_id, submitted_at DESC);
            """)
        except Exception as e:
            print(f"[quiz] ensure tables failed (continuing): {e}")
        _tables_ready = True

    # ------------------------------- definitions ------------------------------
    def _load_quiz(course_id: int, quiz_id: str) -> Optional[Dict[str, Any]]:
        """Live definition with correctness flags (server only)."""
        q = fetch_one("""
            SELECT id, title, description, module_id, time_limit_min, passing_score
              FROM public.quizzes
             WHERE id::text = %s AND course_id = %s;
        """, (str(quiz_id), course_id))
        if not q:
            return None
        question_rows = fetch_all("""
            SELECT id, text, q_type, weight, image_url, q_order
              FROM public.quiz_questions
             WHERE quiz_id::text = %s
             ORDER BY q_order, id;
        """, (str(quiz_id),))
        option_rows = fetch_all("""
            SELECT o.id, o.question_id, o.text, o.is_correct, o.o_order
              FROM public.quiz_answer_options o
              JOIN public.quiz_questions qq ON qq.id = o.question_id
             WHERE qq.quiz_id::text = %s
             ORDER BY o.o_order, o.id;
        """, (str(quiz_id),))
        return _quiz_from_rows(q, question_rows, option_rows)

    # ------------------------------- attempt I/O ------------------------------
    def _attempt_rows(user_id: int, quiz_id: str) -> List[dict]:
        return fetch_all("""
            SELECT id, attempt_token, quiz_id, user_id, answers, score, max_score,
                   percentage, passed, submitted_at
              FROM public.quiz_attempts
             WHERE user_id = %s AND quiz_id = %s
             ORDER BY submitted_at DESC, id DESC;
        """, (user_id, str(quiz_id)))

    def _attempt_count(user_id: int, quiz_id: str) -> int:
        row = fetch_one("""
            SELECT COUNT(*) AS n
              FROM public.quiz_attempts
             WHERE user_id = %s AND quiz_id = %s;
        """, (user_id, str(quiz_id)))
        return int((row or {}).get("n") or 0)

    def _attempt_by_token(token: str) -> Optional[dict]:
        return fetch_one("""
            SELECT id, attempt_token, quiz_id, user_id, answers, score, max_score,
                   percentage, passed, submitted_at
              FROM public.quiz_attempts
             WHERE attempt_token = %s;
        """, (token,))

    def _cap_reached(used: int) -> bool:
        return MAX_ATTEMPTS > 0 and used >= MAX_ATTEMPTS

    def _log_quiz_activity(user_id: int, course_id: int, quiz_id: str, event: str,
                           extra_payload: Optional[dict] = None,
                           score_points: Optional[int] = None, passed: Optional[bool] = None):
        """Append-only activity row. Synthetic lesson_uid per quiz: 'QUIZ-<id>'."""
        payload = {"kind": "quiz", "event": event, "quiz_id": str(quiz_id)}
        if extra_payload:
            payload.update(extra_payload)
        log_activity(user_id, course_id, f"QUIZ-{quiz_id}", f"quiz_{event}",
                     score_points=score_points, passed=passed, payload=payload)

    # ------------------------------- structure --------------------------------
    def _course_modules(course_id: int) -> Optional[List[Dict[str, Any]]]:
        row = fetch_one("SELECT id, structure FROM public.courses WHERE id = %s;", (course_id,))
        if not row:
            return None
        return _module_entries(ensure_structure(row.get("structure")))

    # ------------------------------- routes -----------------------------------
    @bp.get("/<int:course_id>/quiz/<quiz_id>/preview")
    def quiz_preview_route(course_id: int, quiz_id: str):
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        try:
            quiz = _load_quiz(course_id, quiz_id)
        except ValueError as e:
            print(f"[quiz] definition invalid for {quiz_id}: {e}")
            return jsonify({"ok": False, "error": "quiz is not available"}), 422
        if not quiz:
            return jsonify({"ok": False, "error": "quiz not found"}), 404

        _ensure_tables()
        used = _attempt_count(g.user_id, quiz_id)
        if _cap_reached(used):
            return jsonify({"ok": False, "error": f"attempt limit reached ({MAX_ATTEMPTS})"}), 403

        token = uuid.uuid4().hex
        sig = definition_signature(quiz)
        execute("""
            INSERT INTO public.quiz_attempt_starts
                (attempt_token, quiz_id, course_id, user_id, definition, definition_sig)
            VALUES (%s, %s, %s, %s, %s::jsonb, %s);
        """, (token, str(quiz_id), course_id, g.user_id, json.dumps(quiz, ensure_ascii=False), sig))
        _log_quiz_activity(g.user_id, course_id, quiz_id, "started",
                           extra_payload={"attempt_token": token, "definition_sig": sig})

        payload = quiz_preview(quiz)
        payload["attempt_token"] = token
        return jsonify({
            "ok": True,
            "quiz": payload,
            "attempts_used": used,
            "max_attempts": MAX_ATTEMPTS or None,
        })

    @bp.post("/<int:course_id>/quiz/<quiz_id>/submit")
    def quiz_submit_and_grade(course_id: int, quiz_id: str):
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        data = request.get_json(silent=True) or {}
        token = str(data.get("attempt_token") or "").strip()
        if not token:
            return jsonify({"ok": False, "error": "attempt_token is required"}), 400
        raw_answers = data.get("answers") or []
        if not isinstance(raw_answers, (list, dict)):
            return jsonify({"ok": False, "error": "answers must be a list"}), 400
        answers = answers_to_map(raw_answers)

        _ensure_tables()

        # Idempotency
        prior = _attempt_by_token(token)
        if prior:
            if str(prior.get("user_id")) != str(g.user_id) or str(prior.get("quiz_id")) != str(quiz_id):
                return jsonify({"ok": False, "error": "attempt not found or not active"}), 400
            return jsonify({"ok": True, "attempt": _attempt_from_row(prior), "replayed": True})

        started = fetch_one("""
            SELECT attempt_token, quiz_id, user_id, definition, definition_sig, started_at
              FROM public.quiz_attempt_starts
             WHERE attempt_token = %s AND user_id = %s AND quiz_id = %s;
        """, (token, g.user_id, str(quiz_id)))
        if not started:
            return jsonify({"ok": False, "error": "attempt not found or not active"}), 400

        quiz = _as_json(started.get("definition")) or {}
        problems = validate_answers(quiz, answers)
        if problems:
            return jsonify({"ok": False, "error": "invalid answers", "details": problems}), 400

        # Hard cap (counts only graded)
        used = _attempt_count(g.user_id, quiz_id)
        if _cap_reached(used):
            return jsonify({"ok": False, "error": f"attempt limit reached ({MAX_ATTEMPTS})"}), 403

        limit_min = quiz.get("time_limit_minutes")
        started_at = started.get("started_at")
        if ENFORCE_TIME_LIMIT and limit_min and isinstance(started_at, datetime):
            if started_at.tzinfo is None:
                started_at = started_at.replace(tzinfo=timezone.utc)
            deadline = started_at + timedelta(minutes=int(limit_min), seconds=TIME_GRACE_SEC)
            if datetime.now(timezone.utc) > deadline:
                return jsonify({"ok": False, "error": "time limit exceeded"}), 400

        # Definition drift: grade the snapshot, note the change
        try:
            live = _load_quiz(course_id, quiz_id)
            if live and definition_signature(live) != started.get("definition_sig"):
                print(f"[quiz] definition of {quiz_id} changed since attempt {token}; grading snapshot")
        except Exception as e:
            print(f"[quiz] drift check skipped for {quiz_id}: {e}")

        result = grade(quiz, answers)
        stored_answers = answers_to_payload(answers)
        rows = execute_returning("""
            INSERT INTO public.quiz_attempts
                (attempt_token, quiz_id, course_id, user_id, answers, score, max_score, percentage, passed)
            VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s)
            ON CONFLICT (attempt_token) DO NOTHING
            RETURNING id, attempt_token, quiz_id, user_id, answers, score, max_score,
                      percentage, passed, submitted_at;
        """, (token, str(quiz_id), course_id, g.user_id, json.dumps(stored_answers),
              result["score"], result["max_score"], result["percentage"], result["passed"]))
        if not rows:
            # a concurrent submit with the same token won the insert
            prior = _attempt_by_token(token)
            if not prior:
                return jsonify({"ok": False, "error": "attempt could not be recorded"}), 409
            return jsonify({"ok": True, "attempt": _attempt_from_row(prior), "replayed": True})

        attempt = _attempt_from_row(rows[0])
        _log_quiz_activity(
            g.user_id, course_id, quiz_id, "graded",
            extra_payload={
                "attempt_token": token,
                "score": result["score"],
                "max_score": result["max_score"],
                "percentage": result["percentage"],
                "passed": result["passed"],
            },
            score_points=result["percentage"],
            passed=result["passed"],
        )
        return jsonify({"ok": True, "attempt": attempt, "breakdown": grade_breakdown(quiz, answers)})

    @bp.get("/<int:course_id>/quiz/<quiz_id>/results")
    def quiz_results(course_id: int, quiz_id: str):
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        try:
            quiz = _load_quiz(course_id, quiz_id)
        except ValueError as e:
            print(f"[quiz] definition invalid for {quiz_id}: {e}")
            quiz = None
        if not quiz:
            return jsonify({"ok": False, "error": "quiz not found"}), 404

        _ensure_tables()
        attempts = [_attempt_from_row(r) for r in _attempt_rows(g.user_id, quiz_id)]
        history = history_from_attempts(str(quiz_id), g.user_id, attempts)
        remaining = attempts_remaining(history, MAX_ATTEMPTS)
        return jsonify({
            "ok": True,
            "quiz": quiz_summary(quiz),
            "history": history,
            "attempts_used": history["total_attempts"],
            "attempts_remaining": remaining,
            "can_retake": remaining is None or remaining > 0,
            "last_attempt": last_attempt(history),
        })

    @bp.get("/<int:course_id>/quiz/<quiz_id>/next")
    def quiz_next(course_id: int, quiz_id: str):
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        try:
            q = fetch_one("""
                SELECT id, module_id FROM public.quizzes WHERE id::text = %s AND course_id = %s;
            """, (str(quiz_id), course_id))
            modules = _course_modules(course_id) if q else None
        except Exception as e:
            print(f"[progression] lookup failed, ending course: {e}")
            q, modules = None, None
        if not q or modules is None:
            return jsonify({"ok": True, "target": end_of_course()})

        by_id = {m["id"]: m for m in modules}
        target = resolve_progression(
            modules, q.get("module_id"),
            lambda mid: (by_id.get(mid) or {}).get("lessons") or [],
        )
        return jsonify({"ok": True, "target": target})

    @bp.get("/<int:course_id>/modules")
    def course_modules(course_id: int):
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        modules = _course_modules(course_id)
        if modules is None:
            return jsonify({"ok": False, "error": "course not found"}), 404
        return jsonify({
            "ok": True,
            "modules": [{"id": m["id"], "title": m["title"], "order": m["order"]} for m in sort_by_order(modules)],
        })

    @bp.get("/<int:course_id>/module/<module_id>/lessons")
    def module_lessons(course_id: int, module_id: str):
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        modules = _course_modules(course_id)
        if modules is None:
            return jsonify({"ok": False, "error": "course not found"}), 404
        module = next((m for m in modules if m["id"] == str(module_id)), None)
        if module is None:
            return jsonify({"ok": False, "error": "module not found"}), 404
        return jsonify({"ok": True, "lessons": module["lessons"]})

    @bp.post("/<int:course_id>/quiz/<quiz_id>/activity")
    def quiz_activity(course_id: int, quiz_id: str):
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        data = request.get_json(silent=True) or {}
        kind = str(data.get("event") or "")
        if kind not in TAMPER_EVENTS:
            return jsonify({"ok": False, "error": "unknown activity"}), 400
        _log_quiz_activity(g.user_id, course_id, quiz_id, "tamper",
                           extra_payload={"activity": kind, "attempt_token": data.get("attempt_token")})
        return jsonify({"ok": True})

    return bp

# -----------------------------------------------------------------------------#
# Row shaping
# -----------------------------------------------------------------------------#
def _as_json(v: Any) -> Any:
    if v is None or isinstance(v, (dict, list)):
        return v
    try:
        return json.loads(v)
    except Exception:
        return None


def _iso(v: Any) -> Optional[str]:
    if isinstance(v, datetime):
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return str(v) if v is not None else None


def _attempt_from_row(r: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": r.get("id"),
        "attempt_token": r.get("attempt_token"),
        "quiz_id": str(r.get("quiz_id")),
        "user_id": r.get("user_id"),
        "answers": _as_json(r.get("answers")) or [],
        "score": int(r.get("score") or 0),
        "max_score": int(r.get("max_score") or 0),
        "percentage": int(r.get("percentage") or 0),
        "passed": bool(r.get("passed")),
        "submitted_at": _iso(r.get("submitted_at")),
    }


def _quiz_from_rows(q: Dict[str, Any], question_rows: List[dict], option_rows: List[dict]) -> Dict[str, Any]:
    options_by_q: Dict[str, List[Dict[str, Any]]] = {}
    for o in option_rows or []:
        options_by_q.setdefault(str(o.get("question_id")), []).append({
            "id": str(o.get("id")),
            "text": o.get("text") or "",
            "is_correct": bool(o.get("is_correct")),
        })
    questions = []
    for r in question_rows or []:
        qid = str(r.get("id"))
        questions.append({
            "id": qid,
            "text": r.get("text") or "",
            "type": normalize_type(r.get("q_type")),
            "weight": int(r.get("weight") or 0),
            "image_url": r.get("image_url"),
            "options": options_by_q.get(qid, []),
        })
    limit = q.get("time_limit_min")
    return {
        "id": str(q.get("id")),
        "title": q.get("title") or "",
        "description": q.get("description"),
        "module_id": str(q["module_id"]) if q.get("module_id") is not None else None,
        "time_limit_minutes": int(limit) if limit else None,
        "passing_score": int(q.get("passing_score") or 0),
        "questions": questions,
    }


def _module_entries(struct: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Accepts structure with either 'modules', 'sections', or a single-module object."""
    raw: List[Dict[str, Any]] = []
    if isinstance(struct, dict):
        if isinstance(struct.get("modules"), list):
            raw = struct["modules"]
        elif isinstance(struct.get("sections"), list):
            raw = struct["sections"]
        elif struct.get("module") or struct.get("lessons"):
            raw = [struct]
    out: List[Dict[str, Any]] = []
    for i, m in enumerate(raw, start=1):
        if not isinstance(m, dict):
            continue
        lessons = []
        for l in sort_by_order(m.get("lessons") or []):
            uid = lesson_id_of(l)
            if uid:
                lessons.append({"id": uid, "title": l.get("title") or "", "order": l.get("order") or 0})
        out.append({
            "id": module_id_of(m) or str(i),
            "title": m.get("title") or m.get("module") or f"Module {i}",
            "order": m.get("order") if m.get("order") is not None else i,
            "lessons": lessons,
        })
    return out


def _ensure_structure_fallback(structure_raw: Any) -> Dict[str, Any]:
    if not structure_raw: return {"modules": []}
    if isinstance(structure_raw, dict): return structure_raw
    try: return json.loads(structure_raw)
    except Exception: return {"modules": []}


def _log_activity_noop(*_args, **_kwargs) -> None:
    return None
