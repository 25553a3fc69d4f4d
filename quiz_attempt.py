# quiz_attempt.py
# -----------------------------------------------------------------------------
# Attempt screen engine (learner side). Runs on one asyncio loop:
# - AnswerStore: selections per question (replace for single-choice, toggle for multiple)
# - CountdownController: remaining seconds; `expired` fires once
# - Interval: owned once-per-second driver, started/cancelled with the screen
# - SubmissionCoordinator: loading -> in_progress -> submitting -> completed (+ error)
# - ResultsScreen: history view, "continue" (progression) and "retake"
# Grading never happens here; the server response is the authoritative Attempt.
# -----------------------------------------------------------------------------

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional

from attempt_history import append_attempt, empty_history
from progression import end_of_course, resolve_progression_async
from question_types import is_single_choice, normalize_type

LOADING = "loading"
IN_PROGRESS = "in_progress"
SUBMITTING = "submitting"
COMPLETED = "completed"
ERROR = "error"
CLOSED = "closed"


class QuizEngineError(Exception):
    user_message = "Something went wrong. Please try again."


class LoadFailure(QuizEngineError):
    user_message = "We couldn't load this quiz. Please try again or go back to the course."


class SubmissionFailure(QuizEngineError):
    user_message = "Your answers could not be submitted. Nothing was lost, please try again."


def _print_notice(level: str, title: str, description: str = "") -> None:
    print(f"[quiz] {level}: {title}" + (f" - {description}" if description else ""))


def _report_task_failure(task: "asyncio.Task") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        print(f"[quiz] background task {task.get_name()} failed: {exc!r}")


# ------------------------------- answers --------------------------------------
class AnswerStore:
    """In-progress selections. No I/O, no timers; only learner actions write here."""

    def __init__(self, questions: Optional[List[Dict[str, Any]]] = None):
        self._order: List[str] = []
        self._types: Dict[str, str] = {}
        self._options: Dict[str, set] = {}
        for q in questions or []:
            qid = str(q.get("id"))
            self._order.append(qid)
            self._types[qid] = normalize_type(q.get("type"))
            self._options[qid] = {str(o.get("id")) for o in (q.get("options") or [])}
        self._answers: Dict[str, List[str]] = {}

    def set_answer(self, question_id: Any, option_id: Any, question_type: Optional[str] = None) -> Dict[str, List[str]]:
        qid, oid = str(question_id), str(option_id)
        # the loaded definition decides the type; a caller hint may only agree with it
        q_type = self._types.get(qid)
        if q_type is None:
            if not question_type:
                raise ValueError(f"unknown question {qid}")
            q_type = normalize_type(question_type)
        elif question_type and normalize_type(question_type) != q_type:
            raise ValueError(f"question {qid} is {q_type}, not {question_type}")
        known = self._options.get(qid)
        if known is not None and oid not in known:
            raise ValueError(f"option {oid} does not belong to question {qid}")

        if is_single_choice(q_type):
            self._answers[qid] = [oid]
        else:
            current = list(self._answers.get(qid) or [])
            if oid in current:
                current.remove(oid)
            else:
                current.append(oid)
            if current:
                self._answers[qid] = current
            else:
                self._answers.pop(qid, None)
        return self.answers()

    def answers(self) -> Dict[str, List[str]]:
        return {qid: list(ids) for qid, ids in self._answers.items()}

    def selected(self, question_id: Any) -> List[str]:
        return list(self._answers.get(str(question_id)) or [])

    def answered_count(self) -> int:
        return len(self._answers)

    def unanswered(self) -> List[str]:
        return [qid for qid in self._order if qid not in self._answers]

    def payload(self) -> List[Dict[str, Any]]:
        return [{"question_id": qid, "selected_option_ids": list(ids)} for qid, ids in self._answers.items()]


# ------------------------------- timing ---------------------------------------
def format_time(seconds: Optional[int]) -> str:
    if seconds is None:
        return ""
    mins, secs = divmod(max(0, int(seconds)), 60)
    return f"{mins}:{secs:02d}"


def urgency(seconds: Optional[int]) -> str:
    if seconds is None:
        return "normal"
    if seconds < 60:
        return "critical"
    if seconds < 300:
        return "warning"
    return "normal"


class CountdownController:
    def __init__(self, time_limit_minutes: Optional[int], on_expired: Optional[Callable[[], Any]] = None):
        self.remaining: Optional[int] = int(time_limit_minutes) * 60 if time_limit_minutes else None
        self.expired = False
        self.stopped = False
        self._on_expired = on_expired

    @property
    def timed(self) -> bool:
        return self.remaining is not None

    def tick(self) -> bool:
        """One second elapsed. Returns True only on the tick that fired `expired`."""
        if self.remaining is None or self.stopped or self.expired:
            return False
        self.remaining = max(0, self.remaining - 1)
        if self.remaining > 0:
            return False
        # flag first: ticks delivered from inside the callback are no-ops
        self.expired = True
        if self._on_expired is not None:
            self._on_expired()
        return True

    def stop(self) -> None:
        self.stopped = True

    def resume(self) -> None:
        if not self.expired:
            self.stopped = False


class Interval:
    """Periodic callback owned by one screen; cancel() is idempotent."""

    def __init__(self, callback: Callable[[], Any], seconds: float = 1.0):
        self._callback = callback
        self.seconds = seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        self._task.add_done_callback(_report_task_failure)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.seconds)
            self._callback()

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


# ------------------------------- coordinator ----------------------------------
class SubmissionCoordinator:
    """
    One attempt of one quiz.
    Required deps: fetch_preview(quiz_id), submit_attempt(quiz_id, payload) (both awaitable)
    Optional deps: confirm(unanswered_count), notify(level, title, description),
                   on_completed(attempt, history), monitor (activate/deactivate)
    """

    def __init__(self, quiz_id: Any, deps: Dict[str, Any], history: Optional[Dict[str, Any]] = None,
                 tick_seconds: float = 1.0):
        self.quiz_id = quiz_id
        self._fetch_preview = deps["fetch_preview"]
        self._submit_attempt = deps["submit_attempt"]
        self._confirm = deps.get("confirm") or (lambda unanswered: False)
        self._notify = deps.get("notify") or _print_notice
        self._on_completed = deps.get("on_completed")
        self._monitor = deps.get("monitor")

        self.state = LOADING
        self.quiz: Optional[Dict[str, Any]] = None
        self.attempt_token: Optional[str] = None
        self.answers: Optional[AnswerStore] = None
        self.countdown: Optional[CountdownController] = None
        self.attempt: Optional[Dict[str, Any]] = None
        self.history = history
        self.error: Optional[QuizEngineError] = None
        self.auto_submit: Optional[asyncio.Task] = None
        self.current_index = 0
        self.closed = False

        self._in_flight = False
        self._ticker = Interval(self._tick, tick_seconds)

    # ---- loading -------------------------------------------------------------
    async def load(self) -> bool:
        if self.state != LOADING:
            return False
        try:
            preview = await self._fetch_preview(self.quiz_id)
        except Exception as e:
            print(f"[quiz] preview fetch failed for {self.quiz_id}: {e}")
            if self.state == LOADING:
                self.state = ERROR
                self.error = LoadFailure(str(e))
                self._notify("error", "Quiz unavailable", LoadFailure.user_message)
            return False
        if self.state != LOADING:
            # screen closed while the preview was in flight
            return False

        self.quiz = preview
        self.attempt_token = preview.get("attempt_token")
        self.answers = AnswerStore(preview.get("questions"))
        self.countdown = CountdownController(preview.get("time_limit_minutes"), self._on_expired)
        if self.history is None:
            self.history = empty_history(self.quiz_id, None)
        self.state = IN_PROGRESS
        if self.countdown.timed:
            self._ticker.start()
        if self._monitor is not None:
            self._monitor.activate()
        return True

    # ---- learner actions -----------------------------------------------------
    def set_answer(self, question_id: Any, option_id: Any, question_type: Optional[str] = None) -> Dict[str, List[str]]:
        if self.answers is None:
            return {}
        if self.state != IN_PROGRESS or self.time_up:
            # answers are frozen once time is up, even while a failed timeout submission awaits retry
            return self.answers.answers()
        return self.answers.set_answer(question_id, option_id, question_type)

    async def submit(self) -> Optional[Dict[str, Any]]:
        if self.state != IN_PROGRESS:
            return None
        if self.time_up:
            return await self._submit("timeout")
        unanswered = self.answers.unanswered()
        if unanswered:
            ok = self._confirm(len(unanswered))
            if inspect.isawaitable(ok):
                ok = await ok
            if not ok:
                return None
        return await self._submit("manual")

    @property
    def time_up(self) -> bool:
        return self.countdown is not None and self.countdown.expired

    @property
    def remaining_seconds(self) -> Optional[int]:
        return self.countdown.remaining if self.countdown else None

    @property
    def time_display(self) -> str:
        return format_time(self.remaining_seconds)

    # ---- question navigation -------------------------------------------------
    @property
    def questions(self) -> List[Dict[str, Any]]:
        return list((self.quiz or {}).get("questions") or [])

    @property
    def current_question(self) -> Optional[Dict[str, Any]]:
        questions = self.questions
        if not questions:
            return None
        return questions[self.current_index]

    def go_to(self, index: int) -> int:
        """Clamp to the question list; navigation never touches answers."""
        last = max(0, len(self.questions) - 1)
        self.current_index = min(max(0, int(index)), last)
        return self.current_index

    def next_question(self) -> int:
        return self.go_to(self.current_index + 1)

    def previous_question(self) -> int:
        return self.go_to(self.current_index - 1)

    @property
    def progress(self) -> Dict[str, int]:
        total = len(self.questions)
        answered = self.answers.answered_count() if self.answers is not None else 0
        return {
            "position": self.current_index + 1 if total else 0,
            "answered": answered,
            "total": total,
        }

    # ---- timer ---------------------------------------------------------------
    def _tick(self) -> None:
        if self.countdown is not None:
            self.countdown.tick()

    def _on_expired(self) -> None:
        self._ticker.cancel()
        if self.state != IN_PROGRESS:
            return
        self._notify("warning", "Time is up", "Your answers are being submitted automatically.")
        self.auto_submit = asyncio.get_running_loop().create_task(self._submit("timeout"))
        self.auto_submit.add_done_callback(_report_task_failure)

    # ---- submission ----------------------------------------------------------
    async def _submit(self, reason: str) -> Optional[Dict[str, Any]]:
        # check-and-set with no await in between
        if self._in_flight or self.state != IN_PROGRESS:
            return None
        self._in_flight = True
        self.state = SUBMITTING
        self._ticker.cancel()
        if self.countdown is not None:
            self.countdown.stop()

        payload = {
            "quiz_id": self.quiz_id,
            "attempt_token": self.attempt_token,
            "answers": self.answers.payload(),
        }
        try:
            attempt = await self._submit_attempt(self.quiz_id, payload)
        except Exception as e:
            return self._submission_failed(e, reason)

        self.attempt = attempt
        self.error = None
        self.history = append_attempt(self.history or empty_history(self.quiz_id, attempt.get("user_id")), attempt)
        if self.closed:
            # graded server-side; there is no screen left to route to results
            print(f"[quiz] attempt {attempt.get('id')} for {self.quiz_id} completed after the screen closed")
            return attempt
        self.state = COMPLETED
        if self._monitor is not None:
            self._monitor.deactivate()
        if self._on_completed is not None:
            self._on_completed(attempt, self.history)
        return attempt

    def _submission_failed(self, exc: Exception, reason: str) -> None:
        print(f"[quiz] submit failed ({reason}) for {self.quiz_id}: {exc}")
        self.error = SubmissionFailure(str(exc))
        self._in_flight = False
        if self.closed or self.state != SUBMITTING:
            return None
        self.state = IN_PROGRESS
        if self.time_up:
            self._notify("error", "Submission failed",
                         "Time is up and your answers are locked. Submit again to retry.")
            return None
        if self.countdown is not None and self.countdown.timed:
            self.countdown.resume()
            self._ticker.start()
        self._notify("error", "Submission failed", SubmissionFailure.user_message)
        return None

    # ---- leaving the screen --------------------------------------------------
    def close(self) -> None:
        """Stop timers and listeners. An unsubmitted attempt is discarded; an in-flight one finishes silently."""
        self.closed = True
        self._ticker.cancel()
        if self.countdown is not None:
            self.countdown.stop()
        if self._monitor is not None:
            self._monitor.deactivate()
        if self.state != COMPLETED:
            self.answers = None
            self.state = CLOSED


# ------------------------------- results --------------------------------------
class ResultsScreen:
    """
    Results view for one quiz.
    Required deps: fetch_results(quiz_id), list_modules(), list_lessons(module_id)
    Retake reuses the same deps for a fresh SubmissionCoordinator.
    """

    def __init__(self, quiz_id: Any, deps: Dict[str, Any]):
        self.quiz_id = quiz_id
        self._deps = deps
        self._notify = deps.get("notify") or _print_notice
        self.results: Optional[Dict[str, Any]] = None
        self.error: Optional[QuizEngineError] = None

    async def load(self) -> Optional[Dict[str, Any]]:
        try:
            self.results = await self._deps["fetch_results"](self.quiz_id)
        except Exception as e:
            print(f"[quiz] results fetch failed for {self.quiz_id}: {e}")
            self.error = LoadFailure(str(e))
            self._notify("error", "Results unavailable", "We couldn't load your results. Please try again.")
            return None
        self.error = None
        return self.results

    @property
    def can_retake(self) -> bool:
        return bool((self.results or {}).get("can_retake", True))

    async def continue_target(self) -> Dict[str, Any]:
        if self.results is None and await self.load() is None:
            return end_of_course()
        module_id = ((self.results or {}).get("quiz") or {}).get("module_id")
        if module_id is None:
            return end_of_course()
        return await resolve_progression_async(
            self._deps["list_modules"], module_id, self._deps["list_lessons"]
        )

    def retake(self, tick_seconds: float = 1.0) -> SubmissionCoordinator:
        if self.results is not None and not self.can_retake:
            raise QuizEngineError("No attempts remaining for this quiz.")
        history = (self.results or {}).get("history")
        return SubmissionCoordinator(self.quiz_id, self._deps, history=history, tick_seconds=tick_seconds)


__all__ = [
    "LOADING", "IN_PROGRESS", "SUBMITTING", "COMPLETED", "ERROR", "CLOSED",
    "QuizEngineError", "LoadFailure", "SubmissionFailure",
    "AnswerStore", "CountdownController", "Interval", "SubmissionCoordinator", "ResultsScreen",
    "format_time", "urgency",
]
