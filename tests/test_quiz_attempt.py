import asyncio
import copy
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import quiz_attempt  # noqa: E402
from quiz_attempt import (  # noqa: E402
    CLOSED, COMPLETED, ERROR, IN_PROGRESS, LOADING, SUBMITTING,
    AnswerStore, CountdownController, Interval, LoadFailure, QuizEngineError, ResultsScreen,
    SubmissionCoordinator, SubmissionFailure, format_time, urgency,
)

PREVIEW = {
    "id": "qz-1",
    "title": "Module 1 check",
    "module_id": "M1",
    "time_limit_minutes": 1,
    "passing_score": 70,
    "attempt_token": "tok-1",
    "questions": [
        {"id": "Q1", "type": "SINGLE", "options": [{"id": "a", "text": "A"}, {"id": "b", "text": "B"}]},
        {"id": "Q2", "type": "MULTIPLE", "options": [{"id": "x", "text": "X"}, {"id": "y", "text": "Y"}, {"id": "z", "text": "Z"}]},
        {"id": "Q3", "type": "TRUEFALSE", "options": [{"id": "t", "text": "True"}, {"id": "f", "text": "False"}]},
    ],
}


class FakeBackend:
    def __init__(self, preview=None, fail_submits=0, hold_submit=False):
        self.preview = copy.deepcopy(preview or PREVIEW)
        self.fail_submits = fail_submits
        self.release = asyncio.Event() if hold_submit else None
        self.submits = []
        self.notices = []
        self.completed = []

    async def fetch_preview(self, quiz_id):
        return copy.deepcopy(self.preview)

    async def submit_attempt(self, quiz_id, payload):
        self.submits.append(copy.deepcopy(payload))
        if self.release is not None:
            await self.release.wait()
        if self.fail_submits:
            self.fail_submits -= 1
            raise ConnectionError("network down")
        return {"id": len(self.submits), "quiz_id": quiz_id, "user_id": 7,
                "score": 1, "max_score": 3, "percentage": 33, "passed": False,
                "answers": payload["answers"]}

    def notify(self, level, title, description=""):
        self.notices.append((level, title))

    def on_completed(self, attempt, history):
        self.completed.append((attempt, history))

    def deps(self, **extra):
        d = {
            "fetch_preview": self.fetch_preview,
            "submit_attempt": self.submit_attempt,
            "notify": self.notify,
            "on_completed": self.on_completed,
            "confirm": lambda unanswered: True,
        }
        d.update(extra)
        return d


def _answer_all(c):
    c.set_answer("Q1", "a")
    c.set_answer("Q2", "x")
    c.set_answer("Q3", "t")


# ------------------------------- AnswerStore ----------------------------------
def test_single_choice_replaces_selection():
    store = AnswerStore(PREVIEW["questions"])
    store.set_answer("Q1", "a")
    assert store.set_answer("Q1", "b") == {"Q1": ["b"]}
    assert store.set_answer("Q1", "b") == {"Q1": ["b"]}
    store.set_answer("Q3", "t")
    assert store.selected("Q3") == ["t"]


def test_multiple_choice_toggles():
    store = AnswerStore(PREVIEW["questions"])
    store.set_answer("Q2", "x")
    store.set_answer("Q2", "y")
    assert sorted(store.selected("Q2")) == ["x", "y"]
    store.set_answer("Q2", "x")
    assert store.selected("Q2") == ["y"]


def test_toggle_twice_restores_state():
    store = AnswerStore(PREVIEW["questions"])
    store.set_answer("Q2", "z")
    before = store.answers()
    store.set_answer("Q2", "y")
    store.set_answer("Q2", "y")
    assert store.answers() == before

    empty = AnswerStore(PREVIEW["questions"])
    empty.set_answer("Q2", "x")
    empty.set_answer("Q2", "x")
    assert empty.answers() == {}
    assert empty.unanswered() == ["Q1", "Q2", "Q3"]


def test_cardinality_holds_under_any_click_sequence():
    store = AnswerStore(PREVIEW["questions"])
    for oid in ["a", "b", "a", "a", "b"]:
        store.set_answer("Q1", oid)
        assert len(store.selected("Q1")) <= 1
    for oid in ["x", "y", "z", "y"]:
        store.set_answer("Q2", oid)
    assert sorted(store.selected("Q2")) == ["x", "z"]


def test_unknown_option_or_question_rejected():
    store = AnswerStore(PREVIEW["questions"])
    with pytest.raises(ValueError):
        store.set_answer("Q1", "nope")
    with pytest.raises(ValueError):
        store.set_answer("Q9", "a")


def test_loaded_type_wins_over_caller_type():
    store = AnswerStore(PREVIEW["questions"])
    store.set_answer("Q1", "a")
    with pytest.raises(ValueError):
        store.set_answer("Q1", "b", "MULTIPLE")
    assert store.selected("Q1") == ["a"]

    store.set_answer("Q1", "b", "single_choice")
    assert store.selected("Q1") == ["b"]
    store.set_answer("Q3", "t", "TRUE_FALSE")
    store.set_answer("Q3", "f", "TRUEFALSE")
    assert store.selected("Q3") == ["f"]


def test_caller_type_used_only_for_unloaded_questions():
    store = AnswerStore()
    store.set_answer("Q7", "a", "MULTIPLE")
    store.set_answer("Q7", "b", "MULTIPLE")
    assert sorted(store.selected("Q7")) == ["a", "b"]
    store.set_answer("Q8", "a", "SINGLE")
    store.set_answer("Q8", "b", "SINGLE")
    assert store.selected("Q8") == ["b"]


def test_payload_and_unanswered():
    store = AnswerStore(PREVIEW["questions"])
    store.set_answer("Q1", "a")
    assert store.unanswered() == ["Q2", "Q3"]
    assert store.payload() == [{"question_id": "Q1", "selected_option_ids": ["a"]}]


# ------------------------------- Countdown ------------------------------------
def test_countdown_fires_expired_exactly_once():
    fired = []
    cd = CountdownController(1, lambda: fired.append(True))
    results = [cd.tick() for _ in range(60)]
    assert results.count(True) == 1 and results[-1] is True
    assert cd.remaining == 0 and cd.expired
    for _ in range(5):
        assert cd.tick() is False
    assert fired == [True]


def test_countdown_without_limit_is_inert():
    cd = CountdownController(None, lambda: pytest.fail("must not expire"))
    assert cd.timed is False
    for _ in range(10):
        assert cd.tick() is False
    assert cd.remaining is None


def test_stopped_countdown_ignores_ticks():
    cd = CountdownController(1)
    cd.tick()
    cd.stop()
    cd.tick()
    assert cd.remaining == 59
    cd.resume()
    cd.tick()
    assert cd.remaining == 58


def test_time_formatting_and_urgency():
    assert format_time(600) == "10:00"
    assert format_time(59) == "0:59"
    assert format_time(None) == ""
    assert urgency(600) == "normal"
    assert urgency(299) == "warning"
    assert urgency(59) == "critical"


# ------------------------------- Coordinator ----------------------------------
def test_load_then_submit_completes_and_updates_history():
    async def scenario():
        backend = FakeBackend()
        c = SubmissionCoordinator("qz-1", backend.deps())
        assert c.state == LOADING
        assert await c.load() is True
        assert c.state == IN_PROGRESS
        assert c.remaining_seconds == 60 and c.time_display == "1:00"
        _answer_all(c)
        attempt = await c.submit()
        return backend, c, attempt

    backend, c, attempt = asyncio.run(scenario())
    assert c.state == COMPLETED
    assert attempt["id"] == 1
    assert backend.submits[0]["attempt_token"] == "tok-1"
    assert len(backend.submits[0]["answers"]) == 3
    assert c.history["total_attempts"] == 1
    assert backend.completed and backend.completed[0][0] is attempt


def test_unanswered_requires_confirmation():
    async def scenario(confirm):
        backend = FakeBackend()
        c = SubmissionCoordinator("qz-1", backend.deps(confirm=confirm))
        await c.load()
        c.set_answer("Q1", "a")
        result = await c.submit()
        c.close()
        return backend, c, result

    asked = []

    def decline(n):
        asked.append(n)
        return False

    backend, c, result = asyncio.run(scenario(decline))
    assert asked == [2]
    assert result is None and backend.submits == []
    assert c.state == CLOSED

    async def accept(n):
        return True

    backend, c, result = asyncio.run(scenario(accept))
    assert result is not None and len(backend.submits) == 1


def test_timer_expiry_submits_without_confirmation():
    async def scenario():
        backend = FakeBackend()
        c = SubmissionCoordinator("qz-1", backend.deps(confirm=lambda n: pytest.fail("no prompt on timeout")),
                                  tick_seconds=3600)
        await c.load()
        c.set_answer("Q1", "a")
        for _ in range(60):
            c.countdown.tick()
        await c.auto_submit
        return backend, c

    backend, c = asyncio.run(scenario())
    assert c.state == COMPLETED
    assert len(backend.submits) == 1
    assert ("warning", "Time is up") in backend.notices


def test_expiry_and_manual_submit_race_sends_once():
    async def scenario():
        backend = FakeBackend(hold_submit=True)
        c = SubmissionCoordinator("qz-1", backend.deps(), tick_seconds=3600)
        await c.load()
        _answer_all(c)
        for _ in range(60):
            c.countdown.tick()  # schedules the timeout submission
        manual = asyncio.create_task(c.submit())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        backend.release.set()
        results = await asyncio.gather(manual, c.auto_submit)
        return backend, c, results

    backend, c, results = asyncio.run(scenario())
    assert len(backend.submits) == 1
    assert sum(1 for r in results if r is not None) == 1
    assert c.state == COMPLETED
    assert c.history["total_attempts"] == 1


def test_double_click_submit_sends_once():
    async def scenario():
        backend = FakeBackend(hold_submit=True)
        c = SubmissionCoordinator("qz-1", backend.deps())
        await c.load()
        _answer_all(c)
        first = asyncio.create_task(c.submit())
        second = asyncio.create_task(c.submit())
        await asyncio.sleep(0)
        backend.release.set()
        return backend, await asyncio.gather(first, second)

    backend, results = asyncio.run(scenario())
    assert len(backend.submits) == 1
    assert results[1] is None


def test_failed_submission_keeps_answers_and_allows_retry():
    async def scenario():
        backend = FakeBackend(fail_submits=1)
        c = SubmissionCoordinator("qz-1", backend.deps())
        await c.load()
        _answer_all(c)
        before = c.answers.answers()
        assert await c.submit() is None
        snapshot = (c.state, c.answers.answers() == before, c.error, c.countdown.stopped)
        attempt = await c.submit()
        return backend, c, snapshot, attempt

    backend, c, snapshot, attempt = asyncio.run(scenario())
    state, kept, error, stopped = snapshot
    assert state == IN_PROGRESS and kept
    assert isinstance(error, SubmissionFailure)
    assert stopped is False
    assert ("error", "Submission failed") in backend.notices
    assert attempt is not None and c.state == COMPLETED
    assert backend.submits[0]["answers"] == backend.submits[1]["answers"]


def test_load_failure_is_terminal():
    async def scenario():
        async def broken(quiz_id):
            raise ConnectionError("offline")

        backend = FakeBackend()
        c = SubmissionCoordinator("qz-1", backend.deps(fetch_preview=broken))
        ok = await c.load()
        again = await c.load()
        return backend, c, ok, again

    backend, c, ok, again = asyncio.run(scenario())
    assert ok is False and again is False
    assert c.state == ERROR
    assert isinstance(c.error, LoadFailure)
    assert backend.notices[0][0] == "error"


def test_close_during_loading_discards_preview():
    async def scenario():
        gate = asyncio.Event()

        async def slow(quiz_id):
            await gate.wait()
            return copy.deepcopy(PREVIEW)

        backend = FakeBackend()
        c = SubmissionCoordinator("qz-1", backend.deps(fetch_preview=slow))
        task = asyncio.create_task(c.load())
        await asyncio.sleep(0)
        c.close()
        gate.set()
        return c, await task

    c, loaded = asyncio.run(scenario())
    assert loaded is False
    assert c.state == CLOSED and c.answers is None


def test_close_stops_timer_and_monitor():
    class FakeMonitor:
        def __init__(self):
            self.active = False

        def activate(self):
            self.active = True

        def deactivate(self):
            self.active = False

    async def scenario():
        monitor = FakeMonitor()
        backend = FakeBackend()
        c = SubmissionCoordinator("qz-1", backend.deps(monitor=monitor), tick_seconds=0.01)
        await c.load()
        was_active = monitor.active
        await asyncio.sleep(0.05)
        c.close()
        remaining = c.remaining_seconds
        await asyncio.sleep(0.05)
        return c, monitor, was_active, remaining

    c, monitor, was_active, remaining = asyncio.run(scenario())
    assert was_active is True and monitor.active is False
    assert c.state == CLOSED and c.answers is None
    assert remaining < 60
    assert c.remaining_seconds == remaining


def test_interval_drives_auto_submit():
    async def scenario():
        backend = FakeBackend()
        c = SubmissionCoordinator("qz-1", backend.deps(), tick_seconds=0.001)
        await c.load()
        c.set_answer("Q1", "b")

        async def until_done():
            while c.state != COMPLETED:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(until_done(), timeout=5)
        return backend, c

    backend, c = asyncio.run(scenario())
    assert len(backend.submits) == 1
    assert c.countdown.expired


def test_untimed_quiz_never_auto_submits():
    async def scenario():
        preview = dict(PREVIEW, time_limit_minutes=None)
        backend = FakeBackend(preview=preview)
        c = SubmissionCoordinator("qz-1", backend.deps(), tick_seconds=0.001)
        await c.load()
        await asyncio.sleep(0.02)
        state = c.state
        c.close()
        return backend, state, c

    backend, state, c = asyncio.run(scenario())
    assert state == IN_PROGRESS
    assert backend.submits == []
    assert c.time_display == ""


def test_close_while_submitting_then_failure_keeps_timer_dead():
    async def scenario():
        backend = FakeBackend(fail_submits=1, hold_submit=True)
        c = SubmissionCoordinator("qz-1", backend.deps(), tick_seconds=0.001)
        await c.load()
        _answer_all(c)
        pending = asyncio.create_task(c.submit())
        await asyncio.sleep(0)
        in_flight = c.state
        c.close()
        remaining = c.remaining_seconds
        backend.release.set()
        result = await pending
        await asyncio.sleep(0.02)
        return backend, c, in_flight, remaining, result

    backend, c, in_flight, remaining, result = asyncio.run(scenario())
    assert in_flight == SUBMITTING
    assert result is None
    assert c.state == CLOSED and c.answers is None
    assert c.countdown.stopped is True
    assert c.remaining_seconds == remaining
    assert ("error", "Submission failed") not in backend.notices
    assert len(backend.submits) == 1


def test_close_while_submitting_then_success_does_not_navigate():
    async def scenario():
        backend = FakeBackend(hold_submit=True)
        c = SubmissionCoordinator("qz-1", backend.deps())
        await c.load()
        _answer_all(c)
        pending = asyncio.create_task(c.submit())
        await asyncio.sleep(0)
        c.close()
        backend.release.set()
        return backend, c, await pending

    backend, c, attempt = asyncio.run(scenario())
    assert attempt is not None and c.attempt is attempt
    assert c.state == CLOSED
    assert backend.completed == []
    assert c.history["total_attempts"] == 1


def test_failed_timeout_submission_locks_answers_and_retries_without_prompt():
    async def scenario():
        backend = FakeBackend(fail_submits=1)
        c = SubmissionCoordinator("qz-1", backend.deps(confirm=lambda n: pytest.fail("no prompt after timeout")),
                                  tick_seconds=3600)
        await c.load()
        c.set_answer("Q1", "a")
        for _ in range(60):
            c.countdown.tick()
        first = await c.auto_submit
        after_failure = (c.state, c.countdown.stopped)
        locked = c.set_answer("Q1", "b")
        attempt = await c.submit()
        return backend, c, first, after_failure, locked, attempt

    backend, c, first, after_failure, locked, attempt = asyncio.run(scenario())
    assert first is None
    assert after_failure == (IN_PROGRESS, True)
    assert locked == {"Q1": ["a"]}
    assert attempt is not None and c.state == COMPLETED
    assert len(backend.submits) == 2
    assert backend.submits[1]["answers"] == [{"question_id": "Q1", "selected_option_ids": ["a"]}]
    assert ("error", "Submission failed") in backend.notices


def test_interval_callback_failure_is_reported(capsys):
    def broken():
        raise RuntimeError("tick exploded")

    async def scenario():
        interval = Interval(broken, 0.001)
        interval.start()
        await asyncio.sleep(0.05)
        return interval

    interval = asyncio.run(scenario())
    assert interval.active is False
    out = capsys.readouterr().out
    assert "[quiz] background task" in out and "tick exploded" in out


def test_auto_submit_callback_failure_is_reported(capsys):
    def on_completed(attempt, history):
        raise RuntimeError("results view unavailable")

    async def scenario():
        backend = FakeBackend()
        c = SubmissionCoordinator("qz-1", backend.deps(on_completed=on_completed), tick_seconds=3600)
        await c.load()
        for _ in range(60):
            c.countdown.tick()
        await asyncio.wait([c.auto_submit])
        return backend, c

    backend, c = asyncio.run(scenario())
    assert c.state == COMPLETED and len(backend.submits) == 1
    assert "results view unavailable" in capsys.readouterr().out


def test_question_navigation_and_progress():
    async def scenario():
        backend = FakeBackend()
        c = SubmissionCoordinator("qz-1", backend.deps())
        before = c.progress
        await c.load()
        return c, before

    c, before = asyncio.run(scenario())
    assert before == {"position": 0, "answered": 0, "total": 0}
    assert c.current_question["id"] == "Q1"
    assert c.previous_question() == 0
    c.next_question()
    c.next_question()
    assert c.next_question() == 2
    assert c.current_question["id"] == "Q3"
    c.set_answer("Q2", "y")
    assert c.progress == {"position": 3, "answered": 1, "total": 3}
    assert c.go_to(1) == 1 and c.answers.answers() == {"Q2": ["y"]}


# ------------------------------- Results screen -------------------------------
def _results(can_retake=True):
    return {
        "quiz": {"id": "qz-1", "module_id": "M1"},
        "history": {"quiz_id": "qz-1", "user_id": 7, "attempts": [], "total_attempts": 1,
                    "best_percentage": 40, "passed": False},
        "attempts_used": 1,
        "attempts_remaining": 2 if can_retake else 0,
        "can_retake": can_retake,
        "last_attempt": None,
    }


def test_results_continue_and_retake():
    async def fetch_results(quiz_id):
        return _results()

    async def list_modules():
        return [{"id": "M2", "title": "Two", "order": 2}, {"id": "M1", "title": "One", "order": 1}]

    async def list_lessons(module_id):
        return [{"id": "L2", "title": "Next up", "order": 1}]

    backend = FakeBackend()
    deps = backend.deps(fetch_results=fetch_results, list_modules=list_modules, list_lessons=list_lessons)
    screen = ResultsScreen("qz-1", deps)

    target = asyncio.run(screen.continue_target())
    assert target == {"kind": "lesson", "module_id": "M2", "lesson_id": "L2", "module_title": "Two"}

    retake = screen.retake()
    assert isinstance(retake, SubmissionCoordinator)
    assert retake.state == LOADING
    assert retake.history["total_attempts"] == 1


def test_retake_refused_when_no_attempts_left():
    async def fetch_results(quiz_id):
        return _results(can_retake=False)

    screen = ResultsScreen("qz-1", FakeBackend().deps(fetch_results=fetch_results))
    asyncio.run(screen.load())
    with pytest.raises(QuizEngineError):
        screen.retake()


def test_results_failure_degrades_continue_to_end_of_course():
    async def fetch_results(quiz_id):
        raise ConnectionError("offline")

    backend = FakeBackend()
    screen = ResultsScreen("qz-1", backend.deps(fetch_results=fetch_results,
                                                list_modules=lambda: [], list_lessons=lambda m: []))
    assert asyncio.run(screen.continue_target()) == {"kind": "end_of_course"}
    assert isinstance(screen.error, LoadFailure)


def test_client_engine_never_imports_grader():
    assert "grading" not in vars(quiz_attempt)
    assert not hasattr(quiz_attempt, "grade")
