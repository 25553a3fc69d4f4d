# quiz_client.py
# -----------------------------------------------------------------------------
# HTTP collaborators for the attempt and results screens.
# create_client_deps(base_url, course_id) -> dict of async callables matching the
# `deps` expected by SubmissionCoordinator / ResultsScreen. Blocking requests calls
# run through asyncio.to_thread so the countdown keeps ticking during I/O.
# -----------------------------------------------------------------------------

import asyncio
import os
from typing import Any, Callable, Dict, List, Optional

import requests


class QuizApiError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def create_client_deps(base_url: str, course_id: Any, session: Optional[requests.Session] = None,
                       timeout: Optional[float] = None) -> Dict[str, Any]:
    http = session or requests.Session()
    root = f"{(base_url or '').rstrip('/')}/{course_id}"
    TIMEOUT = float(timeout or os.getenv("QUIZ_CLIENT_TIMEOUT") or 15)

    def _json(r: requests.Response) -> Dict[str, Any]:
        try:
            data = r.json()
        except ValueError:
            r.raise_for_status()
            raise QuizApiError("invalid JSON response", r.status_code)
        if not r.ok or not isinstance(data, dict) or not data.get("ok"):
            err = data.get("error") if isinstance(data, dict) else None
            raise QuizApiError(err or f"HTTP {r.status_code}", r.status_code)
        return data

    def _get(path: str) -> Dict[str, Any]:
        return _json(http.get(root + path, timeout=TIMEOUT))

    def _post(path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return _json(http.post(root + path, json=body, timeout=TIMEOUT))

    async def fetch_preview(quiz_id: Any) -> Dict[str, Any]:
        data = await asyncio.to_thread(_get, f"/quiz/{quiz_id}/preview")
        return data["quiz"]

    async def submit_attempt(quiz_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = {"attempt_token": payload.get("attempt_token"), "answers": payload.get("answers") or []}
        data = await asyncio.to_thread(_post, f"/quiz/{quiz_id}/submit", body)
        return data["attempt"]

    async def fetch_results(quiz_id: Any) -> Dict[str, Any]:
        data = await asyncio.to_thread(_get, f"/quiz/{quiz_id}/results")
        return {k: v for k, v in data.items() if k != "ok"}

    async def list_modules() -> List[Dict[str, Any]]:
        data = await asyncio.to_thread(_get, "/modules")
        return data.get("modules") or []

    async def list_lessons(module_id: Any) -> List[Dict[str, Any]]:
        data = await asyncio.to_thread(_get, f"/module/{module_id}/lessons")
        return data.get("lessons") or []

    def activity_reporter(quiz_id: Any, attempt_token: Optional[str] = None) -> Callable[[str], Any]:
        """report(kind) posts in the background; failures are printed, never raised."""
        def _done(fut) -> None:
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                print(f"[quiz] activity report failed: {exc}")

        def report(kind: str) -> "asyncio.Future":
            loop = asyncio.get_running_loop()
            body = {"event": kind, "attempt_token": attempt_token}
            fut = loop.run_in_executor(None, _post, f"/quiz/{quiz_id}/activity", body)
            fut.add_done_callback(_done)
            return fut

        return report

    return {
        "fetch_preview": fetch_preview,
        "submit_attempt": submit_attempt,
        "fetch_results": fetch_results,
        "list_modules": list_modules,
        "list_lessons": list_lessons,
        "activity_reporter": activity_reporter,
    }


__all__ = ["create_client_deps", "QuizApiError"]
