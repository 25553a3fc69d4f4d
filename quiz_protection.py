# quiz_protection.py
# -----------------------------------------------------------------------------
# Secure quiz mode (best-effort deterrent, not proctoring).
# - Suppresses context menu, copy, selection/drag outside inputs and a shortcut set
# - Warns on tab-visibility loss and on devtools opening (window-size heuristic)
# - Counts events for proctoring flags; optional fire-and-forget server report
# Never reads or writes answers. deactivate() removes every listener and the poll.
# -----------------------------------------------------------------------------

import os
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from quiz_attempt import Interval

Event = Dict[str, Any]
Listener = Callable[[Event], None]


class EventTarget:
    """Document-like dispatcher. Listeners flag `default_prevented` on the event dict."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def add_listener(self, kind: str, fn: Listener) -> None:
        self._listeners.setdefault(kind, []).append(fn)

    def remove_listener(self, kind: str, fn: Listener) -> None:
        fns = self._listeners.get(kind) or []
        if fn in fns:
            fns.remove(fn)
        if not fns:
            self._listeners.pop(kind, None)

    def listener_count(self, kind: Optional[str] = None) -> int:
        if kind is not None:
            return len(self._listeners.get(kind) or [])
        return sum(len(v) for v in self._listeners.values())

    def dispatch(self, event: Event) -> Event:
        ev = dict(event)
        ev.setdefault("default_prevented", False)
        for fn in list(self._listeners.get(ev.get("type"), [])):
            fn(ev)
        return ev


# kind -> (title, description)
_MESSAGES = {
    "copy": ("Action not allowed", "Copying quiz content is disabled."),
    "context_menu": ("Action not allowed", "Copying quiz content is disabled."),
    "view_source": ("Action not allowed", "Viewing the page source is disabled during the quiz."),
    "devtools": ("Action not allowed", "Developer tools are disabled during the quiz."),
    "print": ("Action not allowed", "Printing the quiz is disabled."),
    "save": ("Action not allowed", "Saving the quiz content is disabled."),
    "screenshot": ("Screenshots not allowed", "Capturing the quiz is disabled."),
    "tab_switch": ("Warning", "Leaving the quiz tab was detected. This activity is recorded."),
    "devtools_open": ("Security warning", "Developer tools appear to be open. Please close them to continue."),
}

_EDITABLE_TAGS = ("INPUT", "TEXTAREA")

# thresholds for proctoring flags (counts over one attempt)
WINDOW_SWITCH_LIMIT = 10
COPY_ATTEMPT_LIMIT = 5


def blocked_shortcut(event: Event) -> Optional[str]:
    """Returns the blocked action for a keydown event, or None."""
    key = str(event.get("key") or "")
    mod = bool(event.get("ctrl") or event.get("meta"))
    shift = bool(event.get("shift"))

    if key == "F12":
        return "devtools"
    if key == "PrintScreen":
        return "screenshot"
    if not mod:
        return None
    if shift and key.upper() in ("I", "J", "C"):
        return "devtools"
    if shift:
        return None
    return {"c": "copy", "u": "view_source", "p": "print", "s": "save"}.get(key.lower())


class TamperMonitor:
    """
    target:         EventTarget-like (add_listener/remove_listener)
    notify:         notify(level, title, description)
    window_metrics: () -> {outer_width, inner_width, outer_height, inner_height}; no poll when None
    report:         report(kind) for each recorded event (server logging)
    """

    def __init__(self, target: Any, notify: Callable[..., Any],
                 window_metrics: Optional[Callable[[], Dict[str, int]]] = None,
                 report: Optional[Callable[[str], Any]] = None,
                 threshold: Optional[int] = None, poll_seconds: float = 1.0):
        self.target = target
        self._notify = notify
        self._window_metrics = window_metrics
        self._report = report
        self.threshold = int(threshold if threshold is not None else (os.getenv("QUIZ_DEVTOOLS_THRESHOLD_PX") or 160))
        self.active = False
        self.devtools_open = False
        self.counts: Counter = Counter()
        self._poller = Interval(self.check_devtools, poll_seconds)
        self._handlers: Dict[str, Listener] = {
            "contextmenu": self._on_context_menu,
            "copy": self._on_copy,
            "keydown": self._on_keydown,
            "visibilitychange": self._on_visibility_change,
            "selectstart": self._on_select_start,
            "dragstart": self._on_drag_start,
        }

    # ---- lifecycle -----------------------------------------------------------
    def activate(self) -> None:
        if self.active:
            return
        for kind, fn in self._handlers.items():
            self.target.add_listener(kind, fn)
        self.active = True
        if self._window_metrics is not None:
            self._poller.start()
        self._notify("info", "Secure quiz mode on", "Copying, printing and developer tools are disabled during this quiz.")

    def deactivate(self) -> None:
        if not self.active:
            return
        for kind, fn in self._handlers.items():
            self.target.remove_listener(kind, fn)
        self._poller.cancel()
        self.active = False
        self.devtools_open = False

    @property
    def polling(self) -> bool:
        return self._poller.active

    # ---- handlers ------------------------------------------------------------
    def _block(self, event: Event, kind: str) -> None:
        event["default_prevented"] = True
        self._warn(kind)
        self._record(kind)

    def _warn(self, kind: str) -> None:
        title, description = _MESSAGES[kind]
        level = "error" if kind in ("screenshot", "devtools_open") else "warning"
        self._notify(level, title, description)

    def _record(self, kind: str) -> None:
        self.counts[kind] += 1
        if self._report is not None:
            self._report(kind)

    def _on_context_menu(self, event: Event) -> None:
        self._block(event, "context_menu")

    def _on_copy(self, event: Event) -> None:
        self._block(event, "copy")

    def _on_keydown(self, event: Event) -> None:
        kind = blocked_shortcut(event)
        if kind:
            self._block(event, kind)

    def _on_visibility_change(self, event: Event) -> None:
        if event.get("hidden"):
            self._warn("tab_switch")
            self._record("tab_switch")

    def _on_select_start(self, event: Event) -> None:
        if str(event.get("target_tag") or "").upper() in _EDITABLE_TAGS:
            return
        event["default_prevented"] = True

    def _on_drag_start(self, event: Event) -> None:
        event["default_prevented"] = True

    # ---- devtools heuristic --------------------------------------------------
    def check_devtools(self) -> bool:
        if not self.active or self._window_metrics is None:
            return False
        m = self._window_metrics() or {}
        width_gap = int(m.get("outer_width") or 0) - int(m.get("inner_width") or 0)
        height_gap = int(m.get("outer_height") or 0) - int(m.get("inner_height") or 0)
        is_open = width_gap > self.threshold or height_gap > self.threshold
        if is_open and not self.devtools_open:
            self._warn("devtools_open")
            self._record("devtools_open")
        self.devtools_open = is_open
        return is_open

    # ---- proctoring summary --------------------------------------------------
    def flags(self) -> Dict[str, Any]:
        copy_attempts = self.counts["copy"] + self.counts["context_menu"]
        return {
            "window_switches": self.counts["tab_switch"],
            "copy_attempts": copy_attempts,
            "devtools_opened": self.counts["devtools_open"],
            "flags": {
                "excessive_window_switching": self.counts["tab_switch"] > WINDOW_SWITCH_LIMIT,
                "excessive_copy_attempts": copy_attempts > COPY_ATTEMPT_LIMIT,
                "devtools_detected": self.counts["devtools_open"] > 0,
            },
        }


__all__ = ["EventTarget", "TamperMonitor", "blocked_shortcut", "WINDOW_SWITCH_LIMIT", "COPY_ATTEMPT_LIMIT"]
