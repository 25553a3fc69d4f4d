# progression.py
# -----------------------------------------------------------------------------
# "Continue" target after a quiz: first lesson of the NEXT module, else end of course.
# - Modules and lessons are order-sorted (order, then title)
# - Last module, unknown module, or an empty next module -> end of course
# - Lookup failures degrade to end of course
# -----------------------------------------------------------------------------

import inspect
from typing import Any, Callable, Dict, Iterable, List, Optional

LESSON = "lesson"
END_OF_COURSE = "end_of_course"


def lesson_target(module_id: Any, lesson_id: Any, module_title: Optional[str]) -> Dict[str, Any]:
    return {"kind": LESSON, "module_id": module_id, "lesson_id": lesson_id, "module_title": module_title}


def end_of_course() -> Dict[str, Any]:
    return {"kind": END_OF_COURSE}


def _order_key(item: Dict[str, Any]):
    order = item.get("order")
    try:
        order_val = int(order)
    except (TypeError, ValueError):
        order_val = 0
    return (order_val, item.get("title") or "")


def sort_by_order(items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted([i for i in (items or []) if isinstance(i, dict)], key=_order_key)


def module_id_of(module: Dict[str, Any]) -> Optional[str]:
    for k in ("id", "module_id", "uid"):
        v = module.get(k)
        if v is not None and v != "":
            return str(v)
    return None


def lesson_id_of(lesson: Dict[str, Any]) -> Optional[str]:
    for k in ("lesson_uid", "uid", "id"):
        v = lesson.get(k)
        if v is not None and v != "":
            return str(v)
    return None


def next_module(modules: Iterable[Dict[str, Any]], module_id: Any) -> Optional[Dict[str, Any]]:
    ordered = sort_by_order(modules)
    ids = [module_id_of(m) for m in ordered]
    try:
        idx = ids.index(str(module_id))
    except ValueError:
        return None
    if idx + 1 >= len(ordered):
        return None
    return ordered[idx + 1]


def _target_for(module: Dict[str, Any], lessons: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    for lesson in sort_by_order(lessons):
        uid = lesson_id_of(lesson)
        if uid:
            return lesson_target(module_id_of(module), uid, module.get("title"))
    # empty next module: stop here rather than skipping ahead
    return end_of_course()


def resolve_progression(modules: Iterable[Dict[str, Any]], module_id: Any,
                        list_lessons: Callable[[str], Iterable[Dict[str, Any]]]) -> Dict[str, Any]:
    try:
        nxt = next_module(modules, module_id)
        if nxt is None:
            return end_of_course()
        return _target_for(nxt, list_lessons(module_id_of(nxt)) or [])
    except Exception as e:
        print(f"[progression] lookup failed, ending course: {e}")
        return end_of_course()


async def resolve_progression_async(list_modules: Callable[[], Any], module_id: Any,
                                    list_lessons: Callable[[str], Any]) -> Dict[str, Any]:
    """Same resolution with awaitable collaborators (the attempt screen's HTTP deps)."""
    try:
        modules = list_modules()
        if inspect.isawaitable(modules):
            modules = await modules
        nxt = next_module(modules or [], module_id)
        if nxt is None:
            return end_of_course()
        lessons = list_lessons(module_id_of(nxt))
        if inspect.isawaitable(lessons):
            lessons = await lessons
        return _target_for(nxt, lessons or [])
    except Exception as e:
        print(f"[progression] lookup failed, ending course: {e}")
        return end_of_course()


__all__ = [
    "LESSON", "END_OF_COURSE", "lesson_target", "end_of_course", "sort_by_order",
    "module_id_of", "lesson_id_of", "next_module", "resolve_progression", "resolve_progression_async",
]
