# services/evaluator.py
"""
Slot evaluation and the edge-trigger decision.

evaluate() answers "how many slots are open for what this subscription watches";
decide() turns that answer plus the previous run into dispatch / record actions.
Both are pure: no I/O, no clock.
"""
from typing import Iterable, List, NamedTuple, Optional

from core.errors import EvaluationError
from models.schemas import CourseData, SlotEvent, Subscription


class Decision(NamedTuple):
    dispatch: bool
    notification_sent: bool


def _candidates(course: CourseData) -> List:
    """Sections followed by every nested meeting; a criterion may name either."""
    sections = list(course.sections or [])
    meetings = [meeting for section in sections for meeting in (section.meetings or [])]
    return [
        c for c in sections + meetings
        if c.id and c.id.strip() and c.available is not None and c.capacity is not None
    ]


def _best_section(sections: Iterable) -> SlotEvent:
    best = SlotEvent(available_slots=0, total_slots=0)
    for section in sections:
        available = section.available or 0
        if available > best.available_slots:
            best = SlotEvent(available_slots=available, total_slots=section.capacity or 0)
    return best


def evaluate(subscription: Subscription, course: Optional[CourseData]) -> SlotEvent:
    """
    Compute open/total slots for a subscription.

    - no section criterion: the most open section of the course (max, never a sum)
    - criterion: the section or meeting whose id matches, ignoring case and surrounding
      whitespace; no match reads as closed (0/0)

    Raises EvaluationError when course data is missing, since "unknown" must not look like "full".
    """
    if course is None or course.sections is None:
        raise EvaluationError(
            f"Insufficient course data for {subscription.institution_key}/"
            f"{subscription.term_key}/{subscription.course_key}"
        )

    key = (subscription.section_key or "").strip().lower()
    if not key:
        return _best_section(course.sections)

    for candidate in _candidates(course):
        if candidate.id.strip().lower() == key:
            return SlotEvent(available_slots=candidate.available, total_slots=candidate.capacity)
    return SlotEvent(available_slots=0, total_slots=0)


def decide(previous_sent: Optional[bool], available_slots: int) -> Decision:
    """
    Edge-triggered policy: one message per open window.

    previous sent | open | dispatch | record sent
    no            | no   | no       | False
    no            | yes  | yes      | True
    yes           | yes  | no       | True
    yes           | no   | no       | False (re-arms for the next opening)
    """
    is_open = (available_slots or 0) > 0
    if not is_open:
        return Decision(dispatch=False, notification_sent=False)
    if previous_sent:
        return Decision(dispatch=False, notification_sent=True)
    return Decision(dispatch=True, notification_sent=True)
