"""
Nudge -- Schedule Registry

Named reminder schedules.  Each schedule is an ordered list of slots; a
slot's ``offset`` is signed days relative to the invoice due date, or
None for the initial email (sent manually, never by the daily batch).

This registry is the single source of truth for reminder offsets.  The
``offset`` copied into a template instance is informational only.

Usage:
    from nudge.schedules import get_schedule, slot_offset
    get_schedule("standard").name           # 'Standard (3 reminders)'
    slot_offset("standard", "reminder2")    # -3
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE_KEY = "standard"
INITIAL_SLOT_ID = "initial"


@dataclass(frozen=True)
class ScheduleSlot:
    id: str
    label: str
    offset: Optional[int]

    @property
    def is_reminder(self) -> bool:
        return self.offset is not None


@dataclass(frozen=True)
class Schedule:
    key: str
    name: str
    description: str
    slots: tuple[ScheduleSlot, ...]

    @property
    def reminder_slots(self) -> tuple[ScheduleSlot, ...]:
        """Slots the batch can fire, in ascending offset order."""
        return tuple(s for s in self.slots if s.is_reminder)

    def find_slot(self, slot_id: str) -> Optional[ScheduleSlot]:
        for slot in self.slots:
            if slot.id == slot_id:
                return slot
        return None


_INITIAL = ScheduleSlot(INITIAL_SLOT_ID, "Initial invoice – Sent immediately", None)
_SEVEN_BEFORE = ScheduleSlot("reminder1", "Reminder 1 – 7 days before due date", -7)

REMINDER_SCHEDULES: dict[str, Schedule] = {
    "light": Schedule(
        key="light",
        name="Light touch (2 reminders)",
        description="Gentle approach with minimal follow-ups",
        slots=(
            _INITIAL,
            _SEVEN_BEFORE,
            ScheduleSlot("reminder2", "Reminder 2 – On due date", 0),
        ),
    ),
    "standard": Schedule(
        key="standard",
        name="Standard (3 reminders)",
        description="Balanced approach with regular follow-ups",
        slots=(
            _INITIAL,
            _SEVEN_BEFORE,
            ScheduleSlot("reminder2", "Reminder 2 – 3 days before due date", -3),
            ScheduleSlot("reminder3", "Reminder 3 – On due date", 0),
        ),
    ),
    "persistent": Schedule(
        key="persistent",
        name="Persistent (4 reminders)",
        description="Proactive approach with consistent follow-ups",
        slots=(
            _INITIAL,
            _SEVEN_BEFORE,
            ScheduleSlot("reminder2", "Reminder 2 – 3 days before due date", -3),
            ScheduleSlot("reminder3", "Reminder 3 – On due date", 0),
            ScheduleSlot("reminder4", "Reminder 4 – 7 days after due date", 7),
        ),
    ),
}


def is_known_schedule(schedule_key: str) -> bool:
    return schedule_key in REMINDER_SCHEDULES


def get_schedule(schedule_key: str) -> Schedule:
    """Return the named schedule, falling back to "standard" if unknown."""
    schedule = REMINDER_SCHEDULES.get(schedule_key)
    if schedule is None:
        logger.warning("Unknown schedule %r, falling back to %s", schedule_key, DEFAULT_SCHEDULE_KEY)
        return REMINDER_SCHEDULES[DEFAULT_SCHEDULE_KEY]
    return schedule


def reminder_slots(schedule_key: str) -> tuple[ScheduleSlot, ...]:
    """The non-initial slots of a schedule, in firing order."""
    return get_schedule(schedule_key).reminder_slots


def slot_offset(schedule_key: str, slot_id: str) -> Optional[int]:
    """Registry offset for one slot, or None if the schedule lacks it.

    >>> slot_offset("light", "reminder2")
    0
    >>> slot_offset("light", "reminder3") is None
    True
    """
    slot = get_schedule(schedule_key).find_slot(slot_id)
    return slot.offset if slot else None
