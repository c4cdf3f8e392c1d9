"""
errors.py — Exceptions raised by the engine and the storage collaborator.

Race outcomes (DNS/DNF/DSQ) are never exceptions; they end up in a ResultRow.
"""

from __future__ import annotations

from typing import Optional


class TimingError(Exception):
    """Base class for every error surfaced by ardfcore."""


class InvalidCourseDefinition(TimingError):
    """The category's control-point list cannot be turned into a course."""

    def __init__(self, category_id: Optional[int], problem: str):
        self.category_id = category_id
        self.problem = problem
        super().__init__(f"Category {category_id}: {problem}")


class MalformedPunch(TimingError):
    """A punch record lacks a field its record type requires."""

    def __init__(self, punch, problem: str):
        self.punch = punch
        self.problem = problem
        super().__init__(f"Punch {punch.id}: {problem}")


class AmbiguousCardAssignment(TimingError):
    """A readout's card number matches zero or several competitors."""

    def __init__(self, si_number: int, event_id: int, competitor_ids: list[int]):
        self.si_number = si_number
        self.event_id = event_id
        self.competitor_ids = competitor_ids
        if competitor_ids:
            what = f"{len(competitor_ids)} competitors ({competitor_ids})"
        else:
            what = "no competitor"
        super().__init__(f"SI card {si_number} in event {event_id} matches {what}")


class DuplicateSICard(TimingError):
    def __init__(self, si_number: int, event_id: int):
        self.si_number = si_number
        self.event_id = event_id
        super().__init__(f"SI card {si_number} is already used in event {event_id}")
