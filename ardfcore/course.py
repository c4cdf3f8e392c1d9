"""
course.py — Course definition derived from a category's control points.

The ordered point list is split into segments at each separator; the
separator closes the segment it ends. Inside a segment, non-beacon points
must be visited in order and beacons in any order.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ardfcore.errors import InvalidCourseDefinition
from ardfcore.models import Category, ControlPointSpec, ScoringMode

logger = logging.getLogger("ardftiming.course")


class Segment(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    required: tuple[int, ...] = ()
    optional: frozenset[int] = frozenset()


class CourseDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    category_id: Optional[int] = None
    segments: tuple[Segment, ...]
    points: dict[int, int] = {}
    scoring_mode: ScoringMode = ScoringMode.TIME
    time_limit: Optional[int] = None
    version: str = ""

    @property
    def last_segment(self) -> int:
        return len(self.segments) - 1

    @property
    def required_codes(self) -> list[tuple[int, int]]:
        """All required codes in course order as (segment index, code)."""
        return [(s.index, code) for s in self.segments for code in s.required]

    def segment_of(self, code: int) -> Optional[int]:
        for seg in self.segments:
            if code in seg.optional or code in seg.required:
                return seg.index
        return None


def course_version(points: list[ControlPointSpec], scoring_mode: ScoringMode,
                   time_limit: Optional[int]) -> str:
    """Stable fingerprint of everything the validator reads from a category."""
    h = hashlib.sha1()
    h.update(f"{scoring_mode.value}|{time_limit}".encode())
    for p in sorted(points, key=lambda p: p.order):
        h.update(f"|{p.order}:{p.code}:{int(p.beacon)}:{int(p.separator)}:{p.points}".encode())
    return h.hexdigest()


def _check_points(category_id: Optional[int], points: list[ControlPointSpec]) -> None:
    if not points:
        raise InvalidCourseDefinition(category_id, "no control points")

    orders = [p.order for p in points]
    if len(set(orders)) != len(orders):
        raise InvalidCourseDefinition(category_id, "duplicate order index")

    codes = [p.code for p in points]
    for code in codes:
        if code <= 0:
            raise InvalidCourseDefinition(category_id, f"invalid station code {code!r}")
    dupes = sorted({c for c in codes if codes.count(c) > 1})
    if dupes:
        raise InvalidCourseDefinition(category_id, f"duplicate station code(s) {dupes}")

    if points[0].separator:
        raise InvalidCourseDefinition(category_id, "separator cannot be the first point")
    if points[-1].separator:
        raise InvalidCourseDefinition(category_id, "separator cannot be the last point")


def build_course(points: list[ControlPointSpec],
                 scoring_mode: ScoringMode = ScoringMode.TIME,
                 time_limit: Optional[int] = None,
                 category_id: Optional[int] = None) -> CourseDefinition:
    """Validate the point list and partition it into segments.

    Raises InvalidCourseDefinition before any competitor is looked at.
    """
    ordered = sorted(points, key=lambda p: p.order)
    _check_points(category_id, ordered)

    segments: list[Segment] = []
    required: list[int] = []
    optional: set[int] = set()

    for p in ordered:
        # A separator is always required, even if also flagged as beacon.
        if p.beacon and not p.separator:
            optional.add(p.code)
        else:
            required.append(p.code)
        if p.separator:
            segments.append(Segment(index=len(segments), required=tuple(required),
                                    optional=frozenset(optional)))
            required, optional = [], set()

    segments.append(Segment(index=len(segments), required=tuple(required),
                            optional=frozenset(optional)))

    course = CourseDefinition(
        category_id=category_id,
        segments=tuple(segments),
        points={p.code: p.points for p in ordered},
        scoring_mode=scoring_mode,
        time_limit=time_limit,
        version=course_version(ordered, scoring_mode, time_limit),
    )
    logger.debug("Course for category %s: %d segment(s), version %s",
                 category_id, len(segments), course.version[:8])
    return course


def course_from_category(category: Category) -> CourseDefinition:
    return build_course(list(category.control_points), category.scoring_mode,
                        category.time_limit, category.id)
