"""
validator.py — Sequence validation state machine.

Walks a normalized punch sequence against a CourseDefinition:

    AWAITING_START -> IN_SEGMENT(0) -> ... -> IN_SEGMENT(n) -> AWAITING_FINISH -> FINISHED

Each punch gets a PunchStatus and a reason. Only out-of-order required
controls escalate to DISQUALIFIED (and only in time-based scoring); every
other INVALID punch is recorded and ignored for progress.

In score mode the order is not enforced: every course code is credited the
first time it is punched and FINISH is accepted once started. Lateness is
paid for in points instead.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ardfcore.course import CourseDefinition
from ardfcore.models import Punch, PunchStatus, RaceStatus, RecordType, ScoringMode
from ardfcore.normalizer import NormalizedSequence

logger = logging.getLogger("ardftiming.engine")

# Punch reasons
BEFORE_START = "before_start"
REPEATED = "repeated"
OUT_OF_ORDER = "out_of_order"
NOT_IN_SEGMENT = "not_in_segment"
NOT_ON_COURSE = "not_on_course"
PREMATURE_FINISH = "premature_finish"
AFTER_FINISH = "after_finish"
REPUNCH = "repunch"
EXACT_DUPLICATE = "exact_duplicate"
MALFORMED = "malformed"

# Status reasons
NO_PUNCHES = "no_punches"
FINISH_WITHOUT_START = "finish_without_start"
PUNCHES_WITHOUT_START = "punches_without_start"
NOT_FINISHED = "not_finished"
OVER_TIME_LIMIT = "over_time_limit"
PARTIAL = "partial"

SCORE_PENALTY_SECONDS = 60


class RaceState(str, Enum):
    AWAITING_START = "awaiting_start"
    IN_SEGMENT = "in_segment"
    AWAITING_FINISH = "awaiting_finish"
    FINISHED = "finished"


class ClassifiedPunch(BaseModel):
    model_config = ConfigDict(frozen=True)

    punch: Punch
    reason: str = ""
    segment: Optional[int] = None

    @property
    def status(self) -> PunchStatus:
        return self.punch.status


class Validation(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: RaceStatus
    reason: str = ""
    state: RaceState
    punches: tuple[ClassifiedPunch, ...] = ()
    start_time: Optional[int] = None
    finish_time: Optional[int] = None
    race_time: Optional[int] = None
    accepted: dict[int, int] = {}
    score: Optional[int] = None

    @property
    def invalid(self) -> list[ClassifiedPunch]:
        return [c for c in self.punches if c.status == PunchStatus.INVALID]


class _Walker:
    """Mutable walk state for one validate() call."""

    def __init__(self, course: CourseDefinition):
        self.course = course
        self.scoring = course.scoring_mode == ScoringMode.SCORE
        self.state = RaceState.AWAITING_START
        self.segment = 0
        self.cursor = 0
        self.found: set[int] = set()
        self.accepted: dict[int, int] = {}
        self.start_time: Optional[int] = None
        self.finish_time: Optional[int] = None
        self.finish_without_start = False
        self.has_race_records = False
        self.out_of_order = 0
        self.last_accepted: Optional[int] = None
        self.out: list[ClassifiedPunch] = []

    def emit(self, punch: Punch, status: PunchStatus, reason: str = "") -> None:
        if punch.status != status:
            punch = punch.model_copy(update={"status": status})
        seg = None if self.state == RaceState.AWAITING_START else self.segment
        self.out.append(ClassifiedPunch(punch=punch, reason=reason, segment=seg))

    def enter_segment(self, index: int) -> None:
        self.segment = index
        self.cursor = 0
        self.state = RaceState.IN_SEGMENT
        if not self.course.segments[index].required:
            self._segment_complete()

    def _segment_complete(self) -> None:
        if self.segment == self.course.last_segment:
            self.state = RaceState.AWAITING_FINISH
        else:
            self.enter_segment(self.segment + 1)

    def accept(self, punch: Punch) -> None:
        self.accepted[punch.code] = punch.timestamp
        self.last_accepted = punch.timestamp
        self.emit(punch, PunchStatus.VALID)

    def step(self, punch: Punch) -> None:
        if punch.status == PunchStatus.DUPLICATE:
            self.emit(punch, PunchStatus.DUPLICATE, REPUNCH)
            return
        if punch.record_type == RecordType.CLEAR:
            self.emit(punch, PunchStatus.VALID)
            return

        self.has_race_records = True

        if self.state == RaceState.AWAITING_START:
            if punch.record_type == RecordType.START:
                self.start_time = punch.timestamp
                self.last_accepted = punch.timestamp
                self.emit(punch, PunchStatus.VALID)
                self.enter_segment(0)
            else:
                if punch.record_type == RecordType.FINISH:
                    self.finish_without_start = True
                self.emit(punch, PunchStatus.INVALID, BEFORE_START)
        elif self.state == RaceState.FINISHED:
            self.emit(punch, PunchStatus.INVALID, AFTER_FINISH)
        elif punch.record_type == RecordType.START:
            self.emit(punch, PunchStatus.INVALID, REPEATED)
        elif punch.record_type == RecordType.FINISH:
            if self.state == RaceState.AWAITING_FINISH or self.scoring:
                self.finish_time = punch.timestamp
                self.emit(punch, PunchStatus.VALID)
                self.state = RaceState.FINISHED
            else:
                self.emit(punch, PunchStatus.INVALID, PREMATURE_FINISH)
        elif self.scoring:
            self.score_control(punch)
        else:
            self.control(punch)

    def score_control(self, punch: Punch) -> None:
        code = punch.code
        seg_index = self.course.segment_of(code)
        if seg_index is None:
            self.emit(punch, PunchStatus.INVALID, NOT_ON_COURSE)
        elif code in self.accepted:
            self.emit(punch, PunchStatus.INVALID, REPEATED)
        else:
            self.segment = max(self.segment, seg_index)
            self.accept(punch)

    def control(self, punch: Punch) -> None:
        seg = self.course.segments[self.segment]
        code = punch.code

        if code in seg.optional:
            if code in self.found:
                self.emit(punch, PunchStatus.INVALID, REPEATED)
            else:
                self.found.add(code)
                self.accept(punch)
        elif code in seg.required:
            idx = seg.required.index(code)
            if idx == self.cursor:
                self.accept(punch)
                self.cursor += 1
                if self.cursor == len(seg.required):
                    self._segment_complete()
            elif idx > self.cursor:
                self.out_of_order += 1
                self.emit(punch, PunchStatus.INVALID, OUT_OF_ORDER)
            else:
                self.emit(punch, PunchStatus.INVALID, REPEATED)
        elif self.course.segment_of(code) is not None:
            self.emit(punch, PunchStatus.INVALID, NOT_IN_SEGMENT)
        else:
            self.emit(punch, PunchStatus.INVALID, NOT_ON_COURSE)


def _score(course: CourseDefinition, accepted: dict[int, int],
           race_time: Optional[int]) -> int:
    points = sum(course.points.get(code, 0) for code in accepted)
    if course.time_limit is not None and race_time is not None and race_time > course.time_limit:
        points -= math.ceil((race_time - course.time_limit) / SCORE_PENALTY_SECONDS)
    return max(points, 0)


def _final_status(course: CourseDefinition, w: _Walker,
                  race_time: Optional[int]) -> tuple[RaceStatus, str]:
    if w.start_time is None:
        if not w.has_race_records:
            return RaceStatus.DID_NOT_START, NO_PUNCHES
        if w.finish_without_start:
            return RaceStatus.DID_NOT_START, FINISH_WITHOUT_START
        return RaceStatus.DISQUALIFIED, PUNCHES_WITHOUT_START

    if course.scoring_mode == ScoringMode.SCORE:
        if w.state != RaceState.FINISHED:
            return RaceStatus.OK, PARTIAL
        return RaceStatus.OK, ""

    # Out of order disqualifies even when the course was never completed
    if w.out_of_order:
        return RaceStatus.DISQUALIFIED, OUT_OF_ORDER
    if w.state != RaceState.FINISHED:
        return RaceStatus.DID_NOT_FINISH, NOT_FINISHED
    if course.time_limit is not None and race_time > course.time_limit:
        return RaceStatus.DISQUALIFIED, OVER_TIME_LIMIT
    return RaceStatus.OK, ""


def validate(course: CourseDefinition, sequence: NormalizedSequence) -> Validation:
    """Classify every punch of ``sequence`` and derive the computed status."""
    w = _Walker(course)
    for punch in sequence.punches:
        w.step(punch)

    race_time = None
    if w.start_time is not None:
        if w.finish_time is not None:
            race_time = w.finish_time - w.start_time
        elif course.scoring_mode == ScoringMode.SCORE:
            race_time = w.last_accepted - w.start_time

    status, reason = _final_status(course, w, race_time)

    score = None
    if course.scoring_mode == ScoringMode.SCORE and w.start_time is not None:
        score = _score(course, w.accepted, race_time)

    classified = list(w.out)
    for punch in sequence.dropped:
        classified.append(ClassifiedPunch(
            punch=punch.model_copy(update={"status": PunchStatus.DUPLICATE}),
            reason=EXACT_DUPLICATE,
        ))
    for punch, _problem in sequence.malformed:
        classified.append(ClassifiedPunch(punch=punch, reason=MALFORMED))

    if status != RaceStatus.OK:
        logger.debug("Course %s: status %s (%s)", course.version[:8], status.value, reason)

    return Validation(
        status=status,
        reason=reason,
        state=w.state,
        punches=tuple(classified),
        start_time=w.start_time,
        finish_time=w.finish_time,
        race_time=race_time,
        accepted=dict(w.accepted),
        score=score,
    )
