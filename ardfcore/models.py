"""
models.py — Entity and value types shared by the engine, storage and API.

Enumerations are closed; the validator matches on them exhaustively.
All engine values are frozen pydantic models so a computed row can be
compared, hashed and serialized without copying.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class RecordType(str, Enum):
    START = "start"
    CONTROL = "control"
    FINISH = "finish"
    CLEAR = "clear"


# Tie-break order when two records share a timestamp.
RECORD_PRIORITY = {
    RecordType.START: 0,
    RecordType.CONTROL: 1,
    RecordType.FINISH: 2,
    RecordType.CLEAR: 3,
}


class PunchStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    DUPLICATE = "duplicate"


class RaceStatus(str, Enum):
    OK = "ok"
    DISQUALIFIED = "dsq"
    DID_NOT_FINISH = "dnf"
    DID_NOT_START = "dns"


class ScoringMode(str, Enum):
    TIME = "time"
    SCORE = "score"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ControlPointSpec(_Frozen):
    order: int
    code: int
    beacon: bool = False
    separator: bool = False
    points: int = 1


class Event(_Frozen):
    id: int
    name: str
    zero_time: str = "00:00:00"


class Category(_Frozen):
    id: int
    event_id: int
    name: str
    control_points: tuple[ControlPointSpec, ...] = ()
    time_limit: Optional[int] = None
    scoring_mode: ScoringMode = ScoringMode.TIME


class Competitor(_Frozen):
    id: int
    event_id: int
    category_id: Optional[int] = None
    name: str = ""
    club: str = ""
    si_number: Optional[int] = None
    start_offset: Optional[int] = None
    manual_status: Optional[RaceStatus] = None


class Punch(_Frozen):
    """One punch record. ``timestamp`` is seconds since the event zero-time."""

    id: Optional[int] = None
    competitor_id: Optional[int] = None
    record_type: RecordType
    code: Optional[int] = None
    timestamp: Optional[int] = None
    status: PunchStatus = PunchStatus.VALID
    readout_id: Optional[int] = None


class ReadoutPunch(_Frozen):
    record_type: RecordType
    code: Optional[int] = None
    clock: str


class ReadoutBatch(_Frozen):
    """A card dump, not yet bound to a competitor."""

    si_number: int
    punches: tuple[ReadoutPunch, ...] = ()


class CompetitorPunches(_Frozen):
    """Input of the aggregator: one competitor and its raw punch set."""

    competitor: Competitor
    punches: tuple[Punch, ...] = ()


class Split(_Frozen):
    code: Optional[int]
    segment: int
    leg: Optional[int] = None
    cumulative: Optional[int] = None


class ResultRow(_Frozen):
    competitor_id: int
    si_number: Optional[int] = None
    elapsed: Optional[int] = None
    race_time: Optional[int] = None
    splits: tuple[Split, ...] = ()
    segment_times: tuple[Optional[int], ...] = ()
    score: Optional[int] = None
    computed_status: RaceStatus
    status_reason: str = ""
    manual_status: Optional[RaceStatus] = None
    final_status: RaceStatus
    rank: Optional[int] = None
