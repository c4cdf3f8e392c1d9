"""
normalizer.py — Canonical ordering and dedup of one competitor's punches.

Rules:
- malformed records are excluded and reported, the rest is still processed
- sort by timestamp, ties by record type (START < CONTROL < FINISH < CLEAR)
- exact duplicates (type + code + timestamp) are dropped but kept for audit
- a CONTROL punch at a station within the re-punch interval of an earlier
  VALID punch at the same station is marked DUPLICATE
"""

from __future__ import annotations

import logging
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from ardfcore.errors import MalformedPunch
from ardfcore.models import RECORD_PRIORITY, Punch, PunchStatus, RecordType

logger = logging.getLogger("ardftiming.engine")

# Same window the finish-line dedup uses: a nervous double punch.
DEFAULT_REPUNCH_INTERVAL = 2


class NormalizedSequence(BaseModel):
    model_config = ConfigDict(frozen=True)

    punches: tuple[Punch, ...] = ()
    dropped: tuple[Punch, ...] = ()
    malformed: tuple[tuple[Punch, str], ...] = ()

    @property
    def race_punches(self) -> list[Punch]:
        """Non-duplicate START/CONTROL/FINISH records."""
        return [p for p in self.punches
                if p.status != PunchStatus.DUPLICATE and p.record_type != RecordType.CLEAR]


def check_punch(punch: Punch) -> None:
    """Raise MalformedPunch if the record lacks a required field."""
    if punch.timestamp is None:
        raise MalformedPunch(punch, "missing timestamp")
    if punch.timestamp < 0:
        raise MalformedPunch(punch, f"negative timestamp {punch.timestamp}")
    if punch.record_type == RecordType.CONTROL and punch.code is None:
        raise MalformedPunch(punch, "CONTROL punch without station code")


def _sort_key(punch: Punch) -> tuple[int, int]:
    return punch.timestamp, RECORD_PRIORITY[punch.record_type]


def normalize(punches: Iterable[Punch],
              min_repunch_interval: int = DEFAULT_REPUNCH_INTERVAL) -> NormalizedSequence:
    """Turn an unordered punch set into the canonical sequence."""
    usable: list[Punch] = []
    malformed: list[tuple[Punch, str]] = []

    for punch in punches:
        try:
            check_punch(punch)
        except MalformedPunch as e:
            logger.warning("Excluding malformed punch: %s", e)
            malformed.append((punch.model_copy(update={"status": PunchStatus.INVALID}),
                              e.problem))
            continue
        usable.append(punch)

    # sorted() is stable, so equal keys keep input order
    ordered = sorted(usable, key=_sort_key)

    seen: set[tuple[RecordType, int | None, int]] = set()
    last_valid_at: dict[int, int] = {}
    result: list[Punch] = []
    dropped: list[Punch] = []

    for punch in ordered:
        key = (punch.record_type, punch.code, punch.timestamp)
        if key in seen:
            dropped.append(punch)
            continue
        seen.add(key)

        status = PunchStatus.VALID
        if punch.record_type == RecordType.CONTROL:
            prev = last_valid_at.get(punch.code)
            if prev is not None and punch.timestamp - prev <= min_repunch_interval:
                status = PunchStatus.DUPLICATE
            else:
                last_valid_at[punch.code] = punch.timestamp

        if punch.status != status:
            punch = punch.model_copy(update={"status": status})
        result.append(punch)

    if dropped:
        logger.debug("Dropped %d exact duplicate punch(es)", len(dropped))

    return NormalizedSequence(punches=tuple(result), dropped=tuple(dropped),
                              malformed=tuple(malformed))
