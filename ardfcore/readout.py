"""
readout.py — SI-card readout ingestion.

A ReadoutBatch is bound to exactly one competitor of the event (by card
number), card clock times are converted to race-clock offsets from the
event's zero time, and the punches are stored under a readout record.
Ingestion is exclusive per card number.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from typing import Optional

from ardfcore.database import (
    add_punches, create_readout, delete_readout, fetch_event,
    find_competitors_by_si, log_audit, set_setting,
)
from ardfcore.errors import AmbiguousCardAssignment, TimingError
from ardfcore.models import Punch, ReadoutBatch, RecordType
from ardfcore.recompute import MutationKind
from ardfcore.timing_engine import recompute_after

logger = logging.getLogger("ardftiming.readout")

SECONDS_PER_DAY = 24 * 3600
# Card times further than this before zero time belong to the next day
MIDNIGHT_WRAP_WINDOW = 12 * 3600

_card_locks: dict[int, threading.Lock] = {}
_locks_guard = threading.Lock()


def _card_lock(si_number: int) -> threading.Lock:
    with _locks_guard:
        lock = _card_locks.get(si_number)
        if lock is None:
            lock = _card_locks[si_number] = threading.Lock()
        return lock


def parse_clock(clock: str) -> int:
    """'HH:MM:SS' to seconds since midnight. Raises ValueError."""
    t = datetime.strptime(clock.strip(), "%H:%M:%S")
    return t.hour * 3600 + t.minute * 60 + t.second


def to_race_offset(clock: str, zero_time: str) -> Optional[int]:
    """Seconds since the event zero time, or None for an unreadable clock.

    Card clocks carry no date: a time more than MIDNIGHT_WRAP_WINDOW before
    zero time is taken to be after midnight. A time shortly before zero time
    (a clear or check punch) stays negative.
    """
    try:
        offset = parse_clock(clock) - parse_clock(zero_time)
    except ValueError:
        return None
    if offset < -MIDNIGHT_WRAP_WINDOW:
        offset += SECONDS_PER_DAY
    return offset


def resolve_competitor(conn: sqlite3.Connection, event_id: int,
                       si_number: int) -> sqlite3.Row:
    """The single competitor holding this card. Never guesses."""
    matches = find_competitors_by_si(conn, event_id, si_number)
    if len(matches) != 1:
        raise AmbiguousCardAssignment(si_number, event_id, [m["id"] for m in matches])
    return matches[0]


def batch_to_punches(batch: ReadoutBatch, zero_time: str,
                     start_offset: Optional[int] = None) -> list[Punch]:
    """Convert card punches to race-clock punches.

    Unreadable clocks are kept with no timestamp; the normalizer flags them.
    A card without a START record gets one at the competitor's start offset
    when one is assigned.
    """
    punches = []
    for p in batch.punches:
        ts = to_race_offset(p.clock, zero_time)
        if ts is None:
            logger.warning("Card %s: unreadable clock %r on %s record",
                           batch.si_number, p.clock, p.record_type.value)
        punches.append(Punch(record_type=p.record_type, code=p.code, timestamp=ts))

    has_start = any(p.record_type == RecordType.START for p in punches)
    if not has_start and start_offset is not None:
        punches.append(Punch(record_type=RecordType.START, timestamp=start_offset))
    return punches


def ingest_readout(conn: sqlite3.Connection, event_id: int,
                   batch: ReadoutBatch) -> dict:
    """Store one card readout and recompute the competitor's category.

    A repeated readout of the same card replaces the previous one, since the
    card memory is always read whole.
    Raises AmbiguousCardAssignment when the card does not map to exactly one
    competitor.
    """
    event = fetch_event(conn, event_id)
    if event is None:
        raise TimingError(f"Event {event_id} not found")

    with _card_lock(batch.si_number):
        competitor = resolve_competitor(conn, event_id, batch.si_number)
        punches = batch_to_punches(batch, event.zero_time, competitor["start_offset"])

        previous = conn.execute(
            "SELECT id FROM readouts WHERE competitor_id=?", (competitor["id"],)
        ).fetchall()
        for r in previous:
            logger.info("Card %s: replacing readout %s", batch.si_number, r["id"])
            delete_readout(conn, r["id"])

        readout_id = create_readout(conn, event_id, competitor["id"], batch.si_number)
        add_punches(conn, event_id, competitor["id"], punches,
                    source="readout", readout_id=readout_id)
        set_setting(conn, "last_read_card", str(batch.si_number))

    log_audit(conn, event_id, "readout_ingest", "readout", readout_id,
              f"card={batch.si_number} competitor={competitor['id']} punches={len(punches)}",
              source="readout")
    logger.info("Card %s → competitor %s: %d punch(es), readout %s",
                batch.si_number, competitor["id"], len(punches), readout_id)

    recompute_after(conn, MutationKind.PUNCHES, competitor["category_id"])

    return {
        "readout_id": readout_id,
        "competitor_id": competitor["id"],
        "category_id": competitor["category_id"],
        "punch_count": len(punches),
        "replaced": [r["id"] for r in previous],
    }
