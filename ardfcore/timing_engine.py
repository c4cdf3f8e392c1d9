"""
timing_engine.py — Result calculation against the database: load a category,
run the engine, write punch statuses and the result snapshot back, diff
against the previous snapshot, and CSV export.

The engine modules (normalizer, validator, results) never touch the
database; everything stateful lives here.
"""

from __future__ import annotations

import csv
import logging
import sqlite3
import threading
from typing import Optional, TextIO

from ardfcore.course import course_from_category
from ardfcore.database import (
    fetch_category, fetch_competitors, fetch_punches, get_categories,
    get_result_snapshot, get_setting, save_result_snapshot, update_punch_statuses,
)
from ardfcore.errors import InvalidCourseDefinition
from ardfcore.models import (
    CompetitorPunches, Punch, PunchStatus, RaceStatus, RecordType, ResultRow,
    ScoringMode,
)
from ardfcore.normalizer import DEFAULT_REPUNCH_INTERVAL
from ardfcore.recompute import (
    MutationKind, ResultCache, affected_categories, diff_results,
)
from ardfcore.results import compute_category, compute_competitor

logger = logging.getLogger("ardftiming.recompute")

STATUS_LABELS = {
    RaceStatus.OK: "OK",
    RaceStatus.DISQUALIFIED: "DSQ",
    RaceStatus.DID_NOT_FINISH: "DNF",
    RaceStatus.DID_NOT_START: "DNS",
}

# Shared across requests; fingerprints include the course version, so a
# category edit can never hit a stale entry.
RESULT_CACHE = ResultCache()

_category_locks: dict[int, threading.Lock] = {}
_locks_guard = threading.Lock()


def _category_lock(category_id: int) -> threading.Lock:
    with _locks_guard:
        lock = _category_locks.get(category_id)
        if lock is None:
            lock = _category_locks[category_id] = threading.Lock()
        return lock


def format_elapsed(seconds: int | None) -> str:
    """Format elapsed seconds as M:SS (minutes are not wrapped into hours)."""
    if seconds is None:
        return ""
    neg = seconds < 0
    s = abs(seconds)
    text = f"{s // 60}:{s % 60:02d}"
    return f"-{text}" if neg else text


def format_time_behind(seconds: int | None) -> str:
    if seconds is None or seconds == 0:
        return ""
    return f"+{format_elapsed(seconds)}"


def get_repunch_interval(conn: sqlite3.Connection) -> int:
    """Per-installation re-punch interval from the settings table."""
    value = get_setting(conn, "min_repunch_interval", "")
    try:
        return int(value) if value else DEFAULT_REPUNCH_INTERVAL
    except ValueError:
        logger.warning("Ignoring bad min_repunch_interval setting %r", value)
        return DEFAULT_REPUNCH_INTERVAL


def default_punch_template() -> list[Punch]:
    """Editable punch set offered when a competitor is entered by hand."""
    return [
        Punch(record_type=RecordType.START, code=None, timestamp=0),
        Punch(record_type=RecordType.FINISH, code=None, timestamp=0),
    ]


# ---------------------------------------------------------------------------
# Calculation
# ---------------------------------------------------------------------------

def load_category_entries(conn: sqlite3.Connection,
                          category_id: int) -> list[CompetitorPunches]:
    return [
        CompetitorPunches(competitor=c, punches=tuple(fetch_punches(conn, c.id)))
        for c in fetch_competitors(conn, category_id)
    ]


def calculate_category_results(conn: sqlite3.Connection, category_id: int,
                               cache: Optional[ResultCache] = None) -> list[ResultRow]:
    """Compute one category and store the engine's punch statuses.

    Raises InvalidCourseDefinition before any competitor is processed.
    Returns [] for an unknown category.
    """
    category = fetch_category(conn, category_id)
    if category is None:
        return []
    if cache is None:
        cache = RESULT_CACHE

    course = course_from_category(category)
    interval = get_repunch_interval(conn)
    entries = load_category_entries(conn, category_id)
    rows = compute_category(course, entries, interval, cache)

    # Validations are cached by now, so this second pass is lookups only
    statuses: list[tuple[int, PunchStatus]] = []
    for entry in entries:
        v = compute_competitor(course, entry, interval, cache)
        stored = {p.id: p.status for p in entry.punches}
        for c in v.punches:
            pid = c.punch.id
            if pid is not None and stored.get(pid) != c.status:
                statuses.append((pid, c.status))
    if statuses:
        update_punch_statuses(conn, statuses)

    return rows


def recalculate_category(conn: sqlite3.Connection, category_id: int,
                         cache: Optional[ResultCache] = None
                         ) -> tuple[list[ResultRow], list[str]]:
    """Recompute a category under its lock and replace the stored snapshot.

    Returns the new rows and the diff messages against the previous
    snapshot (empty = nothing changed).
    """
    with _category_lock(category_id):
        old = get_result_snapshot(conn, category_id)
        rows = calculate_category_results(conn, category_id, cache)
        save_result_snapshot(conn, category_id, rows)

    diffs = diff_results(old, rows)
    for d in diffs:
        logger.warning("Recompute diff: %s", d)
    logger.info("Recomputed category %s: %d row(s), %d change(s)",
                category_id, len(rows), len(diffs))
    return rows, diffs


def recalculate_event(conn: sqlite3.Connection, event_id: int) -> dict[int, list[str]]:
    """Recompute every category of an event. Invalid courses are skipped."""
    report: dict[int, list[str]] = {}
    for cat in get_categories(conn, event_id):
        try:
            _, diffs = recalculate_category(conn, cat["id"])
        except InvalidCourseDefinition as e:
            logger.warning("Skipping category %s: %s", cat["id"], e)
            continue
        report[cat["id"]] = diffs
    return report


def recompute_after(conn: sqlite3.Connection, kind: MutationKind,
                    category_id: Optional[int],
                    previous_category_id: Optional[int] = None) -> list[int]:
    """Recompute the categories a mutation invalidated. Returns their ids."""
    done = []
    for cid in sorted(affected_categories(kind, category_id, previous_category_id)):
        try:
            recalculate_category(conn, cid)
        except InvalidCourseDefinition as e:
            logger.warning("Category %s not recomputed after %s edit: %s",
                           cid, kind.value, e)
            continue
        done.append(cid)
    return done


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def export_category_results_csv(conn: sqlite3.Connection, category_id: int,
                                out: TextIO) -> int:
    """Write a category's results as semicolon CSV. Returns row count."""
    category = fetch_category(conn, category_id)
    if category is None:
        return 0
    rows, _ = recalculate_category(conn, category_id)
    names = {c.id: c for c in fetch_competitors(conn, category_id)}
    score_mode = category.scoring_mode == ScoringMode.SCORE

    writer = csv.writer(out, delimiter=";")
    header = ["Pos", "SI", "Name", "Club", "Category", "Time", "Diff"]
    if score_mode:
        header.append("Score")
    header.append("Status")
    writer.writerow(header)

    leader = None
    count = 0
    for r in rows:
        c = names.get(r.competitor_id)
        if r.rank is not None and not score_mode and leader is None:
            leader = r.elapsed
        time_value = r.elapsed if not score_mode else r.race_time
        diff = ""
        if r.rank is not None and not score_mode and leader is not None:
            diff = format_time_behind(r.elapsed - leader)
        line = [r.rank or "", r.si_number or "",
                c.name if c else "", c.club if c else "", category.name,
                format_elapsed(time_value) if r.final_status == RaceStatus.OK else "",
                diff]
        if score_mode:
            line.append(r.score if r.score is not None else "")
        line.append(STATUS_LABELS[r.final_status])
        writer.writerow(line)
        count += 1

    return count
