"""
database.py — SQLite schema init, migration, CRUD, and the fetch interfaces
the result engine consumes.

Single-file database with WAL mode for concurrent reads.
"""

from __future__ import annotations

import json
import os
import sqlite3
from pathlib import Path
from typing import Iterable, Optional

from ardfcore.errors import DuplicateSICard
from ardfcore.models import (
    Category, Competitor, ControlPointSpec, Event, Punch, PunchStatus,
    RaceStatus, RecordType, ResultRow, ScoringMode,
)

DB_DIR = Path(__file__).parent.parent / "data"
DB_NAME = "ardftiming.db"


def get_db_path() -> Path:
    override = os.environ.get("ARDFTIMING_DB")
    if override:
        return Path(override)
    DB_DIR.mkdir(parents=True, exist_ok=True)
    return DB_DIR / DB_NAME


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Return a new connection with WAL mode and foreign keys enabled."""
    if db_path is None:
        db_path = get_db_path()
    conn = sqlite3.connect(str(db_path), timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL,
    date        TEXT NOT NULL DEFAULT '',
    zero_time   TEXT NOT NULL DEFAULT '00:00:00',
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS categories (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id      INTEGER NOT NULL REFERENCES events(id),
    name          TEXT NOT NULL,
    time_limit    INTEGER,
    scoring_mode  TEXT NOT NULL DEFAULT 'time',
    updated_at    TEXT DEFAULT (datetime('now')),
    UNIQUE(event_id, name)
);

CREATE TABLE IF NOT EXISTS control_points (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    category_id  INTEGER NOT NULL REFERENCES categories(id),
    order_index  INTEGER NOT NULL,
    code         INTEGER NOT NULL,
    beacon       INTEGER NOT NULL DEFAULT 0,
    separator    INTEGER NOT NULL DEFAULT 0,
    points       INTEGER NOT NULL DEFAULT 1,
    UNIQUE(category_id, order_index),
    UNIQUE(category_id, code)
);

CREATE TABLE IF NOT EXISTS competitors (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id       INTEGER NOT NULL REFERENCES events(id),
    category_id    INTEGER REFERENCES categories(id),
    name           TEXT NOT NULL,
    club           TEXT NOT NULL DEFAULT '',
    si_number      INTEGER,
    start_offset   INTEGER,
    manual_status  TEXT,
    UNIQUE(event_id, si_number)
);

CREATE TABLE IF NOT EXISTS readouts (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id       INTEGER NOT NULL REFERENCES events(id),
    competitor_id  INTEGER NOT NULL REFERENCES competitors(id),
    si_number      INTEGER NOT NULL,
    read_at        TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS punches (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id       INTEGER NOT NULL REFERENCES events(id),
    competitor_id  INTEGER NOT NULL REFERENCES competitors(id),
    readout_id     INTEGER REFERENCES readouts(id),
    record_type    TEXT NOT NULL,
    code           INTEGER,
    timestamp      INTEGER,
    status         TEXT NOT NULL DEFAULT 'valid',
    source         TEXT NOT NULL DEFAULT 'manual'
);

CREATE TABLE IF NOT EXISTS results (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    category_id      INTEGER NOT NULL REFERENCES categories(id),
    competitor_id    INTEGER NOT NULL REFERENCES competitors(id),
    elapsed          INTEGER,
    score            INTEGER,
    computed_status  TEXT NOT NULL,
    final_status     TEXT NOT NULL,
    rank             INTEGER,
    updated_at       TEXT DEFAULT (datetime('now')),
    UNIQUE(category_id, competitor_id)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id    INTEGER,
    action      TEXT NOT NULL,
    entity_type TEXT,
    entity_id   INTEGER,
    details     TEXT,
    before_val  TEXT,
    after_val   TEXT,
    source      TEXT DEFAULT 'admin',
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_audit_event ON audit_log(event_id, created_at);
CREATE INDEX IF NOT EXISTS idx_punches_competitor ON punches(competitor_id);
CREATE INDEX IF NOT EXISTS idx_competitors_si ON competitors(event_id, si_number);
CREATE INDEX IF NOT EXISTS idx_competitors_category ON competitors(category_id);
CREATE INDEX IF NOT EXISTS idx_control_points_category ON control_points(category_id, order_index);

CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist."""
    conn.executescript(SCHEMA_SQL)


def migrate_db(conn: sqlite3.Connection) -> None:
    """Add new columns to existing tables (idempotent for upgrades)."""
    def _has_column(table: str, column: str) -> bool:
        cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(c["name"] == column for c in cols)

    # control_points: score-mode values
    if not _has_column("control_points", "points"):
        conn.execute("ALTER TABLE control_points ADD COLUMN points INTEGER NOT NULL DEFAULT 1")

    # competitors: club, start offset
    if not _has_column("competitors", "club"):
        conn.execute("ALTER TABLE competitors ADD COLUMN club TEXT NOT NULL DEFAULT ''")
    if not _has_column("competitors", "start_offset"):
        conn.execute("ALTER TABLE competitors ADD COLUMN start_offset INTEGER")

    # results: score
    if not _has_column("results", "score"):
        conn.execute("ALTER TABLE results ADD COLUMN score INTEGER")

    conn.commit()


# ======================================================================
# SETTINGS (key-value store for race-day values)
# ======================================================================

def get_setting(conn: sqlite3.Connection, key: str, default: str = "") -> str:
    """Read a setting value from the database."""
    row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
        (key, value)
    )
    conn.commit()


# ======================================================================
# ROW → MODEL
# ======================================================================

def _event_from_row(row: sqlite3.Row) -> Event:
    return Event(id=row["id"], name=row["name"], zero_time=row["zero_time"])


def _competitor_from_row(row: sqlite3.Row) -> Competitor:
    manual = row["manual_status"]
    return Competitor(
        id=row["id"],
        event_id=row["event_id"],
        category_id=row["category_id"],
        name=row["name"],
        club=row["club"] or "",
        si_number=row["si_number"],
        start_offset=row["start_offset"],
        manual_status=RaceStatus(manual) if manual else None,
    )


def _punch_from_row(row: sqlite3.Row) -> Punch:
    return Punch(
        id=row["id"],
        competitor_id=row["competitor_id"],
        record_type=RecordType(row["record_type"]),
        code=row["code"],
        timestamp=row["timestamp"],
        status=PunchStatus(row["status"]),
        readout_id=row["readout_id"],
    )


# ======================================================================
# EVENTS
# ======================================================================

def create_event(conn: sqlite3.Connection, name: str, date: str = "",
                 zero_time: str = "00:00:00") -> int:
    """Insert a new event and return its id."""
    cur = conn.execute(
        "INSERT INTO events (name, date, zero_time) VALUES (?, ?, ?)",
        (name, date, zero_time)
    )
    conn.commit()
    return cur.lastrowid


def get_event(conn: sqlite3.Connection, event_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM events WHERE id=?", (event_id,)).fetchone()


def fetch_event(conn: sqlite3.Connection, event_id: int) -> Optional[Event]:
    row = get_event(conn, event_id)
    return _event_from_row(row) if row else None


def get_all_events(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute("SELECT * FROM events ORDER BY id DESC").fetchall()


def update_event(conn: sqlite3.Connection, event_id: int, **kwargs) -> None:
    """Update event fields. Pass field=value pairs."""
    if not kwargs:
        return
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [event_id]
    conn.execute(f"UPDATE events SET {sets} WHERE id=?", vals)
    conn.commit()


def delete_event(conn: sqlite3.Connection, event_id: int) -> None:
    """Delete an event and ALL related data.

    Deletion order respects foreign-key constraints (children first):
    results, punches, readouts, competitors, control points, categories,
    audit log, event.
    """
    conn.execute(
        "DELETE FROM results WHERE category_id IN "
        "(SELECT id FROM categories WHERE event_id=?)", (event_id,)
    )
    conn.execute("DELETE FROM punches WHERE event_id=?", (event_id,))
    conn.execute("DELETE FROM readouts WHERE event_id=?", (event_id,))
    conn.execute("DELETE FROM competitors WHERE event_id=?", (event_id,))
    conn.execute(
        "DELETE FROM control_points WHERE category_id IN "
        "(SELECT id FROM categories WHERE event_id=?)", (event_id,)
    )
    conn.execute("DELETE FROM categories WHERE event_id=?", (event_id,))
    conn.execute("DELETE FROM audit_log WHERE event_id=?", (event_id,))
    conn.execute("DELETE FROM events WHERE id=?", (event_id,))
    conn.commit()


# ======================================================================
# CATEGORIES
# ======================================================================

def create_category(conn: sqlite3.Connection, event_id: int, name: str,
                    control_points: Iterable[ControlPointSpec] = (),
                    time_limit: Optional[int] = None,
                    scoring_mode: ScoringMode = ScoringMode.TIME) -> int:
    cur = conn.execute(
        """INSERT INTO categories (event_id, name, time_limit, scoring_mode)
           VALUES (?, ?, ?, ?)""",
        (event_id, name, time_limit, ScoringMode(scoring_mode).value)
    )
    category_id = cur.lastrowid
    _insert_control_points(conn, category_id, control_points)
    conn.commit()
    return category_id


def _insert_control_points(conn: sqlite3.Connection, category_id: int,
                           control_points: Iterable[ControlPointSpec]) -> None:
    for p in control_points:
        conn.execute(
            """INSERT INTO control_points
               (category_id, order_index, code, beacon, separator, points)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (category_id, p.order, p.code, int(p.beacon), int(p.separator), p.points)
        )


def set_control_points(conn: sqlite3.Connection, category_id: int,
                       control_points: Iterable[ControlPointSpec]) -> None:
    """Replace the whole control-point list of a category."""
    conn.execute("DELETE FROM control_points WHERE category_id=?", (category_id,))
    _insert_control_points(conn, category_id, control_points)
    conn.execute("UPDATE categories SET updated_at=datetime('now') WHERE id=?",
                 (category_id,))
    conn.commit()


def update_category(conn: sqlite3.Connection, category_id: int, **kwargs) -> None:
    if not kwargs:
        return
    if "scoring_mode" in kwargs:
        kwargs["scoring_mode"] = ScoringMode(kwargs["scoring_mode"]).value
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [category_id]
    conn.execute(f"UPDATE categories SET {sets}, updated_at=datetime('now') WHERE id=?", vals)
    conn.commit()


def get_categories(conn: sqlite3.Connection, event_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM categories WHERE event_id=? ORDER BY name", (event_id,)
    ).fetchall()


def get_category(conn: sqlite3.Connection, category_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM categories WHERE id=?", (category_id,)).fetchone()


def get_control_points(conn: sqlite3.Connection, category_id: int) -> list[ControlPointSpec]:
    rows = conn.execute(
        "SELECT * FROM control_points WHERE category_id=? ORDER BY order_index",
        (category_id,)
    ).fetchall()
    return [
        ControlPointSpec(order=r["order_index"], code=r["code"], beacon=bool(r["beacon"]),
                         separator=bool(r["separator"]), points=r["points"])
        for r in rows
    ]


def fetch_category(conn: sqlite3.Connection, category_id: int) -> Optional[Category]:
    """Category with its ordered control-point list."""
    row = get_category(conn, category_id)
    if row is None:
        return None
    return Category(
        id=row["id"],
        event_id=row["event_id"],
        name=row["name"],
        control_points=tuple(get_control_points(conn, category_id)),
        time_limit=row["time_limit"],
        scoring_mode=ScoringMode(row["scoring_mode"]),
    )


def delete_category(conn: sqlite3.Connection, category_id: int) -> tuple[bool, str]:
    """Delete a single category. Refuses if competitors are registered in it."""
    ref = conn.execute(
        "SELECT id FROM competitors WHERE category_id=? LIMIT 1", (category_id,)
    ).fetchone()
    if ref:
        return False, "Category has competitors and cannot be deleted"
    conn.execute("DELETE FROM results WHERE category_id=?", (category_id,))
    conn.execute("DELETE FROM control_points WHERE category_id=?", (category_id,))
    conn.execute("DELETE FROM categories WHERE id=?", (category_id,))
    conn.commit()
    return True, ""


# ======================================================================
# COMPETITORS
# ======================================================================

def check_si_card_unique(conn: sqlite3.Connection, si_number: int, event_id: int,
                         exclude_competitor_id: Optional[int] = None) -> bool:
    """True if no other competitor of the event holds this SI card."""
    row = conn.execute(
        "SELECT id FROM competitors WHERE event_id=? AND si_number=? AND id IS NOT ?",
        (event_id, si_number, exclude_competitor_id)
    ).fetchone()
    return row is None


def _is_si_conflict(err: sqlite3.IntegrityError) -> bool:
    """True when UNIQUE(event_id, si_number) was hit by a concurrent writer."""
    return "si_number" in str(err)


def create_competitor(conn: sqlite3.Connection, event_id: int, name: str,
                      category_id: Optional[int] = None, club: str = "",
                      si_number: Optional[int] = None,
                      start_offset: Optional[int] = None) -> int:
    """Insert a competitor. Raises DuplicateSICard if the card is taken."""
    if si_number is not None and not check_si_card_unique(conn, si_number, event_id):
        raise DuplicateSICard(si_number, event_id)
    try:
        cur = conn.execute(
            """INSERT INTO competitors (event_id, category_id, name, club, si_number, start_offset)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (event_id, category_id, name, club, si_number, start_offset)
        )
    except sqlite3.IntegrityError as e:
        conn.rollback()
        if si_number is not None and _is_si_conflict(e):
            raise DuplicateSICard(si_number, event_id) from e
        raise
    conn.commit()
    return cur.lastrowid


def update_competitor(conn: sqlite3.Connection, competitor_id: int, **kwargs) -> None:
    """Update competitor fields. SI uniqueness is re-checked on change."""
    if not kwargs:
        return
    row = get_competitor(conn, competitor_id)
    si_number = kwargs.get("si_number")
    if si_number is not None and row and not check_si_card_unique(
            conn, si_number, row["event_id"], exclude_competitor_id=competitor_id):
        raise DuplicateSICard(si_number, row["event_id"])
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [competitor_id]
    try:
        conn.execute(f"UPDATE competitors SET {sets} WHERE id=?", vals)
    except sqlite3.IntegrityError as e:
        conn.rollback()
        if si_number is not None and row and _is_si_conflict(e):
            raise DuplicateSICard(si_number, row["event_id"]) from e
        raise
    conn.commit()


def set_manual_status(conn: sqlite3.Connection, competitor_id: int,
                      status: Optional[RaceStatus]) -> None:
    conn.execute(
        "UPDATE competitors SET manual_status=? WHERE id=?",
        (status.value if status else None, competitor_id)
    )
    conn.commit()


def get_competitor(conn: sqlite3.Connection, competitor_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM competitors WHERE id=?", (competitor_id,)).fetchone()


def get_competitors(conn: sqlite3.Connection, event_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        """SELECT c.*, cat.name as category_name
           FROM competitors c LEFT JOIN categories cat ON c.category_id = cat.id
           WHERE c.event_id=? ORDER BY c.name""",
        (event_id,)
    ).fetchall()


def fetch_competitors(conn: sqlite3.Connection, category_id: int) -> list[Competitor]:
    rows = conn.execute(
        "SELECT * FROM competitors WHERE category_id=? ORDER BY id", (category_id,)
    ).fetchall()
    return [_competitor_from_row(r) for r in rows]


def fetch_competitor(conn: sqlite3.Connection, competitor_id: int) -> Optional[Competitor]:
    row = get_competitor(conn, competitor_id)
    return _competitor_from_row(row) if row else None


def fetch_manual_override(conn: sqlite3.Connection,
                          competitor_id: int) -> Optional[RaceStatus]:
    row = conn.execute(
        "SELECT manual_status FROM competitors WHERE id=?", (competitor_id,)
    ).fetchone()
    if row is None or not row["manual_status"]:
        return None
    return RaceStatus(row["manual_status"])


def find_competitors_by_si(conn: sqlite3.Connection, event_id: int,
                           si_number: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM competitors WHERE event_id=? AND si_number=? ORDER BY id",
        (event_id, si_number)
    ).fetchall()


def delete_competitor(conn: sqlite3.Connection, competitor_id: int) -> None:
    conn.execute("DELETE FROM results WHERE competitor_id=?", (competitor_id,))
    conn.execute("DELETE FROM punches WHERE competitor_id=?", (competitor_id,))
    conn.execute("DELETE FROM readouts WHERE competitor_id=?", (competitor_id,))
    conn.execute("DELETE FROM competitors WHERE id=?", (competitor_id,))
    conn.commit()


# ======================================================================
# PUNCHES & READOUTS
# ======================================================================

def fetch_punches(conn: sqlite3.Connection, competitor_id: int) -> list[Punch]:
    """Raw punches of a competitor, in storage order (not race order)."""
    rows = conn.execute(
        "SELECT * FROM punches WHERE competitor_id=? ORDER BY id", (competitor_id,)
    ).fetchall()
    return [_punch_from_row(r) for r in rows]


def add_punches(conn: sqlite3.Connection, event_id: int, competitor_id: int,
                punches: Iterable[Punch], source: str = "manual",
                readout_id: Optional[int] = None) -> list[int]:
    ids = []
    for p in punches:
        cur = conn.execute(
            """INSERT INTO punches (event_id, competitor_id, readout_id, record_type,
               code, timestamp, status, source)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (event_id, competitor_id, readout_id, p.record_type.value,
             p.code, p.timestamp, p.status.value, source)
        )
        ids.append(cur.lastrowid)
    conn.commit()
    return ids


def replace_punches(conn: sqlite3.Connection, event_id: int, competitor_id: int,
                    punches: Iterable[Punch]) -> list[int]:
    """Manual edit: the given list becomes the competitor's whole punch set."""
    conn.execute("DELETE FROM punches WHERE competitor_id=?", (competitor_id,))
    return add_punches(conn, event_id, competitor_id, punches, source="manual")


def update_punch_statuses(conn: sqlite3.Connection,
                          statuses: Iterable[tuple[int, PunchStatus]]) -> None:
    """Write engine-assigned statuses back to stored punches."""
    conn.executemany(
        "UPDATE punches SET status=? WHERE id=?",
        [(status.value, punch_id) for punch_id, status in statuses]
    )
    conn.commit()


def create_readout(conn: sqlite3.Connection, event_id: int, competitor_id: int,
                   si_number: int) -> int:
    cur = conn.execute(
        "INSERT INTO readouts (event_id, competitor_id, si_number) VALUES (?, ?, ?)",
        (event_id, competitor_id, si_number)
    )
    conn.commit()
    return cur.lastrowid


def get_readouts(conn: sqlite3.Connection, event_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        """SELECT r.*, c.name as competitor_name, c.category_id,
                  (SELECT COUNT(*) FROM punches p WHERE p.readout_id = r.id) as punch_count
           FROM readouts r JOIN competitors c ON r.competitor_id = c.id
           WHERE r.event_id=? ORDER BY r.id DESC""",
        (event_id,)
    ).fetchall()


def get_readout(conn: sqlite3.Connection, readout_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM readouts WHERE id=?", (readout_id,)).fetchone()


def get_punches_by_readout(conn: sqlite3.Connection, readout_id: int) -> list[Punch]:
    rows = conn.execute(
        "SELECT * FROM punches WHERE readout_id=? ORDER BY id", (readout_id,)
    ).fetchall()
    return [_punch_from_row(r) for r in rows]


def delete_readout(conn: sqlite3.Connection, readout_id: int) -> None:
    """Delete a readout together with the punches it brought in."""
    conn.execute("DELETE FROM punches WHERE readout_id=?", (readout_id,))
    conn.execute("DELETE FROM readouts WHERE id=?", (readout_id,))
    conn.commit()


# ======================================================================
# RESULT SNAPSHOT (display cache, never authoritative)
# ======================================================================

def get_result_snapshot(conn: sqlite3.Connection, category_id: int) -> list[ResultRow]:
    rows = conn.execute(
        """SELECT r.*, c.si_number FROM results r
           JOIN competitors c ON r.competitor_id = c.id
           WHERE r.category_id=? ORDER BY r.id""",
        (category_id,)
    ).fetchall()
    return [
        ResultRow(
            competitor_id=r["competitor_id"],
            si_number=r["si_number"],
            elapsed=r["elapsed"],
            score=r["score"],
            computed_status=RaceStatus(r["computed_status"]),
            final_status=RaceStatus(r["final_status"]),
            rank=r["rank"],
        )
        for r in rows
    ]


def save_result_snapshot(conn: sqlite3.Connection, category_id: int,
                         rows: Iterable[ResultRow]) -> None:
    conn.execute("DELETE FROM results WHERE category_id=?", (category_id,))
    for r in rows:
        conn.execute(
            """INSERT INTO results (category_id, competitor_id, elapsed, score,
               computed_status, final_status, rank)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (category_id, r.competitor_id, r.elapsed, r.score,
             r.computed_status.value, r.final_status.value, r.rank)
        )
    conn.commit()


# ======================================================================
# AUDIT LOG
# ======================================================================

def log_audit(conn: sqlite3.Connection, event_id: Optional[int],
              action: str, entity_type: str = "",
              entity_id: Optional[int] = None,
              details: str = "",
              before_val: str = "", after_val: str = "",
              source: str = "admin") -> int:
    """Log an admin action for audit trail."""
    cur = conn.execute(
        """INSERT INTO audit_log (event_id, action, entity_type, entity_id,
           details, before_val, after_val, source)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (event_id, action, entity_type, entity_id,
         details, before_val, after_val, source)
    )
    conn.commit()
    return cur.lastrowid


def get_audit_log(conn: sqlite3.Connection, event_id: Optional[int] = None,
                  limit: int = 100) -> list[sqlite3.Row]:
    """Get audit log entries, newest first."""
    if event_id:
        return conn.execute(
            "SELECT * FROM audit_log WHERE event_id=? ORDER BY id DESC LIMIT ?",
            (event_id, limit)
        ).fetchall()
    return conn.execute(
        "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
    ).fetchall()


# ======================================================================
# CATEGORY STRUCTURE EXPORT / IMPORT
# ======================================================================

def export_category_structure(conn: sqlite3.Connection, category_id: int) -> dict:
    """Export a category as a portable dict (codes, not database ids)."""
    category = fetch_category(conn, category_id)
    if category is None:
        return {}
    return {
        "name": category.name,
        "scoring_mode": category.scoring_mode.value,
        "time_limit": category.time_limit,
        "control_points": [p.model_dump() for p in category.control_points],
    }


def import_category_structure(conn: sqlite3.Connection, event_id: int,
                              structure: dict, name: Optional[str] = None) -> int:
    """Create a category from an exported/template dict. Returns its id."""
    points = [ControlPointSpec(**p) for p in structure.get("control_points", [])]
    return create_category(
        conn, event_id, name or structure["name"], points,
        structure.get("time_limit"),
        ScoringMode(structure.get("scoring_mode", "time")),
    )


def audit_json(value) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)
