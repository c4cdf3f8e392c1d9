"""
test_storage.py — SQLite collaborator, recompute, readout ingestion,
templates and CSV export.

Tests:
1. Schema init/migration and settings
2. SI-card uniqueness
3. Category and competitor CRUD, safe deletes, cascades
4. Recompute against the database (statuses written back, diffs)
5. Readout ingestion (clock conversion, ambiguity, re-read, delete)
6. Templates
7. CSV export and time formatting
"""

import csv
import io
import os
import sys
import tempfile

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from ardfcore import database
from ardfcore import readout
from ardfcore import templates
from ardfcore import timing_engine
from ardfcore.course import build_course
from ardfcore.errors import AmbiguousCardAssignment, DuplicateSICard
from ardfcore.models import (
    ControlPointSpec, Punch, PunchStatus, RaceStatus, ReadoutBatch,
    ReadoutPunch, RecordType, ResultRow, ScoringMode,
)
from ardfcore.normalizer import normalize
from ardfcore.recompute import MutationKind


def make_db():
    """Create a fresh temp database."""
    db_path = os.path.join(tempfile.mkdtemp(), "test.db")
    conn = database.get_connection(db_path)
    database.init_db(conn)
    database.migrate_db(conn)
    return conn


CLASSIC = [
    ControlPointSpec(order=1, code=31),
    ControlPointSpec(order=2, code=32),
    ControlPointSpec(order=3, code=33),
]


def S(ts):
    return Punch(record_type=RecordType.START, timestamp=ts)


def C(code, ts):
    return Punch(record_type=RecordType.CONTROL, code=code, timestamp=ts)


def F(ts):
    return Punch(record_type=RecordType.FINISH, timestamp=ts)


def setup_classic(conn, zero_time="10:00:00"):
    event_id = database.create_event(conn, "Club Championship", "2026-05-16", zero_time)
    cat_id = database.create_category(conn, event_id, "M21", CLASSIC)
    return event_id, cat_id


def rp(record_type, clock, code=None):
    return ReadoutPunch(record_type=record_type, code=code, clock=clock)


# ======================================================================
# TEST 1: Schema and settings
# ======================================================================

def test_migrate_is_idempotent():
    conn = make_db()
    database.migrate_db(conn)
    database.migrate_db(conn)
    cols = [c["name"] for c in conn.execute("PRAGMA table_info(competitors)").fetchall()]
    assert "start_offset" in cols
    assert "club" in cols


def test_settings_round_trip():
    conn = make_db()
    assert database.get_setting(conn, "min_repunch_interval", "x") == "x"
    database.set_setting(conn, "min_repunch_interval", "10")
    assert timing_engine.get_repunch_interval(conn) == 10
    database.set_setting(conn, "min_repunch_interval", "soon")
    assert timing_engine.get_repunch_interval(conn) == 2


def test_db_path_env_override(monkeypatch, tmp_path):
    target = tmp_path / "override.db"
    monkeypatch.setenv("ARDFTIMING_DB", str(target))
    assert database.get_db_path() == target


def test_audit_log():
    conn = make_db()
    event_id, _ = setup_classic(conn)
    database.log_audit(conn, event_id, "manual_status", "competitor", 5,
                       before_val="", after_val="dnf")
    entries = database.get_audit_log(conn, event_id)
    assert len(entries) == 1
    assert entries[0]["action"] == "manual_status"
    assert entries[0]["after_val"] == "dnf"


# ======================================================================
# TEST 2: SI-card uniqueness
# ======================================================================

def test_si_card_reuse_rejected():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    first = database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)

    assert database.check_si_card_unique(conn, 1001, event_id) is False
    assert database.check_si_card_unique(conn, 1001, event_id, exclude_competitor_id=first)
    assert database.check_si_card_unique(conn, 1002, event_id)

    with pytest.raises(DuplicateSICard):
        database.create_competitor(conn, event_id, "Petr", cat_id, si_number=1001)
    count = conn.execute("SELECT COUNT(*) FROM competitors").fetchone()[0]
    assert count == 1


def test_si_card_conflict_at_insert_is_duplicate(monkeypatch):
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)
    other = database.create_competitor(conn, event_id, "Eva", cat_id, si_number=1002)
    # Another writer took the card between the check and the write
    monkeypatch.setattr(database, "check_si_card_unique", lambda *a, **kw: True)

    with pytest.raises(DuplicateSICard):
        database.create_competitor(conn, event_id, "Petr", cat_id, si_number=1001)
    with pytest.raises(DuplicateSICard):
        database.update_competitor(conn, other, si_number=1001)
    count = conn.execute("SELECT COUNT(*) FROM competitors").fetchone()[0]
    assert count == 2
    assert database.get_competitor(conn, other)["si_number"] == 1002


def test_si_card_unique_per_event():
    conn = make_db()
    event_a, cat_a = setup_classic(conn)
    event_b, cat_b = setup_classic(conn)
    database.create_competitor(conn, event_a, "Jana", cat_a, si_number=1001)
    database.create_competitor(conn, event_b, "Jana", cat_b, si_number=1001)
    assert database.check_si_card_unique(conn, 1001, event_b) is False


def test_si_card_change_rejected_on_update():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)
    other = database.create_competitor(conn, event_id, "Petr", cat_id, si_number=1002)
    with pytest.raises(DuplicateSICard):
        database.update_competitor(conn, other, si_number=1001)
    database.update_competitor(conn, other, si_number=1002, club="OK Praha")
    assert database.get_competitor(conn, other)["club"] == "OK Praha"


# ======================================================================
# TEST 3: CRUD
# ======================================================================

def test_fetch_category_orders_points():
    conn = make_db()
    event_id = database.create_event(conn, "Sprint Cup")
    points = [ControlPointSpec(order=2, code=90, separator=True),
              ControlPointSpec(order=1, code=41, beacon=True),
              ControlPointSpec(order=3, code=100)]
    cat_id = database.create_category(conn, event_id, "W21", points, 3000, ScoringMode.TIME)
    cat = database.fetch_category(conn, cat_id)
    assert [p.code for p in cat.control_points] == [41, 90, 100]
    assert cat.control_points[1].separator
    assert cat.time_limit == 3000
    assert cat.scoring_mode == ScoringMode.TIME

    database.set_control_points(conn, cat_id, CLASSIC)
    database.update_category(conn, cat_id, scoring_mode=ScoringMode.SCORE)
    cat = database.fetch_category(conn, cat_id)
    assert [p.code for p in cat.control_points] == [31, 32, 33]
    assert cat.scoring_mode == ScoringMode.SCORE


def test_delete_category_refuses_with_competitors():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    comp = database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)
    ok, msg = database.delete_category(conn, cat_id)
    assert not ok
    assert "competitors" in msg

    database.delete_competitor(conn, comp)
    ok, msg = database.delete_category(conn, cat_id)
    assert ok
    assert database.fetch_category(conn, cat_id) is None


def test_delete_event_cascades():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    comp = database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)
    database.add_punches(conn, event_id, comp, [S(0), F(100)])
    timing_engine.recalculate_category(conn, cat_id)

    database.delete_event(conn, event_id)
    for table in ("events", "categories", "control_points", "competitors",
                  "punches", "results"):
        assert conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0] == 0


def test_manual_override_storage():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    comp = database.create_competitor(conn, event_id, "Jana", cat_id)
    assert database.fetch_manual_override(conn, comp) is None
    database.set_manual_status(conn, comp, RaceStatus.DID_NOT_FINISH)
    assert database.fetch_manual_override(conn, comp) == RaceStatus.DID_NOT_FINISH
    assert database.fetch_competitor(conn, comp).manual_status == RaceStatus.DID_NOT_FINISH
    database.set_manual_status(conn, comp, None)
    assert database.fetch_manual_override(conn, comp) is None


def test_result_snapshot_round_trip():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    comp = database.create_competitor(conn, event_id, "Jana", cat_id, si_number=7)
    row = ResultRow(competitor_id=comp, si_number=7, elapsed=320,
                    computed_status=RaceStatus.OK, final_status=RaceStatus.OK, rank=1)
    database.save_result_snapshot(conn, cat_id, [row])
    assert database.get_result_snapshot(conn, cat_id) == [row]


# ======================================================================
# TEST 4: Recompute against the database
# ======================================================================

def test_recalculate_writes_statuses_and_diffs():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    good = database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)
    bad = database.create_competitor(conn, event_id, "Petr", cat_id, si_number=1002)
    database.add_punches(conn, event_id, good, [S(0), C(31, 100), C(32, 210), C(33, 300), F(320)])
    database.add_punches(conn, event_id, bad, [S(0), C(32, 100), C(31, 150), C(33, 300), F(320)])

    rows, diffs = timing_engine.recalculate_category(conn, cat_id)
    by_id = {r.competitor_id: r for r in rows}
    assert by_id[good].final_status == RaceStatus.OK
    assert by_id[good].elapsed == 320
    assert by_id[bad].final_status == RaceStatus.DISQUALIFIED
    assert f"result NEW: competitor={good}" in diffs

    stored = {(p.code, p.record_type): p.status for p in database.fetch_punches(conn, bad)}
    assert stored[(32, RecordType.CONTROL)] == PunchStatus.INVALID
    assert stored[(31, RecordType.CONTROL)] == PunchStatus.VALID
    assert stored[(None, RecordType.FINISH)] == PunchStatus.INVALID

    # Unchanged inputs: nothing to report
    rows_again, diffs_again = timing_engine.recalculate_category(conn, cat_id)
    assert diffs_again == []
    assert rows_again == rows


def test_override_recompute_reports_change():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    comp = database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)
    database.add_punches(conn, event_id, comp, [S(0), C(31, 100), C(32, 210), C(33, 300), F(320)])
    timing_engine.recalculate_category(conn, cat_id)

    database.set_manual_status(conn, comp, RaceStatus.DISQUALIFIED)
    rows, diffs = timing_engine.recalculate_category(conn, cat_id)
    assert rows[0].computed_status == RaceStatus.OK
    assert rows[0].final_status == RaceStatus.DISQUALIFIED
    assert f"result STATUS: competitor={comp} ok → dsq" in diffs


def test_competitor_move_recomputes_both_categories():
    conn = make_db()
    event_id, cat_a = setup_classic(conn)
    cat_b = database.create_category(conn, event_id, "W21", CLASSIC)
    comp = database.create_competitor(conn, event_id, "Jana", cat_a, si_number=1001)
    timing_engine.recalculate_category(conn, cat_a)

    database.update_competitor(conn, comp, category_id=cat_b)
    done = timing_engine.recompute_after(conn, MutationKind.COMPETITOR, cat_b,
                                         previous_category_id=cat_a)
    assert done == sorted([cat_a, cat_b])
    assert database.get_result_snapshot(conn, cat_a) == []
    assert [r.competitor_id for r in database.get_result_snapshot(conn, cat_b)] == [comp]


def test_recompute_skips_invalid_course():
    conn = make_db()
    event_id = database.create_event(conn, "Training")
    cat_id = database.create_category(conn, event_id, "Open")
    assert timing_engine.recompute_after(conn, MutationKind.CATEGORY, cat_id) == []
    assert timing_engine.recalculate_event(conn, event_id) == {}


# ======================================================================
# TEST 5: Readout ingestion
# ======================================================================

def test_clock_conversion():
    assert readout.to_race_offset("10:05:00", "10:00:00") == 300
    assert readout.to_race_offset("10:00:00", "10:00:00") == 0
    # After midnight
    assert readout.to_race_offset("00:10:00", "23:50:00") == 1200
    # Shortly before zero time stays on the same day
    assert readout.to_race_offset("09:55:00", "10:00:00") == -300
    assert readout.to_race_offset("25:99", "10:00:00") is None


def test_ingest_readout_binds_and_recomputes():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    comp = database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)

    batch = ReadoutBatch(si_number=1001, punches=(
        rp(RecordType.START, "10:00:00"),
        rp(RecordType.CONTROL, "10:01:40", 31),
        rp(RecordType.CONTROL, "10:03:30", 32),
        rp(RecordType.CONTROL, "10:05:00", 33),
        rp(RecordType.FINISH, "10:05:20"),
    ))
    out = readout.ingest_readout(conn, event_id, batch)
    assert out["competitor_id"] == comp
    assert out["punch_count"] == 5
    assert out["replaced"] == []

    punches = database.fetch_punches(conn, comp)
    assert [p.timestamp for p in punches] == [0, 100, 210, 300, 320]
    assert all(p.readout_id == out["readout_id"] for p in punches)
    assert database.get_setting(conn, "last_read_card") == "1001"

    snapshot = database.get_result_snapshot(conn, cat_id)
    assert snapshot[0].final_status == RaceStatus.OK
    assert snapshot[0].elapsed == 320


def test_pre_start_clear_stays_before_zero_time():
    batch = ReadoutBatch(si_number=1001, punches=(
        rp(RecordType.CLEAR, "09:55:00"),
        rp(RecordType.START, "10:00:00"),
        rp(RecordType.FINISH, "10:05:20"),
    ))
    punches = readout.batch_to_punches(batch, "10:00:00")
    assert [p.timestamp for p in punches] == [-300, 0, 320]
    seq = normalize(punches)
    assert [p.record_type for p in seq.punches] == [RecordType.START, RecordType.FINISH]
    assert [p.record_type for p, _problem in seq.malformed] == [RecordType.CLEAR]


def test_ingest_unknown_card_is_rejected():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)
    batch = ReadoutBatch(si_number=9999, punches=(rp(RecordType.START, "10:00:00"),))
    with pytest.raises(AmbiguousCardAssignment) as exc:
        readout.ingest_readout(conn, event_id, batch)
    assert exc.value.competitor_ids == []
    assert conn.execute("SELECT COUNT(*) FROM punches").fetchone()[0] == 0


def test_ingest_synthesizes_start_from_offset():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    comp = database.create_competitor(conn, event_id, "Jana", cat_id,
                                      si_number=1001, start_offset=60)
    batch = ReadoutBatch(si_number=1001, punches=(
        rp(RecordType.CONTROL, "10:02:00", 31),
        rp(RecordType.CONTROL, "10:03:00", 32),
        rp(RecordType.CONTROL, "10:04:00", 33),
        rp(RecordType.FINISH, "10:05:00"),
    ))
    readout.ingest_readout(conn, event_id, batch)
    starts = [p for p in database.fetch_punches(conn, comp) if p.record_type == RecordType.START]
    assert [p.timestamp for p in starts] == [60]
    assert database.get_result_snapshot(conn, cat_id)[0].elapsed == 240


def test_reread_replaces_previous_readout():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    comp = database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)
    batch = ReadoutBatch(si_number=1001, punches=(
        rp(RecordType.START, "10:00:00"),
        rp(RecordType.CONTROL, "10:01:40", 31),
    ))
    first = readout.ingest_readout(conn, event_id, batch)
    second = readout.ingest_readout(conn, event_id, batch)
    assert second["replaced"] == [first["readout_id"]]
    assert len(database.get_readouts(conn, event_id)) == 1
    assert len(database.fetch_punches(conn, comp)) == 2


def test_delete_readout_removes_its_punches():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    comp = database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)
    database.add_punches(conn, event_id, comp, [C(77, 5)])  # manual punch stays
    out = readout.ingest_readout(conn, event_id, ReadoutBatch(si_number=1001, punches=(
        rp(RecordType.START, "10:00:00"),
        rp(RecordType.FINISH, "10:30:00"),
    )))
    rows = database.get_readouts(conn, event_id)
    assert rows[0]["punch_count"] == 2

    database.delete_readout(conn, out["readout_id"])
    remaining = database.fetch_punches(conn, comp)
    assert [(p.code, p.readout_id) for p in remaining] == [(77, None)]


def test_unreadable_clock_is_flagged_malformed():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    comp = database.create_competitor(conn, event_id, "Jana", cat_id, si_number=1001)
    readout.ingest_readout(conn, event_id, ReadoutBatch(si_number=1001, punches=(
        rp(RecordType.START, "10:00:00"),
        rp(RecordType.CONTROL, "garbage", 31),
    )))
    punches = database.fetch_punches(conn, comp)
    bad = [p for p in punches if p.code == 31][0]
    assert bad.timestamp is None
    assert bad.status == PunchStatus.INVALID


# ======================================================================
# TEST 6: Templates
# ======================================================================

def test_templates_build_valid_courses():
    names = templates.get_template_names()
    assert names[0] == "Classic - 5 transmitters"
    for name in names:
        tpl = templates.get_template(name)
        points = [ControlPointSpec(**p) for p in tpl["control_points"]]
        course = build_course(points, ScoringMode(tpl["scoring_mode"]), tpl["time_limit"])
        assert course.segments, name
        assert tpl["categories"], name


def test_sprint_template_has_two_segments():
    tpl = templates.get_template("Sprint")
    course = build_course([ControlPointSpec(**p) for p in tpl["control_points"]])
    assert len(course.segments) == 2
    assert course.segments[0].required == (templates.SPECTATOR,)
    assert course.segments[1].required == (templates.FINISH_BEACON,)


def test_get_template_returns_copy():
    tpl = templates.get_template("Sprint")
    tpl["control_points"].clear()
    assert templates.get_template("Sprint")["control_points"]
    assert templates.get_template("No such template") is None


def test_import_template_as_category():
    conn = make_db()
    event_id = database.create_event(conn, "Regional")
    tpl = templates.get_template("Foxoring - Score")
    cat_id = database.import_category_structure(conn, event_id, tpl, name="M19")
    cat = database.fetch_category(conn, cat_id)
    assert cat.name == "M19"
    assert cat.scoring_mode == ScoringMode.SCORE
    assert len(cat.control_points) == 10
    exported = database.export_category_structure(conn, cat_id)
    assert exported["control_points"] == tpl["control_points"]


# ======================================================================
# TEST 7: CSV export and formatting
# ======================================================================

def test_format_elapsed():
    assert timing_engine.format_elapsed(320) == "5:20"
    assert timing_engine.format_elapsed(7265) == "121:05"
    assert timing_engine.format_elapsed(-65) == "-1:05"
    assert timing_engine.format_elapsed(None) == ""
    assert timing_engine.format_time_behind(80) == "+1:20"
    assert timing_engine.format_time_behind(0) == ""


def test_export_category_csv():
    conn = make_db()
    event_id, cat_id = setup_classic(conn)
    fast = database.create_competitor(conn, event_id, "Jana", cat_id, club="OK Praha", si_number=1)
    slow = database.create_competitor(conn, event_id, "Petr", cat_id, club="SK Brno", si_number=2)
    database.create_competitor(conn, event_id, "Eva", cat_id, si_number=3)
    database.add_punches(conn, event_id, fast, [S(0), C(31, 100), C(32, 210), C(33, 300), F(320)])
    database.add_punches(conn, event_id, slow, [S(0), C(31, 100), C(32, 210), C(33, 300), F(400)])

    buf = io.StringIO()
    count = timing_engine.export_category_results_csv(conn, cat_id, buf)
    assert count == 3

    lines = list(csv.reader(io.StringIO(buf.getvalue()), delimiter=";"))
    assert lines[0] == ["Pos", "SI", "Name", "Club", "Category", "Time", "Diff", "Status"]
    assert lines[1] == ["1", "1", "Jana", "OK Praha", "M21", "5:20", "", "OK"]
    assert lines[2] == ["2", "2", "Petr", "SK Brno", "M21", "6:40", "+1:20", "OK"]
    assert lines[3] == ["", "3", "Eva", "", "M21", "", "", "DNS"]
