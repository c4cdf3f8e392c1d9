"""
routes.py — REST API endpoints for ARDF Timing.

All endpoints under /api/. Wraps CRUD from ardfcore/database.py and the
result engine via ardfcore/timing_engine.py.
"""

from __future__ import annotations

import io
import logging
import sqlite3
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ardfcore.course import build_course
from ardfcore.database import (
    get_connection,
    create_event, get_all_events, get_event, update_event, delete_event,
    create_category, get_categories, get_category, fetch_category,
    update_category, set_control_points, delete_category,
    export_category_structure, import_category_structure,
    create_competitor, get_competitors, get_competitor, fetch_competitor,
    update_competitor, delete_competitor, set_manual_status,
    fetch_manual_override, check_si_card_unique,
    fetch_punches, add_punches, replace_punches,
    get_readouts, get_readout, get_punches_by_readout, delete_readout,
    log_audit, get_audit_log, get_setting, set_setting, audit_json,
)
from ardfcore.errors import (
    AmbiguousCardAssignment, DuplicateSICard, InvalidCourseDefinition,
)
from ardfcore.models import (
    ControlPointSpec, Punch, RaceStatus, ReadoutBatch, ReadoutPunch,
    RecordType, ScoringMode,
)
from ardfcore.readout import ingest_readout, parse_clock
from ardfcore.recompute import MutationKind
from ardfcore.templates import get_template, get_template_names
from ardfcore.timing_engine import (
    STATUS_LABELS, default_punch_template, export_category_results_csv,
    format_elapsed, get_repunch_interval, recalculate_category,
    recalculate_event, recompute_after,
)

logger = logging.getLogger("ardftiming.api")

router = APIRouter()

NULLABLE_COMPETITOR_FIELDS = {"category_id", "si_number", "start_offset"}


# ─── Helper ──────────────────────────────────────────────────────────

def _row_to_dict(row) -> dict:
    """Convert sqlite3.Row to dict."""
    if row is None:
        return {}
    return dict(row)


def _rows_to_list(rows) -> list[dict]:
    """Convert list of sqlite3.Row to list of dicts."""
    return [dict(r) for r in rows]


def _get_conn():
    return get_connection()


def _require_event(conn, event_id: int):
    event = get_event(conn, event_id)
    if not event:
        raise HTTPException(404, "Event not found")
    return event


def _require_category(conn, category_id: int):
    category = fetch_category(conn, category_id)
    if category is None:
        raise HTTPException(404, "Category not found")
    return category


def _require_competitor(conn, competitor_id: int):
    competitor = get_competitor(conn, competitor_id)
    if not competitor:
        raise HTTPException(404, "Competitor not found")
    return competitor


def _check_zero_time(value: str) -> None:
    try:
        parse_clock(value)
    except ValueError:
        raise HTTPException(400, f"Invalid zero time {value!r}, expected HH:MM:SS")


def _check_course(points, scoring_mode, time_limit, category_id=None) -> None:
    """Reject a control-point list that cannot form a course. Empty is allowed."""
    if not points:
        return
    try:
        build_course(list(points), ScoringMode(scoring_mode), time_limit, category_id)
    except InvalidCourseDefinition as e:
        raise HTTPException(400, e.problem)


def _check_category_in_event(conn, category_id: Optional[int], event_id: int) -> None:
    if category_id is None:
        return
    cat = get_category(conn, category_id)
    if not cat or cat["event_id"] != event_id:
        raise HTTPException(400, "Category does not belong to this event")


def _punch_dict(p: Punch) -> dict:
    return p.model_dump(mode="json")


def _result_dict(row, competitor) -> dict:
    d = row.model_dump(mode="json")
    d["name"] = competitor["name"] if competitor else ""
    d["club"] = competitor["club"] if competitor else ""
    d["status_label"] = STATUS_LABELS[row.final_status]
    d["time"] = format_elapsed(row.elapsed if row.elapsed is not None else row.race_time)
    return d


# ─── Pydantic models ─────────────────────────────────────────────────

class EventCreate(BaseModel):
    name: str
    date: str = ""
    zero_time: str = "00:00:00"

class EventUpdate(BaseModel):
    name: Optional[str] = None
    date: Optional[str] = None
    zero_time: Optional[str] = None

class ControlPointBody(BaseModel):
    order: int
    code: int
    beacon: bool = False
    separator: bool = False
    points: int = 1

    def to_spec(self) -> ControlPointSpec:
        return ControlPointSpec(**self.model_dump())

class CategoryCreate(BaseModel):
    name: str
    control_points: list[ControlPointBody] = []
    time_limit: Optional[int] = None
    scoring_mode: ScoringMode = ScoringMode.TIME

class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    control_points: Optional[list[ControlPointBody]] = None
    time_limit: Optional[int] = None
    scoring_mode: Optional[ScoringMode] = None

class PunchBody(BaseModel):
    record_type: RecordType
    code: Optional[int] = None
    timestamp: Optional[int] = None

    def to_punch(self) -> Punch:
        return Punch(record_type=self.record_type, code=self.code, timestamp=self.timestamp)

class CompetitorCreate(BaseModel):
    name: str
    category_id: Optional[int] = None
    club: str = ""
    si_number: Optional[int] = None
    start_offset: Optional[int] = None
    manual_status: Optional[RaceStatus] = None
    punches: Optional[list[PunchBody]] = None

class CompetitorUpdate(BaseModel):
    name: Optional[str] = None
    category_id: Optional[int] = None
    club: Optional[str] = None
    si_number: Optional[int] = None
    start_offset: Optional[int] = None

class ManualStatusBody(BaseModel):
    manual_status: Optional[RaceStatus] = None

class PunchReplace(BaseModel):
    punches: list[PunchBody]

class ReadoutPunchBody(BaseModel):
    record_type: RecordType
    code: Optional[int] = None
    clock: str

class ReadoutBody(BaseModel):
    si_number: int
    punches: list[ReadoutPunchBody] = []

class SettingsUpdate(BaseModel):
    min_repunch_interval: Optional[int] = None


# ═══════════════════════════════════════════════════════════════════════
# EVENTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/events")
async def list_events():
    conn = _get_conn()
    try:
        return _rows_to_list(get_all_events(conn))
    finally:
        conn.close()


@router.post("/events")
async def create_event_endpoint(body: EventCreate):
    _check_zero_time(body.zero_time)
    conn = _get_conn()
    try:
        eid = create_event(conn, body.name, body.date, body.zero_time)
        log_audit(conn, eid, "create_event", "event", eid, body.name)
        return {"id": eid}
    finally:
        conn.close()


@router.get("/events/{event_id}")
async def get_event_endpoint(event_id: int):
    conn = _get_conn()
    try:
        return _row_to_dict(_require_event(conn, event_id))
    finally:
        conn.close()


@router.put("/events/{event_id}")
async def update_event_endpoint(event_id: int, body: EventUpdate):
    if body.zero_time is not None:
        _check_zero_time(body.zero_time)
    conn = _get_conn()
    try:
        _require_event(conn, event_id)
        fields = {k: v for k, v in body.model_dump().items() if v is not None}
        if fields:
            update_event(conn, event_id, **fields)
            log_audit(conn, event_id, "update_event", "event", event_id,
                      after_val=audit_json(fields))
        return {"ok": True}
    finally:
        conn.close()


@router.delete("/events/{event_id}")
async def delete_event_endpoint(event_id: int):
    conn = _get_conn()
    try:
        _require_event(conn, event_id)
        delete_event(conn, event_id)
        logger.info("Deleted event %s", event_id)
        return {"ok": True}
    finally:
        conn.close()


@router.post("/events/{event_id}/recalculate")
async def recalculate_endpoint(event_id: int):
    conn = _get_conn()
    try:
        _require_event(conn, event_id)
        report = recalculate_event(conn, event_id)
        log_audit(conn, event_id, "recalculate_all", "event", event_id)
        return {"ok": True, "diffs": {str(k): v for k, v in report.items()}}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# CATEGORIES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/events/{event_id}/categories")
async def list_categories(event_id: int):
    conn = _get_conn()
    try:
        return [fetch_category(conn, c["id"]).model_dump(mode="json")
                for c in get_categories(conn, event_id)]
    finally:
        conn.close()


@router.post("/events/{event_id}/categories")
async def create_category_endpoint(event_id: int, body: CategoryCreate):
    points = [p.to_spec() for p in body.control_points]
    _check_course(points, body.scoring_mode, body.time_limit)
    conn = _get_conn()
    try:
        _require_event(conn, event_id)
        try:
            cid = create_category(conn, event_id, body.name, points,
                                  body.time_limit, body.scoring_mode)
        except sqlite3.IntegrityError as e:
            raise HTTPException(400, str(e))
        log_audit(conn, event_id, "create_category", "category", cid, body.name)
        return {"id": cid}
    finally:
        conn.close()


@router.get("/categories/{category_id}")
async def get_category_endpoint(category_id: int):
    conn = _get_conn()
    try:
        return _require_category(conn, category_id).model_dump(mode="json")
    finally:
        conn.close()


@router.put("/categories/{category_id}")
async def update_category_endpoint(category_id: int, body: CategoryUpdate):
    conn = _get_conn()
    try:
        current = _require_category(conn, category_id)
        # time_limit may be cleared with an explicit null
        fields = {k: v for k, v in body.model_dump(exclude_unset=True).items()
                  if v is not None or k == "time_limit"}
        points = fields.pop("control_points", None)

        new_points = [p.to_spec() for p in body.control_points] if points is not None \
            else list(current.control_points)
        mode = fields.get("scoring_mode", current.scoring_mode)
        limit = fields["time_limit"] if "time_limit" in fields else current.time_limit
        _check_course(new_points, mode, limit, category_id)

        before = export_category_structure(conn, category_id)
        if fields:
            update_category(conn, category_id, **fields)
        if points is not None:
            set_control_points(conn, category_id, new_points)
        log_audit(conn, current.event_id, "update_category", "category", category_id,
                  before_val=audit_json(before),
                  after_val=audit_json(export_category_structure(conn, category_id)))

        recompute_after(conn, MutationKind.CATEGORY, category_id)
        return {"ok": True}
    finally:
        conn.close()


@router.delete("/categories/{category_id}")
async def delete_category_endpoint(category_id: int):
    conn = _get_conn()
    try:
        current = _require_category(conn, category_id)
        ok, msg = delete_category(conn, category_id)
        if not ok:
            raise HTTPException(400, msg)
        log_audit(conn, current.event_id, "delete_category", "category", category_id,
                  current.name)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/templates")
async def list_templates():
    """List built-in course templates."""
    out = []
    for name in get_template_names():
        tpl = get_template(name)
        out.append({
            "name": name,
            "scoring_mode": tpl["scoring_mode"],
            "time_limit": tpl["time_limit"],
            "controls": len(tpl["control_points"]),
            "categories": tpl["categories"],
        })
    return out


@router.post("/events/{event_id}/apply-template")
async def apply_template(event_id: int, name: str = Query(...)):
    """Create the template's categories in an event. Existing names are skipped."""
    tpl = get_template(name)
    if tpl is None:
        raise HTTPException(404, f"Template '{name}' not found")

    conn = _get_conn()
    try:
        _require_event(conn, event_id)
        existing = {c["name"] for c in get_categories(conn, event_id)}
        created, warnings = [], []
        for cat_name in tpl["categories"]:
            if cat_name in existing:
                warnings.append(f"Category '{cat_name}' already exists")
                continue
            created.append(import_category_structure(conn, event_id, tpl, name=cat_name))
        log_audit(conn, event_id, "apply_template", "event", event_id, name)
        return {"created": created, "warnings": warnings}
    finally:
        conn.close()


@router.post("/categories/{category_id}/apply-template")
async def apply_template_to_category(category_id: int, name: str = Query(...)):
    """Replace a category's course with the template's."""
    tpl = get_template(name)
    if tpl is None:
        raise HTTPException(404, f"Template '{name}' not found")

    conn = _get_conn()
    try:
        current = _require_category(conn, category_id)
        update_category(conn, category_id, scoring_mode=tpl["scoring_mode"],
                        time_limit=tpl["time_limit"])
        set_control_points(conn, category_id,
                           [ControlPointSpec(**p) for p in tpl["control_points"]])
        log_audit(conn, current.event_id, "apply_template", "category", category_id, name)
        recompute_after(conn, MutationKind.CATEGORY, category_id)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# COMPETITORS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/events/{event_id}/competitors")
async def list_competitors(event_id: int):
    conn = _get_conn()
    try:
        return _rows_to_list(get_competitors(conn, event_id))
    finally:
        conn.close()


@router.get("/events/{event_id}/si-check")
async def si_check(event_id: int, si_number: int = Query(...),
                   exclude: Optional[int] = Query(None)):
    conn = _get_conn()
    try:
        return {"unique": check_si_card_unique(conn, si_number, event_id, exclude)}
    finally:
        conn.close()


@router.get("/punch-template")
async def punch_template():
    """Punch set pre-filled when entering a competitor by hand."""
    return [_punch_dict(p) for p in default_punch_template()]


@router.post("/events/{event_id}/competitors")
async def create_competitor_endpoint(event_id: int, body: CompetitorCreate):
    conn = _get_conn()
    try:
        _require_event(conn, event_id)
        _check_category_in_event(conn, body.category_id, event_id)
        try:
            cid = create_competitor(conn, event_id, body.name, body.category_id,
                                    body.club, body.si_number, body.start_offset)
        except DuplicateSICard as e:
            raise HTTPException(409, str(e))
        if body.manual_status is not None:
            set_manual_status(conn, cid, body.manual_status)
        if body.punches:
            add_punches(conn, event_id, cid, [p.to_punch() for p in body.punches])
        log_audit(conn, event_id, "create_competitor", "competitor", cid, body.name)

        recompute_after(conn, MutationKind.COMPETITOR, body.category_id)
        return {"id": cid}
    finally:
        conn.close()


@router.get("/competitors/{competitor_id}")
async def get_competitor_endpoint(competitor_id: int):
    conn = _get_conn()
    try:
        _require_competitor(conn, competitor_id)
        return fetch_competitor(conn, competitor_id).model_dump(mode="json")
    finally:
        conn.close()


@router.put("/competitors/{competitor_id}")
async def update_competitor_endpoint(competitor_id: int, body: CompetitorUpdate):
    conn = _get_conn()
    try:
        current = _require_competitor(conn, competitor_id)
        fields = {k: v for k, v in body.model_dump(exclude_unset=True).items()
                  if v is not None or k in NULLABLE_COMPETITOR_FIELDS}
        if "category_id" in fields:
            _check_category_in_event(conn, fields["category_id"], current["event_id"])
        if fields:
            try:
                update_competitor(conn, competitor_id, **fields)
            except DuplicateSICard as e:
                raise HTTPException(409, str(e))
            log_audit(conn, current["event_id"], "update_competitor", "competitor",
                      competitor_id, before_val=audit_json(_row_to_dict(current)),
                      after_val=audit_json(fields))

        updated = get_competitor(conn, competitor_id)
        recompute_after(conn, MutationKind.COMPETITOR, updated["category_id"],
                        previous_category_id=current["category_id"])
        return {"ok": True}
    finally:
        conn.close()


@router.delete("/competitors/{competitor_id}")
async def delete_competitor_endpoint(competitor_id: int):
    conn = _get_conn()
    try:
        current = _require_competitor(conn, competitor_id)
        delete_competitor(conn, competitor_id)
        log_audit(conn, current["event_id"], "delete_competitor", "competitor",
                  competitor_id, current["name"])
        recompute_after(conn, MutationKind.COMPETITOR, current["category_id"])
        return {"ok": True}
    finally:
        conn.close()


@router.get("/competitors/{competitor_id}/status")
async def get_manual_status(competitor_id: int):
    conn = _get_conn()
    try:
        _require_competitor(conn, competitor_id)
        status = fetch_manual_override(conn, competitor_id)
        return {"manual_status": status.value if status else None}
    finally:
        conn.close()


@router.put("/competitors/{competitor_id}/status")
async def set_manual_status_endpoint(competitor_id: int, body: ManualStatusBody):
    """Set or clear (null) the manual status override."""
    conn = _get_conn()
    try:
        current = _require_competitor(conn, competitor_id)
        set_manual_status(conn, competitor_id, body.manual_status)
        log_audit(conn, current["event_id"], "manual_status", "competitor", competitor_id,
                  before_val=current["manual_status"] or "",
                  after_val=body.manual_status.value if body.manual_status else "")
        recompute_after(conn, MutationKind.OVERRIDE, current["category_id"])
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# PUNCHES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/competitors/{competitor_id}/punches")
async def list_punches(competitor_id: int):
    conn = _get_conn()
    try:
        _require_competitor(conn, competitor_id)
        return [_punch_dict(p) for p in fetch_punches(conn, competitor_id)]
    finally:
        conn.close()


@router.put("/competitors/{competitor_id}/punches")
async def replace_punches_endpoint(competitor_id: int, body: PunchReplace):
    """Manual punch edit: the body becomes the competitor's whole punch set."""
    conn = _get_conn()
    try:
        current = _require_competitor(conn, competitor_id)
        before = [_punch_dict(p) for p in fetch_punches(conn, competitor_id)]
        ids = replace_punches(conn, current["event_id"], competitor_id,
                              [p.to_punch() for p in body.punches])
        log_audit(conn, current["event_id"], "replace_punches", "competitor", competitor_id,
                  before_val=audit_json(before),
                  after_val=audit_json([p.model_dump(mode="json") for p in body.punches]))
        recompute_after(conn, MutationKind.PUNCHES, current["category_id"])
        return {"ok": True, "ids": ids}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# READOUTS
# ═══════════════════════════════════════════════════════════════════════

@router.post("/events/{event_id}/readouts")
async def ingest_readout_endpoint(event_id: int, body: ReadoutBody):
    batch = ReadoutBatch(
        si_number=body.si_number,
        punches=tuple(ReadoutPunch(**p.model_dump()) for p in body.punches),
    )
    conn = _get_conn()
    try:
        _require_event(conn, event_id)
        try:
            return ingest_readout(conn, event_id, batch)
        except AmbiguousCardAssignment as e:
            logger.warning("Readout rejected: %s", e)
            raise HTTPException(409, str(e))
    finally:
        conn.close()


@router.get("/events/{event_id}/readouts")
async def list_readouts(event_id: int):
    conn = _get_conn()
    try:
        return _rows_to_list(get_readouts(conn, event_id))
    finally:
        conn.close()


@router.get("/readouts/{readout_id}/punches")
async def list_readout_punches(readout_id: int):
    """Punches brought in by one readout, in stored order."""
    conn = _get_conn()
    try:
        if not get_readout(conn, readout_id):
            raise HTTPException(404, "Readout not found")
        return [_punch_dict(p) for p in get_punches_by_readout(conn, readout_id)]
    finally:
        conn.close()


@router.delete("/readouts/{readout_id}")
async def delete_readout_endpoint(readout_id: int):
    """Delete a readout and the punches it brought in."""
    conn = _get_conn()
    try:
        readout = get_readout(conn, readout_id)
        if not readout:
            raise HTTPException(404, "Readout not found")
        competitor = get_competitor(conn, readout["competitor_id"])
        delete_readout(conn, readout_id)
        log_audit(conn, readout["event_id"], "delete_readout", "readout", readout_id,
                  f"card={readout['si_number']}")
        recompute_after(conn, MutationKind.PUNCHES,
                        competitor["category_id"] if competitor else None)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/categories/{category_id}/results")
async def get_category_results(category_id: int):
    conn = _get_conn()
    try:
        _require_category(conn, category_id)
        try:
            rows, _ = recalculate_category(conn, category_id)
        except InvalidCourseDefinition as e:
            raise HTTPException(400, e.problem)
        return [_result_dict(r, get_competitor(conn, r.competitor_id)) for r in rows]
    finally:
        conn.close()


@router.get("/competitors/{competitor_id}/result")
async def get_competitor_result(competitor_id: int):
    conn = _get_conn()
    try:
        current = _require_competitor(conn, competitor_id)
        if current["category_id"] is None:
            raise HTTPException(400, "Competitor has no category")
        try:
            rows, _ = recalculate_category(conn, current["category_id"])
        except InvalidCourseDefinition as e:
            raise HTTPException(400, e.problem)
        for r in rows:
            if r.competitor_id == competitor_id:
                return _result_dict(r, current)
        raise HTTPException(404, "Result not found")
    finally:
        conn.close()


@router.get("/categories/{category_id}/export/csv")
async def export_csv_endpoint(category_id: int):
    """Export category results as CSV download."""
    conn = _get_conn()
    try:
        _require_category(conn, category_id)
        buf = io.StringIO()
        try:
            export_category_results_csv(conn, category_id, buf)
        except InvalidCourseDefinition as e:
            raise HTTPException(400, e.problem)
        buf.seek(0)
        return StreamingResponse(
            buf,
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename=results_{category_id}.csv"},
        )
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# SETTINGS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/settings")
async def get_settings():
    conn = _get_conn()
    try:
        last = get_setting(conn, "last_read_card", "")
        return {
            "min_repunch_interval": get_repunch_interval(conn),
            "last_read_card": int(last) if last else None,
        }
    finally:
        conn.close()


@router.put("/settings")
async def update_settings(body: SettingsUpdate):
    conn = _get_conn()
    try:
        if body.min_repunch_interval is not None:
            if body.min_repunch_interval < 0:
                raise HTTPException(400, "min_repunch_interval must be >= 0")
            set_setting(conn, "min_repunch_interval", str(body.min_repunch_interval))
            log_audit(conn, None, "update_setting", "settings", None,
                      f"min_repunch_interval={body.min_repunch_interval}")
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# AUDIT LOG
# ═══════════════════════════════════════════════════════════════════════

@router.get("/events/{event_id}/audit")
async def get_event_audit(event_id: int, limit: int = 100):
    """Get audit log for an event."""
    conn = _get_conn()
    try:
        return _rows_to_list(get_audit_log(conn, event_id, limit))
    finally:
        conn.close()


@router.get("/audit")
async def get_all_audit(limit: int = 100):
    """Get full audit log."""
    conn = _get_conn()
    try:
        return _rows_to_list(get_audit_log(conn, limit=limit))
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# SYSTEM STATUS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/status")
async def system_status():
    conn = _get_conn()
    try:
        events = conn.execute("SELECT COUNT(*) as cnt FROM events").fetchone()["cnt"]
        punches = conn.execute("SELECT COUNT(*) as cnt FROM punches").fetchone()["cnt"]
        last = get_setting(conn, "last_read_card", "")
        return {
            "server": "ARDFTiming",
            "version": "1.0",
            "event_count": events,
            "punch_count": punches,
            "last_read_card": int(last) if last else None,
        }
    finally:
        conn.close()
