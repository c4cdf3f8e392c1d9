"""
test_api.py — REST API end to end against a temp database.
"""

import os
import sys

import pytest
from fastapi.testclient import TestClient

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from server import app

CLASSIC = [
    {"order": 1, "code": 31},
    {"order": 2, "code": 32},
    {"order": 3, "code": 33},
]

CLEAN_RUN = [
    {"record_type": "start", "timestamp": 0},
    {"record_type": "control", "code": 31, "timestamp": 100},
    {"record_type": "control", "code": 32, "timestamp": 210},
    {"record_type": "control", "code": 33, "timestamp": 300},
    {"record_type": "finish", "timestamp": 320},
]


@pytest.fixture
def client(monkeypatch, tmp_path):
    monkeypatch.setenv("ARDFTIMING_DB", str(tmp_path / "api.db"))
    with TestClient(app) as c:
        yield c


def _setup(client, zero_time="10:00:00"):
    event_id = client.post("/api/events", json={"name": "Club Championship",
                                                "zero_time": zero_time}).json()["id"]
    r = client.post(f"/api/events/{event_id}/categories",
                    json={"name": "M21", "control_points": CLASSIC})
    assert r.status_code == 200
    return event_id, r.json()["id"]


def _competitor(client, event_id, cat_id, name, si):
    r = client.post(f"/api/events/{event_id}/competitors",
                    json={"name": name, "category_id": cat_id, "si_number": si})
    assert r.status_code == 200
    return r.json()["id"]


# ======================================================================
# Events and categories
# ======================================================================

def test_event_crud(client):
    event_id, _ = _setup(client)
    assert client.get(f"/api/events/{event_id}").json()["zero_time"] == "10:00:00"
    assert client.put(f"/api/events/{event_id}", json={"name": "Renamed"}).status_code == 200
    assert client.get(f"/api/events/{event_id}").json()["name"] == "Renamed"
    assert client.delete(f"/api/events/{event_id}").json() == {"ok": True}
    assert client.get(f"/api/events/{event_id}").status_code == 404


def test_event_rejects_bad_zero_time(client):
    r = client.post("/api/events", json={"name": "X", "zero_time": "ten o'clock"})
    assert r.status_code == 400


def test_invalid_course_is_rejected(client):
    event_id, _ = _setup(client)
    r = client.post(f"/api/events/{event_id}/categories", json={
        "name": "Broken",
        "control_points": [{"order": 1, "code": 31}, {"order": 2, "code": 90, "separator": True}],
    })
    assert r.status_code == 400
    assert "last" in r.json()["detail"]


def test_category_update_recomputes(client):
    event_id, cat_id = _setup(client)
    comp = _competitor(client, event_id, cat_id, "Jana", 1001)
    client.put(f"/api/competitors/{comp}/punches", json={"punches": CLEAN_RUN})
    assert client.get(f"/api/categories/{cat_id}/results").json()[0]["final_status"] == "ok"

    r = client.put(f"/api/categories/{cat_id}", json={"time_limit": 300})
    assert r.status_code == 200
    row = client.get(f"/api/categories/{cat_id}/results").json()[0]
    assert row["final_status"] == "dsq"
    assert row["status_reason"] == "over_time_limit"

    client.put(f"/api/categories/{cat_id}", json={"time_limit": None})
    assert client.get(f"/api/categories/{cat_id}").json()["time_limit"] is None


def test_delete_category_with_competitors_fails(client):
    event_id, cat_id = _setup(client)
    _competitor(client, event_id, cat_id, "Jana", 1001)
    r = client.delete(f"/api/categories/{cat_id}")
    assert r.status_code == 400


def test_templates(client):
    event_id, _ = _setup(client)
    names = [t["name"] for t in client.get("/api/templates").json()]
    assert "Sprint" in names

    r = client.post(f"/api/events/{event_id}/apply-template", params={"name": "Classic - 5 transmitters"})
    body = r.json()
    # M21 already exists in the event
    assert len(body["created"]) == 3
    assert body["warnings"] == ["Category 'M21' already exists"]

    r = client.post(f"/api/events/{event_id}/apply-template", params={"name": "Nope"})
    assert r.status_code == 404


# ======================================================================
# Competitors
# ======================================================================

def test_si_reuse_rejected(client):
    event_id, cat_id = _setup(client)
    _competitor(client, event_id, cat_id, "Jana", 1001)
    check = client.get(f"/api/events/{event_id}/si-check", params={"si_number": 1001}).json()
    assert check == {"unique": False}

    r = client.post(f"/api/events/{event_id}/competitors",
                    json={"name": "Petr", "category_id": cat_id, "si_number": 1001})
    assert r.status_code == 409
    assert len(client.get(f"/api/events/{event_id}/competitors").json()) == 1


def test_si_conflict_at_insert_returns_409(client, monkeypatch):
    from ardfcore import database
    event_id, cat_id = _setup(client)
    _competitor(client, event_id, cat_id, "Jana", 1001)
    # Another writer took the card between the check and the write
    monkeypatch.setattr(database, "check_si_card_unique", lambda *a, **kw: True)
    r = client.post(f"/api/events/{event_id}/competitors",
                    json={"name": "Petr", "category_id": cat_id, "si_number": 1001})
    assert r.status_code == 409
    assert len(client.get(f"/api/events/{event_id}/competitors").json()) == 1


def test_punch_template(client):
    body = client.get("/api/punch-template").json()
    assert [(p["record_type"], p["timestamp"]) for p in body] == [("start", 0), ("finish", 0)]


def test_create_competitor_with_punches_and_status(client):
    event_id, cat_id = _setup(client)
    r = client.post(f"/api/events/{event_id}/competitors", json={
        "name": "Jana", "category_id": cat_id, "si_number": 1001,
        "punches": CLEAN_RUN, "manual_status": "dnf",
    })
    comp = r.json()["id"]
    result = client.get(f"/api/competitors/{comp}/result").json()
    assert result["computed_status"] == "ok"
    assert result["final_status"] == "dnf"
    assert result["rank"] is None


def test_results_and_override(client):
    event_id, cat_id = _setup(client)
    fast = _competitor(client, event_id, cat_id, "Jana", 1001)
    slow = _competitor(client, event_id, cat_id, "Petr", 1002)
    client.put(f"/api/competitors/{fast}/punches", json={"punches": CLEAN_RUN})
    slower = CLEAN_RUN[:-1] + [{"record_type": "finish", "timestamp": 400}]
    client.put(f"/api/competitors/{slow}/punches", json={"punches": slower})

    rows = client.get(f"/api/categories/{cat_id}/results").json()
    assert [(r["competitor_id"], r["rank"]) for r in rows] == [(fast, 1), (slow, 2)]
    assert [s["leg"] for s in rows[0]["splits"]] == [100, 110, 90, 20]
    assert rows[0]["time"] == "5:20"

    r = client.put(f"/api/competitors/{fast}/status", json={"manual_status": "dnf"})
    assert r.status_code == 200
    assert client.get(f"/api/competitors/{fast}/status").json() == {"manual_status": "dnf"}
    rows = client.get(f"/api/categories/{cat_id}/results").json()
    assert rows[0]["competitor_id"] == slow and rows[0]["rank"] == 1
    assert rows[1]["computed_status"] == "ok"
    assert rows[1]["final_status"] == "dnf"

    audit = client.get(f"/api/events/{event_id}/audit").json()
    assert any(a["action"] == "manual_status" for a in audit)


def test_punch_statuses_after_edit(client):
    event_id, cat_id = _setup(client)
    comp = _competitor(client, event_id, cat_id, "Jana", 1001)
    swapped = [
        {"record_type": "start", "timestamp": 0},
        {"record_type": "control", "code": 32, "timestamp": 100},
        {"record_type": "control", "code": 31, "timestamp": 150},
        {"record_type": "control", "code": 33, "timestamp": 300},
        {"record_type": "finish", "timestamp": 320},
    ]
    client.put(f"/api/competitors/{comp}/punches", json={"punches": swapped})
    punches = client.get(f"/api/competitors/{comp}/punches").json()
    assert [p["status"] for p in punches] == ["valid", "invalid", "valid", "invalid", "invalid"]
    result = client.get(f"/api/competitors/{comp}/result").json()
    assert result["final_status"] == "dsq"


# ======================================================================
# Readouts
# ======================================================================

def test_readout_flow(client):
    event_id, cat_id = _setup(client)
    comp = _competitor(client, event_id, cat_id, "Jana", 1001)
    r = client.post(f"/api/events/{event_id}/readouts", json={
        "si_number": 1001,
        "punches": [
            {"record_type": "start", "clock": "10:00:00"},
            {"record_type": "control", "code": 31, "clock": "10:01:40"},
            {"record_type": "control", "code": 32, "clock": "10:03:30"},
            {"record_type": "control", "code": 33, "clock": "10:05:00"},
            {"record_type": "finish", "clock": "10:05:20"},
        ],
    })
    assert r.status_code == 200
    readout_id = r.json()["readout_id"]
    assert r.json()["competitor_id"] == comp

    rows = client.get(f"/api/categories/{cat_id}/results").json()
    assert rows[0]["elapsed"] == 320
    assert client.get("/api/settings").json()["last_read_card"] == 1001

    listed = client.get(f"/api/events/{event_id}/readouts").json()
    assert [x["id"] for x in listed] == [readout_id]
    card = client.get(f"/api/readouts/{readout_id}/punches").json()
    assert [p["timestamp"] for p in card] == [0, 100, 210, 300, 320]
    assert all(p["readout_id"] == readout_id for p in card)

    assert client.delete(f"/api/readouts/{readout_id}").json() == {"ok": True}
    assert client.get(f"/api/readouts/{readout_id}/punches").status_code == 404
    assert client.get(f"/api/competitors/{comp}/punches").json() == []
    rows = client.get(f"/api/categories/{cat_id}/results").json()
    assert rows[0]["final_status"] == "dns"


def test_readout_unknown_card(client):
    event_id, _ = _setup(client)
    r = client.post(f"/api/events/{event_id}/readouts", json={
        "si_number": 4242, "punches": [{"record_type": "start", "clock": "10:00:00"}],
    })
    assert r.status_code == 409


# ======================================================================
# Export, settings, status
# ======================================================================

def test_csv_export(client):
    event_id, cat_id = _setup(client)
    comp = _competitor(client, event_id, cat_id, "Jana", 1001)
    client.put(f"/api/competitors/{comp}/punches", json={"punches": CLEAN_RUN})
    r = client.get(f"/api/categories/{cat_id}/export/csv")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    lines = r.text.strip().splitlines()
    assert lines[0].startswith("Pos;SI;Name")
    assert lines[1].startswith("1;1001;Jana;")


def test_settings(client):
    assert client.get("/api/settings").json()["min_repunch_interval"] == 2
    assert client.put("/api/settings", json={"min_repunch_interval": 5}).status_code == 200
    assert client.get("/api/settings").json()["min_repunch_interval"] == 5
    assert client.put("/api/settings", json={"min_repunch_interval": -1}).status_code == 400


def test_status(client):
    _setup(client)
    body = client.get("/api/status").json()
    assert body["server"] == "ARDFTiming"
    assert body["event_count"] == 1
