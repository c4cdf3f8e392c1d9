"""
templates.py — Built-in ARDF course templates.

Each template is a dict matching the export_category_structure /
import_category_structure format in database.py, plus the default category
names it is usually run with. Station codes, not database ids, so the
templates are portable.

Code convention (matching common beacon programming):
  Classic:   transmitters 31-35, finish beacon 100
  Sprint:    slow loop 41-45, spectator 90, fast loop 51-55, finish beacon 100
  Foxoring:  controls 61-70
"""

from __future__ import annotations

import copy

FINISH_BEACON = 100
SPECTATOR = 90


# ─── Helpers ──────────────────────────────────────────────────────────

def _points(codes: list[int], beacon: bool = False, start_order: int = 1,
            points: int = 1) -> list[dict]:
    return [
        {"order": start_order + i, "code": code, "beacon": beacon,
         "separator": False, "points": points}
        for i, code in enumerate(codes)
    ]


def _classic(n: int) -> list[dict]:
    """n transmitters in any order, then the finish beacon."""
    cps = _points(list(range(31, 31 + n)), beacon=True)
    cps += _points([FINISH_BEACON], start_order=n + 1)
    return cps


def _sprint() -> list[dict]:
    """Slow loop, spectator separator, fast loop, finish beacon."""
    cps = _points(list(range(41, 46)), beacon=True)
    cps.append({"order": 6, "code": SPECTATOR, "beacon": False,
                "separator": True, "points": 1})
    cps += _points(list(range(51, 56)), beacon=True, start_order=7)
    cps += _points([FINISH_BEACON], start_order=12)
    return cps


# ─── Category sets ────────────────────────────────────────────────────

_ALL_AGES = ["M21", "W21", "M19", "W19", "M40", "W35", "M50", "W50", "M60", "W60", "M70"]
_SHORT = ["M21", "W21", "M19", "W19"]


BUILTIN_TEMPLATES: dict[str, dict] = {
    "Classic - 5 transmitters": {
        "name": "Classic",
        "scoring_mode": "time",
        "time_limit": 140 * 60,
        "control_points": _classic(5),
        "categories": ["M21", "M19", "M40", "M50"],
    },
    "Classic - 4 transmitters": {
        "name": "Classic",
        "scoring_mode": "time",
        "time_limit": 120 * 60,
        "control_points": _classic(4),
        "categories": ["W21", "W19", "W35", "W50", "M60", "M70"],
    },
    "Classic - 3 transmitters": {
        "name": "Classic",
        "scoring_mode": "time",
        "time_limit": 120 * 60,
        "control_points": _classic(3),
        "categories": ["W60", "M15", "W15"],
    },
    "Sprint": {
        "name": "Sprint",
        "scoring_mode": "time",
        "time_limit": 50 * 60,
        "control_points": _sprint(),
        "categories": _ALL_AGES,
    },
    "Foxoring": {
        "name": "Foxoring",
        "scoring_mode": "time",
        "time_limit": 120 * 60,
        "control_points": (_points(list(range(61, 71)), beacon=True)
                           + _points([FINISH_BEACON], start_order=11)),
        "categories": _SHORT,
    },
    "Foxoring - Score": {
        "name": "Foxoring Score",
        "scoring_mode": "score",
        "time_limit": 60 * 60,
        "control_points": _points(list(range(61, 71)), beacon=True),
        "categories": _SHORT,
    },
}


TEMPLATE_ORDER = [
    "Classic - 5 transmitters",
    "Classic - 4 transmitters",
    "Classic - 3 transmitters",
    "Sprint",
    "Foxoring",
    "Foxoring - Score",
]


def get_template_names() -> list[str]:
    """Return template names in preferred display order."""
    ordered = [n for n in TEMPLATE_ORDER if n in BUILTIN_TEMPLATES]
    for n in sorted(BUILTIN_TEMPLATES.keys()):
        if n not in ordered:
            ordered.append(n)
    return ordered


def get_template(name: str) -> dict | None:
    """Return a copy of the named template, or None."""
    tpl = BUILTIN_TEMPLATES.get(name)
    if tpl is None:
        return None
    return copy.deepcopy(tpl)
