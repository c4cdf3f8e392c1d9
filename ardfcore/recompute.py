"""
recompute.py — When results must be recomputed, and memoization of the
per-competitor validation between recomputes.

The engine keeps no state of its own: callers invoke compute_category()
whenever affected_categories() says a mutation touched a category.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from enum import Enum
from typing import Iterable, Optional

from ardfcore.course import CourseDefinition
from ardfcore.models import Punch, ResultRow

logger = logging.getLogger("ardftiming.recompute")


class MutationKind(str, Enum):
    CATEGORY = "category"
    PUNCHES = "punches"
    COMPETITOR = "competitor"
    OVERRIDE = "override"


def affected_categories(kind: MutationKind, category_id: Optional[int],
                        previous_category_id: Optional[int] = None) -> set[int]:
    """Category ids whose rows are stale after a mutation.

    Ranking is category-scoped, so touching one competitor invalidates the
    whole category. A competitor moved between categories invalidates both.
    """
    affected = set()
    if category_id is not None:
        affected.add(category_id)
    if kind == MutationKind.COMPETITOR and previous_category_id is not None:
        affected.add(previous_category_id)
    return affected


def competitor_fingerprint(course: CourseDefinition, punches: Iterable[Punch],
                           min_repunch_interval: int) -> str:
    """Hash of (course version, punch set). Input order does not matter."""
    h = hashlib.sha1()
    h.update(f"{course.version}|{min_repunch_interval}".encode())
    records = sorted(
        (p.id if p.id is not None else -1, p.record_type.value,
         p.code if p.code is not None else -1,
         p.timestamp if p.timestamp is not None else -1)
        for p in punches
    )
    for rec in records:
        h.update(repr(rec).encode())
    return h.hexdigest()


class ResultCache:
    """Validation results keyed by competitor fingerprint.

    Safe to share between threads computing different categories.
    """

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self._data: dict[str, object] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, fingerprint: str):
        with self._lock:
            value = self._data.get(fingerprint)
            if value is None:
                self.misses += 1
            else:
                self.hits += 1
            return value

    def put(self, fingerprint: str, validation) -> None:
        with self._lock:
            if len(self._data) >= self.max_entries:
                # Oldest insertion goes first
                self._data.pop(next(iter(self._data)))
            self._data[fingerprint] = validation

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


def diff_results(old: list[ResultRow], new: list[ResultRow]) -> list[str]:
    """Describe differences between two row sets of the same category."""
    diffs: list[str] = []
    old_by_id = {r.competitor_id: r for r in old}
    new_by_id = {r.competitor_id: r for r in new}

    for cid in sorted(set(old_by_id) | set(new_by_id)):
        before = old_by_id.get(cid)
        after = new_by_id.get(cid)
        if before is None:
            diffs.append(f"result NEW: competitor={cid}")
            continue
        if after is None:
            diffs.append(f"result MISSING: competitor={cid}")
            continue
        if before.elapsed != after.elapsed:
            diffs.append(f"result DIFF: competitor={cid} elapsed {before.elapsed} → {after.elapsed}")
        if before.score != after.score:
            diffs.append(f"result DIFF: competitor={cid} score {before.score} → {after.score}")
        if before.final_status != after.final_status:
            diffs.append(
                f"result STATUS: competitor={cid} "
                f"{before.final_status.value} → {after.final_status.value}"
            )
        if before.rank != after.rank:
            diffs.append(f"result POS: competitor={cid} rank {before.rank} → {after.rank}")

    return diffs
