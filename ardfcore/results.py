"""
results.py — Result aggregation per category: elapsed time, splits,
segment times, ranking and manual overrides.

compute_category() is pure: the same course and punch sets always give
identical rows. Persisting them is the caller's business.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from ardfcore.course import CourseDefinition
from ardfcore.models import (
    CompetitorPunches, RaceStatus, ResultRow, ScoringMode, Split,
)
from ardfcore.normalizer import DEFAULT_REPUNCH_INTERVAL, normalize
from ardfcore.recompute import ResultCache, competitor_fingerprint
from ardfcore.validator import Validation, validate

logger = logging.getLogger("ardftiming.engine")


# ---------------------------------------------------------------------------
# Splits
# ---------------------------------------------------------------------------

def compute_splits(course: CourseDefinition, v: Validation) -> tuple[Split, ...]:
    """One split per required control in course order, plus the finish leg.

    Beacons are never split-indexed, so beacon visiting order cannot change
    the splits. A leg is None when either end was not accepted.
    """
    splits = []
    prev = v.start_time
    for seg_index, code in course.required_codes:
        t = v.accepted.get(code)
        leg = t - prev if t is not None and prev is not None else None
        cumulative = t - v.start_time if t is not None and v.start_time is not None else None
        splits.append(Split(code=code, segment=seg_index, leg=leg, cumulative=cumulative))
        prev = t

    finish = v.finish_time
    leg = finish - prev if finish is not None and prev is not None else None
    cumulative = v.race_time if finish is not None else None
    splits.append(Split(code=None, segment=course.last_segment, leg=leg, cumulative=cumulative))
    return tuple(splits)


def compute_segment_times(course: CourseDefinition,
                          v: Validation) -> tuple[Optional[int], ...]:
    """Time spent in each segment: entry (START or previous separator) to
    completion (its separator, or FINISH for the last segment)."""
    times = []
    entry = v.start_time
    for seg in course.segments:
        if seg.index == course.last_segment:
            exit_ = v.finish_time
        else:
            exit_ = v.accepted.get(seg.required[-1])
        if entry is not None and exit_ is not None:
            times.append(exit_ - entry)
        else:
            times.append(None)
        entry = exit_
    return tuple(times)


# ---------------------------------------------------------------------------
# Rows and ranking
# ---------------------------------------------------------------------------

def build_row(course: CourseDefinition, entry: CompetitorPunches,
              v: Validation) -> ResultRow:
    competitor = entry.competitor
    manual = competitor.manual_status
    elapsed = v.race_time if course.scoring_mode == ScoringMode.TIME and v.finish_time is not None else None
    return ResultRow(
        competitor_id=competitor.id,
        si_number=competitor.si_number,
        elapsed=elapsed,
        race_time=v.race_time,
        splits=compute_splits(course, v),
        segment_times=compute_segment_times(course, v),
        score=v.score,
        computed_status=v.status,
        status_reason=v.reason,
        manual_status=manual,
        final_status=manual if manual is not None else v.status,
    )


def _unranked_key(row: ResultRow) -> tuple:
    return (row.si_number is None, row.si_number or 0, row.competitor_id)


def _ranking_key(mode: ScoringMode, row: ResultRow) -> Optional[tuple]:
    """Key OK rows are ranked by; None when the row cannot be ranked."""
    if mode == ScoringMode.SCORE:
        if row.score is None:
            return None
        race_time = row.race_time if row.race_time is not None else float("inf")
        return (-row.score, race_time)
    if row.elapsed is None:
        return None
    return (row.elapsed,)


def rank_rows(mode: ScoringMode, rows: Iterable[ResultRow]) -> list[ResultRow]:
    """Order rows and assign ranks.

    OK rows come first by elapsed (time mode) or score then time (score
    mode); equal keys share a rank. Everything else follows unranked,
    ordered by SI-card number.
    """
    ok_rows = []
    rest = []
    for row in rows:
        if row.final_status == RaceStatus.OK:
            ok_rows.append(row)
        else:
            rest.append(row.model_copy(update={"rank": None}))

    ranked = []
    unrankable = []
    for row in ok_rows:
        key = _ranking_key(mode, row)
        if key is None:
            unrankable.append(row.model_copy(update={"rank": None}))
        else:
            ranked.append((key, row))

    ranked.sort(key=lambda kr: (kr[0], _unranked_key(kr[1])))

    out = []
    prev_key = None
    rank = 0
    for pos, (key, row) in enumerate(ranked, 1):
        if key != prev_key:
            rank = pos
            prev_key = key
        out.append(row.model_copy(update={"rank": rank}))

    unrankable.sort(key=_unranked_key)
    rest.sort(key=_unranked_key)
    return out + unrankable + rest


def compute_competitor(course: CourseDefinition, entry: CompetitorPunches,
                       min_repunch_interval: int = DEFAULT_REPUNCH_INTERVAL,
                       cache: Optional[ResultCache] = None) -> Validation:
    """Normalize and validate one competitor, through the cache if given."""
    fp = None
    if cache is not None:
        fp = competitor_fingerprint(course, entry.punches, min_repunch_interval)
        cached = cache.get(fp)
        if cached is not None:
            return cached

    v = validate(course, normalize(entry.punches, min_repunch_interval))

    if cache is not None:
        cache.put(fp, v)
    return v


def compute_category(course: CourseDefinition,
                     competitors: Iterable[CompetitorPunches],
                     min_repunch_interval: int = DEFAULT_REPUNCH_INTERVAL,
                     cache: Optional[ResultCache] = None) -> list[ResultRow]:
    """Compute the ranked result rows of one category."""
    rows = []
    for entry in competitors:
        v = compute_competitor(course, entry, min_repunch_interval, cache)
        rows.append(build_row(course, entry, v))

    ranked = rank_rows(course.scoring_mode, rows)
    logger.info("Category %s: %d row(s), %d ranked",
                course.category_id, len(ranked),
                sum(1 for r in ranked if r.rank is not None))
    return ranked


