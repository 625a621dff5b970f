from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Sequence

from ..exceptions import CalculationInvariantError
from .periods import inclusive_days, month_bounds, parse_lenient_date

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BreakPeriod:
    start: date | str | None
    end: date | str | None


@dataclass(frozen=True, slots=True)
class StayPeriod:
    tenant_id: int
    start_date: date | str | None
    end_date: date | str | None = None
    breaks: tuple[BreakPeriod, ...] = ()


@dataclass(frozen=True, slots=True)
class OccupancySummary:
    present_days: dict[int, int] = field(default_factory=dict)

    @property
    def active_tenant_ids(self) -> list[int]:
        return list(self.present_days.keys())

    @property
    def headcount(self) -> int:
        return len(self.present_days)

    @property
    def total_person_days(self) -> int:
        return sum(self.present_days.values())


def _stay_bounds(stay: StayPeriod) -> tuple[date, date | None]:
    entry = parse_lenient_date(stay.start_date)
    if entry is None:
        raise CalculationInvariantError(
            f"Tenancy of tenant {stay.tenant_id} has no valid start date ({stay.start_date!r})."
        )
    # Unparsable or missing end dates count as an ongoing stay.
    exit_date = parse_lenient_date(stay.end_date)
    if exit_date is not None and exit_date < entry:
        raise CalculationInvariantError(
            f"Tenancy of tenant {stay.tenant_id} ends ({exit_date}) before it starts ({entry})."
        )
    return entry, exit_date


def _break_bounds(stay: StayPeriod, brk: BreakPeriod) -> tuple[date, date]:
    start = parse_lenient_date(brk.start)
    end = parse_lenient_date(brk.end)
    if start is None or end is None:
        raise CalculationInvariantError(
            f"Break of tenant {stay.tenant_id} has an invalid date ({brk.start!r}..{brk.end!r})."
        )
    if end < start:
        raise CalculationInvariantError(
            f"Break of tenant {stay.tenant_id} ends ({end}) before it starts ({start})."
        )
    return start, end


def is_active(stay: StayPeriod | None, month_start: date, month_end: date) -> bool:
    if stay is None:
        return False
    entry, exit_date = _stay_bounds(stay)
    return entry <= month_end and (exit_date is None or exit_date >= month_start)


def merge_intervals(intervals: Iterable[tuple[date, date]]) -> list[tuple[date, date]]:
    merged: list[tuple[date, date]] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            last_start, last_end = merged[-1]
            merged[-1] = (last_start, max(last_end, end))
        else:
            merged.append((start, end))
    return merged


def compute_present_days(
    stay: StayPeriod,
    breaks: Sequence[BreakPeriod],
    month_start: date,
    month_end: date,
) -> int:
    entry, exit_date = _stay_bounds(stay)
    actual_start = max(entry, month_start)
    actual_end = min(exit_date or month_end, month_end)
    basic_days = max(0, inclusive_days(actual_start, actual_end))

    overlaps: list[tuple[date, date]] = []
    for brk in breaks:
        break_start, break_end = _break_bounds(stay, brk)
        overlap_start = max(break_start, actual_start, month_start)
        overlap_end = min(break_end, actual_end, month_end)
        if overlap_start <= overlap_end:
            overlaps.append((overlap_start, overlap_end))

    total_break_days = sum(inclusive_days(start, end) for start, end in merge_intervals(overlaps))
    present_days = max(0, basic_days - total_break_days)
    logger.debug(
        "Tenant %s: %s..%s basic=%s breaks=%s present=%s",
        stay.tenant_id,
        actual_start,
        actual_end,
        basic_days,
        total_break_days,
        present_days,
    )
    return present_days


def summarize_occupancy(stays: Iterable[StayPeriod], month_start: date) -> OccupancySummary:
    month_start, month_end = month_bounds(month_start)
    present_days: dict[int, int] = {}
    for stay in stays:
        if stay.tenant_id in present_days:
            continue
        if not is_active(stay, month_start, month_end):
            continue
        present_days[stay.tenant_id] = compute_present_days(
            stay,
            stay.breaks,
            month_start,
            month_end,
        )
    return OccupancySummary(present_days=present_days)
