"""Alignment primitives shared by both fusion strategies.

All times are float milliseconds since the epoch. In-water times are
expected to be drift-corrected onto the surface clock before they get here.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np

INWATER = "inwater"
SURFACE = "surface"

FRESH_AGE_MS = 10_000.0

STATUS_FRESH = "fresh"
STATUS_STALE = "stale"
STATUS_MISSING = "missing"


@dataclass(frozen=True)
class AxisEntry:
    time_ms: float
    origin: str


def merge_timelines(inwater_ms: Iterable[float], surface_ms: Iterable[float]) -> list[AxisEntry]:
    """Both timelines as one sorted sequence tagged by origin."""

    entries = [AxisEntry(float(t), INWATER) for t in inwater_ms]
    entries.extend(AxisEntry(float(t), SURFACE) for t in surface_ms)
    # Surface first on equal times so it leads its cluster.
    entries.sort(key=lambda e: (e.time_ms, e.origin != SURFACE))
    return entries


def cluster_entries(entries: Sequence[AxisEntry], threshold_ms: float) -> list[list[AxisEntry]]:
    """Greedy clustering measured from each cluster's first element.

    An entry joins the open cluster while ``entry - first < threshold_ms``.
    Width is not re-centred as members are added, so a cluster can span up to
    the threshold from its first element regardless of later members.
    """

    clusters: list[list[AxisEntry]] = []
    current: list[AxisEntry] = []
    for entry in entries:
        if current and entry.time_ms - current[0].time_ms < threshold_ms:
            current.append(entry)
            continue
        if current:
            clusters.append(current)
        current = [entry]
    if current:
        clusters.append(current)
    return clusters


def representative_timestamp(cluster: Sequence[AxisEntry]) -> float:
    """First surface timestamp in the cluster, else the median of its times."""

    if not cluster:
        raise ValueError("empty cluster")
    for entry in cluster:
        if entry.origin == SURFACE:
            return entry.time_ms
    return float(np.median([e.time_ms for e in cluster]))


def build_consolidated_axis(
    inwater_ms: Iterable[float], surface_ms: Iterable[float], threshold_ms: float
) -> list[float]:
    clusters = cluster_entries(merge_timelines(inwater_ms, surface_ms), threshold_ms)
    return [representative_timestamp(c) for c in clusters]


def find_nearest_reading(
    target_ms: float, times_ms: np.ndarray, used: np.ndarray, tolerance_ms: float
) -> Optional[int]:
    """Index of the nearest unused time within ``tolerance_ms`` (inclusive).

    ``times_ms`` must be sorted. Ties go to the earlier reading.
    """

    lo = int(np.searchsorted(times_ms, target_ms - tolerance_ms, side="left"))
    hi = int(np.searchsorted(times_ms, target_ms + tolerance_ms, side="right"))
    best: Optional[int] = None
    best_distance = math.inf
    for i in range(lo, hi):
        if used[i]:
            continue
        distance = abs(float(times_ms[i]) - target_ms)
        if distance <= tolerance_ms and distance < best_distance:
            best, best_distance = i, distance
            if distance == 0.0:
                break
    return best


def evaluate_row_creation(
    *,
    has_inwater: bool,
    has_surface: bool,
    axis_ms: float,
    last_inwater_ms: Optional[float],
    last_surface_ms: Optional[float],
    last_row_had_both: bool,
    tolerance_ms: float,
) -> bool:
    """Decide whether an axis point becomes a unified row.

    Rows with both streams are always kept. A single-stream row is kept when
    the other stream has been absent for more than ``2 * tolerance_ms`` or
    when the previous kept row was not a both-stream row.
    """

    if has_inwater and has_surface:
        return True
    if not has_inwater and not has_surface:
        return False
    other_last = last_surface_ms if has_inwater else last_inwater_ms
    gap = math.inf if other_last is None else axis_ms - other_last
    return gap > 2 * tolerance_ms or not last_row_had_both


def find_surface_for_inwater(inwater_ms: np.ndarray, surface_ms: np.ndarray) -> np.ndarray:
    """Hold-last lookup: index of the latest surface time ``<=`` each in-water time, or -1."""

    if len(surface_ms) == 0:
        return np.full(len(inwater_ms), -1, dtype=np.int64)
    return np.searchsorted(surface_ms, inwater_ms, side="right").astype(np.int64) - 1


def classify_age(age_ms: float, staleness_threshold_ms: float) -> tuple[str, bool]:
    """Return ``(status, attach_value)`` for a held surface value of ``age_ms``.

    Ages past the threshold are expired: still reported as stale but the value
    is not attached.
    """

    if age_ms > staleness_threshold_ms:
        return STATUS_STALE, False
    if age_ms < FRESH_AGE_MS:
        return STATUS_FRESH, True
    return STATUS_STALE, True


__all__ = [
    "AxisEntry",
    "INWATER",
    "SURFACE",
    "FRESH_AGE_MS",
    "STATUS_FRESH",
    "STATUS_STALE",
    "STATUS_MISSING",
    "merge_timelines",
    "cluster_entries",
    "representative_timestamp",
    "build_consolidated_axis",
    "find_nearest_reading",
    "evaluate_row_creation",
    "find_surface_for_inwater",
    "classify_age",
]
