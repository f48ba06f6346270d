"""Leaderboard ranking, filtering and privacy masking.

All functions take and return new lists; entries are copied with
``dataclasses.replace`` rather than mutated in place.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime

from calibr.reputation.models import LeaderboardEntry
from calibr.reputation.tiers import Tier

ANONYMOUS_DISPLAY_NAME = "Anonymous Forecaster"


@dataclass(frozen=True)
class LeaderboardFilter:
    tier: Tier | None = None
    min_forecasts: int | None = None
    min_score: int | None = None
    active_since: datetime | None = None


@dataclass(frozen=True)
class LeaderboardPosition:
    entry: LeaderboardEntry
    rank: int
    percentile: float


def rank_forecasters(entries: Iterable[LeaderboardEntry]) -> list[LeaderboardEntry]:
    """Order by composite score, ties broken by earlier join date.

    Equal scores share a rank (1, 2, 2, 4). An entry's existing non-zero
    rank becomes its ``previous_rank``.
    """
    ordered = sorted(entries, key=lambda e: (-e.composite_score, e.joined_at))

    ranked: list[LeaderboardEntry] = []
    current_rank = 0
    previous_score: int | None = None
    for position, entry in enumerate(ordered, start=1):
        if entry.composite_score != previous_score:
            current_rank = position
        previous_score = entry.composite_score
        ranked.append(
            replace(
                entry,
                previous_rank=entry.rank if entry.rank != 0 else None,
                rank=current_rank,
            )
        )
    return ranked


def filter_leaderboard(
    entries: Iterable[LeaderboardEntry], criteria: LeaderboardFilter
) -> list[LeaderboardEntry]:
    def keep(entry: LeaderboardEntry) -> bool:
        if criteria.tier is not None and entry.tier != criteria.tier:
            return False
        if criteria.min_forecasts is not None and entry.resolved_forecasts < criteria.min_forecasts:
            return False
        if criteria.min_score is not None and entry.composite_score < criteria.min_score:
            return False
        if criteria.active_since is not None:
            if entry.last_forecast_at is None or entry.last_forecast_at < criteria.active_since:
                return False
        return True

    return [e for e in entries if keep(e)]


def mask_private_entries(entries: Iterable[LeaderboardEntry]) -> list[LeaderboardEntry]:
    """Replace private forecasters' names while keeping their stats visible."""
    return [
        replace(e, display_name=ANONYMOUS_DISPLAY_NAME) if e.is_private else e for e in entries
    ]


def apply_privacy_filter(
    entries: Iterable[LeaderboardEntry], *, include_anonymous: bool = False
) -> list[LeaderboardEntry]:
    """Drop private forecasters, or keep them anonymized when requested."""
    if include_anonymous:
        return mask_private_entries(entries)
    return [e for e in entries if not e.is_private]


def rank_changes(
    current: Iterable[LeaderboardEntry], previous: Iterable[LeaderboardEntry]
) -> dict[str, int]:
    """Rank movement per user present in both snapshots; positive means improved."""
    previous_ranks = {e.user_id: e.rank for e in previous}
    return {
        e.user_id: previous_ranks[e.user_id] - e.rank
        for e in current
        if e.user_id in previous_ranks
    }


def top_forecasters(entries: Iterable[LeaderboardEntry], count: int) -> list[LeaderboardEntry]:
    return rank_forecasters(entries)[:count]


def find_position(
    entries: Sequence[LeaderboardEntry], user_id: str
) -> LeaderboardPosition | None:
    ranked = rank_forecasters(entries)
    for entry in ranked:
        if entry.user_id == user_id:
            percentile = (len(ranked) - entry.rank + 1) / len(ranked) * 100
            return LeaderboardPosition(entry=entry, rank=entry.rank, percentile=percentile)
    return None
