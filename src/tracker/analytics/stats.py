"""Derived views over records: identifier stats, returns, direction summary.

Pure Decimal functions with no I/O. Stats and summaries are recomputed on
demand from records; prices are attached later by the enrichment pipeline.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from tracker.models import (
    Direction,
    DirectionBucket,
    DirectionSummary,
    IdentifierStat,
    Record,
)

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")

SUMMARY_DIRECTIONS = (Direction.LONG.value, Direction.SHORT.value, Direction.NEUTRAL.value)

# fields filled in by price enrichment
PRICE_FIELDS = (
    "price_at_mention",
    "price_at_mention_date",
    "price_after_window",
    "price_after_window_date",
    "return_window",
    "price_current",
    "price_current_date",
    "return_current",
    "show_current_return",
    "loading",
    "error",
)


def _round(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _mean(values: list[Decimal]) -> Decimal:
    return sum(values, Decimal("0")) / Decimal(len(values))


def compute_return(start: Decimal | None, end: Decimal | None) -> Decimal | None:
    """Percentage change from start to end, rounded to 2 decimals.

    Returns None if either price is missing or start is not positive.

    >>> compute_return(Decimal("100"), Decimal("110"))
    Decimal('10.00')
    """
    if start is None or end is None or start <= 0:
        return None
    return _round((end - start) / start * _HUNDRED)


def show_current_return(first_mention: date, today: date, window_days: int = 180) -> bool:
    """True while the forward window since first mention is still open."""
    return (today - first_mention).days < window_days


def compute_identifier_stats(records: Iterable[Record]) -> list[IdentifierStat]:
    """Group records by identifier, keeping the earliest mention of each.

    The first mention's timestamp and direction are kept along with the
    number of records mentioning the identifier. Sorted by first mention
    newest first, ties broken by identifier ascending.
    """
    mentions: dict[str, list[Record]] = defaultdict(list)
    for record in records:
        for identifier in record.identifiers:
            mentions[identifier].append(record)

    stats = []
    for identifier, mentioning in mentions.items():
        first = min(mentioning, key=lambda r: (r.created_at, r.natural_key))
        stats.append(
            IdentifierStat(
                identifier=identifier,
                first_mention_at=first.created_at,
                direction=first.direction,
                mention_count=len(mentioning),
            )
        )

    stats.sort(key=lambda s: (-s.first_mention_at, s.identifier))
    return stats


def copy_prices(target: IdentifierStat, source: IdentifierStat) -> IdentifierStat:
    """Return target with the price fields of source."""
    return replace(target, **{name: getattr(source, name) for name in PRICE_FIELDS})


def stat_return(stat: IdentifierStat) -> Decimal | None:
    """Return used for scoring a stat: window return, else the open-window current return."""
    if stat.return_window is not None:
        return stat.return_window
    if stat.show_current_return and stat.return_current is not None:
        return stat.return_current
    return None


def _record_return(record: Record, priced: dict[str, Decimal]) -> Decimal | None:
    """Mean return across a record's identifiers that have price data."""
    returns = [priced[i] for i in record.identifiers if i in priced]
    if not returns:
        return None
    return _mean(returns)


def _bucket(count: int, right: list[Decimal], wrong: list[Decimal]) -> DirectionBucket:
    return DirectionBucket(
        count=count,
        right=len(right),
        wrong=len(wrong),
        avg_return_right=_round(_mean(right)) if right else None,
        avg_return_wrong=_round(_mean(wrong)) if wrong else None,
    )


def compute_direction_summary(
    records: Iterable[Record],
    stats: Iterable[IdentifierStat],
) -> DirectionSummary | None:
    """Right/wrong tallies per pitch direction.

    Only records with identifiers and a direction contribute. A long post is
    right when its mean return is positive, a short post when negative.
    Neutral posts are counted but never scored. Posts without any priced
    identifier are counted but not scored either.

    The total bucket pools the per-post long and short returns and averages
    over the union.

    Returns:
        DirectionSummary, or None if no record has both identifiers and a direction.
    """
    pitched = [r for r in records if r.identifiers and r.direction]
    if not pitched:
        return None

    priced: dict[str, Decimal] = {}
    for stat in stats:
        value = stat_return(stat)
        if value is not None:
            priced[stat.identifier] = value

    counts: dict[str, int] = defaultdict(int)
    right: dict[str, list[Decimal]] = defaultdict(list)
    wrong: dict[str, list[Decimal]] = defaultdict(list)

    for record in pitched:
        direction = record.direction
        if direction not in SUMMARY_DIRECTIONS:
            continue
        counts[direction] += 1

        value = _record_return(record, priced)
        if value is None or direction == Direction.NEUTRAL.value:
            continue
        is_right = value > 0 if direction == Direction.LONG.value else value < 0
        (right if is_right else wrong)[direction].append(value)

    long_key, short_key, neutral_key = SUMMARY_DIRECTIONS
    return DirectionSummary(
        long=_bucket(counts[long_key], right[long_key], wrong[long_key]),
        short=_bucket(counts[short_key], right[short_key], wrong[short_key]),
        neutral=_bucket(counts[neutral_key], [], []),
        total=_bucket(
            counts[long_key] + counts[short_key],
            right[long_key] + right[short_key],
            wrong[long_key] + wrong[short_key],
        ),
    )
