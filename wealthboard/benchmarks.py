from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
SP500 = "SP500"
MSCI_WORLD = "MSCI_WORLD"


@dataclass(frozen=True)
class BenchmarkClose:
    benchmark_name: str
    date: date
    close_value: Decimal
    change_percent: Optional[Decimal] = None


@dataclass(frozen=True)
class NormalizedBenchmark:
    date: date
    sp500: Optional[Decimal]
    msci_world: Optional[Decimal]


@dataclass(frozen=True)
class RelativePerformance:
    difference: Decimal
    is_outperforming: bool
    label: str


@dataclass(frozen=True)
class BenchmarkComparison:
    start_date: date
    portfolio_return: Decimal
    sp500: Optional[RelativePerformance]
    msci_world: Optional[RelativePerformance]


def normalize_benchmarks(
    closes: Iterable[BenchmarkClose],
    start_date: date,
) -> List[NormalizedBenchmark]:
    """Rebase the S&P 500 and MSCI World closes to 100 at ``start_date``.

    The base of each series is its first close on or after ``start_date``.
    When either series has no such close the comparison is meaningless and
    an empty list is returned.
    """
    closes = list(closes)
    sp500 = _series(_closes_for(closes, SP500))
    msci_world = _series(_closes_for(closes, MSCI_WORLD))
    if not sp500 and not msci_world:
        return []

    sp500_base = _base_value(sp500, start_date)
    msci_world_base = _base_value(msci_world, start_date)
    if sp500_base is None or msci_world_base is None:
        logger.warning("No benchmark data found on or after %s", start_date.isoformat())
        return []

    dates = sorted(d for d in set(sp500) | set(msci_world) if d >= start_date)
    return [
        NormalizedBenchmark(
            date=current,
            sp500=_rebase(sp500.get(current), sp500_base),
            msci_world=_rebase(msci_world.get(current), msci_world_base),
        )
        for current in dates
    ]


def relative_performance(portfolio_change: Decimal, benchmark_change: Decimal) -> RelativePerformance:
    difference = portfolio_change - benchmark_change
    is_outperforming = difference > 0
    formatted = f"{difference:.2f}%"
    label = f"+{formatted} vs benchmark" if is_outperforming else f"{formatted} vs benchmark"
    return RelativePerformance(
        difference=difference,
        is_outperforming=is_outperforming,
        label=label,
    )


def _closes_for(closes: Iterable[BenchmarkClose], benchmark_name: str) -> List[BenchmarkClose]:
    return [close for close in closes if close.benchmark_name == benchmark_name]


def _series(closes: Iterable[BenchmarkClose]) -> Dict[date, Decimal]:
    return {close.date: close.close_value for close in closes}


def _base_value(series: Dict[date, Decimal], start_date: date) -> Optional[Decimal]:
    for current in sorted(series):
        if current >= start_date and series[current]:
            return series[current]
    return None


def _rebase(value: Optional[Decimal], base: Decimal) -> Optional[Decimal]:
    if value is None:
        return None
    return value / base * HUNDRED


def compare_with_benchmarks(
    portfolio_values: Iterable[Tuple[date, Decimal]],
    normalized: Sequence[NormalizedBenchmark],
) -> Optional[BenchmarkComparison]:
    """Compare the portfolio's return with both benchmarks.

    The portfolio is rebased to 100 at its first positive value. Each
    benchmark return is read from its latest normalized close on or before
    the portfolio's last date. Returns ``None`` when the portfolio has no
    positive value to start from.
    """
    values = sorted(portfolio_values, key=lambda item: item[0])
    start = next(((day, value) for day, value in values if value > 0), None)
    if start is None:
        return None

    start_date, start_value = start
    last_date, last_value = values[-1]
    portfolio_return = last_value / start_value * HUNDRED - HUNDRED
    return BenchmarkComparison(
        start_date=start_date,
        portfolio_return=portfolio_return,
        sp500=_relative_to(portfolio_return, _latest_level(normalized, "sp500", last_date)),
        msci_world=_relative_to(
            portfolio_return, _latest_level(normalized, "msci_world", last_date)
        ),
    )


def _latest_level(
    normalized: Sequence[NormalizedBenchmark], series: str, until: date
) -> Optional[Decimal]:
    level = None
    for point in normalized:
        if point.date > until:
            break
        value = getattr(point, series)
        if value is not None:
            level = value
    return level


def _relative_to(portfolio_return: Decimal, level: Optional[Decimal]) -> Optional[RelativePerformance]:
    if level is None:
        return None
    return relative_performance(portfolio_return, level - HUNDRED)
