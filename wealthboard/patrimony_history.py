from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Tuple

from wealthboard.category_matrix import MONTH_LABELS

ZERO = Decimal("0")


@dataclass(frozen=True)
class AssetValue:
    year: int
    month: int
    amount: Decimal
    category_id: int | None = None


@dataclass(frozen=True)
class PatrimonyPoint:
    label: str
    total: Decimal
    year: int
    month: int


def build_patrimony_history(values: Iterable[AssetValue]) -> List[PatrimonyPoint]:
    """Sum every asset per month into a chronological net-worth series.

    Months whose total is not positive are left out, since they only mean
    nothing was recorded for them yet.
    """
    totals: Dict[Tuple[int, int], Decimal] = {}
    for value in values:
        if not 1 <= value.month <= 12:
            raise ValueError(f"Month must be between 1 and 12, got {value.month}.")
        key = (value.year, value.month)
        totals[key] = totals.get(key, ZERO) + _coerce_amount(value.amount)

    return [
        PatrimonyPoint(label=month_label(year, month), total=total, year=year, month=month)
        for (year, month), total in sorted(totals.items())
        if total > ZERO
    ]


def month_label(year: int, month: int) -> str:
    return f"{MONTH_LABELS[month - 1]} '{str(year)[-2:]}"


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
