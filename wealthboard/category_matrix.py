from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Sequence

ZERO = Decimal("0")
HUNDRED = Decimal("100")
MONTHS_PER_YEAR = 12
MONTH_LABELS = (
    "Ene", "Feb", "Mar", "Abr", "May", "Jun",
    "Jul", "Ago", "Sep", "Oct", "Nov", "Dic",
)
SUPPORTED_PERIODS = {"monthly", "quarterly", "semiannual", "annual"}


@dataclass(frozen=True)
class AggregatedPeriod:
    label: str
    month_indices: tuple[int, ...]


@dataclass(frozen=True)
class Variation:
    absolute: Decimal
    percentage: Decimal


@dataclass(frozen=True)
class CategoryRow:
    category_id: int | str
    name: str
    monthly_values: tuple[Decimal, ...]


@dataclass(frozen=True)
class MatrixRow:
    category_id: int | str
    name: str
    values: tuple[Decimal, ...]
    total: Decimal
    empty: bool


@dataclass(frozen=True)
class MatrixView:
    period_type: str
    periods: tuple[AggregatedPeriod, ...]
    rows: tuple[MatrixRow, ...]
    column_totals: tuple[Decimal, ...]
    grand_total: Decimal


def get_aggregated_periods(period_type: str) -> List[AggregatedPeriod]:
    normalized = _validate_period_type(period_type)
    if normalized == "monthly":
        return [AggregatedPeriod(label, (index,)) for index, label in enumerate(MONTH_LABELS)]
    if normalized == "quarterly":
        return [
            AggregatedPeriod(f"Q{quarter + 1}", tuple(range(quarter * 3, quarter * 3 + 3)))
            for quarter in range(4)
        ]
    if normalized == "semiannual":
        return [
            AggregatedPeriod("S1", tuple(range(0, 6))),
            AggregatedPeriod("S2", tuple(range(6, 12))),
        ]
    return [AggregatedPeriod("Anual", tuple(range(MONTHS_PER_YEAR)))]


def aggregate_data(monthly_data: Sequence[Decimal], period: AggregatedPeriod) -> Decimal:
    total = ZERO
    for month_index in period.month_indices:
        if month_index < len(monthly_data):
            total += _coerce_amount(monthly_data[month_index])
    return total


def calculate_variation(current: Decimal, previous: Decimal) -> Variation:
    absolute = current - previous
    percentage = (absolute / previous) * HUNDRED if previous != ZERO else ZERO
    return Variation(absolute=absolute, percentage=percentage)


def calculate_row_total(data: Iterable[Decimal]) -> Decimal:
    return sum((_coerce_amount(value) for value in data), ZERO)


def calculate_column_total(rows: Iterable[Sequence[Decimal]], index: int) -> Decimal:
    return sum((_coerce_amount(row[index]) for row in rows if index < len(row)), ZERO)


def calculate_grand_total(rows: Iterable[Sequence[Decimal]]) -> Decimal:
    return sum((calculate_row_total(row) for row in rows), ZERO)


def has_non_zero_values(data: Iterable[Decimal]) -> bool:
    return any(_coerce_amount(value) != ZERO for value in data)


def build_matrix(rows: Iterable[CategoryRow], period_type: str = "monthly") -> MatrixView:
    """Aggregate per-category monthly values into the requested periods."""
    periods = get_aggregated_periods(period_type)
    matrix_rows: List[MatrixRow] = []
    for row in rows:
        if len(row.monthly_values) > MONTHS_PER_YEAR:
            raise ValueError(f"Category {row.name} has more than 12 monthly values.")
        values = tuple(aggregate_data(row.monthly_values, period) for period in periods)
        matrix_rows.append(
            MatrixRow(
                category_id=row.category_id,
                name=row.name,
                values=values,
                total=calculate_row_total(values),
                empty=not has_non_zero_values(values),
            )
        )

    value_grid = [row.values for row in matrix_rows]
    return MatrixView(
        period_type=period_type.strip().lower(),
        periods=tuple(periods),
        rows=tuple(matrix_rows),
        column_totals=tuple(
            calculate_column_total(value_grid, index) for index in range(len(periods))
        ),
        grand_total=calculate_grand_total(value_grid),
    )


def monthly_values_from_entries(
    entries: Iterable[tuple[int, Decimal]],
) -> tuple[Decimal, ...]:
    """Fold (month, amount) pairs, months 1-12, into a twelve-slot row."""
    values = [ZERO] * MONTHS_PER_YEAR
    for month, amount in entries:
        if not 1 <= month <= MONTHS_PER_YEAR:
            raise ValueError(f"Month must be between 1 and 12, got {month}.")
        values[month - 1] += _coerce_amount(amount)
    return tuple(values)


def move_category(
    ordered_ids: Sequence[int | str],
    category_id: int | str,
    position: int,
) -> List[tuple[int | str, int]]:
    """Move a row to a 1-based ``position`` and renumber every row from 1.

    Returns ``(category_id, display_order)`` pairs in the new order.
    """
    if category_id not in ordered_ids:
        raise ValueError("Category not found in this matrix.")
    if not 1 <= position <= len(ordered_ids):
        raise ValueError(f"Position must be between 1 and {len(ordered_ids)}.")
    reordered = [item for item in ordered_ids if item != category_id]
    reordered.insert(position - 1, category_id)
    return [(item, index + 1) for index, item in enumerate(reordered)]


def _validate_period_type(period_type: str) -> str:
    normalized = period_type.strip().lower()
    if normalized not in SUPPORTED_PERIODS:
        raise ValueError("Only monthly, quarterly, semiannual, or annual periods are supported.")
    return normalized


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
