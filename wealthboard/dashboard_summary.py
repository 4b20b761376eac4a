"""Yearly dashboard summary.

Folds the income, expense and asset category values of a year (and of the
year before, for comparison) into monthly income/expense/savings figures,
the patrimony series with a forecast for the months still to come, the
expense distribution by category and the year-over-year changes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from wealthboard.category_matrix import MONTH_LABELS, MONTHS_PER_YEAR, monthly_values_from_entries

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")
FORECAST_HISTORY_MONTHS = 12


@dataclass(frozen=True)
class CategoryEntry:
    category_id: int
    month: int
    amount: Decimal


@dataclass(frozen=True)
class YearEntries:
    income: Sequence[CategoryEntry] = field(default_factory=tuple)
    expenses: Sequence[CategoryEntry] = field(default_factory=tuple)
    assets: Sequence[CategoryEntry] = field(default_factory=tuple)


@dataclass(frozen=True)
class MonthSummary:
    month: int
    label: str
    income: Decimal
    expenses: Decimal
    savings: Decimal
    patrimony: Optional[Decimal]
    patrimony_forecast: Optional[Decimal] = None
    previous_income: Decimal = ZERO
    previous_expenses: Decimal = ZERO
    previous_patrimony: Decimal = ZERO


@dataclass(frozen=True)
class ExpenseShare:
    name: str
    value: Decimal


@dataclass(frozen=True)
class SummaryChanges:
    income: Decimal
    expenses: Decimal
    savings: Decimal
    patrimony: Decimal


@dataclass(frozen=True)
class DashboardSummary:
    year: int
    month: Optional[int]
    months: List[MonthSummary]
    previous_year: List[MonthSummary]
    expense_categories: List[ExpenseShare]
    total_income: Decimal
    total_expenses: Decimal
    total_savings: Decimal
    current_patrimony: Decimal
    changes: SummaryChanges


def build_dashboard(
    year: int,
    current: YearEntries,
    previous: YearEntries,
    expense_category_names: Mapping[int, str],
    month: Optional[int] = None,
    today: Optional[date] = None,
) -> DashboardSummary:
    """Build the dashboard for ``year``, optionally focused on one month.

    With ``month`` set, the monthly list and the expense distribution only
    cover that month and the changes compare it with the same month of the
    previous year. Otherwise the year totals are compared.
    """
    if month is not None and not 1 <= month <= MONTHS_PER_YEAR:
        raise ValueError(f"Month must be between 1 and 12, got {month}.")
    today = today or date.today()

    income = _monthly(current.income)
    expenses = _monthly(current.expenses)
    patrimony = _monthly(current.assets)
    previous_income = _monthly(previous.income)
    previous_expenses = _monthly(previous.expenses)
    previous_patrimony = _monthly(previous.assets)

    current_month_index = today.month - 1 if today.year == year else MONTHS_PER_YEAR - 1
    forecast = forecast_patrimony(patrimony, current_month_index)

    months = [
        MonthSummary(
            month=index + 1,
            label=MONTH_LABELS[index],
            income=income[index],
            expenses=expenses[index],
            savings=income[index] - expenses[index],
            patrimony=forecast[index][0],
            patrimony_forecast=forecast[index][1],
            previous_income=previous_income[index],
            previous_expenses=previous_expenses[index],
            previous_patrimony=previous_patrimony[index],
        )
        for index in range(MONTHS_PER_YEAR)
    ]
    previous_year = [
        MonthSummary(
            month=index + 1,
            label=MONTH_LABELS[index],
            income=previous_income[index],
            expenses=previous_expenses[index],
            savings=previous_income[index] - previous_expenses[index],
            patrimony=previous_patrimony[index],
        )
        for index in range(MONTHS_PER_YEAR)
    ]

    total_income = sum(income, ZERO)
    total_expenses = sum(expenses, ZERO)
    current_patrimony = latest_patrimony(patrimony)

    if month is not None:
        selected = months[month - 1]
        compared = previous_year[month - 1]
        changes = SummaryChanges(
            income=percent_change(selected.income, compared.income),
            expenses=percent_change(selected.expenses, compared.expenses),
            savings=savings_change(selected.savings, compared.savings),
            patrimony=percent_change(current_patrimony, compared.patrimony or ZERO),
        )
        months = [selected]
        expense_entries = [entry for entry in current.expenses if entry.month == month]
    else:
        previous_total_income = sum(previous_income, ZERO)
        previous_total_expenses = sum(previous_expenses, ZERO)
        changes = SummaryChanges(
            income=percent_change(total_income, previous_total_income),
            expenses=percent_change(total_expenses, previous_total_expenses),
            savings=savings_change(
                total_income - total_expenses,
                previous_total_income - previous_total_expenses,
            ),
            patrimony=percent_change(current_patrimony, previous_patrimony[-1]),
        )
        expense_entries = list(current.expenses)

    return DashboardSummary(
        year=year,
        month=month,
        months=months,
        previous_year=previous_year,
        expense_categories=expense_distribution(expense_entries, expense_category_names),
        total_income=total_income,
        total_expenses=total_expenses,
        total_savings=total_income - total_expenses,
        current_patrimony=current_patrimony,
        changes=changes,
    )


def forecast_patrimony(
    patrimony: Sequence[Decimal],
    current_month_index: int,
) -> List[tuple[Optional[Decimal], Optional[Decimal]]]:
    """Return ``(actual, forecast)`` per month.

    Months after both the last recorded value and ``current_month_index``
    have no actual value. They get a forecast that extends the compound
    monthly growth of the recorded history, when at least two months are
    recorded.
    """
    recorded = [index for index, value in enumerate(patrimony) if value > ZERO]
    last_recorded = recorded[-1] if recorded else -1
    history = [patrimony[index] for index in recorded][-FORECAST_HISTORY_MONTHS:]

    growth = None
    if len(history) >= 2:
        first_value, last_value = history[0], history[-1]
        span = len(history) - 1
        growth = (last_value / first_value) ** (Decimal(1) / Decimal(span))

    result: List[tuple[Optional[Decimal], Optional[Decimal]]] = []
    for index, value in enumerate(patrimony):
        is_future = index > last_recorded and index > current_month_index
        if not is_future:
            result.append((value, None))
        elif growth is None:
            result.append((None, None))
        else:
            predicted = history[-1] * growth ** (index - last_recorded)
            result.append((None, predicted.quantize(CENT)))
    return result


def latest_patrimony(patrimony: Sequence[Decimal]) -> Decimal:
    for value in reversed(patrimony):
        if value > ZERO:
            return value
    return ZERO


def expense_distribution(
    entries: Iterable[CategoryEntry],
    category_names: Mapping[int, str],
) -> List[ExpenseShare]:
    totals: Dict[str, Decimal] = {}
    for entry in entries:
        name = category_names.get(entry.category_id) or f"Categoría {entry.category_id}"
        totals[name] = totals.get(name, ZERO) + entry.amount
    return sorted(
        (ExpenseShare(name=name, value=value) for name, value in totals.items()),
        key=lambda share: share.value,
        reverse=True,
    )


def percent_change(current: Decimal, previous: Decimal) -> Decimal:
    if previous <= ZERO:
        return ZERO
    return (current - previous) / previous * HUNDRED


def savings_change(current: Decimal, previous: Decimal) -> Decimal:
    # Savings can be negative, so the change is relative to its magnitude.
    if previous == ZERO:
        return ZERO
    return (current - previous) / abs(previous) * HUNDRED


def _monthly(entries: Iterable[CategoryEntry]) -> tuple[Decimal, ...]:
    return monthly_values_from_entries((entry.month, entry.amount) for entry in entries)
