"""MyInvestor fund movement import.

The broker exports subscriptions as a CSV with Spanish headers (``Fecha``,
``ISIN``, ``Importe``, ``Participaciones``, ``Estado``), Spanish number
formatting and ``DD/MM/YYYY`` dates. Parsing is kept apart from the import
plan so both can be exercised without a database.
"""
from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping

from pydantic import BaseModel

ZERO = Decimal("0")
FINALIZED_STATUS = "finalizada"
IMPORT_SOURCE = "myinvestor"
IMPORTED_FROM = "myinvestor_csv"

COLUMN_KEYWORDS = {
    "date": "fecha",
    "isin": "isin",
    "amount": "importe",
    "shares": "participaciones",
    "status": "estado",
}


class ParsedMovement(BaseModel):
    raw_date: str
    trade_date: date | None = None
    isin: str
    amount: Decimal
    shares: Decimal
    status: str

    @property
    def is_finalized(self) -> bool:
        return self.status.strip().lower() == FINALIZED_STATUS


class MovementParseResult(BaseModel):
    delimiter: str
    rows: list[ParsedMovement]


class MovementImportSummary(BaseModel):
    imported: int
    duplicates: int
    errors: int
    new_funds: list[str]


@dataclass(frozen=True)
class IsinTotals:
    shares: Decimal
    amount: Decimal


@dataclass(frozen=True)
class PlannedTransaction:
    holding_id: int
    isin: str
    date: date
    amount: Decimal
    shares: Decimal
    price: Decimal
    description: str
    type: str = "buy"


@dataclass(frozen=True)
class ImportPlan:
    transactions: list[PlannedTransaction]
    duplicates: int
    errors: int


def parse_movements_csv(contents: str) -> MovementParseResult:
    lines = [line for line in contents.splitlines() if line.strip()]
    if len(lines) < 2:
        raise ValueError("CSV is empty or has no data rows.")

    delimiter = ";" if ";" in lines[0] else ","
    rows = list(csv.reader(io.StringIO("\n".join(lines)), delimiter=delimiter))
    headers = [clean_text(value) for value in rows[0]]
    columns = {key: find_column(headers, keyword) for key, keyword in COLUMN_KEYWORDS.items()}
    if columns["isin"] is None:
        raise ValueError("CSV missing ISIN column.")

    movements: list[ParsedMovement] = []
    for row in rows[1:]:
        if len(row) < len(headers):
            continue
        isin = cell(row, columns["isin"]).upper()
        if not isin:
            continue
        raw_date = cell(row, columns["date"])
        amount = parse_importe(cell(row, columns["amount"]))
        if not raw_date or amount <= ZERO:
            continue
        movements.append(
            ParsedMovement(
                raw_date=raw_date,
                trade_date=parse_movement_date(raw_date),
                isin=isin,
                amount=amount,
                shares=parse_number(cell(row, columns["shares"])),
                status=cell(row, columns["status"]),
            )
        )

    return MovementParseResult(delimiter=delimiter, rows=movements)


def parse_number(value: str | None) -> Decimal:
    """Parse ``1.234,56``, ``48,527``, ``300.23`` or ``1.234`` style numbers.

    Unparsable values read as zero.
    """
    cleaned = clean_text(value)
    if not cleaned:
        return ZERO

    has_comma = "," in cleaned
    has_dot = "." in cleaned
    if has_comma and has_dot:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    elif has_comma:
        cleaned = cleaned.replace(",", ".")
    elif has_dot:
        decimals = re.search(r"\.(\d+)$", cleaned)
        # One or two trailing digits is a decimal point; otherwise thousands.
        if not decimals or len(decimals.group(1)) > 2:
            cleaned = cleaned.replace(".", "")

    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return ZERO


def parse_importe(value: str | None) -> Decimal:
    match = re.search(r"[\d.,]+", clean_text(value))
    if not match:
        return ZERO
    return parse_number(match.group(0))


def parse_movement_date(value: str | None) -> date | None:
    cleaned = clean_text(value)
    try:
        return datetime.strptime(cleaned, "%d/%m/%Y").date()
    except ValueError:
        return None


def group_by_isin(movements: Iterable[ParsedMovement]) -> dict[str, IsinTotals]:
    totals: dict[str, IsinTotals] = {}
    for movement in movements:
        current = totals.get(movement.isin, IsinTotals(shares=ZERO, amount=ZERO))
        totals[movement.isin] = IsinTotals(
            shares=current.shares + movement.shares,
            amount=current.amount + movement.amount,
        )
    return totals


def merge_cost_basis(
    quantity: Decimal,
    cost_basis: Decimal,
    added_shares: Decimal,
    added_amount: Decimal,
) -> Decimal:
    """Average per-share cost after buying ``added_shares`` for ``added_amount``."""
    new_quantity = quantity + added_shares
    if new_quantity <= ZERO:
        return ZERO
    return (quantity * cost_basis + added_amount) / new_quantity


def duplicate_key(holding_id: int, trade_date: date, amount: Decimal) -> tuple[int, date, Decimal]:
    return (holding_id, trade_date, amount.normalize())


def plan_import(
    movements: Iterable[ParsedMovement],
    holdings_by_isin: Mapping[str, int],
    existing_keys: Iterable[tuple[int, date, Decimal]],
) -> ImportPlan:
    """Turn movements into buy transactions, skipping duplicates.

    A movement is a duplicate when its holding already has a transaction on
    the same date for the same amount, including earlier rows of this file.
    """
    seen = {(holding_id, day, amount.normalize()) for holding_id, day, amount in existing_keys}
    planned: list[PlannedTransaction] = []
    duplicates = 0
    errors = 0
    for movement in movements:
        holding_id = holdings_by_isin.get(movement.isin)
        if holding_id is None or movement.trade_date is None:
            errors += 1
            continue
        key = duplicate_key(holding_id, movement.trade_date, movement.amount)
        if key in seen:
            duplicates += 1
            continue
        seen.add(key)
        price = movement.amount / movement.shares if movement.shares > ZERO else ZERO
        planned.append(
            PlannedTransaction(
                holding_id=holding_id,
                isin=movement.isin,
                date=movement.trade_date,
                amount=movement.amount,
                shares=movement.shares,
                price=price,
                description=f"{movement.shares} participaciones",
            )
        )
    return ImportPlan(transactions=planned, duplicates=duplicates, errors=errors)


def find_column(headers: list[str], keyword: str) -> int | None:
    for index, header in enumerate(headers):
        if keyword in header.lower():
            return index
    return None


def cell(row: list[str], index: int | None) -> str:
    if index is None or index >= len(row):
        return ""
    return clean_text(row[index]).replace('"', "")


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""
