"""Investment evolution timeline.

Brokerage accounts report periodic snapshots (cost basis and market value),
while manually tracked holdings only have buy/sell/transfer events. This
module reads both sources, converts them to one reporting currency and
merges them into a single date-ordered series: snapshot values are carried
forward across gaps and transaction amounts are accumulated.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping

from wealthboard.currency_conversion import apply_rate, normalize_currency

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
SUPPORTED_KINDS = {"buy", "sell", "transfer"}
KIND_SIGNS = {"buy": 1, "transfer": 1, "sell": -1}
SUCCESS_STATUS = "success"

RateLookup = Callable[[str, str], Decimal]


@dataclass(frozen=True)
class SnapshotPoint:
    date: date
    cost_basis: Decimal
    market_value: Decimal
    currency: str = "USD"


@dataclass(frozen=True)
class TransactionEvent:
    date: date
    amount: Decimal
    kind: str
    account_currency: str = "EUR"


@dataclass(frozen=True)
class CombinedPoint:
    date: date
    snapshot_invested: Decimal
    snapshot_value: Decimal
    transaction_invested: Decimal
    transaction_value: Decimal
    total_invested: Decimal
    total_value: Decimal

    @property
    def timestamp(self) -> int:
        """Milliseconds since the epoch at UTC midnight, for chart axes."""
        midnight = datetime(self.date.year, self.date.month, self.date.day, tzinfo=timezone.utc)
        return int(midnight.timestamp() * 1000)


@dataclass(frozen=True)
class SkippedRow:
    index: int
    reason: str


@dataclass
class ReadResult:
    points: list = field(default_factory=list)
    skipped: List[SkippedRow] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


class InvestmentTimeline:
    """Merged snapshot/transaction series.

    Nothing is computed until the timeline is iterated, and every iteration
    walks the inputs again from the start, so the same instance can be
    consumed any number of times.
    """

    def __init__(
        self,
        snapshots: Iterable[SnapshotPoint],
        transactions: Iterable[TransactionEvent],
    ) -> None:
        self._snapshots = tuple(snapshots)
        self._transactions = tuple(transactions)

    def __iter__(self) -> Iterator[CombinedPoint]:
        snapshots_by_date = _latest_snapshot_by_date(self._snapshots)
        deltas_by_date = _net_delta_by_date(self._transactions)

        last_snapshot_invested = ZERO
        last_snapshot_value = ZERO
        running_transaction_invested = ZERO

        for current_date in sorted(set(snapshots_by_date) | set(deltas_by_date)):
            snapshot = snapshots_by_date.get(current_date)
            if snapshot is not None:
                last_snapshot_invested = snapshot.cost_basis
                last_snapshot_value = snapshot.market_value
            running_transaction_invested += deltas_by_date.get(current_date, ZERO)

            # Manual holdings have no market price, so they are valued at cost.
            yield CombinedPoint(
                date=current_date,
                snapshot_invested=last_snapshot_invested,
                snapshot_value=last_snapshot_value,
                transaction_invested=running_transaction_invested,
                transaction_value=running_transaction_invested,
                total_invested=last_snapshot_invested + running_transaction_invested,
                total_value=last_snapshot_value + running_transaction_invested,
            )

    def __len__(self) -> int:
        dates = {point.date for point in self._snapshots}
        dates.update(event.date for event in self._transactions)
        return len(dates)

    def __bool__(self) -> bool:
        return bool(self._snapshots or self._transactions)


@dataclass(frozen=True)
class EvolutionResult:
    points: List[CombinedPoint]
    currency: str
    skipped_snapshots: int = 0
    skipped_transactions: int = 0


def merge_timeline(
    snapshots: Iterable[SnapshotPoint],
    transactions: Iterable[TransactionEvent],
) -> InvestmentTimeline:
    return InvestmentTimeline(snapshots, transactions)


def read_snapshots(
    rows: Iterable[Mapping[str, Any]],
    currency: str = "USD",
) -> ReadResult:
    """Read sync-history rows into snapshot points.

    Rows may use either the sync-history column names (``sync_date``,
    ``total_cost_usd``, ``total_value_usd``) or the short ones (``date``,
    ``cost``, ``value``). Rows that cannot be read are reported in
    ``skipped`` and do not stop the remaining rows.
    """
    default_currency = normalize_currency(currency)
    result = ReadResult()
    for index, row in enumerate(rows):
        try:
            point = SnapshotPoint(
                date=parse_point_date(_first_present(row, "sync_date", "date")),
                cost_basis=parse_money(_first_present(row, "total_cost_usd", "cost")),
                market_value=parse_money(_first_present(row, "total_value_usd", "value")),
                currency=normalize_currency(row.get("currency") or default_currency),
            )
        except ValueError as exc:
            result.skipped.append(SkippedRow(index=index, reason=str(exc)))
            continue
        result.points.append(point)
    _log_skipped("snapshot", result)
    return result


def read_transactions(
    rows: Iterable[Mapping[str, Any]],
    currency: str = "EUR",
) -> ReadResult:
    default_currency = normalize_currency(currency)
    result = ReadResult()
    for index, row in enumerate(rows):
        try:
            amount = parse_money(row.get("amount"))
            if amount < ZERO:
                raise ValueError(f"Negative transaction amount: {amount}")
            point = TransactionEvent(
                date=parse_point_date(_first_present(row, "transaction_date", "date")),
                amount=amount,
                kind=_validate_kind(_first_present(row, "type", "kind")),
                account_currency=normalize_currency(row.get("currency") or default_currency),
            )
        except ValueError as exc:
            result.skipped.append(SkippedRow(index=index, reason=str(exc)))
            continue
        result.points.append(point)
    _log_skipped("transaction", result)
    return result


def successful_syncs(rows: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Drop failed syncs; rows without a status are treated as successful."""
    return [
        row
        for row in rows
        if str(row.get("status") or SUCCESS_STATUS).strip().lower() == SUCCESS_STATUS
    ]


def convert_snapshots(
    snapshots: Iterable[SnapshotPoint],
    reporting_currency: str,
    rate_lookup: RateLookup,
) -> List[SnapshotPoint]:
    target = normalize_currency(reporting_currency)
    rates: Dict[str, Decimal] = {}
    converted: List[SnapshotPoint] = []
    for point in snapshots:
        rate = _rate_for(point.currency, target, rate_lookup, rates)
        converted.append(
            replace(
                point,
                cost_basis=apply_rate(point.cost_basis, rate),
                market_value=apply_rate(point.market_value, rate),
                currency=target,
            )
        )
    return converted


def convert_transactions(
    transactions: Iterable[TransactionEvent],
    reporting_currency: str,
    rate_lookup: RateLookup,
) -> List[TransactionEvent]:
    target = normalize_currency(reporting_currency)
    rates: Dict[str, Decimal] = {}
    return [
        replace(
            event,
            amount=apply_rate(
                event.amount, _rate_for(event.account_currency, target, rate_lookup, rates)
            ),
            account_currency=target,
        )
        for event in transactions
    ]


def build_investment_evolution(
    snapshot_rows: Iterable[Mapping[str, Any]],
    transaction_rows: Iterable[Mapping[str, Any]],
    rate_lookup: RateLookup,
    reporting_currency: str = "EUR",
    snapshot_currency: str = "USD",
) -> EvolutionResult:
    """Read, convert and merge both sources into one evolution series.

    ``rate_lookup`` may raise (for instance when no exchange rate is
    available); the error propagates to the caller untouched.
    """
    target = normalize_currency(reporting_currency)
    snapshots = read_snapshots(successful_syncs(snapshot_rows), currency=snapshot_currency)
    transactions = read_transactions(transaction_rows, currency=target)

    timeline = merge_timeline(
        convert_snapshots(snapshots.points, target, rate_lookup),
        convert_transactions(transactions.points, target, rate_lookup),
    )
    return EvolutionResult(
        points=list(timeline),
        currency=target,
        skipped_snapshots=snapshots.skipped_count,
        skipped_transactions=transactions.skipped_count,
    )


def parse_point_date(value: Any) -> date:
    if isinstance(value, datetime):
        return _utc_date(value)
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Missing or invalid date: {value!r}")

    cleaned = value.strip()
    try:
        return date.fromisoformat(cleaned)
    except ValueError:
        pass
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        return _utc_date(datetime.fromisoformat(cleaned))
    except ValueError as exc:
        raise ValueError(f"Unparsable date: {value!r}") from exc


def parse_money(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValueError(f"Missing or invalid amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Unparsable amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Unparsable amount: {value!r}")
    return amount


def _utc_date(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def _first_present(row: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if row.get(key) is not None:
            return row[key]
    return None


def _validate_kind(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized not in SUPPORTED_KINDS:
        raise ValueError(f"Unsupported transaction kind: {value!r}")
    return normalized


def _latest_snapshot_by_date(snapshots: Iterable[SnapshotPoint]) -> Dict[date, SnapshotPoint]:
    latest: Dict[date, SnapshotPoint] = {}
    for point in snapshots:
        latest[point.date] = point
    return latest


def _net_delta_by_date(transactions: Iterable[TransactionEvent]) -> Dict[date, Decimal]:
    deltas: Dict[date, Decimal] = {}
    for event in transactions:
        signed = event.amount * KIND_SIGNS[event.kind]
        deltas[event.date] = deltas.get(event.date, ZERO) + signed
    return deltas


def _rate_for(
    source: str,
    target: str,
    rate_lookup: RateLookup,
    rates: Dict[str, Decimal],
) -> Decimal:
    if source == target:
        return Decimal("1")
    if source not in rates:
        rates[source] = rate_lookup(source, target)
    return rates[source]


def _log_skipped(source: str, result: ReadResult) -> None:
    if not result.skipped:
        return
    logger.warning(
        "Skipped %d %s row(s): %s",
        result.skipped_count,
        source,
        "; ".join(f"#{row.index} {row.reason}" for row in result.skipped[:5]),
    )
