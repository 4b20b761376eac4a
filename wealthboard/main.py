import logging
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    and_,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from wealthboard.benchmarks import BenchmarkClose, compare_with_benchmarks, normalize_benchmarks
from wealthboard.category_matrix import (
    CategoryRow,
    build_matrix,
    monthly_values_from_entries,
    move_category,
)
from wealthboard.config import (
    get_database_url,
    get_frontend_origin,
    get_fx_base_url,
    get_fx_cache_path,
    get_log_level,
    get_reporting_currency,
    get_snapshot_currency,
)
from wealthboard.currency_conversion import (
    ExchangeRateCache,
    FrankfurterRateProvider,
    RateCacheStore,
    RateUnavailable,
    normalize_currency,
)
from wealthboard.dashboard_summary import CategoryEntry, YearEntries, build_dashboard
from wealthboard.investment_evolution import EvolutionResult, build_investment_evolution
from wealthboard.movement_import import (
    IMPORT_SOURCE,
    IMPORTED_FROM,
    MovementImportSummary,
    duplicate_key,
    group_by_isin,
    merge_cost_basis,
    parse_movements_csv,
    plan_import,
)
from wealthboard.patrimony_history import AssetValue, build_patrimony_history

logger = logging.getLogger("wealthboard")
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_frontend_origin()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = get_database_url()
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()

REPORTING_CURRENCY = get_reporting_currency()
SNAPSHOT_CURRENCY = get_snapshot_currency()
SNAPSHOT_SOURCE = "ibkr"
FX_CACHE = ExchangeRateCache(
    provider=FrankfurterRateProvider(base_url=get_fx_base_url()),
    store=RateCacheStore(get_fx_cache_path()),
)

snapshot_syncs = Table(
    "ibkr_sync_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("sync_date", Date, nullable=False),
    Column("positions_count", Integer, nullable=False, server_default="0"),
    Column("total_value_usd", Numeric(18, 2), nullable=False),
    Column("total_cost_usd", Numeric(18, 2), nullable=False),
    Column("total_pnl_usd", Numeric(18, 2), nullable=False),
    Column("status", String(20), nullable=False, server_default="success"),
    Column("error_message", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

holdings = Table(
    "holdings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("isin", String(12)),
    Column("source", String(50), nullable=False, server_default="manual"),
    Column("asset_type", String(50), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("quantity", Numeric(18, 8), nullable=False, server_default="0"),
    Column("cost_basis", Numeric(18, 8), nullable=False, server_default="0"),
    Column("external_id", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)

holding_transactions = Table(
    "holding_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("holding_id", Integer, ForeignKey("holdings.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("quantity", Numeric(18, 8)),
    Column("price", Numeric(18, 8)),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("transaction_date", Date, nullable=False),
    Column("description", String(500)),
    Column("imported_from", String(50)),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("kind", String(20), nullable=False),
    Column("display_order", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "kind", "name", name="uq_categories_user_kind_name"),
)

category_values = Table(
    "category_values",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("amount", Numeric(18, 2), nullable=False),
    UniqueConstraint("category_id", "year", "month", name="uq_category_values_month"),
)

benchmark_history = Table(
    "benchmark_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("benchmark_name", String(50), nullable=False),
    Column("date", Date, nullable=False),
    Column("close_value", Numeric(18, 4), nullable=False),
    Column("change_percent", Numeric(9, 4)),
    UniqueConstraint("benchmark_name", "date", name="uq_benchmark_history_day"),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class HoldingTransactionType:
    values = {"buy", "sell", "transfer"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid holding transaction type.")
        return normalized


class CategoryKind:
    values = {"income", "expense", "asset", "investment"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid category kind.")
        return normalized


class AssetType:
    values = {"stock", "etf", "fund", "crypto", "bond", "cash", "real_estate", "other"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid asset type.")
        return normalized


class RateResponse(BaseModel):
    source: str
    target: str
    rate: Decimal
    error: str | None = None


class EvolutionPointResponse(BaseModel):
    date: date
    timestamp: int
    snapshot_invested: Decimal
    snapshot_value: Decimal
    transaction_invested: Decimal
    transaction_value: Decimal
    total_invested: Decimal
    total_value: Decimal


class EvolutionResponse(BaseModel):
    currency: str
    points: list[EvolutionPointResponse]
    skipped_snapshots: int
    skipped_transactions: int


class SnapshotSyncPayload(BaseModel):
    sync_date: date
    total_value_usd: Decimal
    total_cost_usd: Decimal
    positions_count: int = 0
    status: str = "success"
    error_message: str | None = None

    @classmethod
    def validate_payload(cls, payload: "SnapshotSyncPayload") -> "SnapshotSyncPayload":
        payload.status = payload.status.strip().lower()
        if payload.status not in {"success", "error"}:
            raise ValueError("Status must be 'success' or 'error'.")
        if payload.positions_count < 0:
            raise ValueError("Positions count cannot be negative.")
        payload.error_message = payload.error_message.strip() if payload.error_message else None
        return payload


class SnapshotSyncResponse(BaseModel):
    id: int
    user_id: int
    sync_date: date
    positions_count: int
    total_value_usd: Decimal
    total_cost_usd: Decimal
    total_pnl_usd: Decimal
    status: str
    error_message: str | None = None
    created_at: datetime | None = None


class HoldingPayload(BaseModel):
    name: str
    asset_type: str
    currency: str | None = None
    source: str = "manual"
    isin: str | None = None

    @classmethod
    def validate_payload(cls, payload: "HoldingPayload") -> "HoldingPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Holding name required.")
        payload.asset_type = AssetType.validate(payload.asset_type)
        payload.currency = normalize_currency(payload.currency or REPORTING_CURRENCY)
        payload.source = payload.source.strip().lower() or "manual"
        payload.isin = payload.isin.strip().upper() or None if payload.isin else None
        return payload


class HoldingResponse(BaseModel):
    id: int
    user_id: int
    name: str
    isin: str | None = None
    source: str
    asset_type: str
    currency: str
    quantity: Decimal
    cost_basis: Decimal
    created_at: datetime | None = None


class HoldingTransactionPayload(BaseModel):
    type: str
    amount: Decimal
    transaction_date: date
    quantity: Decimal | None = None
    price: Decimal | None = None
    description: str | None = None

    @classmethod
    def validate_payload(
        cls, payload: "HoldingTransactionPayload"
    ) -> "HoldingTransactionPayload":
        payload.type = HoldingTransactionType.validate(payload.type)
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        if payload.quantity is not None and payload.quantity < 0:
            raise ValueError("Quantity cannot be negative.")
        payload.description = payload.description.strip() if payload.description else None
        return payload


class HoldingTransactionResponse(BaseModel):
    id: int
    holding_id: int
    type: str
    amount: Decimal
    transaction_date: date
    quantity: Decimal | None = None
    price: Decimal | None = None
    description: str | None = None
    imported_from: str | None = None


class CategoryPayload(BaseModel):
    name: str
    kind: str
    display_order: int = 0

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.kind = CategoryKind.validate(payload.kind)
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    kind: str
    display_order: int
    created_at: datetime | None = None


class MonthValue(BaseModel):
    month: int
    amount: Decimal


class CategoryValuesPayload(BaseModel):
    year: int
    values: list[MonthValue]

    @classmethod
    def validate_payload(cls, payload: "CategoryValuesPayload") -> "CategoryValuesPayload":
        months = [entry.month for entry in payload.values]
        if any(month < 1 or month > 12 for month in months):
            raise ValueError("Month must be between 1 and 12.")
        if len(set(months)) != len(months):
            raise ValueError("Each month may appear only once.")
        return payload


class CategoryValuesResponse(BaseModel):
    category_id: int
    year: int
    monthly_values: list[Decimal]


class MatrixPeriodResponse(BaseModel):
    label: str
    month_indices: list[int]


class MatrixRowResponse(BaseModel):
    category_id: int
    name: str
    values: list[Decimal]
    total: Decimal
    empty: bool


class MatrixResponse(BaseModel):
    kind: str
    year: int
    period_type: str
    periods: list[MatrixPeriodResponse]
    rows: list[MatrixRowResponse]
    column_totals: list[Decimal]
    grand_total: Decimal


class PatrimonyPointResponse(BaseModel):
    label: str
    total: Decimal
    year: int
    month: int


class BenchmarkPayload(BaseModel):
    benchmark_name: str
    date: date
    close_value: Decimal
    change_percent: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "BenchmarkPayload") -> "BenchmarkPayload":
        payload.benchmark_name = payload.benchmark_name.strip().upper()
        if not payload.benchmark_name:
            raise ValueError("Benchmark name required.")
        if payload.close_value <= 0:
            raise ValueError("Close value must be greater than zero.")
        return payload


class BenchmarkResponse(BenchmarkPayload):
    id: int


class NormalizedBenchmarkResponse(BaseModel):
    date: date
    sp500: Decimal | None = None
    msci_world: Decimal | None = None


class RelativePerformanceResponse(BaseModel):
    difference: Decimal
    is_outperforming: bool
    label: str


class BenchmarkComparisonResponse(BaseModel):
    start_date: date
    portfolio_return: Decimal
    sp500: RelativePerformanceResponse | None = None
    msci_world: RelativePerformanceResponse | None = None


class CategoryOrderPayload(BaseModel):
    kind: str
    category_id: int
    position: int

    @classmethod
    def validate_payload(cls, payload: "CategoryOrderPayload") -> "CategoryOrderPayload":
        payload.kind = CategoryKind.validate(payload.kind)
        if payload.position < 1:
            raise ValueError("Position must be 1 or greater.")
        return payload


class DashboardMonthResponse(BaseModel):
    month: int
    label: str
    income: Decimal
    expenses: Decimal
    savings: Decimal
    patrimony: Decimal | None = None
    patrimony_forecast: Decimal | None = None
    previous_income: Decimal
    previous_expenses: Decimal
    previous_patrimony: Decimal


class ExpenseShareResponse(BaseModel):
    name: str
    value: Decimal


class DashboardChangesResponse(BaseModel):
    income: Decimal
    expenses: Decimal
    savings: Decimal
    patrimony: Decimal


class DashboardResponse(BaseModel):
    year: int
    month: int | None = None
    months: list[DashboardMonthResponse]
    previous_year: list[DashboardMonthResponse]
    expense_categories: list[ExpenseShareResponse]
    total_income: Decimal
    total_expenses: Decimal
    total_savings: Decimal
    current_patrimony: Decimal
    changes: DashboardChangesResponse


def get_user_id(x_user_id: str | None = Header(None, alias="x-user-id")) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    if user_id <= 0:
        raise HTTPException(status_code=400, detail="Invalid user identity.")
    return user_id


def get_fx_cache() -> ExchangeRateCache:
    return FX_CACHE


def get_owned_holding(conn, user_id: int, holding_id: int):
    row = conn.execute(
        select(holdings).where(holdings.c.id == holding_id, holdings.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Holding not found.")
    return row


def get_owned_category(conn, user_id: int, category_id: int):
    row = conn.execute(
        select(categories).where(categories.c.id == category_id, categories.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return row


def holding_response(row) -> HoldingResponse:
    return HoldingResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        isin=row["isin"],
        source=row["source"],
        asset_type=row["asset_type"],
        currency=row["currency"],
        quantity=row["quantity"],
        cost_basis=row["cost_basis"],
        created_at=row["created_at"],
    )


def snapshot_response(row) -> SnapshotSyncResponse:
    return SnapshotSyncResponse(
        id=row["id"],
        user_id=row["user_id"],
        sync_date=row["sync_date"],
        positions_count=row["positions_count"],
        total_value_usd=row["total_value_usd"],
        total_cost_usd=row["total_cost_usd"],
        total_pnl_usd=row["total_pnl_usd"],
        status=row["status"],
        error_message=row["error_message"],
        created_at=row["created_at"],
    )


def holding_transaction_response(row) -> HoldingTransactionResponse:
    return HoldingTransactionResponse(
        id=row["id"],
        holding_id=row["holding_id"],
        type=row["type"],
        amount=row["amount"],
        transaction_date=row["transaction_date"],
        quantity=row["quantity"],
        price=row["price"],
        description=row["description"],
        imported_from=row["imported_from"],
    )


def load_investment_evolution(
    user_id: int,
    reporting_currency: str,
    fx_cache: ExchangeRateCache,
) -> EvolutionResult:
    with engine.begin() as conn:
        snapshot_rows = conn.execute(
            select(
                snapshot_syncs.c.sync_date,
                snapshot_syncs.c.total_cost_usd,
                snapshot_syncs.c.total_value_usd,
                snapshot_syncs.c.status,
            )
            .where(snapshot_syncs.c.user_id == user_id)
            .order_by(snapshot_syncs.c.sync_date.asc(), snapshot_syncs.c.id.asc())
        ).mappings().all()
        transaction_rows = conn.execute(
            select(
                holding_transactions.c.transaction_date,
                holding_transactions.c.amount,
                holding_transactions.c.type,
                holdings.c.currency,
            )
            .select_from(
                holding_transactions.join(
                    holdings, holding_transactions.c.holding_id == holdings.c.id
                )
            )
            .where(
                holding_transactions.c.user_id == user_id,
                holdings.c.source != SNAPSHOT_SOURCE,
            )
            .order_by(holding_transactions.c.transaction_date.asc(), holding_transactions.c.id.asc())
        ).mappings().all()

    try:
        result = build_investment_evolution(
            [dict(row) for row in snapshot_rows],
            [dict(row) for row in transaction_rows],
            rate_lookup=fx_cache.get_rate,
            reporting_currency=reporting_currency,
            snapshot_currency=SNAPSHOT_CURRENCY,
        )
    except RateUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return result


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/currency/rate", response_model=RateResponse)
def get_exchange_rate(
    from_currency: str = Query("USD", alias="from"),
    to_currency: str = Query("EUR", alias="to"),
    fx_cache: ExchangeRateCache = Depends(get_fx_cache),
) -> RateResponse:
    try:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        quote = fx_cache.quote(source, target)
    except RateUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return RateResponse(source=source, target=target, rate=quote.rate, error=quote.error)


@app.get("/investments/evolution", response_model=EvolutionResponse)
def get_investment_evolution(
    currency: str | None = None,
    user_id: int = Depends(get_user_id),
    fx_cache: ExchangeRateCache = Depends(get_fx_cache),
) -> EvolutionResponse:
    try:
        reporting_currency = normalize_currency(currency or REPORTING_CURRENCY)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    result = load_investment_evolution(user_id, reporting_currency, fx_cache)
    if result.skipped_snapshots or result.skipped_transactions:
        logger.info(
            "Investment evolution for user %s skipped %d snapshot(s) and %d transaction(s)",
            user_id,
            result.skipped_snapshots,
            result.skipped_transactions,
        )
    return EvolutionResponse(
        currency=result.currency,
        points=[
            EvolutionPointResponse(
                date=point.date,
                timestamp=point.timestamp,
                snapshot_invested=point.snapshot_invested,
                snapshot_value=point.snapshot_value,
                transaction_invested=point.transaction_invested,
                transaction_value=point.transaction_value,
                total_invested=point.total_invested,
                total_value=point.total_value,
            )
            for point in result.points
        ],
        skipped_snapshots=result.skipped_snapshots,
        skipped_transactions=result.skipped_transactions,
    )


@app.get("/investments/sync-history", response_model=list[SnapshotSyncResponse])
def list_sync_history(
    limit: int = Query(30, ge=1, le=500),
    user_id: int = Depends(get_user_id),
) -> list[SnapshotSyncResponse]:
    with engine.begin() as conn:
        rows = conn.execute(
            select(snapshot_syncs)
            .where(snapshot_syncs.c.user_id == user_id)
            .order_by(snapshot_syncs.c.sync_date.desc(), snapshot_syncs.c.id.desc())
            .limit(limit)
        ).mappings().all()
    return [snapshot_response(row) for row in rows]


@app.get("/investments/sync-history/latest", response_model=SnapshotSyncResponse | None)
def get_latest_sync(user_id: int = Depends(get_user_id)) -> SnapshotSyncResponse | None:
    with engine.begin() as conn:
        row = conn.execute(
            select(snapshot_syncs)
            .where(snapshot_syncs.c.user_id == user_id, snapshot_syncs.c.status == "success")
            .order_by(snapshot_syncs.c.sync_date.desc(), snapshot_syncs.c.id.desc())
            .limit(1)
        ).mappings().first()
    return snapshot_response(row) if row else None


@app.post("/investments/snapshots", response_model=SnapshotSyncResponse)
def record_snapshot(
    payload: SnapshotSyncPayload,
    user_id: int = Depends(get_user_id),
) -> SnapshotSyncResponse:
    try:
        payload = SnapshotSyncPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(snapshot_syncs)
            .values(
                user_id=user_id,
                sync_date=payload.sync_date,
                positions_count=payload.positions_count,
                total_value_usd=payload.total_value_usd,
                total_cost_usd=payload.total_cost_usd,
                total_pnl_usd=payload.total_value_usd - payload.total_cost_usd,
                status=payload.status,
                error_message=payload.error_message,
            )
            .returning(*snapshot_syncs.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to record snapshot.")
    return snapshot_response(row)


@app.get("/holdings", response_model=list[HoldingResponse])
def list_holdings(user_id: int = Depends(get_user_id)) -> list[HoldingResponse]:
    with engine.begin() as conn:
        rows = conn.execute(
            select(holdings).where(holdings.c.user_id == user_id).order_by(holdings.c.name.asc())
        ).mappings().all()
    return [holding_response(row) for row in rows]


@app.post("/holdings", response_model=HoldingResponse)
def create_holding(
    payload: HoldingPayload,
    user_id: int = Depends(get_user_id),
) -> HoldingResponse:
    try:
        payload = HoldingPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(holdings)
            .values(
                user_id=user_id,
                name=payload.name,
                isin=payload.isin,
                source=payload.source,
                asset_type=payload.asset_type,
                currency=payload.currency,
            )
            .returning(*holdings.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create holding.")
    return holding_response(row)


@app.get(
    "/holdings/{holding_id}/transactions",
    response_model=list[HoldingTransactionResponse],
)
def list_holding_transactions(
    holding_id: int,
    user_id: int = Depends(get_user_id),
) -> list[HoldingTransactionResponse]:
    with engine.begin() as conn:
        get_owned_holding(conn, user_id, holding_id)
        rows = conn.execute(
            select(holding_transactions)
            .where(holding_transactions.c.holding_id == holding_id)
            .order_by(
                holding_transactions.c.transaction_date.desc(),
                holding_transactions.c.id.desc(),
            )
        ).mappings().all()
    return [holding_transaction_response(row) for row in rows]


@app.post("/holdings/{holding_id}/transactions", response_model=HoldingTransactionResponse)
def create_holding_transaction(
    holding_id: int,
    payload: HoldingTransactionPayload,
    user_id: int = Depends(get_user_id),
) -> HoldingTransactionResponse:
    try:
        payload = HoldingTransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        get_owned_holding(conn, user_id, holding_id)
        row = conn.execute(
            insert(holding_transactions)
            .values(
                user_id=user_id,
                holding_id=holding_id,
                type=payload.type,
                amount=payload.amount,
                transaction_date=payload.transaction_date,
                quantity=payload.quantity,
                price=payload.price,
                description=payload.description,
            )
            .returning(*holding_transactions.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to record transaction.")
    return holding_transaction_response(row)


@app.post("/holdings/import/myinvestor", response_model=MovementImportSummary)
async def import_myinvestor_movements(
    file: UploadFile = File(...),
    user_id: int = Depends(get_user_id),
) -> MovementImportSummary:
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="CSV file required.")

    contents = await file.read()
    try:
        decoded = contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded.") from exc

    try:
        parse_result = parse_movements_csv(decoded)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    movements = [movement for movement in parse_result.rows if movement.is_finalized]
    if not movements:
        raise HTTPException(status_code=400, detail="No finalized movements to import.")

    totals_by_isin = group_by_isin(movements)
    new_funds: list[str] = []
    with engine.begin() as conn:
        existing = conn.execute(
            select(holdings).where(
                holdings.c.user_id == user_id,
                holdings.c.source == IMPORT_SOURCE,
                holdings.c.isin.in_(list(totals_by_isin)),
            )
        ).mappings().all()
        holdings_by_isin = {row["isin"]: row["id"] for row in existing}
        existing_by_isin = {row["isin"]: row for row in existing}

        for isin, totals in totals_by_isin.items():
            current = existing_by_isin.get(isin)
            if current:
                conn.execute(
                    update(holdings)
                    .where(holdings.c.id == current["id"])
                    .values(
                        quantity=current["quantity"] + totals.shares,
                        cost_basis=merge_cost_basis(
                            current["quantity"],
                            current["cost_basis"],
                            totals.shares,
                            totals.amount,
                        ),
                        updated_at=func.now(),
                    )
                )
                continue
            holding_id = conn.execute(
                insert(holdings)
                .values(
                    user_id=user_id,
                    name=f"Fondo {isin}",
                    isin=isin,
                    source=IMPORT_SOURCE,
                    asset_type="fund",
                    currency="EUR",
                    quantity=totals.shares,
                    cost_basis=merge_cost_basis(Decimal("0"), Decimal("0"), totals.shares, totals.amount),
                    external_id=isin,
                )
                .returning(holdings.c.id)
            ).scalar_one()
            holdings_by_isin[isin] = holding_id
            new_funds.append(isin)

        existing_keys = [
            duplicate_key(row["holding_id"], row["transaction_date"], row["amount"])
            for row in conn.execute(
                select(
                    holding_transactions.c.holding_id,
                    holding_transactions.c.transaction_date,
                    holding_transactions.c.amount,
                ).where(
                    holding_transactions.c.user_id == user_id,
                    holding_transactions.c.holding_id.in_(list(holdings_by_isin.values())),
                )
            ).mappings()
        ]
        plan = plan_import(movements, holdings_by_isin, existing_keys)
        if plan.transactions:
            conn.execute(
                insert(holding_transactions),
                [
                    {
                        "user_id": user_id,
                        "holding_id": planned.holding_id,
                        "type": planned.type,
                        "quantity": planned.shares,
                        "price": planned.price,
                        "amount": planned.amount,
                        "transaction_date": planned.date,
                        "description": planned.description,
                        "imported_from": IMPORTED_FROM,
                    }
                    for planned in plan.transactions
                ],
            )

    summary = MovementImportSummary(
        imported=len(plan.transactions),
        duplicates=plan.duplicates,
        errors=plan.errors,
        new_funds=new_funds,
    )
    logger.info(
        "MyInvestor import for user %s: %d imported, %d duplicates, %d errors",
        user_id,
        summary.imported,
        summary.duplicates,
        summary.errors,
    )
    return summary


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    kind: str | None = None,
    user_id: int = Depends(get_user_id),
) -> list[CategoryResponse]:
    conditions = [categories.c.user_id == user_id]
    if kind is not None:
        try:
            conditions.append(categories.c.kind == CategoryKind.validate(kind))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        rows = conn.execute(
            select(categories)
            .where(and_(*conditions))
            .order_by(categories.c.display_order.asc(), categories.c.id.asc())
        ).mappings().all()
    return [CategoryResponse(**row) for row in rows]


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload,
    user_id: int = Depends(get_user_id),
) -> CategoryResponse:
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            row = conn.execute(
                insert(categories)
                .values(
                    user_id=user_id,
                    name=payload.name,
                    kind=payload.kind,
                    display_order=payload.display_order,
                )
                .returning(*categories.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create category.")
    return CategoryResponse(**row)


@app.put("/categories/order", response_model=list[CategoryResponse])
def reorder_categories(
    payload: CategoryOrderPayload,
    user_id: int = Depends(get_user_id),
) -> list[CategoryResponse]:
    try:
        payload = CategoryOrderPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    same_kind = and_(categories.c.user_id == user_id, categories.c.kind == payload.kind)
    with engine.begin() as conn:
        category_ids = conn.execute(
            select(categories.c.id)
            .where(same_kind)
            .order_by(categories.c.display_order.asc(), categories.c.id.asc())
        ).scalars().all()
        if payload.category_id not in category_ids:
            raise HTTPException(status_code=404, detail="Category not found.")
        try:
            new_order = move_category(category_ids, payload.category_id, payload.position)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        for category_id, display_order in new_order:
            conn.execute(
                update(categories)
                .where(categories.c.id == category_id)
                .values(display_order=display_order)
            )
        rows = conn.execute(
            select(categories).where(same_kind).order_by(categories.c.display_order.asc())
        ).mappings().all()
    return [CategoryResponse(**row) for row in rows]


@app.put("/categories/{category_id}/values", response_model=CategoryValuesResponse)
def upsert_category_values(
    category_id: int,
    payload: CategoryValuesPayload,
    user_id: int = Depends(get_user_id),
) -> CategoryValuesResponse:
    try:
        payload = CategoryValuesPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        get_owned_category(conn, user_id, category_id)
        months = [entry.month for entry in payload.values]
        if months:
            conn.execute(
                delete(category_values).where(
                    category_values.c.category_id == category_id,
                    category_values.c.year == payload.year,
                    category_values.c.month.in_(months),
                )
            )
            conn.execute(
                insert(category_values),
                [
                    {
                        "user_id": user_id,
                        "category_id": category_id,
                        "year": payload.year,
                        "month": entry.month,
                        "amount": entry.amount,
                    }
                    for entry in payload.values
                ],
            )
        rows = conn.execute(
            select(category_values.c.month, category_values.c.amount).where(
                category_values.c.category_id == category_id,
                category_values.c.year == payload.year,
            )
        ).all()

    return CategoryValuesResponse(
        category_id=category_id,
        year=payload.year,
        monthly_values=list(monthly_values_from_entries((row[0], row[1]) for row in rows)),
    )


@app.get("/matrix", response_model=MatrixResponse)
def get_category_matrix(
    kind: str,
    year: int,
    period: str = "monthly",
    user_id: int = Depends(get_user_id),
) -> MatrixResponse:
    try:
        normalized_kind = CategoryKind.validate(kind)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        category_rows = conn.execute(
            select(categories.c.id, categories.c.name)
            .where(categories.c.user_id == user_id, categories.c.kind == normalized_kind)
            .order_by(categories.c.display_order.asc(), categories.c.id.asc())
        ).all()
        value_rows = conn.execute(
            select(category_values.c.category_id, category_values.c.month, category_values.c.amount)
            .where(
                category_values.c.user_id == user_id,
                category_values.c.year == year,
                category_values.c.category_id.in_([row[0] for row in category_rows]),
            )
        ).all()

    entries: dict[int, list[tuple[int, Decimal]]] = {}
    for category_id, month, amount in value_rows:
        entries.setdefault(category_id, []).append((month, amount))

    try:
        view = build_matrix(
            [
                CategoryRow(
                    category_id=category_id,
                    name=name,
                    monthly_values=monthly_values_from_entries(entries.get(category_id, [])),
                )
                for category_id, name in category_rows
            ],
            period,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return MatrixResponse(
        kind=normalized_kind,
        year=year,
        period_type=view.period_type,
        periods=[
            MatrixPeriodResponse(label=item.label, month_indices=list(item.month_indices))
            for item in view.periods
        ],
        rows=[
            MatrixRowResponse(
                category_id=row.category_id,
                name=row.name,
                values=list(row.values),
                total=row.total,
                empty=row.empty,
            )
            for row in view.rows
        ],
        column_totals=list(view.column_totals),
        grand_total=view.grand_total,
    )


@app.get("/patrimony/history", response_model=list[PatrimonyPointResponse])
def get_patrimony_history(
    start_year: int | None = None,
    end_year: int | None = None,
    user_id: int = Depends(get_user_id),
) -> list[PatrimonyPointResponse]:
    conditions = [category_values.c.user_id == user_id, categories.c.kind == "asset"]
    if start_year is not None:
        conditions.append(category_values.c.year >= start_year)
    if end_year is not None:
        conditions.append(category_values.c.year <= end_year)

    with engine.begin() as conn:
        rows = conn.execute(
            select(category_values.c.year, category_values.c.month, category_values.c.amount)
            .select_from(
                category_values.join(categories, category_values.c.category_id == categories.c.id)
            )
            .where(and_(*conditions))
        ).all()

    history = build_patrimony_history(
        AssetValue(year=year, month=month, amount=amount) for year, month, amount in rows
    )
    return [
        PatrimonyPointResponse(label=point.label, total=point.total, year=point.year, month=point.month)
        for point in history
    ]


@app.get("/dashboard", response_model=DashboardResponse)
def get_dashboard(
    year: int,
    month: int | None = None,
    user_id: int = Depends(get_user_id),
) -> DashboardResponse:
    with engine.begin() as conn:
        rows = conn.execute(
            select(
                category_values.c.year,
                categories.c.kind,
                category_values.c.category_id,
                category_values.c.month,
                category_values.c.amount,
            )
            .select_from(
                category_values.join(categories, category_values.c.category_id == categories.c.id)
            )
            .where(
                category_values.c.user_id == user_id,
                category_values.c.year.in_([year, year - 1]),
                categories.c.kind.in_(["income", "expense", "asset"]),
            )
        ).all()
        expense_names = {
            category_id: name
            for category_id, name in conn.execute(
                select(categories.c.id, categories.c.name).where(
                    categories.c.user_id == user_id, categories.c.kind == "expense"
                )
            ).all()
        }

    entries: dict[tuple[int, str], list[CategoryEntry]] = {}
    for entry_year, kind, category_id, entry_month, amount in rows:
        entries.setdefault((entry_year, kind), []).append(
            CategoryEntry(category_id=category_id, month=entry_month, amount=amount)
        )

    def year_entries(entry_year: int) -> YearEntries:
        return YearEntries(
            income=entries.get((entry_year, "income"), []),
            expenses=entries.get((entry_year, "expense"), []),
            assets=entries.get((entry_year, "asset"), []),
        )

    try:
        summary = build_dashboard(
            year,
            year_entries(year),
            year_entries(year - 1),
            expense_names,
            month=month,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return DashboardResponse(
        year=summary.year,
        month=summary.month,
        months=[DashboardMonthResponse(**asdict(item)) for item in summary.months],
        previous_year=[DashboardMonthResponse(**asdict(item)) for item in summary.previous_year],
        expense_categories=[
            ExpenseShareResponse(name=share.name, value=share.value)
            for share in summary.expense_categories
        ],
        total_income=summary.total_income,
        total_expenses=summary.total_expenses,
        total_savings=summary.total_savings,
        current_patrimony=summary.current_patrimony,
        changes=DashboardChangesResponse(**asdict(summary.changes)),
    )


@app.get("/benchmarks", response_model=list[BenchmarkResponse])
def list_benchmarks(start_date: date | None = None) -> list[BenchmarkResponse]:
    query = select(benchmark_history).order_by(benchmark_history.c.date.asc())
    if start_date is not None:
        query = query.where(benchmark_history.c.date >= start_date)
    with engine.begin() as conn:
        rows = conn.execute(query).mappings().all()
    return [BenchmarkResponse(**row) for row in rows]


@app.post("/benchmarks", response_model=BenchmarkResponse)
def record_benchmark(
    payload: BenchmarkPayload,
    user_id: int = Depends(get_user_id),
) -> BenchmarkResponse:
    try:
        payload = BenchmarkPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            row = conn.execute(
                insert(benchmark_history)
                .values(
                    benchmark_name=payload.benchmark_name,
                    date=payload.date,
                    close_value=payload.close_value,
                    change_percent=payload.change_percent,
                )
                .returning(*benchmark_history.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Benchmark close already recorded.") from exc
    if not row:
        raise HTTPException(status_code=500, detail="Failed to record benchmark.")
    logger.info(
        "Benchmark close %s %s recorded by user %s", row["benchmark_name"], row["date"], user_id
    )
    return BenchmarkResponse(**row)


@app.get("/benchmarks/normalized", response_model=list[NormalizedBenchmarkResponse])
def get_normalized_benchmarks(start_date: date) -> list[NormalizedBenchmarkResponse]:
    with engine.begin() as conn:
        rows = conn.execute(
            select(benchmark_history).order_by(benchmark_history.c.date.asc())
        ).mappings().all()

    normalized = normalize_benchmarks(
        [
            BenchmarkClose(
                benchmark_name=row["benchmark_name"],
                date=row["date"],
                close_value=row["close_value"],
                change_percent=row["change_percent"],
            )
            for row in rows
        ],
        start_date,
    )
    return [
        NormalizedBenchmarkResponse(date=item.date, sp500=item.sp500, msci_world=item.msci_world)
        for item in normalized
    ]


@app.get("/benchmarks/comparison", response_model=BenchmarkComparisonResponse | None)
def get_benchmark_comparison(
    currency: str | None = None,
    user_id: int = Depends(get_user_id),
    fx_cache: ExchangeRateCache = Depends(get_fx_cache),
) -> BenchmarkComparisonResponse | None:
    try:
        reporting_currency = normalize_currency(currency or REPORTING_CURRENCY)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    result = load_investment_evolution(user_id, reporting_currency, fx_cache)
    portfolio_values = [(point.date, point.total_value) for point in result.points]
    start_date = next((day for day, value in portfolio_values if value > 0), None)
    if start_date is None:
        return None

    with engine.begin() as conn:
        rows = conn.execute(
            select(benchmark_history)
            .where(benchmark_history.c.date >= start_date)
            .order_by(benchmark_history.c.date.asc())
        ).mappings().all()

    normalized = normalize_benchmarks(
        [
            BenchmarkClose(
                benchmark_name=row["benchmark_name"],
                date=row["date"],
                close_value=row["close_value"],
                change_percent=row["change_percent"],
            )
            for row in rows
        ],
        start_date,
    )
    comparison = compare_with_benchmarks(portfolio_values, normalized)
    if comparison is None:
        return None
    return BenchmarkComparisonResponse(
        start_date=comparison.start_date,
        portfolio_return=comparison.portfolio_return,
        sp500=RelativePerformanceResponse(**asdict(comparison.sp500)) if comparison.sp500 else None,
        msci_world=(
            RelativePerformanceResponse(**asdict(comparison.msci_world))
            if comparison.msci_world
            else None
        ),
    )
