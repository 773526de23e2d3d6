import os
from datetime import date, datetime, timedelta
from decimal import Decimal

import bcrypt
import structlog
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from backend.currency_conversion import (
    SUPPORTED_CURRENCIES,
    build_rate_provider,
    convert_amount,
    normalize_currency,
    resolve_rate,
    snapshot_rate_for,
)
from backend.electricity_engine import (
    AddressPeriod,
    MeterBill,
    compute_usage,
    consumption_history,
    forecast_next_bill,
    summarize_bills,
)
from backend.logging_config import configure_logging
from backend.portfolio_engine import Holding, summarize_portfolio
from backend.query_cache import QueryCache
from backend.recurring_projection import (
    RecurringTemplate,
    advance_template,
    project_templates,
    validate_frequency,
    validate_overflow,
)
from backend.report_engine import FinancialRecord, summarize_records

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./finance_tracker.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
DEFAULT_DATE_FORMAT = "MM/dd/yyyy"
DATE_FORMATS = {"MM/dd/yyyy", "dd/MM/yyyy", "yyyy-MM-dd"}
FX_PROVIDER = build_rate_provider(os.getenv("RATE_PROVIDER"))
RECURRENCE_OVERFLOW = validate_overflow(os.getenv("RECURRENCE_OVERFLOW"))
RECENT_TRANSACTION_LIMIT = 5

QUERY_CACHE = QueryCache()
TRANSACTIONS = "transactions"
INVESTMENTS = "investments"
ELECTRICITY_BILLS = "electricity_bills"
PROPERTY_ADDRESSES = "property_addresses"
USER_PREFERENCES = "user_preferences"
RECURRING_TRANSACTIONS = "recurring_transactions"
RECURRING_INVESTMENTS = "recurring_investments"

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

user_preferences = Table(
    "user_preferences",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), unique=True, nullable=False),
    Column("default_currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("date_format", String(20), nullable=False, server_default=DEFAULT_DATE_FORMAT),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("title", String(255), nullable=False),
    Column("description", String(1000)),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("category", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("exchange_rate", Numeric(18, 6)),
    Column("rate_currency", String(3)),
    Column("transaction_date", Date, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

investments = Table(
    "investments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("symbol", String(50), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(50), nullable=False),
    Column("quantity", Numeric(18, 8), nullable=False),
    Column("purchase_price", Numeric(14, 5), nullable=False),
    Column("current_price", Numeric(14, 5), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("exchange_rate", Numeric(18, 6)),
    Column("rate_currency", String(3)),
    Column("purchase_date", Date, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

property_addresses = Table(
    "property_addresses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("address_line_1", String(255), nullable=False),
    Column("address_line_2", String(255)),
    Column("city", String(255), nullable=False),
    Column("state_province", String(255)),
    Column("postal_code", String(50)),
    Column("country", String(255), nullable=False),
    Column("nickname", String(255)),
    Column("is_current", Boolean, nullable=False, default=False),
    Column("move_in_date", Date, nullable=False),
    Column("move_out_date", Date),
    Column("has_day_night_meter", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

electricity_bills = Table(
    "electricity_bills",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("property_address_id", Integer, ForeignKey("property_addresses.id")),
    Column("bill_date", Date, nullable=False),
    Column("reading_date", Date, nullable=False),
    Column("day_reading", Numeric(12, 2), nullable=False),
    Column("night_reading", Numeric(12, 2), nullable=False),
    Column("previous_day_reading", Numeric(12, 2)),
    Column("previous_night_reading", Numeric(12, 2)),
    Column("day_usage", Numeric(12, 2)),
    Column("night_usage", Numeric(12, 2)),
    Column("total_usage", Numeric(12, 2)),
    Column("amount_paid", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("exchange_rate", Numeric(18, 6)),
    Column("rate_currency", String(3)),
    Column("day_rate", Numeric(10, 5)),
    Column("night_rate", Numeric(10, 5)),
    Column("standing_charge", Numeric(10, 5)),
    Column("notes", String(1000)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

recurring_transactions = Table(
    "recurring_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("title", String(255), nullable=False),
    Column("description", String(1000)),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("category", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("frequency", String(20), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("next_occurrence", Date, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

recurring_investments = Table(
    "recurring_investments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("symbol", String(50), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(50), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("frequency", String(20), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("next_occurrence", Date, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)
    logger.info("database_ready", url=engine.url.render_as_string(hide_password=True))


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class TransactionType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


class InvestmentType:
    values = {
        "stock",
        "bond",
        "crypto",
        "etf",
        "mutual_fund",
        "real_estate",
        "commodity",
        "p2p_lending",
        "other",
    }

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower().replace(" ", "_").replace("-", "_")
        if normalized not in cls.values:
            raise ValueError("Invalid investment type.")
        return normalized


def _clean_optional(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def _require_text(value: str, message: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(message)
    return cleaned


def _require_non_negative(value: Decimal | None, message: str) -> None:
    if value is not None and value < 0:
        raise ValueError(message)


def _validate_rate(value: Decimal | None) -> None:
    if value is not None and value <= 0:
        raise ValueError("Exchange rate must be greater than zero.")


class PreferencesPayload(BaseModel):
    default_currency: str | None = None
    date_format: str | None = None

    @classmethod
    def validate_payload(cls, payload: "PreferencesPayload") -> "PreferencesPayload":
        if payload.default_currency is not None:
            normalized = normalize_currency(payload.default_currency)
            if normalized not in SUPPORTED_CURRENCIES:
                raise ValueError(
                    "Default currency must be one of: " + ", ".join(SUPPORTED_CURRENCIES) + "."
                )
            payload.default_currency = normalized
        if payload.date_format is not None:
            payload.date_format = payload.date_format.strip()
            if payload.date_format not in DATE_FORMATS:
                raise ValueError("Unsupported date format.")
        return payload


class PreferencesResponse(BaseModel):
    id: int | None = None
    user_id: int
    default_currency: str
    date_format: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TransactionPayload(BaseModel):
    title: str
    description: str | None = None
    amount: Decimal
    category: str
    type: str
    currency: str | None = None
    exchange_rate: Decimal | None = None
    transaction_date: date | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.title = _require_text(payload.title, "Title required.")
        payload.category = _require_text(payload.category, "Category required.")
        payload.description = _clean_optional(payload.description)
        payload.type = TransactionType.validate(payload.type)
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        _require_non_negative(payload.amount, "Amount must not be negative.")
        _validate_rate(payload.exchange_rate)
        if payload.transaction_date is None:
            payload.transaction_date = date.today()
        return payload


class TransactionResponse(TransactionPayload):
    id: int
    user_id: int
    currency: str
    transaction_date: date
    created_at: datetime | None = None
    updated_at: datetime | None = None


class InvestmentPayload(BaseModel):
    symbol: str
    name: str
    type: str
    quantity: Decimal
    purchase_price: Decimal
    current_price: Decimal
    currency: str | None = None
    exchange_rate: Decimal | None = None
    purchase_date: date | None = None

    @classmethod
    def validate_payload(cls, payload: "InvestmentPayload") -> "InvestmentPayload":
        payload.symbol = _require_text(payload.symbol, "Symbol required.").upper()
        payload.name = _require_text(payload.name, "Investment name required.")
        payload.type = InvestmentType.validate(payload.type)
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        _require_non_negative(payload.quantity, "Quantity must not be negative.")
        _require_non_negative(payload.purchase_price, "Purchase price must not be negative.")
        _require_non_negative(payload.current_price, "Current price must not be negative.")
        _validate_rate(payload.exchange_rate)
        if payload.purchase_date is None:
            payload.purchase_date = date.today()
        return payload


class InvestmentResponse(InvestmentPayload):
    id: int
    user_id: int
    currency: str
    purchase_date: date
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ElectricityBillPayload(BaseModel):
    property_address_id: int | None = None
    bill_date: date
    reading_date: date
    day_reading: Decimal
    night_reading: Decimal
    previous_day_reading: Decimal | None = None
    previous_night_reading: Decimal | None = None
    amount_paid: Decimal
    currency: str | None = None
    exchange_rate: Decimal | None = None
    day_rate: Decimal | None = None
    night_rate: Decimal | None = None
    standing_charge: Decimal | None = None
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ElectricityBillPayload") -> "ElectricityBillPayload":
        for name in (
            "day_reading",
            "night_reading",
            "previous_day_reading",
            "previous_night_reading",
            "amount_paid",
            "day_rate",
            "night_rate",
            "standing_charge",
        ):
            _require_non_negative(getattr(payload, name), f"{name} must not be negative.")
        if payload.previous_day_reading is not None and payload.previous_day_reading > payload.day_reading:
            raise ValueError("Previous day reading exceeds current day reading.")
        if (
            payload.previous_night_reading is not None
            and payload.previous_night_reading > payload.night_reading
        ):
            raise ValueError("Previous night reading exceeds current night reading.")
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        payload.notes = _clean_optional(payload.notes)
        _validate_rate(payload.exchange_rate)
        return payload


class ElectricityBillResponse(ElectricityBillPayload):
    id: int
    user_id: int
    currency: str
    day_usage: Decimal | None = None
    night_usage: Decimal | None = None
    total_usage: Decimal | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PropertyAddressPayload(BaseModel):
    address_line_1: str
    address_line_2: str | None = None
    city: str
    state_province: str | None = None
    postal_code: str | None = None
    country: str
    nickname: str | None = None
    is_current: bool = False
    move_in_date: date | None = None
    move_out_date: date | None = None
    has_day_night_meter: bool = False

    @classmethod
    def validate_payload(cls, payload: "PropertyAddressPayload") -> "PropertyAddressPayload":
        payload.address_line_1 = _require_text(payload.address_line_1, "Address line 1 required.")
        payload.city = _require_text(payload.city, "City required.")
        payload.country = _require_text(payload.country, "Country required.")
        payload.address_line_2 = _clean_optional(payload.address_line_2)
        payload.state_province = _clean_optional(payload.state_province)
        payload.postal_code = _clean_optional(payload.postal_code)
        payload.nickname = _clean_optional(payload.nickname)
        if payload.move_in_date is None:
            payload.move_in_date = date.today()
        if payload.move_out_date is not None and payload.move_out_date < payload.move_in_date:
            raise ValueError("Move-out date must be on or after move-in date.")
        return payload


class PropertyAddressResponse(PropertyAddressPayload):
    id: int
    user_id: int
    move_in_date: date
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RecurringTransactionPayload(BaseModel):
    title: str
    description: str | None = None
    amount: Decimal
    category: str
    type: str
    currency: str | None = None
    frequency: str = "monthly"
    start_date: date
    end_date: date | None = None
    next_occurrence: date | None = None
    is_active: bool = True

    @classmethod
    def validate_payload(
        cls, payload: "RecurringTransactionPayload"
    ) -> "RecurringTransactionPayload":
        payload.title = _require_text(payload.title, "Title required.")
        payload.category = _require_text(payload.category, "Category required.")
        payload.description = _clean_optional(payload.description)
        payload.type = TransactionType.validate(payload.type)
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        _require_non_negative(payload.amount, "Amount must not be negative.")
        payload.frequency = validate_frequency(payload.frequency)
        _validate_schedule_dates(payload)
        return payload


class RecurringTransactionResponse(RecurringTransactionPayload):
    id: int
    user_id: int
    currency: str
    next_occurrence: date
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RecurringInvestmentPayload(BaseModel):
    symbol: str
    name: str
    type: str
    amount: Decimal
    currency: str | None = None
    frequency: str = "monthly"
    start_date: date
    end_date: date | None = None
    next_occurrence: date | None = None
    is_active: bool = True

    @classmethod
    def validate_payload(
        cls, payload: "RecurringInvestmentPayload"
    ) -> "RecurringInvestmentPayload":
        payload.symbol = _require_text(payload.symbol, "Symbol required.").upper()
        payload.name = _require_text(payload.name, "Investment name required.")
        payload.type = InvestmentType.validate(payload.type)
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        _require_non_negative(payload.amount, "Amount must not be negative.")
        payload.frequency = validate_frequency(payload.frequency)
        _validate_schedule_dates(payload)
        return payload


class RecurringInvestmentResponse(RecurringInvestmentPayload):
    id: int
    user_id: int
    currency: str
    next_occurrence: date
    created_at: datetime | None = None
    updated_at: datetime | None = None


def _validate_schedule_dates(payload) -> None:
    if payload.end_date is not None and payload.end_date < payload.start_date:
        raise ValueError("End date must be on or after start date.")
    if payload.next_occurrence is None:
        payload.next_occurrence = payload.start_date
    if payload.next_occurrence < payload.start_date:
        raise ValueError("Next occurrence must be on or after start date.")


class UpcomingOccurrenceResponse(BaseModel):
    date: date
    template_id: int | None = None
    kind: str
    label: str | None = None
    amount: Decimal | None = None
    currency: str | None = None


class MonthlyBucketResponse(BaseModel):
    month: str
    income: Decimal
    expenses: Decimal


class CategoryBucketResponse(BaseModel):
    category: str
    total: Decimal


class DashboardResponse(BaseModel):
    currency: str
    total_income: Decimal
    total_expenses: Decimal
    net: Decimal
    transaction_count: int
    monthly: list[MonthlyBucketResponse]
    categories: list[CategoryBucketResponse]
    recent_transactions: list[TransactionResponse]


class HoldingValuationResponse(BaseModel):
    investment_id: int | None = None
    symbol: str | None = None
    value: Decimal
    cost: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal


class PortfolioSummaryResponse(BaseModel):
    currency: str
    total_value: Decimal
    total_cost: Decimal
    total_gain_loss: Decimal
    total_gain_loss_percent: Decimal
    holdings: list[HoldingValuationResponse]


class BillSummaryResponse(BaseModel):
    currency: str
    total_cost: Decimal
    total_usage: Decimal
    monthly_average: Decimal
    bill_count: int


class BillForecastResponse(BaseModel):
    currency: str
    forecasted_amount: Decimal
    forecasted_usage: Decimal
    confidence_level: str
    based_on_bills: int


class ConsumptionHistoryResponse(BaseModel):
    bill_date: date
    reading_date: date
    total_usage: Decimal
    day_usage: Decimal
    night_usage: Decimal
    amount_paid: Decimal
    currency: str
    property_nickname: str | None = None
    forecasted_amount: Decimal | None = None
    forecast_accuracy: Decimal | None = None


class ExchangeRateResponse(BaseModel):
    source: str
    target: str
    rate: Decimal


class ConversionResponse(BaseModel):
    source: str
    target: str
    amount: Decimal
    converted_amount: Decimal
    snapshot_rate: Decimal | None = None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def validate_payload(payload_cls, payload):
    try:
        return payload_cls.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def validate_range(date_from: date | None, date_to: date | None) -> None:
    if date_from is not None and date_to is not None and date_from > date_to:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")


def safe_normalize_currency(value: str | None, fallback: str) -> str:
    if not value:
        return fallback
    try:
        return normalize_currency(value)
    except ValueError:
        return fallback


def fetch_preferences(conn, user_id: int) -> dict | None:
    row = conn.execute(
        select(user_preferences).where(user_preferences.c.user_id == user_id)
    ).mappings().first()
    return dict(row) if row else None


def load_preferences(user_id: int) -> dict | None:
    def loader() -> dict | None:
        with engine.begin() as conn:
            return fetch_preferences(conn, user_id)

    return QUERY_CACHE.get_or_load(USER_PREFERENCES, user_id, None, loader)


def preferred_currency(preferences: dict | None) -> str:
    if preferences:
        return safe_normalize_currency(preferences["default_currency"], SYSTEM_DEFAULT_CURRENCY)
    return SYSTEM_DEFAULT_CURRENCY


def resolve_default_currency(conn, user_id: int) -> str:
    return preferred_currency(fetch_preferences(conn, user_id))


def get_default_currency(user_id: int) -> str:
    return preferred_currency(load_preferences(user_id))


def resolve_snapshot(
    conn,
    user_id: int,
    currency: str,
    supplied_rate: Decimal | None,
    existing: dict | None = None,
) -> tuple[Decimal, str]:
    """Pick the exchange rate to persist with a record.

    Returns the rate and the currency it converts into. An unchanged currency
    keeps the rate captured when the record was first written.
    """
    default_currency = resolve_default_currency(conn, user_id)
    if supplied_rate is not None:
        return supplied_rate, default_currency
    if (
        existing is not None
        and existing["currency"] == currency
        and existing["exchange_rate"] is not None
        and existing["rate_currency"]
    ):
        return existing["exchange_rate"], existing["rate_currency"]
    return snapshot_rate_for(currency, default_currency, FX_PROVIDER), default_currency


def applicable_snapshot(row: dict, target_currency: str) -> Decimal | None:
    # A snapshot only converts into the currency it was captured against.
    if row.get("rate_currency") == target_currency:
        return row.get("exchange_rate")
    return None


def fetch_owned_row(conn, table: Table, row_id: int, user_id: int) -> dict | None:
    row = conn.execute(
        select(table).where(table.c.id == row_id, table.c.user_id == user_id)
    ).mappings().first()
    return dict(row) if row else None


def delete_owned_row(table: Table, row_id: int, user_id: int, label: str, conn=None) -> None:
    if conn is None:
        with engine.begin() as conn:
            delete_owned_row(table, row_id, user_id, label, conn)
        return
    stmt = table.delete().where(table.c.id == row_id, table.c.user_id == user_id)
    if conn.execute(stmt).rowcount == 0:
        raise HTTPException(status_code=404, detail=f"{label} not found.")
    logger.info("record_deleted", table=table.name, record_id=row_id, user_id=user_id)


def matches_search(search: str | None, *values: str | None) -> bool:
    if not search:
        return True
    needle = search.strip().lower()
    return any(needle in value.lower() for value in values if value)


def load_transactions(user_id: int, date_from: date | None, date_to: date | None) -> list[dict]:
    def loader() -> list[dict]:
        conditions = [transactions.c.user_id == user_id]
        if date_from is not None:
            conditions.append(transactions.c.transaction_date >= date_from)
        if date_to is not None:
            conditions.append(transactions.c.transaction_date <= date_to)
        with engine.begin() as conn:
            rows = conn.execute(
                select(transactions)
                .where(*conditions)
                .order_by(transactions.c.transaction_date.desc(), transactions.c.id.desc())
            ).mappings().all()
        return [dict(row) for row in rows]

    return QUERY_CACHE.get_or_load(
        TRANSACTIONS, user_id, {"from": date_from, "to": date_to}, loader
    )


def load_investments(user_id: int, date_from: date | None, date_to: date | None) -> list[dict]:
    def loader() -> list[dict]:
        conditions = [investments.c.user_id == user_id]
        if date_from is not None:
            conditions.append(investments.c.purchase_date >= date_from)
        if date_to is not None:
            conditions.append(investments.c.purchase_date <= date_to)
        with engine.begin() as conn:
            rows = conn.execute(
                select(investments)
                .where(*conditions)
                .order_by(investments.c.purchase_date.desc(), investments.c.id.desc())
            ).mappings().all()
        return [dict(row) for row in rows]

    return QUERY_CACHE.get_or_load(
        INVESTMENTS, user_id, {"from": date_from, "to": date_to}, loader
    )


def load_bills(user_id: int, date_from: date | None, date_to: date | None) -> list[dict]:
    def loader() -> list[dict]:
        conditions = [electricity_bills.c.user_id == user_id]
        if date_from is not None:
            conditions.append(electricity_bills.c.reading_date >= date_from)
        if date_to is not None:
            conditions.append(electricity_bills.c.reading_date <= date_to)
        with engine.begin() as conn:
            rows = conn.execute(
                select(electricity_bills)
                .where(*conditions)
                .order_by(electricity_bills.c.reading_date.desc(), electricity_bills.c.id.desc())
            ).mappings().all()
        return [dict(row) for row in rows]

    return QUERY_CACHE.get_or_load(
        ELECTRICITY_BILLS, user_id, {"from": date_from, "to": date_to}, loader
    )


def load_addresses(user_id: int) -> list[dict]:
    def loader() -> list[dict]:
        with engine.begin() as conn:
            rows = conn.execute(
                select(property_addresses)
                .where(property_addresses.c.user_id == user_id)
                .order_by(property_addresses.c.move_in_date.desc(), property_addresses.c.id.desc())
            ).mappings().all()
        return [dict(row) for row in rows]

    return QUERY_CACHE.get_or_load(PROPERTY_ADDRESSES, user_id, None, loader)


def load_templates(table: Table, entity: str, user_id: int) -> list[dict]:
    def loader() -> list[dict]:
        with engine.begin() as conn:
            rows = conn.execute(
                select(table)
                .where(table.c.user_id == user_id)
                .order_by(table.c.next_occurrence.asc(), table.c.id.asc())
            ).mappings().all()
        return [dict(row) for row in rows]

    return QUERY_CACHE.get_or_load(entity, user_id, None, loader)


def filter_transactions(
    rows: list[dict], txn_type: str | None, category: str | None, search: str | None
) -> list[dict]:
    normalized_type = txn_type.strip().lower() if txn_type else None
    return [
        row
        for row in rows
        if (normalized_type is None or row["type"] == normalized_type)
        and (not category or row["category"] == category)
        and matches_search(search, row["title"], row["description"], row["category"])
    ]


def filter_investments(rows: list[dict], inv_type: str | None, search: str | None) -> list[dict]:
    normalized_type = None
    if inv_type:
        try:
            normalized_type = InvestmentType.validate(inv_type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        row
        for row in rows
        if (normalized_type is None or row["type"] == normalized_type)
        and matches_search(search, row["symbol"], row["name"])
    ]


def filter_bills(rows: list[dict], search: str | None) -> list[dict]:
    return [
        row
        for row in rows
        if matches_search(
            search, row["notes"], row["bill_date"].isoformat(), row["reading_date"].isoformat()
        )
    ]


def record_from_row(row: dict, target_currency: str) -> FinancialRecord:
    return FinancialRecord(
        amount=row["amount"],
        type=row["type"],
        currency=row["currency"],
        date=row["transaction_date"],
        category=row["category"],
        exchange_rate=applicable_snapshot(row, target_currency),
    )


def holding_from_row(row: dict, target_currency: str) -> Holding:
    return Holding(
        quantity=row["quantity"],
        purchase_price=row["purchase_price"],
        current_price=row["current_price"],
        currency=row["currency"],
        exchange_rate=applicable_snapshot(row, target_currency),
        holding_id=row["id"],
        symbol=row["symbol"],
        type=row["type"],
    )


def bill_from_row(row: dict, target_currency: str) -> MeterBill:
    return MeterBill(
        bill_date=row["bill_date"],
        reading_date=row["reading_date"],
        day_reading=row["day_reading"],
        night_reading=row["night_reading"],
        amount_paid=row["amount_paid"],
        currency=row["currency"],
        previous_day_reading=row["previous_day_reading"],
        previous_night_reading=row["previous_night_reading"],
        exchange_rate=applicable_snapshot(row, target_currency),
    )


def address_from_row(row: dict) -> AddressPeriod:
    return AddressPeriod(
        move_in_date=row["move_in_date"],
        move_out_date=row["move_out_date"],
        nickname=row["nickname"],
        address_line_1=row["address_line_1"],
    )


def template_from_row(row: dict, kind: str) -> RecurringTemplate:
    return RecurringTemplate(
        start_date=row["start_date"],
        next_occurrence=row["next_occurrence"],
        frequency=row["frequency"],
        end_date=row["end_date"],
        is_active=row["is_active"],
        template_id=row["id"],
        kind=kind,
        label=row.get("title") or row.get("name"),
        amount=row["amount"],
        currency=row["currency"],
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(email=email, hashed_password=hashed_password)
        .returning(users.c.id, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        logger.info("signup_rejected", email=email, reason="duplicate")
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("user_created", user_id=row["id"])
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        logger.info("login_failed", email=email)
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/preferences", response_model=PreferencesResponse)
def get_preferences(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PreferencesResponse:
    user_id = get_user_id(x_user_id)
    row = load_preferences(user_id)
    if not row:
        return PreferencesResponse(
            user_id=user_id,
            default_currency=SYSTEM_DEFAULT_CURRENCY,
            date_format=DEFAULT_DATE_FORMAT,
        )
    return PreferencesResponse(**row)


@app.put("/preferences", response_model=PreferencesResponse)
def save_preferences(
    payload: PreferencesPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PreferencesResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(PreferencesPayload, payload)
    values = {
        key: value
        for key, value in (
            ("default_currency", payload.default_currency),
            ("date_format", payload.date_format),
        )
        if value is not None
    }
    try:
        with engine.begin() as conn:
            existing = fetch_preferences(conn, user_id)
            if existing:
                stmt = (
                    update(user_preferences)
                    .where(user_preferences.c.user_id == user_id)
                    .values(updated_at=func.now(), **values)
                    .returning(*user_preferences.c)
                )
            else:
                stmt = (
                    insert(user_preferences)
                    .values(
                        user_id=user_id,
                        default_currency=values.get("default_currency", SYSTEM_DEFAULT_CURRENCY),
                        date_format=values.get("date_format", DEFAULT_DATE_FORMAT),
                    )
                    .returning(*user_preferences.c)
                )
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Preferences already exist.") from exc
    finally:
        QUERY_CACHE.invalidate(USER_PREFERENCES, user_id)

    if not row:
        raise HTTPException(status_code=500, detail="Failed to save preferences.")
    logger.info("preferences_saved", user_id=user_id, created=existing is None)
    return PreferencesResponse(**row)


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    date_from: date | None = Query(None, alias="from"),
    date_to: date | None = Query(None, alias="to"),
    type: str | None = None,
    category: str | None = None,
    search: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    validate_range(date_from, date_to)
    rows = filter_transactions(load_transactions(user_id, date_from, date_to), type, category, search)
    return [TransactionResponse(**row) for row in rows]


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = fetch_owned_row(conn, transactions, transaction_id, user_id)
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return TransactionResponse(**row)


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(TransactionPayload, payload)

    with engine.begin() as conn:
        currency = payload.currency or resolve_default_currency(conn, user_id)
        rate, rate_currency = resolve_snapshot(conn, user_id, currency, payload.exchange_rate)
        row = conn.execute(
            insert(transactions)
            .values(
                user_id=user_id,
                title=payload.title,
                description=payload.description,
                amount=payload.amount,
                category=payload.category,
                type=payload.type,
                currency=currency,
                exchange_rate=rate,
                rate_currency=rate_currency,
                transaction_date=payload.transaction_date,
            )
            .returning(*transactions.c)
        ).mappings().first()
    QUERY_CACHE.invalidate(TRANSACTIONS, user_id)

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    logger.info("transaction_created", user_id=user_id, transaction_id=row["id"], type=row["type"])
    return TransactionResponse(**row)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(TransactionPayload, payload)

    with engine.begin() as conn:
        existing = fetch_owned_row(conn, transactions, transaction_id, user_id)
        if not existing:
            raise HTTPException(status_code=404, detail="Transaction not found.")
        currency = payload.currency or existing["currency"]
        rate, rate_currency = resolve_snapshot(
            conn, user_id, currency, payload.exchange_rate, existing
        )
        row = conn.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .values(
                title=payload.title,
                description=payload.description,
                amount=payload.amount,
                category=payload.category,
                type=payload.type,
                currency=currency,
                exchange_rate=rate,
                rate_currency=rate_currency,
                transaction_date=payload.transaction_date,
                updated_at=func.now(),
            )
            .returning(*transactions.c)
        ).mappings().first()
    QUERY_CACHE.invalidate(TRANSACTIONS, user_id)

    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return TransactionResponse(**row)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        delete_owned_row(transactions, transaction_id, user_id, "Transaction")
    finally:
        QUERY_CACHE.invalidate(TRANSACTIONS, user_id)
    return {"status": "deleted"}


@app.get("/dashboard", response_model=DashboardResponse)
def dashboard(
    date_from: date | None = Query(None, alias="from"),
    date_to: date | None = Query(None, alias="to"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardResponse:
    user_id = get_user_id(x_user_id)
    validate_range(date_from, date_to)
    currency = get_default_currency(user_id)
    rows = load_transactions(user_id, date_from, date_to)
    summary = summarize_records(
        (record_from_row(row, currency) for row in rows), currency, rate_provider=FX_PROVIDER
    )
    return DashboardResponse(
        currency=currency,
        total_income=summary.total_income,
        total_expenses=summary.total_expenses,
        net=summary.net,
        transaction_count=summary.record_count,
        monthly=[
            MonthlyBucketResponse(month=bucket.label, income=bucket.income, expenses=bucket.expenses)
            for bucket in summary.monthly
        ],
        categories=[
            CategoryBucketResponse(category=bucket.name, total=bucket.total)
            for bucket in summary.categories
        ],
        recent_transactions=[
            TransactionResponse(**row) for row in rows[:RECENT_TRANSACTION_LIMIT]
        ],
    )


@app.get("/investments", response_model=list[InvestmentResponse])
def list_investments(
    date_from: date | None = Query(None, alias="from"),
    date_to: date | None = Query(None, alias="to"),
    type: str | None = None,
    search: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[InvestmentResponse]:
    user_id = get_user_id(x_user_id)
    validate_range(date_from, date_to)
    rows = filter_investments(load_investments(user_id, date_from, date_to), type, search)
    return [InvestmentResponse(**row) for row in rows]


@app.get("/investments/summary", response_model=PortfolioSummaryResponse)
def investment_summary(
    date_from: date | None = Query(None, alias="from"),
    date_to: date | None = Query(None, alias="to"),
    type: str | None = None,
    search: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PortfolioSummaryResponse:
    user_id = get_user_id(x_user_id)
    validate_range(date_from, date_to)
    currency = get_default_currency(user_id)
    rows = filter_investments(load_investments(user_id, date_from, date_to), type, search)
    summary = summarize_portfolio(
        (holding_from_row(row, currency) for row in rows), currency, rate_provider=FX_PROVIDER
    )
    return PortfolioSummaryResponse(
        currency=currency,
        total_value=summary.total_value,
        total_cost=summary.total_cost,
        total_gain_loss=summary.total_gain_loss,
        total_gain_loss_percent=summary.total_gain_loss_percent,
        holdings=[
            HoldingValuationResponse(
                investment_id=valuation.holding_id,
                symbol=valuation.symbol,
                value=valuation.value,
                cost=valuation.cost,
                gain_loss=valuation.gain_loss,
                gain_loss_percent=valuation.gain_loss_percent,
            )
            for valuation in summary.holdings
        ],
    )


@app.post("/investments", response_model=InvestmentResponse)
def create_investment(
    payload: InvestmentPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> InvestmentResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(InvestmentPayload, payload)

    with engine.begin() as conn:
        currency = payload.currency or resolve_default_currency(conn, user_id)
        rate, rate_currency = resolve_snapshot(conn, user_id, currency, payload.exchange_rate)
        row = conn.execute(
            insert(investments)
            .values(
                user_id=user_id,
                symbol=payload.symbol,
                name=payload.name,
                type=payload.type,
                quantity=payload.quantity,
                purchase_price=payload.purchase_price,
                current_price=payload.current_price,
                currency=currency,
                exchange_rate=rate,
                rate_currency=rate_currency,
                purchase_date=payload.purchase_date,
            )
            .returning(*investments.c)
        ).mappings().first()
    QUERY_CACHE.invalidate(INVESTMENTS, user_id)

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create investment.")
    logger.info("investment_created", user_id=user_id, investment_id=row["id"], type=row["type"])
    return InvestmentResponse(**row)


@app.put("/investments/{investment_id}", response_model=InvestmentResponse)
def update_investment(
    investment_id: int,
    payload: InvestmentPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvestmentResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(InvestmentPayload, payload)

    with engine.begin() as conn:
        existing = fetch_owned_row(conn, investments, investment_id, user_id)
        if not existing:
            raise HTTPException(status_code=404, detail="Investment not found.")
        currency = payload.currency or existing["currency"]
        rate, rate_currency = resolve_snapshot(
            conn, user_id, currency, payload.exchange_rate, existing
        )
        row = conn.execute(
            update(investments)
            .where(investments.c.id == investment_id, investments.c.user_id == user_id)
            .values(
                symbol=payload.symbol,
                name=payload.name,
                type=payload.type,
                quantity=payload.quantity,
                purchase_price=payload.purchase_price,
                current_price=payload.current_price,
                currency=currency,
                exchange_rate=rate,
                rate_currency=rate_currency,
                purchase_date=payload.purchase_date,
                updated_at=func.now(),
            )
            .returning(*investments.c)
        ).mappings().first()
    QUERY_CACHE.invalidate(INVESTMENTS, user_id)

    if not row:
        raise HTTPException(status_code=404, detail="Investment not found.")
    return InvestmentResponse(**row)


@app.delete("/investments/{investment_id}")
def delete_investment(
    investment_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        delete_owned_row(investments, investment_id, user_id, "Investment")
    finally:
        QUERY_CACHE.invalidate(INVESTMENTS, user_id)
    return {"status": "deleted"}


def bill_values(payload: ElectricityBillPayload) -> dict:
    usage = compute_usage(
        payload.day_reading,
        payload.night_reading,
        payload.previous_day_reading,
        payload.previous_night_reading,
    )
    return {
        "property_address_id": payload.property_address_id,
        "bill_date": payload.bill_date,
        "reading_date": payload.reading_date,
        "day_reading": payload.day_reading,
        "night_reading": payload.night_reading,
        "previous_day_reading": payload.previous_day_reading,
        "previous_night_reading": payload.previous_night_reading,
        "day_usage": usage.day_usage,
        "night_usage": usage.night_usage,
        "total_usage": usage.total_usage,
        "amount_paid": payload.amount_paid,
        "day_rate": payload.day_rate,
        "night_rate": payload.night_rate,
        "standing_charge": payload.standing_charge,
        "notes": payload.notes,
    }


def ensure_address_owned(conn, address_id: int | None, user_id: int) -> None:
    if address_id is None:
        return
    if not fetch_owned_row(conn, property_addresses, address_id, user_id):
        raise HTTPException(status_code=404, detail="Property address not found.")


@app.get("/electricity-bills", response_model=list[ElectricityBillResponse])
def list_electricity_bills(
    date_from: date | None = Query(None, alias="from"),
    date_to: date | None = Query(None, alias="to"),
    search: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ElectricityBillResponse]:
    user_id = get_user_id(x_user_id)
    validate_range(date_from, date_to)
    rows = filter_bills(load_bills(user_id, date_from, date_to), search)
    return [ElectricityBillResponse(**row) for row in rows]


@app.get("/electricity-bills/summary", response_model=BillSummaryResponse)
def electricity_bill_summary(
    date_from: date | None = Query(None, alias="from"),
    date_to: date | None = Query(None, alias="to"),
    search: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BillSummaryResponse:
    user_id = get_user_id(x_user_id)
    validate_range(date_from, date_to)
    currency = get_default_currency(user_id)
    rows = filter_bills(load_bills(user_id, date_from, date_to), search)
    summary = summarize_bills(
        (bill_from_row(row, currency) for row in rows), currency, rate_provider=FX_PROVIDER
    )
    return BillSummaryResponse(
        currency=currency,
        total_cost=summary.total_cost,
        total_usage=summary.total_usage,
        monthly_average=summary.monthly_average,
        bill_count=summary.bill_count,
    )


@app.get("/electricity-bills/forecast", response_model=BillForecastResponse | None)
def forecast_next_electricity_bill(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BillForecastResponse | None:
    user_id = get_user_id(x_user_id)
    currency = get_default_currency(user_id)
    rows = load_bills(user_id, None, None)
    forecast = forecast_next_bill(
        [bill_from_row(row, currency) for row in rows], currency, rate_provider=FX_PROVIDER
    )
    if forecast is None:
        return None
    return BillForecastResponse(
        currency=currency,
        forecasted_amount=forecast.forecasted_amount,
        forecasted_usage=forecast.forecasted_usage,
        confidence_level=forecast.confidence_level,
        based_on_bills=forecast.based_on_bills,
    )


@app.get("/electricity-bills/history", response_model=list[ConsumptionHistoryResponse])
def get_electricity_consumption_history(
    months: int = Query(12, ge=1, le=120),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ConsumptionHistoryResponse]:
    user_id = get_user_id(x_user_id)
    currency = get_default_currency(user_id)
    bills = [bill_from_row(row, currency) for row in load_bills(user_id, None, None)]
    addresses = [address_from_row(row) for row in load_addresses(user_id)]
    entries = consumption_history(
        bills, addresses, months, date.today(), currency, rate_provider=FX_PROVIDER
    )
    return [
        ConsumptionHistoryResponse(
            bill_date=entry.bill_date,
            reading_date=entry.reading_date,
            total_usage=entry.total_usage,
            day_usage=entry.day_usage,
            night_usage=entry.night_usage,
            amount_paid=entry.amount_paid,
            currency=entry.currency,
            property_nickname=entry.property_nickname,
            forecasted_amount=entry.forecasted_amount,
            forecast_accuracy=entry.forecast_accuracy,
        )
        for entry in entries
    ]


@app.post("/electricity-bills", response_model=ElectricityBillResponse)
def create_electricity_bill(
    payload: ElectricityBillPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ElectricityBillResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(ElectricityBillPayload, payload)

    with engine.begin() as conn:
        ensure_address_owned(conn, payload.property_address_id, user_id)
        currency = payload.currency or resolve_default_currency(conn, user_id)
        rate, rate_currency = resolve_snapshot(conn, user_id, currency, payload.exchange_rate)
        row = conn.execute(
            insert(electricity_bills)
            .values(
                user_id=user_id,
                currency=currency,
                exchange_rate=rate,
                rate_currency=rate_currency,
                **bill_values(payload),
            )
            .returning(*electricity_bills.c)
        ).mappings().first()
    QUERY_CACHE.invalidate(ELECTRICITY_BILLS, user_id)

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create electricity bill.")
    logger.info("electricity_bill_created", user_id=user_id, bill_id=row["id"])
    return ElectricityBillResponse(**row)


@app.put("/electricity-bills/{bill_id}", response_model=ElectricityBillResponse)
def update_electricity_bill(
    bill_id: int,
    payload: ElectricityBillPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ElectricityBillResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(ElectricityBillPayload, payload)

    with engine.begin() as conn:
        existing = fetch_owned_row(conn, electricity_bills, bill_id, user_id)
        if not existing:
            raise HTTPException(status_code=404, detail="Electricity bill not found.")
        ensure_address_owned(conn, payload.property_address_id, user_id)
        currency = payload.currency or existing["currency"]
        rate, rate_currency = resolve_snapshot(
            conn, user_id, currency, payload.exchange_rate, existing
        )
        row = conn.execute(
            update(electricity_bills)
            .where(electricity_bills.c.id == bill_id, electricity_bills.c.user_id == user_id)
            .values(
                currency=currency,
                exchange_rate=rate,
                rate_currency=rate_currency,
                updated_at=func.now(),
                **bill_values(payload),
            )
            .returning(*electricity_bills.c)
        ).mappings().first()
    QUERY_CACHE.invalidate(ELECTRICITY_BILLS, user_id)

    if not row:
        raise HTTPException(status_code=404, detail="Electricity bill not found.")
    return ElectricityBillResponse(**row)


@app.delete("/electricity-bills/{bill_id}")
def delete_electricity_bill(
    bill_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        delete_owned_row(electricity_bills, bill_id, user_id, "Electricity bill")
    finally:
        QUERY_CACHE.invalidate(ELECTRICITY_BILLS, user_id)
    return {"status": "deleted"}


def clear_current_address(conn, user_id: int, keep_id: int | None = None) -> None:
    conditions = [property_addresses.c.user_id == user_id, property_addresses.c.is_current.is_(True)]
    if keep_id is not None:
        conditions.append(property_addresses.c.id != keep_id)
    conn.execute(update(property_addresses).where(*conditions).values(is_current=False))


def address_values(payload: PropertyAddressPayload) -> dict:
    return {
        "address_line_1": payload.address_line_1,
        "address_line_2": payload.address_line_2,
        "city": payload.city,
        "state_province": payload.state_province,
        "postal_code": payload.postal_code,
        "country": payload.country,
        "nickname": payload.nickname,
        "is_current": payload.is_current,
        "move_in_date": payload.move_in_date,
        "move_out_date": payload.move_out_date,
        "has_day_night_meter": payload.has_day_night_meter,
    }


@app.get("/property-addresses", response_model=list[PropertyAddressResponse])
def list_property_addresses(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[PropertyAddressResponse]:
    user_id = get_user_id(x_user_id)
    return [PropertyAddressResponse(**row) for row in load_addresses(user_id)]


@app.get("/property-addresses/current", response_model=PropertyAddressResponse | None)
def current_property_address(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PropertyAddressResponse | None:
    user_id = get_user_id(x_user_id)
    for row in load_addresses(user_id):
        if row["is_current"]:
            return PropertyAddressResponse(**row)
    return None


@app.post("/property-addresses", response_model=PropertyAddressResponse)
def create_property_address(
    payload: PropertyAddressPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> PropertyAddressResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(PropertyAddressPayload, payload)

    with engine.begin() as conn:
        if payload.is_current:
            clear_current_address(conn, user_id)
        row = conn.execute(
            insert(property_addresses)
            .values(user_id=user_id, **address_values(payload))
            .returning(*property_addresses.c)
        ).mappings().first()
    QUERY_CACHE.invalidate(PROPERTY_ADDRESSES, user_id)

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create property address.")
    logger.info("property_address_created", user_id=user_id, address_id=row["id"])
    return PropertyAddressResponse(**row)


@app.put("/property-addresses/{address_id}", response_model=PropertyAddressResponse)
def update_property_address(
    address_id: int,
    payload: PropertyAddressPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PropertyAddressResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(PropertyAddressPayload, payload)

    with engine.begin() as conn:
        if not fetch_owned_row(conn, property_addresses, address_id, user_id):
            raise HTTPException(status_code=404, detail="Property address not found.")
        if payload.is_current:
            clear_current_address(conn, user_id, keep_id=address_id)
        row = conn.execute(
            update(property_addresses)
            .where(property_addresses.c.id == address_id, property_addresses.c.user_id == user_id)
            .values(updated_at=func.now(), **address_values(payload))
            .returning(*property_addresses.c)
        ).mappings().first()
    QUERY_CACHE.invalidate(PROPERTY_ADDRESSES, user_id)

    if not row:
        raise HTTPException(status_code=404, detail="Property address not found.")
    return PropertyAddressResponse(**row)


@app.delete("/property-addresses/{address_id}")
def delete_property_address(
    address_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            conn.execute(
                update(electricity_bills)
                .where(
                    electricity_bills.c.property_address_id == address_id,
                    electricity_bills.c.user_id == user_id,
                )
                .values(property_address_id=None)
            )
            delete_owned_row(property_addresses, address_id, user_id, "Property address", conn)
    finally:
        QUERY_CACHE.invalidate_many((PROPERTY_ADDRESSES, ELECTRICITY_BILLS), user_id)
    return {"status": "deleted"}


def recurring_transaction_values(payload: RecurringTransactionPayload) -> dict:
    return {
        "title": payload.title,
        "description": payload.description,
        "amount": payload.amount,
        "category": payload.category,
        "type": payload.type,
        "frequency": payload.frequency,
        "start_date": payload.start_date,
        "end_date": payload.end_date,
        "next_occurrence": payload.next_occurrence,
        "is_active": payload.is_active,
    }


def recurring_investment_values(payload: RecurringInvestmentPayload) -> dict:
    return {
        "symbol": payload.symbol,
        "name": payload.name,
        "type": payload.type,
        "amount": payload.amount,
        "frequency": payload.frequency,
        "start_date": payload.start_date,
        "end_date": payload.end_date,
        "next_occurrence": payload.next_occurrence,
        "is_active": payload.is_active,
    }


def create_template(table: Table, entity: str, user_id: int, currency: str | None, values: dict) -> dict:
    with engine.begin() as conn:
        resolved_currency = currency or resolve_default_currency(conn, user_id)
        row = conn.execute(
            insert(table)
            .values(user_id=user_id, currency=resolved_currency, **values)
            .returning(*table.c)
        ).mappings().first()
    QUERY_CACHE.invalidate(entity, user_id)
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create recurring template.")
    logger.info("recurring_template_created", table=table.name, user_id=user_id, template_id=row["id"])
    return dict(row)


def update_template(
    table: Table, entity: str, template_id: int, user_id: int, currency: str | None, values: dict
) -> dict:
    with engine.begin() as conn:
        existing = fetch_owned_row(conn, table, template_id, user_id)
        if not existing:
            raise HTTPException(status_code=404, detail="Recurring template not found.")
        row = conn.execute(
            update(table)
            .where(table.c.id == template_id, table.c.user_id == user_id)
            .values(currency=currency or existing["currency"], updated_at=func.now(), **values)
            .returning(*table.c)
        ).mappings().first()
    QUERY_CACHE.invalidate(entity, user_id)
    if not row:
        raise HTTPException(status_code=404, detail="Recurring template not found.")
    return dict(row)


def advance_recurring(table: Table, entity: str, kind: str, template_id: int, user_id: int) -> dict:
    with engine.begin() as conn:
        existing = fetch_owned_row(conn, table, template_id, user_id)
        if not existing:
            raise HTTPException(status_code=404, detail="Recurring template not found.")
        try:
            result = advance_template(template_from_row(existing, kind), RECURRENCE_OVERFLOW)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        row = conn.execute(
            update(table)
            .where(table.c.id == template_id, table.c.user_id == user_id)
            .values(
                next_occurrence=result.next_occurrence,
                is_active=result.is_active,
                updated_at=func.now(),
            )
            .returning(*table.c)
        ).mappings().first()
    QUERY_CACHE.invalidate(entity, user_id)
    logger.info(
        "recurring_template_advanced",
        table=table.name,
        template_id=template_id,
        next_occurrence=result.next_occurrence.isoformat(),
        is_active=result.is_active,
    )
    return dict(row)


@app.get("/recurring-transactions", response_model=list[RecurringTransactionResponse])
def list_recurring_transactions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[RecurringTransactionResponse]:
    user_id = get_user_id(x_user_id)
    rows = load_templates(recurring_transactions, RECURRING_TRANSACTIONS, user_id)
    return [RecurringTransactionResponse(**row) for row in rows]


@app.post("/recurring-transactions", response_model=RecurringTransactionResponse)
def create_recurring_transaction(
    payload: RecurringTransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringTransactionResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(RecurringTransactionPayload, payload)
    row = create_template(
        recurring_transactions,
        RECURRING_TRANSACTIONS,
        user_id,
        payload.currency,
        recurring_transaction_values(payload),
    )
    return RecurringTransactionResponse(**row)


@app.put("/recurring-transactions/{template_id}", response_model=RecurringTransactionResponse)
def update_recurring_transaction(
    template_id: int,
    payload: RecurringTransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringTransactionResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(RecurringTransactionPayload, payload)
    row = update_template(
        recurring_transactions,
        RECURRING_TRANSACTIONS,
        template_id,
        user_id,
        payload.currency,
        recurring_transaction_values(payload),
    )
    return RecurringTransactionResponse(**row)


@app.post(
    "/recurring-transactions/{template_id}/advance",
    response_model=RecurringTransactionResponse,
)
def advance_recurring_transaction(
    template_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RecurringTransactionResponse:
    user_id = get_user_id(x_user_id)
    row = advance_recurring(
        recurring_transactions, RECURRING_TRANSACTIONS, "transaction", template_id, user_id
    )
    return RecurringTransactionResponse(**row)


@app.delete("/recurring-transactions/{template_id}")
def delete_recurring_transaction(
    template_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        delete_owned_row(recurring_transactions, template_id, user_id, "Recurring transaction")
    finally:
        QUERY_CACHE.invalidate(RECURRING_TRANSACTIONS, user_id)
    return {"status": "deleted"}


@app.get("/recurring-investments", response_model=list[RecurringInvestmentResponse])
def list_recurring_investments(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[RecurringInvestmentResponse]:
    user_id = get_user_id(x_user_id)
    rows = load_templates(recurring_investments, RECURRING_INVESTMENTS, user_id)
    return [RecurringInvestmentResponse(**row) for row in rows]


@app.post("/recurring-investments", response_model=RecurringInvestmentResponse)
def create_recurring_investment(
    payload: RecurringInvestmentPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringInvestmentResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(RecurringInvestmentPayload, payload)
    row = create_template(
        recurring_investments,
        RECURRING_INVESTMENTS,
        user_id,
        payload.currency,
        recurring_investment_values(payload),
    )
    return RecurringInvestmentResponse(**row)


@app.put("/recurring-investments/{template_id}", response_model=RecurringInvestmentResponse)
def update_recurring_investment(
    template_id: int,
    payload: RecurringInvestmentPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringInvestmentResponse:
    user_id = get_user_id(x_user_id)
    payload = validate_payload(RecurringInvestmentPayload, payload)
    row = update_template(
        recurring_investments,
        RECURRING_INVESTMENTS,
        template_id,
        user_id,
        payload.currency,
        recurring_investment_values(payload),
    )
    return RecurringInvestmentResponse(**row)


@app.post(
    "/recurring-investments/{template_id}/advance",
    response_model=RecurringInvestmentResponse,
)
def advance_recurring_investment(
    template_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RecurringInvestmentResponse:
    user_id = get_user_id(x_user_id)
    row = advance_recurring(
        recurring_investments, RECURRING_INVESTMENTS, "investment", template_id, user_id
    )
    return RecurringInvestmentResponse(**row)


@app.delete("/recurring-investments/{template_id}")
def delete_recurring_investment(
    template_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        delete_owned_row(recurring_investments, template_id, user_id, "Recurring investment")
    finally:
        QUERY_CACHE.invalidate(RECURRING_INVESTMENTS, user_id)
    return {"status": "deleted"}


@app.get("/recurring/upcoming", response_model=list[UpcomingOccurrenceResponse])
def upcoming_recurring(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[UpcomingOccurrenceResponse]:
    user_id = get_user_id(x_user_id)
    if start_date is None:
        start_date = date.today()
    if end_date is None:
        end_date = start_date + timedelta(days=30)
    validate_range(start_date, end_date)

    templates = [
        template_from_row(row, "transaction")
        for row in load_templates(recurring_transactions, RECURRING_TRANSACTIONS, user_id)
    ]
    templates.extend(
        template_from_row(row, "investment")
        for row in load_templates(recurring_investments, RECURRING_INVESTMENTS, user_id)
    )
    projections = project_templates(templates, start_date, end_date, RECURRENCE_OVERFLOW)
    return [
        UpcomingOccurrenceResponse(
            date=entry.date,
            template_id=entry.template_id,
            kind=entry.kind,
            label=entry.label,
            amount=entry.amount,
            currency=entry.currency,
        )
        for entry in projections
    ]


@app.get("/currency/rate", response_model=ExchangeRateResponse)
def exchange_rate(
    source: str = Query(..., alias="from"),
    target: str = Query(..., alias="to"),
) -> ExchangeRateResponse:
    try:
        normalized_source = normalize_currency(source)
        normalized_target = normalize_currency(target)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    rate = resolve_rate(normalized_source, normalized_target, rate_provider=FX_PROVIDER)
    return ExchangeRateResponse(source=normalized_source, target=normalized_target, rate=rate)


@app.get("/currency/convert", response_model=ConversionResponse)
def convert_currency(
    amount: Decimal,
    source: str = Query(..., alias="from"),
    target: str = Query(..., alias="to"),
    snapshot_rate: Decimal | None = None,
) -> ConversionResponse:
    try:
        normalized_source = normalize_currency(source)
        normalized_target = normalize_currency(target)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    converted = convert_amount(
        amount,
        normalized_source,
        normalized_target,
        snapshot_rate=snapshot_rate,
        rate_provider=FX_PROVIDER,
    )
    return ConversionResponse(
        source=normalized_source,
        target=normalized_target,
        amount=amount,
        converted_amount=converted,
        snapshot_rate=snapshot_rate,
    )
