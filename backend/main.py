import logging
from datetime import date, datetime
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError

from backend import analytics_engine, config, invoice_service
from backend.analytics_engine import AnalyticsPeriod, GroupDimension
from backend.currency_conversion import (
    CurrencyNormalizer,
    FrankfurterRateProvider,
    RateCache,
    StaticRateProvider,
    normalize_currency,
)
from backend.database import (
    build_engine,
    invoice_categories,
    invoice_companies,
    invoice_receivers,
    invoice_tags,
    invoices,
    metadata,
    users,
)
from backend.errors import NotFoundError, TransactionFailure, UpstreamUnavailable
from backend.line_items import intent_from_request
from backend.logging_config import setup_logging
from backend.receiver_merge import (
    RECEIVER_COLUMNS,
    find_receiver_by_name_or_alias,
    get_receiver,
    merge_receivers,
)

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = build_engine()


def get_reporting_currency() -> str:
    try:
        return normalize_currency(config.REPORTING_CURRENCY)
    except ValueError:
        return "USD"


def build_normalizer() -> CurrencyNormalizer:
    cache = RateCache(ttl_seconds=config.FX_CACHE_TTL_SECONDS)
    if config.FX_PROVIDER == "static":
        provider = StaticRateProvider()
    else:
        provider = FrankfurterRateProvider(
            base_url=config.FX_BASE_URL,
            timeout_seconds=config.FX_TIMEOUT_SECONDS,
        )
    logger.info("Using %s FX provider with a %ss rate cache", type(provider).__name__, cache.ttl_seconds)
    return CurrencyNormalizer(provider, cache)


REPORTING_CURRENCY = get_reporting_currency()
normalizer = build_normalizer()


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


@app.exception_handler(UpstreamUnavailable)
def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable) -> JSONResponse:
    logger.error("Upstream unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(TransactionFailure)
def transaction_failure_handler(request: Request, exc: TransactionFailure) -> JSONResponse:
    logger.error("Transaction failed on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class CategoryPayload(BaseModel):
    name: str
    description: str | None = None
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.description = payload.description.strip() if payload.description else None
        payload.color = validate_color(payload.color)
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    description: str | None = None
    color: str | None = None
    created_at: datetime | None = None


class CompanyPayload(BaseModel):
    name: str
    address: str | None = None
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    tax_id: str | None = None
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CompanyPayload") -> "CompanyPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Company name required.")
        for field in ("address", "email", "phone", "website", "tax_id", "notes"):
            value = getattr(payload, field)
            setattr(payload, field, value.strip() if value and value.strip() else None)
        return payload


class CompanyResponse(CompanyPayload):
    id: int
    user_id: int
    created_at: datetime | None = None


class TagPayload(BaseModel):
    name: str
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TagPayload") -> "TagPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Tag name required.")
        payload.color = validate_color(payload.color)
        return payload


class TagResponse(BaseModel):
    id: int
    user_id: int
    name: str
    color: str | None = None
    created_at: datetime | None = None


class ReceiverPayload(BaseModel):
    name: str
    other_names: list[str] | None = None
    is_organization: bool = False

    @classmethod
    def validate_payload(cls, payload: "ReceiverPayload") -> "ReceiverPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Receiver name required.")
        aliases: list[str] = []
        for alias in payload.other_names or []:
            cleaned = alias.strip()
            if cleaned and cleaned.lower() != payload.name.lower() and cleaned not in aliases:
                aliases.append(cleaned)
        payload.other_names = aliases
        return payload


class ReceiverResponse(BaseModel):
    id: int
    user_id: int
    name: str
    other_names: list[str]
    is_organization: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class MergeReceiversPayload(BaseModel):
    target_id: int
    source_ids: list[int]


class MergeReceiversResponse(BaseModel):
    receiver: ReceiverResponse
    merged_count: int
    invoices_updated: int


class InvoiceItemPayload(BaseModel):
    description: str
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    target_amount: Decimal | None = None


class InvoiceItemUpdatePayload(BaseModel):
    description: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    target_amount: Decimal | None = None
    auto_calculate_target_currency: bool | None = None


class InvoiceItemResponse(BaseModel):
    id: int
    invoice_id: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    target_currency: str
    target_amount: Decimal
    fx_rate_used: Decimal


class InvoicePayload(BaseModel):
    title: str
    description: str | None = None
    currency: str = "USD"
    status: str = "unpaid"
    due_date: date | None = None
    category_id: int | None = None
    company_id: int | None = None
    receiver_id: int | None = None
    items: list[InvoiceItemPayload] = []
    tag_ids: list[int] = []


class InvoiceUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    currency: str | None = None
    status: str | None = None
    due_date: date | None = None
    category_id: int | None = None
    company_id: int | None = None
    receiver_id: int | None = None

    def changes(self) -> dict:
        values = self.model_dump(exclude_unset=True)
        for field in ("title", "currency", "status"):
            if field in values and values[field] is None:
                values.pop(field)
        return values


class InvoiceStatusPayload(BaseModel):
    status: str


class InvoiceTagsPayload(BaseModel):
    tag_ids: list[int]


class InvoiceResponse(BaseModel):
    id: int
    user_id: int
    title: str
    description: str | None = None
    amount: Decimal
    currency: str
    status: str
    due_date: date | None = None
    category_id: int | None = None
    company_id: int | None = None
    receiver_id: int | None = None
    items: list[InvoiceItemResponse]
    tag_ids: list[int]
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ExchangeRateResponse(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    as_of: str | None = None


class AnalyticsSummaryResponse(BaseModel):
    period: str
    start_date: date
    end_date: date
    currency: str
    total_amount: Decimal
    paid_amount: Decimal
    unpaid_amount: Decimal
    overdue_amount: Decimal
    invoice_count: int
    paid_count: int
    unpaid_count: int
    overdue_count: int


class GroupItemResponse(BaseModel):
    id: int
    name: str
    color: str | None = None
    total_amount: Decimal
    paid_amount: Decimal
    unpaid_amount: Decimal
    invoice_count: int


class AnalyticsByGroupResponse(BaseModel):
    period: str
    start_date: date
    end_date: date
    currency: str
    items: list[GroupItemResponse]
    uncategorized: GroupItemResponse | None = None


def validate_color(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    color = value.strip()
    if len(color) != 7 or not color.startswith("#"):
        raise ValueError("Color must be a hex value like #1a2b3c.")
    try:
        int(color[1:], 16)
    except ValueError as exc:
        raise ValueError("Color must be a hex value like #1a2b3c.") from exc
    return color.lower()


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


def build_receiver_response(row) -> ReceiverResponse:
    return ReceiverResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        other_names=list(row["other_names"] or []),
        is_organization=bool(row["is_organization"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def build_item_response(row) -> InvoiceItemResponse:
    return InvoiceItemResponse(
        id=row["id"],
        invoice_id=row["invoice_id"],
        description=row["description"],
        quantity=row["quantity"],
        unit_price=row["unit_price"],
        amount=row["amount"],
        target_currency=row["target_currency"],
        target_amount=row["target_amount"],
        fx_rate_used=row["fx_rate_used"],
    )


def build_invoice_response(conn, user_id: int, invoice_id: int) -> InvoiceResponse:
    row = invoice_service.get_invoice(conn, user_id, invoice_id)
    return InvoiceResponse(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        amount=row["amount"],
        currency=row["currency"],
        status=row["status"],
        due_date=row["due_date"],
        category_id=row["category_id"],
        company_id=row["company_id"],
        receiver_id=row["receiver_id"],
        items=[build_item_response(item) for item in invoice_service.list_items(conn, invoice_id)],
        tag_ids=invoice_service.list_tag_ids(conn, invoice_id),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def build_group_response(item: analytics_engine.GroupItem) -> GroupItemResponse:
    return GroupItemResponse(
        id=item.id,
        name=item.name,
        color=item.color,
        total_amount=item.total_amount,
        paid_amount=item.paid_amount,
        unpaid_amount=item.unpaid_amount,
        invoice_count=item.invoice_count,
    )


def parse_period(value: str) -> AnalyticsPeriod:
    try:
        return AnalyticsPeriod.parse(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def group_analytics(user_id: int, period: str, dimension: GroupDimension) -> AnalyticsByGroupResponse:
    resolved_period = parse_period(period)
    with engine.begin() as conn:
        result = analytics_engine.by_group(conn, user_id, resolved_period, dimension)
    return AnalyticsByGroupResponse(
        period=result.period,
        start_date=result.start_date,
        end_date=result.end_date,
        currency=REPORTING_CURRENCY,
        items=[build_group_response(item) for item in result.items],
        uncategorized=build_group_response(result.uncategorized) if result.uncategorized else None,
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
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("Created user %s", row["id"])
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/api/fx/rate", response_model=ExchangeRateResponse)
def exchange_rate(
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExchangeRateResponse:
    get_user_id(x_user_id)
    try:
        rate = normalizer.get_exchange_rate(from_currency, to_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExchangeRateResponse(
        from_currency=rate.from_currency,
        to_currency=rate.to_currency,
        rate=rate.rate,
        as_of=rate.as_of,
    )


@app.get("/api/analytics/summary", response_model=AnalyticsSummaryResponse)
def analytics_summary(
    period: str = Query("1m"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AnalyticsSummaryResponse:
    user_id = get_user_id(x_user_id)
    resolved_period = parse_period(period)
    with engine.begin() as conn:
        result = analytics_engine.summary(conn, user_id, resolved_period)
    return AnalyticsSummaryResponse(
        period=result.period,
        start_date=result.start_date,
        end_date=result.end_date,
        currency=REPORTING_CURRENCY,
        total_amount=result.total_amount,
        paid_amount=result.paid_amount,
        unpaid_amount=result.unpaid_amount,
        overdue_amount=result.overdue_amount,
        invoice_count=result.invoice_count,
        paid_count=result.paid_count,
        unpaid_count=result.unpaid_count,
        overdue_count=result.overdue_count,
    )


@app.get("/api/analytics/by-category", response_model=AnalyticsByGroupResponse)
def analytics_by_category(
    period: str = Query("1m"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AnalyticsByGroupResponse:
    return group_analytics(get_user_id(x_user_id), period, GroupDimension.CATEGORY)


@app.get("/api/analytics/by-company", response_model=AnalyticsByGroupResponse)
def analytics_by_company(
    period: str = Query("1m"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AnalyticsByGroupResponse:
    return group_analytics(get_user_id(x_user_id), period, GroupDimension.COMPANY)


@app.get("/api/analytics/by-receiver", response_model=AnalyticsByGroupResponse)
def analytics_by_receiver(
    period: str = Query("1m"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AnalyticsByGroupResponse:
    return group_analytics(get_user_id(x_user_id), period, GroupDimension.RECEIVER)


@app.get("/api/analytics/by-tag", response_model=AnalyticsByGroupResponse)
def analytics_by_tag(
    period: str = Query("1m"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AnalyticsByGroupResponse:
    return group_analytics(get_user_id(x_user_id), period, GroupDimension.TAG)


@app.get("/api/categories", response_model=list[CategoryResponse])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(invoice_categories)
            .where(invoice_categories.c.user_id == user_id)
            .order_by(invoice_categories.c.name.asc(), invoice_categories.c.id.asc())
        ).mappings().all()
    return [CategoryResponse(**row) for row in rows]


@app.post("/api/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(invoice_categories)
            .values(user_id=user_id, **payload.model_dump())
            .returning(*invoice_categories.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create category.")
    return CategoryResponse(**row)


@app.get("/api/companies", response_model=list[CompanyResponse])
def list_companies(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CompanyResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(invoice_companies)
            .where(invoice_companies.c.user_id == user_id)
            .order_by(invoice_companies.c.name.asc(), invoice_companies.c.id.asc())
        ).mappings().all()
    return [CompanyResponse(**row) for row in rows]


@app.post("/api/companies", response_model=CompanyResponse)
def create_company(
    payload: CompanyPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CompanyResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CompanyPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(invoice_companies)
            .values(user_id=user_id, **payload.model_dump())
            .returning(*invoice_companies.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create company.")
    return CompanyResponse(**row)


@app.get("/api/tags", response_model=list[TagResponse])
def list_tags(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TagResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(invoice_tags)
            .where(invoice_tags.c.user_id == user_id)
            .order_by(invoice_tags.c.name.asc(), invoice_tags.c.id.asc())
        ).mappings().all()
    return [TagResponse(**row) for row in rows]


@app.post("/api/tags", response_model=TagResponse)
def create_tag(
    payload: TagPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TagResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TagPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            row = conn.execute(
                insert(invoice_tags)
                .values(user_id=user_id, name=payload.name, color=payload.color)
                .returning(*invoice_tags.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Tag already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create tag.")
    return TagResponse(**row)


@app.get("/api/receivers", response_model=list[ReceiverResponse])
def list_receivers(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ReceiverResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(*RECEIVER_COLUMNS)
            .where(
                invoice_receivers.c.user_id == user_id,
                invoice_receivers.c.deleted_at.is_(None),
            )
            .order_by(invoice_receivers.c.name.asc(), invoice_receivers.c.id.asc())
        ).mappings().all()
    return [build_receiver_response(row) for row in rows]


@app.post("/api/receivers", response_model=ReceiverResponse)
def create_receiver(
    payload: ReceiverPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ReceiverResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ReceiverPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(invoice_receivers)
            .values(
                user_id=user_id,
                name=payload.name,
                other_names=payload.other_names,
                is_organization=payload.is_organization,
            )
            .returning(*RECEIVER_COLUMNS)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create receiver.")
    return build_receiver_response(row)


@app.get("/api/receivers/lookup", response_model=ReceiverResponse)
def lookup_receiver(
    name: str = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ReceiverResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            row = find_receiver_by_name_or_alias(conn, user_id, name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not row:
        raise HTTPException(status_code=404, detail="Receiver not found.")
    return build_receiver_response(row)


@app.post("/api/receivers/merge", response_model=MergeReceiversResponse)
def merge_receivers_endpoint(
    payload: MergeReceiversPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MergeReceiversResponse:
    user_id = get_user_id(x_user_id)
    try:
        result = merge_receivers(engine, user_id, payload.target_id, payload.source_ids)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return MergeReceiversResponse(
        receiver=build_receiver_response(result.receiver),
        merged_count=result.merged_count,
        invoices_updated=result.invoices_updated,
    )


@app.get("/api/receivers/{receiver_id}", response_model=ReceiverResponse)
def read_receiver(
    receiver_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ReceiverResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            row = get_receiver(conn, user_id, receiver_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return build_receiver_response(row)


@app.put("/api/receivers/{receiver_id}", response_model=ReceiverResponse)
def update_receiver(
    receiver_id: int,
    payload: ReceiverPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ReceiverResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ReceiverPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            update(invoice_receivers)
            .where(
                invoice_receivers.c.id == receiver_id,
                invoice_receivers.c.user_id == user_id,
                invoice_receivers.c.deleted_at.is_(None),
            )
            .values(
                name=payload.name,
                other_names=payload.other_names,
                is_organization=payload.is_organization,
                updated_at=func.now(),
            )
            .returning(*RECEIVER_COLUMNS)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Receiver not found.")
    return build_receiver_response(row)


@app.delete("/api/receivers/{receiver_id}")
def delete_receiver(
    receiver_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            update(invoice_receivers)
            .where(
                invoice_receivers.c.id == receiver_id,
                invoice_receivers.c.user_id == user_id,
                invoice_receivers.c.deleted_at.is_(None),
            )
            .values(deleted_at=func.now())
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Receiver not found.")
        # Invoices must never point at a deleted receiver.
        conn.execute(
            update(invoices)
            .where(invoices.c.receiver_id == receiver_id, invoices.c.user_id == user_id)
            .values(receiver_id=None, updated_at=func.now())
        )
    return {"status": "deleted"}


@app.get("/api/invoices", response_model=list[InvoiceResponse])
def list_invoices(
    status: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[InvoiceResponse]:
    user_id = get_user_id(x_user_id)
    stmt = (
        select(invoices.c.id)
        .where(invoices.c.user_id == user_id, invoices.c.deleted_at.is_(None))
        .order_by(invoices.c.created_at.desc(), invoices.c.id.desc())
    )
    try:
        if status:
            stmt = stmt.where(invoices.c.status == invoice_service.normalize_status(status))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        invoice_ids = conn.execute(stmt).scalars().all()
        return [build_invoice_response(conn, user_id, invoice_id) for invoice_id in invoice_ids]


@app.post("/api/invoices", response_model=InvoiceResponse)
def create_invoice(
    payload: InvoicePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> InvoiceResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            invoice_id = invoice_service.create_invoice(
                conn,
                normalizer,
                user_id,
                title=payload.title,
                description=payload.description,
                currency=payload.currency,
                status=payload.status,
                due_date=payload.due_date,
                category_id=payload.category_id,
                company_id=payload.company_id,
                receiver_id=payload.receiver_id,
                items=[item.model_dump() for item in payload.items],
                tag_ids=payload.tag_ids,
                target_currency=REPORTING_CURRENCY,
            )
            response = build_invoice_response(conn, user_id, invoice_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Created invoice %s for user %s", invoice_id, user_id)
    return response


@app.get("/api/invoices/{invoice_id}", response_model=InvoiceResponse)
def read_invoice(
    invoice_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> InvoiceResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            return build_invoice_response(conn, user_id, invoice_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/api/invoices/{invoice_id}", response_model=InvoiceResponse)
def update_invoice(
    invoice_id: int,
    payload: InvoiceUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvoiceResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            invoice_service.update_invoice(
                conn,
                normalizer,
                user_id,
                invoice_id,
                payload.changes(),
                target_currency=REPORTING_CURRENCY,
            )
            return build_invoice_response(conn, user_id, invoice_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/invoices/{invoice_id}")
def delete_invoice(
    invoice_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            invoice_service.delete_invoice(conn, user_id, invoice_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "deleted"}


@app.patch("/api/invoices/{invoice_id}/status", response_model=InvoiceResponse)
def update_invoice_status(
    invoice_id: int,
    payload: InvoiceStatusPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvoiceResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            invoice_service.update_invoice_status(conn, user_id, invoice_id, payload.status)
            return build_invoice_response(conn, user_id, invoice_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.put("/api/invoices/{invoice_id}/tags", response_model=InvoiceResponse)
def set_invoice_tags(
    invoice_id: int,
    payload: InvoiceTagsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvoiceResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            invoice_service.set_invoice_tags(conn, user_id, invoice_id, payload.tag_ids)
            return build_invoice_response(conn, user_id, invoice_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/invoices/{invoice_id}/items", response_model=InvoiceItemResponse)
def add_invoice_item(
    invoice_id: int,
    payload: InvoiceItemPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvoiceItemResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            row = invoice_service.add_item(
                conn,
                normalizer,
                user_id,
                invoice_id,
                description=payload.description,
                quantity=payload.quantity,
                unit_price=payload.unit_price,
                target_amount=payload.target_amount,
                target_currency=REPORTING_CURRENCY,
            )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return build_item_response(row)


@app.put("/api/invoices/{invoice_id}/items/{item_id}", response_model=InvoiceItemResponse)
def update_invoice_item(
    invoice_id: int,
    item_id: int,
    payload: InvoiceItemUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvoiceItemResponse:
    user_id = get_user_id(x_user_id)
    try:
        intent = intent_from_request(payload.target_amount, payload.auto_calculate_target_currency)
        with engine.begin() as conn:
            row = invoice_service.update_item(
                conn,
                normalizer,
                user_id,
                invoice_id,
                item_id,
                intent=intent,
                description=payload.description,
                quantity=payload.quantity,
                unit_price=payload.unit_price,
            )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return build_item_response(row)


@app.delete("/api/invoices/{invoice_id}/items/{item_id}")
def delete_invoice_item(
    invoice_id: int,
    item_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            invoice_service.delete_item(conn, user_id, invoice_id, item_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "deleted"}
