from sqlalchemy import (
    JSON,
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
    Text,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine

from backend import config

metadata = MetaData()

INVOICE_STATUSES = ("unpaid", "paid", "overdue")

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

invoice_categories = Table(
    "invoice_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("color", String(7)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

invoice_companies = Table(
    "invoice_companies",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("address", Text),
    Column("email", String(255)),
    Column("phone", String(50)),
    Column("website", String(255)),
    Column("tax_id", String(100)),
    Column("notes", Text),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

invoice_receivers = Table(
    "invoice_receivers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("other_names", JSON),
    Column("is_organization", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime, index=True),
)

invoice_tags = Table(
    "invoice_tags",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("color", String(7)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_invoice_tags_user_name"),
)

invoices = Table(
    "invoices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("title", String(255), nullable=False),
    Column("description", Text),
    Column("amount", Numeric(20, 8), nullable=False, server_default="0"),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("status", String(20), nullable=False, server_default="unpaid"),
    Column("due_date", Date),
    Column("category_id", Integer, ForeignKey("invoice_categories.id"), index=True),
    Column("company_id", Integer, ForeignKey("invoice_companies.id"), index=True),
    Column("receiver_id", Integer, ForeignKey("invoice_receivers.id"), index=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime, index=True),
)

invoice_items = Table(
    "invoice_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("invoice_id", Integer, ForeignKey("invoices.id"), nullable=False, index=True),
    Column("description", String(255), nullable=False),
    Column("quantity", Numeric(14, 4), nullable=False, server_default="1"),
    Column("unit_price", Numeric(14, 4), nullable=False, server_default="0"),
    Column("amount", Numeric(20, 8), nullable=False, server_default="0"),
    Column("target_currency", String(3), nullable=False, server_default="USD"),
    Column("target_amount", Numeric(14, 2), nullable=False, server_default="0"),
    Column("fx_rate_used", Numeric(18, 8), nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

invoice_tag_mappings = Table(
    "invoice_tag_mappings",
    metadata,
    Column("invoice_id", Integer, ForeignKey("invoices.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("invoice_tags.id"), primary_key=True),
)


def build_engine(database_url: str = config.DATABASE_URL) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)
