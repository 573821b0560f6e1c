"""
データベース — テーブル定義とセッション

本番は PostgreSQL (asyncpg)、テストは SQLite (aiosqlite)。
どちらでも同じ SQL になるように SQLAlchemy Core でテーブルを定義する。

同時更新の制御:
  books.version   在庫数を変更するたびに +1 する行トークン (CAS に使う)
  orders.status   期待する遷移元ステータスを WHERE 句に入れて CAS する
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Uuid,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

metadata = MetaData()

# カタログ側が所有するテーブル。このサービスは available_quantity と version だけ更新する
books = Table(
    "books",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("title", String(255), nullable=False),
    Column("price_cents", Integer, nullable=False),
    Column("available_quantity", Integer, nullable=False),
    Column("version", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint("available_quantity >= 0", name="ck_books_available_non_negative"),
)

# 在庫台帳: reserve / release / commit を引き当て ID ごとに1行ずつ記録する
stock_movements = Table(
    "stock_movements",
    metadata,
    Column("reservation_id", String(80), nullable=False),
    Column("kind", String(16), nullable=False),
    Column("book_id", Integer, ForeignKey("books.id"), nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("reservation_id", "kind"),
    CheckConstraint("quantity > 0", name="ck_movements_quantity_positive"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("checkout_id", Uuid, nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("total_cents", Integer, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("shipping_address", String(500), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("status_reason", String(500)),
    Column("version", Integer, nullable=False, default=1),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("order_id", Uuid, ForeignKey("orders.id"), nullable=False),
    Column("line_no", Integer, nullable=False),
    Column("book_id", Integer, ForeignKey("books.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price_cents", Integer, nullable=False),
    PrimaryKeyConstraint("order_id", "line_no"),
    CheckConstraint("quantity > 0", name="ck_order_lines_quantity_positive"),
)

payments = Table(
    "payments",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("order_id", Uuid, ForeignKey("orders.id"), nullable=False, unique=True),
    Column("amount_cents", Integer, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("status", String(16), nullable=False),
    Column("token", String(128), nullable=False, unique=True),
    Column("idempotency_key", String(80), nullable=False),
    Column("approval_url", String(500)),
    Column("needs_reconcile", Boolean, nullable=False, default=False),
    # キャプチャ呼び出しの開始時刻。セットされた注文は放棄扱いにしない
    Column("capture_started_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


def make_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する（マイグレーションツールは使わない）。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
