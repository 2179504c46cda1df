"""
Purchase Service — テーブル定義

購入台帳・購入イベント履歴・受講関係・ユーザー・コースを
別々の論理コレクションとして保持する。

    purchases         購入台帳（リードモデル、status による条件付き更新）
    purchase_events   購入ごとのイベント履歴（(purchase_id, version) が UNIQUE）
    enrollments       User↔Course の受講関係（(user_id, course_id) が主キー）
    checkout_sessions 購入ごとに発行済みの Stripe セッション URL（purchase_id が主キー）
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(256)),
    Column("email", String(320)),
    Column("image_url", String(1024)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

courses = Table(
    "courses",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("title", String(512), nullable=False),
    Column("thumbnail", String(1024)),
    Column("educator_id", String(64), index=True),
    Column("price", Numeric(10, 2), nullable=False),
    Column("discount", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

course_ratings = Table(
    "course_ratings",
    metadata,
    Column("course_id", String(64), primary_key=True),
    Column("user_id", String(64), primary_key=True),
    Column("rating", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

purchases = Table(
    "purchases",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("course_id", String(64), nullable=False, index=True),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("status", String(16), nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

purchase_events = Table(
    "purchase_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("purchase_id", String(36), nullable=False, index=True),
    Column("event_type", String(64), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("purchase_id", "version", name="uq_purchase_events_version"),
)

checkout_sessions = Table(
    "checkout_sessions",
    metadata,
    Column("purchase_id", String(36), primary_key=True),
    Column("url", String(2048), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

enrollments = Table(
    "enrollments",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("course_id", String(64), primary_key=True, index=True),
    Column("purchase_id", String(36)),
    Column("enrolled_at", DateTime(timezone=True), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    """存在しないテーブルだけを作成する（起動時に一度呼ぶ）。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def insert_for(session: AsyncSession):
    """
    接続先の方言に合わせた INSERT 構築関数を返す。

    ON CONFLICT 句を使う書き込み（受講の追加、ユーザーの upsert、セッションの記録）で使う。
    """
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect: {dialect}")
