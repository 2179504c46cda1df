"""
Purchase Service — ユーザーストア

初回アクセス時のユーザー作成は、読み取りの副作用ではなく
明示的な upsert (ensure_user) として行う。
競合時のポリシー: 既存レコードがあればそれを返し、無ければ作成する。
"""

from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import insert_for, users


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "email": row.email,
        "image_url": row.image_url,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def get_user(session: AsyncSession, user_id: str) -> dict | None:
    result = await session.execute(select(users).where(users.c.id == user_id))
    row = result.first()
    return _to_dict(row) if row else None


async def ensure_user(session: AsyncSession, user_id: str) -> dict:
    """ユーザーが無ければ既定値で作成し、いずれにしても現在のレコードを返す。"""
    now = datetime.now(timezone.utc)
    insert = insert_for(session)
    await session.execute(
        insert(users)
        .values(id=user_id, created_at=now, updated_at=now)
        .on_conflict_do_nothing(index_elements=["id"])
    )
    return await get_user(session, user_id)


async def upsert_profile(
    session: AsyncSession,
    user_id: str,
    name: str | None,
    email: str | None,
    image_url: str | None,
) -> None:
    """
    ID プロバイダーのプロフィールで作成または上書きする。

    チェックアウト経由で既定値のまま作られたユーザーも、
    後から届く user.created で埋められる。
    """
    now = datetime.now(timezone.utc)
    insert = insert_for(session)
    stmt = insert(users).values(
        id=user_id,
        name=name,
        email=email,
        image_url=image_url,
        created_at=now,
        updated_at=now,
    )
    await session.execute(
        stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "name": stmt.excluded.name,
                "email": stmt.excluded.email,
                "image_url": stmt.excluded.image_url,
                "updated_at": now,
            },
        )
    )


async def delete_user(session: AsyncSession, user_id: str) -> bool:
    """ユーザーレコードだけを削除する。受講関係と購入台帳には触れない。"""
    result = await session.execute(
        delete(users).where(users.c.id == user_id).returning(users.c.id)
    )
    return result.first() is not None
