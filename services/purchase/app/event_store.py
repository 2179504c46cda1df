"""
Purchase Service — 購入イベント履歴

購入の作成と状態遷移を追記専用で記録する。
(purchase_id, version) の UNIQUE 制約により、同じバージョンへの
二重書き込みはデータベースが拒否する（楽観的ロックの第二防衛線）。
"""

from datetime import datetime, timezone

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import purchase_events


async def append_event(
    session: AsyncSession,
    purchase_id: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    イベントを追記して新しいバージョンを返す。

    コミットは呼び出し側のトランザクションに任せる。
    """
    new_version = expected_version + 1
    await session.execute(
        insert(purchase_events).values(
            purchase_id=purchase_id,
            event_type=event_type,
            event_data=event_data,
            version=new_version,
            created_at=datetime.now(timezone.utc),
        )
    )
    return new_version


async def load_events(session: AsyncSession, purchase_id: str) -> list[dict]:
    """指定した購入の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        select(purchase_events)
        .where(purchase_events.c.purchase_id == purchase_id)
        .order_by(purchase_events.c.version.asc())
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": row.event_data,
            "version": row.version,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
