"""
Purchase Service — 購入台帳 (Ledger Store)

購入レコードの作成・取得・状態遷移を扱う。
状態遷移は「現在 pending であること」を条件にした UPDATE で行うため、
同じ購入に対する並行した遷移のうち成功するのは常に一つだけになる。
発行済みのチェックアウトセッション URL も購入ごとに一つだけ記録する。

このモジュールの関数はコミットしない。トランザクション境界は
呼び出し側（commands / reconciler）が決める。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .aggregate import PENDING, TERMINAL_STATUSES, TRANSITION_EVENTS, can_transition
from .schema import checkout_sessions, insert_for, purchases

TRANSITIONED = "transitioned"
ALREADY_TERMINAL = "already_terminal"
NOT_FOUND = "not_found"


@dataclass
class TransitionResult:
    outcome: str
    purchase: dict | None = None


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "course_id": row.course_id,
        "amount": Decimal(row.amount).quantize(Decimal("0.01")),
        "status": row.status,
        "version": row.version,
        "created_at": row.created_at,
    }


async def create_purchase(
    session: AsyncSession,
    user_id: str,
    course_id: str,
    amount: Decimal,
    status: str = PENDING,
) -> dict:
    """
    購入レコードを作成し、PurchaseCreated イベントを記録する。

    通常は pending で作成する。無料コースのみ success で作成される（監査記録）。
    """
    if amount < 0:
        raise ValueError("amount must be non-negative")
    if status != PENDING and status not in TERMINAL_STATUSES:
        raise ValueError(f"unknown purchase status: {status}")

    purchase_id = str(uuid4())
    now = datetime.now(timezone.utc)

    await session.execute(
        insert(purchases).values(
            id=purchase_id,
            user_id=user_id,
            course_id=course_id,
            amount=amount,
            status=status,
            version=1,
            created_at=now,
            updated_at=now,
        )
    )
    await event_store.append_event(
        session,
        purchase_id,
        "PurchaseCreated",
        {
            "purchase_id": purchase_id,
            "user_id": user_id,
            "course_id": course_id,
            "amount": str(amount),
            "status": status,
            "timestamp": now.isoformat(),
        },
        0,
    )
    return {
        "id": purchase_id,
        "user_id": user_id,
        "course_id": course_id,
        "amount": amount,
        "status": status,
        "version": 1,
        "created_at": now,
    }


async def get_purchase(session: AsyncSession, purchase_id: str) -> dict | None:
    result = await session.execute(select(purchases).where(purchases.c.id == purchase_id))
    row = result.first()
    return _to_dict(row) if row else None


async def find_purchase(session: AsyncSession, user_id: str, course_id: str) -> dict | None:
    """ユーザーがこのコースについて持つ最新の購入（状態を問わない）。"""
    result = await session.execute(
        select(purchases)
        .where(purchases.c.user_id == user_id, purchases.c.course_id == course_id)
        .order_by(purchases.c.created_at.desc())
        .limit(1)
    )
    row = result.first()
    return _to_dict(row) if row else None


async def transition(
    session: AsyncSession,
    purchase_id: str,
    target: str,
    reason: dict | None = None,
) -> TransitionResult:
    """
    pending → target への条件付き遷移。

    UPDATE ... WHERE status = 'pending' が行を返さなければ遷移しない。
    その場合は購入が既に終端状態か、そもそも存在しないかを区別して返す。
    """
    if not can_transition(PENDING, target):
        raise ValueError(f"cannot transition to {target}")

    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(purchases)
        .where(purchases.c.id == purchase_id, purchases.c.status == PENDING)
        .values(status=target, version=purchases.c.version + 1, updated_at=now)
        .returning(
            purchases.c.id,
            purchases.c.user_id,
            purchases.c.course_id,
            purchases.c.amount,
            purchases.c.status,
            purchases.c.version,
            purchases.c.created_at,
        )
    )
    row = result.first()

    if row is None:
        existing = await get_purchase(session, purchase_id)
        if existing is None:
            return TransitionResult(NOT_FOUND)
        return TransitionResult(ALREADY_TERMINAL, existing)

    event_data = {"purchase_id": purchase_id, "timestamp": now.isoformat()}
    if reason:
        event_data.update(reason)
    await event_store.append_event(
        session, purchase_id, TRANSITION_EVENTS[target], event_data, row.version - 1
    )
    return TransitionResult(TRANSITIONED, _to_dict(row))


async def record_checkout_session(session: AsyncSession, purchase_id: str, url: str) -> str:
    """
    購入に発行されたセッション URL を記録する。

    既に記録があればそちらを返す（一つの購入に対するセッションは一つ）。
    """
    insert = insert_for(session)
    await session.execute(
        insert(checkout_sessions)
        .values(purchase_id=purchase_id, url=url, created_at=datetime.now(timezone.utc))
        .on_conflict_do_nothing(index_elements=["purchase_id"])
    )
    return await checkout_session_url(session, purchase_id) or url


async def checkout_session_url(session: AsyncSession, purchase_id: str) -> str | None:
    result = await session.execute(
        select(checkout_sessions.c.url).where(checkout_sessions.c.purchase_id == purchase_id)
    )
    return result.scalar_one_or_none()
