"""
Purchase Service — コマンドハンドラ (書き込み側)

チェックアウト開始 (purchase_course) とコース評価 (rate_course)。

チェックアウト開始のフロー:
  ┌────────────────────────────────────────────────────────────┐
  │  1. コースの存在確認、ユーザーの確保 (upsert)、受講済み確認  │
  │  2. 割引率 (0〜100) を検証して最終金額を計算                 │
  │  3. 最終金額 0                                              │
  │     └─ 受講適用 + success の購入記録を一つのトランザクションで │
  │  4. 最終金額 > 0                                            │
  │     ├─ 終端状態の既存購入があれば拒否                        │
  │     ├─ pending の既存購入にセッションがあればその URL を返す │
  │     ├─ 既存購入が無ければ pending の購入を作成してコミット   │
  │     └─ Stripe にセッションを依頼し、URL を記録               │
  └────────────────────────────────────────────────────────────┘

最終的な成否は Webhook 経由で reconciler が確定させる。
"""

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from . import enrollment, ledger, notify, queries, users
from .aggregate import PENDING, SUCCESS
from .errors import ConflictError, GatewayError, NotFoundError, ValidationError
from .gateway import CheckoutSessionRequest, PaymentGateway
from .schema import course_ratings, insert_for

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def compute_final_amount(price: Decimal, discount: int) -> Decimal:
    """割引後の金額を小数点以下 2 桁に四捨五入 (ROUND_HALF_UP) する。"""
    price = Decimal(price)
    final = price - (Decimal(discount) / Decimal(100)) * price
    return final.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


async def purchase_course(
    session: AsyncSession,
    redis: aioredis.Redis,
    gateway: PaymentGateway,
    user_id: str,
    course_id: str | None,
    origin: str,
) -> dict:
    if not course_id:
        raise ValidationError("Course ID required")

    course = await queries.get_course(session, course_id)
    if not course:
        raise NotFoundError("Course not found", detail={"course_id": course_id})

    await users.ensure_user(session, user_id)
    await session.commit()

    if await enrollment.is_enrolled(session, user_id, course_id):
        raise ConflictError("Already enrolled", detail={"course_id": course_id})

    discount = course["discount"]
    if discount is None or not 0 <= discount <= 100:
        raise ValidationError(
            "Invalid course discount", detail={"course_id": course_id, "discount": discount}
        )

    final_amount = compute_final_amount(course["price"], discount)
    if final_amount == 0:
        return await _enroll_free_course(session, redis, user_id, course_id)

    # ── 有料コース ─────────────────────────────────
    existing = await ledger.find_purchase(session, user_id, course_id)
    if existing and existing["status"] != PENDING:
        raise ConflictError(
            "A purchase for this course already exists",
            detail={"purchase_id": existing["id"], "status": existing["status"]},
        )

    if existing:
        purchase = existing
        # ユーザーが決済画面を離れた。発行済みのセッションをそのまま返す
        session_url = await ledger.checkout_session_url(session, purchase["id"])
        if session_url:
            logger.info("Returning existing checkout session for purchase %s", purchase["id"])
            return {"success": True, "session_url": session_url, "purchase_id": purchase["id"]}
        # 前回のセッション作成が失敗した。同じ購入 ID（同じ冪等キー）で依頼し直す
        logger.info("Re-requesting checkout session for pending purchase %s", purchase["id"])
    else:
        purchase = await ledger.create_purchase(session, user_id, course_id, final_amount)
        await session.commit()

        await notify.publish(redis, "PurchaseCreated", {
            "purchase_id": purchase["id"],
            "user_id": user_id,
            "course_id": course_id,
            "amount": str(final_amount),
            "status": purchase["status"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    try:
        session_url = await gateway.create_checkout_session(
            CheckoutSessionRequest(
                purchase_id=purchase["id"],
                title=course["title"],
                image_url=course["thumbnail"],
                unit_amount=to_minor_units(purchase["amount"]),
                success_url=f"{origin}/loading/my-enrollments",
                cancel_url=f"{origin}/course/{course_id}",
            )
        )
    except GatewayError:
        # pending のまま残す。再度の purchase_course で同じ購入のセッションを依頼し直せる
        logger.warning("Purchase %s left pending after gateway failure", purchase["id"])
        raise

    session_url = await ledger.record_checkout_session(session, purchase["id"], session_url)
    await session.commit()
    return {"success": True, "session_url": session_url, "purchase_id": purchase["id"]}


async def _enroll_free_course(
    session: AsyncSession,
    redis: aioredis.Redis,
    user_id: str,
    course_id: str,
) -> dict:
    """受講適用と監査用の購入記録を一つのトランザクションで行う。"""
    purchase = await ledger.create_purchase(
        session, user_id, course_id, Decimal("0.00"), status=SUCCESS
    )
    inserted = await enrollment.apply_enrollment(session, user_id, course_id, purchase["id"])
    if not inserted:
        # 並行したリクエストが先に受講を適用した
        await session.rollback()
        raise ConflictError("Already enrolled", detail={"course_id": course_id})
    await session.commit()

    await notify.publish(redis, "Enrolled", {
        "purchase_id": purchase["id"],
        "user_id": user_id,
        "course_id": course_id,
        "amount": "0.00",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    return {
        "success": True,
        "message": "Enrolled in free course",
        "purchase_id": purchase["id"],
    }


async def rate_course(
    session: AsyncSession,
    user_id: str,
    course_id: str | None,
    rating: int | None,
) -> None:
    """
    コースを評価する。同じユーザーの再評価は上書き（後勝ち）。
    受講済みのユーザーのみ評価できる。
    """
    if (
        not course_id
        or isinstance(rating, bool)
        or not isinstance(rating, int)
        or not 1 <= rating <= 5
    ):
        raise ValidationError("Invalid rating data")

    if not await queries.get_course(session, course_id):
        raise NotFoundError("Course not found", detail={"course_id": course_id})
    if not await enrollment.is_enrolled(session, user_id, course_id):
        raise ValidationError("User not enrolled in this course")

    now = datetime.now(timezone.utc)
    insert = insert_for(session)
    stmt = insert(course_ratings).values(
        course_id=course_id, user_id=user_id, rating=rating, updated_at=now
    )
    await session.execute(
        stmt.on_conflict_do_update(
            index_elements=["course_id", "user_id"],
            set_={"rating": stmt.excluded.rating, "updated_at": now},
        )
    )
    await session.commit()
