"""
Purchase Service — イベントリコンサイラー

署名検証済みのイベントだけを受け取り、購入の状態遷移に変換する。

    checkout.session.completed     pending → success  + 受講適用
    checkout.session.expired       pending → expired
    payment_intent.payment_failed  pending → failed   (payment_intent → セッション → 購入 ID)
    その他                          ログに残して受理

Stripe は同じイベントを何度でも再送するし、順序も保証しない。
すべての遷移は「現在 pending であること」を条件にしているため、
再送や順序の入れ替わりで届いた二通目以降は何も変更しない（冪等な受理）。

購入 ID が台帳に存在しない場合は台帳とゲートウェイの乖離であり、
再送しても直らない。ログと Redis に記録したうえで受理する。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from . import enrollment, ledger, notify, users
from .aggregate import EXPIRED, FAILED, SUCCESS, TRANSITION_EVENTS
from .errors import IntegrityError
from .events import (
    CHECKOUT_COMPLETED,
    CHECKOUT_EXPIRED,
    PAYMENT_FAILED,
    USER_CREATED,
    USER_DELETED,
    USER_UPDATED,
    CheckoutSessionCompleted,
    CheckoutSessionExpired,
    GatewayEvent,
    IdentityEvent,
    PaymentIntentFailed,
)
from .gateway import PaymentGateway

logger = logging.getLogger(__name__)

TRANSITIONED = "transitioned"
NOOP = "noop"
IGNORED = "ignored"
INTEGRITY_ERROR = "integrity_error"


@dataclass
class Reconciliation:
    event_type: str
    outcome: str
    purchase_id: str | None = None
    issue: IntegrityError | None = None


async def handle_gateway_event(
    session: AsyncSession,
    redis: aioredis.Redis,
    gateway: PaymentGateway,
    event: GatewayEvent,
) -> Reconciliation:
    """イベントタイプに応じたハンドラを呼び出す。"""
    handler = {
        CHECKOUT_COMPLETED: _on_checkout_completed,
        CHECKOUT_EXPIRED: _on_checkout_expired,
        PAYMENT_FAILED: _on_payment_failed,
    }.get(event.event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type: %s (event_id=%s)", event.event_type, event.event_id)
        return Reconciliation(event.event_type, IGNORED)

    logger.info("[webhook] %s (event_id=%s)", event.event_type, event.event_id)
    return await handler(session, redis, gateway, event)


async def _on_checkout_completed(
    session: AsyncSession,
    redis: aioredis.Redis,
    _gateway: PaymentGateway,
    event: CheckoutSessionCompleted,
) -> Reconciliation:
    """
    pending → success と受講適用を一つのトランザクションで確定する。

    success なのに受講が無い、受講があるのに success でない、
    という状態はどちらもコミットされない。
    """
    if not event.purchase_id:
        return await _integrity_gap(redis, event, None, "checkout session has no purchaseId metadata")

    result = await ledger.transition(
        session,
        event.purchase_id,
        SUCCESS,
        {"session_id": event.session_id, "payment_intent_id": event.payment_intent_id},
    )
    if result.outcome == ledger.NOT_FOUND:
        await session.rollback()
        return await _integrity_gap(redis, event, event.purchase_id, "purchase not found in ledger")
    if result.outcome == ledger.ALREADY_TERMINAL:
        await session.rollback()
        return _already_settled(event, result.purchase)

    purchase = result.purchase
    await enrollment.apply_enrollment(
        session, purchase["user_id"], purchase["course_id"], purchase["id"]
    )
    await session.commit()

    await notify.publish(redis, TRANSITION_EVENTS[SUCCESS], {
        "purchase_id": purchase["id"],
        "user_id": purchase["user_id"],
        "course_id": purchase["course_id"],
        "amount": str(purchase["amount"]),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    return Reconciliation(event.event_type, TRANSITIONED, purchase["id"])


async def _on_checkout_expired(
    session: AsyncSession,
    redis: aioredis.Redis,
    _gateway: PaymentGateway,
    event: CheckoutSessionExpired,
) -> Reconciliation:
    if not event.purchase_id:
        return await _integrity_gap(redis, event, None, "checkout session has no purchaseId metadata")
    return await _settle(
        session, redis, event, event.purchase_id, EXPIRED, {"session_id": event.session_id}
    )


async def _on_payment_failed(
    session: AsyncSession,
    redis: aioredis.Redis,
    gateway: PaymentGateway,
    event: PaymentIntentFailed,
) -> Reconciliation:
    """
    payment_intent には購入 ID が無いので、ゲートウェイにセッションを問い合わせて引く。
    問い合わせの失敗は GatewayError として伝播させ、Stripe に再送させる。
    """
    purchase_id = await gateway.find_purchase_id(event.payment_intent_id)
    if purchase_id is None:
        logger.warning(
            "No checkout session for payment_intent %s (event_id=%s). Ignoring.",
            event.payment_intent_id,
            event.event_id,
        )
        return Reconciliation(event.event_type, IGNORED)

    return await _settle(
        session,
        redis,
        event,
        purchase_id,
        FAILED,
        {"payment_intent_id": event.payment_intent_id, "failure_message": event.failure_message},
    )


async def _settle(
    session: AsyncSession,
    redis: aioredis.Redis,
    event: GatewayEvent,
    purchase_id: str,
    target: str,
    reason: dict,
) -> Reconciliation:
    """副作用の無い終端遷移 (expired / failed)。"""
    result = await ledger.transition(session, purchase_id, target, reason)
    if result.outcome == ledger.NOT_FOUND:
        await session.rollback()
        return await _integrity_gap(redis, event, purchase_id, "purchase not found in ledger")
    if result.outcome == ledger.ALREADY_TERMINAL:
        await session.rollback()
        return _already_settled(event, result.purchase)

    await session.commit()

    purchase = result.purchase
    await notify.publish(redis, TRANSITION_EVENTS[target], {
        "purchase_id": purchase["id"],
        "user_id": purchase["user_id"],
        "course_id": purchase["course_id"],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    return Reconciliation(event.event_type, TRANSITIONED, purchase["id"])


def _already_settled(event: GatewayEvent, purchase: dict) -> Reconciliation:
    logger.info(
        "Purchase %s already %s. Acknowledging %s (event_id=%s) without changes.",
        purchase["id"],
        purchase["status"],
        event.event_type,
        event.event_id,
    )
    return Reconciliation(event.event_type, NOOP, purchase["id"])


async def _integrity_gap(
    redis: aioredis.Redis,
    event: GatewayEvent,
    purchase_id: str | None,
    reason: str,
) -> Reconciliation:
    issue = IntegrityError(
        f"Ledger and payment gateway diverged: {reason}",
        detail={
            "event_id": event.event_id,
            "event_type": event.event_type,
            "purchase_id": purchase_id,
            "event": event.model_dump(),
        },
    )
    logger.error("Reconciliation required: %s", issue.to_dict())
    await notify.record_issue(redis, issue)
    return Reconciliation(event.event_type, INTEGRITY_ERROR, purchase_id, issue)


# ── ID プロバイダーのユーザーライフサイクル ───────


async def handle_identity_event(session: AsyncSession, event: IdentityEvent) -> str:
    """ユーザーストアだけを更新する。購入台帳と受講関係には触れない。"""
    if event.event_type in (USER_CREATED, USER_UPDATED):
        await users.upsert_profile(session, event.user_id, event.name, event.email, event.image_url)
        await session.commit()
        logger.info("User %s synced from %s", event.user_id, event.event_type)
        return "upserted"

    if event.event_type == USER_DELETED:
        deleted = await users.delete_user(session, event.user_id)
        await session.commit()
        logger.info("User %s deleted (existed=%s)", event.user_id, deleted)
        return "deleted"

    logger.info("Unknown webhook type: %s", event.event_type)
    return IGNORED
