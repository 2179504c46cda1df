"""
Purchase Service — 受信イベント定義

署名検証を通過した Webhook ペイロードだけが、ここで型付きイベントに変換される。
決済ゲートウェイ (Stripe) と ID プロバイダー (Clerk) の二系統がある。
"""

from pydantic import BaseModel

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"
PAYMENT_FAILED = "payment_intent.payment_failed"

USER_CREATED = "user.created"
USER_UPDATED = "user.updated"
USER_DELETED = "user.deleted"


# ── 決済ゲートウェイ ─────────────────────────────


class GatewayEvent(BaseModel):
    event_id: str
    event_type: str


class CheckoutSessionCompleted(GatewayEvent):
    """決済が完了した"""
    session_id: str
    purchase_id: str | None = None
    payment_intent_id: str | None = None


class CheckoutSessionExpired(GatewayEvent):
    """チェックアウトセッションが期限切れになった"""
    session_id: str
    purchase_id: str | None = None


class PaymentIntentFailed(GatewayEvent):
    """
    支払いが失敗した。

    このイベントには購入 ID が埋め込まれていないため、
    payment_intent からチェックアウトセッションを引いて購入を特定する。
    """
    payment_intent_id: str
    failure_message: str | None = None


class UnrecognizedGatewayEvent(GatewayEvent):
    pass


def parse_gateway_event(raw: dict) -> GatewayEvent:
    event_id = raw["id"]
    event_type = raw["type"]
    obj = (raw.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    if event_type == CHECKOUT_COMPLETED:
        return CheckoutSessionCompleted(
            event_id=event_id,
            event_type=event_type,
            session_id=obj["id"],
            purchase_id=metadata.get("purchaseId"),
            payment_intent_id=obj.get("payment_intent"),
        )
    if event_type == CHECKOUT_EXPIRED:
        return CheckoutSessionExpired(
            event_id=event_id,
            event_type=event_type,
            session_id=obj["id"],
            purchase_id=metadata.get("purchaseId"),
        )
    if event_type == PAYMENT_FAILED:
        last_error = obj.get("last_payment_error") or {}
        return PaymentIntentFailed(
            event_id=event_id,
            event_type=event_type,
            payment_intent_id=obj["id"],
            failure_message=last_error.get("message"),
        )
    return UnrecognizedGatewayEvent(event_id=event_id, event_type=event_type)


# ── ID プロバイダー ──────────────────────────────


class IdentityEvent(BaseModel):
    event_type: str
    user_id: str | None = None


class UserUpserted(IdentityEvent):
    """user.created / user.updated"""
    name: str | None = None
    email: str | None = None
    image_url: str | None = None


class UserDeleted(IdentityEvent):
    pass


class UnrecognizedIdentityEvent(IdentityEvent):
    pass


def parse_identity_event(raw: dict) -> IdentityEvent:
    event_type = raw["type"]
    data = raw.get("data") or {}

    if event_type in (USER_CREATED, USER_UPDATED):
        name = " ".join(
            part for part in (data.get("first_name"), data.get("last_name")) if part
        )
        addresses = data.get("email_addresses") or []
        return UserUpserted(
            event_type=event_type,
            user_id=data["id"],
            name=name or None,
            email=addresses[0].get("email_address") if addresses else None,
            image_url=data.get("image_url"),
        )
    if event_type == USER_DELETED:
        return UserDeleted(event_type=event_type, user_id=data["id"])
    return UnrecognizedIdentityEvent(event_type=event_type, user_id=data.get("id"))
