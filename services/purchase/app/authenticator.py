"""
Purchase Service — Webhook 認証

受信した生バイト列そのものに対して署名を再計算し、定数時間で比較する。
JSON を再シリアライズしたものでは検証しない（バイト配置が変わると検証が壊れる）。

順序は常に「検証 → パース」。検証に通らないペイロードは型付きイベントに
ならないので、ストアに触れることもない。このモジュールはストアを一切参照しない。
"""

import json
import logging
from collections.abc import Mapping

import stripe
from pydantic import ValidationError as PydanticValidationError
from svix.webhooks import Webhook, WebhookVerificationError

from .errors import AuthenticationError, ValidationError
from .events import GatewayEvent, IdentityEvent, parse_gateway_event, parse_identity_event

logger = logging.getLogger(__name__)

SVIX_HEADERS = ("svix-id", "svix-timestamp", "svix-signature")


def verify_gateway_event(
    payload: bytes,
    signature: str | None,
    secret: str | None,
    tolerance: int = 300,
) -> GatewayEvent:
    """
    Stripe-Signature ヘッダーを検証してから、ペイロードを型付きイベントに変換する。

    ヘッダー形式: t=<timestamp>,v1=<hex(HMAC-SHA256(secret, "<t>.<payload>"))>
    """
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not set. Rejecting webhook.")
        raise AuthenticationError("Webhook secret not configured")
    if not signature:
        raise AuthenticationError("Missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise AuthenticationError("Webhook payload is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning("Stripe webhook signature rejected: %s", e)
        raise AuthenticationError(f"Invalid signature: {e}") from e

    try:
        return parse_gateway_event(json.loads(body))
    except (ValueError, KeyError, TypeError, PydanticValidationError) as e:
        raise ValidationError(f"Malformed Stripe event: {e}") from e


def verify_identity_event(
    payload: bytes,
    headers: Mapping[str, str],
    secret: str | None,
) -> IdentityEvent:
    """
    Clerk (Svix) の Webhook を検証してから、ユーザーライフサイクルイベントに変換する。

    svix-id / svix-timestamp / svix-signature の三つのヘッダーが必要。
    """
    if not secret:
        logger.error("CLERK_WEBHOOK_SECRET not set. Rejecting webhook.")
        raise AuthenticationError("Webhook secret not configured")

    svix_headers = {name: headers.get(name) for name in SVIX_HEADERS}
    missing = [name for name, value in svix_headers.items() if not value]
    if missing:
        raise AuthenticationError(f"Missing signature headers: {', '.join(missing)}")

    try:
        webhook = Webhook(secret)
    except ValueError as e:
        # 秘密鍵が base64 として不正
        logger.error("CLERK_WEBHOOK_SECRET is malformed: %s", e)
        raise AuthenticationError("Webhook secret misconfigured") from e

    # verify の戻り値は svix のバージョンで異なる（2.x は None）ので使わない
    try:
        webhook.verify(payload, svix_headers)
    except WebhookVerificationError as e:
        logger.warning("Clerk webhook signature rejected: %s", e)
        raise AuthenticationError(f"Invalid signature: {e}") from e
    except ValueError as e:
        # svix 1.x は検証後に JSON をパースする
        raise ValidationError(f"Malformed identity event: {e}") from e

    try:
        return parse_identity_event(json.loads(payload))
    except (ValueError, KeyError, TypeError, AttributeError, PydanticValidationError) as e:
        raise ValidationError(f"Malformed identity event: {e}") from e
