"""
Purchase Service — 決済ゲートウェイ (Stripe)

チェックアウトセッションの作成と、payment_intent からの購入 ID の逆引きを行う。

- タイムアウトは設定値で上限を切る
- クライアント側の自動リトライは無効 (max_network_retries=0)
- 冪等キーを購入 ID から作るので、一つの購入に二つのセッションは作られない
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import stripe

from .errors import GatewayError

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSessionRequest:
    purchase_id: str
    title: str
    unit_amount: int  # 通貨の最小単位（セント）
    success_url: str
    cancel_url: str
    image_url: str | None = None


class PaymentGateway(Protocol):
    async def create_checkout_session(self, req: CheckoutSessionRequest) -> str:
        """セッションを作成してリダイレクト先 URL を返す。"""
        ...

    async def find_purchase_id(self, payment_intent_id: str) -> str | None:
        """payment_intent に紐づくセッションのメタデータから購入 ID を引く。"""
        ...


class StripeGateway:
    def __init__(
        self,
        secret_key: str | None,
        currency: str = "usd",
        timeout: float = 10.0,
        expiry_minutes: int = 30,
    ):
        self.currency = currency
        self.expiry_minutes = expiry_minutes
        self._client = None
        if secret_key:
            self._client = stripe.StripeClient(
                secret_key,
                http_client=stripe.HTTPXClient(timeout=timeout),
                max_network_retries=0,
            )

    def _require_client(self) -> stripe.StripeClient:
        if self._client is None:
            logger.error("STRIPE_SECRET_KEY not set.")
            raise GatewayError("Payment gateway not configured")
        return self._client

    async def create_checkout_session(self, req: CheckoutSessionRequest) -> str:
        client = self._require_client()
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=self.expiry_minutes)
        product_data: dict = {"name": req.title}
        if req.image_url:
            product_data["images"] = [req.image_url]

        try:
            session = await client.checkout.sessions.create_async(
                params={
                    "mode": "payment",
                    "line_items": [
                        {
                            "price_data": {
                                "currency": self.currency,
                                "product_data": product_data,
                                "unit_amount": req.unit_amount,
                            },
                            "quantity": 1,
                        }
                    ],
                    "success_url": req.success_url,
                    "cancel_url": req.cancel_url,
                    "expires_at": int(expires_at.timestamp()),
                    "metadata": {"purchaseId": req.purchase_id},
                },
                options={"idempotency_key": f"checkout-{req.purchase_id}"},
            )
        except stripe.StripeError as e:
            logger.error(
                "Stripe session creation failed for purchase %s: %s", req.purchase_id, e
            )
            raise GatewayError(
                "Payment gateway unavailable",
                detail={"purchase_id": req.purchase_id, "error_type": type(e).__name__},
            ) from e

        logger.info("Checkout session %s created for purchase %s", session.id, req.purchase_id)
        return session.url

    async def find_purchase_id(self, payment_intent_id: str) -> str | None:
        client = self._require_client()
        try:
            sessions = await client.checkout.sessions.list_async(
                params={"payment_intent": payment_intent_id, "limit": 1},
            )
        except stripe.StripeError as e:
            logger.error("Stripe session lookup failed for %s: %s", payment_intent_id, e)
            raise GatewayError(
                "Payment gateway unavailable",
                detail={"payment_intent_id": payment_intent_id},
            ) from e

        if not sessions.data:
            return None
        metadata = sessions.data[0].metadata or {}
        return metadata.get("purchaseId")
