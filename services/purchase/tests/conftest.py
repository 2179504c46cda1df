"""Shared fixtures and doubles for the purchase service tests."""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from app.errors import GatewayError
from app.schema import courses, create_schema, enrollments, purchase_events, purchases

STRIPE_WEBHOOK_SECRET = "whsec_test_stripe_secret"
CLERK_WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"clerk-webhook-test-secret-32byte").decode()


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------
class RecordingRedis:
    """Captures Pub/Sub notifications and list pushes instead of talking to Redis."""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []
        self.lists: dict[str, list[dict]] = defaultdict(list)

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 0

    async def rpush(self, key: str, *values: str) -> int:
        self.lists[key].extend(json.loads(v) for v in values)
        return len(self.lists[key])

    async def aclose(self) -> None:
        pass

    def event_types(self, channel: str = "purchase_events") -> list[str]:
        return [m["event_type"] for c, m in self.published if c == channel]


class FakeGateway:
    """Stands in for Stripe Checkout: records session requests, answers intent lookups."""

    def __init__(self, *, fail: bool = False, intents: dict[str, str] | None = None) -> None:
        self.fail = fail
        self.intents = intents or {}
        self.requests = []
        self.lookups: list[str] = []

    async def create_checkout_session(self, req) -> str:
        self.requests.append(req)
        if self.fail:
            raise GatewayError("Payment gateway unavailable")
        return f"https://checkout.stripe.test/c/pay/{req.purchase_id}"

    async def find_purchase_id(self, payment_intent_id: str) -> str | None:
        self.lookups.append(payment_intent_id)
        if payment_intent_id == "pi_unreachable":
            raise GatewayError("Payment gateway unavailable")
        return self.intents.get(payment_intent_id)


# ---------------------------------------------------------------------------
# Database harness
# ---------------------------------------------------------------------------
@dataclass
class Harness:
    engine: AsyncEngine
    session_factory: async_sessionmaker
    redis: RecordingRedis = field(default_factory=RecordingRedis)
    gateway: FakeGateway = field(default_factory=FakeGateway)

    async def seed_course(
        self,
        course_id: str,
        price: str | int = 0,
        discount: int = 0,
        title: str = "Intro to Python",
        educator_id: str = "educator_1",
    ) -> None:
        await seed_course(self.session_factory, course_id, price, discount, title, educator_id)

    async def purchase(self, purchase_id: str) -> dict | None:
        async with self.session_factory() as session:
            row = (
                await session.execute(select(purchases).where(purchases.c.id == purchase_id))
            ).first()
            return dict(row._mapping) if row else None

    async def count(self, table) -> int:
        async with self.session_factory() as session:
            return (await session.execute(select(func.count()).select_from(table))).scalar_one()

    async def enrollment_count(self) -> int:
        return await self.count(enrollments)

    async def event_versions(self, purchase_id: str) -> list[int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(purchase_events.c.version)
                .where(purchase_events.c.purchase_id == purchase_id)
                .order_by(purchase_events.c.version)
            )
            return list(result.scalars().all())


async def seed_course(
    session_factory: async_sessionmaker,
    course_id: str,
    price: str | int = 0,
    discount: int = 0,
    title: str = "Intro to Python",
    educator_id: str = "educator_1",
) -> None:
    async with session_factory() as session:
        await session.execute(
            insert(courses).values(
                id=course_id,
                title=title,
                thumbnail=f"https://cdn.example.com/{course_id}.png",
                educator_id=educator_id,
                price=Decimal(str(price)),
                discount=discount,
                created_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()


@asynccontextmanager
async def open_harness(db_url: str, gateway: FakeGateway | None = None):
    engine = create_async_engine(db_url)
    await create_schema(engine)
    try:
        yield Harness(
            engine=engine,
            session_factory=async_sessionmaker(engine, expire_on_commit=False),
            gateway=gateway or FakeGateway(),
        )
    finally:
        await engine.dispose()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'purchase.db'}"


# ---------------------------------------------------------------------------
# Webhook payload helpers
# ---------------------------------------------------------------------------
def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    t = timestamp if timestamp is not None else int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{t}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={t},v1={digest}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test") -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def checkout_completed(purchase_id: str | None, event_id: str = "evt_completed") -> dict:
    metadata = {"purchaseId": purchase_id} if purchase_id else {}
    return stripe_event(
        "checkout.session.completed",
        {"id": "cs_test_1", "object": "checkout.session", "metadata": metadata, "payment_intent": "pi_1"},
        event_id,
    )


def checkout_expired(purchase_id: str, event_id: str = "evt_expired") -> dict:
    return stripe_event(
        "checkout.session.expired",
        {"id": "cs_test_1", "object": "checkout.session", "metadata": {"purchaseId": purchase_id}},
        event_id,
    )


def payment_failed(payment_intent_id: str, event_id: str = "evt_failed") -> dict:
    return stripe_event(
        "payment_intent.payment_failed",
        {
            "id": payment_intent_id,
            "object": "payment_intent",
            "last_payment_error": {"message": "Your card was declined."},
        },
        event_id,
    )


def encode(event: dict) -> bytes:
    return json.dumps(event, separators=(",", ":")).encode("utf-8")


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------
@dataclass
class SigningKeys:
    private_pem: bytes
    public_pem: str

    def token(self, sub: str | None, expires_in: int = 300, **claims) -> str:
        payload = {"exp": int(time.time()) + expires_in, **claims}
        if sub is not None:
            payload["sub"] = sub
        return jwt.encode(payload, self.private_pem, algorithm="RS256")


def generate_signing_keys() -> SigningKeys:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return SigningKeys(private_pem, public_pem)


@pytest.fixture(scope="session")
def signing_keys() -> SigningKeys:
    return generate_signing_keys()
