"""
Purchase Service — Redis 通知

コミット後のイベントを Redis Pub/Sub で他サービスへ通知する。
台帳と決済ゲートウェイの乖離は、オペレーターが後から確認できるよう
Redis のリストに積む（Pub/Sub と違い購読者不在でも消えない）。
"""

import json
from datetime import datetime, timezone

import redis.asyncio as aioredis

from .errors import IntegrityError

PURCHASE_CHANNEL = "purchase_events"
ISSUES_KEY = "reconciliation_issues"


async def publish(redis: aioredis.Redis, event_type: str, data: dict) -> None:
    await redis.publish(
        PURCHASE_CHANNEL,
        json.dumps({"event_type": event_type, "data": data}, default=str),
    )


async def record_issue(redis: aioredis.Redis, issue: IntegrityError) -> None:
    await redis.rpush(
        ISSUES_KEY,
        json.dumps(
            {**issue.to_dict(), "recorded_at": datetime.now(timezone.utc).isoformat()},
            default=str,
        ),
    )
