"""
Purchase Service — 購入集約 (Purchase Aggregate)

購入台帳の現在の状態は purchases テーブルが持つが、
状態遷移はすべて purchase_events にも記録される。
from_events でイベント列から状態を再構築できる。

状態遷移:
    PENDING → SUCCESS  (checkout.session.completed)
    PENDING → FAILED   (payment_intent.payment_failed)
    PENDING → EXPIRED  (checkout.session.expired)

終端状態 (SUCCESS / FAILED / EXPIRED) からは遷移しない。
無料コースは監査記録として最初から SUCCESS で作成される。
"""

from decimal import Decimal

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"
EXPIRED = "expired"

TERMINAL_STATUSES = frozenset({SUCCESS, FAILED, EXPIRED})

# 遷移先ステータス → 記録するイベントタイプ
TRANSITION_EVENTS = {
    SUCCESS: "PurchaseSucceeded",
    FAILED: "PurchaseFailed",
    EXPIRED: "PurchaseExpired",
}


def can_transition(current: str, target: str) -> bool:
    return current == PENDING and target in TERMINAL_STATUSES


class PurchaseAggregate:
    def __init__(self) -> None:
        self.id: str | None = None
        self.user_id: str = ""
        self.course_id: str = ""
        self.amount: Decimal = Decimal("0")
        self.status: str = "unknown"
        self.version: int = 0

    # ── イベント適用メソッド ──────────────────────────

    def apply_purchase_created(self, data: dict) -> None:
        self.id = data["purchase_id"]
        self.user_id = data["user_id"]
        self.course_id = data["course_id"]
        self.amount = Decimal(str(data["amount"]))
        self.status = data["status"]

    def apply_purchase_succeeded(self, _data: dict) -> None:
        self.status = SUCCESS

    def apply_purchase_failed(self, _data: dict) -> None:
        self.status = FAILED

    def apply_purchase_expired(self, _data: dict) -> None:
        self.status = EXPIRED

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            "PurchaseCreated": self.apply_purchase_created,
            "PurchaseSucceeded": self.apply_purchase_succeeded,
            "PurchaseFailed": self.apply_purchase_failed,
            "PurchaseExpired": self.apply_purchase_expired,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "PurchaseAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    def to_dict(self) -> dict:
        return {
            "purchase_id": self.id,
            "user_id": self.user_id,
            "course_id": self.course_id,
            "amount": str(self.amount),
            "status": self.status,
            "version": self.version,
        }
