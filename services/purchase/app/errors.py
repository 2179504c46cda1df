"""
Purchase Service — エラー分類

コアが送出する例外の階層。HTTP ステータスへの変換は main.py の
例外ハンドラだけが行う。
"""

from typing import Any


class PurchaseServiceError(Exception):
    default_code = "purchase_service_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.detail: dict[str, Any] = detail or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class AuthenticationError(PurchaseServiceError):
    """Webhook の署名が無い・不正・検証用シークレット未設定"""

    default_code = "authentication_failed"


class ValidationError(PurchaseServiceError):
    """リクエスト内容が不正（courseId 欠落、評価値の範囲外など）"""

    default_code = "validation_failed"


class NotFoundError(PurchaseServiceError):
    default_code = "not_found"


class ConflictError(PurchaseServiceError):
    """受講済み、または同じコースの購入が既に存在する"""

    default_code = "conflict"


class IntegrityError(PurchaseServiceError):
    """
    Webhook が台帳に存在しない購入を参照している。

    台帳と決済ゲートウェイが乖離しているため、ローカルでは回復できない。
    Webhook 自体は受理し、オペレーター向けに記録する。
    """

    default_code = "ledger_integrity"


class GatewayError(PurchaseServiceError):
    """決済ゲートウェイ呼び出しの失敗・タイムアウト（リトライ可能）"""

    default_code = "gateway_unavailable"
