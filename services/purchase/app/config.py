"""
Purchase Service — 設定

環境変数からプロセス起動時に一度だけ読み込む。
読み込んだ Settings は lifespan で Container に渡され、各コンポーネントへ注入される。
"""

import os

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str
    redis_url: str = "redis://localhost:6379"

    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_timeout_seconds: float = 10.0
    stripe_webhook_tolerance: int = 300
    currency: str = "usd"
    checkout_expiry_minutes: int = 30

    clerk_webhook_secret: str | None = None
    clerk_secret_key: str | None = None
    clerk_api_url: str = "https://api.clerk.com/v1"
    clerk_jwt_key: str | None = None

    frontend_url: str = "http://localhost:5173"
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
            stripe_secret_key=env.get("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET") or None,
            stripe_timeout_seconds=float(env.get("STRIPE_TIMEOUT_SECONDS", "10")),
            stripe_webhook_tolerance=int(env.get("STRIPE_WEBHOOK_TOLERANCE", "300")),
            currency=env.get("CURRENCY", "usd").lower(),
            # Stripe は 30 分未満の expires_at を受け付けない
            checkout_expiry_minutes=max(30, int(env.get("CHECKOUT_EXPIRY_MINUTES", "30"))),
            clerk_webhook_secret=env.get("CLERK_WEBHOOK_SECRET") or None,
            clerk_secret_key=env.get("CLERK_SECRET_KEY") or None,
            clerk_api_url=env.get("CLERK_API_URL", "https://api.clerk.com/v1"),
            clerk_jwt_key=env.get("CLERK_JWT_KEY") or None,
            frontend_url=env.get("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            cors_origins=[
                o.strip() for o in env.get("CORS_ORIGINS", "*").split(",") if o.strip()
            ],
        )
