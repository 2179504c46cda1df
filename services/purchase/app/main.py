"""
Purchase Service — FastAPI エントリーポイント

コース購入のライフサイクルと受講の整合性を扱うサービス。

  ┌──────────┐  POST /api/user/purchase   ┌──────────────────┐
  │ Frontend │───────────────────────────▶│ Purchase Service │──▶ Stripe Checkout
  └──────────┘                            │                  │
  ┌──────────┐  POST /stripe (署名付き)    │  authenticator   │
  │  Stripe  │───────────────────────────▶│  → reconciler    │──▶ purchases / enrollments
  └──────────┘                            │                  │
  ┌──────────┐  POST /clerk  (署名付き)    │                  │
  │  Clerk   │───────────────────────────▶│                  │──▶ users
  └──────────┘                            └──────────────────┘

ストアのハンドルは lifespan で一度だけ作り、Container として
app.state に置く。各エンドポイントは Depends で受け取る。

起動: uvicorn --factory app.main:create_app
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from . import commands, queries, reconciler, users
from .authenticator import verify_gateway_event, verify_identity_event
from .authz import EDUCATOR, ClerkRoleProvider, RoleProvider, SessionVerifier
from .config import Settings
from .enrollment import enrolled_course_ids
from .errors import (
    AuthenticationError,
    ConflictError,
    GatewayError,
    IntegrityError,
    NotFoundError,
    PurchaseServiceError,
    ValidationError,
)
from .gateway import PaymentGateway, StripeGateway
from .schema import create_schema

logger = logging.getLogger(__name__)

STATUS_CODES = {
    AuthenticationError: 400,
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    IntegrityError: 500,
    GatewayError: 503,
}


@dataclass
class Container:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    redis: aioredis.Redis
    gateway: PaymentGateway
    roles: RoleProvider
    sessions: SessionVerifier


# ── Request Models ───────────────────────────────


class PurchaseRequest(BaseModel):
    courseId: str | None = None


class RatingRequest(BaseModel):
    courseId: str | None = None
    rating: int | None = None


# ── Dependencies ─────────────────────────────────


def get_container(request: Request) -> Container:
    return request.app.state.container


def current_user_id(request: Request, container: Container = Depends(get_container)) -> str:
    """Authorization: Bearer <token> または __session クッキーからユーザー ID を得る。"""
    token = None
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
    token = token or request.cookies.get("__session")
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        return container.sessions.user_id(token)
    except AuthenticationError as e:
        logger.info("Rejected session token: %s", e.message)
        raise HTTPException(status_code=401, detail="Unauthorized") from e


def checkout_origin(request: Request, settings: Settings) -> str:
    """決済後の戻り先。CORS で許可したオリジンだけを信用し、それ以外は FRONTEND_URL。"""
    origin = (request.headers.get("origin") or "").rstrip("/")
    if origin and origin in settings.cors_origins:
        return origin
    return settings.frontend_url.rstrip("/")


async def require_educator(
    user_id: str = Depends(current_user_id),
    container: Container = Depends(get_container),
) -> str:
    role = await container.roles.get_role(user_id)
    if role != EDUCATOR:
        raise HTTPException(status_code=403, detail="Unauthorized access. Educator role required")
    return user_id


# ── Application ──────────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    redis: aioredis.Redis | None = None,
    gateway: PaymentGateway | None = None,
    roles: RoleProvider | None = None,
    sessions: SessionVerifier | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_async_engine(settings.database_url, echo=False)
        await create_schema(engine)
        redis_conn = redis or aioredis.from_url(settings.redis_url, decode_responses=True)

        app.state.container = Container(
            settings=settings,
            engine=engine,
            session_factory=async_sessionmaker(engine, expire_on_commit=False),
            redis=redis_conn,
            gateway=gateway or StripeGateway(
                settings.stripe_secret_key,
                currency=settings.currency,
                timeout=settings.stripe_timeout_seconds,
                expiry_minutes=settings.checkout_expiry_minutes,
            ),
            roles=roles or ClerkRoleProvider(settings.clerk_secret_key, settings.clerk_api_url),
            sessions=sessions or SessionVerifier(settings.clerk_jwt_key),
        )
        logger.info("Purchase service started")
        yield
        if redis is None:
            await redis_conn.aclose()
        await engine.dispose()

    app = FastAPI(title="Purchase Service", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PurchaseServiceError)
    async def handle_service_error(request: Request, exc: PurchaseServiceError):
        status = next(
            (code for cls, code in STATUS_CODES.items() if isinstance(exc, cls)), 500
        )
        if status >= 500:
            logger.error("%s %s failed: %r", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status,
            content={"success": False, "message": exc.message, "code": exc.code},
        )

    @app.exception_handler(HTTPException)
    async def handle_http_error(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.detail},
        )

    _register_user_routes(app)
    _register_webhook_routes(app)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "purchase-service"}

    return app


# ── User Endpoints ───────────────────────────────


def _register_user_routes(app: FastAPI) -> None:
    @app.post("/api/user/purchase")
    async def purchase_course(
        req: PurchaseRequest,
        request: Request,
        user_id: str = Depends(current_user_id),
        container: Container = Depends(get_container),
    ):
        """チェックアウト開始（無料コースは即時受講）"""
        origin = checkout_origin(request, container.settings)
        async with container.session_factory() as session:
            return await commands.purchase_course(
                session,
                container.redis,
                container.gateway,
                user_id,
                req.courseId,
                origin,
            )

    @app.get("/api/user/data")
    async def get_user_data(
        user_id: str = Depends(current_user_id),
        container: Container = Depends(get_container),
    ):
        async with container.session_factory() as session:
            user = await users.ensure_user(session, user_id)
            await session.commit()
            course_ids = await enrolled_course_ids(session, user_id)
        return {"success": True, "user": {**user, "enrolled_courses": sorted(course_ids)}}

    @app.get("/api/user/enrolled-courses")
    async def get_enrolled_courses(
        user_id: str = Depends(current_user_id),
        container: Container = Depends(get_container),
    ):
        async with container.session_factory() as session:
            enrolled = await queries.list_enrolled_courses(session, user_id)
        return {"success": True, "enrolledCourses": enrolled}

    @app.post("/api/user/add-rating")
    async def add_rating(
        req: RatingRequest,
        user_id: str = Depends(current_user_id),
        container: Container = Depends(get_container),
    ):
        async with container.session_factory() as session:
            await commands.rate_course(session, user_id, req.courseId, req.rating)
        return {"success": True, "message": "Rating added"}

    @app.get("/api/user/purchases/{purchase_id}/events")
    async def get_purchase_events(
        purchase_id: str,
        user_id: str = Depends(current_user_id),
        container: Container = Depends(get_container),
    ):
        """購入のイベント履歴と再構築した状態"""
        async with container.session_factory() as session:
            history = await queries.purchase_history(session, purchase_id, user_id)
        if not history:
            raise NotFoundError("Purchase not found")
        return {"success": True, **history}

    @app.get("/api/educator/enrolled-students")
    async def get_enrolled_students(
        educator_id: str = Depends(require_educator),
        container: Container = Depends(get_container),
    ):
        async with container.session_factory() as session:
            students = await queries.list_enrolled_students(session, educator_id)
        return {"success": True, "enrolledStudents": students}

    @app.get("/api/educator/dashboard")
    async def get_dashboard(
        educator_id: str = Depends(require_educator),
        container: Container = Depends(get_container),
    ):
        async with container.session_factory() as session:
            dashboard = await queries.educator_dashboard(session, educator_id)
        return {"success": True, "dashboardData": dashboard}


# ── Webhook Endpoints ────────────────────────────


def _register_webhook_routes(app: FastAPI) -> None:
    @app.post("/stripe")
    async def stripe_webhook(request: Request, container: Container = Depends(get_container)):
        """
        Stripe Webhook

        署名検証 → パース → 台帳更新の順。2xx を返すのは処理完了時
        （冪等な no-op・乖離の記録を含む）だけで、それ以外は Stripe が再送する。
        """
        payload = await request.body()
        event = verify_gateway_event(
            payload,
            request.headers.get("stripe-signature"),
            container.settings.stripe_webhook_secret,
            container.settings.stripe_webhook_tolerance,
        )
        async with container.session_factory() as session:
            result = await reconciler.handle_gateway_event(
                session, container.redis, container.gateway, event
            )
        return {"received": True, "outcome": result.outcome}

    @app.post("/clerk")
    async def clerk_webhook(request: Request, container: Container = Depends(get_container)):
        """Clerk (Svix) Webhook — ユーザーの作成・更新・削除"""
        payload = await request.body()
        event = verify_identity_event(
            payload, request.headers, container.settings.clerk_webhook_secret
        )
        async with container.session_factory() as session:
            outcome = await reconciler.handle_identity_event(session, event)
        return {"success": True, "outcome": outcome}
