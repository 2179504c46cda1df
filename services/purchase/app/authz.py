"""
Purchase Service — 呼び出し元の識別と権限確認

ルート層だけが使う。コア（commands / reconciler）は ID プロバイダーを呼ばない。

- SessionVerifier: Clerk のセッショントークン (JWT) を公開鍵で検証し、ユーザー ID を取り出す
- RoleProvider:    「このユーザーは講師か」を答える能力。実装は差し替え可能
"""

import logging
from typing import Protocol

import httpx
import jwt

from .errors import AuthenticationError, GatewayError

logger = logging.getLogger(__name__)

EDUCATOR = "educator"


class SessionVerifier:
    def __init__(
        self,
        public_key: str | None,
        algorithms: tuple[str, ...] = ("RS256",),
        leeway: int = 5,
    ):
        self.public_key = public_key
        self.algorithms = algorithms
        self.leeway = leeway

    def user_id(self, token: str) -> str:
        if not self.public_key:
            raise AuthenticationError("Session verification key not configured")
        try:
            claims = jwt.decode(
                token,
                self.public_key,
                algorithms=list(self.algorithms),
                leeway=self.leeway,
                options={"require": ["sub", "exp"]},
            )
        except jwt.PyJWTError as e:
            raise AuthenticationError(f"Invalid session token: {e}") from e
        return claims["sub"]


class RoleProvider(Protocol):
    async def get_role(self, user_id: str) -> str | None:
        ...


class ClerkRoleProvider:
    """Clerk Backend API の public_metadata.role を参照する。"""

    def __init__(
        self,
        secret_key: str | None,
        api_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def get_role(self, user_id: str) -> str | None:
        if not self.secret_key:
            logger.error("CLERK_SECRET_KEY not set. Cannot resolve roles.")
            return None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                resp = await client.get(
                    f"{self.api_url}/users/{user_id}",
                    headers={"Authorization": f"Bearer {self.secret_key}"},
                )
                if resp.status_code == 404:
                    return None
                resp.raise_for_status()
            except httpx.HTTPError as e:
                logger.error("Clerk user lookup failed for %s: %s", user_id, e)
                raise GatewayError(
                    "Identity provider unavailable", code="identity_provider_unavailable"
                ) from e

        return (resp.json().get("public_metadata") or {}).get("role")


class StaticRoleProvider:
    """固定の対応表から役割を返す（ローカル開発・テスト用）。"""

    def __init__(self, roles: dict[str, str]):
        self.roles = roles

    async def get_role(self, user_id: str) -> str | None:
        return self.roles.get(user_id)
