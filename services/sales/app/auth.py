"""
Sales Service — 認証・認可

トークンの発行は外部の認証サービスが行い、このサービスは
Authorization: Bearer <JWT> を検証するだけ。

  - 署名は HS256、JWT_SIGNING_KEY で検証する
  - JWT_ISSUER / JWT_AUDIENCE は設定されている場合だけ検証する
  - ロールは role クレーム（文字列または配列）から読む

更新系のエンドポイントは Admin ロールを要求する。
"""

import logging
import os
from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

JWT_SIGNING_KEY = os.environ.get(
    "JWT_SIGNING_KEY", "change-me-immediately-local-development-signing-key"
)
JWT_ALGORITHM = "HS256"
JWT_ISSUER = os.environ.get("JWT_ISSUER", "")
JWT_AUDIENCE = os.environ.get("JWT_AUDIENCE", "")

ADMIN_ROLE = "Admin"

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str | None
    roles: frozenset[str]


def decode_token(token: str) -> dict:
    return jwt.decode(
        token,
        JWT_SIGNING_KEY,
        algorithms=[JWT_ALGORITHM],
        issuer=JWT_ISSUER or None,
        audience=JWT_AUDIENCE or None,
        options={"require": ["exp", "sub"], "verify_aud": bool(JWT_AUDIENCE)},
    )


def _roles(claims: dict) -> frozenset[str]:
    role = claims.get("role")
    if role is None:
        return frozenset()
    if isinstance(role, str):
        return frozenset([role])
    return frozenset(str(r) for r in role)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(401, detail, headers={"WWW-Authenticate": "Bearer"})


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CurrentUser:
    """Bearer トークンを検証して呼び出し元を返す。無い・不正なら 401。"""
    if credentials is None:
        raise _unauthorized("Not authenticated")
    try:
        claims = decode_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        logger.info("Rejected bearer token: %s", e)
        raise _unauthorized("Invalid token") from e
    return CurrentUser(
        id=str(claims["sub"]),
        email=claims.get("email"),
        roles=_roles(claims),
    )


def require_role(role: str):
    async def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if role not in user.roles:
            logger.info("Forbidden: user=%s lacks role %s", user.id, role)
            raise HTTPException(403, "Forbidden")
        return user

    return dependency


require_admin = require_role(ADMIN_ROLE)
