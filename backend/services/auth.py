from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from typing import Callable

from fastapi import Depends, Header, HTTPException, Request, status
from sqlmodel import Session, select

from database import get_session
from errors import PermissionDenied
from models import User, UserRole
from services.access import Capability, can_perform, capabilities_for_role

PBKDF2_ITERATIONS = 200_000
TOKEN_TTL_SECONDS = int(os.getenv("MEDFLOW_TOKEN_TTL_SECONDS", str(12 * 60 * 60)))
AUTH_SECRET = os.getenv("MEDFLOW_AUTH_SECRET", "medflow-dev-secret-change-me")

logger = logging.getLogger("medflow.auth")


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64url_decode(encoded: str) -> bytes:
    padding = "=" * ((4 - len(encoded) % 4) % 4)
    return base64.urlsafe_b64decode(encoded + padding)


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password cannot be empty")
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, PBKDF2_ITERATIONS)
    return (
        f"pbkdf2_sha256${PBKDF2_ITERATIONS}$"
        f"{_b64url_encode(salt)}${_b64url_encode(digest)}"
    )


def verify_password(password: str, password_hash: str) -> bool:
    try:
        scheme, iter_raw, salt_raw, digest_raw = password_hash.split("$", 3)
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False

    try:
        iterations = int(iter_raw)
        salt = _b64url_decode(salt_raw)
        expected = _b64url_decode(digest_raw)
    except Exception:
        return False

    actual = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, iterations)
    return hmac.compare_digest(actual, expected)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _sign(message: bytes) -> bytes:
    return hmac.new(AUTH_SECRET.encode(), message, hashlib.sha256).digest()


def create_access_token(user: User) -> str:
    """Issue a compact HS256 token; the role claim pins the capability set it was issued for."""
    if user.id is None:
        raise ValueError("User id is required to issue token")

    header = {"alg": "HS256", "typ": "JWT"}
    claims = {
        "sub": str(user.id),
        "role": user.role.value,
        "email": user.email,
        "exp": int(time.time()) + TOKEN_TTL_SECONDS,
    }
    segments = [_b64url_encode(json.dumps(part, separators=(",", ":")).encode()) for part in (header, claims)]
    signing_input = ".".join(segments).encode()
    return ".".join([*segments, _b64url_encode(_sign(signing_input))])


def decode_access_token(token: str) -> dict:
    parts = token.split(".")
    if len(parts) != 3:
        raise _unauthorized("Invalid token")
    header_b64, claims_b64, signature_b64 = parts

    try:
        provided = _b64url_decode(signature_b64)
    except ValueError as exc:
        raise _unauthorized("Invalid token signature") from exc
    if not hmac.compare_digest(_sign(f"{header_b64}.{claims_b64}".encode()), provided):
        raise _unauthorized("Invalid token signature")

    try:
        claims = json.loads(_b64url_decode(claims_b64).decode())
    except ValueError as exc:
        raise _unauthorized("Invalid token payload") from exc

    exp = claims.get("exp")
    if not isinstance(exp, int) or exp < int(time.time()):
        raise _unauthorized("Token expired")
    return claims


def extract_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise _unauthorized("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer":
        raise _unauthorized("Invalid auth scheme")
    token = token.strip()
    if not token:
        raise _unauthorized("Missing token")
    return token


def get_user_from_token(token: str, session: Session) -> User:
    claims = decode_access_token(token)
    try:
        user_id = int(claims.get("sub") or "")
    except ValueError as exc:
        raise _unauthorized("Invalid token subject") from exc

    user = session.get(User, user_id)
    if not user or not user.is_active:
        raise _unauthorized("User inactive or missing")
    if claims.get("role") != user.role.value:
        logger.warning("[AUTH] Token for %s was issued for role '%s'", user.email, claims.get("role"))
        raise _unauthorized("Role changed since sign-in")
    return user


def get_current_user(
    authorization: str | None = Header(default=None),
    session: Session = Depends(get_session),
) -> User:
    token = extract_bearer_token(authorization)
    return get_user_from_token(token, session)


def require_roles(*roles: UserRole | str) -> Callable:
    allowed = {role.value if isinstance(role, UserRole) else str(role) for role in roles}

    def _dependency(request: Request, current_user: User = Depends(get_current_user)) -> User:
        if current_user.role.value not in allowed:
            logger.warning(
                "[DENIED] Role '%s' blocked on %s %s. Allowed roles: %s",
                current_user.role.value,
                request.method,
                request.url.path,
                ", ".join(sorted(allowed)),
            )
            raise PermissionDenied(f"Role '{current_user.role.value}' is not allowed")
        return current_user

    return _dependency


def require_capability(capability: Capability) -> Callable:
    def _dependency(request: Request, current_user: User = Depends(get_current_user)) -> User:
        if not can_perform(capabilities_for_role(current_user.role), capability):
            logger.warning(
                "[DENIED] Role '%s' lacks '%s' on %s %s",
                current_user.role.value,
                capability.value,
                request.method,
                request.url.path,
            )
            raise PermissionDenied(
                f"Role '{current_user.role.value}' lacks capability '{capability.value}'"
            )
        return current_user

    return _dependency


def authenticate_user(email: str, password: str, session: Session) -> User | None:
    user = session.exec(select(User).where(User.email == email)).first()
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "department": user.department,
        "capabilities": sorted(c.value for c in capabilities_for_role(user.role)),
    }
