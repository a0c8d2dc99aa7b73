"""
AuthLedger — core/security.py
─────────────────────────────────────────────────────────────────
All JWT, password and current-user helpers in one place.

Tokens:
  RS256 when JWT_PRIVATE_KEY_PEM / JWT_PUBLIC_KEY_PEM are set
  (public key published as JWKS), else HS256 with JWT_SECRET.

Usage:
    from authledger.core.security import get_current_user

    @router.get("/me")
    async def me(user_id: int = Depends(get_current_user)): ...
─────────────────────────────────────────────────────────────────
"""

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Request
from jose import JWTError, jwk, jwt

from authledger.core.config import Config
from authledger.core.errors import UnauthorizedError

logger = logging.getLogger("authledger.security")

SESSION_COOKIE = "authledger_session"
BCRYPT_ROUNDS  = 12
KEY_ID         = "authledger-1"


# ─────────────────────────────────────────────
# JWT
# ─────────────────────────────────────────────
def _pem(b64_value: str) -> str:
    return base64.b64decode(b64_value).decode()


class TokenSigner:
    def __init__(self, cfg: Config):
        self.expires_hours = cfg.JWT_EXPIRES_HOURS
        if cfg.uses_rsa:
            self.algorithm   = "RS256"
            self.signing_key = _pem(cfg.JWT_PRIVATE_KEY_PEM)
            self.verify_key  = _pem(cfg.JWT_PUBLIC_KEY_PEM)
        else:
            self.algorithm   = "HS256"
            self.signing_key = self.verify_key = cfg.JWT_SECRET

    def make_jwt(self, user_id: int, email: str, hours: Optional[int] = None) -> str:
        expires = datetime.now(timezone.utc) + timedelta(hours=hours or self.expires_hours)
        payload = {"sub": str(user_id), "email": email, "exp": expires}
        headers = {"kid": KEY_ID} if self.algorithm == "RS256" else None
        return jwt.encode(payload, self.signing_key, algorithm=self.algorithm, headers=headers)

    def decode_jwt(self, token: str) -> dict:
        """Raises JWTError if invalid or expired."""
        return jwt.decode(token, self.verify_key, algorithms=[self.algorithm])

    def jwks(self) -> dict:
        if self.algorithm != "RS256":
            return {"keys": []}
        key = jwk.construct(self.verify_key, "RS256").to_dict()
        key.update({"kid": KEY_ID, "use": "sig", "alg": "RS256"})
        return {"keys": [key]}


# ─────────────────────────────────────────────
# Passwords
# ─────────────────────────────────────────────
def hash_password(password: str) -> str:
    # bcrypt only reads the first 72 bytes
    return bcrypt.hashpw(password.encode()[:72], bcrypt.gensalt(BCRYPT_ROUNDS)).decode()


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode()[:72], password_hash.encode())
    except ValueError:
        return False


# ─────────────────────────────────────────────
# Request helpers
# ─────────────────────────────────────────────
def get_token_from_request(request: Request) -> Optional[str]:
    """
    Extract JWT from:
    1. Header: Authorization: Bearer <token>
    2. Cookie: authledger_session
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):] or None
    return request.cookies.get(SESSION_COOKIE) or None


async def get_current_user(request: Request) -> int:
    """
    FastAPI dependency: returns the numeric user id from the JWT.

    Raises 401 if the token is missing, invalid, expired, or has no
    usable 'sub'.
    """
    token = get_token_from_request(request)
    if not token:
        raise UnauthorizedError("Not authenticated. Please log in.")

    signer: TokenSigner = request.app.state.signer
    try:
        payload = signer.decode_jwt(token)
    except JWTError as e:
        logger.warning(f"JWT decode failed: {e}")
        raise UnauthorizedError("Session expired. Please log in again.")

    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        raise UnauthorizedError("Invalid token payload.")


def set_session_cookie(response, token: str, cfg: Config):
    """Set the JWT as an HTTP-only cookie (secure in production)."""
    response.set_cookie(
        key      = SESSION_COOKIE,
        value    = token,
        httponly = True,
        secure   = cfg.is_production,
        samesite = "lax",
        max_age  = cfg.JWT_EXPIRES_HOURS * 3600,
    )


def clear_session_cookie(response):
    response.delete_cookie(SESSION_COOKIE)
