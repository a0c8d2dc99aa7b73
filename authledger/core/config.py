"""
AuthLedger — core/config.py
─────────────────────────────────────────────────────────────────
Single source of truth for ALL environment variables.

Read once at process start, then handed to create_app(cfg) and
from there into every service. Nothing mutates it afterwards:
registries are exposed as read-only mappings / frozensets.

Usage:
    from authledger.core.config import Config

    cfg = Config()                       # reads os.environ (+ .env)
    cfg = Config({"DB_PATH": "t.db"})    # explicit mapping (tests)
─────────────────────────────────────────────────────────────────
"""

import json
import os
from types import MappingProxyType
from typing import Mapping, Optional

from dotenv import load_dotenv

DEFAULT_CURRENCIES = "points,usdt,gemx,gap,commission,gap_ref,commission_ref"
DEFAULT_PERMISSIONS = ("credit", "debit", "balance", "transaction", "users", "referrers")


def _csv(value: str) -> tuple:
    return tuple(v.strip() for v in value.split(",") if v.strip())


def _json_object(value: str, name: str) -> dict:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"{name} must be a JSON object: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"{name} must be a JSON object")
    return parsed


class Config:
    def __init__(self, env: Optional[Mapping[str, str]] = None):
        if env is None:
            load_dotenv()
            env = os.environ
        get = env.get

        # ── App ───────────────────────────────────
        self.ENV:          str = get("ENV", "development")   # "production" in prod
        self.DB_PATH:      str = get("DB_PATH", "authledger.db")
        self.REDIS_URL:    str = get("REDIS_URL", "")        # empty → in-process store
        self.FRONTEND_URL: str = get("FRONTEND_URL", "http://localhost:3000")
        self.CORS_ORIGINS: tuple = _csv(get("CORS_ORIGINS", "")) or (
            "http://localhost:3000", "http://localhost:3001",
        )
        self.LOG_LEVEL:    str = get("LOG_LEVEL", "INFO").upper()

        # ── Security ──────────────────────────────
        self.JWT_SECRET:          str = get("JWT_SECRET", "dev-secret-change-in-prod!")
        self.JWT_PRIVATE_KEY_PEM: str = get("JWT_PRIVATE_KEY_PEM", "")   # base64 PEM
        self.JWT_PUBLIC_KEY_PEM:  str = get("JWT_PUBLIC_KEY_PEM", "")    # base64 PEM
        self.JWT_EXPIRES_HOURS:   int = int(get("JWT_EXPIRES_HOURS", "24"))

        # ── Wallet ────────────────────────────────
        self.ALLOWED_CURRENCIES: frozenset = frozenset(
            _csv(get("ALLOWED_CURRENCIES", DEFAULT_CURRENCIES))
        )
        self.DAILY_LOGIN_BONUS:    int = int(get("DAILY_LOGIN_BONUS", "10"))
        self.DAILY_LOGIN_CURRENCY: str = get("DAILY_LOGIN_CURRENCY", "gemx")

        # ── Service registry ──────────────────────
        allowed = _csv(get("ALLOWED_SERVICES", ""))
        keys = _json_object(get("SERVICE_API_KEYS", ""), "SERVICE_API_KEYS")
        perms = _json_object(get("SERVICE_PERMISSIONS", ""), "SERVICE_PERMISSIONS")
        self.SERVICE_API_KEYS = MappingProxyType(
            {name: str(keys[name]) for name in allowed if keys.get(name)}
        )
        self.SERVICE_PERMISSIONS = MappingProxyType({
            name: frozenset(perms.get(name, DEFAULT_PERMISSIONS))
            for name in self.SERVICE_API_KEYS
        })

        # ── Idempotency ───────────────────────────
        self.IDEMPOTENCY_LOCK_TTL_MS:   int = int(get("IDEMPOTENCY_LOCK_TTL_MS", "30000"))
        self.IDEMPOTENCY_RESULT_TTL:    int = int(get("IDEMPOTENCY_RESULT_TTL", "3600"))
        self.IDEMPOTENCY_RETRY_WAIT_MS: int = int(get("IDEMPOTENCY_RETRY_WAIT_MS", "100"))

        # ── Webhooks ──────────────────────────────
        self.WEBHOOK_URLS:   tuple = _csv(get("WEBHOOK_URLS", ""))
        self.WEBHOOK_SECRET: str = get("WEBHOOK_SECRET", "")

        # ── OTP / Email ───────────────────────────
        self.OTP_TTL_MINUTES: int = int(get("OTP_TTL_MINUTES", "10"))
        self.RESEND_API_KEY:  str = get("RESEND_API_KEY", "")
        self.EMAIL_FROM:      str = get("EMAIL_FROM", "noreply@authledger.dev")

        # ── Google OAuth ──────────────────────────
        self.GOOGLE_CLIENT_ID:     str = get("GOOGLE_CLIENT_ID", "")
        self.GOOGLE_CLIENT_SECRET: str = get("GOOGLE_CLIENT_SECRET", "")
        self.GOOGLE_REDIRECT_URI:  str = get(
            "GOOGLE_REDIRECT_URI", "http://localhost:8000/api/v1/auth/google/callback"
        )

        # ── Sign-In with Ethereum ─────────────────
        self.SIWE_DOMAINS:     tuple = _csv(get("SIWE_DOMAINS", "localhost:3000,localhost:3001"))
        self.SIWE_CHAIN_ID:    int = int(get("SIWE_CHAIN_ID", "1"))
        self.SIWE_NONCE_TTL_S: int = int(get("SIWE_NONCE_TTL_S", "300"))

    # ── Shortcuts ─────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def is_dev(self) -> bool:
        return self.ENV == "development"

    @property
    def uses_rsa(self) -> bool:
        return bool(self.JWT_PRIVATE_KEY_PEM and self.JWT_PUBLIC_KEY_PEM)

    @property
    def google_ready(self) -> bool:
        return bool(self.GOOGLE_CLIENT_ID and self.GOOGLE_CLIENT_SECRET)

    def __repr__(self):
        return (
            f"<Config env={self.ENV} "
            f"services={sorted(self.SERVICE_API_KEYS)} "
            f"redis={'✓' if self.REDIS_URL else '✗'} "
            f"webhooks={len(self.WEBHOOK_URLS)} "
            f"google={'✓' if self.google_ready else '✗'}>"
        )
