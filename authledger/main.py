"""
AuthLedger — main.py
─────────────────────────────────────────────────────────────────
Central entry point. All services are built here from one Config
and hung on app.state; all routers mount here.

Start server:
    uvicorn authledger.main:app --reload --port 8000

File map:
    auth.py      → /api/v1/auth/*              (password, OTP, Google, profile)
    wallet.py    → /api/v1/wallet/*            (user balances + history)
                   /api/v1/internal/wallet/*   (service credit/debit, idempotent)
    referral.py  → /api/v1/users/*             (referral code, referrer, referrals)
                   /api/v1/internal/users/*    (service batch create / referrers)
─────────────────────────────────────────────────────────────────
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authledger import auth, referral, wallet
from authledger.core.config import Config
from authledger.core.database import Database
from authledger.core.errors import register_exception_handlers
from authledger.core.kv import KeyValueStore, build_store
from authledger.core.security import TokenSigner
from authledger.idempotency import IdempotencyGate
from authledger.mailer import Mailer
from authledger.service_auth import ServiceAuthenticator
from authledger.users import UserStore
from authledger.webhooks import WebhookNotifier

VERSION = "1.0.0"

logger = logging.getLogger("authledger.main")


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level   = getattr(logging, level, logging.INFO),
        format  = "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt = "%Y-%m-%d %H:%M:%S",
    )


def create_app(
    cfg: Optional[Config] = None,
    store: Optional[KeyValueStore] = None,
    notifier: Optional[WebhookNotifier] = None,
) -> FastAPI:
    """
    Build the whole application from one Config.
    `store` / `notifier` can be injected (tests); otherwise they come
    from REDIS_URL / WEBHOOK_URLS.
    """
    cfg = cfg or Config()

    db       = Database(cfg.DB_PATH)
    store    = store or build_store(cfg.REDIS_URL)
    notifier = notifier or WebhookNotifier(cfg.WEBHOOK_URLS, cfg.WEBHOOK_SECRET)
    signer   = TokenSigner(cfg)
    users    = UserStore(db)
    ledger   = wallet.WalletService(db, cfg.ALLOWED_CURRENCIES, notifier)

    # ─────────────────────────────────────────────
    # Startup / Shutdown
    # ─────────────────────────────────────────────
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🚀 AuthLedger starting [{cfg.ENV}] {cfg!r}")
        await db.init_all_tables()
        logger.info("✅ AuthLedger is live.")

        yield  # App runs here

        await notifier.aclose()
        await store.close()
        logger.info("AuthLedger shutting down.")

    app = FastAPI(
        title       = "AuthLedger API",
        description = "Authentication, multi-currency wallet ledger and referrals",
        version     = VERSION,
        docs_url    = None if cfg.is_production else "/docs",
        redoc_url   = None if cfg.is_production else "/redoc",
        lifespan    = lifespan,
    )

    app.state.cfg          = cfg
    app.state.db           = db
    app.state.store        = store
    app.state.notifier     = notifier
    app.state.signer       = signer
    app.state.users        = users
    app.state.wallet       = ledger
    app.state.idempotency  = IdempotencyGate(
        store,
        lock_ttl_ms   = cfg.IDEMPOTENCY_LOCK_TTL_MS,
        result_ttl    = cfg.IDEMPOTENCY_RESULT_TTL,
        retry_wait_ms = cfg.IDEMPOTENCY_RETRY_WAIT_MS,
    )
    app.state.service_auth = ServiceAuthenticator(cfg.SERVICE_API_KEYS, cfg.SERVICE_PERMISSIONS)
    app.state.referral     = referral.ReferralService(db, users, notifier)
    app.state.auth         = auth.AuthService(
        cfg, db, users, ledger, signer,
        Mailer(cfg.RESEND_API_KEY, cfg.EMAIL_FROM, is_dev=cfg.is_dev),
        store,
    )

    # ─────────────────────────────────────────────
    # CORS
    # ─────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins     = list(dict.fromkeys([cfg.FRONTEND_URL, *cfg.CORS_ORIGINS])),
        allow_credentials = True,
        allow_methods     = ["*"],
        allow_headers     = ["*"],
    )

    register_exception_handlers(app, cfg.is_production)

    # ─────────────────────────────────────────────
    # Mount Routers
    # ─────────────────────────────────────────────
    app.include_router(auth.router)
    app.include_router(wallet.router)
    app.include_router(wallet.internal_router)
    app.include_router(referral.router)
    app.include_router(referral.internal_router)

    # ─────────────────────────────────────────────
    # Health Check
    # ─────────────────────────────────────────────
    @app.get("/health", tags=["system"])
    async def health():
        """Quick ping for load balancers and uptime monitors."""
        return {
            "status":  "ok",
            "app":     "AuthLedger",
            "version": VERSION,
            "env":     cfg.ENV,
        }

    return app


def _build() -> FastAPI:
    cfg = Config()
    configure_logging(cfg.LOG_LEVEL)
    return create_app(cfg)


app = _build()
