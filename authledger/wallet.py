"""
AuthLedger — wallet.py
─────────────────────────────────────────────────────────────────
Multi-currency wallet ledger
- One wallet per (user, currency), created lazily on first credit
- Integer balances in the currency's base unit, never negative
- Every balance change appends exactly one transaction row
  (sum of a wallet's transaction amounts == its balance)
- Read-verify-write runs inside BEGIN IMMEDIATE, so concurrent
  debits cannot overdraw and concurrent credits cannot get lost

Usage:
    wallet = WalletService(db, cfg.ALLOWED_CURRENCIES, notifier)
    await wallet.credit(user_id, "points", 100, "Referral bonus", "ref_9", "referral-service")
    await wallet.debit(user_id, "points", 40, "Item purchase", "order_1", "order-service")

ENDPOINTS:
  GET  /api/v1/wallet/balance                     → my balances
  GET  /api/v1/wallet/transactions                → my transactions (paginated)
  POST /api/v1/internal/wallet/credit             → service credit  (idempotent)
  POST /api/v1/internal/wallet/debit              → service debit   (idempotent)
  GET  /api/v1/internal/wallet/balance/{user_id}  → service balance lookup
  GET  /api/v1/internal/wallet/transaction        → service audit lookup by reference
─────────────────────────────────────────────────────────────────
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Path, Query, Request
from pydantic import BaseModel, Field

from authledger.core.database import SQLITE_MAX_INT, Database
from authledger.core.errors import (
    BadRequestError,
    InsufficientBalanceError,
    InvalidAmountError,
    NotFoundError,
    ok,
)
from authledger.core.security import get_current_user
from authledger.idempotency import IdempotencyGate, require_idempotency_key
from authledger.models.wallet import CREDIT, DEBIT, WalletTransaction
from authledger.service_auth import (
    PERM_BALANCE,
    PERM_CREDIT,
    PERM_DEBIT,
    PERM_TRANSACTION,
    ServiceIdentity,
    require_service,
)
from authledger.webhooks import EVENT_WALLET_CREDITED, EVENT_WALLET_DEBITED, WebhookNotifier

logger = logging.getLogger("authledger.wallet")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE     = 100

TRANSACTION_SELECT = """
    SELECT t.*, w.currency, w.user_id
    FROM wallet_transactions t
    JOIN wallets w ON w.id = t.wallet_id
"""


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _attribution(reference_id: Optional[str], service_name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    (internal_notes, reference_id) for a ledger row.
    Service calls are tagged "via order-service" and their reference
    becomes "order-service:order_123".
    """
    if service_name:
        return f"via {service_name}", f"{service_name}:{reference_id or ''}"
    return None, reference_id or None


# ─────────────────────────────────────────────
# WalletService
# ─────────────────────────────────────────────
class WalletService:
    """
    All wallet operations.
    Every method opens its own connection; mutations run in one
    serialized transaction each.
    """

    def __init__(self, db: Database, currencies: frozenset, notifier: Optional[WebhookNotifier] = None):
        self.db         = db
        self.currencies = currencies
        self.notifier   = notifier

    # ─── Validation ───────────────────────────

    def check_currency(self, currency: str):
        if currency not in self.currencies:
            raise BadRequestError(f"Unsupported currency: {currency}")

    @staticmethod
    def check_amount(amount: Any):
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(f"Amount must be a positive integer, got {amount!r}")
        if amount > SQLITE_MAX_INT:
            raise InvalidAmountError(f"Amount must not exceed {SQLITE_MAX_INT}")

    # ─── Read ─────────────────────────────────

    async def get_balance(self, user_id: int) -> Dict[str, int]:
        """Every allowed currency, 0 where no wallet exists yet (no row is created)."""
        balances = {currency: 0 for currency in sorted(self.currencies)}
        async with self.db.connect() as conn:
            async with conn.execute(
                "SELECT currency, balance FROM wallets WHERE user_id = ?", (user_id,)
            ) as cur:
                for row in await cur.fetchall():
                    balances[row["currency"]] = row["balance"]
        return balances

    async def get_transactions(
        self,
        user_id: int,
        currency: Optional[str] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[dict], dict]:
        """Public projection, newest first. Returns (items, pagination meta)."""
        if currency is not None:
            self.check_currency(currency)
        page  = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        where  = "WHERE w.user_id = ?"
        params: list = [user_id]
        if currency is not None:
            where += " AND w.currency = ?"
            params.append(currency)

        async with self.db.connect() as conn:
            async with conn.execute(
                f"SELECT COUNT(*) FROM wallet_transactions t JOIN wallets w ON w.id = t.wallet_id {where}",
                params,
            ) as cur:
                total = (await cur.fetchone())[0]

            async with conn.execute(
                f"{TRANSACTION_SELECT} {where} ORDER BY t.id DESC LIMIT ? OFFSET ?",
                (*params, limit, (page - 1) * limit),
            ) as cur:
                rows = await cur.fetchall()

        total_pages = math.ceil(total / limit)
        meta = {
            "total_count":  total,
            "current_page": page,
            "total_pages":  total_pages,
            "per_page":     limit,
            "has_next":     page < total_pages,
            "has_previous": page > 1,
        }
        return [WalletTransaction.from_row(r).public() for r in rows], meta

    async def get_transaction_by_reference(
        self,
        currency: str,
        tx_type: str,
        reference_id: str,
        user_id: Optional[int] = None,
    ) -> Optional[dict]:
        """
        Newest transaction whose reference_id CONTAINS `reference_id`
        (so "order_123" finds "order-service:order_123").
        Audit projection: includes internal notes.
        """
        sql    = f"{TRANSACTION_SELECT} WHERE w.currency = ? AND t.type = ? AND instr(t.reference_id, ?) > 0"
        params: list = [currency, tx_type, reference_id]
        if user_id is not None:
            sql += " AND w.user_id = ?"
            params.append(user_id)
        sql += " ORDER BY t.id DESC LIMIT 1"

        async with self.db.connect() as conn:
            async with conn.execute(sql, params) as cur:
                row = await cur.fetchone()
        return WalletTransaction.from_row(row).audit() if row else None

    async def ledger_sum(self, user_id: int, currency: str) -> Tuple[int, int]:
        """
        (stored balance, signed sum of transactions) for one wallet.
        Use for auditing: the two must always be equal.
        """
        async with self.db.connect() as conn:
            async with conn.execute(
                """SELECT w.balance, COALESCE(SUM(t.amount), 0) AS total
                   FROM wallets w
                   LEFT JOIN wallet_transactions t ON t.wallet_id = w.id
                   WHERE w.user_id = ? AND w.currency = ?
                   GROUP BY w.id""",
                (user_id, currency),
            ) as cur:
                row = await cur.fetchone()
        return (row["balance"], row["total"]) if row else (0, 0)

    # ─── Write ────────────────────────────────

    async def _append(self, conn, wallet_id: int, tx_type: str, amount: int, description: str,
                      reference_id: Optional[str], service_name: Optional[str]) -> WalletTransaction:
        internal_notes, reference = _attribution(reference_id, service_name)
        cur = await conn.execute(
            """INSERT INTO wallet_transactions
               (wallet_id, type, amount, description, internal_notes, reference_id, created_at)
               VALUES (?,?,?,?,?,?,?)""",
            (wallet_id, tx_type, amount, description, internal_notes, reference, _now()),
        )
        async with conn.execute(f"{TRANSACTION_SELECT} WHERE t.id = ?", (cur.lastrowid,)) as c:
            return WalletTransaction.from_row(await c.fetchone())

    async def credit(
        self,
        user_id: int,
        currency: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        service_name: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Add `amount` to the user's `currency` wallet, creating it if needed.
        Credit never fails on business grounds once inputs are valid,
        except when the new balance would not fit a 64-bit integer.
        """
        self.check_amount(amount)
        self.check_currency(currency)

        async with self.db.transaction() as conn:
            tx = await self.credit_in(conn, user_id, currency, amount, description, reference_id, service_name)

        self.credited(tx)
        return tx

    async def credit_in(self, conn, user_id: int, currency: str, amount: int, description: str,
                        reference_id: Optional[str], service_name: Optional[str]) -> WalletTransaction:
        """
        Credit inside a transaction the caller already holds.
        Callers must run check_amount and check_currency first and call
        credited(tx) once their transaction has committed.
        """
        async with conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)) as cur:
            if await cur.fetchone() is None:
                raise NotFoundError("User not found")

        async with conn.execute(
            "SELECT balance FROM wallets WHERE user_id = ? AND currency = ?", (user_id, currency)
        ) as cur:
            row = await cur.fetchone()
        if row is not None and row["balance"] > SQLITE_MAX_INT - amount:
            logger.info(f"CREDIT refused user={user_id} {amount} {currency} (balance {row['balance']})")
            raise InvalidAmountError("Credit would overflow the wallet balance")

        now = _now()
        await conn.execute(
            """INSERT INTO wallets (user_id, currency, balance, created_at, updated_at)
               VALUES (?,?,?,?,?)
               ON CONFLICT(user_id, currency) DO UPDATE SET
                   balance    = balance + excluded.balance,
                   updated_at = excluded.updated_at""",
            (user_id, currency, amount, now, now),
        )
        async with conn.execute(
            "SELECT id FROM wallets WHERE user_id = ? AND currency = ?", (user_id, currency)
        ) as cur:
            wallet_id = (await cur.fetchone())["id"]

        return await self._append(conn, wallet_id, CREDIT, amount, description, reference_id, service_name)

    def credited(self, tx: WalletTransaction):
        """Log + webhook for a committed credit."""
        logger.info(
            f"CREDIT user={tx.user_id} {tx.amount} {tx.currency} "
            f"tx={tx.id} {tx.internal_notes or 'direct'}"
        )
        self._notify(EVENT_WALLET_CREDITED, tx, tx.amount)

    async def debit(
        self,
        user_id: int,
        currency: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        service_name: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Take `amount` from the user's `currency` wallet.
        Raises NotFoundError if the wallet doesn't exist.
        Raises InsufficientBalanceError if balance < amount.
        """
        self.check_amount(amount)
        self.check_currency(currency)

        async with self.db.transaction() as conn:
            async with conn.execute(
                "SELECT id, balance FROM wallets WHERE user_id = ? AND currency = ?",
                (user_id, currency),
            ) as cur:
                wallet = await cur.fetchone()

            if wallet is None:
                raise NotFoundError(f"{currency} wallet not found")
            if wallet["balance"] < amount:
                logger.info(
                    f"DEBIT refused user={user_id} {amount} {currency} "
                    f"(balance {wallet['balance']})"
                )
                raise InsufficientBalanceError("Insufficient balance")

            await conn.execute(
                "UPDATE wallets SET balance = balance - ?, updated_at = ? WHERE id = ?",
                (amount, _now(), wallet["id"]),
            )
            tx = await self._append(conn, wallet["id"], DEBIT, -amount, description, reference_id, service_name)

        logger.info(
            f"DEBIT user={user_id} {amount} {currency} "
            f"tx={tx.id} {tx.internal_notes or 'direct'}"
        )
        self._notify(EVENT_WALLET_DEBITED, tx, amount)
        return tx

    def _notify(self, event: str, tx: WalletTransaction, amount: int):
        if self.notifier is None:
            return
        self.notifier.emit(event, {
            "userId":        tx.user_id,
            "currency":      tx.currency,
            "amount":        amount,
            "transactionId": tx.id,
            "referenceId":   tx.reference_id,
            "timestamp":     _now(),
        })


# ─────────────────────────────────────────────
# Dependencies
# ─────────────────────────────────────────────
def get_wallet_service(request: Request) -> WalletService:
    return request.app.state.wallet


def get_idempotency_gate(request: Request) -> IdempotencyGate:
    return request.app.state.idempotency


# ─────────────────────────────────────────────
# Public routes (user JWT)
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/v1/wallet", tags=["wallet"])


@router.get("/balance")
async def my_balance(
    user_id: int = Depends(get_current_user),
    wallet: WalletService = Depends(get_wallet_service),
):
    return ok(await wallet.get_balance(user_id), "Balance retrieved successfully")


@router.get("/transactions")
async def my_transactions(
    currency: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user_id: int = Depends(get_current_user),
    wallet: WalletService = Depends(get_wallet_service),
):
    items, meta = await wallet.get_transactions(user_id, currency, page, limit)
    return ok(items, "Transactions retrieved successfully", meta=meta)


# ─────────────────────────────────────────────
# Internal routes (service API key)
# ─────────────────────────────────────────────
internal_router = APIRouter(prefix="/api/v1/internal/wallet", tags=["internal"])


class LedgerRequest(BaseModel):
    userId:      int = Field(gt=0, le=SQLITE_MAX_INT)
    currency:    str
    amount:      int = Field(le=SQLITE_MAX_INT)    # positivity enforced by WalletService
    description: str = Field(min_length=1, max_length=255)
    referenceId: str = Field(max_length=50)
    metadata:    Optional[Dict[str, Any]] = None


@internal_router.post("/credit")
async def service_credit(
    body: LedgerRequest,
    service: ServiceIdentity = Depends(require_service(PERM_CREDIT)),
    key: str = Depends(require_idempotency_key),
    wallet: WalletService = Depends(get_wallet_service),
    gate: IdempotencyGate = Depends(get_idempotency_gate),
):
    async def operation() -> dict:
        tx = await wallet.credit(
            body.userId, body.currency, body.amount,
            body.description, body.referenceId, service.name,
        )
        return ok({"transaction": tx.audit()}, "Wallet credited successfully")

    return await gate.run(f"{service.name}:credit:{key}", operation)


@internal_router.post("/debit")
async def service_debit(
    body: LedgerRequest,
    service: ServiceIdentity = Depends(require_service(PERM_DEBIT)),
    key: str = Depends(require_idempotency_key),
    wallet: WalletService = Depends(get_wallet_service),
    gate: IdempotencyGate = Depends(get_idempotency_gate),
):
    async def operation() -> dict:
        tx = await wallet.debit(
            body.userId, body.currency, body.amount,
            body.description, body.referenceId, service.name,
        )
        return ok({"transaction": tx.audit()}, "Wallet debited successfully")

    return await gate.run(f"{service.name}:debit:{key}", operation)


@internal_router.get("/balance/{user_id}")
async def service_balance(
    user_id: int = Path(gt=0, le=SQLITE_MAX_INT),
    service: ServiceIdentity = Depends(require_service(PERM_BALANCE)),
    wallet: WalletService = Depends(get_wallet_service),
):
    return ok(await wallet.get_balance(user_id), "Balance retrieved successfully")


@internal_router.get("/transaction")
async def service_transaction_lookup(
    walletType: str,
    transactionType: str = Query(pattern="^(CREDIT|DEBIT)$"),
    referenceId: str = Query(min_length=1, max_length=50),
    userId: Optional[int] = Query(None, gt=0, le=SQLITE_MAX_INT),
    service: ServiceIdentity = Depends(require_service(PERM_TRANSACTION)),
    wallet: WalletService = Depends(get_wallet_service),
):
    wallet.check_currency(walletType)
    tx = await wallet.get_transaction_by_reference(walletType, transactionType, referenceId, userId)
    if tx is None:
        return ok(None, "Transaction not found")
    return ok({"transaction": tx}, "Transaction retrieved successfully")
