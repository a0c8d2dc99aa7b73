"""
AuthLedger — models/wallet.py
─────────────────────────────────────────────────────────────────
Wallet & transaction table definitions + dataclasses.

Two projections of a transaction:
  public()  → what the owning user sees (no internal notes)
  audit()   → what a calling service sees (includes internal notes)
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from typing import Optional


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
WALLETS_TABLE = """
    CREATE TABLE IF NOT EXISTS wallets (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id     INTEGER NOT NULL REFERENCES users(id),
        currency    TEXT NOT NULL,
        balance     INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL,
        UNIQUE (user_id, currency)
    );
"""

WALLET_TRANSACTIONS_TABLE = """
    CREATE TABLE IF NOT EXISTS wallet_transactions (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        wallet_id       INTEGER NOT NULL REFERENCES wallets(id),
        type            TEXT NOT NULL CHECK (type IN ('CREDIT', 'DEBIT')),
        amount          INTEGER NOT NULL,      -- signed: +credit / -debit
        description     TEXT NOT NULL,
        internal_notes  TEXT,                  -- "via order-service"
        reference_id    TEXT,                  -- "order-service:order_123"
        created_at      TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_wtx_wallet
        ON wallet_transactions(wallet_id, id DESC);
"""

CREDIT = "CREDIT"
DEBIT  = "DEBIT"


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class Wallet:
    id:         int
    user_id:    int
    currency:   str
    balance:    int
    created_at: str
    updated_at: str


@dataclass
class WalletTransaction:
    id:             int
    wallet_id:      int
    type:           str       # CREDIT | DEBIT
    amount:         int
    description:    str
    internal_notes: Optional[str]
    reference_id:   Optional[str]
    created_at:     str
    currency:       str
    user_id:        int

    @classmethod
    def from_row(cls, row) -> "WalletTransaction":
        """Row must come from wallet_transactions JOIN wallets."""
        return cls(
            id             = row["id"],
            wallet_id      = row["wallet_id"],
            type           = row["type"],
            amount         = row["amount"],
            description    = row["description"],
            internal_notes = row["internal_notes"],
            reference_id   = row["reference_id"],
            created_at     = row["created_at"],
            currency       = row["currency"],
            user_id        = row["user_id"],
        )

    def public(self) -> dict:
        return {
            "id":          self.id,
            "walletId":    self.wallet_id,
            "type":        self.type,
            "amount":      self.amount,
            "description": self.description,
            "referenceId": self.reference_id,
            "createdAt":   self.created_at,
            "wallet":      {"currency": self.currency},
        }

    def audit(self) -> dict:
        return {
            **self.public(),
            "internalNotes": self.internal_notes,
            "wallet":        {"currency": self.currency, "userId": self.user_id},
        }
