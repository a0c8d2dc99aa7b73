"""
AuthLedger — models/user.py
─────────────────────────────────────────────────────────────────
User, OTP & social-account table definitions + dataclasses.
No logic here, only structure and projections.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from typing import Optional


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
USERS_TABLE = """
    CREATE TABLE IF NOT EXISTS users (
        id                INTEGER PRIMARY KEY AUTOINCREMENT,
        email             TEXT UNIQUE NOT NULL,
        name              TEXT,
        password_hash     TEXT,
        wallet_address    TEXT UNIQUE,
        referrer_id       INTEGER REFERENCES users(id),
        last_daily_login  TEXT,
        created_at        TEXT NOT NULL,
        updated_at        TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_users_referrer
        ON users(referrer_id);
"""

OTP_CODES_TABLE = """
    CREATE TABLE IF NOT EXISTS otp_codes (
        email       TEXT PRIMARY KEY,
        user_id     INTEGER NOT NULL REFERENCES users(id),
        code        TEXT NOT NULL,
        expires_at  TEXT NOT NULL,
        used_at     TEXT,
        created_at  TEXT NOT NULL
    );
"""

SOCIAL_ACCOUNTS_TABLE = """
    CREATE TABLE IF NOT EXISTS social_accounts (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id      INTEGER NOT NULL REFERENCES users(id),
        provider     TEXT NOT NULL,          -- "google"
        provider_id  TEXT NOT NULL,
        email        TEXT,
        name         TEXT,
        avatar       TEXT,
        created_at   TEXT NOT NULL,
        UNIQUE (provider, provider_id)
    );

    CREATE INDEX IF NOT EXISTS idx_social_user
        ON social_accounts(user_id);
"""


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class User:
    id:               int
    email:            str
    name:             Optional[str]
    password_hash:    Optional[str]
    wallet_address:   Optional[str]
    referrer_id:      Optional[int]
    last_daily_login: Optional[str]
    created_at:       str
    updated_at:       str

    @classmethod
    def from_row(cls, row) -> "User":
        return cls(
            id               = row["id"],
            email            = row["email"],
            name             = row["name"],
            password_hash    = row["password_hash"],
            wallet_address   = row["wallet_address"],
            referrer_id      = row["referrer_id"],
            last_daily_login = row["last_daily_login"],
            created_at       = row["created_at"],
            updated_at       = row["updated_at"],
        )

    def public(self) -> dict:
        """Everything except the password hash."""
        return {
            "id":             self.id,
            "email":          self.email,
            "name":           self.name,
            "walletAddress":  self.wallet_address,
            "referrerId":     self.referrer_id,
            "lastDailyLogin": self.last_daily_login,
            "createdAt":      self.created_at,
            "updatedAt":      self.updated_at,
        }


@dataclass
class SocialAccount:
    id:          int
    user_id:     int
    provider:    str
    provider_id: str
    email:       Optional[str]
    name:        Optional[str]
    avatar:      Optional[str]
    created_at:  str

    @classmethod
    def from_row(cls, row) -> "SocialAccount":
        return cls(**{k: row[k] for k in row.keys()})

    def public(self) -> dict:
        return {
            "provider":   self.provider,
            "providerId": self.provider_id,
            "email":      self.email,
            "name":       self.name,
            "avatar":     self.avatar,
            "createdAt":  self.created_at,
        }
