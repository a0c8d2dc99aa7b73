"""
AuthLedger — core/database.py
─────────────────────────────────────────────────────────────────
Single place for:
  - DB connection helpers (read + serialized write transaction)
  - ALL table CREATE statements
  - One init_all_tables() call on startup

Usage:
    from authledger.core.database import Database

    db = Database(cfg.DB_PATH)
    await db.init_all_tables()

    # Reads:
    async with db.connect() as conn:
        await conn.execute(...)

    # Read-verify-write (credit, debit, set referrer):
    async with db.transaction() as conn:
        ...   # BEGIN IMMEDIATE → COMMIT / ROLLBACK
─────────────────────────────────────────────────────────────────
"""

import logging
from contextlib import asynccontextmanager

import aiosqlite

from authledger.models.user import USERS_TABLE, OTP_CODES_TABLE, SOCIAL_ACCOUNTS_TABLE
from authledger.models.wallet import WALLETS_TABLE, WALLET_TRANSACTIONS_TABLE

logger = logging.getLogger("authledger.database")

BUSY_TIMEOUT_S = 30.0

# INTEGER columns are signed 64-bit; ids and balances must stay below this
SQLITE_MAX_INT = 2**63 - 1

# users first: everything else has a foreign key to it
ALL_TABLES = (
    USERS_TABLE,
    OTP_CODES_TABLE,
    SOCIAL_ACCOUNTS_TABLE,
    WALLETS_TABLE,
    WALLET_TRANSACTIONS_TABLE,
)


class Database:
    def __init__(self, path: str):
        self.path = path

    # ─────────────────────────────────────────────
    # Connection helpers
    # ─────────────────────────────────────────────
    @asynccontextmanager
    async def connect(self):
        """
        Plain connection for reads and single-statement writes.

        async with db.connect() as conn:
            await conn.execute(...)
        """
        async with aiosqlite.connect(self.path, timeout=BUSY_TIMEOUT_S) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn

    @asynccontextmanager
    async def transaction(self):
        """
        Serialized unit of work.

        BEGIN IMMEDIATE takes SQLite's write lock before the first read, so
        two concurrent debits of one wallet cannot both see the old balance.
        Commits when the block exits cleanly, rolls back on any exception.
        """
        async with aiosqlite.connect(
            self.path, timeout=BUSY_TIMEOUT_S, isolation_level=None
        ) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    # ─────────────────────────────────────────────
    # Init
    # ─────────────────────────────────────────────
    async def init_all_tables(self):
        """
        Create every table in the correct order.
        Safe to call multiple times (IF NOT EXISTS).
        """
        async with aiosqlite.connect(self.path, timeout=BUSY_TIMEOUT_S) as conn:
            await conn.execute("PRAGMA journal_mode = WAL")
            for sql in ALL_TABLES:
                await conn.executescript(sql)
            await conn.commit()
        logger.info(f"✅ All tables initialized ({self.path})")
