"""
AuthLedger — users.py
─────────────────────────────────────────────────────────────────
User persistence shared by auth, referral and the internal APIs.
Every lookup returns the User dataclass; routes decide which
projection (User.public()) leaves the process.
─────────────────────────────────────────────────────────────────
"""

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from authledger.core.database import Database
from authledger.core.errors import ConflictError, NotFoundError
from authledger.models.user import User

logger = logging.getLogger("authledger.users")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def fetch_user(conn, user_id: int) -> Optional[User]:
    """Lookup on an already-open connection (inside a transaction)."""
    async with conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)) as cur:
        row = await cur.fetchone()
    return User.from_row(row) if row else None


class UserStore:
    def __init__(self, db: Database):
        self.db = db

    async def get(self, user_id: int) -> Optional[User]:
        async with self.db.connect() as conn:
            return await fetch_user(conn, user_id)

    async def require(self, user_id: int) -> User:
        user = await self.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def get_by_email(self, email: str) -> Optional[User]:
        async with self.db.connect() as conn:
            async with conn.execute(
                "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
            ) as cur:
                row = await cur.fetchone()
        return User.from_row(row) if row else None

    async def get_by_wallet(self, address: str) -> Optional[User]:
        # addresses arrive checksummed (mixed case) or lowercase
        async with self.db.connect() as conn:
            async with conn.execute(
                "SELECT * FROM users WHERE lower(wallet_address) = ?", (address.strip().lower(),)
            ) as cur:
                row = await cur.fetchone()
        return User.from_row(row) if row else None

    async def get_many(self, user_ids: Iterable[int]) -> Dict[int, User]:
        """One query for a whole batch. Missing ids are simply absent."""
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        async with self.db.connect() as conn:
            async with conn.execute(
                f"SELECT * FROM users WHERE id IN ({placeholders})", ids
            ) as cur:
                rows = await cur.fetchall()
        return {row["id"]: User.from_row(row) for row in rows}

    async def create(
        self,
        email: str,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        wallet_address: Optional[str] = None,
        referrer_id: Optional[int] = None,
    ) -> User:
        """
        Insert a user.
        Raises ConflictError on duplicate email / wallet address,
        NotFoundError if referrer_id points at nobody.
        """
        now = _now()
        try:
            async with self.db.transaction() as conn:
                cur = await conn.execute(
                    """INSERT INTO users
                       (email, name, password_hash, wallet_address, referrer_id, created_at, updated_at)
                       VALUES (?,?,?,?,?,?,?)""",
                    (email.strip().lower(), name, password_hash, wallet_address, referrer_id, now, now),
                )
                user = await fetch_user(conn, cur.lastrowid)
        except sqlite3.IntegrityError as e:
            msg = str(e)
            if "FOREIGN KEY" in msg:
                raise NotFoundError("Referrer not found")
            if "wallet_address" in msg:
                raise ConflictError("Wallet address already in use")
            raise ConflictError("User with this email already exists")

        logger.info(f"User created: id={user.id} email={user.email}")
        return user

    async def stamp_daily_login(self, user_id: int) -> User:
        now = _now()
        async with self.db.transaction() as conn:
            await conn.execute(
                "UPDATE users SET last_daily_login = ?, updated_at = ? WHERE id = ?",
                (now, now, user_id),
            )
            user = await fetch_user(conn, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user
