"""
AuthLedger — referral.py
─────────────────────────────────────────────────────────────────
Referral graph

HOW IT WORKS:
  1. Every user has a referral code derived from their id: 2 → "R0002"
  2. A user enters someone's code once → users.referrer_id is set
  3. referrer_id is ONE-TIME: once set it never changes
  4. The referrer chain must stay acyclic:

       A ← B ← C        (C referred by B, B referred by A)
       set A.referrer = C   → rejected, C's chain reaches A
       set D.referrer = C   → fine

CYCLE CHECK:
  Walk from the candidate referrer up its referrer chain.
    reach the user being updated → cycle, reject
    reach a node seen before     → old cycle, stop (not ours)
    reach the top (NULL)         → no cycle, accept
  Cost is bounded by chain length, not by the number of users.
  The walk and the write share one BEGIN IMMEDIATE transaction.

ENDPOINTS:
  GET  /api/v1/users/referral-code          → my code
  POST /api/v1/users/referrer               → set my referrer (once)
  GET  /api/v1/users/referrals              → users I referred
  GET  /api/v1/users/referrals-count        → {total, active}
  POST /api/v1/users/update-daily-login     → stamp activity
  POST /api/v1/internal/users               → batch create (service)
  POST /api/v1/internal/users/referrers     → batch set referrers (service)
─────────────────────────────────────────────────────────────────
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from authledger import referral_code
from authledger.core.database import SQLITE_MAX_INT, Database
from authledger.core.errors import (
    AppError,
    BadRequestError,
    ConflictError,
    InvalidReferralCodeError,
    NotFoundError,
    ok,
)
from authledger.core.security import get_current_user, hash_password
from authledger.models.user import User
from authledger.service_auth import PERM_REFERRERS, PERM_USERS, ServiceIdentity, require_service
from authledger.users import UserStore, fetch_user
from authledger.webhooks import EVENT_REFERRAL_CREATED, WebhookNotifier

logger = logging.getLogger("authledger.referral")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def creates_cycle(conn, user_id: int, candidate_referrer_id: int) -> bool:
    """True if making `candidate_referrer_id` the referrer of `user_id` closes a loop."""
    if user_id == candidate_referrer_id:
        return True

    visited = set()
    current: Optional[int] = candidate_referrer_id
    while current is not None and current not in visited:
        if current == user_id:
            return True
        visited.add(current)
        async with conn.execute("SELECT referrer_id FROM users WHERE id = ?", (current,)) as cur:
            row = await cur.fetchone()
        current = row["referrer_id"] if row else None
    return False


# ─────────────────────────────────────────────
# ReferralService
# ─────────────────────────────────────────────
class ReferralService:
    def __init__(self, db: Database, users: UserStore, notifier: Optional[WebhookNotifier] = None):
        self.db       = db
        self.users    = users
        self.notifier = notifier

    def get_referral_code(self, user_id: int) -> str:
        return referral_code.encode(user_id)

    async def set_referrer(self, user_id: int, code: str) -> User:
        async with self.db.transaction() as conn:
            user = await fetch_user(conn, user_id)
            if user is None:
                raise NotFoundError("User not found")
            if user.referrer_id is not None:
                raise ConflictError("Referrer already set")

            try:
                referrer_id = referral_code.decode(code)
            except InvalidReferralCodeError:
                raise BadRequestError("Invalid referral code")

            if await fetch_user(conn, referrer_id) is None:
                raise NotFoundError("Referrer not found")

            if await creates_cycle(conn, user_id, referrer_id):
                logger.warning(f"Circular referral rejected: user={user_id} referrer={referrer_id}")
                raise BadRequestError("Circular reference detected")

            now = _now()
            await conn.execute(
                "UPDATE users SET referrer_id = ?, updated_at = ? WHERE id = ?",
                (referrer_id, now, user_id),
            )
            updated = await fetch_user(conn, user_id)

        logger.info(f"Referrer set: user={user_id} referrer={referrer_id}")
        self._notify(referrer_id, user_id)
        return updated

    async def get_referrals(self, user_id: int) -> List[User]:
        async with self.db.connect() as conn:
            async with conn.execute(
                "SELECT * FROM users WHERE referrer_id = ? ORDER BY id", (user_id,)
            ) as cur:
                rows = await cur.fetchall()
        return [User.from_row(r) for r in rows]

    async def get_referrals_count(self, user_id: int) -> Tuple[int, int]:
        """(total, active). Active means the referral has a daily login on record."""
        async with self.db.connect() as conn:
            async with conn.execute(
                """SELECT COUNT(*) AS total,
                          COUNT(last_daily_login) AS active
                   FROM users WHERE referrer_id = ?""",
                (user_id,),
            ) as cur:
                row = await cur.fetchone()
        return row["total"], row["active"]

    # ─── Batch (service API) ──────────────────

    async def create_users(self, items: List["UserCreate"], service_name: str) -> dict:
        """
        Per-item isolation: one bad row fails alone, the rest are created.
        """
        created, failed = [], []
        for index, item in enumerate(items):
            try:
                user = await self.users.create(
                    email          = item.email,
                    name           = item.name,
                    password_hash  = hash_password(item.password) if item.password else None,
                    wallet_address = item.walletAddress,
                    referrer_id    = item.referrerId,
                )
            except AppError as e:
                failed.append({"index": index, "email": item.email, "reason": e.message})
                continue
            created.append(user.public())
            if user.referrer_id is not None:
                self._notify(user.referrer_id, user.id)

        logger.info(
            f"Batch create by {service_name}: "
            f"{len(created)} created, {len(failed)} failed"
        )
        return {"created": created, "failed": failed}

    async def update_referrers(self, updates: List["ReferrerUpdate"], service_name: str) -> dict:
        """
        Apply (referee, referrer) pairs one by one. Existence of every
        referenced user is checked in a single query up front; each pair
        then gets its own transaction with a fresh cycle check, so earlier
        pairs in the batch are visible to later ones.
        """
        known = await self.users.get_many(
            [u.refereeUserId for u in updates] + [u.referrerUserId for u in updates]
        )

        updated, failed = [], []
        for item in updates:
            pair = {"refereeUserId": item.refereeUserId, "referrerUserId": item.referrerUserId}
            if item.refereeUserId not in known:
                failed.append({**pair, "reason": "Referee not found"})
                continue
            if item.referrerUserId not in known:
                failed.append({**pair, "reason": "Referrer not found"})
                continue
            try:
                changed = await self._assign(item.refereeUserId, item.referrerUserId)
            except AppError as e:
                failed.append({**pair, "reason": e.message})
                continue
            updated.append(pair)
            if changed:
                self._notify(item.referrerUserId, item.refereeUserId)

        logger.info(
            f"Batch referrers by {service_name}: "
            f"{len(updated)} updated, {len(failed)} failed"
        )
        return {"updated": updated, "failed": failed}

    async def _assign(self, user_id: int, referrer_id: int) -> bool:
        """Set referrer if unset. Returns False when it was already this referrer."""
        async with self.db.transaction() as conn:
            user = await fetch_user(conn, user_id)
            if user is None:
                raise NotFoundError("Referee not found")
            if user.referrer_id == referrer_id:
                return False
            if user.referrer_id is not None:
                raise ConflictError("Referrer already set")
            if await creates_cycle(conn, user_id, referrer_id):
                raise BadRequestError("Circular reference detected")
            await conn.execute(
                "UPDATE users SET referrer_id = ?, updated_at = ? WHERE id = ?",
                (referrer_id, _now(), user_id),
            )
        return True

    def _notify(self, referrer_id: int, referred_user_id: int):
        if self.notifier is None:
            return
        self.notifier.emit(EVENT_REFERRAL_CREATED, {
            "referrerId":     referrer_id,
            "referredUserId": referred_user_id,
            "timestamp":      _now(),
        })


# ─────────────────────────────────────────────
# Dependencies
# ─────────────────────────────────────────────
def get_referral_service(request: Request) -> ReferralService:
    return request.app.state.referral


def get_user_store(request: Request) -> UserStore:
    return request.app.state.users


# ─────────────────────────────────────────────
# Public routes (user JWT)
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/v1/users", tags=["referral"])


class SetReferrerRequest(BaseModel):
    referralCode: str = Field(min_length=2, max_length=32)


@router.get("/referral-code")
async def my_referral_code(
    user_id: int = Depends(get_current_user),
    referral: ReferralService = Depends(get_referral_service),
):
    return ok({"referral_code": referral.get_referral_code(user_id)}, "Referral code retrieved successfully")


@router.post("/referrer")
async def set_my_referrer(
    body: SetReferrerRequest,
    user_id: int = Depends(get_current_user),
    referral: ReferralService = Depends(get_referral_service),
):
    user = await referral.set_referrer(user_id, body.referralCode.strip())
    return ok({"user": user.public()}, "Referrer set successfully")


@router.get("/referrals")
async def my_referrals(
    user_id: int = Depends(get_current_user),
    referral: ReferralService = Depends(get_referral_service),
):
    users = await referral.get_referrals(user_id)
    return ok({"referrals": [u.public() for u in users]}, "Referrals retrieved successfully")


@router.get("/referrals-count")
async def my_referrals_count(
    user_id: int = Depends(get_current_user),
    referral: ReferralService = Depends(get_referral_service),
):
    total, active = await referral.get_referrals_count(user_id)
    return ok({"total": total, "active": active}, "Referral count retrieved successfully")


@router.post("/update-daily-login")
async def update_daily_login(
    user_id: int = Depends(get_current_user),
    users: UserStore = Depends(get_user_store),
):
    user = await users.stamp_daily_login(user_id)
    return ok({"user": user.public()}, "Daily login updated successfully")


# ─────────────────────────────────────────────
# Internal routes (service API key)
# ─────────────────────────────────────────────
internal_router = APIRouter(prefix="/api/v1/internal/users", tags=["internal"])


class UserCreate(BaseModel):
    email:         EmailStr
    name:          str = Field(min_length=1, max_length=255)
    password:      Optional[str] = Field(None, min_length=8, max_length=128)
    walletAddress: Optional[str] = Field(None, max_length=128)
    referrerId:    Optional[int] = Field(None, gt=0, le=SQLITE_MAX_INT)


class BatchCreateUsersRequest(BaseModel):
    users: List[UserCreate] = Field(min_length=1)


class ReferrerUpdate(BaseModel):
    refereeUserId:  int = Field(gt=0, le=SQLITE_MAX_INT)
    referrerUserId: int = Field(gt=0, le=SQLITE_MAX_INT)
    refereeName:    Optional[str] = None
    referrerName:   Optional[str] = None


class UpdateReferrersRequest(BaseModel):
    updates: List[ReferrerUpdate] = Field(min_length=1)


@internal_router.post("")
async def batch_create_users(
    body: BatchCreateUsersRequest,
    service: ServiceIdentity = Depends(require_service(PERM_USERS)),
    referral: ReferralService = Depends(get_referral_service),
):
    result = await referral.create_users(body.users, service.name)
    return JSONResponse(status_code=201, content=ok(result, "Users created successfully"))


@internal_router.post("/referrers")
async def batch_update_referrers(
    body: UpdateReferrersRequest,
    service: ServiceIdentity = Depends(require_service(PERM_REFERRERS)),
    referral: ReferralService = Depends(get_referral_service),
):
    result = await referral.update_referrers(body.updates, service.name)
    return ok(result, "Referrers updated successfully")
