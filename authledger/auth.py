"""
AuthLedger — auth.py
─────────────────────────────────────────────────────────────────
Authentication backend: email/password, email OTP, Google OAuth, SIWE

FLOWS:
  Password  → POST /register  or  POST /login         → {user, token}
  OTP       → POST /send-otp (creates user on first use)
              POST /verify-otp                         → {user, token}
  Google    → GET /google/url → consent → GET /google/callback
              → redirect to frontend with ?token=...
  Linking   → GET /link/google/url (logged in) → same callback, but the
              Google account is attached to the current user
  Wallet    → GET /siwe/nonce → wallet signs an EIP-4361 message
              POST /siwe/verify                        → {user, token}

DAILY LOGIN BONUS:
  First GET /profile of each UTC day credits DAILY_LOGIN_BONUS
  DAILY_LOGIN_CURRENCY ("Daily login bonus") and stamps
  last_daily_login, which also marks the user as an active referral.

ENDPOINTS (prefix /api/v1/auth):
  POST   /register               GET  /profile
  POST   /login                  POST /logout
  POST   /send-otp               POST /verify-otp
  GET    /google/url             GET  /google/callback
  GET    /link/google/url        GET  /social
  DELETE /social/{provider}      GET  /.well-known/jwks.json
  GET    /siwe/nonce             POST /siwe/verify
─────────────────────────────────────────────────────────────────
"""

import hmac
import json
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from urllib.parse import quote, urlencode, urlparse

import httpx
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, EmailStr, Field, field_validator

from authledger import siwe
from authledger.core.config import Config
from authledger.core.database import Database
from authledger.core.errors import (
    AppError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ok,
)
from authledger.core.kv import KeyValueStore
from authledger.core.security import (
    TokenSigner,
    clear_session_cookie,
    get_current_user,
    hash_password,
    set_session_cookie,
    verify_password,
)
from authledger.mailer import Mailer
from authledger.models.user import SocialAccount, User
from authledger.users import UserStore
from authledger.wallet import WalletService

logger = logging.getLogger("authledger.auth")

GOOGLE_AUTH_URL     = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL    = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

OAUTH_STATE_TTL_S    = 600
DAILY_LOGIN_SERVICE  = "daily-login"
PASSWORD_RULE        = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])")


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_day_start() -> datetime:
    return _now().replace(hour=0, minute=0, second=0, microsecond=0)


def _generate_otp() -> str:
    """6-digit numeric code from a CSPRNG."""
    return str(secrets.randbelow(900_000) + 100_000)


def _with_query(url: str, **params) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params, quote_via=quote)}"


# ─────────────────────────────────────────────
# AuthService
# ─────────────────────────────────────────────
class AuthService:
    def __init__(
        self,
        cfg: Config,
        db: Database,
        users: UserStore,
        wallet: WalletService,
        signer: TokenSigner,
        mailer: Mailer,
        store: KeyValueStore,
    ):
        self.cfg    = cfg
        self.db     = db
        self.users  = users
        self.wallet = wallet
        self.signer = signer
        self.mailer = mailer
        self.store  = store

    def _session(self, user: User) -> dict:
        return {"user": user.public(), "token": self.signer.make_jwt(user.id, user.email)}

    # ─── Password ─────────────────────────────

    async def register(self, email: str, password: str, name: str) -> dict:
        if await self.users.get_by_email(email):
            raise ConflictError("User already exists")
        user = await self.users.create(email=email, name=name, password_hash=hash_password(password))
        logger.info(f"Registered user {user.id}")
        return self._session(user)

    async def login(self, email: str, password: str) -> dict:
        user = await self.users.get_by_email(email)
        # same message for unknown email and wrong password
        if user is None or not verify_password(password, user.password_hash):
            raise UnauthorizedError("Invalid credentials")
        return self._session(user)

    # ─── OTP ──────────────────────────────────

    async def send_otp(self, email: str):
        email = email.strip().lower()
        user = await self.users.get_by_email(email)
        if user is None:
            user = await self.users.create(email=email, name=email.split("@")[0] or email)

        code       = _generate_otp()
        expires_at = _now() + timedelta(minutes=self.cfg.OTP_TTL_MINUTES)
        async with self.db.transaction() as conn:
            await conn.execute(
                """INSERT INTO otp_codes (email, user_id, code, expires_at, used_at, created_at)
                   VALUES (?,?,?,?,NULL,?)
                   ON CONFLICT(email) DO UPDATE SET
                       user_id    = excluded.user_id,
                       code       = excluded.code,
                       expires_at = excluded.expires_at,
                       used_at    = NULL""",
                (email, user.id, code, expires_at.isoformat(), _now().isoformat()),
            )

        await self.mailer.send_otp(email, code, self.cfg.OTP_TTL_MINUTES)

    async def verify_otp(self, email: str, code: str) -> dict:
        email = email.strip().lower()
        async with self.db.transaction() as conn:
            async with conn.execute("SELECT * FROM otp_codes WHERE email = ?", (email,)) as cur:
                record = await cur.fetchone()

            if record is None:
                raise UnauthorizedError("Invalid OTP code")
            if record["used_at"]:
                raise UnauthorizedError("OTP code has already been used")
            if datetime.fromisoformat(record["expires_at"]) < _now():
                raise UnauthorizedError("OTP code has expired")
            if not hmac.compare_digest(record["code"], code):
                raise UnauthorizedError("Invalid OTP code")

            await conn.execute(
                "UPDATE otp_codes SET used_at = ? WHERE email = ?", (_now().isoformat(), email)
            )
            user_id = record["user_id"]

        return self._session(await self.users.require(user_id))

    # ─── Profile + daily bonus ────────────────

    async def profile(self, user_id: int) -> User:
        await self.users.require(user_id)

        today = _utc_day_start()
        bonus = self._daily_bonus()
        tx    = None
        # claim + credit commit together; a failed credit leaves the day unclaimed
        async with self.db.transaction() as conn:
            # only one concurrent caller can match
            cur = await conn.execute(
                """UPDATE users SET last_daily_login = ?, updated_at = ?
                   WHERE id = ? AND (last_daily_login IS NULL OR last_daily_login < ?)""",
                (_now().isoformat(), _now().isoformat(), user_id, today.isoformat()),
            )
            if cur.rowcount == 1 and bonus:
                tx = await self.wallet.credit_in(
                    conn,
                    user_id,
                    self.cfg.DAILY_LOGIN_CURRENCY,
                    bonus,
                    "Daily login bonus",
                    f"daily_login_{today.date().isoformat()}",
                    DAILY_LOGIN_SERVICE,
                )

        if tx is not None:
            self.wallet.credited(tx)
            logger.info(f"Daily login bonus: user={user_id} +{bonus} {self.cfg.DAILY_LOGIN_CURRENCY}")
        return await self.users.require(user_id)

    def _daily_bonus(self) -> int:
        """Configured bonus amount, or 0 when the bonus is switched off."""
        if self.cfg.DAILY_LOGIN_BONUS <= 0:
            return 0
        if self.cfg.DAILY_LOGIN_CURRENCY not in self.cfg.ALLOWED_CURRENCIES:
            logger.warning(f"Daily bonus currency '{self.cfg.DAILY_LOGIN_CURRENCY}' is not allowed, skipping")
            return 0
        self.wallet.check_amount(self.cfg.DAILY_LOGIN_BONUS)
        return self.cfg.DAILY_LOGIN_BONUS

    # ─── Sign-In with Ethereum ────────────────

    async def siwe_nonce(self) -> str:
        nonce = secrets.token_hex(16)
        await self.store.set(f"siwe:nonce:{nonce}", "1", self.cfg.SIWE_NONCE_TTL_S)
        return nonce

    async def siwe_verify(self, message: str, signature: str) -> dict:
        msg = siwe.parse_message(message)
        if msg.domain not in self.cfg.SIWE_DOMAINS:
            raise UnauthorizedError(f"Invalid domain: {msg.domain}")
        if msg.chain_id != self.cfg.SIWE_CHAIN_ID:
            raise UnauthorizedError(f"Invalid chain ID: {msg.chain_id}")
        if not msg.is_current():
            raise UnauthorizedError("SIWE message expired")

        signer = siwe.recover_signer(message, signature)
        if signer.lower() != msg.address.lower():
            logger.warning(f"SIWE signer mismatch: claimed={msg.address} recovered={signer}")
            raise UnauthorizedError("Invalid signature")

        # one-time: only a correctly signed message burns the nonce
        if await self.store.pop(f"siwe:nonce:{msg.nonce}") is None:
            raise UnauthorizedError("Invalid or expired nonce")

        return self._session(await self._wallet_user(msg.address.lower()))

    async def _wallet_user(self, address: str) -> User:
        user = await self.users.get_by_wallet(address)
        if user is not None:
            return user
        try:
            user = await self.users.create(
                email=f"{address}@wallet.local", name=f"User {address[:8]}", wallet_address=address
            )
        except ConflictError:
            # a concurrent sign-in created it first
            user = await self.users.get_by_wallet(address)
            if user is None:
                raise
        else:
            logger.info(f"New wallet user {user.id}")
        return user

    # ─── Google OAuth ─────────────────────────

    def _check_redirect(self, redirect_url: Optional[str]):
        if not redirect_url:
            return
        host = urlparse(redirect_url).hostname
        allowed = {urlparse(o).hostname or o for o in (*self.cfg.CORS_ORIGINS, self.cfg.FRONTEND_URL)}
        if not host or not any(host == d or host.endswith(f".{d}") for d in allowed if d):
            raise BadRequestError("Redirect URL domain not allowed")

    async def google_auth_url(self, redirect_url: Optional[str] = None, link_user_id: Optional[int] = None) -> str:
        if not self.cfg.google_ready:
            raise BadRequestError("Google OAuth not configured")
        self._check_redirect(redirect_url)

        state = secrets.token_hex(32)
        await self.store.set(
            f"oauth:state:{state}",
            json.dumps({"userId": link_user_id, "redirectUrl": redirect_url}),
            OAUTH_STATE_TTL_S,
        )
        return GOOGLE_AUTH_URL + "?" + urlencode({
            "client_id":     self.cfg.GOOGLE_CLIENT_ID,
            "redirect_uri":  self.cfg.GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope":         "openid email profile",
            "state":         state,
            "access_type":   "offline",
            "prompt":        "select_account",
        })

    async def consume_state(self, state: str) -> dict:
        """One-time: the state is deleted as it is read."""
        raw = await self.store.pop(f"oauth:state:{state}")
        if raw is None:
            raise UnauthorizedError("Invalid or expired OAuth state")
        return json.loads(raw)

    async def fetch_google_profile(self, code: str) -> dict:
        """Exchange the code, then read {id, email, name, picture}."""
        async with httpx.AsyncClient(timeout=10.0) as client:
            token_res = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "code":          code,
                    "client_id":     self.cfg.GOOGLE_CLIENT_ID,
                    "client_secret": self.cfg.GOOGLE_CLIENT_SECRET,
                    "redirect_uri":  self.cfg.GOOGLE_REDIRECT_URI,
                    "grant_type":    "authorization_code",
                },
            )
            token_data = token_res.json()
            if "error" in token_data or "access_token" not in token_data:
                raise UnauthorizedError(
                    f"Google error: {token_data.get('error_description', 'OAuth failed')}"
                )

            userinfo_res = await client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {token_data['access_token']}"},
            )
            userinfo = userinfo_res.json()

        if not userinfo.get("id"):
            raise UnauthorizedError("Invalid Google token payload")
        return userinfo

    async def google_callback(self, code: str, state: str) -> Tuple[User, Optional[str]]:
        state_data = await self.consume_state(state)
        try:
            profile = await self.fetch_google_profile(code)
        except httpx.HTTPError as e:
            logger.error(f"Google exchange failed: {e!r}")
            raise UnauthorizedError("Google authentication failed")

        if state_data.get("userId"):
            user = await self.link_social(int(state_data["userId"]), "google", profile)
        else:
            user = await self.find_or_create_social("google", profile)
        return user, state_data.get("redirectUrl")

    # ─── Social accounts ──────────────────────

    async def _social(self, provider: str, provider_id: str) -> Optional[SocialAccount]:
        async with self.db.connect() as conn:
            async with conn.execute(
                "SELECT * FROM social_accounts WHERE provider = ? AND provider_id = ?",
                (provider, provider_id),
            ) as cur:
                row = await cur.fetchone()
        return SocialAccount.from_row(row) if row else None

    async def _insert_social(self, user_id: int, provider: str, profile: dict):
        async with self.db.transaction() as conn:
            await conn.execute(
                """INSERT INTO social_accounts
                   (user_id, provider, provider_id, email, name, avatar, created_at)
                   VALUES (?,?,?,?,?,?,?)""",
                (user_id, provider, str(profile["id"]), profile.get("email"),
                 profile.get("name"), profile.get("picture"), _now().isoformat()),
            )

    async def find_or_create_social(self, provider: str, profile: dict) -> User:
        """Existing link → its user; else user by email; else a new user. Then link."""
        account = await self._social(provider, str(profile["id"]))
        if account is not None:
            return await self.users.require(account.user_id)

        email = (profile.get("email") or f"{profile['id']}@{provider}.local").lower()
        user  = await self.users.get_by_email(email)
        if user is None:
            user = await self.users.create(email=email, name=profile.get("name"))
            logger.info(f"New {provider} user {user.id}")

        await self._insert_social(user.id, provider, profile)
        return user

    async def link_social(self, user_id: int, provider: str, profile: dict) -> User:
        user    = await self.users.require(user_id)
        account = await self._social(provider, str(profile["id"]))
        if account is not None:
            if account.user_id != user_id:
                raise ConflictError(f"This {provider} account is already linked to another user")
            return user
        await self._insert_social(user_id, provider, profile)
        logger.info(f"Linked {provider} account to user {user_id}")
        return user

    async def list_social(self, user_id: int) -> List[SocialAccount]:
        async with self.db.connect() as conn:
            async with conn.execute(
                "SELECT * FROM social_accounts WHERE user_id = ? ORDER BY id", (user_id,)
            ) as cur:
                rows = await cur.fetchall()
        return [SocialAccount.from_row(r) for r in rows]

    async def unlink_social(self, user_id: int, provider: str):
        async with self.db.transaction() as conn:
            cur = await conn.execute(
                "DELETE FROM social_accounts WHERE user_id = ? AND provider = ?", (user_id, provider)
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"No linked {provider} account")
        logger.info(f"Unlinked {provider} account from user {user_id}")


# ─────────────────────────────────────────────
# Request models
# ─────────────────────────────────────────────
class RegisterRequest(BaseModel):
    email:    EmailStr
    password: str = Field(min_length=8, max_length=128)
    name:     str = Field(min_length=1, max_length=100)

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        if not PASSWORD_RULE.match(v):
            raise ValueError(
                "Password must contain at least one uppercase letter, one lowercase "
                "letter, one number, and one special character"
            )
        return v


class LoginRequest(BaseModel):
    email:    EmailStr
    password: str = Field(min_length=1)


class SendOtpRequest(BaseModel):
    email: EmailStr


class VerifyOtpRequest(BaseModel):
    email: EmailStr
    code:  str = Field(pattern=r"^\d{6}$")


class SiweVerifyRequest(BaseModel):
    message:   str = Field(min_length=1, max_length=4096)
    signature: str = Field(pattern=r"^0x[a-fA-F0-9]{130}$")


# ─────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def _session_response(request: Request, result: dict, message: str, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=ok(result, message))
    set_session_cookie(resp, result["token"], request.app.state.cfg)
    return resp


@router.post("/register")
async def register(body: RegisterRequest, request: Request, auth: AuthService = Depends(get_auth_service)):
    result = await auth.register(body.email, body.password, body.name)
    return _session_response(request, result, "User registered successfully", 201)


@router.post("/login")
async def login(body: LoginRequest, request: Request, auth: AuthService = Depends(get_auth_service)):
    result = await auth.login(body.email, body.password)
    return _session_response(request, result, "Login successful")


@router.post("/logout")
async def logout(response: Response):
    clear_session_cookie(response)
    return ok(None, "Logged out")


@router.post("/send-otp")
async def send_otp(body: SendOtpRequest, auth: AuthService = Depends(get_auth_service)):
    await auth.send_otp(body.email)
    return ok(None, "OTP sent successfully")


@router.post("/verify-otp")
async def verify_otp(body: VerifyOtpRequest, request: Request, auth: AuthService = Depends(get_auth_service)):
    result = await auth.verify_otp(body.email, body.code)
    return _session_response(request, result, "OTP verified successfully")


@router.get("/siwe/nonce")
async def siwe_nonce(auth: AuthService = Depends(get_auth_service)):
    return ok({"nonce": await auth.siwe_nonce()}, "Nonce generated")


@router.post("/siwe/verify")
async def siwe_verify(body: SiweVerifyRequest, request: Request, auth: AuthService = Depends(get_auth_service)):
    result = await auth.siwe_verify(body.message, body.signature)
    return _session_response(request, result, "SIWE authentication successful")


@router.get("/profile")
async def profile(user_id: int = Depends(get_current_user), auth: AuthService = Depends(get_auth_service)):
    user = await auth.profile(user_id)
    return ok({"user": user.public()}, "Profile retrieved successfully")


@router.get("/.well-known/jwks.json")
async def jwks(request: Request):
    return request.app.state.signer.jwks()


@router.get("/google/url")
async def google_url(redirectUrl: Optional[str] = None, auth: AuthService = Depends(get_auth_service)):
    return ok({"authUrl": await auth.google_auth_url(redirectUrl)}, "Google auth URL generated")


@router.get("/link/google/url")
async def google_link_url(
    redirectUrl: Optional[str] = None,
    user_id: int = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
):
    url = await auth.google_auth_url(redirectUrl, link_user_id=user_id)
    return ok({"authUrl": url}, "Google link URL generated")


@router.get("/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    auth: AuthService = Depends(get_auth_service),
):
    """Always ends in a redirect to the frontend: ?token=... or ?error=oauth_failed."""
    cfg: Config = request.app.state.cfg
    try:
        if error:
            raise UnauthorizedError(f"Google OAuth error: {error_description or 'OAuth authentication failed'}")
        if not code or not state:
            raise UnauthorizedError("Missing required OAuth parameters")
        user, redirect_url = await auth.google_callback(code, state)
    except AppError as e:
        logger.warning(f"Google callback failed: {e.message}")
        return RedirectResponse(
            _with_query(cfg.FRONTEND_URL, error="oauth_failed", message=e.message), status_code=302
        )

    token = auth.signer.make_jwt(user.id, user.email)
    resp  = RedirectResponse(_with_query(redirect_url or cfg.FRONTEND_URL, token=token), status_code=302)
    set_session_cookie(resp, token, cfg)
    return resp


@router.get("/social")
async def social_accounts(user_id: int = Depends(get_current_user), auth: AuthService = Depends(get_auth_service)):
    accounts = await auth.list_social(user_id)
    return ok({"accounts": [a.public() for a in accounts]}, "Social accounts retrieved successfully")


@router.delete("/social/{provider}")
async def unlink_social(
    provider: str,
    user_id: int = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
):
    await auth.unlink_social(user_id, provider)
    return ok(None, f"{provider} account unlinked")
