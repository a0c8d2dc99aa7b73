"""
AuthLedger — mailer.py
─────────────────────────────────────────────────────────────────
OTP email delivery via Resend.

No RESEND_API_KEY → the code is logged in development, refused elsewhere.
Delivery failure → logged; raised as 500 outside development.
─────────────────────────────────────────────────────────────────
"""

import logging
from typing import Optional

import httpx

from authledger.core.errors import InternalError

logger = logging.getLogger("authledger.mailer")

RESEND_URL = "https://api.resend.com/emails"


def _otp_html(code: str, ttl_minutes: int) -> str:
    return f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2>Your Login Code</h2>
  <p>Your OTP code is:</p>
  <div style="font-size: 24px; font-weight: bold; color: #007bff; padding: 20px;
              background-color: #f8f9fa; border-radius: 8px; text-align: center; margin: 20px 0;">
    {code}
  </div>
  <p>This code is valid for {ttl_minutes} minutes.</p>
  <p>If you didn't request this code, please ignore this email.</p>
</div>
"""


class Mailer:
    def __init__(
        self,
        api_key: str,
        email_from: str,
        is_dev: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key    = api_key
        self.email_from = email_from
        self.is_dev     = is_dev
        self._client    = client

    async def send_otp(self, email: str, code: str, ttl_minutes: int):
        if not self.api_key:
            if self.is_dev:
                logger.info(f"[DEV] OTP code for {email}: {code}")
                return
            logger.error("RESEND_API_KEY is not set, cannot send OTP email")
            raise InternalError("Email delivery not configured")

        try:
            if self._client is not None:
                resp = await self._post(self._client, email, code, ttl_minutes)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    resp = await self._post(client, email, code, ttl_minutes)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send OTP email to {email}: {e!r}")
            if self.is_dev:
                logger.info(f"[DEV] OTP code for {email}: {code} (email sending failed)")
                return
            raise InternalError("Failed to send verification email")

        logger.info(f"OTP email sent to {email}")

    async def _post(self, client: httpx.AsyncClient, email: str, code: str, ttl_minutes: int):
        return await client.post(
            RESEND_URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "from":    self.email_from,
                "to":      [email],
                "subject": "Your Login Code",
                "text":    f"Your OTP code is: {code}. This code is valid for {ttl_minutes} minutes.",
                "html":    _otp_html(code, ttl_minutes),
            },
        )
