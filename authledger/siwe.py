"""
AuthLedger — siwe.py
─────────────────────────────────────────────────────────────────
Sign-In with Ethereum (EIP-4361) message parsing + signer recovery.

A wallet signs a plain-text message of this shape:

    localhost:3000 wants you to sign in with your Ethereum account:
    0xAbC...123

    Sign in to AuthLedger

    URI: http://localhost:3000
    Version: 1
    Chain ID: 1
    Nonce: 8f2c1a9e0b7d4c65
    Issued At: 2026-10-19T10:00:00Z
    Expiration Time: 2026-10-19T10:10:00Z

parse_message() turns it into a SiweMessage; recover_signer() returns
the address that produced the personal_sign signature. Domain, nonce
and chain checks live in AuthService.siwe_verify().
─────────────────────────────────────────────────────────────────
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from authledger.core.errors import UnauthorizedError

HEADER_SUFFIX = " wants you to sign in with your Ethereum account:"
ADDRESS_RE    = re.compile(r"^0x[a-fA-F0-9]{40}$")
NONCE_RE      = re.compile(r"^[a-zA-Z0-9]{8,}$")
FIELD_RE      = re.compile(
    r"^(URI|Version|Chain ID|Nonce|Issued At|Expiration Time|Not Before|Request ID): (.+)$"
)
REQUIRED      = ("URI", "Version", "Chain ID", "Nonce", "Issued At")


@dataclass
class SiweMessage:
    domain:          str
    address:         str
    statement:       Optional[str]
    uri:             str
    version:         str
    chain_id:        int
    nonce:           str
    issued_at:       datetime
    expiration_time: Optional[datetime] = None
    not_before:      Optional[datetime] = None
    request_id:      Optional[str] = None

    def is_current(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        if self.expiration_time is not None and now >= self.expiration_time:
            return False
        if self.not_before is not None and now < self.not_before:
            return False
        return True


def _timestamp(value: str) -> datetime:
    # RFC 3339; fromisoformat() only learned "Z" in 3.11
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_message(text: str) -> SiweMessage:
    """Raises UnauthorizedError("Invalid SIWE message format") on anything malformed."""
    lines = text.replace("\r\n", "\n").split("\n")
    if len(lines) < 2 or not lines[0].endswith(HEADER_SUFFIX):
        raise UnauthorizedError("Invalid SIWE message format")

    domain  = lines[0][: -len(HEADER_SUFFIX)]
    address = lines[1].strip()
    if not domain or " " in domain or not ADDRESS_RE.match(address):
        raise UnauthorizedError("Invalid SIWE message format")

    fields: Dict[str, str] = {}
    statement = []
    for line in lines[2:]:
        match = FIELD_RE.match(line)
        if match:
            fields.setdefault(match.group(1), match.group(2).strip())
        elif line.strip() and not fields and line != "Resources:":
            statement.append(line.strip())

    if any(name not in fields for name in REQUIRED):
        raise UnauthorizedError("Invalid SIWE message format")
    if fields["Version"] != "1" or not NONCE_RE.match(fields["Nonce"]):
        raise UnauthorizedError("Invalid SIWE message format")

    try:
        return SiweMessage(
            domain          = domain,
            address         = address,
            statement       = " ".join(statement) or None,
            uri             = fields["URI"],
            version         = fields["Version"],
            chain_id        = int(fields["Chain ID"]),
            nonce           = fields["Nonce"],
            issued_at       = _timestamp(fields["Issued At"]),
            expiration_time = _timestamp(fields["Expiration Time"]) if "Expiration Time" in fields else None,
            not_before      = _timestamp(fields["Not Before"]) if "Not Before" in fields else None,
            request_id      = fields.get("Request ID"),
        )
    except ValueError:
        raise UnauthorizedError("Invalid SIWE message format")


def recover_signer(text: str, signature: str) -> str:
    """Checksummed address that personal_sign'ed `text`."""
    try:
        return Account.recover_message(encode_defunct(text=text), signature=signature)
    except Exception as e:   # eth_keys raises its own BadSignature/ValidationError types
        raise UnauthorizedError("Invalid signature") from e
