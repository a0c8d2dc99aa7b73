"""
AuthLedger — referral_code.py
─────────────────────────────────────────────────────────────────
Referral codes are a pure function of the user id, never stored.

    encode(2)        → "R0002"
    encode(1000000)  → "R4C92"
    decode("R0002")  → 2

Format: "R" + base62(user_id), left-padded with "0" to 4 symbols.
Alphabet: 0-9 A-Z a-z (62 symbols, case-sensitive).
─────────────────────────────────────────────────────────────────
"""

import string

from authledger.core.database import SQLITE_MAX_INT
from authledger.core.errors import InvalidReferralCodeError

ALPHABET  = string.digits + string.ascii_uppercase + string.ascii_lowercase
BASE      = len(ALPHABET)
PREFIX    = "R"
MIN_WIDTH = 4

_INDEX = {ch: i for i, ch in enumerate(ALPHABET)}


def encode(user_id: int) -> str:
    # ids are autoincrement from 1; 0 would encode to all padding
    if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id < 1:
        raise InvalidReferralCodeError(f"InvalidFormat: user id must be a positive integer, got {user_id!r}")

    digits = []
    n = user_id
    while n:
        n, rem = divmod(n, BASE)
        digits.append(ALPHABET[rem])
    return PREFIX + "".join(reversed(digits)).rjust(MIN_WIDTH, ALPHABET[0])


def decode(code: str) -> int:
    if not isinstance(code, str) or not code.startswith(PREFIX):
        raise InvalidReferralCodeError("InvalidFormat: referral code must start with 'R'")

    body = code[len(PREFIX):]
    if not body:
        raise InvalidReferralCodeError("InvalidFormat: referral code has no digits")

    result = 0
    for ch in body:
        value = _INDEX.get(ch)
        if value is None:
            raise InvalidReferralCodeError(f"InvalidCharacter: {ch!r} is not a referral code symbol")
        result = result * BASE + value

    if result == 0 or result > SQLITE_MAX_INT:
        raise InvalidReferralCodeError("InvalidFormat: referral code does not name a user")
    return result
