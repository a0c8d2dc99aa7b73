"""
Sign-In with Ethereum: message parsing, nonce lifecycle, signer
recovery, wallet user creation.
"""

from datetime import datetime, timedelta, timezone

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from authledger.core.errors import UnauthorizedError
from authledger.siwe import parse_message, recover_signer


def _message(address: str, nonce: str, domain: str = "localhost:3000", chain_id: int = 1,
             expires_in: timedelta = timedelta(minutes=10)) -> str:
    now = datetime.now(timezone.utc)
    return (
        f"{domain} wants you to sign in with your Ethereum account:\n"
        f"{address}\n"
        "\n"
        "Sign in to AuthLedger\n"
        "\n"
        f"URI: http://{domain}\n"
        "Version: 1\n"
        f"Chain ID: {chain_id}\n"
        f"Nonce: {nonce}\n"
        f"Issued At: {now.strftime('%Y-%m-%dT%H:%M:%SZ')}\n"
        f"Expiration Time: {(now + expires_in).strftime('%Y-%m-%dT%H:%M:%SZ')}"
    )


def _sign(account, message: str) -> str:
    signed = account.sign_message(encode_defunct(text=message))
    return "0x" + bytes(signed.signature).hex()


@pytest.fixture
def account():
    return Account.create()


async def _nonce(client) -> str:
    resp = await client.get("/api/v1/auth/siwe/nonce")
    assert resp.status_code == 200
    return resp.json()["data"]["nonce"]


# ─────────────────────────────────────────────
# Parsing + recovery
# ─────────────────────────────────────────────
def test_parse_message(account):
    msg = parse_message(_message(account.address, "abcdef1234567890"))

    assert msg.domain == "localhost:3000"
    assert msg.address == account.address
    assert msg.statement == "Sign in to AuthLedger"
    assert msg.chain_id == 1
    assert msg.nonce == "abcdef1234567890"
    assert msg.is_current()


@pytest.mark.parametrize(
    "text",
    [
        "",
        "hello world",
        "localhost:3000 wants you to sign in with your Ethereum account:\nnot-an-address\n",
        "localhost:3000 wants you to sign in with your Ethereum account:\n0x" + "a" * 40 + "\n\nURI: x\n",
    ],
)
def test_parse_rejects_malformed(text):
    with pytest.raises(UnauthorizedError, match="Invalid SIWE message format"):
        parse_message(text)


def test_parse_rejects_bad_timestamp(account):
    text = _message(account.address, "abcdef1234567890").replace("Issued At: ", "Issued At: yesterday")
    with pytest.raises(UnauthorizedError, match="Invalid SIWE message format"):
        parse_message(text)


def test_recover_signer(account):
    text = _message(account.address, "abcdef1234567890")
    assert recover_signer(text, _sign(account, text)) == account.address

    with pytest.raises(UnauthorizedError, match="Invalid signature"):
        recover_signer(text, "0x" + "00" * 65)


# ─────────────────────────────────────────────
# HTTP
# ─────────────────────────────────────────────
async def test_siwe_sign_in_creates_wallet_user(app, client, account):
    text = _message(account.address, await _nonce(client))

    resp = await client.post("/api/v1/auth/siwe/verify", json={"message": text, "signature": _sign(account, text)})

    assert resp.status_code == 200
    data = resp.json()["data"]
    address = account.address.lower()
    assert data["user"]["walletAddress"] == address
    assert data["user"]["email"] == f"{address}@wallet.local"
    assert data["user"]["name"] == f"User {address[:8]}"
    assert int(app.state.signer.decode_jwt(data["token"])["sub"]) == data["user"]["id"]
    assert "set-cookie" in resp.headers


async def test_siwe_returning_wallet_gets_same_user(client, account, app):
    existing = await app.state.users.create(
        email="mixed@example.com", name="Mixed", wallet_address=account.address
    )

    text = _message(account.address, await _nonce(client))
    resp = await client.post("/api/v1/auth/siwe/verify", json={"message": text, "signature": _sign(account, text)})

    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["id"] == existing.id


async def test_siwe_nonce_is_single_use(client, account):
    text = _message(account.address, await _nonce(client))
    body = {"message": text, "signature": _sign(account, text)}

    assert (await client.post("/api/v1/auth/siwe/verify", json=body)).status_code == 200
    replay = await client.post("/api/v1/auth/siwe/verify", json=body)

    assert replay.status_code == 401
    assert replay.json()["detail"] == "Invalid or expired nonce"


async def test_siwe_unknown_nonce(client, account):
    text = _message(account.address, "neverissued1234")
    resp = await client.post("/api/v1/auth/siwe/verify", json={"message": text, "signature": _sign(account, text)})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid or expired nonce"


async def test_siwe_signature_from_another_wallet(client, account):
    other = Account.create()
    text  = _message(account.address, await _nonce(client))

    resp = await client.post("/api/v1/auth/siwe/verify", json={"message": text, "signature": _sign(other, text)})

    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid signature"


async def test_siwe_failed_signature_keeps_nonce(client, account):
    nonce = await _nonce(client)
    text  = _message(account.address, nonce)

    bad = await client.post(
        "/api/v1/auth/siwe/verify", json={"message": text, "signature": _sign(Account.create(), text)}
    )
    good = await client.post("/api/v1/auth/siwe/verify", json={"message": text, "signature": _sign(account, text)})

    assert bad.status_code == 401
    assert good.status_code == 200


@pytest.mark.parametrize(
    "overrides, detail",
    [
        ({"domain": "evil.example"}, "Invalid domain: evil.example"),
        ({"chain_id": 137}, "Invalid chain ID: 137"),
        ({"expires_in": timedelta(minutes=-1)}, "SIWE message expired"),
    ],
)
async def test_siwe_rejects_foreign_messages(client, account, overrides, detail):
    text = _message(account.address, await _nonce(client), **overrides)
    resp = await client.post("/api/v1/auth/siwe/verify", json={"message": text, "signature": _sign(account, text)})
    assert resp.status_code == 401
    assert resp.json()["detail"] == detail


async def test_siwe_signature_shape_is_validated(client, account):
    text = _message(account.address, await _nonce(client))
    resp = await client.post("/api/v1/auth/siwe/verify", json={"message": text, "signature": "0x1234"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"
