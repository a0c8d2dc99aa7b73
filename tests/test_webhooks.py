import json
import logging

import httpx
import pytest

from conftest import service_headers

from authledger.core.errors import NotFoundError
from authledger.webhooks import (
    EVENT_REFERRAL_CREATED,
    EVENT_WALLET_CREDITED,
    EVENT_WALLET_DEBITED,
    SIGNATURE_HEADER,
    WebhookNotifier,
    serialize,
    sign,
    verify_signature,
)

SECRET = "whsec-test"
URLS   = ("https://hooks.one/events", "https://hooks.two/events", "https://hooks.down/events")


class Recorder:
    """MockTransport handler: keeps every request, fails on hooks.down."""

    def __init__(self):
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "hooks.down":
            raise httpx.ConnectError("connection refused", request=request)
        self.requests.append(request)
        return httpx.Response(200)

    def events(self, host: str = "hooks.one"):
        return [json.loads(r.content) for r in self.requests if r.url.host == host]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def notifier(recorder):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return WebhookNotifier(URLS, SECRET, client=client)


# ─────────────────────────────────────────────
# Signing
# ─────────────────────────────────────────────
def test_serialize_is_compact():
    body = serialize("wallet.credited", {"userId": 1, "amount": 5})
    assert body == b'{"event":"wallet.credited","data":{"userId":1,"amount":5}}'


def test_signature_round_trip():
    body = serialize("x", {"a": 1})
    signature = sign(body, SECRET)
    assert len(signature) == 64
    assert verify_signature(body, signature, SECRET)
    assert not verify_signature(body + b" ", signature, SECRET)
    assert not verify_signature(body, signature, "other-secret")
    assert not verify_signature(body, None, SECRET)


# ─────────────────────────────────────────────
# Delivery
# ─────────────────────────────────────────────
async def test_deliver_signs_exact_body_and_survives_dead_subscriber(notifier, recorder):
    await notifier.deliver("wallet.credited", {"userId": 7})

    assert len(recorder.requests) == 2
    for request in recorder.requests:
        assert request.headers["content-type"] == "application/json"
        assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], SECRET)
        assert json.loads(request.content) == {"event": "wallet.credited", "data": {"userId": 7}}

    await notifier.aclose()


async def test_non_2xx_subscriber_does_not_raise():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="nope")))
    notifier = WebhookNotifier(["https://hooks.one/x"], SECRET, client=client)

    assert await notifier._send("https://hooks.one/x", b"{}", {}) is False
    await notifier.deliver("wallet.debited", {})
    await notifier.aclose()


async def test_unsigned_when_secret_empty(recorder):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    notifier = WebhookNotifier(["https://hooks.one/x"], "", client=client)

    await notifier.deliver("x", {})

    assert SIGNATURE_HEADER not in recorder.requests[0].headers
    await notifier.aclose()


async def test_emit_without_subscribers_is_noop():
    assert WebhookNotifier((), SECRET).emit("x", {}) is None


async def test_emit_is_detached_and_drainable(notifier, recorder):
    task = notifier.emit("x", {"n": 1})
    assert task is not None

    await notifier.drain()

    assert task.done()
    assert recorder.events() == [{"event": "x", "data": {"n": 1}}]
    await notifier.aclose()


# ─────────────────────────────────────────────
# Events from the ledger + referral graph
# ─────────────────────────────────────────────
async def test_wallet_events(app, wallet, make_user, notifier, recorder):
    user = await make_user()

    credit = await wallet.credit(user.id, "points", 100, "bonus", "order_1", "order-service")
    await notifier.drain()
    await wallet.debit(user.id, "points", 40, "purchase")
    await notifier.drain()

    credited, debited = recorder.events()
    assert credited["event"] == EVENT_WALLET_CREDITED
    assert credited["data"]["userId"] == user.id
    assert credited["data"]["currency"] == "points"
    assert credited["data"]["amount"] == 100
    assert credited["data"]["transactionId"] == credit.id
    assert credited["data"]["referenceId"] == "order-service:order_1"
    assert "timestamp" in credited["data"]

    assert debited["event"] == EVENT_WALLET_DEBITED
    assert debited["data"]["amount"] == 40


async def test_failed_operation_emits_nothing(wallet, make_user, notifier, recorder):
    user = await make_user()
    with pytest.raises(NotFoundError):
        await wallet.debit(user.id, "points", 1, "nothing to take")
    await notifier.drain()
    assert recorder.requests == []


async def test_referral_event(app, make_user, notifier, recorder):
    a, b = await make_user(), await make_user()

    await app.state.referral.set_referrer(b.id, app.state.referral.get_referral_code(a.id))
    await notifier.drain()

    assert recorder.events() == [{
        "event": EVENT_REFERRAL_CREATED,
        "data": {
            "referrerId":     a.id,
            "referredUserId": b.id,
            "timestamp":      recorder.events()[0]["data"]["timestamp"],
        },
    }]


async def test_idempotent_replay_emits_once(client, make_user, notifier, recorder):
    user = await make_user()
    body = {"userId": user.id, "currency": "usdt", "amount": 5, "description": "d", "referenceId": "r"}
    headers = service_headers(idempotency_key="once")

    for _ in range(3):
        resp = await client.post("/api/v1/internal/wallet/credit", json=body, headers=headers)
        assert resp.status_code == 200
    await notifier.drain()

    assert [e["event"] for e in recorder.events()] == [EVENT_WALLET_CREDITED]


async def test_unexpected_subscriber_error_is_logged(caplog):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "hooks.bad":
            raise RuntimeError("transport blew up")
        return httpx.Response(200)

    client   = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier(["https://hooks.bad/x", "https://hooks.one/x"], SECRET, client=client)

    with caplog.at_level(logging.INFO, logger="authledger.webhooks"):
        await notifier.deliver("wallet.credited", {"userId": 1})

    assert "Webhook crashed [https://hooks.bad/x]" in caplog.text
    assert "transport blew up" in caplog.text
    assert "delivered to 1/2 subscribers" in caplog.text
    await notifier.aclose()
