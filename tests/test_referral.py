"""
Referral graph: one-time referrer, acyclic chains, counts, and the
service batch endpoints.
"""

import pytest

from conftest import service_headers

from authledger.core.errors import BadRequestError, ConflictError, NotFoundError
from authledger.referral import creates_cycle


@pytest.fixture
def referral(app):
    return app.state.referral


async def _force_referrer(app, user_id: int, referrer_id: int):
    """Write referrer_id directly, bypassing every check."""
    async with app.state.db.transaction() as conn:
        await conn.execute("UPDATE users SET referrer_id = ? WHERE id = ?", (referrer_id, user_id))


# ─────────────────────────────────────────────
# set_referrer
# ─────────────────────────────────────────────
async def test_set_referrer_by_code(referral, make_user):
    users = [await make_user() for _ in range(5)]
    assert [u.id for u in users] == [1, 2, 3, 4, 5]

    updated = await referral.set_referrer(5, "R0002")

    assert updated.referrer_id == 2
    assert updated.public()["referrerId"] == 2
    assert [u.id for u in await referral.get_referrals(2)] == [5]


async def test_referrer_is_one_time(referral, make_user):
    a, b, c = await make_user(), await make_user(), await make_user()
    await referral.set_referrer(c.id, referral.get_referral_code(a.id))

    with pytest.raises(ConflictError, match="Referrer already set"):
        await referral.set_referrer(c.id, referral.get_referral_code(b.id))


async def test_cycle_is_rejected(referral, make_user):
    a, b, c, d = [await make_user() for _ in range(4)]
    await referral.set_referrer(b.id, referral.get_referral_code(a.id))
    await referral.set_referrer(c.id, referral.get_referral_code(b.id))

    with pytest.raises(BadRequestError, match="Circular reference detected"):
        await referral.set_referrer(a.id, referral.get_referral_code(c.id))

    updated = await referral.set_referrer(d.id, referral.get_referral_code(c.id))
    assert updated.referrer_id == c.id


async def test_self_referral_is_rejected(referral, make_user):
    a = await make_user()
    with pytest.raises(BadRequestError, match="Circular reference detected"):
        await referral.set_referrer(a.id, referral.get_referral_code(a.id))


async def test_invalid_code(referral, make_user):
    a = await make_user()
    for code in ("hello", "R00-1", "R0000"):
        with pytest.raises(BadRequestError, match="Invalid referral code"):
            await referral.set_referrer(a.id, code)


async def test_unknown_referrer(referral, make_user):
    a = await make_user()
    with pytest.raises(NotFoundError, match="Referrer not found"):
        await referral.set_referrer(a.id, referral.get_referral_code(999))


async def test_unknown_user(referral, make_user):
    a = await make_user()
    with pytest.raises(NotFoundError, match="User not found"):
        await referral.set_referrer(999, referral.get_referral_code(a.id))


async def test_walk_terminates_on_preexisting_cycle(app, make_user):
    x, y, z = [await make_user() for _ in range(3)]
    await _force_referrer(app, x.id, y.id)
    await _force_referrer(app, y.id, x.id)

    async with app.state.db.connect() as conn:
        assert await creates_cycle(conn, z.id, x.id) is False
        assert await creates_cycle(conn, x.id, y.id) is True


# ─────────────────────────────────────────────
# Referrals + counts
# ─────────────────────────────────────────────
async def test_referrals_and_counts(app, referral, make_user):
    top = await make_user()
    kids = [await make_user(referrer_id=top.id) for _ in range(3)]
    await app.state.users.stamp_daily_login(kids[1].id)

    listed = await referral.get_referrals(top.id)
    assert [u.id for u in listed] == [k.id for k in kids]

    assert await referral.get_referrals_count(top.id) == (3, 1)
    assert await referral.get_referrals_count(kids[0].id) == (0, 0)


# ─────────────────────────────────────────────
# HTTP: user routes
# ─────────────────────────────────────────────
async def test_referral_routes(client, make_user, user_headers):
    top, me = await make_user(), await make_user()

    resp = await client.get("/api/v1/users/referral-code", headers=user_headers(top))
    code = resp.json()["data"]["referral_code"]
    assert code == "R0001"

    resp = await client.post("/api/v1/users/referrer", json={"referralCode": code}, headers=user_headers(me))
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["referrerId"] == top.id

    resp = await client.post("/api/v1/users/referrer", json={"referralCode": code}, headers=user_headers(me))
    assert resp.status_code == 409
    assert resp.json()["code"] == "CONFLICT"

    resp = await client.get("/api/v1/users/referrals", headers=user_headers(top))
    assert [u["id"] for u in resp.json()["data"]["referrals"]] == [me.id]

    resp = await client.post("/api/v1/users/update-daily-login", headers=user_headers(me))
    assert resp.json()["data"]["user"]["lastDailyLogin"] is not None

    resp = await client.get("/api/v1/users/referrals-count", headers=user_headers(top))
    assert resp.json()["data"] == {"total": 1, "active": 1}


async def test_referral_routes_need_token(client):
    resp = await client.get("/api/v1/users/referral-code")
    assert resp.status_code == 401


# ─────────────────────────────────────────────
# HTTP: service batch routes
# ─────────────────────────────────────────────
async def test_batch_create_users(client, make_user):
    top = await make_user(email="top@example.com")

    resp = await client.post(
        "/api/v1/internal/users",
        json={"users": [
            {"email": "new1@example.com", "name": "New One", "referrerId": top.id},
            {"email": "TOP@example.com",  "name": "Dup"},
            {"email": "new2@example.com", "name": "Orphan", "referrerId": 999},
            {"email": "new3@example.com", "name": "Wallet", "walletAddress": "0xabc"},
            {"email": "new4@example.com", "name": "Wallet again", "walletAddress": "0xabc"},
        ]},
        headers=service_headers(),
    )

    assert resp.status_code == 201
    data = resp.json()["data"]
    assert [u["email"] for u in data["created"]] == ["new1@example.com", "new3@example.com"]
    assert data["created"][0]["referrerId"] == top.id
    assert "password_hash" not in data["created"][0]
    assert data["failed"] == [
        {"index": 1, "email": "TOP@example.com",  "reason": "User with this email already exists"},
        {"index": 2, "email": "new2@example.com", "reason": "Referrer not found"},
        {"index": 4, "email": "new4@example.com", "reason": "Wallet address already in use"},
    ]


async def test_batch_update_referrers(app, client, make_user):
    a, b, c, d = [await make_user() for _ in range(4)]
    e = await make_user(referrer_id=a.id)

    resp = await client.post(
        "/api/v1/internal/users/referrers",
        json={"updates": [
            {"refereeUserId": b.id, "referrerUserId": a.id},
            {"refereeUserId": c.id, "referrerUserId": b.id},
            {"refereeUserId": a.id, "referrerUserId": c.id},    # closes a→b→c
            {"refereeUserId": 999,  "referrerUserId": a.id},
            {"refereeUserId": d.id, "referrerUserId": 998},
            {"refereeUserId": e.id, "referrerUserId": a.id},    # unchanged
            {"refereeUserId": e.id, "referrerUserId": d.id},
        ]},
        headers=service_headers(),
    )

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["updated"] == [
        {"refereeUserId": b.id, "referrerUserId": a.id},
        {"refereeUserId": c.id, "referrerUserId": b.id},
        {"refereeUserId": e.id, "referrerUserId": a.id},
    ]
    assert [f["reason"] for f in data["failed"]] == [
        "Circular reference detected",
        "Referee not found",
        "Referrer not found",
        "Referrer already set",
    ]
    assert (await app.state.users.get(c.id)).referrer_id == b.id
    assert (await app.state.users.get(a.id)).referrer_id is None


async def test_batch_routes_check_permissions(client):
    body = {"updates": [{"refereeUserId": 1, "referrerUserId": 2}]}
    resp = await client.post("/api/v1/internal/users/referrers", json=body, headers=service_headers("reader-service"))
    assert resp.status_code == 403
    assert resp.json()["code"] == "FORBIDDEN"


async def test_batch_create_validates_body(client):
    resp = await client.post(
        "/api/v1/internal/users", json={"users": [{"email": "not-an-email", "name": "x"}]}, headers=service_headers()
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"


async def test_ids_past_64_bits_are_rejected(client, make_user, user_headers):
    me = await make_user()

    resp = await client.post("/api/v1/users/referrer", json={"referralCode": "R" + "z" * 12}, headers=user_headers(me))
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid referral code"

    resp = await client.post(
        "/api/v1/internal/users/referrers",
        json={"updates": [{"refereeUserId": me.id, "referrerUserId": 10**20}]},
        headers=service_headers(),
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"

    resp = await client.post(
        "/api/v1/internal/users",
        json={"users": [{"email": "big@example.com", "name": "Big", "referrerId": 10**20}]},
        headers=service_headers(),
    )
    assert resp.status_code == 400
