import pytest
import pytest_asyncio
from decimal import Decimal
from httpx import AsyncClient, ASGITransport
from celf.config import settings
from celf.core.deps import get_wallet_guard
from celf.core.security import create_access_token
from celf.database import get_db
from celf.main import app


@pytest_asyncio.fixture
async def client(session_factory, guard, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_EMAILS", "admin@celf.io")

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_wallet_guard] = lambda: guard
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def auth(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_wallet_requires_token(client):
    r = await client.get("/api/wallet")
    assert r.status_code in (401, 403)

    r = await client.get("/api/wallet", headers={"Authorization": "Bearer garbage"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_get_wallet(client, make_user, fund):
    alice = await make_user("alice@celf.io")
    await fund(alice.id, sendable=2, non_sendable=3)

    r = await client.get("/api/wallet", headers=auth(alice))

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["address"].startswith("celf") and len(body["address"]) == 44
    assert Decimal(body["balance"]["sendable"]) == Decimal("2")
    assert Decimal(body["balance"]["total"]) == Decimal("5")
    assert body["is_locked"] is False


@pytest.mark.asyncio
async def test_send_and_list_transactions(client, make_user, fund):
    alice = await make_user("alice@celf.io")
    bob = await make_user("bob@celf.io")
    await fund(alice.id, sendable=5)

    r = await client.post("/api/wallet/send", json={"to": "bob@celf.io", "amount": "1.5"}, headers=auth(alice))
    assert r.status_code == 200, r.text
    assert Decimal(r.json()["balance"]["sendable"]) == Decimal("3.5")
    send_id = r.json()["transaction_id"]

    r = await client.get("/api/wallet/transactions", params={"type": "receive"}, headers=auth(bob))
    assert r.status_code == 200
    assert r.json()["total"] == 1

    r = await client.get(f"/api/wallet/transactions/{send_id}", headers=auth(alice))
    assert r.status_code == 200
    assert r.json()["type"] == "send"

    r = await client.get(f"/api/wallet/transactions/{send_id}", headers=auth(bob))
    assert r.status_code == 404
    assert r.json()["code"] == "transaction_not_found"


@pytest.mark.asyncio
async def test_send_error_mapping(client, make_user, fund):
    alice = await make_user("alice@celf.io")
    await make_user("bob@celf.io")
    await fund(alice.id, sendable=1)

    r = await client.post("/api/wallet/send", json={"to": "bob@celf.io", "amount": "2"}, headers=auth(alice))
    assert r.status_code == 409
    assert r.json()["code"] == "insufficient_funds"

    r = await client.post("/api/wallet/send", json={"to": "alice@celf.io", "amount": "1"}, headers=auth(alice))
    assert r.status_code == 400
    assert r.json()["code"] == "self_transfer"

    r = await client.post("/api/wallet/send", json={"to": "???", "amount": "1"}, headers=auth(alice))
    assert r.status_code == 400
    assert r.json()["code"] == "malformed_address"

    r = await client.post("/api/wallet/send", json={"to": "bob@celf.io", "amount": "-1"}, headers=auth(alice))
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_exchange_with_idempotency_key(client, make_user, fund, wallet_of):
    alice = await make_user("alice@celf.io")
    await fund(alice.id, non_sendable=5)
    headers = {**auth(alice), "Idempotency-Key": "abc-1"}

    first = await client.post("/api/wallet/exchange", json={"amount": "2"}, headers=headers)
    second = await client.post("/api/wallet/exchange", json={"amount": "2"}, headers=headers)
    reused = await client.post("/api/wallet/exchange", json={"amount": "3"}, headers=headers)

    assert first.status_code == 200 and second.status_code == 200
    assert first.json()["transaction_id"] == second.json()["transaction_id"]
    assert reused.status_code == 400
    assert reused.json()["code"] == "idempotency_key_reused"
    assert (await wallet_of(alice.id)).sendable_balance == Decimal("2")


@pytest.mark.asyncio
async def test_mining_endpoints(client, make_user, clock):
    alice = await make_user("alice@celf.io")

    r = await client.get("/api/mining/session", headers=auth(alice))
    assert r.status_code == 200 and r.json() is None

    r = await client.post("/api/mining/start", headers=auth(alice))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "active"

    r = await client.post("/api/mining/start", headers=auth(alice))
    assert r.status_code == 409
    assert r.json()["code"] == "already_mining"

    clock.advance(hours=3)
    r = await client.post("/api/mining/stop", json={"reported_earnings": "3"}, headers=auth(alice))
    assert r.status_code == 200, r.text
    assert Decimal(r.json()["tokens_earned"]) == Decimal("3")

    r = await client.post("/api/mining/stop", headers=auth(alice))
    assert r.status_code == 409
    assert r.json()["code"] == "not_mining"

    r = await client.get("/api/mining/stats", headers=auth(alice))
    assert r.json()["total_sessions"] == 1


@pytest.mark.asyncio
async def test_mining_rate_and_history_endpoints(client, make_user, clock):
    alice = await make_user("alice@celf.io")
    bob = await make_user("bob@celf.io")

    r = await client.get("/api/mining/rate", headers=auth(alice))
    assert r.status_code == 200, r.text
    assert Decimal(r.json()["mining_rate"]) == Decimal(settings.MINING_DEFAULT_RATE)
    assert r.json()["maintenance_mode"] is False

    await client.post("/api/mining/start", headers=auth(alice))
    clock.advance(hours=1)
    headers = {**auth(alice), "Idempotency-Key": "stop-1"}
    first = await client.post("/api/mining/stop", headers=headers)
    assert first.status_code == 200, first.text
    retry = await client.post("/api/mining/stop", headers=headers)
    assert retry.status_code == 200, retry.text
    assert retry.json() == first.json()

    r = await client.get("/api/mining/sessions", headers=auth(alice))
    assert r.status_code == 200
    assert r.json()["total"] == 1
    session_id = r.json()["items"][0]["id"]

    r = await client.get(f"/api/mining/sessions/{session_id}", headers=auth(alice))
    assert r.status_code == 200
    assert r.json()["status"] == "completed"
    assert r.json()["transaction_id"] == first.json()["transaction_id"]

    r = await client.get(f"/api/mining/sessions/{session_id}", headers=auth(bob))
    assert r.status_code == 404
    assert r.json()["code"] == "mining_session_not_found"

    r = await client.get("/api/mining/sessions", params={"page_size": 500}, headers=auth(alice))
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_admin_provisioning_and_task_flow(client, make_user):
    admin = await make_user("admin@celf.io")
    alice = await make_user("alice@celf.io")

    r = await client.post("/api/admin/users", json={"email": "dave@celf.io"}, headers=auth(alice))
    assert r.status_code == 403

    r = await client.post(
        "/api/admin/users",
        json={"email": "dave@celf.io", "referral_code": alice.referral_code},
        headers=auth(admin),
    )
    assert r.status_code == 200, r.text
    assert r.json()["referred_by"] == alice.id
    dave_id = r.json()["user_id"]

    r = await client.post(f"/api/rewards/referrals/{dave_id}/claim", headers=auth(alice))
    assert r.status_code == 200
    assert r.json()["status"] == "created"

    r = await client.get("/api/rewards/referrals", headers=auth(alice))
    assert [ref["status"] for ref in r.json()] == ["rewarded"]

    r = await client.post(
        "/api/admin/tasks", json={"task_key": "join", "title": "Join channel", "reward": "1"}, headers=auth(admin),
    )
    assert r.status_code == 200, r.text

    r = await client.post("/api/rewards/tasks/join/claim", headers=auth(alice))
    assert r.status_code == 409
    assert r.json()["code"] == "reward_not_eligible"

    r = await client.post("/api/admin/tasks/join/complete", json={"user_id": alice.id}, headers=auth(admin))
    assert r.status_code == 200

    r = await client.post("/api/rewards/tasks/join/claim", headers=auth(alice))
    assert r.json()["status"] == "created"
    r = await client.post("/api/rewards/tasks/join/claim", headers=auth(alice))
    assert r.json()["status"] == "already_claimed"


@pytest.mark.asyncio
async def test_admin_lock_and_reconcile(client, make_user, fund):
    admin = await make_user("admin@celf.io")
    alice = await make_user("alice@celf.io")
    bob = await make_user("bob@celf.io")
    await fund(alice.id, sendable=3)

    r = await client.post(f"/api/admin/wallets/{alice.id}/lock", json={"reason": "review"}, headers=auth(admin))
    assert r.status_code == 200
    assert r.json()["is_locked"] is True

    r = await client.post("/api/wallet/send", json={"to": str(bob.id), "amount": "1"}, headers=auth(alice))
    assert r.status_code == 409
    assert r.json()["code"] == "wallet_locked"

    r = await client.post(f"/api/admin/wallets/{alice.id}/unlock", headers=auth(admin))
    assert r.json()["is_locked"] is False

    r = await client.get(f"/api/admin/wallets/{alice.id}/reconcile", headers=auth(admin))
    assert r.status_code == 200
    assert r.json()["ok"] is True

    r = await client.get("/api/admin/wallets/9999/reconcile", headers=auth(admin))
    assert r.status_code == 404
    assert r.json()["code"] == "wallet_not_found"
