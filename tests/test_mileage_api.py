from datetime import datetime, timedelta, timezone

from conftest import INTERNAL_HEADERS, bearer
from services.mileage_service.engine import MileageEngine
from services.mileage_service.repository import MileageRepository


async def accrue(client, customer_id, amount, seller_id=None):
    payload = {"customer_id": customer_id, "amount": amount}
    if seller_id:
        payload["seller_id"] = seller_id
    resp = await client.post("/mileage/accrue", json=payload, headers=INTERNAL_HEADERS)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def test_accrue_requires_internal_key(client):
    resp = await client.post("/mileage/accrue", json={"customer_id": "cust-1", "amount": 10})
    assert resp.status_code == 403


async def test_accrue_and_spend_round_trip(client):
    credit = await accrue(client, "cust-1", 100)
    ledger_id = credit["mileage_ledger_id"]

    resp = await client.post(
        "/mileage/spend",
        json={"customer_id": "cust-1", "amount": 100, "reference_order_id": 9},
        headers=bearer("cust-1"),
    )
    assert resp.status_code == 201, resp.text
    assert resp.json()["amount"] == -100

    ledger = (await client.get(f"/mileage/ledgers/{ledger_id}", headers=bearer("cust-1"))).json()
    assert ledger["usable_mileage"] == 0
    assert ledger["total_accrued"] == 100
    assert ledger["spent_mileage"] == 100

    txns = await client.get(f"/mileage/ledgers/{ledger_id}/transactions", headers=bearer("cust-1"))
    assert [t["type"] for t in txns.json()] == ["accrue", "spend"]

    only_spends = await client.get(
        f"/mileage/ledgers/{ledger_id}/transactions",
        params={"type": "spend"},
        headers=bearer("cust-1"),
    )
    assert len(only_spends.json()) == 1


async def test_overspend_returns_insufficient_balance(client):
    credit = await accrue(client, "cust-1", 10)

    resp = await client.post(
        "/mileage/spend",
        json={"customer_id": "cust-1", "amount": 11},
        headers=bearer("cust-1"),
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "insufficient_balance"

    ledger = await client.get(
        f"/mileage/ledgers/{credit['mileage_ledger_id']}", headers=bearer("cust-1")
    )
    assert ledger.json()["usable_mileage"] == 10


async def test_spend_for_another_customer_is_forbidden(client):
    await accrue(client, "cust-1", 10)
    resp = await client.post(
        "/mileage/spend",
        json={"customer_id": "cust-1", "amount": 1},
        headers=bearer("cust-2"),
    )
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"


async def test_reading_another_customers_ledger_is_forbidden(client):
    credit = await accrue(client, "cust-1", 10)
    resp = await client.get(
        f"/mileage/ledgers/{credit['mileage_ledger_id']}", headers=bearer("cust-2")
    )
    assert resp.status_code == 403
    assert "usable" not in resp.text


async def test_double_delete_and_deleted_ledger_stays_readable(client):
    credit = await accrue(client, "cust-1", 10)
    ledger_id = credit["mileage_ledger_id"]

    first = await client.delete(f"/mileage/ledgers/{ledger_id}", headers=bearer("cust-1"))
    assert first.status_code == 200
    assert first.json()["deleted_at"] is not None

    second = await client.delete(f"/mileage/ledgers/{ledger_id}", headers=bearer("cust-1"))
    assert second.status_code == 409
    assert second.json()["error"] == "already_deleted"

    resp = await client.get(f"/mileage/ledgers/{ledger_id}", headers=bearer("cust-1"))
    assert resp.status_code == 200
    assert resp.json()["deleted_at"] is not None

    gone = await client.post(
        "/mileage/accrue",
        json={"customer_id": "cust-1", "amount": 5},
        headers=INTERNAL_HEADERS,
    )
    assert gone.status_code == 410
    assert gone.json()["error"] == "gone"


async def test_search_filters_are_strict_and_anded(client, session_factory):
    now = datetime.now(timezone.utc)
    engine = MileageEngine(expiry_days=30)
    async with session_factory() as db:
        # marked expired while its horizon is still in the future
        flagged = await engine.accrue(db, "cust-1", "seller-a", 10, now=now)
        # active ledger with a future horizon
        await engine.accrue(db, "cust-1", "seller-b", 10, now=now)
        # expired ledger without any horizon
        drained = await engine.accrue(db, "cust-1", "seller-c", 10, now=now - timedelta(days=40))
        await engine.expire(db, drained.mileage_ledger_id, 10, now=now)
        ledger = await MileageRepository.get_ledger(db, flagged.mileage_ledger_id)
        ledger.status = "expired"
        await db.commit()

    admin = bearer("admin-1", role="admin")
    resp = await client.get(
        "/mileage/ledgers",
        params={"status": "expired", "expired_after": now.isoformat()},
        headers=admin,
    )
    assert resp.status_code == 200
    assert [l["seller_id"] for l in resp.json()] == ["seller-a"]

    active_future = await client.get(
        "/mileage/ledgers",
        params={"status": "active", "expired_after": now.isoformat()},
        headers=admin,
    )
    assert {l["seller_id"] for l in active_future.json()} == {"seller-b"}

    horizon = now + timedelta(days=30)
    boundary = await client.get(
        "/mileage/ledgers",
        params={"expired_after": horizon.isoformat()},
        headers=admin,
    )
    assert boundary.json() == []

    expired = await client.get("/mileage/ledgers", params={"status": "expired"}, headers=admin)
    assert [l["seller_id"] for l in expired.json()] == ["seller-a", "seller-c"]


async def test_customer_search_is_scoped_to_themselves(client):
    await accrue(client, "cust-1", 10)
    await accrue(client, "cust-2", 10)

    own = await client.get("/mileage/ledgers", headers=bearer("cust-1"))
    assert [l["customer_id"] for l in own.json()] == ["cust-1"]

    other = await client.get(
        "/mileage/ledgers", params={"customer_id": "cust-2"}, headers=bearer("cust-1")
    )
    assert other.status_code == 403


async def test_admin_opens_ledger_once(client):
    admin = bearer("admin-1", role="admin")
    payload = {"customer_id": "cust-9", "seller_id": "seller-a", "initial_balance": 25}

    resp = await client.post("/mileage/ledgers", json=payload, headers=admin)
    assert resp.status_code == 201, resp.text
    assert resp.json()["usable_mileage"] == 25

    dup = await client.post("/mileage/ledgers", json=payload, headers=admin)
    assert dup.status_code == 409
    assert dup.json()["error"] == "conflict"

    not_admin = await client.post(
        "/mileage/ledgers", json={"customer_id": "cust-9"}, headers=bearer("cust-9")
    )
    assert not_admin.status_code == 403


async def test_frozen_ledger_rejects_spend(client):
    credit = await accrue(client, "cust-1", 10)
    ledger_id = credit["mileage_ledger_id"]

    resp = await client.patch(
        f"/mileage/ledgers/{ledger_id}/status",
        json={"status": "frozen"},
        headers=bearer("admin-1", role="admin"),
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "frozen"

    spend = await client.post(
        "/mileage/spend",
        json={"customer_id": "cust-1", "amount": 1},
        headers=bearer("cust-1"),
    )
    assert spend.status_code == 409
    assert spend.json()["error"] == "ledger_frozen"


async def test_expire_endpoint_is_idempotent(client):
    credit = await accrue(client, "cust-1", 50)
    ledger_id = credit["mileage_ledger_id"]
    body = {"amount": 20, "batch_id": "manual-1"}

    first = await client.post(f"/mileage/ledgers/{ledger_id}/expire", json=body, headers=INTERNAL_HEADERS)
    again = await client.post(f"/mileage/ledgers/{ledger_id}/expire", json=body, headers=INTERNAL_HEADERS)
    assert first.status_code == 200
    assert again.json()["id"] == first.json()["id"]

    zero = await client.post(
        f"/mileage/ledgers/{ledger_id}/expire", json={"amount": 0}, headers=INTERNAL_HEADERS
    )
    assert zero.json() is None

    ledger = await client.get(f"/mileage/ledgers/{ledger_id}", headers=bearer("cust-1"))
    assert ledger.json()["usable_mileage"] == 30
    assert ledger.json()["expired_mileage"] == 20


async def test_sweep_endpoint(client):
    await accrue(client, "cust-1", 50)
    later = datetime.now(timezone.utc) + timedelta(days=400)

    resp = await client.post(
        "/mileage/sweep", params={"now": later.isoformat()}, headers=INTERNAL_HEADERS
    )
    assert resp.status_code == 200
    assert list(resp.json()["expired"].values()) == [50]
