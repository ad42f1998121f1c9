import hashlib
import hmac

import httpx
import pytest

from database import get_db
from main import app
from utils.cod_settlement import process_cod_order_delivery
from utils.commission_ledger import create_pending_commissions
from utils.security import get_current_user
from utils.transactions import UnitOfWork
from utils.wallet_service import credit_wallet


def _sign(order_id, payment_id, secret="rzp_test_secret"):
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _stub_gateway(monkeypatch, gateway_order_id, sent=None):
    def fake_post(path, payload):
        if sent is not None:
            sent.update(payload)
        return {"id": gateway_order_id, "currency": "INR"}

    monkeypatch.setattr("utils.razorpay._post", fake_post)


@pytest.fixture
def acting(db):
    """Holds the id of the user the next request is authenticated as."""
    state = {"user_id": None}

    async def current_user():
        return await db.users.find_one({"_id": state["user_id"]})

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_user] = current_user
    yield state
    app.dependency_overrides.clear()


@pytest.fixture
async def client(acting):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ── orders ─────────────────────────────


class TestOrderRoutes:
    async def test_breakdown_envelope(self, client, acting, market):
        acting["user_id"] = await market.admin()
        agent = await market.agent()
        order_id, seller = await market.simple_order(agent_id=agent)

        res = await client.get(f"/api/orders/{order_id}/breakdown")

        assert res.status_code == 200
        body = res.json()
        assert body["success"] is True
        assert body["data"]["total_admin_earning"] == 70.0
        assert body["data"]["seller_earnings"] == {str(seller): 270.0}

    async def test_ledger_errors_become_envelopes(self, client, acting, market):
        acting["user_id"] = await market.admin()
        order_id, _ = await market.simple_order(status="Shipped")

        res = await client.post(f"/api/orders/system/{order_id}/distribute")

        assert res.status_code == 400
        assert res.json()["success"] is False

    async def test_unknown_order_is_404(self, client, acting, market):
        acting["user_id"] = await market.admin()

        res = await client.get("/api/orders/65a000000000000000000000/breakdown")

        assert res.status_code == 404

    async def test_sellers_cannot_drive_the_lifecycle(self, client, acting, market):
        order_id, seller = await market.simple_order()
        acting["user_id"] = seller

        res = await client.post(f"/api/orders/system/{order_id}/commissions")

        assert res.status_code == 403

    async def test_paid_hook_creates_commissions(self, client, acting, db, market):
        acting["user_id"] = await market.admin()
        order_id, seller = await market.simple_order()

        res = await client.post(f"/api/orders/system/{order_id}/commissions")

        assert res.status_code == 200
        assert len(res.json()["data"]["commission_ids"]) == 1
        assert (await market.user(seller))["balance"] == 270.0


# ── parties ─────────────────────────────


class TestPartyRoutes:
    async def test_seller_wallet(self, client, acting, db, market):
        order_id, seller = await market.simple_order()
        await create_pending_commissions(db, order_id)
        acting["user_id"] = seller

        res = await client.get("/api/seller/wallet")

        body = res.json()
        assert body["data"]["balance"] == 270.0
        assert body["data"]["transactions"][0]["entry_type"] == "SALE_PROCEEDS"
        assert body["pagination"]["total"] == 1

    async def test_seller_withdraw_is_idempotent(self, client, acting, db, market):
        seller = await market.seller()
        await credit_wallet(UnitOfWork(db), seller, "SELLER", 500, "Sale proceeds")
        acting["user_id"] = seller
        payload = {"amount": 200, "payment_method": "UPI"}
        headers = {"Idempotency-Key": "wd-1"}

        first = await client.post("/api/seller/withdraw", json=payload, headers=headers)
        second = await client.post("/api/seller/withdraw", json=payload, headers=headers)

        assert first.status_code == 201
        assert second.json() == first.json()
        assert await db.withdraw_requests.count_documents({}) == 1
        assert (await market.user(seller))["balance"] == 300.0

    async def test_database_failure_is_a_500_envelope(self, client, acting, db, broken_journal_db, market):
        seller = await market.seller(balance=500.0)
        acting["user_id"] = seller
        app.dependency_overrides[get_db] = lambda: broken_journal_db

        res = await client.post("/api/seller/withdraw", json={"amount": 200, "payment_method": "UPI"})

        assert res.status_code == 500
        body = res.json()
        assert body["success"] is False
        assert body["message"].startswith("Ledger write failed")
        assert (await market.user(seller))["balance"] == 500.0
        assert await db.wallet_transactions.count_documents({}) == 0

    async def test_agent_balance(self, client, acting, db, market):
        agent = await market.agent()
        order_id, _ = await market.simple_order(agent_id=agent, payment_method="COD")
        await process_cod_order_delivery(db, order_id)
        acting["user_id"] = agent

        res = await client.get("/api/delivery/wallet/balance")

        assert res.json()["data"] == {
            "balance": 15.0,
            "pending_admin_payout": 325.0,
            "cash_collected": 340.0,
            "unallocated_remittance": 0.0,
        }


class TestRemittanceRoutes:
    async def test_verified_payment_settles_sellers(self, client, acting, db, market, monkeypatch):
        _stub_gateway(monkeypatch, "order_A1")
        agent = await market.agent()
        order_id, seller = await market.simple_order(agent_id=agent, payment_method="COD")
        await process_cod_order_delivery(db, order_id)
        acting["user_id"] = agent
        await client.post("/api/delivery/wallet/admin-payout/create", json={"amount": 325})
        payload = {
            "razorpay_order_id": "order_A1",
            "razorpay_payment_id": "pay_A1",
            "razorpay_signature": _sign("order_A1", "pay_A1"),
        }

        res = await client.post("/api/delivery/wallet/admin-payout/verify", json=payload)
        again = await client.post("/api/delivery/wallet/admin-payout/verify", json=payload)

        assert res.status_code == 200
        data = res.json()["data"]
        assert data["processed_count"] == 1
        assert data["payment_reference"] == "PAYOUT-pay_A1"
        assert again.json() == res.json()
        assert (await market.user(seller))["balance"] == 270.0
        assert await db.cod_remittances.count_documents({}) == 1
        checkout = await db.cod_remittance_checkouts.find_one({"razorpay_order_id": "order_A1"})
        assert checkout["status"] == "paid"
        assert checkout["razorpay_payment_id"] == "pay_A1"

    async def test_settled_amount_comes_from_the_checkout(self, client, acting, db, market, monkeypatch):
        _stub_gateway(monkeypatch, "order_R1")
        agent = await market.agent()
        order_id, seller = await market.simple_order(agent_id=agent, payment_method="COD")
        await process_cod_order_delivery(db, order_id)
        acting["user_id"] = agent
        await client.post("/api/delivery/wallet/admin-payout/create", json={"amount": 1})

        res = await client.post("/api/delivery/wallet/admin-payout/verify", json={
            "amount": 325,
            "razorpay_order_id": "order_R1",
            "razorpay_payment_id": "pay_R1",
            "razorpay_signature": _sign("order_R1", "pay_R1"),
        })

        assert res.status_code == 200
        data = res.json()["data"]
        assert data["amount_paid"] == 1.0
        assert data["processed_count"] == 0
        assert data["pending_admin_payout"] == 324.0
        assert (await market.user(seller))["balance"] == 0
        assert (await market.user(agent))["pending_admin_payout"] == 324.0

    async def test_another_agents_checkout_is_rejected(self, client, acting, db, market, monkeypatch):
        _stub_gateway(monkeypatch, "order_B1")
        owner = await market.agent()
        other = await market.agent()
        for agent in (owner, other):
            order_id, _ = await market.simple_order(agent_id=agent, payment_method="COD")
            await process_cod_order_delivery(db, order_id)
        acting["user_id"] = owner
        await client.post("/api/delivery/wallet/admin-payout/create", json={"amount": 325})
        acting["user_id"] = other

        res = await client.post("/api/delivery/wallet/admin-payout/verify", json={
            "razorpay_order_id": "order_B1",
            "razorpay_payment_id": "pay_B1",
            "razorpay_signature": _sign("order_B1", "pay_B1"),
        })

        assert res.status_code == 400
        assert res.json() == {"success": False, "message": "Razorpay order id mismatch"}
        assert await db.cod_remittances.count_documents({}) == 0
        assert (await market.user(other))["pending_admin_payout"] == 325.0

    async def test_unknown_checkout_is_404(self, client, acting, db, market):
        acting["user_id"] = await market.agent()

        res = await client.post("/api/delivery/wallet/admin-payout/verify", json={
            "razorpay_order_id": "order_X1",
            "razorpay_payment_id": "pay_X1",
            "razorpay_signature": _sign("order_X1", "pay_X1"),
        })

        assert res.status_code == 404
        assert res.json()["success"] is False

    async def test_checkout_is_opened_in_paise(self, client, acting, db, market, monkeypatch):
        sent = {}
        _stub_gateway(monkeypatch, "order_Z9", sent)
        agent = await market.agent()
        order_id, _ = await market.simple_order(agent_id=agent, payment_method="COD")
        await process_cod_order_delivery(db, order_id)
        acting["user_id"] = agent

        res = await client.post("/api/delivery/wallet/admin-payout/create", json={"amount": 300.35})
        too_much = await client.post("/api/delivery/wallet/admin-payout/create", json={"amount": 400})

        assert res.json()["data"]["razorpay_order_id"] == "order_Z9"
        assert sent["amount"] == 30035
        assert sent["notes"]["delivery_boy_id"] == str(agent)
        assert too_much.status_code == 400
        checkout = await db.cod_remittance_checkouts.find_one({"razorpay_order_id": "order_Z9"})
        assert checkout["delivery_boy_id"] == agent
        assert checkout["amount"] == 300.35

    async def test_bad_signature(self, client, acting, db, market):
        agent = await market.agent()
        acting["user_id"] = agent

        res = await client.post("/api/delivery/wallet/admin-payout/verify", json={
            "razorpay_order_id": "order_A2",
            "razorpay_payment_id": "pay_A2",
            "razorpay_signature": "forged",
        })

        assert res.status_code == 400
        assert res.json() == {"success": False, "message": "Invalid payment signature"}
        assert await db.cod_remittances.count_documents({}) == 0


# ── admin ─────────────────────────────


class TestAdminRoutes:
    async def test_dashboard(self, client, acting, db, market):
        acting["user_id"] = await market.admin()
        order_id, _ = await market.simple_order()
        await create_pending_commissions(db, order_id)

        res = await client.get("/api/admin/finance/dashboard")

        assert res.status_code == 200
        assert res.json()["data"]["seller_pending_payouts"] == 270.0

    async def test_set_commission_is_audited(self, client, acting, db, market):
        admin = await market.admin()
        seller = await market.seller()
        acting["user_id"] = admin

        res = await client.post("/api/admin/set-commission", json={
            "party_id": str(seller),
            "party_type": "SELLER",
            "commission_rate": 7.5,
        })

        assert res.status_code == 200
        assert (await market.user(seller))["commission_rate"] == 7.5
        audit = await db.audit_logs.find_one({"action": "COMMISSION_RATE_SET"})
        assert audit["actor_id"] == str(admin)

    async def test_withdrawal_decision(self, client, acting, db, market):
        admin = await market.admin()
        seller = await market.seller()
        await credit_wallet(UnitOfWork(db), seller, "SELLER", 500, "Sale proceeds")
        acting["user_id"] = seller
        created = await client.post("/api/seller/withdraw", json={"amount": 150, "payment_method": "UPI"})
        request_id = created.json()["data"]["_id"]
        acting["user_id"] = admin

        missing_ref = await client.post(
            f"/api/admin/withdrawals/{request_id}/decision", json={"action": "complete"},
        )
        done = await client.post(
            f"/api/admin/withdrawals/{request_id}/decision",
            json={"action": "complete", "transaction_reference": "UTR-42"},
        )

        assert missing_ref.status_code == 400
        assert done.json()["data"]["status"] == "Completed"
        assert await db.audit_logs.count_documents({"action": "WITHDRAWAL_COMPLETE"}) == 1

    async def test_admin_only(self, client, acting, market):
        acting["user_id"] = await market.agent()

        res = await client.get("/api/admin/finance/dashboard")

        assert res.status_code == 403

    async def test_commission_detail(self, client, acting, db, market):
        acting["user_id"] = await market.admin()
        order_id, _ = await market.simple_order()
        created = await create_pending_commissions(db, order_id)

        found = await client.get(f"/api/admin/commissions/{created.commission_ids[0]}")
        missing = await client.get("/api/admin/commissions/65a000000000000000000000")

        assert found.json()["data"]["status"] == "Paid"
        assert missing.status_code == 404
        assert missing.json()["success"] is False
