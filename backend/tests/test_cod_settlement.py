"""
Deferred settlement of cash-on-delivery orders.

Covers:
- delivery: agent paid at once, sellers deferred, liability recorded
- idempotent delivery processing
- FIFO remittance matching with a partially covered order
- remittance verification, replay and carry-forward of the remainder
- reversal of an order still awaiting remittance
"""

import pytest

from utils.cod_settlement import (
    process_cod_order_delivery,
    process_pending_cod_payouts,
    verify_cod_remittance,
)
from utils.commission_ledger import (
    create_pending_commissions,
    distribute_commissions,
    reverse_commissions,
)
from utils.errors import AgentNotAssigned, InvalidPaymentMethod, RemittanceExceedsPending
from utils.transactions import UnitOfWork


async def _cod_order(market, agent, seller=None, subtotal=300.0, total=None):
    order_id, seller = await market.simple_order(
        subtotal=subtotal,
        agent_id=agent,
        seller_id=seller,
        payment_method="COD",
        total=total,
    )
    return order_id, seller


async def _seller_statuses(db, order_id):
    rows = await db.commissions.find({"order_id": order_id, "type": "SELLER"}).to_list(None)
    return [c["status"] for c in rows]


class TestCODDelivery:
    async def test_agent_paid_and_liability_recorded(self, db, market):
        agent = await market.agent()
        order_id, seller = await _cod_order(market, agent, total=360)

        await process_cod_order_delivery(db, order_id)

        a = await market.user(agent)
        assert a["balance"] == 15.0
        assert a["pending_admin_payout"] == 345.0
        assert a["cash_collected"] == 360.0
        assert (await market.user(seller))["balance"] == 0.0

        platform = await market.platform()
        assert platform["pending_from_delivery_boy"] == 345.0
        assert platform["delivery_boy_pending_payouts"] == 15.0
        assert platform["total_admin_earning"] == 0.0

        assert await _seller_statuses(db, order_id) == ["Pending"]
        delivery = await db.commissions.find_one({"order_id": order_id, "type": "DELIVERY_BOY"})
        assert delivery["status"] == "Paid"

        order = await db.orders.find_one({"_id": order_id})
        assert order["settlement"]["status"] == "awaiting_remittance"

    async def test_processing_twice_is_a_noop(self, db, market):
        agent = await market.agent()
        order_id, _ = await _cod_order(market, agent, total=360)

        await process_cod_order_delivery(db, order_id)
        second = await process_cod_order_delivery(db, order_id)

        assert second.message == "COD delivery already processed"
        earnings = await db.wallet_transactions.count_documents({
            "party_id": agent,
            "entry_type": "COD_DELIVERY_EARNING",
        })
        assert earnings == 1
        assert await db.commissions.count_documents({"order_id": order_id}) == 2
        assert (await market.user(agent))["pending_admin_payout"] == 345.0

    async def test_reuses_commissions_created_at_payment(self, db, market):
        agent = await market.agent()
        order_id, _ = await _cod_order(market, agent)
        await create_pending_commissions(db, order_id)

        await process_cod_order_delivery(db, order_id)

        assert await _seller_statuses(db, order_id) == ["Pending"]

    async def test_distribute_delegates_for_cod(self, db, market):
        agent = await market.agent()
        order_id, seller = await _cod_order(market, agent)

        await distribute_commissions(db, order_id)

        assert (await market.user(agent))["balance"] == 15.0
        assert (await market.user(seller))["balance"] == 0.0
        assert await _seller_statuses(db, order_id) == ["Pending"]

    async def test_requires_agent(self, db, market):
        order_id, _ = await market.simple_order(payment_method="COD")
        with pytest.raises(AgentNotAssigned):
            await process_cod_order_delivery(db, order_id)

    async def test_rejects_prepaid(self, db, market):
        agent = await market.agent()
        order_id, _ = await market.simple_order(agent_id=agent)
        with pytest.raises(InvalidPaymentMethod):
            await process_cod_order_delivery(db, order_id)


class TestFIFOMatching:
    async def test_first_order_cleared_second_left_pending(self, db, market):
        agent = await market.agent()
        first, seller_1 = await _cod_order(market, agent, subtotal=300)   # owes 340 - 15 = 325
        second, seller_2 = await _cod_order(market, agent, subtotal=200)  # owes 240 - 10 = 230
        await process_cod_order_delivery(db, first)
        await process_cod_order_delivery(db, second)

        result = await process_pending_cod_payouts(UnitOfWork(db), agent, 325 + 115)

        assert result.processed_count == 1
        assert result.processed_orders == [str(first)]
        assert result.remaining_amount == 115.0
        assert await _seller_statuses(db, first) == ["Paid"]
        assert await _seller_statuses(db, second) == ["Pending"]
        assert (await market.user(seller_1))["balance"] == 270.0
        assert (await market.user(seller_2))["balance"] == 0.0

        platform = await market.platform()
        assert platform["total_admin_earning"] == 70.0
        assert platform["seller_pending_payouts"] == 270.0

    async def test_short_pool_pays_nobody(self, db, market):
        agent = await market.agent()
        order_id, seller = await _cod_order(market, agent)
        await process_cod_order_delivery(db, order_id)

        result = await process_pending_cod_payouts(UnitOfWork(db), agent, 100)

        assert result.processed_count == 0
        assert result.remaining_amount == 100.0
        assert (await market.user(seller))["balance"] == 0.0

    async def test_within_a_paisa_clears_the_order(self, db, market):
        agent = await market.agent()
        order_id, _ = await _cod_order(market, agent)
        await process_cod_order_delivery(db, order_id)

        result = await process_pending_cod_payouts(UnitOfWork(db), agent, 324.99)

        assert result.processed_count == 1
        assert result.remaining_amount == 0.0


class TestRemittanceVerification:
    async def test_full_remittance_settles_everything(self, db, market):
        agent = await market.agent()
        first, seller_1 = await _cod_order(market, agent, subtotal=300)
        second, seller_2 = await _cod_order(market, agent, subtotal=200)
        await process_cod_order_delivery(db, first)
        await process_cod_order_delivery(db, second)

        receipt = await verify_cod_remittance(db, agent, 555, "PAYOUT-pay_1")

        assert receipt.processed_count == 2
        assert receipt.pending_admin_payout == 0.0
        assert receipt.unallocated_remittance == 0.0
        assert receipt.platform_balance == 555.0

        assert (await market.user(seller_1))["balance"] == 270.0
        assert (await market.user(seller_2))["balance"] == 180.0

        platform = await market.platform()
        assert platform["total_platform_earning"] == 555.0
        assert platform["pending_from_delivery_boy"] == 0.0
        assert platform["total_admin_earning"] == 70.0 + 60.0

        assert await db.cod_remittances.count_documents({}) == 1

    async def test_replay_returns_stored_receipt(self, db, market):
        agent = await market.agent()
        order_id, seller = await _cod_order(market, agent)
        await process_cod_order_delivery(db, order_id)

        first = await verify_cod_remittance(db, agent, 325, "PAYOUT-pay_2")
        again = await verify_cod_remittance(db, agent, 325, "PAYOUT-pay_2")

        assert again.model_dump(exclude={"created_at"}) == first.model_dump(exclude={"created_at"})
        assert (await market.user(seller))["balance"] == 270.0
        assert (await market.platform())["total_platform_earning"] == 325.0

    async def test_rejects_more_than_pending(self, db, market):
        agent = await market.agent()
        order_id, _ = await _cod_order(market, agent)
        await process_cod_order_delivery(db, order_id)

        with pytest.raises(RemittanceExceedsPending):
            await verify_cod_remittance(db, agent, 400, "PAYOUT-pay_3")

    async def test_partial_payment_carries_forward(self, db, market):
        agent = await market.agent()
        first, _ = await _cod_order(market, agent, subtotal=300)
        second, seller_2 = await _cod_order(market, agent, subtotal=200)
        await process_cod_order_delivery(db, first)
        await process_cod_order_delivery(db, second)

        receipt = await verify_cod_remittance(db, agent, 440, "PAYOUT-pay_4")
        assert receipt.processed_count == 1
        assert receipt.unallocated_remittance == 115.0
        assert receipt.pending_admin_payout == 115.0

        receipt = await verify_cod_remittance(db, agent, 115, "PAYOUT-pay_5")
        assert receipt.processed_count == 1
        assert receipt.unallocated_remittance == 0.0
        assert receipt.pending_admin_payout == 0.0
        assert (await market.user(seller_2))["balance"] == 180.0


class TestReversalBeforeRemittance:
    async def test_agent_no_longer_owes_the_cash(self, db, market):
        agent = await market.agent()
        order_id, seller = await _cod_order(market, agent, total=360)
        await process_cod_order_delivery(db, order_id)

        await reverse_commissions(db, order_id)

        a = await market.user(agent)
        assert a["balance"] == 0.0
        assert a["pending_admin_payout"] == 0.0
        assert a["cash_collected"] == 0.0
        assert (await market.user(seller))["balance"] == 0.0

        platform = await market.platform()
        assert platform["pending_from_delivery_boy"] == 0.0
        assert platform["delivery_boy_pending_payouts"] == 0.0

        result = await process_pending_cod_payouts(UnitOfWork(db), agent, 345)
        assert result.processed_count == 0
