import os

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/ledger_test")
os.environ["MONGO_TRANSACTIONS_ENABLED"] = "false"
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")

from datetime import datetime

import pytest
from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import PyMongoError

from config.constants import PLATFORM_SETTINGS_ID


class Marketplace:
    """Seeds the collections the ledger reads: parties, catalogue, orders."""

    def __init__(self, db):
        self.db = db
        self._order_seq = 0

    # ---------- parties ----------

    async def seller(self, commission_rate=None, balance=0.0, name="Acme Traders"):
        result = await self.db.users.insert_one({
            "role": "seller",
            "name": name,
            "commission_rate": commission_rate,
            "balance": balance,
        })
        return result.inserted_id

    async def agent(self, commission_rate=None):
        result = await self.db.users.insert_one({
            "role": "delivery",
            "name": "Ravi",
            "commission_rate": commission_rate,
            "balance": 0.0,
            "pending_admin_payout": 0.0,
            "cash_collected": 0.0,
            "unallocated_remittance": 0.0,
        })
        return result.inserted_id

    async def admin(self):
        result = await self.db.users.insert_one({"role": "admin", "name": "Ops"})
        return result.inserted_id

    # ---------- catalogue ----------

    async def category(self, commission_rate=None, collection="categories"):
        result = await self.db[collection].insert_one({"commission_rate": commission_rate})
        return result.inserted_id

    async def product(self, seller_id, category_id=None, subcategory_id=None, sub_subcategory_id=None):
        result = await self.db.products.insert_one({
            "seller_id": seller_id,
            "category_id": category_id,
            "subcategory_id": subcategory_id,
            "sub_subcategory_id": sub_subcategory_id,
        })
        return result.inserted_id

    async def settings(self, **fields):
        await self.db.settings.update_one(
            {"_id": PLATFORM_SETTINGS_ID},
            {"$set": fields},
            upsert=True,
        )

    # ---------- orders ----------

    async def order(
        self,
        lines,
        *,
        payment_method="Prepaid",
        status="Delivered",
        platform_fee=10.0,
        shipping=30.0,
        agent_id=None,
        distance_km=None,
        total=None,
    ):
        """`lines` is a list of (seller_id, product_id, line_total)."""
        self._order_seq += 1
        subtotal = round(sum(t for _, _, t in lines), 2)
        result = await self.db.orders.insert_one({
            "order_number": f"ORD-{self._order_seq:04d}",
            "payment_method": payment_method,
            "status": status,
            "subtotal": subtotal,
            "platform_fee": platform_fee,
            "shipping": shipping,
            "total": total if total is not None else round(subtotal + platform_fee + shipping, 2),
            "delivery_boy_id": agent_id,
            "delivery_distance_km": distance_km,
            "created_at": datetime.utcnow(),
        })
        order_id = result.inserted_id

        for seller_id, product_id, line_total in lines:
            await self.db.order_items.insert_one({
                "order_id": order_id,
                "product_id": product_id,
                "seller_id": seller_id,
                "quantity": 1,
                "price": line_total,
                "total": line_total,
            })
        return order_id

    async def simple_order(self, *, subtotal=300.0, agent_id=None, seller_id=None, **kwargs):
        seller_id = seller_id or await self.seller()
        product_id = await self.product(seller_id)
        order_id = await self.order([(seller_id, product_id, subtotal)], agent_id=agent_id, **kwargs)
        return order_id, seller_id

    # ---------- reads ----------

    async def user(self, user_id):
        return await self.db.users.find_one({"_id": user_id})

    async def platform(self):
        return await self.db.platform_wallet.find_one({"_id": "platform"})


class BrokenJournal:
    """Delegates to the real database, but every wallet_transactions insert fails."""

    def __init__(self, db):
        self._db = db

    def __getattr__(self, name):
        collection = getattr(self._db, name)
        if name != "wallet_transactions":
            return collection
        return _FailingInserts(collection)


class _FailingInserts:
    def __init__(self, collection):
        self._collection = collection

    def __getattr__(self, name):
        return getattr(self._collection, name)

    async def insert_one(self, *args, **kwargs):
        raise PyMongoError("write concern error")


@pytest.fixture
def db():
    return AsyncMongoMockClient()["ledger_test"]


@pytest.fixture
def market(db):
    return Marketplace(db)


@pytest.fixture
def broken_journal_db(db):
    return BrokenJournal(db)
