import json
from datetime import timedelta

import pytest
from bson import ObjectId

import drafts
import installments
import inventory
from errors import (AuthorizationError, InsufficientStock, InvalidStateTransition, NotFoundError,
                    StoreOwnerNotFound, ValidationError)
from database import now_utc
from permissions import Actor


def rice(store, quantity=3, price=100000):
    return {"product_id": store["rice_id"], "name": "Rice", "quantity": quantity, "price": price}


def quantity(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["quantity"]


# ------------------ Draft CRUD & stock ------------------

def test_create_reserves_stock(db, store, seller):
    draft = drafts.create_draft(db, seller, [rice(store)])

    assert draft["order_id"] == 1001
    assert draft["total_sum"] == 300000
    assert draft["store_owner_id"] == store["owner_id"]
    assert draft["shop_id"] == store["shop_id"]
    assert draft["payment_method"] == "cash"
    assert quantity(db, store["rice_id"]) == 7


def test_order_numbers_increase(db, store, seller):
    first = drafts.create_draft(db, seller, [rice(store, 1)])
    second = drafts.create_draft(db, seller, [rice(store, 1)])
    assert second["order_id"] == first["order_id"] + 1


def test_insufficient_stock_changes_nothing(db, store, seller):
    items = [rice(store), {"product_id": store["tv_id"], "name": "TV", "quantity": 5, "price": 500000}]
    with pytest.raises(InsufficientStock, match="Available: 2, requested: 5"):
        drafts.create_draft(db, seller, items)

    assert quantity(db, store["rice_id"]) == 10
    assert quantity(db, store["tv_id"]) == 2
    assert db["draftorder"].count_documents({}) == 0


def test_repeated_product_is_checked_in_total(db, store, seller):
    with pytest.raises(InsufficientStock):
        drafts.create_draft(db, seller, [rice(store, 6), rice(store, 6)])
    assert quantity(db, store["rice_id"]) == 10


def test_product_outside_seller_shops(db, store, seller):
    other_shop = db["shop"].insert_one({"name": "Other", "owner_id": store["owner_id"]}).inserted_id
    pid = db["product"].insert_one({"shop_id": str(other_shop), "name": "Milk", "price": 1, "quantity": 5}).inserted_id
    with pytest.raises(NotFoundError):
        drafts.create_draft(db, seller, [{"product_id": str(pid), "name": "Milk", "quantity": 1, "price": 1}])


@pytest.mark.parametrize("products", [
    [],
    [{"product_id": "x"}],
    [{"product_id": "x", "name": "Rice", "quantity": 0, "price": 1}],
    [{"product_id": "x", "name": "Rice", "quantity": 1, "price": -5}],
])
def test_malformed_items(db, store, seller, products):
    with pytest.raises(ValidationError):
        drafts.create_draft(db, seller, products)


def test_unknown_payment_method(db, store, seller):
    with pytest.raises(ValidationError):
        drafts.create_draft(db, seller, [rice(store)], payment_method="bitcoin")


def test_seller_without_shop_cannot_create(db, store):
    lonely = Actor(id="64b7f0c2a1b2c3d4e5f60718", role="seller")
    with pytest.raises(ValidationError):
        drafts.create_draft(db, lonely, [rice(store)])


def test_update_moves_reservation(db, store, seller):
    draft = drafts.create_draft(db, seller, [rice(store)])
    updated = drafts.update_draft(db, str(draft["_id"]), seller, products=[rice(store, 5)])

    assert updated["total_sum"] == 500000
    assert quantity(db, store["rice_id"]) == 5


def test_failed_update_keeps_original_reservation(db, store, seller):
    draft = drafts.create_draft(db, seller, [rice(store)])
    with pytest.raises(InsufficientStock):
        drafts.update_draft(db, str(draft["_id"]), seller, products=[rice(store, 20)])

    assert quantity(db, store["rice_id"]) == 7
    assert db["draftorder"].find_one({"_id": draft["_id"]})["products"][0]["quantity"] == 3


def test_delete_restores_stock(db, store, seller):
    draft = drafts.create_draft(db, seller, [rice(store)])
    drafts.delete_draft(db, str(draft["_id"]), seller)

    assert quantity(db, store["rice_id"]) == 10
    assert db["draftorder"].count_documents({}) == 0


def test_other_seller_cannot_touch_draft(db, store, seller):
    draft = drafts.create_draft(db, seller, [rice(store)])
    stranger = Actor(id="64b7f0c2a1b2c3d4e5f60718", role="seller", shops=[store["shop_id"]])
    with pytest.raises(AuthorizationError):
        drafts.delete_draft(db, str(draft["_id"]), stranger)
    with pytest.raises(AuthorizationError):
        drafts.confirm_draft(db, str(draft["_id"]), stranger)
    assert quantity(db, store["rice_id"]) == 7


def test_list_only_own_drafts(db, store, seller, admin):
    drafts.create_draft(db, seller, [rice(store, 1)])
    stranger = Actor(id="64b7f0c2a1b2c3d4e5f60718", role="seller", shops=[store["shop_id"]])
    drafts.create_draft(db, stranger, [rice(store, 1)])

    assert len(drafts.list_drafts(db, seller)) == 1
    assert len(drafts.list_drafts(db, admin)) == 2


def test_agent_draft_uses_assigned_stock(db, store, admin):
    agent_id = str(db["agent"].insert_one({"full_name": "Agent", "shop_owner_id": store["owner_id"]}).inserted_id)
    inventory.assign_to_agent(db, store["rice_id"], agent_id, 4, admin.id)
    assert quantity(db, store["rice_id"]) == 6

    agent = Actor(id=agent_id, role="agent", shop_owner_id=store["owner_id"])
    draft = drafts.create_draft(db, agent, [rice(store, 4)])
    assignment = db["agentproduct"].find_one({"agent_id": agent_id})
    assert draft["inventory_pool"] == "agent"
    assert assignment["remaining_quantity"] == 0
    assert assignment["status"] == "sold"
    assert quantity(db, store["rice_id"]) == 6

    drafts.delete_draft(db, str(draft["_id"]), agent)
    assignment = db["agentproduct"].find_one({"agent_id": agent_id})
    assert assignment["remaining_quantity"] == 4
    assert assignment["status"] == "assigned"


def foreign_shop(db):
    owner_id = str(db["shopowner"].insert_one({"name": "Nok Savdo", "username": "nok", "status": "active"}).inserted_id)
    shop_id = str(db["shop"].insert_one({"name": "Nok 1", "owner_id": owner_id, "status": "active"}).inserted_id)
    return owner_id, shop_id


def test_seller_cannot_sell_for_a_foreign_store(db, store, seller):
    owner_id, shop_id = foreign_shop(db)
    for reference in (shop_id, owner_id):
        with pytest.raises(AuthorizationError):
            drafts.create_draft(db, seller, [rice(store)], store_owner=reference)
    assert quantity(db, store["rice_id"]) == 10
    assert db["draftorder"].count_documents({}) == 0


def test_update_cannot_move_draft_to_a_foreign_store(db, store, seller):
    draft = drafts.create_draft(db, seller, [rice(store)])
    _, shop_id = foreign_shop(db)
    with pytest.raises(AuthorizationError):
        drafts.update_draft(db, str(draft["_id"]), seller, store_owner=shop_id)

    assert quantity(db, store["rice_id"]) == 7
    assert db["draftorder"].find_one({"_id": draft["_id"]})["shop_id"] == store["shop_id"]


def test_owner_reference_picks_the_sellers_own_shop(db, store):
    second = str(db["shop"].insert_one({"name": "Olma 2", "owner_id": store["owner_id"]}).inserted_id)
    milk = str(db["product"].insert_one({"shop_id": second, "name": "Milk", "price": 9000, "quantity": 5}).inserted_id)
    clerk = Actor(id="64b7f0c2a1b2c3d4e5f60719", role="seller", shops=[second])

    draft = drafts.create_draft(db, clerk, [{"product_id": milk, "name": "Milk", "quantity": 2, "price": 9000}],
                                store_owner=store["owner_id"])
    assert draft["shop_id"] == second
    assert quantity(db, milk) == 3
    assert quantity(db, store["rice_id"]) == 10


def test_reservation_stays_inside_the_draft_shop(db, store):
    second = str(db["shop"].insert_one({"name": "Olma 2", "owner_id": store["owner_id"]}).inserted_id)
    both = Actor(id="64b7f0c2a1b2c3d4e5f60719", role="seller", shops=[store["shop_id"], second])
    milk = str(db["product"].insert_one({"shop_id": second, "name": "Milk", "price": 9000, "quantity": 5}).inserted_id)

    with pytest.raises(NotFoundError):
        drafts.create_draft(db, both, [{"product_id": milk, "name": "Milk", "quantity": 1, "price": 9000}],
                            store_owner=store["shop_id"])
    assert quantity(db, milk) == 5


# ------------------ Store owner resolution ------------------

def test_resolve_by_shop_id(db, store):
    assert str(drafts.resolve_store_owner(db, store["shop_id"])["_id"]) == store["shop_id"]


def test_resolve_by_owner_id(db, store):
    assert drafts.resolve_store_owner(db, store["owner_id"])["owner_id"] == store["owner_id"]


def test_resolve_falls_back_to_seller_shops(db, store):
    seller_doc = db["seller"].find_one({"username": "seller"})
    shop = drafts.resolve_store_owner(db, "64b7f0c2a1b2c3d4e5f60718", seller_doc)
    assert str(shop["_id"]) == store["shop_id"]


def test_resolve_through_shop_owner_assignment(db, store):
    seller_doc = {"shops": [], "shop_owners": [{"shop_owner": store["owner_id"], "service_areas": []}]}
    assert drafts.seller_shop_ids(db, seller_doc) == [store["shop_id"]]
    assert drafts.resolve_store_owner(db, None, seller_doc)["owner_id"] == store["owner_id"]


def test_resolve_ignores_shop_without_owner(db, store):
    orphan = str(db["shop"].insert_one({"name": "Orphan", "owner_id": None}).inserted_id)
    assert drafts.resolve_store_owner(db, orphan) is None


# ------------------ Confirmation ------------------

def test_cash_confirmation_creates_one_completed_order(db, store, seller):
    draft = drafts.create_draft(db, seller, [rice(store)])
    kind, record = drafts.confirm_draft(db, str(draft["_id"]), seller, payment_method="cash")

    assert kind == "order"
    assert record["status"] == "completed"
    assert record["completed_at"] is not None
    assert record["store_owner_id"] == store["owner_id"]
    assert db["orderhistory"].count_documents({}) == 1
    assert db["installmentpayment"].count_documents({}) == 0
    assert db["draftorder"].count_documents({}) == 0
    assert quantity(db, store["rice_id"]) == 7


def test_confirmation_without_method_is_cash(db, store, seller):
    draft = drafts.create_draft(db, seller, [rice(store)], payment_method="card")
    kind, record = drafts.confirm_draft(db, str(draft["_id"]), seller)
    assert kind == "order"
    assert record["payment_method"] == "cash"


def test_customer_and_duration_switch_to_installment(db, store, seller, customer, tomorrow):
    db["interestrate"].insert_one({"duration": 3, "interest_rate": 10, "is_active": True})
    draft = drafts.create_draft(db, seller, [{**rice(store), "quantity": 10}])
    kind, plan = drafts.confirm_draft(db, str(draft["_id"]), seller, payment_method="cash", customer=customer,
                                      installment_duration=3, start_date=tomorrow)

    assert kind == "installment"
    assert plan["customer"]["passport_series"] == "AA1234567"
    assert [p["amount"] for p in plan["payments"]] == [366667, 366667, 366666]
    assert db["installmentpayment"].count_documents({}) == 1
    assert db["orderhistory"].count_documents({}) == 0
    assert db["draftorder"].count_documents({}) == 0
    assert quantity(db, store["rice_id"]) == 0


def test_customer_may_arrive_as_json(db, store, seller, customer, tomorrow):
    draft = drafts.create_draft(db, seller, [rice(store)])
    kind, plan = drafts.confirm_draft(db, str(draft["_id"]), seller, payment_method="installment",
                                      customer=json.dumps(customer), installment_duration="6", start_date=tomorrow)
    assert kind == "installment"
    assert plan["installment"]["duration"] == 6


def test_past_start_date_creates_nothing(db, store, seller, customer):
    draft = drafts.create_draft(db, seller, [rice(store)])
    with pytest.raises(ValidationError):
        drafts.confirm_draft(db, str(draft["_id"]), seller, payment_method="installment", customer=customer,
                             installment_duration=3, start_date="2000-01-01")

    assert db["installmentpayment"].count_documents({}) == 0
    assert db["draftorder"].find_one({"_id": draft["_id"]})["status"] == "draft"


def test_installment_needs_customer_and_duration(db, store, seller, customer, tomorrow):
    draft = drafts.create_draft(db, seller, [rice(store)])
    with pytest.raises(ValidationError):
        drafts.confirm_draft(db, str(draft["_id"]), seller, payment_method="installment", installment_duration=3,
                             start_date=tomorrow)
    with pytest.raises(ValidationError):
        drafts.confirm_draft(db, str(draft["_id"]), seller, payment_method="installment", customer=customer,
                             installment_duration=7, start_date=tomorrow)
    assert db["draftorder"].count_documents({}) == 1


def test_confirmation_resolves_missing_owner(db, store, seller):
    draft_id = db["draftorder"].insert_one({
        "order_id": 900, "seller_id": seller.id, "products": [rice(store)], "total_sum": 300000,
        "payment_method": "cash", "status": "draft", "store_owner_id": None, "shop_id": None,
    }).inserted_id
    kind, record = drafts.confirm_draft(db, str(draft_id), seller)
    assert record["store_owner_id"] == store["owner_id"]


def test_confirmation_without_any_owner(db, store):
    lonely = Actor(id="64b7f0c2a1b2c3d4e5f60718", role="seller")
    draft_id = db["draftorder"].insert_one({
        "order_id": 901, "seller_id": lonely.id, "products": [rice(store)], "total_sum": 300000,
        "payment_method": "cash", "status": "draft",
    }).inserted_id
    with pytest.raises(StoreOwnerNotFound):
        drafts.confirm_draft(db, str(draft_id), lonely)
    assert db["orderhistory"].count_documents({}) == 0


def test_draft_being_confirmed_is_locked(db, store, seller):
    draft = drafts.create_draft(db, seller, [rice(store)])
    db["draftorder"].update_one({"_id": draft["_id"]}, {"$set": {"status": "confirming"}})

    with pytest.raises(InvalidStateTransition):
        drafts.confirm_draft(db, str(draft["_id"]), seller)
    with pytest.raises(InvalidStateTransition):
        drafts.delete_draft(db, str(draft["_id"]), seller)
    assert quantity(db, store["rice_id"]) == 7


def test_cancelling_a_plan_returns_stock(db, store, seller, admin, customer, tomorrow):
    draft = drafts.create_draft(db, seller, [rice(store)])
    _, plan = drafts.confirm_draft(db, str(draft["_id"]), seller, customer=customer, installment_duration=3,
                                   start_date=tomorrow)
    assert quantity(db, store["rice_id"]) == 7

    cancelled = installments.cancel_installment(db, str(plan["_id"]), admin, "returned")
    assert cancelled["status"] == "cancelled"
    assert quantity(db, store["rice_id"]) == 10


def test_overdue_plan_can_be_cancelled(db, store, seller, admin, customer, tomorrow):
    draft = drafts.create_draft(db, seller, [rice(store)])
    _, plan = drafts.confirm_draft(db, str(draft["_id"]), seller, customer=customer, installment_duration=3,
                                   start_date=tomorrow)
    later = now_utc() + timedelta(days=70)

    assert installments.refresh_overdue(db, later) == 1
    assert db["installmentpayment"].find_one({"_id": plan["_id"]})["status"] == "overdue"

    cancelled = installments.cancel_installment(db, str(plan["_id"]), admin, "customer left", now=later)
    assert cancelled["status"] == "cancelled"
    assert quantity(db, store["rice_id"]) == 10
    with pytest.raises(InvalidStateTransition):
        installments.collect_payment(db, str(plan["_id"]), admin, 1, plan["payments"][0]["amount"], now=later)


# ------------------ Order history ------------------

def test_cancelling_an_order_returns_stock(db, store, seller):
    draft = drafts.create_draft(db, seller, [rice(store)])
    _, order = drafts.confirm_draft(db, str(draft["_id"]), seller, payment_method="cash")
    assert order["inventory_pool"] == "product"

    cancelled = drafts.cancel_order(db, str(order["_id"]), seller, "wrong size")
    assert cancelled["status"] == "cancelled"
    assert cancelled["cancelled_by"] == seller.id
    assert cancelled["cancel_reason"] == "wrong size"
    assert quantity(db, store["rice_id"]) == 10

    with pytest.raises(InvalidStateTransition):
        drafts.cancel_order(db, str(order["_id"]), seller)
    assert quantity(db, store["rice_id"]) == 10


def test_order_cancel_is_limited_to_its_seller_and_admins(db, store, seller, admin):
    draft = drafts.create_draft(db, seller, [rice(store)])
    _, order = drafts.confirm_draft(db, str(draft["_id"]), seller, payment_method="card")
    stranger = Actor(id="64b7f0c2a1b2c3d4e5f60718", role="seller", shops=[store["shop_id"]])
    owner = Actor(id=store["owner_id"], role="shop_owner", permissions=["manage_orders"])

    for actor in (stranger, owner):
        with pytest.raises(AuthorizationError):
            drafts.cancel_order(db, str(order["_id"]), actor)
    assert quantity(db, store["rice_id"]) == 7

    assert drafts.cancel_order(db, str(order["_id"]), admin)["status"] == "cancelled"
    assert quantity(db, store["rice_id"]) == 10
