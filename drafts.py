"""
Draft orders: the seller's staged cart and its confirmation.

Stock is reserved when a draft is created, moved when its items change and
given back when it is deleted. Confirmation turns the draft into either an
OrderHistory record (cash/card) or an installment plan and removes the
draft; it never touches stock.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database

import installments
import inventory
from config import ORDER_ID_START
from database import get_document, next_sequence, now_utc
from errors import AuthorizationError, InvalidStateTransition, MarketError, StoreOwnerNotFound, ValidationError
from permissions import Actor, require
from schemas import DraftOrder, OrderHistory

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("cash", "card", "installment")


# ------------------ Store owner resolution ------------------

def seller_shop_ids(db: Database, seller: Optional[Dict[str, Any]]) -> List[str]:
    """Direct shops first, then the shops of every shop owner the seller works for."""
    if not seller:
        return []
    ids = [str(s) for s in seller.get("shops") or []]
    for assignment in seller.get("shop_owners") or []:
        owner = assignment.get("shop_owner")
        if owner:
            ids.extend(str(shop["_id"]) for shop in db["shop"].find({"owner_id": str(owner)}))
    return list(dict.fromkeys(ids))


def _owned(db: Database, shop: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    owner_id = shop.get("owner_id") if shop else None
    if owner_id and ObjectId.is_valid(owner_id) and db["shopowner"].count_documents({"_id": ObjectId(owner_id)}, limit=1):
        return shop
    return None


def resolve_store_owner(db: Database, reference: Optional[str],
                        seller: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """
    Finds the shop (with its owner) a store reference points at.

    The reference may be a shop id or a shop owner id. When neither matches,
    the seller's own shops are tried in order. Returns None if nothing with
    an existing owner is found.
    """
    if reference:
        reference = str(reference)
        if ObjectId.is_valid(reference):
            shop = _owned(db, db["shop"].find_one({"_id": ObjectId(reference)}))
            if shop:
                logger.debug("Store reference %s is a shop", reference)
                return shop
        shop = _owned(db, db["shop"].find_one({"owner_id": reference}))
        if shop:
            logger.debug("Store reference %s is a shop owner", reference)
            return shop
    for shop_id in seller_shop_ids(db, seller):
        if not ObjectId.is_valid(shop_id):
            continue
        shop = _owned(db, db["shop"].find_one({"_id": ObjectId(shop_id)}))
        if shop:
            logger.debug("Store owner resolved from seller shop %s", shop_id)
            return shop
    return None


# ------------------ Helpers ------------------

def normalize_items(products: Optional[List[Any]]) -> Tuple[List[Dict[str, Any]], float]:
    if not products:
        raise ValidationError("At least one product is required")
    items = []
    for raw in products:
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        if not isinstance(raw, dict) or not raw.get("product_id") or not raw.get("name") \
                or raw.get("quantity") is None or raw.get("price") is None:
            raise ValidationError("Fill in all fields (product_id, name, quantity, price)")
        try:
            quantity = float(raw["quantity"])
        except (TypeError, ValueError):
            quantity = 0
        if quantity <= 0:
            raise ValidationError("Product quantity is invalid")
        try:
            price = float(raw["price"])
        except (TypeError, ValueError):
            price = -1
        if price < 0:
            raise ValidationError("Product price is invalid")
        items.append({
            "product_id": str(raw["product_id"]),
            "name": raw["name"],
            "quantity": quantity,
            "price": price,
            "unit": raw.get("unit") or "dona",
            "unit_size": raw.get("unit_size") or 1,
        })
    total = round(sum(i["price"] * i["quantity"] for i in items), 2)
    return items, total


def _seller_context(db: Database, seller_id: str, actor: Actor) -> Optional[Dict[str, Any]]:
    if actor.role == "seller" and actor.id == seller_id:
        return actor.model_dump()
    if ObjectId.is_valid(seller_id):
        return db["seller"].find_one({"_id": ObjectId(seller_id)})
    return None


def _reserve_scope(db: Database, draft: Dict[str, Any], actor: Actor) -> List[str]:
    """Shops a draft's items are taken from: its own shop, or for old drafts every shop of the seller."""
    if draft.get("shop_id"):
        return [draft["shop_id"]]
    return seller_shop_ids(db, _seller_context(db, draft["seller_id"], actor))


def _agent_owner(db: Database, draft: Dict[str, Any], actor: Actor) -> Optional[str]:
    if actor.role == "agent" and actor.id == draft["seller_id"]:
        return actor.shop_owner_id
    if ObjectId.is_valid(draft["seller_id"]):
        agent = db["agent"].find_one({"_id": ObjectId(draft["seller_id"])})
        return agent.get("shop_owner_id") if agent else None
    return None


def _checked_store(db: Database, shop: Dict[str, Any], pool: str, seller: Optional[Dict[str, Any]],
                   agent_owner_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Confirms the resolved store is one the caller sells for.

    Sellers get their own shop of that owner, agents must stay with the
    shop owner they work for.
    """
    if pool == "agent":
        if agent_owner_id and shop["owner_id"] != agent_owner_id:
            raise AuthorizationError("You can only sell for your own shop owner")
        return shop
    shop_ids = seller_shop_ids(db, seller)
    if str(shop["_id"]) in shop_ids:
        return shop
    for shop_id in shop_ids:
        if not ObjectId.is_valid(shop_id):
            continue
        own = db["shop"].find_one({"_id": ObjectId(shop_id), "owner_id": shop["owner_id"]})
        if own:
            return own
    raise AuthorizationError("This store is not one of your shops")


def _pool(draft: Dict[str, Any]) -> str:
    return draft.get("inventory_pool", "product")


# ------------------ CRUD ------------------

def list_drafts(db: Database, actor: Actor) -> List[Dict[str, Any]]:
    require(actor, "drafts.list")
    filt = {} if actor.is_admin else {"seller_id": actor.id}
    return list(db["draftorder"].find(filt).sort("created_at", -1))


def create_draft(db: Database, actor: Actor, products: List[Any], store_owner: Optional[str] = None,
                 payment_method: Optional[str] = "cash") -> Dict[str, Any]:
    require(actor, "drafts.create")
    payment_method = payment_method or "cash"
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError("Invalid payment method. Allowed: cash, card, installment")
    items, total = normalize_items(products)

    seller = actor.model_dump() if actor.role == "seller" else None
    reference = store_owner or (actor.shop_owner_id if actor.role == "agent" else None)
    shop = resolve_store_owner(db, reference, seller)
    if not shop:
        raise ValidationError("Store owner is required, or no shop is assigned to you")

    pool = "agent" if actor.role == "agent" else "product"
    shop = _checked_store(db, shop, pool, seller, actor.shop_owner_id)
    inventory.reserve(db, pool, actor.id, items, shop_ids=[str(shop["_id"])])

    draft = DraftOrder(
        order_id=next_sequence(db, "draftorder", ORDER_ID_START),
        seller_id=actor.id,
        seller_role=actor.role,
        inventory_pool=pool,
        shop_id=str(shop["_id"]),
        store_owner_id=shop["owner_id"],
        store_reference=reference,
        products=items,
        total_sum=total,
        payment_method=payment_method,
    ).model_dump()
    stamp = now_utc()
    draft.update(created_at=stamp, updated_at=stamp)
    try:
        draft["_id"] = db["draftorder"].insert_one(draft).inserted_id
    except Exception:
        inventory.release(db, pool, actor.id, items)
        raise
    logger.info("Draft order %s created by %s %s, total %s", draft["order_id"], actor.role, actor.id, total)
    return draft


def update_draft(db: Database, draft_id: str, actor: Actor, products: Optional[List[Any]] = None,
                 store_owner: Optional[str] = None) -> Dict[str, Any]:
    if not products and not store_owner:
        raise ValidationError("Nothing to update")
    draft = get_document(db, "draftorder", draft_id, "Draft order")
    require(actor, "drafts.manage", draft)
    if draft.get("status") != "draft":
        raise InvalidStateTransition("Draft order is being confirmed")

    pool, holder = _pool(draft), draft["seller_id"]
    old_scope = _reserve_scope(db, draft, actor)
    scope = old_scope
    updates: Dict[str, Any] = {}
    if store_owner:
        seller = _seller_context(db, holder, actor)
        shop = resolve_store_owner(db, store_owner, seller)
        if not shop:
            raise ValidationError("Store owner not found")
        shop = _checked_store(db, shop, pool, seller, _agent_owner(db, draft, actor))
        updates.update(shop_id=str(shop["_id"]), store_owner_id=shop["owner_id"], store_reference=str(store_owner))
        scope = [str(shop["_id"])]

    new_items = None
    if products:
        new_items, total = normalize_items(products)
        updates.update(products=new_items, total_sum=total)
    items = new_items if new_items is not None else draft["products"]
    # a new shop means the same items have to come from the new shop's stock
    moved = new_items is not None or (pool == "product" and scope != old_scope)

    if moved:
        inventory.release(db, pool, holder, draft["products"])
        try:
            inventory.reserve(db, pool, holder, items, scope)
        except MarketError:
            try:
                inventory.reserve(db, pool, holder, draft["products"], old_scope)
            except MarketError as e:
                logger.error("Could not re-reserve the original items of draft %s: %s", draft["_id"], e)
            raise

    updates["updated_at"] = now_utc()
    updated = db["draftorder"].find_one_and_update(
        {"_id": draft["_id"], "status": "draft"},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        if moved:
            inventory.release(db, pool, holder, items)
            inventory.reserve(db, pool, holder, draft["products"], old_scope)
        raise InvalidStateTransition("Draft order is being confirmed")
    logger.info("Draft order %s updated by %s %s", draft["order_id"], actor.role, actor.id)
    return updated


def delete_draft(db: Database, draft_id: str, actor: Actor) -> None:
    draft = get_document(db, "draftorder", draft_id, "Draft order")
    require(actor, "drafts.manage", draft)
    res = db["draftorder"].delete_one({"_id": draft["_id"], "status": "draft"})
    if res.deleted_count == 0:
        raise InvalidStateTransition("Draft order is being confirmed")
    inventory.release(db, _pool(draft), draft["seller_id"], draft["products"])
    logger.info("Draft order %s deleted by %s %s, stock returned", draft["order_id"], actor.role, actor.id)


# ------------------ Confirmation ------------------

def _parse_customer(customer: Any) -> Any:
    if isinstance(customer, str):
        try:
            return json.loads(customer)
        except ValueError:
            logger.debug("Customer payload is not valid JSON")
    return customer


def _resolve_owner_for(db: Database, draft: Dict[str, Any], actor: Actor) -> Tuple[str, Optional[str]]:
    if draft.get("store_owner_id") and _owned(db, {"owner_id": draft["store_owner_id"]}):
        return draft["store_owner_id"], draft.get("shop_id")
    reference = draft.get("store_reference") or draft.get("shop_id")
    shop = resolve_store_owner(db, reference, _seller_context(db, draft["seller_id"], actor))
    if not shop:
        raise StoreOwnerNotFound()
    return shop["owner_id"], str(shop["_id"])


def confirm_draft(db: Database, draft_id: str, actor: Actor, payment_method: Optional[str] = None,
                  customer: Any = None, installment_duration: Any = None, start_date: Any = None,
                  now: Optional[datetime] = None) -> Tuple[str, Dict[str, Any]]:
    """
    Materializes a draft as an installment plan or an order history record.

    Returns `(kind, record)` where kind is "installment" or "order". Every
    validation runs before anything is written; a failed confirmation leaves
    the draft as it was.
    An omitted payment method means cash, whatever the draft was created with.
    """
    now = now or now_utc()
    customer = _parse_customer(customer)
    duration = installments.parse_duration(installment_duration)

    draft = get_document(db, "draftorder", draft_id, "Draft order")
    require(actor, "drafts.manage", draft)
    if draft.get("status") != "draft":
        raise InvalidStateTransition("Draft order is already being confirmed")

    method = payment_method or "cash"
    if method != "installment" and customer and duration:
        logger.info("Draft %s has customer and duration, confirming as installment", draft["order_id"])
        method = "installment"
    if method not in PAYMENT_METHODS:
        raise ValidationError("Invalid payment method. Allowed: cash, card, installment")

    owner_id, shop_id = _resolve_owner_for(db, draft, actor)

    if method == "installment":
        checked_customer = installments.validate_customer(customer)
        duration = installments.validate_duration(duration)
        start = installments.validate_start_date(start_date, now)
        record = installments.build_plan(
            db,
            order_id=draft["order_id"],
            seller_id=draft["seller_id"],
            store_owner_id=owner_id,
            shop_id=shop_id,
            inventory_pool=_pool(draft),
            products=draft["products"],
            total_sum=draft["total_sum"],
            customer=checked_customer,
            duration=duration,
            start_date=start,
            now=now,
        )
        collection, kind = "installmentpayment", "installment"
    else:
        record = OrderHistory(
            order_id=draft["order_id"],
            seller_id=draft["seller_id"],
            store_owner_id=owner_id,
            shop_id=shop_id,
            products=draft["products"],
            total_sum=draft["total_sum"],
            inventory_pool=_pool(draft),
            payment_method=method,
            status="completed",
            completed_at=now,
        ).model_dump()
        collection, kind = "orderhistory", "order"
    record.update(created_at=now, updated_at=now)

    claimed = db["draftorder"].find_one_and_update(
        {"_id": draft["_id"], "status": "draft"},
        {"$set": {"status": "confirming", "updated_at": now}},
    )
    if claimed is None:
        raise InvalidStateTransition("Draft order is already being confirmed")
    try:
        record["_id"] = db[collection].insert_one(record).inserted_id
    except Exception:
        db["draftorder"].update_one({"_id": draft["_id"]}, {"$set": {"status": "draft"}})
        raise
    db["draftorder"].delete_one({"_id": draft["_id"]})
    logger.info("Draft order %s confirmed as %s (%s) by %s %s",
                draft["order_id"], kind, method, actor.role, actor.id)
    return kind, record


# ------------------ Order history ------------------

def cancel_order(db: Database, order_id: str, actor: Actor, reason: Optional[str] = None,
                 now: Optional[datetime] = None) -> Dict[str, Any]:
    """Cancels a settled order and gives its items back to the pool they were taken from."""
    now = now or now_utc()
    order = get_document(db, "orderhistory", order_id, "Order")
    require(actor, "orders.cancel", order)
    if order.get("status") == "cancelled":
        raise InvalidStateTransition("Order is already cancelled")
    updated = db["orderhistory"].find_one_and_update(
        {"_id": order["_id"], "status": {"$ne": "cancelled"}},
        {"$set": {"status": "cancelled", "cancelled_at": now, "cancelled_by": actor.id,
                  "cancel_reason": reason, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStateTransition("Order is already cancelled")
    inventory.release(db, order.get("inventory_pool", "product"), order["seller_id"], order["products"])
    logger.info("Order %s cancelled by %s %s", order["order_id"], actor.role, actor.id)
    return updated
