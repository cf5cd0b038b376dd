"""
Stock reservation for draft orders.

Two pools exist: shop products (`product.quantity`, used by sellers) and
agent assignments (`agentproduct.remaining_quantity`, used by agents). Every
decrement is a conditional update that only matches while enough stock is
left, so concurrent reservations cannot push stock below zero. When one item
of a batch fails, the items already taken are given back before the error
is raised.
"""
import logging
from typing import Dict, List, Optional

from bson import ObjectId
from pymongo.database import Database

from database import now_utc, oid
from errors import InsufficientStock, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _fmt(qty: float) -> str:
    return f"{qty:g}"


# ------------------ Shop products ------------------

def reserve_products(db: Database, shop_ids: List[str], items: List[Dict]) -> None:
    if not shop_ids:
        raise ValidationError("No shop is assigned to you")
    products = {}
    for item in items:
        product = db["product"].find_one({"_id": oid(item["product_id"], "product id"), "shop_id": {"$in": shop_ids}})
        if not product:
            raise NotFoundError(f"Product {item['name']} was not found in your shops")
        products[item["product_id"]] = product

    # all-or-nothing check before any write
    needed: Dict[str, float] = {}
    for item in items:
        needed[item["product_id"]] = needed.get(item["product_id"], 0) + item["quantity"]
    for product_id, qty in needed.items():
        product = products[product_id]
        if product.get("quantity", 0) < qty:
            raise InsufficientStock(
                f"Not enough {product['name']}. Available: {_fmt(product.get('quantity', 0))}, requested: {_fmt(qty)}"
            )

    taken: List[Dict] = []
    for item in items:
        res = db["product"].update_one(
            {"_id": oid(item["product_id"]), "quantity": {"$gte": item["quantity"]}},
            {"$inc": {"quantity": -item["quantity"]}, "$set": {"updated_at": now_utc()}},
        )
        if res.matched_count == 0:
            logger.warning("Stock for product %s changed during reservation, rolling back", item["product_id"])
            release_products(db, taken)
            raise InsufficientStock(f"Not enough {item['name']} in stock")
        taken.append(item)


def release_products(db: Database, items: List[Dict]) -> None:
    for item in items:
        db["product"].update_one(
            {"_id": oid(item["product_id"])},
            {"$inc": {"quantity": item["quantity"]}, "$set": {"updated_at": now_utc()}},
        )


# ------------------ Agent assignments ------------------

def find_agent_product(db: Database, agent_id: str, product_id: str, assigned_only: bool = True) -> Optional[Dict]:
    """Matches either the assignment id or the underlying product id."""
    clauses = [{"product_id": product_id}]
    if ObjectId.is_valid(product_id):
        clauses.append({"_id": ObjectId(product_id)})
    query = {"agent_id": agent_id, "$or": clauses}
    if assigned_only:
        query["status"] = "assigned"
    return db["agentproduct"].find_one(query)


def reserve_agent_products(db: Database, agent_id: str, items: List[Dict]) -> None:
    assignments = {}
    for item in items:
        assignment = find_agent_product(db, agent_id, item["product_id"])
        if not assignment:
            raise NotFoundError(f"Product {item['name']} is not assigned to you")
        if assignment.get("remaining_quantity", 0) < item["quantity"]:
            raise InsufficientStock(
                f"Not enough {item['name']}. Available: {_fmt(assignment.get('remaining_quantity', 0))}, "
                f"requested: {_fmt(item['quantity'])}"
            )
        assignments[item["product_id"]] = assignment

    taken: List[Dict] = []
    for item in items:
        assignment = assignments[item["product_id"]]
        res = db["agentproduct"].update_one(
            {"_id": assignment["_id"], "remaining_quantity": {"$gte": item["quantity"]}},
            {"$inc": {"remaining_quantity": -item["quantity"]}, "$set": {"updated_at": now_utc()}},
        )
        if res.matched_count == 0:
            logger.warning("Agent stock %s changed during reservation, rolling back", assignment["_id"])
            release_agent_products(db, agent_id, taken)
            raise InsufficientStock(f"Not enough {item['name']} in stock")
        db["agentproduct"].update_one(
            {"_id": assignment["_id"], "remaining_quantity": {"$lte": 0}},
            {"$set": {"status": "sold", "sold_at": now_utc()}},
        )
        taken.append(item)


def release_agent_products(db: Database, agent_id: str, items: List[Dict]) -> None:
    for item in items:
        assignment = find_agent_product(db, agent_id, item["product_id"], assigned_only=False)
        if not assignment:
            logger.warning("No assignment of %s for agent %s to give stock back to", item["product_id"], agent_id)
            continue
        db["agentproduct"].update_one(
            {"_id": assignment["_id"]},
            {"$inc": {"remaining_quantity": item["quantity"]},
             "$set": {"status": "assigned", "updated_at": now_utc()}},
        )


def assign_to_agent(db: Database, product_id: str, agent_id: str, quantity: float, assigned_by: str) -> str:
    """Moves `quantity` units of a shop product into an agent's stock."""
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")
    res = db["product"].update_one(
        {"_id": oid(product_id, "product id"), "quantity": {"$gte": quantity}},
        {"$inc": {"quantity": -quantity}, "$set": {"updated_at": now_utc()}},
    )
    if res.matched_count == 0:
        if not db["product"].find_one({"_id": oid(product_id)}):
            raise NotFoundError("Product not found")
        raise InsufficientStock("Not enough quantity in stock")

    existing = db["agentproduct"].find_one({"product_id": product_id, "agent_id": agent_id})
    if existing:
        db["agentproduct"].update_one(
            {"_id": existing["_id"]},
            {"$inc": {"assigned_quantity": quantity, "remaining_quantity": quantity},
             "$set": {"status": "assigned", "updated_at": now_utc()}},
        )
        return str(existing["_id"])
    doc = {
        "product_id": product_id,
        "agent_id": agent_id,
        "assigned_quantity": quantity,
        "remaining_quantity": quantity,
        "assigned_by": assigned_by,
        "status": "assigned",
        "assigned_at": now_utc(),
        "created_at": now_utc(),
        "updated_at": now_utc(),
    }
    return str(db["agentproduct"].insert_one(doc).inserted_id)


# ------------------ Pool dispatch ------------------

def reserve(db: Database, pool: str, holder_id: str, items: List[Dict], shop_ids: Optional[List[str]] = None) -> None:
    if pool == "agent":
        reserve_agent_products(db, holder_id, items)
    else:
        reserve_products(db, shop_ids or [], items)


def release(db: Database, pool: str, holder_id: str, items: List[Dict]) -> None:
    if pool == "agent":
        release_agent_products(db, holder_id, items)
    else:
        release_products(db, items)
