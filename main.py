import logging
import logging.config
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
import drafts
import installments
import inventory
from auth import current_actor, hash_password, login
from config import (ADMIN_PASSWORD, ADMIN_USERNAME, CORS_ORIGINS, DATABASE_URL, DEFAULT_INTEREST_RATES,
                    LOGGING_CONFIG, PORT)
from database import create_document, get_db, get_document, get_documents, now_utc, oid, serialize
from errors import AuthorizationError, InvalidStateTransition, MarketError, NotFoundError, ValidationError
from permissions import ADMIN_PERMISSIONS, SHOP_OWNER_PERMISSIONS, Actor, require
from schemas import (PHONE_PATTERN, Admin, Agent, Category, InterestRate, Product, Region, Seller, Shop,
                     ShopOwner, ShopOwnerAssignment, Webhook)
from webhooks import EVENTS, fire_webhooks

logging.config.dictConfig(LOGGING_CONFIG)
logger = logging.getLogger(__name__)


def ensure_general_admin(db: Database) -> None:
    """Creates the first general admin from ADMIN_USERNAME/ADMIN_PASSWORD when none exists."""
    if not ADMIN_USERNAME or not ADMIN_PASSWORD:
        return
    if db["admin"].count_documents({"role": "general"}, limit=1):
        return
    create_document(db, "admin", Admin(username=ADMIN_USERNAME, password_hash=hash_password(ADMIN_PASSWORD),
                                       full_name="General admin", role="general",
                                       permissions=ADMIN_PERMISSIONS))
    logger.info("General admin %s created", ADMIN_USERNAME)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_general_admin(database.db)
        except PyMongoError as e:
            logger.error("Admin bootstrap skipped, database unreachable: %s", e)
    yield


app = FastAPI(title="Bozor Marketplace API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    logger.debug("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
    return JSONResponse(status_code=400, content={"success": False, "message": message})


# Helpers
def ok(data: Any = None, message: str = "OK") -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data}


def make(model, **data):
    try:
        return model(**data)
    except SchemaError as e:
        raise ValidationError(e.errors()[0]["msg"])


def ensure_unique_username(db: Database, collection: str, username: str) -> None:
    if db[collection].count_documents({"username": username}, limit=1):
        raise ValidationError("Username is already taken")


def owned_shop(db: Database, actor: Actor, shop_id: str, action: str) -> Dict[str, Any]:
    shop = get_document(db, "shop", shop_id, "Shop")
    require(actor, action, shop)
    return shop


def actor_shop_ids(db: Database, actor: Actor) -> Optional[List[str]]:
    """Shops whose data the actor may read; None means every shop."""
    if actor.is_admin:
        return None
    if actor.role == "shop_owner":
        return [str(s["_id"]) for s in db["shop"].find({"owner_id": actor.id})]
    if actor.role == "seller":
        return drafts.seller_shop_ids(db, actor.model_dump())
    if actor.shop_owner_id:
        return [str(s["_id"]) for s in db["shop"].find({"owner_id": actor.shop_owner_id})]
    return []


def notify(background_tasks: BackgroundTasks, db: Database, store_owner_id: Optional[str], event: str,
           record: Dict[str, Any]) -> None:
    if store_owner_id:
        background_tasks.add_task(fire_webhooks, db, store_owner_id, event, serialize(record))


@app.get("/")
def root():
    return {"name": "Bozor", "status": "ok"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if DATABASE_URL else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["database_name"] = db.name
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# ============ Auth ============
class LoginRequest(BaseModel):
    role: str
    username: str
    password: str


@app.post("/api/auth/login")
def login_account(payload: LoginRequest, db: Database = Depends(get_db)):
    return ok(login(db, payload.role, payload.username, payload.password), "Logged in")


@app.get("/api/auth/me")
def who_am_i(actor: Actor = Depends(current_actor)):
    return ok(actor.model_dump())


# ============ Admins ============
class CreateAdmin(BaseModel):
    username: str
    password: str = Field(..., min_length=6)
    full_name: Optional[str] = None
    role: str = "admin"
    permissions: List[str] = Field(default_factory=list)


@app.post("/api/admins")
def create_admin(payload: CreateAdmin, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "admins.manage")
    if actor.admin_role != "general":
        raise AuthorizationError("Only a general admin can create admins")
    unknown = set(payload.permissions) - set(ADMIN_PERMISSIONS)
    if unknown:
        raise ValidationError(f"Unknown permissions: {', '.join(sorted(unknown))}")
    ensure_unique_username(db, "admin", payload.username)
    doc = make(Admin, username=payload.username, password_hash=hash_password(payload.password),
               full_name=payload.full_name, role=payload.role, permissions=payload.permissions)
    _id = create_document(db, "admin", doc)
    logger.info("Admin %s created by %s", payload.username, actor.id)
    return ok({"id": _id}, "Admin created")


@app.get("/api/admins")
def list_admins(db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "admins.manage")
    items = get_documents(db, "admin", {}, sort=[("created_at", -1)])
    for it in items:
        it.pop("password_hash", None)
    return ok([serialize(it) for it in items])


# ============ Shop owners & shops ============
class CreateShopOwner(BaseModel):
    name: str
    phone: str = Field(..., pattern=PHONE_PATTERN)
    username: str
    password: str = Field(..., min_length=6)
    permissions: Optional[List[str]] = None


@app.post("/api/shop-owners")
def create_shop_owner(payload: CreateShopOwner, db: Database = Depends(get_db),
                      actor: Actor = Depends(current_actor)):
    require(actor, "shop_owners.manage")
    permissions = SHOP_OWNER_PERMISSIONS if payload.permissions is None else payload.permissions
    unknown = set(permissions) - set(SHOP_OWNER_PERMISSIONS)
    if unknown:
        raise ValidationError(f"Unknown permissions: {', '.join(sorted(unknown))}")
    ensure_unique_username(db, "shopowner", payload.username)
    doc = make(ShopOwner, name=payload.name, phone=payload.phone, username=payload.username,
               password_hash=hash_password(payload.password), permissions=permissions, created_by=actor.id)
    _id = create_document(db, "shopowner", doc)
    logger.info("Shop owner %s created by %s", _id, actor.id)
    return ok({"id": _id}, "Shop owner created")


@app.get("/api/shop-owners")
def list_shop_owners(status: Optional[str] = None, db: Database = Depends(get_db),
                     actor: Actor = Depends(current_actor)):
    require(actor, "shop_owners.manage")
    flt = {"status": status} if status else {}
    items = get_documents(db, "shopowner", flt, sort=[("created_at", -1)])
    for it in items:
        it.pop("password_hash", None)
    return ok([serialize(it) for it in items])


@app.post("/api/shops")
def create_shop(shop: Shop, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "shops.manage")
    if shop.owner_id:
        get_document(db, "shopowner", shop.owner_id, "Shop owner")
    if shop.region_id:
        get_document(db, "region", shop.region_id, "Region")
    _id = create_document(db, "shop", shop)
    return ok({"id": _id}, "Shop created")


@app.get("/api/shops")
def list_shops(owner_id: Optional[str] = None, db: Database = Depends(get_db),
               actor: Actor = Depends(current_actor)):
    flt: Dict[str, Any] = {}
    visible = actor_shop_ids(db, actor)
    if visible is not None:
        flt["_id"] = {"$in": [oid(s) for s in visible]}
    if owner_id:
        flt["owner_id"] = owner_id
    return ok([serialize(it) for it in get_documents(db, "shop", flt)])


# ============ Sellers & agents ============
class CreateSeller(BaseModel):
    full_name: str
    username: str
    password: str = Field(..., min_length=6)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    shops: List[str] = Field(default_factory=list)
    shop_owners: List[ShopOwnerAssignment] = Field(default_factory=list)


@app.post("/api/sellers")
def create_seller(payload: CreateSeller, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "sellers.manage")
    assignments = [a.model_dump() for a in payload.shop_owners]
    if actor.role == "shop_owner" and not any(a["shop_owner"] == actor.id for a in assignments):
        assignments.append(ShopOwnerAssignment(shop_owner=actor.id).model_dump())
    for shop_id in payload.shops:
        shop = get_document(db, "shop", shop_id, "Shop")
        if actor.role == "shop_owner" and shop.get("owner_id") != actor.id:
            raise AuthorizationError("You can only attach sellers to your own shops")
    for a in assignments:
        get_document(db, "shopowner", a["shop_owner"], "Shop owner")
    ensure_unique_username(db, "seller", payload.username)
    doc = make(Seller, full_name=payload.full_name, username=payload.username,
               password_hash=hash_password(payload.password), phone=payload.phone, shops=payload.shops,
               shop_owners=assignments, created_by=actor.id)
    _id = create_document(db, "seller", doc)
    logger.info("Seller %s created by %s %s", _id, actor.role, actor.id)
    return ok({"id": _id}, "Seller created")


@app.get("/api/sellers")
def list_sellers(db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "sellers.manage")
    flt = {"shop_owners.shop_owner": actor.id} if actor.role == "shop_owner" else {}
    items = get_documents(db, "seller", flt, sort=[("created_at", -1)])
    for it in items:
        it.pop("password_hash", None)
    return ok([serialize(it) for it in items])


class CreateAgent(BaseModel):
    full_name: str
    username: str
    password: str = Field(..., min_length=6)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    shop_owner_id: Optional[str] = None


@app.post("/api/agents")
def create_agent(payload: CreateAgent, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "agents.manage")
    shop_owner_id = actor.id if actor.role == "shop_owner" else payload.shop_owner_id
    if shop_owner_id:
        get_document(db, "shopowner", shop_owner_id, "Shop owner")
    ensure_unique_username(db, "agent", payload.username)
    doc = make(Agent, full_name=payload.full_name, username=payload.username,
               password_hash=hash_password(payload.password), phone=payload.phone, shop_owner_id=shop_owner_id)
    _id = create_document(db, "agent", doc)
    return ok({"id": _id}, "Agent created")


@app.get("/api/agents")
def list_agents(db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "agents.manage")
    flt = {"shop_owner_id": actor.id} if actor.role == "shop_owner" else {}
    items = get_documents(db, "agent", flt, sort=[("created_at", -1)])
    for it in items:
        it.pop("password_hash", None)
    return ok([serialize(it) for it in items])


# ============ Regions ============
PARENT_TYPE = {"region": None, "district": "region", "mfy": "district"}


@app.post("/api/regions")
def create_region(region: Region, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "regions.manage")
    expected = PARENT_TYPE[region.type]
    if expected is None and region.parent_id:
        raise ValidationError("A region cannot have a parent")
    if expected is not None:
        if not region.parent_id:
            raise ValidationError(f"A {region.type} needs a parent {expected}")
        parent = get_document(db, "region", region.parent_id, "Parent region")
        if parent.get("type") != expected:
            raise ValidationError(f"The parent of a {region.type} must be a {expected}")
    if db["region"].count_documents({"code": region.code}, limit=1):
        raise ValidationError("Region code already exists")
    _id = create_document(db, "region", region)
    return ok({"id": _id}, "Region created")


@app.get("/api/regions")
def list_regions(type: Optional[str] = None, parent_id: Optional[str] = None, db: Database = Depends(get_db)):
    flt: Dict[str, Any] = {"status": "active"}
    if type:
        flt["type"] = type
    if parent_id:
        flt["parent_id"] = parent_id
    return ok([serialize(it) for it in get_documents(db, "region", flt, sort=[("name", 1)])])


@app.get("/api/regions/tree")
def region_tree(db: Database = Depends(get_db)):
    nodes = {str(r["_id"]): {**serialize(r), "children": []}
             for r in get_documents(db, "region", {"status": "active"}, sort=[("name", 1)])}
    roots = []
    for node in nodes.values():
        parent = nodes.get(node.get("parent_id") or "")
        (parent["children"] if parent else roots).append(node)
    return ok(roots)


# ============ Categories ============
@app.post("/api/categories")
def create_category(category: Category, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "categories.manage")
    if category.parent_id:
        get_document(db, "category", category.parent_id, "Parent category")
    if category.shop_id:
        shop = get_document(db, "shop", category.shop_id, "Shop")
        if actor.role == "shop_owner" and shop.get("owner_id") != actor.id:
            raise AuthorizationError("You can only add categories to your own shops")
    _id = create_document(db, "category", category)
    return ok({"id": _id}, "Category created")


@app.get("/api/categories")
def list_categories(shop_id: Optional[str] = None, parent_id: Optional[str] = None,
                    db: Database = Depends(get_db)):
    flt: Dict[str, Any] = {"status": "active"}
    if shop_id:
        flt["shop_id"] = shop_id
    if parent_id:
        flt["parent_id"] = parent_id
    return ok([serialize(it) for it in get_documents(db, "category", flt, sort=[("name", 1)])])


# ============ Products ============
@app.post("/api/products")
def add_product(product: Product, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    owned_shop(db, actor, product.shop_id, "products.manage")
    if product.category_id:
        get_document(db, "category", product.category_id, "Category")
    pid = create_document(db, "product", product)
    logger.info("Product %s added to shop %s", pid, product.shop_id)
    return ok({"id": pid}, "Product created")


@app.get("/api/products")
def list_products(shop_id: Optional[str] = None, category_id: Optional[str] = None, q: Optional[str] = None,
                  limit: int = 100, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    flt: Dict[str, Any] = {}
    visible = actor_shop_ids(db, actor)
    if visible is not None:
        if shop_id and shop_id not in visible:
            raise AuthorizationError("You do not have access to this shop")
        flt["shop_id"] = {"$in": visible}
    if shop_id:
        flt["shop_id"] = shop_id
    if category_id:
        flt["category_id"] = category_id
    if q:
        flt["name"] = {"$regex": q, "$options": "i"}
    return ok([serialize(it) for it in get_documents(db, "product", flt, limit)])


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    doc = get_document(db, "product", product_id, "Product")
    visible = actor_shop_ids(db, actor)
    if visible is not None and doc.get("shop_id") not in visible:
        raise NotFoundError("Product not found")
    return ok(serialize(doc))


class UpdateStock(BaseModel):
    delta: float


@app.patch("/api/products/{product_id}/stock")
def update_stock(product_id: str, payload: UpdateStock, db: Database = Depends(get_db),
                 actor: Actor = Depends(current_actor)):
    doc = get_document(db, "product", product_id, "Product")
    owned_shop(db, actor, doc["shop_id"], "products.manage")
    current = doc.get("quantity", 0)
    quantity = max(0, current + payload.delta)
    res = db["product"].update_one({"_id": doc["_id"], "quantity": current},
                                   {"$set": {"quantity": quantity, "updated_at": now_utc()}})
    if res.matched_count == 0:
        raise InvalidStateTransition("Stock changed meanwhile, please retry")
    return ok({"id": str(doc["_id"]), "quantity": quantity}, "Stock updated")


# ============ Agent stock ============
class AssignAgentProduct(BaseModel):
    product_id: str
    agent_id: str
    quantity: float


@app.post("/api/agent-products")
def assign_agent_product(payload: AssignAgentProduct, db: Database = Depends(get_db),
                         actor: Actor = Depends(current_actor)):
    product = get_document(db, "product", payload.product_id, "Product")
    owned_shop(db, actor, product["shop_id"], "products.manage")
    agent = get_document(db, "agent", payload.agent_id, "Agent")
    if actor.role == "shop_owner" and agent.get("shop_owner_id") != actor.id:
        raise AuthorizationError("This agent does not work for you")
    _id = inventory.assign_to_agent(db, payload.product_id, payload.agent_id, payload.quantity, actor.id)
    logger.info("%s of product %s assigned to agent %s", payload.quantity, payload.product_id, payload.agent_id)
    return ok({"id": _id}, "Product assigned to agent")


@app.get("/api/agent-products")
def list_agent_products(agent_id: Optional[str] = None, status: Optional[str] = None,
                        db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    flt: Dict[str, Any] = {}
    if actor.role == "agent":
        flt["agent_id"] = actor.id
    elif actor.role == "seller":
        raise AuthorizationError("You do not have permission to perform this action")
    elif agent_id:
        flt["agent_id"] = agent_id
    if actor.role == "shop_owner":
        agents = [str(a["_id"]) for a in db["agent"].find({"shop_owner_id": actor.id})]
        if agent_id and agent_id not in agents:
            raise AuthorizationError("This agent does not work for you")
        flt.setdefault("agent_id", {"$in": agents})
    if status:
        flt["status"] = status
    return ok([serialize(it) for it in get_documents(db, "agentproduct", flt, sort=[("created_at", -1)])])


# ============ Interest rates ============
class SetInterestRate(BaseModel):
    duration: Any
    interest_rate: float


@app.post("/api/interest-rates")
def set_interest_rate(payload: SetInterestRate, db: Database = Depends(get_db),
                      actor: Actor = Depends(current_actor)):
    require(actor, "interest_rates.manage")
    duration = installments.validate_duration(installments.parse_duration(payload.duration))
    make(InterestRate, duration=duration, interest_rate=payload.interest_rate)
    existing = db["interestrate"].find_one({"duration": duration})
    if existing:
        db["interestrate"].update_one(
            {"_id": existing["_id"]},
            {"$set": {"interest_rate": payload.interest_rate, "updated_by": actor.id, "updated_at": now_utc()}},
        )
        logger.info("Interest rate for %s months set to %s%%", duration, payload.interest_rate)
        return ok(serialize(db["interestrate"].find_one({"_id": existing["_id"]})), "Interest rate updated")
    doc = InterestRate(duration=duration, interest_rate=payload.interest_rate, created_by=actor.id,
                       updated_by=actor.id)
    _id = create_document(db, "interestrate", doc)
    logger.info("Interest rate for %s months created at %s%%", duration, payload.interest_rate)
    return ok(serialize(db["interestrate"].find_one({"_id": oid(_id)})), "Interest rate created")


@app.get("/api/interest-rates")
def list_interest_rates(db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "interest_rates.manage")
    return ok([serialize(it) for it in get_documents(db, "interestrate", {}, sort=[("duration", 1)])])


@app.get("/api/interest-rates/active")
def active_interest_rates(db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    items = get_documents(db, "interestrate", {"is_active": True}, sort=[("duration", 1)])
    return ok([{"duration": it["duration"], "interest_rate": it["interest_rate"]} for it in items])


@app.post("/api/interest-rates/initialize")
def initialize_interest_rates(db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "interest_rates.manage")
    created = 0
    for duration, rate in DEFAULT_INTEREST_RATES.items():
        if db["interestrate"].count_documents({"duration": duration}, limit=1):
            continue
        create_document(db, "interestrate", InterestRate(duration=duration, interest_rate=rate,
                                                         created_by=actor.id, updated_by=actor.id))
        created += 1
    return ok({"created": created}, "Default interest rates initialized")


@app.patch("/api/interest-rates/{rate_id}/toggle")
def toggle_interest_rate(rate_id: str, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "interest_rates.manage")
    doc = get_document(db, "interestrate", rate_id, "Interest rate")
    active = not doc.get("is_active", True)
    db["interestrate"].update_one({"_id": doc["_id"]},
                                  {"$set": {"is_active": active, "updated_by": actor.id, "updated_at": now_utc()}})
    return ok({"id": rate_id, "is_active": active}, "Interest rate activated" if active else "Interest rate disabled")


@app.delete("/api/interest-rates/{rate_id}")
def delete_interest_rate(rate_id: str, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "interest_rates.manage")
    doc = get_document(db, "interestrate", rate_id, "Interest rate")
    db["interestrate"].delete_one({"_id": doc["_id"]})
    return ok(None, "Interest rate deleted")


# ============ Webhooks ============
class CreateWebhook(BaseModel):
    url: str
    events: List[str] = Field(default_factory=list)
    store_owner_id: Optional[str] = None
    active: bool = True


@app.post("/api/webhooks")
def create_webhook(payload: CreateWebhook, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    store_owner_id = actor.id if actor.role == "shop_owner" else payload.store_owner_id
    if not store_owner_id:
        raise ValidationError("store_owner_id is required")
    require(actor, "webhooks.manage", {"store_owner_id": store_owner_id})
    get_document(db, "shopowner", store_owner_id, "Shop owner")
    unknown = set(payload.events) - set(EVENTS)
    if unknown:
        raise ValidationError(f"Unknown events: {', '.join(sorted(unknown))}")
    _id = create_document(db, "webhook", Webhook(store_owner_id=store_owner_id, url=payload.url,
                                                 events=payload.events, active=payload.active))
    return ok({"id": _id}, "Webhook registered")


@app.get("/api/webhooks")
def list_webhooks(store_owner_id: Optional[str] = None, active: Optional[bool] = None,
                  db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "webhooks.manage")
    flt: Dict[str, Any] = {}
    if actor.role == "shop_owner":
        flt["store_owner_id"] = actor.id
    elif store_owner_id:
        flt["store_owner_id"] = store_owner_id
    if active is not None:
        flt["active"] = active
    return ok([serialize(it) for it in get_documents(db, "webhook", flt)])


# ============ Draft orders ============
class CreateDraft(BaseModel):
    products: List[Dict[str, Any]] = Field(default_factory=list)
    store_owner: Optional[str] = None
    payment_method: Optional[str] = "cash"


class UpdateDraft(BaseModel):
    products: Optional[List[Dict[str, Any]]] = None
    store_owner: Optional[str] = None


class ConfirmDraft(BaseModel):
    payment_method: Optional[str] = None
    customer: Optional[Any] = None
    installment_duration: Optional[Any] = None
    start_date: Optional[str] = None


@app.post("/api/drafts")
def create_draft(payload: CreateDraft, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    draft = drafts.create_draft(db, actor, payload.products, payload.store_owner, payload.payment_method)
    return ok(serialize(draft), "Draft order created")


@app.get("/api/drafts")
def list_drafts(db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    return ok([serialize(d) for d in drafts.list_drafts(db, actor)])


@app.get("/api/drafts/{draft_id}")
def get_draft(draft_id: str, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    draft = get_document(db, "draftorder", draft_id, "Draft order")
    require(actor, "drafts.manage", draft)
    return ok(serialize(draft))


@app.put("/api/drafts/{draft_id}")
def update_draft(draft_id: str, payload: UpdateDraft, db: Database = Depends(get_db),
                 actor: Actor = Depends(current_actor)):
    draft = drafts.update_draft(db, draft_id, actor, payload.products, payload.store_owner)
    return ok(serialize(draft), "Draft order updated")


@app.delete("/api/drafts/{draft_id}")
def delete_draft(draft_id: str, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    drafts.delete_draft(db, draft_id, actor)
    return ok(None, "Draft order deleted")


@app.post("/api/drafts/{draft_id}/confirm")
def confirm_draft(draft_id: str, payload: ConfirmDraft, background_tasks: BackgroundTasks,
                  db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    kind, record = drafts.confirm_draft(
        db, draft_id, actor,
        payment_method=payload.payment_method,
        customer=payload.customer,
        installment_duration=payload.installment_duration,
        start_date=payload.start_date,
    )
    if kind == "installment":
        notify(background_tasks, db, record["store_owner_id"], "installment.created", record)
        return ok({"type": kind, "record": serialize(record)}, "Installment plan created")
    notify(background_tasks, db, record["store_owner_id"], "order.completed", record)
    return ok({"type": kind, "record": serialize(record)}, "Order completed")


# ============ Order history ============
class CancelRequest(BaseModel):
    reason: Optional[str] = None


@app.get("/api/order-history")
def list_order_history(status: Optional[str] = None, page: int = 1, limit: int = 20,
                       db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "orders.view")
    flt: Dict[str, Any] = {}
    if actor.role in ("seller", "agent"):
        flt["seller_id"] = actor.id
    elif actor.role == "shop_owner":
        flt["store_owner_id"] = actor.id
    if status:
        flt["status"] = status
    page, limit = max(page, 1), max(limit, 1)
    total = db["orderhistory"].count_documents(flt)
    items = db["orderhistory"].find(flt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return ok({
        "items": [serialize(it) for it in items],
        "pagination": {
            "current_page": page,
            "total_pages": (total + limit - 1) // limit,
            "total_items": total,
            "items_per_page": limit,
        },
    })


@app.get("/api/order-history/{order_id}")
def get_order(order_id: str, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    doc = get_document(db, "orderhistory", order_id, "Order")
    require(actor, "orders.view", doc)
    return ok(serialize(doc))


@app.patch("/api/order-history/{order_id}/cancel")
def cancel_order(order_id: str, payload: CancelRequest, background_tasks: BackgroundTasks,
                 db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    order = drafts.cancel_order(db, order_id, actor, payload.reason)
    notify(background_tasks, db, order["store_owner_id"], "order.cancelled", order)
    return ok(serialize(order), "Order cancelled")


# ============ Installments (admin) ============
class ProcessPayment(BaseModel):
    month: Any = None
    amount: Any = None
    notes: Optional[str] = None
    payment_method: str = "cash"


def paged(result: Dict[str, Any]) -> Dict[str, Any]:
    return {"items": [serialize(it) for it in result["items"]], "pagination": result["pagination"]}


@app.get("/api/installment-payments")
def list_installments(status: Optional[str] = None, store_owner_id: Optional[str] = None,
                      seller_id: Optional[str] = None, page: int = 1, limit: int = 10,
                      db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "installments.manage")
    return ok(paged(installments.list_plans(db, actor, status, store_owner_id, seller_id, page, limit)))


@app.get("/api/installment-payments/stats")
def installment_statistics(store_owner_id: Optional[str] = None, db: Database = Depends(get_db),
                           actor: Actor = Depends(current_actor)):
    require(actor, "installments.manage")
    match = {"store_owner_id": store_owner_id} if store_owner_id else {}
    return ok(installments.installment_stats(db, match))


@app.post("/api/installment-payments/refresh-overdue")
def refresh_overdue(db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "installments.manage")
    changed = installments.refresh_overdue(db)
    return ok({"updated": changed}, "Overdue installments refreshed")


@app.get("/api/installment-payments/{installment_id}")
def get_installment(installment_id: str, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    plan = installments.load_plan(db, installment_id, actor)
    return ok(serialize(plan))


@app.patch("/api/installment-payments/{installment_id}/process")
def process_payment(installment_id: str, payload: ProcessPayment, background_tasks: BackgroundTasks,
                    db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "installments.manage")
    plan, entry = installments.collect_payment(db, installment_id, actor, payload.month, payload.amount,
                                               payload.payment_method, payload.notes)
    notify(background_tasks, db, plan["store_owner_id"], "installment.payment_recorded",
           {"installment_id": plan["_id"], "payment": entry, "status": plan["status"]})
    return ok(serialize(plan), "Payment recorded")


@app.patch("/api/installment-payments/{installment_id}/cancel")
def cancel_installment(installment_id: str, payload: CancelRequest, background_tasks: BackgroundTasks,
                       db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "installments.manage")
    plan = installments.cancel_installment(db, installment_id, actor, payload.reason)
    notify(background_tasks, db, plan["store_owner_id"], "installment.cancelled", plan)
    return ok(serialize(plan), "Installment plan cancelled")


# ============ Installments (seller app) ============
class SellerPayment(BaseModel):
    month: Any = None
    amount: Any = None
    payment_method: str = "cash"
    notes: Optional[str] = None


def require_field_seller(actor: Actor) -> None:
    if actor.role not in ("seller", "agent"):
        raise AuthorizationError("Only sellers can use this endpoint")


@app.get("/api/seller/installments")
def seller_installments(status: Optional[str] = None, page: int = 1, limit: int = 10,
                        db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require_field_seller(actor)
    return ok(paged(installments.list_plans(db, actor, status, page=page, limit=limit)))


@app.get("/api/seller/installments/stats")
def seller_installment_stats(db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require_field_seller(actor)
    return ok(installments.installment_stats(db, {"seller_id": actor.id}))


@app.get("/api/seller/installments/{installment_id}")
def seller_installment(installment_id: str, db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require_field_seller(actor)
    return ok(serialize(installments.load_plan(db, installment_id, actor)))


@app.post("/api/seller/installments/{installment_id}/payments")
def seller_record_payment(installment_id: str, payload: SellerPayment, background_tasks: BackgroundTasks,
                          db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require_field_seller(actor)
    plan, entry = installments.collect_payment(db, installment_id, actor, payload.month, payload.amount,
                                               payload.payment_method, payload.notes)
    notify(background_tasks, db, plan["store_owner_id"], "installment.payment_recorded",
           {"installment_id": plan["_id"], "payment": entry, "status": plan["status"]})
    return ok(serialize(plan), "Payment recorded")


@app.patch("/api/seller/installments/{installment_id}/cancel")
def seller_cancel_installment(installment_id: str, payload: CancelRequest, background_tasks: BackgroundTasks,
                              db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require_field_seller(actor)
    plan = installments.cancel_installment(db, installment_id, actor, payload.reason)
    notify(background_tasks, db, plan["store_owner_id"], "installment.cancelled", plan)
    return ok(serialize(plan), "Installment plan cancelled")


# ============ Statistics ============
@app.get("/api/statistics")
def statistics(db: Database = Depends(get_db), actor: Actor = Depends(current_actor)):
    require(actor, "statistics.view")
    match = {"store_owner_id": actor.id} if actor.role == "shop_owner" else {}
    orders = list(db["orderhistory"].aggregate([
        {"$match": match},
        {"$group": {"_id": "$payment_method", "count": {"$sum": 1}, "total_amount": {"$sum": "$total_sum"}}},
    ]))
    return ok({
        "orders": {row["_id"]: {"count": row["count"], "total_amount": row["total_amount"]} for row in orders},
        "installments": installments.installment_stats(db, match),
    })


# ============ Schemas Discovery (for migrations/tools) ============
@app.get("/schema")
def get_schema():
    models = [Admin, ShopOwner, Shop, Seller, Agent, Region, Category, Product, InterestRate, Webhook]
    described = {m.__name__.lower(): {"fields": list(m.model_fields)} for m in models}
    described["draftorder"] = {"fields": ["order_id", "seller_id", "seller_role", "inventory_pool", "shop_id",
                                          "store_owner_id", "store_reference", "products", "total_sum",
                                          "payment_method", "status"],
                               "indexes": ["seller_id", "order_id"]}
    described["orderhistory"] = {"fields": ["order_id", "seller_id", "store_owner_id", "shop_id", "products",
                                            "total_sum", "status", "payment_method", "completed_at"],
                                 "indexes": ["store_owner_id", "seller_id", "status"]}
    described["installmentpayment"] = {"fields": ["order_id", "seller_id", "store_owner_id", "customer",
                                                  "installment", "status", "payments", "version"],
                                       "indexes": ["store_owner_id", "seller_id", "status"]}
    described["product"]["indexes"] = ["shop_id", "name"]
    described["region"]["indexes"] = ["code", "parent_id"]
    described["interestrate"]["indexes"] = ["duration"]
    return described


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
