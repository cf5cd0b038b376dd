"""
Database Schemas for Bozor (multi-tenant marketplace backend)

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercase of the class name (e.g., DraftOrder -> "draftorder").

Tenancy model: a ShopOwner owns Shops, a Shop owns Products, and Sellers work
for Shops either directly or through ShopOwner assignments. Draft orders,
order history and installment plans all carry the resolved store_owner_id.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

PASSPORT_PATTERN = r"^[A-Z]{2}[0-9]{7}$"
PHONE_PATTERN = r"^\+998[0-9]{9}$"

PaymentMethod = Literal["cash", "card", "installment"]
Duration = Literal[2, 3, 4, 5, 6, 10, 12]


# ============ Accounts ============
class Admin(BaseModel):
    """
    Backoffice administrators
    Collection: "admin"
    """
    username: str = Field(..., min_length=3)
    password_hash: str
    full_name: Optional[str] = None
    role: Literal["general", "admin"] = Field("admin", description="general admins hold every permission")
    permissions: List[str] = Field(default_factory=list)
    status: Literal["active", "inactive"] = "active"


class ShopOwner(BaseModel):
    """
    Store owners (tenants)
    Collection: "shopowner"
    """
    name: str = Field(..., min_length=3)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    username: str = Field(..., min_length=3)
    password_hash: str
    permissions: List[str] = Field(default_factory=list)
    status: Literal["active", "inactive", "blocked"] = "active"
    created_by: Optional[str] = None


class Shop(BaseModel):
    """
    Shops, owned by a shop owner
    Collection: "shop"
    """
    name: str
    owner_id: Optional[str] = Field(None, description="Owning shop owner id")
    address: Optional[str] = None
    region_id: Optional[str] = None
    status: Literal["active", "inactive"] = "active"


class ServiceArea(BaseModel):
    region: str
    districts: List[str] = Field(default_factory=list)
    mfys: List[str] = Field(default_factory=list)


class ShopOwnerAssignment(BaseModel):
    shop_owner: str = Field(..., description="Shop owner id the seller works for")
    service_areas: List[ServiceArea] = Field(default_factory=list)


class Seller(BaseModel):
    """
    Sellers using the seller mobile app
    Collection: "seller"
    """
    full_name: str = Field(..., min_length=2)
    username: str = Field(..., min_length=3)
    password_hash: str
    phone: str = Field(..., pattern=PHONE_PATTERN)
    shops: List[str] = Field(default_factory=list, description="Directly assigned shop ids")
    shop_owners: List[ShopOwnerAssignment] = Field(default_factory=list)
    service_areas: List[ServiceArea] = Field(default_factory=list)
    status: Literal["active", "inactive"] = "active"
    created_by: Optional[str] = None


class Agent(BaseModel):
    """
    Field agents selling from an assigned stock
    Collection: "agent"
    """
    full_name: str
    username: str = Field(..., min_length=3)
    password_hash: str
    phone: str = Field(..., pattern=PHONE_PATTERN)
    shop_owner_id: Optional[str] = None
    status: Literal["active", "inactive"] = "active"


# ============ Catalog ============
class Region(BaseModel):
    """
    Region hierarchy: region -> district -> mfy
    Collection: "region"
    """
    name: str
    type: Literal["region", "district", "mfy"]
    parent_id: Optional[str] = None
    code: str
    status: Literal["active", "inactive"] = "active"


class Category(BaseModel):
    """
    Collection: "category"
    """
    name: str
    parent_id: Optional[str] = None
    shop_id: Optional[str] = None
    status: Literal["active", "inactive"] = "active"


class Product(BaseModel):
    """
    Collection: "product"
    """
    shop_id: str = Field(..., description="Owning shop id")
    category_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: float = Field(0, ge=0, description="Units in stock")
    unit: str = "dona"
    unit_size: float = 1
    status: Literal["active", "inactive"] = "active"


class AgentProduct(BaseModel):
    """
    Stock moved from a product to an agent
    Collection: "agentproduct"
    """
    product_id: str
    agent_id: str
    assigned_quantity: float = Field(..., gt=0)
    remaining_quantity: float = Field(..., ge=0)
    assigned_by: Optional[str] = None
    status: Literal["assigned", "returned", "sold"] = "assigned"


class InterestRate(BaseModel):
    """
    Installment interest per duration
    Collection: "interestrate"
    """
    duration: Duration
    interest_rate: float = Field(..., ge=0, le=100)
    is_active: bool = True
    created_by: Optional[str] = None
    updated_by: Optional[str] = None


# ============ Orders ============
class LineItem(BaseModel):
    product_id: str
    name: str
    quantity: float = Field(..., gt=0)
    price: float = Field(..., ge=0)
    unit: str = "dona"
    unit_size: float = 1


class DraftOrder(BaseModel):
    """
    Seller-side staged cart
    Collection: "draftorder"
    """
    order_id: int
    seller_id: str
    seller_role: Literal["seller", "agent"] = "seller"
    inventory_pool: Literal["product", "agent"] = "product"
    shop_id: Optional[str] = None
    store_owner_id: Optional[str] = None
    store_reference: Optional[str] = Field(None, description="Caller supplied shop or shop owner id")
    products: List[LineItem]
    total_sum: float = Field(..., ge=0)
    payment_method: PaymentMethod = "cash"
    status: Literal["draft", "confirming"] = "draft"


class OrderHistory(BaseModel):
    """
    Settlement record for cash/card orders
    Collection: "orderhistory"
    """
    order_id: int
    seller_id: str
    store_owner_id: str
    shop_id: Optional[str] = None
    inventory_pool: Literal["product", "agent"] = "product"
    products: List[LineItem]
    total_sum: float = Field(..., ge=0)
    status: Literal["pending", "accepted", "processing", "delivered", "completed", "cancelled"] = "pending"
    payment_method: PaymentMethod = "cash"
    accepted_by: Optional[str] = None
    accepted_at: Optional[datetime] = None
    is_accepted: bool = False
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None


class InstallmentCustomer(BaseModel):
    full_name: str = Field(..., min_length=1)
    birth_date: datetime
    passport_series: str = Field(..., pattern=PASSPORT_PATTERN)
    primary_phone: str = Field(..., pattern=PHONE_PATTERN)
    secondary_phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    image: Optional[str] = None


class InstallmentTerms(BaseModel):
    duration: Duration
    start_date: datetime
    end_date: datetime
    monthly_payment: float = Field(..., ge=0)
    interest_rate: float = Field(..., ge=0, le=100)
    interest_amount: float = Field(..., ge=0)
    total_with_interest: float = Field(..., ge=0)


class ScheduledPayment(BaseModel):
    month: int = Field(..., ge=1)
    amount: float = Field(..., ge=0)
    due_date: datetime
    status: Literal["pending", "paid", "overdue"] = "pending"
    paid_at: Optional[datetime] = None
    paid_by: Optional[str] = None
    payment_method: Literal["cash", "card", "transfer"] = "cash"
    notes: Optional[str] = None


class InstallmentPayment(BaseModel):
    """
    Multi-month payment plan created from a confirmed draft
    Collection: "installmentpayment"
    """
    order_id: int
    seller_id: str
    store_owner_id: str
    shop_id: Optional[str] = None
    inventory_pool: Literal["product", "agent"] = "product"
    products: List[LineItem]
    total_sum: float = Field(..., ge=0)
    customer: InstallmentCustomer
    installment: InstallmentTerms
    status: Literal["active", "completed", "overdue", "cancelled"] = "active"
    payments: List[ScheduledPayment] = Field(default_factory=list)
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    version: int = 0


class Webhook(BaseModel):
    """
    Registered webhook endpoints for a store owner
    Collection: "webhook"
    """
    store_owner_id: str
    url: str
    events: List[str] = Field(default_factory=list)
    active: bool = Field(True)


# Note for the platform:
# 1) The database viewer can read these schemas from GET /schema
# 2) Each model aligns to a MongoDB collection with the lowercased class name
