"""
Role and permission policy.

Every handler declares the action it performs and calls `require(actor,
action, resource)`. An action maps each allowed role to the permission that
role must hold (None when the role alone is enough). Scoped actions also
check that the resource belongs to the actor: sellers and agents own the
drafts and plans they created, shop owners own the records of their store.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from errors import AuthorizationError

ADMIN_PERMISSIONS = [
    "view_dashboard",
    "manage_admins",
    "manage_shop_owners",
    "manage_stores",
    "manage_shops",
    "manage_sellers",
    "manage_regions",
    "manage_categories",
    "manage_products",
    "manage_orders",
    "manage_installments",
    "manage_notifications",
    "manage_settings",
]

SHOP_OWNER_PERMISSIONS = [
    "manage_products",
    "manage_orders",
    "manage_categories",
    "manage_installments",
    "manage_contracts",
    "view_statistics",
]

# action: ({role: permission or None}, scoped)
POLICIES: Dict[str, tuple] = {
    "admins.manage": ({"admin": "manage_admins"}, False),
    "shop_owners.manage": ({"admin": "manage_shop_owners"}, False),
    "shops.manage": ({"admin": "manage_shops"}, False),
    "sellers.manage": ({"admin": "manage_sellers", "shop_owner": None}, False),
    "agents.manage": ({"admin": "manage_sellers", "shop_owner": None}, False),
    "regions.manage": ({"admin": "manage_regions"}, False),
    "categories.manage": ({"admin": "manage_categories", "shop_owner": "manage_categories"}, False),
    "products.manage": ({"admin": "manage_products", "shop_owner": "manage_products"}, True),
    "interest_rates.manage": ({"admin": "manage_settings"}, False),
    "webhooks.manage": ({"admin": "manage_settings", "shop_owner": None}, True),
    "drafts.create": ({"seller": None, "agent": None}, False),
    "drafts.list": ({"admin": None, "seller": None, "agent": None}, False),
    "drafts.manage": ({"admin": None, "seller": None, "agent": None}, True),
    "orders.view": ({"admin": "manage_orders", "shop_owner": "manage_orders", "seller": None, "agent": None}, True),
    "orders.cancel": ({"admin": "manage_orders", "seller": None, "agent": None}, True),
    "installments.view": ({"admin": "manage_installments", "shop_owner": "manage_installments",
                           "seller": None, "agent": None}, True),
    "installments.manage": ({"admin": "manage_installments"}, False),
    "installments.collect": ({"admin": "manage_installments", "seller": None, "agent": None}, True),
    "installments.cancel": ({"admin": "manage_installments", "seller": None, "agent": None}, True),
    "statistics.view": ({"admin": "view_dashboard", "shop_owner": "view_statistics"}, False),
}


class Actor(BaseModel):
    """The authenticated caller, loaded from its account document."""
    id: str
    role: Literal["admin", "shop_owner", "seller", "agent"]
    admin_role: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    shops: List[str] = Field(default_factory=list)
    shop_owners: List[Dict[str, Any]] = Field(default_factory=list)
    shop_owner_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def has_permission(self, permission: str) -> bool:
        if self.is_admin and self.admin_role == "general":
            return True
        return permission in self.permissions


def owns(actor: Actor, resource: Dict[str, Any]) -> bool:
    if actor.role == "shop_owner":
        owner = resource.get("store_owner_id", resource.get("owner_id"))
        return owner is not None and str(owner) == actor.id
    if actor.role in ("seller", "agent"):
        return str(resource.get("seller_id")) == actor.id
    return False


def can(actor: Actor, action: str, resource: Optional[Dict[str, Any]] = None) -> bool:
    roles, scoped = POLICIES[action]
    if actor.role not in roles:
        return False
    permission = roles[actor.role]
    if permission and not actor.has_permission(permission):
        return False
    if scoped and resource is not None and not actor.is_admin:
        return owns(actor, resource)
    return True


def require(actor: Actor, action: str, resource: Optional[Dict[str, Any]] = None) -> None:
    if not can(actor, action, resource):
        raise AuthorizationError("You do not have permission to perform this action")
