import base64
import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import Depends, Header
from pymongo.database import Database

from config import TOKEN_SECRET
from database import get_db, oid
from errors import AuthenticationError
from permissions import Actor

logger = logging.getLogger(__name__)

ACCOUNT_COLLECTIONS = {
    "admin": "admin",
    "shop_owner": "shopowner",
    "seller": "seller",
    "agent": "agent",
}


def hash_password(pw: str) -> str:
    return hashlib.sha256(pw.encode()).hexdigest()


def _sign(body: str) -> str:
    return hmac.new(TOKEN_SECRET.encode(), body.encode(), hashlib.sha256).hexdigest()


def make_token(subject: str, role: str) -> str:
    payload = {"sub": subject, "role": role}
    body = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
    return f"{body}.{_sign(body)}"


def read_token(token: str) -> dict:
    """
    Tokens are not JWTs: `<urlsafe base64 of the JSON payload>.<hex HMAC-SHA256 of that base64>`.
    """
    body, _, signature = token.partition(".")
    if not body or not hmac.compare_digest(_sign(body), signature):
        raise AuthenticationError("Invalid token")
    try:
        payload = json.loads(base64.urlsafe_b64decode(body.encode()))
    except ValueError:
        raise AuthenticationError("Invalid token")
    if payload.get("role") not in ACCOUNT_COLLECTIONS or not payload.get("sub"):
        raise AuthenticationError("Invalid token")
    return payload


def actor_from_account(role: str, account: dict) -> Actor:
    return Actor(
        id=str(account["_id"]),
        role=role,
        admin_role=account.get("role") if role == "admin" else None,
        permissions=account.get("permissions", []),
        shops=account.get("shops", []),
        shop_owners=account.get("shop_owners", []),
        shop_owner_id=account.get("shop_owner_id"),
    )


def login(database: Database, role: str, username: str, password: str) -> dict:
    collection = ACCOUNT_COLLECTIONS.get(role)
    if not collection:
        raise AuthenticationError("Unknown role")
    account = database[collection].find_one({"username": username})
    if not account or account.get("password_hash") != hash_password(password):
        raise AuthenticationError("Invalid credentials")
    if account.get("status", "active") != "active":
        raise AuthenticationError("Account is not active")
    logger.info("%s %s logged in", role, account["_id"])
    return {"token": make_token(str(account["_id"]), role), "role": role, "id": str(account["_id"])}


def current_actor(authorization: Optional[str] = Header(None), db: Database = Depends(get_db)) -> Actor:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Authorization token required")
    payload = read_token(authorization.split(" ", 1)[1].strip())
    role = payload["role"]
    account = db[ACCOUNT_COLLECTIONS[role]].find_one({"_id": oid(payload["sub"])})
    if not account:
        raise AuthenticationError("Account not found")
    if account.get("status", "active") != "active":
        raise AuthenticationError("Account is not active")
    return actor_from_account(role, account)
