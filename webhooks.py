import logging
from typing import Any, Dict

import requests
from pymongo.database import Database

from config import WEBHOOK_TIMEOUT

logger = logging.getLogger(__name__)

EVENTS = (
    "order.completed",
    "order.cancelled",
    "installment.created",
    "installment.payment_recorded",
    "installment.cancelled",
)


def fire_webhooks(db: Database, store_owner_id: str, event: str, payload: Dict[str, Any]) -> int:
    """Posts an event to the store owner's active hooks. Returns how many deliveries succeeded."""
    hooks = db["webhook"].find({
        "store_owner_id": store_owner_id,
        "active": True,
        "$or": [{"events": event}, {"events": {"$size": 0}}],
    })
    delivered = 0
    for h in hooks:
        try:
            resp = requests.post(h.get("url"), json={"event": event, "data": payload}, timeout=WEBHOOK_TIMEOUT)
            resp.raise_for_status()
            delivered += 1
        except requests.RequestException as e:
            logger.warning("Webhook %s for %s failed: %s", h.get("url"), event, e)
    return delivered
