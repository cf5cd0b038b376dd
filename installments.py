"""
Installment (layaway) plans.

A plan is created once from a confirmed draft order. Its price is fixed at
creation from the active interest rate for the chosen duration:

    interest_amount     = round_half_up(total_sum * rate / 100)
    total_with_interest = total_sum + interest_amount
    monthly_payment     = ceil(total_with_interest / duration)

The schedule holds one entry per month; the last entry absorbs the rounding
so that the entries always add up to `total_with_interest`.

Status moves active -> overdue -> completed, or active/overdue -> cancelled.
Completed and cancelled plans are final. Overdue detection is derived: it is
re-evaluated whenever a plan is read or written, and on the explicit sweep
in `refresh_overdue`.
"""
import calendar
import logging
import re
from datetime import date, datetime, timezone
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as SchemaError
from pymongo.database import Database

import inventory
from config import INSTALLMENT_DURATIONS
from database import get_document, now_utc
from errors import InvalidStateTransition, NotFoundError, ValidationError
from permissions import Actor, require
from schemas import PASSPORT_PATTERN, PHONE_PATTERN, InstallmentCustomer, InstallmentPayment

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("active", "overdue")
UNPAID = ("pending", "overdue")
PAYMENT_CHANNELS = ("cash", "card", "transfer")
REQUIRED_CUSTOMER_FIELDS = ("full_name", "birth_date", "passport_series", "primary_phone")


# ------------------ Dates ------------------

def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the last day of the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def parse_date(value: Any, field: str = "date", keep_offset: bool = False) -> datetime:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        try:
            moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid {field} format")
    else:
        raise ValidationError(f"Invalid {field} format")
    if moment.tzinfo is not None and not keep_offset:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def validate_start_date(value: Any, now: Optional[datetime] = None) -> datetime:
    if value is None or value == "":
        raise ValidationError("Installment start date is required")
    # the calendar day is the one the caller wrote, in the caller's own offset
    start = parse_date(value, "start date", keep_offset=True)
    today = (now or now_utc()).date()
    if start.date() < today:
        raise ValidationError("Start date cannot be before today")
    if start.tzinfo is not None:
        start = start.astimezone(timezone.utc).replace(tzinfo=None)
    return start


# ------------------ Input validation ------------------

def parse_duration(value: Any) -> Any:
    """Numeric strings become ints; anything unparseable is returned as is."""
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return value
        return int(number) if number.is_integer() else number
    return value


def validate_duration(value: Any) -> int:
    if isinstance(value, bool) or value not in INSTALLMENT_DURATIONS:
        allowed = ", ".join(str(d) for d in INSTALLMENT_DURATIONS)
        raise ValidationError(f"Installment duration must be one of {allowed} months")
    return int(value)


def validate_customer(customer: Any) -> Dict[str, Any]:
    if not isinstance(customer, dict) or any(not customer.get(f) for f in REQUIRED_CUSTOMER_FIELDS):
        raise ValidationError("Customer details are required for an installment plan")

    passport = str(customer["passport_series"]).strip().upper()
    if not re.match(PASSPORT_PATTERN, passport):
        raise ValidationError("Passport series has a wrong format. Example: AA1234567")
    for field in ("primary_phone", "secondary_phone"):
        phone = customer.get(field)
        if phone and not re.match(PHONE_PATTERN, str(phone)):
            raise ValidationError("Phone number has a wrong format. Format: +998901234567")

    data = {
        "full_name": str(customer["full_name"]).strip(),
        "birth_date": parse_date(customer["birth_date"], "birth date"),
        "passport_series": passport,
        "primary_phone": customer["primary_phone"],
        "secondary_phone": customer.get("secondary_phone") or None,
        "image": customer.get("image") or None,
    }
    try:
        return InstallmentCustomer(**data).model_dump()
    except SchemaError as e:
        raise ValidationError(e.errors()[0]["msg"])


# ------------------ Pricing & schedule ------------------

def _number(value: Decimal):
    return int(value) if value == value.to_integral_value() else float(value)


def price_plan(total_sum: float, duration: int, interest_rate: float = 0) -> Dict[str, Any]:
    total = Decimal(str(total_sum))
    rate = Decimal(str(interest_rate or 0))
    interest_amount = (total * rate / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    total_with_interest = total + interest_amount
    monthly = (total_with_interest / duration).to_integral_value(rounding=ROUND_CEILING)
    return {
        "interest_rate": float(rate),
        "interest_amount": _number(interest_amount),
        "total_with_interest": _number(total_with_interest),
        "monthly_payment": _number(monthly),
    }


def build_schedule(start_date: datetime, duration: int, monthly_payment, total_with_interest) -> List[Dict[str, Any]]:
    amounts = [Decimal(str(monthly_payment))] * duration
    difference = Decimal(str(total_with_interest)) - sum(amounts)
    # normally only the last month moves; tiny totals can push the
    # correction back over several trailing months
    index = duration - 1
    while difference and index >= 0:
        adjusted = max(amounts[index] + difference, Decimal(0))
        difference -= adjusted - amounts[index]
        amounts[index] = adjusted
        index -= 1

    return [
        {
            "month": month,
            "amount": _number(amounts[month - 1]),
            "due_date": add_months(start_date, month),
            "status": "pending",
            "paid_at": None,
            "paid_by": None,
            "payment_method": "cash",
            "notes": None,
        }
        for month in range(1, duration + 1)
    ]


def active_rate(db: Database, duration: int) -> Optional[Dict[str, Any]]:
    return db["interestrate"].find_one({"duration": duration, "is_active": True}, sort=[("updated_at", -1)])


def build_plan(db: Database, *, order_id: int, seller_id: str, store_owner_id: str, products: List[Dict],
               total_sum: float, customer: Dict[str, Any], duration: int, start_date: Optional[datetime] = None,
               shop_id: Optional[str] = None, inventory_pool: str = "product",
               now: Optional[datetime] = None) -> Dict[str, Any]:
    """Prices a new plan and generates its schedule. Nothing is written."""
    duration = validate_duration(duration)
    start = start_date or now or now_utc()
    rate_doc = active_rate(db, duration)
    terms = price_plan(total_sum, duration, rate_doc["interest_rate"] if rate_doc else 0)

    plan = {
        "order_id": order_id,
        "seller_id": seller_id,
        "store_owner_id": store_owner_id,
        "shop_id": shop_id,
        "inventory_pool": inventory_pool,
        "products": products,
        "total_sum": total_sum,
        "customer": customer,
        "installment": {
            "duration": duration,
            "start_date": start,
            "end_date": add_months(start, duration),
            **terms,
        },
        "status": "active",
        "payments": build_schedule(start, duration, terms["monthly_payment"], terms["total_with_interest"]),
        "completed_at": None,
        "cancelled_at": None,
        "cancelled_by": None,
        "cancel_reason": None,
        "version": 0,
    }
    try:
        InstallmentPayment.model_validate(plan)
    except SchemaError as e:
        raise ValidationError(e.errors()[0]["msg"])
    return plan


# ------------------ State machine ------------------

def check_overdue(plan: Dict[str, Any], now: Optional[datetime] = None) -> str:
    if plan["status"] not in OPEN_STATUSES:
        return plan["status"]
    now = now or now_utc()
    late = [p for p in plan["payments"] if p["status"] in UNPAID and p["due_date"] < now]
    if late:
        for payment in late:
            payment["status"] = "overdue"
        plan["status"] = "overdue"
    elif all(p["status"] == "paid" for p in plan["payments"]):
        plan["status"] = "completed"
        plan["completed_at"] = now
    return plan["status"]


def record_payment(plan: Dict[str, Any], month: Any, amount: Any, paid_by: Optional[str] = None,
                   payment_method: str = "cash", notes: Optional[str] = None,
                   now: Optional[datetime] = None) -> Dict[str, Any]:
    if plan["status"] not in OPEN_STATUSES:
        raise InvalidStateTransition(f"Payments cannot be recorded on a {plan['status']} installment plan")
    try:
        month = int(month)
    except (TypeError, ValueError):
        raise ValidationError("Specify the month being paid")

    entry = next((p for p in plan["payments"] if p["month"] == month), None)
    if entry is None:
        raise NotFoundError(f"No payment is scheduled for month {month}")
    if entry["status"] == "paid":
        raise InvalidStateTransition(f"Payment for month {month} is already recorded")
    try:
        matches = round(float(amount), 2) == round(float(entry["amount"]), 2)
    except (TypeError, ValueError):
        matches = False
    if not matches:
        raise ValidationError(f"Wrong payment amount. Expected: {entry['amount']}")
    if payment_method not in PAYMENT_CHANNELS:
        raise ValidationError("Payment method must be cash, card or transfer")

    now = now or now_utc()
    entry.update(status="paid", paid_at=now, paid_by=paid_by, payment_method=payment_method, notes=notes)
    check_overdue(plan, now)
    return entry


def cancel_plan(plan: Dict[str, Any], cancelled_by: str, reason: Optional[str] = None,
                now: Optional[datetime] = None) -> None:
    if plan["status"] == "cancelled":
        raise InvalidStateTransition("Installment plan is already cancelled")
    if plan["status"] == "completed":
        raise InvalidStateTransition("A fully paid installment plan cannot be cancelled")
    plan.update(status="cancelled", cancelled_at=now or now_utc(), cancelled_by=cancelled_by, cancel_reason=reason)


# ------------------ Persistence ------------------

def save_plan(db: Database, plan: Dict[str, Any]) -> None:
    """Writes the plan back only if nobody else changed it since it was read."""
    version = plan.get("version", 0)
    plan["version"] = version + 1
    plan["updated_at"] = now_utc()
    res = db["installmentpayment"].replace_one({"_id": plan["_id"], "version": version}, plan)
    if res.matched_count == 0:
        plan["version"] = version
        raise InvalidStateTransition("Installment plan was changed by another request, please retry")


def _status_snapshot(plan: Dict[str, Any]) -> Tuple:
    return plan["status"], tuple(p["status"] for p in plan["payments"])


def refresh_status(db: Database, plan: Dict[str, Any], now: Optional[datetime] = None) -> str:
    before = _status_snapshot(plan)
    status = check_overdue(plan, now)
    if _status_snapshot(plan) != before:
        save_plan(db, plan)
        logger.info("Installment %s status is now %s", plan["_id"], status)
    return status


def load_plan(db: Database, installment_id: str, actor: Actor, action: str = "installments.view",
              now: Optional[datetime] = None) -> Dict[str, Any]:
    plan = get_document(db, "installmentpayment", installment_id, "Installment plan")
    require(actor, action, plan)
    refresh_status(db, plan, now)
    return plan


def collect_payment(db: Database, installment_id: str, actor: Actor, month: Any, amount: Any,
                    payment_method: str = "cash", notes: Optional[str] = None,
                    now: Optional[datetime] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    now = now or now_utc()
    plan = load_plan(db, installment_id, actor, "installments.collect", now)
    entry = record_payment(plan, month, amount, paid_by=actor.id, payment_method=payment_method,
                           notes=notes, now=now)
    save_plan(db, plan)
    logger.info("Installment %s: month %s paid by %s %s, plan is %s",
                plan["_id"], entry["month"], actor.role, actor.id, plan["status"])
    return plan, entry


def cancel_installment(db: Database, installment_id: str, actor: Actor, reason: Optional[str] = None,
                       now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    plan = load_plan(db, installment_id, actor, "installments.cancel", now)
    cancel_plan(plan, actor.id, reason, now)
    save_plan(db, plan)
    inventory.release(db, plan.get("inventory_pool", "product"), plan["seller_id"], plan["products"])
    logger.info("Installment %s cancelled by %s %s, stock returned", plan["_id"], actor.role, actor.id)
    return plan


def list_plans(db: Database, actor: Actor, status: Optional[str] = None, store_owner_id: Optional[str] = None,
               seller_id: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    require(actor, "installments.view")
    filt: Dict[str, Any] = {}
    if actor.role in ("seller", "agent"):
        filt["seller_id"] = actor.id
    elif actor.role == "shop_owner":
        filt["store_owner_id"] = actor.id
    else:
        if store_owner_id:
            filt["store_owner_id"] = store_owner_id
        if seller_id:
            filt["seller_id"] = seller_id
    if status in ("active", "completed", "overdue", "cancelled"):
        filt["status"] = status

    page = max(page, 1)
    limit = max(limit, 1)
    total = db["installmentpayment"].count_documents(filt)
    items = list(
        db["installmentpayment"].find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    )
    return {
        "items": items,
        "pagination": {
            "current_page": page,
            "total_pages": (total + limit - 1) // limit,
            "total_items": total,
            "items_per_page": limit,
        },
    }


def installment_stats(db: Database, match: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    pipeline = [
        {"$match": match or {}},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_amount": {"$sum": "$total_sum"}}},
    ]
    breakdown = list(db["installmentpayment"].aggregate(pipeline))
    by_status = {row["_id"]: row for row in breakdown}
    stats = {"total": sum(row["count"] for row in breakdown), "breakdown": breakdown, "amounts": {}}
    for status in ("active", "overdue", "completed", "cancelled"):
        row = by_status.get(status, {})
        stats[status] = row.get("count", 0)
        stats["amounts"][status] = row.get("total_amount", 0)
    return stats


def refresh_overdue(db: Database, now: Optional[datetime] = None) -> int:
    """Marks every open plan with a missed due date as overdue. Returns how many changed."""
    now = now or now_utc()
    query = {
        "status": {"$in": list(OPEN_STATUSES)},
        "payments": {"$elemMatch": {"status": "pending", "due_date": {"$lt": now}}},
    }
    changed = 0
    for plan in db["installmentpayment"].find(query):
        try:
            check_overdue(plan, now)
            save_plan(db, plan)
        except InvalidStateTransition:
            logger.warning("Installment %s changed during overdue sweep, left for the next run", plan["_id"])
            continue
        changed += 1
    logger.info("Overdue sweep updated %d installment plans", changed)
    return changed
