"""Order numbering, cart keys, pricing, coupon rules and review matching."""

import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from catalog import categories_match, safe_float, safe_positive_int

ORDER_NUMBER_PREFIX = "ORD"
ORDER_SEQUENCE_WIDTH = 6

FREE_SHIPPING_THRESHOLD = 5000
KARACHI_SHIPPING_FEE = 250
STANDARD_SHIPPING_FEE = 350

PAYMENT_COD = "cod"
PAYMENT_BANK_TRANSFER = "bankTransfer"
PAYMENT_STRIPE = "stripe"
DIRECT_PAYMENT_METHODS = (PAYMENT_COD, PAYMENT_BANK_TRANSFER)

STATUS_PENDING_PAYMENT = "Pending Payment"
STATUS_PENDING_VERIFICATION = "Pending Payment Verification"
STATUS_CONFIRMED = "Order Confirmed"
STATUS_CONFIRMED_COD = "Order Confirmed - COD"
STATUS_PAYMENT_VERIFIED = "Order Confirmed - Payment Verified"
STATUS_DELIVERED = "Delivered"
ORDER_STATUSES = (
    STATUS_PENDING_PAYMENT,
    STATUS_PENDING_VERIFICATION,
    STATUS_CONFIRMED,
    STATUS_CONFIRMED_COD,
    STATUS_PAYMENT_VERIFIED,
    "Order Processing",
    "Out for delivery",
    STATUS_DELIVERED,
    "Cancelled",
)

ADDRESS_REQUIRED_FIELDS = (
    "firstName",
    "lastName",
    "email",
    "Address",
    "city",
    "country",
    "Phone",
)


def order_number_prefix(now: Optional[datetime] = None) -> str:
    current = now or datetime.utcnow()
    return f"{ORDER_NUMBER_PREFIX}-{current.strftime('%Y%m%d')}-"


def next_order_number(last_order_number: Optional[str], now: Optional[datetime] = None) -> str:
    prefix = order_number_prefix(now)
    sequence = 1
    if last_order_number and last_order_number.startswith(prefix):
        try:
            sequence = int(last_order_number[len(prefix):]) + 1
        except ValueError:
            sequence = 1
    return f"{prefix}{sequence:0{ORDER_SEQUENCE_WIDTH}d}"


def generate_order_number(orders_collection, now: Optional[datetime] = None) -> str:
    """Next ``ORD-YYYYMMDD-NNNNNN`` number for today.

    Reads the highest number issued today and adds one. Two concurrent
    checkouts can read the same value; the unique index on ``order_number``
    turns the loser into an insert error.
    """
    prefix = order_number_prefix(now)
    last_order = orders_collection.find_one(
        {"order_number": {"$regex": f"^{re.escape(prefix)}"}},
        sort=[("order_number", -1)],
    )
    return next_order_number(last_order.get("order_number") if last_order else None, now)


def format_order_number_for_display(order_number: Optional[str]) -> str:
    if not order_number:
        return "N/A"
    if len(order_number) >= 8:
        return order_number[-8:]
    return order_number


def calculate_total_quantity(items) -> int:
    return sum(safe_positive_int(item.get("quantity"), 0) for item in items or [])


def parse_cart_key(cart_key) -> Tuple[Optional[int], Optional[str]]:
    """Split ``"12"`` or ``"12_XL"`` into ``(12, "XL")``."""
    raw = str(cart_key or "").strip()
    if not raw:
        return None, None
    product_part, _, size_part = raw.partition("_")
    try:
        product_id = int(product_part)
    except ValueError:
        return None, None
    return product_id, (size_part or None)


def build_cart_key(product_id, size: Optional[str] = None) -> str:
    if size:
        return f"{product_id}_{size}"
    return str(product_id)


def unit_price_for(product_document, size: Optional[str] = None) -> float:
    if size:
        for entry in product_document.get("sizes") or []:
            if str(entry.get("size")) == str(size):
                return round(safe_float(entry.get("price"), 0.0), 2)
    return round(safe_float(product_document.get("old_price"), 0.0), 2)


def calculate_subtotal(items) -> float:
    return round(
        sum(
            safe_float(item.get("old_price"), 0.0) * safe_positive_int(item.get("quantity"), 0)
            for item in items or []
        ),
        2,
    )


def apply_discount(subtotal: float, discount: float) -> float:
    return max(0.0, round(subtotal - discount, 2))


def calculate_shipping_fee(discounted_subtotal: float, city: Optional[str]) -> int:
    if discounted_subtotal >= FREE_SHIPPING_THRESHOLD:
        return 0
    normalized_city = str(city or "").strip().lower()
    if not normalized_city:
        return 0
    if normalized_city == "karachi":
        return KARACHI_SHIPPING_FEE
    return STANDARD_SHIPPING_FEE


def evaluate_coupon(coupon_document, order_amount=None, now: Optional[datetime] = None):
    """Return ``(is_valid, message)`` for a coupon against an order amount."""
    if not coupon_document:
        return False, "Invalid coupon code"

    current = now or datetime.utcnow()
    expiry_date = coupon_document.get("expiry_date")
    if isinstance(expiry_date, datetime) and expiry_date < current:
        return False, "This coupon has expired"

    minimum = safe_float(coupon_document.get("minimum_order_value"), 0.0)
    if order_amount is not None and minimum > 0:
        amount = safe_float(order_amount, 0.0)
        if amount < minimum:
            return (
                False,
                f"Minimum order value of PKR {minimum:,.0f} is required for this coupon",
            )

    return True, None


def validate_address(address) -> List[str]:
    if not isinstance(address, dict):
        return list(ADDRESS_REQUIRED_FIELDS)
    return [
        field for field in ADDRESS_REQUIRED_FIELDS if not str(address.get(field) or "").strip()
    ]


def build_stripe_line_items(items, discount: float, shipping_fee: float, coupon_code: str = ""):
    """PKR line items with the coupon discount spread over items by value."""
    subtotal = calculate_subtotal(items)
    target_total = apply_discount(subtotal, discount)
    line_items: List[Dict] = []
    for item in items:
        quantity = safe_positive_int(item.get("quantity"), 1) or 1
        unit_price = safe_float(item.get("old_price"), 0.0)
        if discount > 0 and subtotal > 0:
            proportion = (unit_price * quantity) / subtotal
            unit_price = round((proportion * target_total) / quantity, 2)
        name = str(item.get("name") or "Item")
        if discount > 0 and coupon_code:
            name = f"{name} (Discounted with coupon: {coupon_code})"
        line_items.append(
            {
                "name": name,
                "unit_amount": int(round(unit_price * 100)),
                "quantity": quantity,
            }
        )
    if shipping_fee:
        line_items.append(
            {
                "name": "Shipping Fee",
                "unit_amount": int(round(shipping_fee * 100)),
                "quantity": 1,
            }
        )
    return line_items


def match_review_item(item, product_document) -> Optional[str]:
    """Return how an ordered item matches a product, or ``None``."""
    product_id = product_document.get("id")
    item_id = item.get("id")
    if item_id is not None and product_id is not None:
        if str(item_id) == str(product_id):
            return "ID"
        try:
            if int(float(item_id)) == int(product_id):
                return "ID"
        except (TypeError, ValueError):
            pass

    if not categories_match(item.get("category"), product_document.get("category")):
        return None
    if not item.get("category") and not product_document.get("category"):
        return None

    item_name = str(item.get("name") or "").strip().lower()
    product_name = str(product_document.get("name") or "").strip().lower()
    if item_name and product_name and item_name == product_name:
        return "Category+Name"

    # Sized items are snapshotted with the size price, not the base price.
    item_price = safe_float(item.get("old_price"), None)
    product_prices = {safe_float(product_document.get("old_price"), None)}
    for option in product_document.get("sizes") or []:
        if isinstance(option, dict):
            product_prices.add(safe_float(option.get("price"), None))
    if item_price and item_price in product_prices:
        return "Category+Price"
    return None


def find_review_match(order_documents, product_document) -> Optional[Dict]:
    for order in order_documents:
        for item in order.get("items") or []:
            if not isinstance(item, dict):
                continue
            match_type = match_review_item(item, product_document)
            if match_type:
                return {
                    "order_id": str(order.get("_id")),
                    "order_status": order.get("status"),
                    "item_id": item.get("id"),
                    "item_name": item.get("name"),
                    "item_category": item.get("category"),
                    "match_type": match_type,
                }
    return None


def order_contains_product(order_document, product_id=None, product_category=None) -> bool:
    for item in order_document.get("items") or []:
        if product_id not in (None, "") and str(item.get("id")) == str(product_id):
            return True
        if product_category and categories_match(item.get("category"), product_category):
            return True
    return False
