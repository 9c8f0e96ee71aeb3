"""
Entity Extractor

Turns raw Shopify order nodes into customer, order and line item rows ready
for the sink. Extraction never raises on malformed source data: bad records
are skipped and counted, bad numerics degrade to defaults.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from cohort_sync.exceptions import ValidationSkip
from cohort_sync.utils.helpers import parse_datetime, parse_decimal, parse_non_negative_int, strip_gid
from cohort_sync.utils.logger import log


PLACEHOLDER_EMAIL_DOMAIN = "placeholder.invalid"
GUEST_CUSTOMER_PREFIX = "guest-"
DEFAULT_FULFILLMENT_STATUS = "UNFULFILLED"


@dataclass
class CustomerExtraction:
    """Deduplicated customers keyed by external ID"""
    customers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    skipped_count: int = 0
    skips: List[ValidationSkip] = field(default_factory=list)

    @property
    def rows(self) -> List[Dict[str, Any]]:
        return list(self.customers.values())


@dataclass
class OrderExtraction:
    orders: List[Dict[str, Any]] = field(default_factory=list)
    skipped_count: int = 0
    skips: List[ValidationSkip] = field(default_factory=list)
    unresolved_customer_count: int = 0


@dataclass
class LineItemExtraction:
    line_items: List[Dict[str, Any]] = field(default_factory=list)
    dropped_count: int = 0
    dropped_order_ids: List[str] = field(default_factory=list)


def normalize_tags(value: Any) -> List[str]:
    """
    Normalize a Shopify tag field.

    None -> []; "a, b ,c" -> ["a", "b", "c"]; lists are trimmed.
    Blank entries are dropped and duplicates keep their first position.
    """
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, (list, tuple)):
        parts = [str(item) for item in value if item is not None]
    else:
        parts = [str(value)]

    tags: List[str] = []
    for part in parts:
        tag = part.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def _money(node: Any) -> Decimal:
    """Read `{shopMoney: {amount}}` or `{amount}` money structures"""
    if not isinstance(node, dict):
        return parse_decimal(node)
    if "shopMoney" in node:
        return _money(node.get("shopMoney"))
    return parse_decimal(node.get("amount"))


def order_timestamp(raw_order: Dict[str, Any]) -> Optional[datetime]:
    """The bucketing timestamp of an order: processedAt, else createdAt"""
    return parse_datetime(raw_order.get("processedAt")) or parse_datetime(raw_order.get("createdAt"))


def placeholder_email(shopify_customer_id: str) -> str:
    return f"customer-{shopify_customer_id}@{PLACEHOLDER_EMAIL_DOMAIN}"


def _customer_row(raw_customer: Dict[str, Any], shopify_customer_id: str, first_seen: Optional[datetime]) -> Dict[str, Any]:
    email = (raw_customer.get("email") or "").strip().lower()

    # numberOfOrders/amountSpent replaced ordersCount/totalSpentV2 in newer API versions
    orders_count = raw_customer.get("numberOfOrders")
    if orders_count is None:
        orders_count = raw_customer.get("ordersCount")
    amount_spent = raw_customer.get("amountSpent")
    if amount_spent is None:
        amount_spent = raw_customer.get("totalSpentV2")

    return {
        "shopify_customer_id": shopify_customer_id,
        "email": email or placeholder_email(shopify_customer_id),
        "first_name": raw_customer.get("firstName"),
        "last_name": raw_customer.get("lastName"),
        "phone": raw_customer.get("phone"),
        "orders_count": parse_non_negative_int(orders_count),
        "total_spent": _money(amount_spent),
        "tags": normalize_tags(raw_customer.get("tags")),
        "created_at": first_seen,
        "updated_at": parse_datetime(raw_customer.get("updatedAt")) or datetime.utcnow(),
    }


def extract_customers(raw_orders: List[Dict[str, Any]]) -> CustomerExtraction:
    """
    Build one customer row per external customer ID.

    created_at holds the earliest order timestamp seen for the customer in
    this batch, whatever the input order.
    """
    result = CustomerExtraction()

    for raw_order in raw_orders:
        order_id = strip_gid(raw_order.get("id"))
        raw_customer = raw_order.get("customer")
        if not isinstance(raw_customer, dict):
            result.skipped_count += 1
            result.skips.append(ValidationSkip("customer", order_id, "order has no customer"))
            continue

        customer_id = strip_gid(raw_customer.get("id"))
        if not customer_id:
            result.skipped_count += 1
            result.skips.append(ValidationSkip("customer", order_id, "customer id missing or malformed"))
            continue

        seen_at = order_timestamp(raw_order)
        existing = result.customers.get(customer_id)

        if existing is None:
            result.customers[customer_id] = _customer_row(raw_customer, customer_id, seen_at)
        elif seen_at is not None and (existing["created_at"] is None or seen_at < existing["created_at"]):
            existing["created_at"] = seen_at

    # Customers seen only on orders without timestamps fall back to Shopify's own date
    for customer_id, row in result.customers.items():
        if row["created_at"] is None:
            row["created_at"] = row["updated_at"]

    log.info(
        f"Extracted {len(result.customers)} unique customers "
        f"from {len(raw_orders)} orders ({result.skipped_count} orders without customer)"
    )
    return result


def _fulfillment_status(raw_order: Dict[str, Any]) -> str:
    status = raw_order.get("displayFulfillmentStatus")
    if status:
        return status
    fulfillments = raw_order.get("fulfillments") or []
    if fulfillments and isinstance(fulfillments[0], dict) and fulfillments[0].get("displayStatus"):
        return fulfillments[0]["displayStatus"]
    return DEFAULT_FULFILLMENT_STATUS


def extract_orders(raw_orders: List[Dict[str, Any]], customer_id_map: Dict[str, int]) -> OrderExtraction:
    """
    Build order rows, resolving each order's customer surrogate ID.

    Orders without any timestamp or with a negative total are rejected.
    Orders without a customer get a guest placeholder external customer ID.
    """
    result = OrderExtraction()
    seen = set()
    synced_at = datetime.utcnow()

    for raw_order in raw_orders:
        order_id = strip_gid(raw_order.get("id"))
        if not order_id:
            result.skips.append(ValidationSkip("order", None, "order id missing or malformed"))
            continue
        if order_id in seen:
            continue

        processed_at = order_timestamp(raw_order)
        if processed_at is None:
            result.skips.append(ValidationSkip("order", order_id, "no processed or created timestamp"))
            continue

        total_price = _money(raw_order.get("totalPriceSet"))
        if total_price < 0:
            result.skips.append(ValidationSkip("order", order_id, f"negative total {total_price}"))
            continue

        raw_customer = raw_order.get("customer")
        shopify_customer_id = strip_gid(raw_customer.get("id")) if isinstance(raw_customer, dict) else None
        if shopify_customer_id:
            customer_id = customer_id_map.get(shopify_customer_id)
            if customer_id is None:
                result.unresolved_customer_count += 1
        else:
            shopify_customer_id = f"{GUEST_CUSTOMER_PREFIX}{order_id}"
            customer_id = None

        seen.add(order_id)
        result.orders.append({
            "shopify_order_id": order_id,
            "order_number": raw_order.get("name"),
            "customer_id": customer_id,
            "shopify_customer_id": shopify_customer_id,
            "total_price": total_price,
            "financial_status": raw_order.get("displayFinancialStatus"),
            "fulfillment_status": _fulfillment_status(raw_order),
            "tags": normalize_tags(raw_order.get("tags")),
            "sales_channel": raw_order.get("sourceName"),
            "processed_at": processed_at,
            "created_at": parse_datetime(raw_order.get("createdAt")) or processed_at,
            "synced_at": synced_at,
        })

    result.skipped_count = len(result.skips)
    for skip in result.skips:
        log.warning(f"Skipped {skip}")
    if result.unresolved_customer_count:
        log.warning(f"{result.unresolved_customer_count} orders reference customers missing from the ID map")

    log.info(f"Extracted {len(result.orders)} orders ({result.skipped_count} rejected)")
    return result


def _line_item_row(node: Dict[str, Any], order_id: int, shopify_order_id: str, processed_at: Optional[datetime], synced_at: datetime) -> Dict[str, Any]:
    variant = node.get("variant") if isinstance(node.get("variant"), dict) else {}
    product = variant.get("product") if isinstance(variant.get("product"), dict) else {}

    return {
        "order_id": order_id,
        "shopify_order_id": shopify_order_id,
        "shopify_line_item_id": strip_gid(node.get("id")),
        "shopify_product_id": strip_gid(product.get("id")),
        "shopify_variant_id": strip_gid(variant.get("id")),
        "sku": node.get("sku") or variant.get("sku"),
        "title": node.get("title"),
        "vendor": node.get("vendor") or product.get("vendor"),
        "product_type": product.get("productType"),
        "quantity": parse_non_negative_int(node.get("quantity")),
        "price": _money(node.get("originalUnitPriceSet")),
        "created_at": processed_at,
        "synced_at": synced_at,
    }


def extract_line_items(raw_orders: List[Dict[str, Any]], order_id_map: Dict[str, int]) -> LineItemExtraction:
    """
    Build line item rows for every order present in order_id_map.

    Line items of orders missing from the map are dropped and counted.
    An order that appears more than once contributes its items once.
    """
    result = LineItemExtraction()
    synced_at = datetime.utcnow()
    seen = set()

    for raw_order in raw_orders:
        shopify_order_id = strip_gid(raw_order.get("id"))
        if shopify_order_id and shopify_order_id in seen:
            continue
        seen.add(shopify_order_id)
        edges = ((raw_order.get("lineItems") or {}).get("edges")) or []
        nodes = [edge.get("node") for edge in edges if isinstance(edge, dict) and isinstance(edge.get("node"), dict)]

        order_id = order_id_map.get(shopify_order_id) if shopify_order_id else None
        if order_id is None:
            if nodes:
                result.dropped_count += len(nodes)
                result.dropped_order_ids.append(shopify_order_id or "<no id>")
            continue

        processed_at = order_timestamp(raw_order)
        for node in nodes:
            result.line_items.append(_line_item_row(node, order_id, shopify_order_id, processed_at, synced_at))

    if result.dropped_count:
        log.warning(
            f"Dropped {result.dropped_count} line items for {len(result.dropped_order_ids)} "
            f"unresolved orders: {result.dropped_order_ids[:10]}"
        )
    log.info(f"Extracted {len(result.line_items)} line items")
    return result
