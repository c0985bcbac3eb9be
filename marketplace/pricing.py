"""Money math for carts, orders and product listings."""
from typing import Any, Dict, Iterable, List, Optional

from . import config


def round_money(value: float) -> float:
    return round(float(value), 2)


def cart_totals(items: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    items = list(items)
    subtotal = sum(float(i["price"]) * int(i["quantity"]) for i in items)
    return {
        "subtotal": round_money(subtotal),
        "total_items": sum(int(i["quantity"]) for i in items),
    }


def items_by_shop(items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Group cart items per shop, keeping first-seen shop order."""
    groups: Dict[str, Dict[str, Any]] = {}
    for item in items:
        group = groups.setdefault(item["shop_id"], {"shop_id": item["shop_id"], "items": [], "subtotal": 0.0})
        group["items"].append(item)
        group["subtotal"] += float(item["price"]) * int(item["quantity"])
    result = list(groups.values())
    for group in result:
        group["subtotal"] = round_money(group["subtotal"])
    return result


def cart_summary(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    totals = cart_totals(items)
    return {
        "total_items": totals["total_items"],
        "unique_products": len(items),
        "subtotal": totals["subtotal"],
        "items_by_shop": items_by_shop(items),
        "has_unavailable_items": any(not i.get("is_available", True) for i in items),
    }


def delivery_fee(settings: Dict[str, Any], subtotal: float, base_fee: Optional[float] = None) -> float:
    """Shop delivery fee, waived at or above the free-delivery threshold."""
    fee = settings.get("delivery_fee", 0) if base_fee is None else base_fee
    free_above = settings.get("free_delivery_above")
    if free_above is not None and subtotal >= free_above:
        return 0.0
    return round_money(fee or 0)


def tax_for(subtotal: float, rate: Optional[float] = None) -> float:
    rate = config.TAX_RATE if rate is None else rate
    return round(subtotal * rate, 2)


def order_total(subtotal: float, fee: float, tax: float) -> float:
    return round_money(subtotal + fee + tax)


def discount_percentage(price: float, compare_price: Optional[float]) -> int:
    if compare_price and compare_price > price:
        return round((compare_price - price) / compare_price * 100)
    return 0


def is_available(product: Dict[str, Any]) -> bool:
    if not product.get("is_active", True) or product.get("status") != "active":
        return False
    return product.get("stock", 0) > 0 or not product.get("track_quantity", True)


def with_derived_fields(product: Dict[str, Any]) -> Dict[str, Any]:
    product["discount_percentage"] = discount_percentage(product.get("price", 0), product.get("compare_price"))
    product["is_available"] = is_available(product)
    return product
