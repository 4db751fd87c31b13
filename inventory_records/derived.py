"""
Derived state for inventory items.

Stock status and the value/profit figures are never stored. They are
computed here, from the raw fields, every time an item is read or written,
so no read path can drift from the source fields.
"""
import math
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class StockStatus(str, Enum):
    OUT_OF_STOCK = "out-of-stock"
    LOW_STOCK = "low-stock"
    IN_STOCK = "in-stock"


ALERTING_STATUSES = frozenset({StockStatus.LOW_STOCK, StockStatus.OUT_OF_STOCK})


def stock_status(quantity: int, reorder_point: int) -> StockStatus:
    """
    Classify availability from quantity against the reorder point.

    0 is out of stock, anything up to and including the reorder point is
    low stock, everything above it is in stock.
    """
    if quantity <= 0:
        return StockStatus.OUT_OF_STOCK
    if quantity <= reorder_point:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


def total_value(price: float, quantity: int) -> float:
    return price * quantity


def profit(price: float, cost: Optional[float]) -> Optional[float]:
    if cost is None:
        return None
    return price - cost


def profit_percentage(price: float, cost: Optional[float]) -> Optional[float]:
    if not cost:
        return None
    return (price - cost) / cost * 100


def days_until_expiry(
    expiry_date: Optional[datetime], today: Optional[datetime] = None
) -> Optional[int]:
    if expiry_date is None:
        return None
    if isinstance(expiry_date, date) and not isinstance(expiry_date, datetime):
        expiry_date = datetime(expiry_date.year, expiry_date.month, expiry_date.day, tzinfo=timezone.utc)
    if expiry_date.tzinfo is None:
        expiry_date = expiry_date.replace(tzinfo=timezone.utc)
    today = today or datetime.now(timezone.utc)
    return math.ceil((expiry_date - today).total_seconds() / 86400)


def is_alerting(status: StockStatus) -> bool:
    return status in ALERTING_STATUSES


def crossed_into_alert(before: Optional[StockStatus], after: StockStatus) -> bool:
    """
    True when the status changed and the new status needs restocking.

    `before` is None for a freshly created item. low-stock -> out-of-stock
    is a new transition; low-stock -> low-stock is not.
    """
    return before != after and is_alerting(after)


def derive(document: Mapping[str, Any], today: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Compute every derived field for a stored item document (camelCase keys).
    """
    price = document.get("price", 0) or 0
    quantity = document.get("quantity", 0) or 0
    cost = document.get("cost")
    expiry = document.get("expiryDate")
    if isinstance(expiry, str):
        # JSON dumps write UTC as a trailing Z
        expiry = datetime.fromisoformat(expiry.replace("Z", "+00:00"))

    return {
        "stockStatus": stock_status(quantity, document.get("reorderPoint", 10)),
        "totalValue": total_value(price, quantity),
        "profit": profit(price, cost),
        "profitPercentage": profit_percentage(price, cost),
        "daysUntilExpiry": days_until_expiry(expiry, today),
    }
