"""
Event payloads published to the durable queues.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from inventory_records.derived import StockStatus


class UpdateType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ItemSummary(BaseModel):
    id: str
    name: str
    category: str
    quantity: Optional[int] = None
    old_quantity: Optional[int] = Field(default=None, alias="oldQuantity")

    model_config = ConfigDict(populate_by_name=True)


class Actor(BaseModel):
    id: str
    name: Optional[str] = None


class InventoryUpdateEvent(BaseModel):
    """Every create, update and delete."""
    type: UpdateType
    item: ItemSummary
    user: Actor


class AlertItem(BaseModel):
    id: str
    name: str
    category: str
    quantity: int
    reorder_point: int = Field(alias="reorderPoint")
    reorder_quantity: int = Field(alias="reorderQuantity")
    stock_status: StockStatus = Field(alias="stockStatus")

    model_config = ConfigDict(populate_by_name=True)


class LowStockAlertEvent(BaseModel):
    """An item moved into low-stock or out-of-stock."""
    item: AlertItem
    user: Actor


class NotificationType(str, Enum):
    WELCOME = "welcome"
    PASSWORD_RESET = "password-reset"


class NotificationUser(BaseModel):
    name: str
    email: str


class EmailNotificationEvent(BaseModel):
    """Account lifecycle mail, produced by the auth service."""
    type: NotificationType
    user: NotificationUser
    reset_token: Optional[str] = Field(default=None, alias="resetToken")

    model_config = ConfigDict(populate_by_name=True)
