from pydantic import BaseModel, Field, ConfigDict, EmailStr, model_validator
from typing import Annotated, Optional, List
from datetime import datetime
from enum import Enum

from inventory_records.derived import StockStatus, derive


class Category(str, Enum):
    ELECTRONICS = "Electronics"
    CLOTHING = "Clothing"
    BOOKS = "Books"
    HOME_GARDEN = "Home & Garden"
    SPORTS_OUTDOORS = "Sports & Outdoors"
    AUTOMOTIVE = "Automotive"
    HEALTH_BEAUTY = "Health & Beauty"
    TOYS_GAMES = "Toys & Games"
    FOOD_BEVERAGES = "Food & Beverages"
    OFFICE_SUPPLIES = "Office Supplies"
    OTHER = "Other"


class Unit(str, Enum):
    PIECES = "pieces"
    KG = "kg"
    LITERS = "liters"
    METERS = "meters"
    BOXES = "boxes"
    PAIRS = "pairs"
    SETS = "sets"


class ItemStatus(str, Enum):
    """
    Lifecycle status of an item.
    ACTIVE: Item is stocked and sold
    INACTIVE: Item is temporarily not sold
    DISCONTINUED: Item will not be restocked
    """

    ACTIVE = "active"
    INACTIVE = "inactive"
    DISCONTINUED = "discontinued"


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class Identity(BaseModel):
    """
    The authenticated caller, as asserted by the auth layer.
    """

    user_id: str
    role: Role = Role.USER
    name: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Supplier(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class Location(BaseModel):
    warehouse: Optional[str] = Field(default=None, min_length=1, max_length=50)
    shelf: Optional[str] = Field(default=None, max_length=20)
    bin: Optional[str] = Field(default=None, max_length=20)

    model_config = ConfigDict(extra="forbid")


class Dimensions(BaseModel):
    length: Optional[float] = Field(default=None, ge=0)
    width: Optional[float] = Field(default=None, ge=0)
    height: Optional[float] = Field(default=None, ge=0)
    weight: Optional[float] = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid")


Tag = Annotated[str, Field(min_length=1, max_length=50)]


class ItemCreate(BaseModel):
    """
    Fields a client provides to create an item. The owner is never
    client-supplied; it comes from the caller's identity.
    """

    name: str = Field(..., min_length=1, max_length=100)
    category: Category
    price: float = Field(..., ge=0, le=999999.99)
    quantity: int = Field(..., ge=0, le=999999)
    description: Optional[str] = Field(default=None, max_length=1000)
    tags: List[Tag] = Field(default_factory=list)
    sku: Optional[str] = Field(default=None, min_length=1, max_length=50)
    barcode: Optional[str] = Field(default=None, min_length=1)
    supplier: Optional[Supplier] = None
    location: Optional[Location] = None
    dimensions: Optional[Dimensions] = None
    reorder_point: int = Field(default=10, ge=0, alias="reorderPoint")
    reorder_quantity: int = Field(default=50, ge=1, alias="reorderQuantity")
    unit: Unit = Unit.PIECES
    status: ItemStatus = ItemStatus.ACTIVE
    cost: Optional[float] = Field(default=None, ge=0, le=999999.99)
    profit_margin: Optional[float] = Field(default=None, ge=0, le=100, alias="profitMargin")
    last_restocked: Optional[datetime] = Field(default=None, alias="lastRestocked")
    expiry_date: Optional[datetime] = Field(default=None, alias="expiryDate")

    model_config = ConfigDict(populate_by_name=True, extra="forbid", str_strip_whitespace=True)


class ItemUpdate(BaseModel):
    """
    Fields a client can change. ownerId is deliberately absent.
    """

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category: Optional[Category] = None
    price: Optional[float] = Field(default=None, ge=0, le=999999.99)
    quantity: Optional[int] = Field(default=None, ge=0, le=999999)
    description: Optional[str] = Field(default=None, max_length=1000)
    tags: Optional[List[Tag]] = None
    sku: Optional[str] = Field(default=None, min_length=1, max_length=50)
    barcode: Optional[str] = Field(default=None, min_length=1)
    supplier: Optional[Supplier] = None
    location: Optional[Location] = None
    dimensions: Optional[Dimensions] = None
    reorder_point: Optional[int] = Field(default=None, ge=0, alias="reorderPoint")
    reorder_quantity: Optional[int] = Field(default=None, ge=1, alias="reorderQuantity")
    unit: Optional[Unit] = None
    status: Optional[ItemStatus] = None
    cost: Optional[float] = Field(default=None, ge=0, le=999999.99)
    profit_margin: Optional[float] = Field(default=None, ge=0, le=100, alias="profitMargin")
    last_restocked: Optional[datetime] = Field(default=None, alias="lastRestocked")
    expiry_date: Optional[datetime] = Field(default=None, alias="expiryDate")

    model_config = ConfigDict(populate_by_name=True, extra="forbid", str_strip_whitespace=True)


class ItemResponse(BaseModel):
    """
    A stored item plus its derived fields.
    This is what clients receive and what the cache holds.
    """

    id: str
    name: str
    category: Category
    price: float
    quantity: int
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    sku: Optional[str] = None
    barcode: Optional[str] = None
    supplier: Optional[Supplier] = None
    location: Optional[Location] = None
    dimensions: Optional[Dimensions] = None
    reorder_point: int = Field(default=10, alias="reorderPoint")
    reorder_quantity: int = Field(default=50, alias="reorderQuantity")
    unit: Unit = Unit.PIECES
    status: ItemStatus = ItemStatus.ACTIVE
    cost: Optional[float] = None
    profit_margin: Optional[float] = Field(default=None, alias="profitMargin")
    last_restocked: Optional[datetime] = Field(default=None, alias="lastRestocked")
    expiry_date: Optional[datetime] = Field(default=None, alias="expiryDate")
    owner_id: str = Field(alias="ownerId")
    last_modifier_id: Optional[str] = Field(default=None, alias="lastModifierId")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    # Derived, never stored
    stock_status: StockStatus = Field(alias="stockStatus")
    total_value: float = Field(alias="totalValue")
    profit: Optional[float] = None
    profit_percentage: Optional[float] = Field(default=None, alias="profitPercentage")
    days_until_expiry: Optional[int] = Field(default=None, alias="daysUntilExpiry")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def recompute_derived(cls, data):
        """
        Recompute derived fields from the raw ones. Whatever derived values
        the document carries (e.g. from a cache entry) are discarded.
        """
        if isinstance(data, dict):
            data = dict(data)
            # derive() reads the stored camelCase names
            for name, field in cls.model_fields.items():
                if field.alias and name in data:
                    data.setdefault(field.alias, data.pop(name))
            data.update(derive(data))
        return data

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Pagination(BaseModel):
    current_page: int = Field(alias="currentPage")
    total_pages: int = Field(alias="totalPages")
    total_items: int = Field(alias="totalItems")
    items_per_page: int = Field(alias="itemsPerPage")
    has_next_page: bool = Field(alias="hasNextPage")
    has_prev_page: bool = Field(alias="hasPrevPage")

    model_config = ConfigDict(populate_by_name=True)


class ItemPage(BaseModel):
    """
    Response model for the item listing endpoint.
    """

    items: List[ItemResponse]
    pagination: Pagination

    model_config = ConfigDict(populate_by_name=True)


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class ItemQuery(BaseModel):
    """
    Search, filter, sort and pagination parameters for listing items.
    Page size is clamped into [1, 100] rather than rejected.
    """

    search: Optional[str] = None
    category: Optional[Category] = None
    min_price: Optional[float] = Field(default=None, ge=0, alias="minPrice")
    max_price: Optional[float] = Field(default=None, ge=0, alias="maxPrice")
    status: Optional[ItemStatus] = None
    stock_status: Optional[StockStatus] = Field(default=None, alias="stockStatus")
    sort_by: str = Field(default="createdAt", alias="sortBy")
    sort_order: SortOrder = Field(default=SortOrder.DESC, alias="sortOrder")
    page: int = Field(default=1, ge=1)
    limit: int = 10

    model_config = ConfigDict(populate_by_name=True, extra="forbid", str_strip_whitespace=True)

    def normalized(self) -> "ItemQuery":
        search = self.search or None
        limit = max(1, min(self.limit, 100))
        return self.model_copy(update={"search": search, "limit": limit})


class BulkUpdateEntry(ItemUpdate):
    """
    A single item to update in a bulk request: its id plus the changes.
    """

    id: str


class BulkUpdateRequest(BaseModel):
    items: List[dict]


class BulkUpdateError(BaseModel):
    id: Optional[str] = None
    error: str


class BulkUpdateResult(BaseModel):
    updated: int
    results: List[ItemResponse]
    errors: List[BulkUpdateError]


class CategoryStats(BaseModel):
    category: Category
    count: int
    total_value: float = Field(alias="totalValue")

    model_config = ConfigDict(populate_by_name=True)


class InventoryStats(BaseModel):
    total_items: int = Field(default=0, alias="totalItems")
    total_value: float = Field(default=0, alias="totalValue")
    total_quantity: int = Field(default=0, alias="totalQuantity")
    avg_price: Optional[float] = Field(default=None, alias="avgPrice")
    low_stock_count: int = Field(default=0, alias="lowStockCount")
    out_of_stock_count: int = Field(default=0, alias="outOfStockCount")
    categories: List[CategoryStats] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)
