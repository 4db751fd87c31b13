"""
Ownership-scoped query planning.

Translates a caller's list parameters and identity into a StoreFilter,
which renders itself as a parameterized Cosmos DB SQL query. Every
predicate, including the stock status one, is evaluated by the store.
"""
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from inventory_records.derived import StockStatus
from inventory_records.exceptions import ValidationError
from inventory_records.models.item import Identity, ItemQuery, SortOrder

SORTABLE_FIELDS = ("name", "price", "quantity", "createdAt", "updatedAt")
MAX_PAGE_SIZE = 100

# Server-side rendition of derived.stock_status
STOCK_STATUS_PREDICATES = {
    StockStatus.OUT_OF_STOCK: "c.quantity = 0",
    StockStatus.LOW_STOCK: "(c.quantity > 0 AND c.quantity <= c.reorderPoint)",
    StockStatus.IN_STOCK: "c.quantity > c.reorderPoint",
}

AGGREGATES = {
    "totalItems": "COUNT(1)",
    "totalValue": "SUM(c.price * c.quantity)",
    "totalQuantity": "SUM(c.quantity)",
    "priceSum": "SUM(c.price)",
}


@dataclass(frozen=True)
class StoreFilter:
    owner_id: Optional[str] = None
    search: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    stock_status: Optional[StockStatus] = None
    sort_by: str = "createdAt"
    descending: bool = True
    offset: int = 0
    limit: Optional[int] = None

    def where(self) -> Tuple[List[str], List[Dict[str, Any]]]:
        clauses: List[str] = []
        params: List[Dict[str, Any]] = []

        if self.owner_id is not None:
            clauses.append("c.ownerId = @ownerId")
            params.append({"name": "@ownerId", "value": self.owner_id})
        if self.search:
            clauses.append(
                "(CONTAINS(c.name, @search, true)"
                " OR CONTAINS(c.description, @search, true)"
                " OR EXISTS(SELECT VALUE t FROM t IN c.tags WHERE CONTAINS(t, @search, true)))"
            )
            params.append({"name": "@search", "value": self.search})
        if self.category is not None:
            clauses.append("c.category = @category")
            params.append({"name": "@category", "value": self.category})
        if self.status is not None:
            clauses.append("c.status = @status")
            params.append({"name": "@status", "value": self.status})
        if self.min_price is not None:
            clauses.append("c.price >= @minPrice")
            params.append({"name": "@minPrice", "value": self.min_price})
        if self.max_price is not None:
            clauses.append("c.price <= @maxPrice")
            params.append({"name": "@maxPrice", "value": self.max_price})
        if self.stock_status is not None:
            clauses.append(STOCK_STATUS_PREDICATES[self.stock_status])

        return clauses, params

    def _where_sql(self) -> Tuple[str, List[Dict[str, Any]]]:
        clauses, params = self.where()
        return (" WHERE " + " AND ".join(clauses)) if clauses else "", params

    def to_cosmos_query(self) -> Tuple[str, List[Dict[str, Any]]]:
        where_sql, params = self._where_sql()
        # sort_by is checked against SORTABLE_FIELDS, safe to interpolate
        direction = "DESC" if self.descending else "ASC"
        query = f"SELECT * FROM c{where_sql} ORDER BY c.{self.sort_by} {direction}"
        if self.limit is not None:
            query += " OFFSET @offset LIMIT @limit"
            params = params + [
                {"name": "@offset", "value": self.offset},
                {"name": "@limit", "value": self.limit},
            ]
        return query, params

    def to_count_query(self) -> Tuple[str, List[Dict[str, Any]]]:
        where_sql, params = self._where_sql()
        return f"SELECT VALUE COUNT(1) FROM c{where_sql}", params

    def to_aggregate_queries(self) -> Dict[str, Tuple[str, List[Dict[str, Any]]]]:
        """
        One single-aggregate VALUE query per total. Cross-partition queries
        only merge a lone VALUE aggregate, so the totals are not combined
        into one SELECT and the average is derived from sum and count.
        """
        where_sql, params = self._where_sql()
        return {
            name: (f"SELECT VALUE {expression} FROM c{where_sql}", params)
            for name, expression in AGGREGATES.items()
        }

    def to_category_rows_query(self) -> Tuple[str, List[Dict[str, Any]]]:
        # grouped client-side, GROUP BY is not available across partitions
        where_sql, params = self._where_sql()
        return f"SELECT c.category, c.price, c.quantity FROM c{where_sql}", params

    def with_stock_status(self, stock_status: StockStatus) -> "StoreFilter":
        return replace(self, stock_status=stock_status)


def parse_query(params: Union[ItemQuery, Mapping[str, Any], None]) -> ItemQuery:
    """
    Validate raw list parameters. Empty strings count as absent.
    """
    if isinstance(params, ItemQuery):
        return params.normalized()
    cleaned = {k: v for k, v in (params or {}).items() if v not in (None, "")}
    try:
        return ItemQuery.model_validate(cleaned).normalized()
    except PydanticValidationError as e:
        raise ValidationError("Invalid query parameters.", errors=e.errors(include_url=False, include_context=False)) from e


def ownership_filter(identity: Identity) -> StoreFilter:
    """
    Admins see the global record set, everyone else only what they created.
    """
    return StoreFilter(owner_id=None if identity.is_admin else identity.user_id)


def plan(params: Union[ItemQuery, Mapping[str, Any], None], identity: Identity) -> StoreFilter:
    query = parse_query(params)

    if query.sort_by not in SORTABLE_FIELDS:
        raise ValidationError(
            f"Sort by must be one of {', '.join(SORTABLE_FIELDS)}.",
            errors=[{"field": "sortBy", "value": query.sort_by}],
        )
    if (
        query.min_price is not None
        and query.max_price is not None
        and query.min_price > query.max_price
    ):
        raise ValidationError(
            "Minimum price cannot exceed maximum price.",
            errors=[{"field": "minPrice", "value": query.min_price}],
        )

    return replace(
        ownership_filter(identity),
        search=query.search,
        category=query.category.value if query.category else None,
        status=query.status.value if query.status else None,
        min_price=query.min_price,
        max_price=query.max_price,
        stock_status=query.stock_status,
        sort_by=query.sort_by,
        descending=query.sort_order == SortOrder.DESC,
        offset=(query.page - 1) * query.limit,
        limit=min(query.limit, MAX_PAGE_SIZE),
    )


def plan_low_stock(identity: Identity) -> StoreFilter:
    return replace(
        ownership_filter(identity),
        stock_status=StockStatus.LOW_STOCK,
        sort_by="quantity",
        descending=False,
    )


def plan_out_of_stock(identity: Identity) -> StoreFilter:
    return replace(
        ownership_filter(identity),
        stock_status=StockStatus.OUT_OF_STOCK,
        sort_by="updatedAt",
        descending=True,
    )
