import asyncio
from typing import Any, Dict, List

from azure.cosmos.aio import ContainerProxy
from azure.cosmos.exceptions import CosmosHttpResponseError

from inventory_records.exceptions import NotFoundError, StoreError
from inventory_records.logging_config import get_child_logger, tracer
from inventory_records.planner import StoreFilter

# Create a child logger for this module
logger = get_child_logger("crud.item_store")


class CosmosItemStore:
    """
    Persistent store adapter over a Cosmos DB container partitioned by /id.

    Every call is bounded by `timeout` seconds. Backend failures surface as
    StoreError; a missing id surfaces as NotFoundError.
    """

    def __init__(self, container: ContainerProxy, timeout: float = 10.0):
        self.container = container
        self.timeout = timeout

    async def _call(self, operation: str, awaitable, **context):
        with tracer.start_as_current_span(f"store.{operation}") as span:
            for key, value in context.items():
                span.set_attribute(f"store.{key}", str(value))
            try:
                return await asyncio.wait_for(awaitable, timeout=self.timeout)
            except CosmosHttpResponseError as e:
                span.set_attribute("error", True)
                span.set_attribute("error.type", "cosmos_http_error")
                span.set_attribute("error.status_code", e.status_code)

                if e.status_code == 404:
                    logger.warning("Item not found", extra={"operation": operation, **context})
                    raise NotFoundError(
                        f"Inventory item '{context.get('item_id')}' not found"
                    ) from e

                logger.error(
                    f"Cosmos DB error during {operation}",
                    extra={"status_code": e.status_code, "error_message": e.message, **context},
                    exc_info=True,
                )
                raise StoreError(
                    f"Cosmos DB error during {operation}: Status Code {e.status_code}, Message: {e.message}",
                    original_exception=e,
                ) from e
            except asyncio.TimeoutError as e:
                span.set_attribute("error", True)
                span.set_attribute("error.type", "timeout")
                logger.error(
                    f"Cosmos DB timed out during {operation}",
                    extra={"timeout": self.timeout, **context},
                )
                raise StoreError(
                    f"Cosmos DB timed out after {self.timeout}s during {operation}.",
                    original_exception=e,
                ) from e
            except Exception as e:
                span.set_attribute("error", True)
                span.set_attribute("error.type", type(e).__name__)
                logger.error(
                    f"Unexpected error during {operation}",
                    extra={"error_type": type(e).__name__, **context},
                    exc_info=True,
                )
                raise StoreError(
                    "An unexpected error occurred during database operation.",
                    original_exception=e,
                ) from e

    async def _query(self, query: str, parameters: List[Dict[str, Any]]) -> List[Any]:
        return [
            item
            async for item in self.container.query_items(query=query, parameters=parameters)
        ]

    async def find(self, store_filter: StoreFilter) -> List[Dict[str, Any]]:
        query, params = store_filter.to_cosmos_query()
        items = await self._call("find", self._query(query, params), query=query)
        logger.info(f"Retrieved {len(items)} items", extra={"count": len(items)})
        return items

    async def count(self, store_filter: StoreFilter) -> int:
        query, params = store_filter.to_count_query()
        result = await self._call("count", self._query(query, params), query=query)
        return int(result[0]) if result else 0

    async def totals(self, store_filter: StoreFilter) -> Dict[str, Any]:
        values = {}
        for name, (query, params) in store_filter.to_aggregate_queries().items():
            result = await self._call("totals", self._query(query, params), query=query)
            # SUM over no documents yields no row
            values[name] = (result[0] if result else None) or 0

        price_sum = values.pop("priceSum")
        values["avgPrice"] = price_sum / values["totalItems"] if values["totalItems"] else None
        return values

    async def category_totals(self, store_filter: StoreFilter) -> List[Dict[str, Any]]:
        query, params = store_filter.to_category_rows_query()
        rows = await self._call("category_totals", self._query(query, params), query=query)

        totals: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            entry = totals.setdefault(
                row["category"], {"category": row["category"], "count": 0, "totalValue": 0}
            )
            entry["count"] += 1
            entry["totalValue"] += (row.get("price") or 0) * (row.get("quantity") or 0)
        return list(totals.values())

    async def get(self, item_id: str) -> Dict[str, Any]:
        return await self._call(
            "get",
            self.container.read_item(item=item_id, partition_key=item_id),
            item_id=item_id,
        )

    async def create(self, document: Dict[str, Any]) -> Dict[str, Any]:
        result = await self._call(
            "create", self.container.create_item(body=document), item_id=document["id"]
        )
        logger.info("Item created successfully", extra={"item_id": document["id"]})
        return result

    async def replace(self, document: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call(
            "replace",
            self.container.replace_item(item=document["id"], body=document),
            item_id=document["id"],
        )

    async def delete(self, item_id: str) -> None:
        await self._call(
            "delete",
            self.container.delete_item(item=item_id, partition_key=item_id),
            item_id=item_id,
        )
