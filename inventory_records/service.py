"""
Inventory service: read-through caching, ownership, mutations and events.

Every mutation runs the same sequence::

    received -> authorized -> applied -> cache-invalidated -> event-dispatched -> responded

Authorization and validation fail before any side effect. A failed store
write stops the sequence. Cache invalidation and event dispatch are
advisory: their failures are logged and never undo the write. The write and
its invalidation run shielded from caller cancellation, so an abandoned
request never leaves a half-applied mutation; only event dispatch may be
skipped.
"""
import asyncio
import math
import random
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from opentelemetry import trace
from pydantic import BaseModel, ValidationError as PydanticValidationError

from inventory_records import cache as cache_keys
from inventory_records.cache import InvalidationPlan, InvalidationScope, QueryCache
from inventory_records.config import Settings
from inventory_records.derived import StockStatus, crossed_into_alert
from inventory_records.dispatcher import EventDispatcher, PublishOutcome, Queue
from inventory_records.exceptions import (
    ForbiddenError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from inventory_records.logging_config import get_child_logger, tracer
from inventory_records.models.events import (
    Actor,
    AlertItem,
    InventoryUpdateEvent,
    ItemSummary,
    LowStockAlertEvent,
    UpdateType,
)
from inventory_records.models.item import (
    BulkUpdateEntry,
    BulkUpdateError,
    BulkUpdateResult,
    CategoryStats,
    Identity,
    InventoryStats,
    ItemCreate,
    ItemPage,
    ItemQuery,
    ItemResponse,
    ItemUpdate,
    Pagination,
    Role,
)
from inventory_records.planner import (
    ownership_filter,
    parse_query,
    plan,
    plan_low_stock,
    plan_out_of_stock,
)

logger = get_child_logger("service")

BULK_UPDATE_ROLES = (Role.ADMIN, Role.MANAGER)

# Stored fields a patch may not set to null
NON_NULLABLE_FIELDS = frozenset(
    {"name", "category", "price", "quantity", "reorderPoint", "reorderQuantity", "unit", "status", "tags"}
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate(model, data):
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {model.__name__} payload.",
            errors=e.errors(include_url=False, include_context=False),
        ) from e


def generate_sku(category: str) -> str:
    timestamp = str(int(time.time() * 1000))[-6:]
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=3))
    return f"{category[:3].upper()}-{timestamp}-{suffix}"


class InventoryService:
    def __init__(
        self,
        store,
        cache: QueryCache,
        dispatcher: EventDispatcher,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.cache = cache
        self.dispatcher = dispatcher
        self.settings = settings or Settings()

    # -- authorization -------------------------------------------------

    @staticmethod
    def _authorize(identity: Identity, owner_id: str, action: str) -> None:
        if not identity.is_admin and owner_id != identity.user_id:
            logger.warning(
                f"Denied {action} for non-owner",
                extra={"user_id": identity.user_id, "owner_id": owner_id},
            )
            raise ForbiddenError(f"Not authorized to {action} this item")

    # -- invalidation --------------------------------------------------

    def _invalidation_for(
        self, identity: Identity, item_ids: Iterable[str], owner_ids: Iterable[str]
    ) -> InvalidationPlan:
        """
        Single item entries for every touched id, every list and aggregate
        entry of the actor and of each touched item's owner, and the global
        scope (admin reads see every owner's records).
        """
        owner_scopes = {cache_keys.owner_scope(identity.user_id)}
        owner_scopes.update(cache_keys.owner_scope(owner_id) for owner_id in owner_ids)
        return cache_keys.resolve(
            (
                InvalidationScope.SINGLE_ITEM,
                InvalidationScope.OWNER_LISTS,
                InvalidationScope.OWNER_AGGREGATES,
                InvalidationScope.GLOBAL,
            ),
            item_ids=item_ids,
            owner_scopes=sorted(owner_scopes),
        )

    async def _invalidate(self, invalidation: InvalidationPlan) -> bool:
        ok = await self.cache.apply(invalidation)
        if not ok:
            trace.get_current_span().set_attribute("cache.degraded", True)
            logger.warning(
                "Cache invalidation incomplete, stale entries expire with their TTL",
                extra={"keys": sorted(invalidation.keys)},
            )
        return ok

    async def _commit(self, write, invalidation: InvalidationPlan):
        result = await write
        await self._invalidate(invalidation)
        return result

    # -- events --------------------------------------------------------

    async def _emit(self, queue: Queue, payload: BaseModel) -> PublishOutcome:
        outcome = await self.dispatcher.publish(queue, payload)
        if outcome is PublishOutcome.DEGRADED:
            trace.get_current_span().set_attribute("events.degraded", True)
            logger.warning("Event dispatch degraded", extra={"queue": queue.value})
        return outcome

    async def _emit_update(
        self,
        update_type: UpdateType,
        item: ItemResponse,
        identity: Identity,
        old_quantity: Optional[int] = None,
    ) -> PublishOutcome:
        event = InventoryUpdateEvent(
            type=update_type,
            item=ItemSummary(
                id=item.id,
                name=item.name,
                category=item.category.value,
                quantity=None if update_type is UpdateType.DELETED else item.quantity,
                old_quantity=old_quantity,
            ),
            user=Actor(id=identity.user_id, name=identity.name),
        )
        return await self._emit(Queue.INVENTORY_UPDATES, event)

    async def _emit_alert_if_crossed(
        self, before: Optional[StockStatus], item: ItemResponse, identity: Identity
    ) -> Optional[PublishOutcome]:
        if not crossed_into_alert(before, item.stock_status):
            return None
        logger.info(
            "Stock status transition",
            extra={
                "item_id": item.id,
                "from": before.value if before else None,
                "to": item.stock_status.value,
            },
        )
        event = LowStockAlertEvent(
            item=AlertItem(
                id=item.id,
                name=item.name,
                category=item.category.value,
                quantity=item.quantity,
                reorder_point=item.reorder_point,
                reorder_quantity=item.reorder_quantity,
                stock_status=item.stock_status,
            ),
            user=Actor(id=identity.user_id, name=identity.name),
        )
        return await self._emit(Queue.LOW_STOCK_ALERTS, event)

    # -- reads ---------------------------------------------------------

    async def list_items(
        self, query_params: Union[ItemQuery, Mapping[str, Any], None], identity: Identity
    ) -> ItemPage:
        with tracer.start_as_current_span("list_items") as span:
            span.set_attribute("user.id", identity.user_id)
            span.set_attribute("user.role", identity.role.value)

            query = parse_query(query_params)
            key = cache_keys.fingerprint(query, identity)

            cached = await self.cache.get(key)
            if cached is not None:
                span.set_attribute("cache.hit", True)
                return ItemPage.model_validate(cached)
            span.set_attribute("cache.hit", False)

            store_filter = plan(query, identity)
            documents = await self.store.find(store_filter)
            total = await self.store.count(store_filter)

            total_pages = math.ceil(total / query.limit) if total else 0
            page = ItemPage(
                items=[ItemResponse.model_validate(doc) for doc in documents],
                pagination=Pagination(
                    current_page=query.page,
                    total_pages=total_pages,
                    total_items=total,
                    items_per_page=query.limit,
                    has_next_page=query.page < total_pages,
                    has_prev_page=query.page > 1,
                ),
            )
            span.set_attribute("items.count", len(page.items))

            await self.cache.put(
                key, page.model_dump(mode="json", by_alias=True), self.settings.cache_ttl_list
            )
            return page

    async def get_item(self, item_id: str, identity: Identity) -> ItemResponse:
        with tracer.start_as_current_span("get_item") as span:
            span.set_attribute("item.id", item_id)
            key = cache_keys.item_key(item_id)

            cached = await self.cache.get(key)
            if cached is not None:
                span.set_attribute("cache.hit", True)
                item = ItemResponse.model_validate(cached)
                # the single-item key is shared by all callers, so check ownership on every hit
                self._authorize(identity, item.owner_id, "access")
                return item
            span.set_attribute("cache.hit", False)

            item = ItemResponse.model_validate(await self.store.get(item_id))
            self._authorize(identity, item.owner_id, "access")

            await self.cache.put(key, item.to_document(), self.settings.cache_ttl_item)
            return item

    async def _cached_list(self, key: str, store_filter) -> List[ItemResponse]:
        cached = await self.cache.get(key)
        if cached is not None:
            return [ItemResponse.model_validate(doc) for doc in cached]

        items = [ItemResponse.model_validate(doc) for doc in await self.store.find(store_filter)]
        await self.cache.put(
            key, [item.to_document() for item in items], self.settings.cache_ttl_list
        )
        return items

    async def get_low_stock(self, identity: Identity) -> List[ItemResponse]:
        with tracer.start_as_current_span("get_low_stock"):
            return await self._cached_list(
                cache_keys.low_stock_key(cache_keys.scope_of(identity)), plan_low_stock(identity)
            )

    async def get_out_of_stock(self, identity: Identity) -> List[ItemResponse]:
        with tracer.start_as_current_span("get_out_of_stock"):
            return await self._cached_list(
                cache_keys.out_of_stock_key(cache_keys.scope_of(identity)),
                plan_out_of_stock(identity),
            )

    async def get_stats(self, identity: Identity) -> InventoryStats:
        with tracer.start_as_current_span("get_stats") as span:
            key = cache_keys.stats_key(cache_keys.scope_of(identity))
            cached = await self.cache.get(key)
            if cached is not None:
                span.set_attribute("cache.hit", True)
                return InventoryStats.model_validate(cached)
            span.set_attribute("cache.hit", False)

            scope = ownership_filter(identity)
            totals = await self.store.totals(scope)
            low_stock = await self.store.count(scope.with_stock_status(StockStatus.LOW_STOCK))
            out_of_stock = await self.store.count(scope.with_stock_status(StockStatus.OUT_OF_STOCK))
            categories = await self.store.category_totals(scope)

            stats = InventoryStats(
                total_items=totals.get("totalItems") or 0,
                total_value=totals.get("totalValue") or 0,
                total_quantity=totals.get("totalQuantity") or 0,
                avg_price=totals.get("avgPrice"),
                low_stock_count=low_stock,
                out_of_stock_count=out_of_stock,
                categories=sorted(
                    (
                        CategoryStats(
                            category=row["category"],
                            count=row.get("count") or 0,
                            total_value=row.get("totalValue") or 0,
                        )
                        for row in categories
                    ),
                    key=lambda row: row.count,
                    reverse=True,
                ),
            )
            await self.cache.put(
                key, stats.model_dump(mode="json", by_alias=True), self.settings.cache_ttl_list
            )
            return stats

    # -- mutations -----------------------------------------------------

    async def create_item(self, fields: Mapping[str, Any], identity: Identity) -> ItemResponse:
        with tracer.start_as_current_span("create_item") as span:
            payload = _validate(ItemCreate, fields)

            now = _now()
            document = payload.model_dump(mode="json", by_alias=True)
            document.update(
                id=str(uuid.uuid4()),
                sku=payload.sku or generate_sku(payload.category.value),
                ownerId=identity.user_id,
                lastModifierId=None,
                createdAt=now,
                updatedAt=now,
            )
            span.set_attribute("item.id", document["id"])
            logger.info(
                "Creating inventory item",
                extra={"item_id": document["id"], "user_id": identity.user_id},
            )

            stored = await asyncio.shield(
                self._commit(
                    self.store.create(document),
                    self._invalidation_for(identity, [document["id"]], [identity.user_id]),
                )
            )
            item = ItemResponse.model_validate(stored)

            await self._emit_update(UpdateType.CREATED, item, identity)
            # a new item already at or below its reorder point counts as a transition
            await self._emit_alert_if_crossed(None, item, identity)
            return item

    def _patch_document(
        self, current: Dict[str, Any], changes: Dict[str, Any], identity: Identity
    ) -> Dict[str, Any]:
        nulls = sorted(k for k, v in changes.items() if v is None and k in NON_NULLABLE_FIELDS)
        if nulls:
            raise ValidationError(
                f"Fields cannot be null: {', '.join(nulls)}",
                errors=[{"field": k, "value": None} for k in nulls],
            )
        document = {**current, **changes}
        document.update(
            ownerId=current["ownerId"],
            lastModifierId=identity.user_id,
            updatedAt=_now(),
        )
        return document

    async def update_item(
        self, item_id: str, patch: Mapping[str, Any], identity: Identity
    ) -> ItemResponse:
        with tracer.start_as_current_span("update_item") as span:
            span.set_attribute("item.id", item_id)
            changes = _validate(ItemUpdate, patch).model_dump(
                mode="json", by_alias=True, exclude_unset=True
            )
            if not changes:
                raise ValidationError("No fields provided for update.")

            current = await self.store.get(item_id)
            self._authorize(identity, current["ownerId"], "update")
            before = ItemResponse.model_validate(current)
            document = self._patch_document(current, changes, identity)

            stored = await asyncio.shield(
                self._commit(
                    self.store.replace(document),
                    self._invalidation_for(identity, [item_id], [current["ownerId"]]),
                )
            )
            item = ItemResponse.model_validate(stored)
            logger.info(
                "Inventory item updated",
                extra={
                    "item_id": item_id,
                    "old_quantity": before.quantity,
                    "quantity": item.quantity,
                },
            )

            await self._emit_update(UpdateType.UPDATED, item, identity, old_quantity=before.quantity)
            await self._emit_alert_if_crossed(before.stock_status, item, identity)
            return item

    async def delete_item(self, item_id: str, identity: Identity) -> None:
        with tracer.start_as_current_span("delete_item") as span:
            span.set_attribute("item.id", item_id)
            current = await self.store.get(item_id)
            self._authorize(identity, current["ownerId"], "delete")
            item = ItemResponse.model_validate(current)

            await asyncio.shield(
                self._commit(
                    self.store.delete(item_id),
                    self._invalidation_for(identity, [item_id], [current["ownerId"]]),
                )
            )
            logger.info("Inventory item deleted", extra={"item_id": item_id})

            await self._emit_update(UpdateType.DELETED, item, identity)

    async def _apply_bulk(self, entries: Sequence[Any], identity: Identity):
        results: List[ItemResponse] = []
        transitions = []
        errors: List[BulkUpdateError] = []
        item_ids, owner_ids = set(), set()

        try:
            for raw in entries:
                entry_id = raw.get("id") if isinstance(raw, Mapping) else None
                if entry_id is not None:
                    entry_id = str(entry_id)
                try:
                    entry = _validate(BulkUpdateEntry, raw)
                    changes = entry.model_dump(mode="json", by_alias=True, exclude_unset=True)
                    changes.pop("id", None)
                    if not changes:
                        raise ValidationError("No fields provided for update.")

                    current = await self.store.get(entry.id)
                    self._authorize(identity, current["ownerId"], "update")
                    before = ItemResponse.model_validate(current)
                    stored = await self.store.replace(
                        self._patch_document(current, changes, identity)
                    )
                except (ValidationError, NotFoundError, ForbiddenError, StoreError) as e:
                    errors.append(BulkUpdateError(id=entry_id, error=str(e)))
                    continue

                # recorded before anything else can fail, the write has happened
                item_ids.add(entry.id)
                owner_ids.add(current["ownerId"])
                item = ItemResponse.model_validate(stored)
                results.append(item)
                transitions.append((before, item))
        finally:
            if item_ids:
                await self._invalidate(self._invalidation_for(identity, item_ids, owner_ids))
        return results, transitions, errors

    async def bulk_update(self, entries: Sequence[Any], identity: Identity) -> BulkUpdateResult:
        with tracer.start_as_current_span("bulk_update") as span:
            if identity.role not in BULK_UPDATE_ROLES:
                raise ForbiddenError("Bulk update requires the admin or manager role")
            if not entries:
                raise ValidationError("Items array is required")
            span.set_attribute("batch.size", len(entries))

            results, transitions, errors = await asyncio.shield(self._apply_bulk(entries, identity))

            span.set_attribute("batch.success_count", len(results))
            logger.info(
                f"Updated {len(results)}/{len(entries)} items",
                extra={"success_count": len(results), "error_count": len(errors)},
            )

            for before, item in transitions:
                await self._emit_update(
                    UpdateType.UPDATED, item, identity, old_quantity=before.quantity
                )
                await self._emit_alert_if_crossed(before.stock_status, item, identity)

            return BulkUpdateResult(updated=len(results), results=results, errors=errors)
