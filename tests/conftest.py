import copy
import json

import fakeredis
import pytest

from inventory_records.cache import QueryCache
from inventory_records.config import Settings
from inventory_records.derived import stock_status
from inventory_records.dispatcher import EventDispatcher, Queue, stream_key
from inventory_records.exceptions import NotFoundError, StoreError
from inventory_records.models.item import Identity, Role
from inventory_records.planner import StoreFilter
from inventory_records.service import InventoryService


class InMemoryItemStore:
    """
    Store double that evaluates StoreFilter criteria the way the Cosmos
    query would. Records every call so tests can tell cache hits apart.
    """

    def __init__(self):
        self.documents = {}
        self.calls = []
        self.fail_writes = False

    def _matches(self, doc, f: StoreFilter) -> bool:
        if f.owner_id is not None and doc["ownerId"] != f.owner_id:
            return False
        if f.search:
            needle = f.search.lower()
            haystack = [doc.get("name") or "", doc.get("description") or ""] + list(doc.get("tags") or [])
            if not any(needle in text.lower() for text in haystack):
                return False
        if f.category is not None and doc["category"] != f.category:
            return False
        if f.status is not None and doc["status"] != f.status:
            return False
        if f.min_price is not None and doc["price"] < f.min_price:
            return False
        if f.max_price is not None and doc["price"] > f.max_price:
            return False
        if f.stock_status is not None and stock_status(doc["quantity"], doc["reorderPoint"]) != f.stock_status:
            return False
        return True

    def _select(self, f: StoreFilter):
        return [doc for doc in self.documents.values() if self._matches(doc, f)]

    async def find(self, f: StoreFilter):
        self.calls.append("find")
        docs = sorted(self._select(f), key=lambda d: d[f.sort_by], reverse=f.descending)
        if f.limit is not None:
            docs = docs[f.offset:f.offset + f.limit]
        return copy.deepcopy(docs)

    async def count(self, f: StoreFilter):
        self.calls.append("count")
        return len(self._select(f))

    async def totals(self, f: StoreFilter):
        self.calls.append("totals")
        docs = self._select(f)
        if not docs:
            return {"totalItems": 0, "totalValue": 0, "totalQuantity": 0}
        return {
            "totalItems": len(docs),
            "totalValue": sum(d["price"] * d["quantity"] for d in docs),
            "totalQuantity": sum(d["quantity"] for d in docs),
            "avgPrice": sum(d["price"] for d in docs) / len(docs),
        }

    async def category_totals(self, f: StoreFilter):
        self.calls.append("category_totals")
        rows = {}
        for d in self._select(f):
            row = rows.setdefault(d["category"], {"category": d["category"], "count": 0, "totalValue": 0})
            row["count"] += 1
            row["totalValue"] += d["price"] * d["quantity"]
        return list(rows.values())

    async def get(self, item_id):
        self.calls.append("get")
        if item_id not in self.documents:
            raise NotFoundError(f"Inventory item '{item_id}' not found")
        return copy.deepcopy(self.documents[item_id])

    async def create(self, document):
        self.calls.append("create")
        if self.fail_writes:
            raise StoreError("store unavailable")
        self.documents[document["id"]] = copy.deepcopy(document)
        return copy.deepcopy(document)

    async def replace(self, document):
        self.calls.append("replace")
        if self.fail_writes:
            raise StoreError("store unavailable")
        if document["id"] not in self.documents:
            raise NotFoundError(f"Inventory item '{document['id']}' not found")
        self.documents[document["id"]] = copy.deepcopy(document)
        return copy.deepcopy(document)

    async def delete(self, item_id):
        self.calls.append("delete")
        if self.fail_writes:
            raise StoreError("store unavailable")
        if item_id not in self.documents:
            raise NotFoundError(f"Inventory item '{item_id}' not found")
        del self.documents[item_id]


@pytest.fixture
def cache_server():
    return fakeredis.FakeServer()


@pytest.fixture
def events_server():
    return fakeredis.FakeServer()


@pytest.fixture
async def cache_redis(cache_server):
    client = fakeredis.FakeAsyncRedis(server=cache_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
async def events_redis(events_server):
    client = fakeredis.FakeAsyncRedis(server=events_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def cache(cache_redis):
    return QueryCache(cache_redis, timeout=1.0)


@pytest.fixture
async def dispatcher(events_redis):
    dispatcher = EventDispatcher(events_redis, timeout=1.0)
    await dispatcher.declare()
    return dispatcher


@pytest.fixture
def store():
    return InMemoryItemStore()


@pytest.fixture
def service(store, cache, dispatcher):
    return InventoryService(store=store, cache=cache, dispatcher=dispatcher, settings=Settings())


@pytest.fixture
def owner():
    return Identity(user_id="user-a", role=Role.USER, name="Alice")


@pytest.fixture
def other_user():
    return Identity(user_id="user-b", role=Role.USER, name="Bob")


@pytest.fixture
def manager():
    return Identity(user_id="user-m", role=Role.MANAGER, name="Mia")


@pytest.fixture
def admin():
    return Identity(user_id="admin-1", role=Role.ADMIN, name="Root")


@pytest.fixture
def read_queue(events_redis):
    async def _read(queue: Queue):
        entries = await events_redis.xrange(stream_key(queue))
        return [json.loads(fields["message"]) for _id, fields in entries]

    return _read


@pytest.fixture
def item_fields():
    def _fields(**overrides):
        fields = {
            "name": "USB-C Cable",
            "category": "Electronics",
            "price": 9.99,
            "quantity": 20,
            "description": "Braided 1m charging cable",
            "tags": ["cable", "usb"],
            "reorderPoint": 10,
        }
        fields.update(overrides)
        return fields

    return _fields
