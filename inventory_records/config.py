import os
from dataclasses import dataclass
from typing import Optional

# Cache entries must never outlive this, whatever the environment asks for.
MAX_CACHE_TTL_SECONDS = 600


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration, read from environment variables.
    """

    cosmosdb_endpoint: Optional[str] = None
    cosmosdb_database: str = "inventory"
    cosmosdb_container_items: str = "items"
    redis_url: str = "redis://localhost:6379/0"
    events_redis_url: str = "redis://localhost:6379/1"

    # TTLs in seconds. Single items change less often than list fan-out.
    cache_ttl_item: int = 600
    cache_ttl_list: int = 300

    # Upper bounds for every outbound call, in seconds.
    store_timeout: float = 10.0
    cache_timeout: float = 2.0
    queue_timeout: float = 2.0

    queue_message_ttl: int = 86400  # 24 hours
    queue_claim_idle_ms: int = 30000
    queue_max_deliveries: int = 5

    def __post_init__(self):
        # frozen dataclass, so clamp through object.__setattr__
        object.__setattr__(
            self, "cache_ttl_item", max(1, min(self.cache_ttl_item, MAX_CACHE_TTL_SECONDS))
        )
        object.__setattr__(
            self, "cache_ttl_list", max(1, min(self.cache_ttl_list, MAX_CACHE_TTL_SECONDS))
        )

    @classmethod
    def from_env(cls) -> "Settings":
        redis_url = os.environ.get("REDIS_URL", cls.redis_url)
        return cls(
            cosmosdb_endpoint=os.environ.get("COSMOSDB_ENDPOINT"),
            cosmosdb_database=os.environ.get("COSMOSDB_DATABASE", cls.cosmosdb_database),
            cosmosdb_container_items=os.environ.get(
                "COSMOSDB_CONTAINER_ITEMS", cls.cosmosdb_container_items
            ),
            redis_url=redis_url,
            events_redis_url=os.environ.get("EVENTS_REDIS_URL", redis_url),
            cache_ttl_item=_int_env("CACHE_TTL_ITEM", cls.cache_ttl_item),
            cache_ttl_list=_int_env("CACHE_TTL_LIST", cls.cache_ttl_list),
            store_timeout=_float_env("STORE_TIMEOUT", cls.store_timeout),
            cache_timeout=_float_env("CACHE_TIMEOUT", cls.cache_timeout),
            queue_timeout=_float_env("QUEUE_TIMEOUT", cls.queue_timeout),
            queue_message_ttl=_int_env("QUEUE_MESSAGE_TTL", cls.queue_message_ttl),
            queue_claim_idle_ms=_int_env("QUEUE_CLAIM_IDLE_MS", cls.queue_claim_idle_ms),
            queue_max_deliveries=_int_env("QUEUE_MAX_DELIVERIES", cls.queue_max_deliveries),
        )
