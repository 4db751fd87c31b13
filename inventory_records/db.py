from azure.cosmos.aio import CosmosClient, ContainerProxy
from azure.identity.aio import DefaultAzureCredential
import redis.asyncio as aioredis

from inventory_records.config import Settings


def create_cosmos_client(settings: Settings) -> CosmosClient:
    if not settings.cosmosdb_endpoint:
        raise ValueError("COSMOSDB_ENDPOINT environment variable must be set")
    # Managed identity in Azure, developer credentials locally
    return CosmosClient(settings.cosmosdb_endpoint, DefaultAzureCredential())


def get_items_container(client: CosmosClient, settings: Settings) -> ContainerProxy:
    database = client.get_database_client(settings.cosmosdb_database)
    return database.get_container_client(settings.cosmosdb_container_items)


def create_redis(url: str, timeout: float) -> aioredis.Redis:
    return aioredis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )
