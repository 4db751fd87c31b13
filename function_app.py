import asyncio
from contextlib import asynccontextmanager

import azure.functions as func
from fastapi import (
    FastAPI,
    HTTPException,
    Security,
    status,
    Request,
)
from fastapi.security import APIKeyHeader, APIKeyQuery

from inventory_records.cache import QueryCache
from inventory_records.config import Settings
from inventory_records.crud.item_store import CosmosItemStore
from inventory_records.db import create_cosmos_client, create_redis, get_items_container
from inventory_records.dispatcher import EventDispatcher
from inventory_records.logging_config import logger, tracer
from inventory_records.routes.errors import install_exception_handlers
from inventory_records.routes.item_route import router as item_router
from inventory_records.service import InventoryService

API_KEY_NAME = "x-functions-key"
api_key_header_scheme = APIKeyHeader(
    name=API_KEY_NAME,
    auto_error=False,
    scheme_name="ApiKeyAuthHeader",
    description="API Key (x-functions-key) in header",
)
api_key_query_scheme = APIKeyQuery(
    name="code",
    auto_error=False,
    scheme_name="ApiKeyAuthQuery",
    description="API Key (code) in query string",
)


def _get_azure_function_key(request: Request) -> str | None:
    try:
        if request.function_context and request.function_context.function_directory:
            return request.function_context.function_directory.get_function_key()
    except AttributeError:
        pass
    return None


async def get_api_key(
    api_key_from_header: str = Security(api_key_header_scheme),
    api_key_from_query: str = Security(api_key_query_scheme),
    req: Request = None,
):
    """Validate API key from header or query against Azure Function key if available."""
    client_api_key = api_key_from_header or api_key_from_query
    azure_expected_key = _get_azure_function_key(req)

    if azure_expected_key:
        if not client_api_key or client_api_key != azure_expected_key:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid API key.",
            )
    elif not client_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required.",
        )
    return client_api_key


async def start_services(app: FastAPI) -> None:
    """Build the service and its collaborators once per worker process."""
    settings = Settings.from_env()
    cosmos_client = create_cosmos_client(settings)
    cache_redis = create_redis(settings.redis_url, settings.cache_timeout)
    events_redis = create_redis(settings.events_redis_url, settings.queue_timeout)

    dispatcher = EventDispatcher(
        events_redis, timeout=settings.queue_timeout, message_ttl=settings.queue_message_ttl
    )
    await dispatcher.declare()

    app.state.inventory_service = InventoryService(
        store=CosmosItemStore(get_items_container(cosmos_client, settings), settings.store_timeout),
        cache=QueryCache(cache_redis, timeout=settings.cache_timeout),
        dispatcher=dispatcher,
        settings=settings,
    )
    app.state.clients = (cache_redis, events_redis, cosmos_client)
    logger.info("Inventory service initialized")


async def stop_services(app: FastAPI) -> None:
    cache_redis, events_redis, cosmos_client = app.state.clients
    await cache_redis.aclose()
    await events_redis.aclose()
    await cosmos_client.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await start_services(app)
    try:
        yield
    finally:
        await stop_services(app)


app = FastAPI(
    title="Inventory Records API",
    version="1.0.0",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

install_exception_handlers(app)
app.include_router(item_router, dependencies=[Security(get_api_key)])


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-records"}


_startup_lock = asyncio.Lock()

function_app = func.FunctionApp()


@function_app.route(route="{*route}", auth_level=func.AuthLevel.FUNCTION)
async def main(req: func.HttpRequest) -> func.HttpResponse:
    """Azure Functions entry-point routed through FastAPI."""
    with tracer.start_as_current_span("process_request") as span:
        span.set_attribute("http.method", req.method)
        span.set_attribute("http.url", str(req.url))
        span.set_attribute("http.route", req.route_params.get('route', ''))

        logger.info(
            f"Processing {req.method} request",
            extra={
                "method": req.method,
                "path": str(req.url),
                "route": req.route_params.get('route', '')
            }
        )

        # the Functions host does not drive the ASGI lifespan
        async with _startup_lock:
            if not hasattr(app.state, "inventory_service"):
                await start_services(app)

        try:
            response = await func.AsgiMiddleware(app).handle_async(req)
            span.set_attribute("http.status_code", response.status_code)
            return response
        except Exception as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            span.set_attribute("error.message", str(e))

            logger.error(
                f"Error processing request: {str(e)}",
                extra={"error_type": type(e).__name__}
            )
            return func.HttpResponse(
                body=str(e),
                status_code=500
            )
