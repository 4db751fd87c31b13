from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from inventory_records.exceptions import (
    ForbiddenError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from inventory_records.logging_config import get_child_logger, tracer

logger = get_child_logger("routes.errors")


def install_exception_handlers(app: FastAPI) -> None:
    """Map the service's typed outcomes onto HTTP responses."""

    @app.exception_handler(ValidationError)
    async def handle_validation_error(_: Request, exc: ValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": str(exc), "errors": exc.errors},
        )

    @app.exception_handler(NotFoundError)
    async def handle_not_found(_: Request, exc: NotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ForbiddenError)
    async def handle_forbidden(_: Request, exc: ForbiddenError):
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        with tracer.start_as_current_span("handle_store_error") as span:
            span.set_attribute("error", True)
            span.set_attribute("error.type", "database_error")
            logger.error(
                f"Database error: {exc}",
                extra={"path": request.url.path},
                exc_info=exc.original_exception,
            )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "A database error occurred."},
        )
