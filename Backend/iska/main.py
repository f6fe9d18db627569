import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import get_settings
from .core.errors import ServiceError, error_response
from .routes_bookings import router as bookings_router
from .routes_payments import router as payments_router
from .routes_tenants import router as tenants_router
from .routes_webhooks import router as webhooks_router

logger = logging.getLogger(__name__)

# Flags some clients read from every error body of an endpoint.
ERROR_FLAGS = {
    "/cancel-booking": {"success": False},
    "/capture-paypal-order": {"success": False},
    "/mpesa-stk-push": {"success": False},
    "/mpesa-stk-query": {"paid": False},
    "/remove-my-expired-trial": {"removed": False},
}

FIELD_MESSAGES = {
    "amount": "Invalid amount",
    "phone": "Invalid phone number",
}


def validation_message(exc: RequestValidationError) -> str:
    """Short message for the first validation error, e.g. 'Missing tenant_id'."""
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    error_type = first.get("type", "")
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query")]
    field = loc[-1] if loc else ""

    if error_type == "json_invalid":
        return "Invalid JSON"
    if error_type == "extra_forbidden":
        return f"Unknown field: {field}"
    if not field:
        return "Invalid request body"
    if error_type == "missing":
        return f"Missing {field}"
    if error_type == "string_too_short" and field not in FIELD_MESSAGES:
        return f"Missing {field}"
    return FIELD_MESSAGES.get(field, f"Invalid {field}")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        extra = {**ERROR_FLAGS.get(request.url.path, {}), **exc.extra}
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=error_response(exc.message, extra))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=error_response(validation_message(exc), ERROR_FLAGS.get(request.url.path)),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content=error_response("Server error", ERROR_FLAGS.get(request.url.path)),
        )


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Iska Service OS Payments Backend")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list or ["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(payments_router, tags=["payments"])
    app.include_router(webhooks_router, tags=["webhooks"])
    app.include_router(tenants_router, tags=["tenants"])
    app.include_router(bookings_router, tags=["bookings"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
