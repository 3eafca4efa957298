import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from apps.api.cors import ScopedCORSMiddleware
from apps.api.dependencies import (
    Container,
    build_container,
    get_container,
    require_admin_token,
)
from core.config import Settings, get_settings
from core.errors import ClientInputError, NotFoundError, StorefrontError
from core.log import setup_logging
from core.security import verify_stripe_signature
from core.telemetry import instrument_app, setup_telemetry
from domains.checkout.schemas import CheckoutRequest, CheckoutResponse
from domains.crm.schemas import LeadPayload
from domains.orders.report import format_order_summary, recent_orders
from domains.orders.store import OrderBackupStore, parse_day

logger = logging.getLogger(__name__)

RECENT_DAYS = 7


class FulfillmentUpdate(BaseModel):
    status: str = Field(min_length=1)
    notes: Optional[str] = None


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def storefront_error_handler(
    request: Request, exc: StorefrontError
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, **exc.details},
    )


def describe_validation_error(exc: RequestValidationError) -> str:
    """First failing field, as `Invalid items.0.quantity: <reason>`"""
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    if first.get("type") == "json_invalid":
        return "Invalid JSON body"
    loc = [
        str(part)
        for part in first.get("loc", ())
        if part not in ("body", "query", "path", "header")
    ]
    if not loc:
        return f"Invalid request body: {first.get('msg')}"
    return f"Invalid {'.'.join(loc)}: {first.get('msg')}"


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    message = describe_validation_error(exc)
    logger.warning(f" ⚠️ [API] {request.url.path}: {message}")
    # the lead relay answers in its own envelope
    if request.url.path == "/crm-relay":
        return JSONResponse(status_code=400, content={"ok": False, "error": message})
    return JSONResponse(status_code=400, content={"success": False, "error": message})


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[OrderBackupStore] = None,
    gateway: Optional[Any] = None,
    redis_client: Optional[Any] = None,
    crm_relay: Optional[Any] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(title="BRISCO Storefront API")
    app.state.container = build_container(
        settings,
        store=store,
        gateway=gateway,
        redis_client=redis_client,
        crm_relay=crm_relay,
    )
    app.add_middleware(
        ScopedCORSMiddleware,
        allow_origins=settings.storefront_origins,
        open_prefixes=("/orders",),
    )
    app.add_exception_handler(
        StorefrontError, storefront_error_handler  # type: ignore[arg-type]
    )
    app.add_exception_handler(
        RequestValidationError, validation_error_handler  # type: ignore[arg-type]
    )

    if setup_telemetry("storefront-api", settings.otel_endpoint):
        instrument_app(app, with_redis=app.state.container.redis_client is not None)

    # -----------------------------------------------------------------
    # storefront
    # -----------------------------------------------------------------

    @app.post("/checkout", tags=["checkout"])
    def checkout(
        payload: CheckoutRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        container: Container = Depends(get_container),  # noqa: B008
    ) -> Dict[str, Any]:
        result = container.checkout.create_checkout(
            payload,
            user_agent=request.headers.get("user-agent"),
            ip_address=_client_ip(request),
        )
        # runs after the response is sent; a failed backup never fails checkout
        background_tasks.add_task(container.checkout.backup, result.record)

        response = CheckoutResponse(session_id=result.session_id, url=result.url)
        return response.model_dump(by_alias=True)

    @app.post("/webhook", tags=["webhook"])
    async def webhook(
        request: Request,
        container: Container = Depends(get_container),  # noqa: B008
    ) -> Dict[str, Any]:
        # raises before anything touches the store
        event = await verify_stripe_signature(request, container.settings)
        return await run_in_threadpool(container.webhook.handle_event, event)

    @app.post("/crm-relay", tags=["crm"])
    def relay_lead(
        payload: LeadPayload,
        container: Container = Depends(get_container),  # noqa: B008
    ) -> JSONResponse:
        if not payload.email:
            return JSONResponse(
                status_code=400, content={"ok": False, "error": "Missing email"}
            )
        try:
            container.crm_relay.forward_lead(payload.email, payload.name)
        except StorefrontError as err:
            return JSONResponse(
                status_code=err.status_code,
                content={"ok": False, "error": err.message, **err.details},
            )
        return JSONResponse(status_code=200, content={"ok": True})

    # -----------------------------------------------------------------
    # operator
    # -----------------------------------------------------------------

    @app.get("/orders", tags=["orders"], dependencies=[Depends(require_admin_token)])
    def list_orders(
        action: Optional[str] = None,
        date: Optional[str] = None,
        search: Optional[str] = None,
        container: Container = Depends(get_container),  # noqa: B008
    ) -> Dict[str, Any]:
        store = container.store

        if action == "all":
            orders = store.list_all()
            return {
                "success": True,
                "orders": [format_order_summary(o) for o in orders],
                "total": len(orders),
            }

        if action == "today":
            today = datetime.now(timezone.utc).date().isoformat()
            orders = store.list_by_date(today)
            return {
                "success": True,
                "orders": [format_order_summary(o) for o in orders],
                "date": today,
                "total": len(orders),
            }

        if action == "date":
            if not date:
                raise ClientInputError("Date parameter required")
            try:
                day = parse_day(date)
            except ValueError as err:
                raise ClientInputError("Date must be YYYY-MM-DD") from err
            orders = store.list_by_date(day)
            return {
                "success": True,
                "orders": [format_order_summary(o) for o in orders],
                "date": day.isoformat(),
                "total": len(orders),
            }

        if action == "search":
            if not search:
                raise ClientInputError("Search parameter required")
            orders = store.search(search)
            return {
                "success": True,
                "orders": [format_order_summary(o) for o in orders],
                "searchTerm": search,
                "total": len(orders),
            }

        if action == "stats":
            return {"success": True, "stats": store.stats()}

        orders = recent_orders(store.list_all(), days=RECENT_DAYS)
        return {
            "success": True,
            "orders": [format_order_summary(o) for o in orders],
            "period": f"Last {RECENT_DAYS} days",
            "total": len(orders),
        }

    @app.get(
        "/orders/{session_id}",
        tags=["orders"],
        dependencies=[Depends(require_admin_token)],
    )
    def get_order(
        session_id: str,
        container: Container = Depends(get_container),  # noqa: B008
    ) -> Dict[str, Any]:
        order = container.store.find_by_session_id(session_id)
        if order is None:
            raise NotFoundError(f"Order {session_id} not found")
        return {"success": True, "order": format_order_summary(order)}

    @app.post(
        "/orders/{session_id}/fulfillment",
        tags=["orders"],
        dependencies=[Depends(require_admin_token)],
    )
    def update_fulfillment(
        session_id: str,
        payload: FulfillmentUpdate,
        container: Container = Depends(get_container),  # noqa: B008
    ) -> Dict[str, Any]:
        store = container.store
        if store.find_by_session_id(session_id) is None:
            raise NotFoundError(f"Order {session_id} not found")

        update: Dict[str, Any] = {"fulfillmentStatus": payload.status}
        if payload.notes is not None:
            update["notes"] = payload.notes
        if not store.merge(session_id, update):
            raise StorefrontError("Backup store unavailable")

        logger.info(f" 📦 [Orders] {session_id} -> {payload.status}")
        order = store.find_by_session_id(session_id) or {}
        return {"success": True, "order": format_order_summary(order)}

    @app.get("/health", tags=["health"])
    def health(
        container: Container = Depends(get_container),  # noqa: B008
    ) -> Dict[str, Any]:
        settings = container.settings
        return {
            "status": "ok",
            "stripeConfigured": container.gateway is not None,
            "webhookConfigured": settings.webhook_configured,
            "crmConfigured": container.crm_relay.configured,
            "backupReady": container.store.ready,
            "dedupEnabled": container.redis_client is not None,
            "lineItemStrategy": settings.line_item_strategy,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


def main() -> None:
    uvicorn.run(
        "apps.api.main:create_app", factory=True, host="0.0.0.0", port=8000  # nosec
    )


if __name__ == "__main__":
    main()
