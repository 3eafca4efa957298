from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Header, Request

from core.cache import get_redis_client
from core.config import Settings
from core.security import check_admin_token
from domains.checkout.gateway import StripeGateway, build_gateway
from domains.checkout.service import CheckoutService
from domains.crm.relay import CrmRelay
from domains.orders.store import OrderBackupStore
from domains.webhook.service import WebhookService


@dataclass
class Container:
    """Everything a request handler may need, built once per app"""

    settings: Settings
    store: OrderBackupStore
    gateway: Optional[StripeGateway]
    redis_client: Optional[Any]
    crm_relay: CrmRelay
    checkout: CheckoutService
    webhook: WebhookService


def build_container(
    settings: Settings,
    store: Optional[OrderBackupStore] = None,
    gateway: Optional[StripeGateway] = None,
    redis_client: Optional[Any] = None,
    crm_relay: Optional[CrmRelay] = None,
) -> Container:
    """
    Anything not passed in is built from settings. Tests pass their own store
    (tmp dir) and a fake gateway.
    """
    store = store if store is not None else OrderBackupStore(settings.backup_dir)
    gateway = gateway if gateway is not None else build_gateway(settings)
    if redis_client is None:
        redis_client = get_redis_client(settings.redis_url)
    crm_relay = crm_relay if crm_relay is not None else CrmRelay.from_settings(settings)

    return Container(
        settings=settings,
        store=store,
        gateway=gateway,
        redis_client=redis_client,
        crm_relay=crm_relay,
        checkout=CheckoutService(gateway, store, settings),
        webhook=WebhookService(
            store,
            gateway=gateway,
            redis_client=redis_client,
            crm_relay=crm_relay,
            forward_orders=settings.crm_forward_orders,
        ),
    )


def get_container(request: Request) -> Container:
    container: Container = request.app.state.container
    return container


def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),  # noqa: B008
) -> None:
    settings = get_container(request).settings
    check_admin_token(x_admin_token, settings.orders_admin_token)
