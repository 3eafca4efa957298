from pathlib import Path
from typing import Any, Dict
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from apps.api.main import create_app
from core.config import Settings
from core.errors import UpstreamError
from domains.checkout.gateway import StripeGateway
from domains.orders.store import OrderBackupStore
from tests.e2e.test_signature import SECRET


def fake_stripe_session(
    params: Dict[str, Any], session_id: str = "cs_test_123"
) -> Dict[str, Any]:
    """What Stripe echoes back for a created session (only the fields we read)"""
    amount_total = sum(
        line["price_data"]["unit_amount"] * line["quantity"]
        for line in params["line_items"]
    )
    return {
        "id": session_id,
        "url": f"https://checkout.stripe.com/c/pay/{session_id}",
        "amount_subtotal": amount_total,
        "amount_total": amount_total,
        "currency": "usd",
        "customer_email": params.get("customer_email"),
        "metadata": dict(params.get("metadata") or {}),
        "mode": params.get("mode"),
        "payment_method_types": params.get("payment_method_types"),
        "payment_intent": None,
        "customer": None,
    }


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    return tmp_path / "order-backups"


@pytest.fixture
def settings(backup_dir: Path) -> Settings:
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=SECRET,
        crm_webhook_url="https://crm.example.test/hooks/abc",
        backup_dir=str(backup_dir),
    )


@pytest.fixture
def store(backup_dir: Path) -> OrderBackupStore:
    return OrderBackupStore(backup_dir)


@pytest.fixture
def gateway() -> MagicMock:
    mock_gateway = MagicMock(spec=StripeGateway)
    mock_gateway.create_session.side_effect = fake_stripe_session
    # webhook falls back to the event payload
    mock_gateway.retrieve_session.side_effect = UpstreamError("stripe down")
    return mock_gateway


@pytest.fixture
def client(
    settings: Settings, store: OrderBackupStore, gateway: MagicMock
) -> TestClient:
    app = create_app(settings=settings, store=store, gateway=gateway)
    return TestClient(app)
