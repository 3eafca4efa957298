import hmac
import json
import logging
from typing import Any, Dict, Optional

import stripe
from fastapi import Request

from core.config import Settings
from core.errors import AuthorizationError, ConfigurationError, SignatureError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def construct_event(payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
    """
    Verify a Stripe-signed payload and return the event as a plain dict
    """
    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        logger.error(f" ❌ [Webhook] Signature verification failed: {e}")
        raise SignatureError(f"Webhook Error: {e}") from e
    except ValueError as e:
        logger.error(f" ❌ [Webhook] Payload is not valid JSON: {e}")
        raise SignatureError("Webhook Error: invalid payload") from e

    event: Dict[str, Any] = json.loads(payload)
    return event


async def verify_stripe_signature(
    request: Request, settings: Settings
) -> Dict[str, Any]:
    """
    Verify the signature (Stripe scheme: HMAC-SHA256 over "<t>.<raw body>")
    """

    # 1. secret
    if not settings.stripe_webhook_secret:
        logger.error(" STRIPE_WEBHOOK_SECRET is not set")
        raise ConfigurationError("Stripe not configured")

    # 2. header signature
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.warning(f" {SIGNATURE_HEADER} header is missing")
        raise SignatureError(f"{SIGNATURE_HEADER} header is required")

    # 3. raw body, signature covers the exact bytes
    body_bytes = await request.body()
    return construct_event(body_bytes, signature, settings.stripe_webhook_secret)


def check_admin_token(token: Optional[str], expected: Optional[str]) -> None:
    """
    Operator endpoints stay open unless ORDERS_ADMIN_TOKEN is configured
    """
    if expected is None:
        return
    if not token or not hmac.compare_digest(token, expected):
        logger.warning(" X-Admin-Token header is missing or invalid")
        raise AuthorizationError("Admin token required")
