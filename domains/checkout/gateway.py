import logging
from typing import Any, Dict, List, Optional

import stripe

from core.config import Settings
from core.errors import UpstreamError, UpstreamTimeout

logger = logging.getLogger(__name__)

SESSION_EXPAND = ["payment_intent.latest_charge", "line_items"]


def _to_plain(obj: Any) -> Dict[str, Any]:
    """StripeObject -> plain dict (recursive), across SDK versions"""
    to_dict_recursive = getattr(obj, "to_dict_recursive", None)
    if callable(to_dict_recursive):
        return to_dict_recursive()
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


class StripeGateway:
    """
    Thin wrapper around the Stripe SDK.
    Single-shot calls: Stripe errors become UpstreamError, nothing is retried here.
    """

    def __init__(self, secret_key: str) -> None:
        self._api_key = secret_key
        # a timed-out create may still have succeeded on Stripe's side
        stripe.max_network_retries = 0

    def create_session(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            session = stripe.checkout.Session.create(api_key=self._api_key, **params)
        except stripe.APIConnectionError as e:
            logger.error(f" ❌ [Stripe] No response creating session: {e}")
            raise UpstreamTimeout(
                "Payment processor did not respond; outcome unknown",
                details={"type": type(e).__name__, "code": e.code},
            ) from e
        except stripe.StripeError as e:
            logger.error(f" ❌ [Stripe] Session create failed: {type(e).__name__} {e}")
            raise UpstreamError(
                e.user_message or "Payment processor error",
                details={"type": type(e).__name__, "code": e.code},
            ) from e
        return _to_plain(session)

    def retrieve_session(
        self, session_id: str, expand: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        try:
            session = stripe.checkout.Session.retrieve(
                session_id,
                api_key=self._api_key,
                expand=expand if expand is not None else SESSION_EXPAND,
            )
        except stripe.StripeError as e:
            logger.warning(f" ⚠️ [Stripe] Session {session_id} lookup failed: {e}")
            raise UpstreamError(
                e.user_message or "Payment processor error",
                details={"type": type(e).__name__, "code": e.code},
            ) from e
        return _to_plain(session)


def build_gateway(settings: Settings) -> Optional[StripeGateway]:
    """
    No secret key, no client: callers report "not configured"
    """
    if not settings.stripe_secret_key:
        logger.warning("⚠️ STRIPE_SECRET_KEY not set. Checkout disabled.")
        return None
    return StripeGateway(settings.stripe_secret_key)
