import logging
from typing import Any, Dict, Optional

import httpx

from core.config import Settings
from core.errors import ConfigurationError, UpstreamError, UpstreamTimeout
from domains.orders.model import utc_now_iso

logger = logging.getLogger(__name__)

ORDER_PRODUCT_NAME = "BRISCO - Be Your Own Light"


class CrmRelay:
    """
    Forwards captured emails (and, optionally, paid orders) to the GoHighLevel webhook
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        source: str = "brisclothing.com",
        tag: str = "exclusive_access",
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.source = source
        self.tag = tag
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(
        cls, settings: Settings, client: Optional[httpx.Client] = None
    ) -> "CrmRelay":
        return cls(
            webhook_url=settings.crm_webhook_url,
            source=settings.crm_source,
            tag=settings.crm_tag,
            timeout=settings.http_timeout,
            client=client,
        )

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    def forward_lead(self, email: str, name: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            "email": email,
            "name": name or "",
            "source": self.source,
            "tag": self.tag,
            "timestamp": utc_now_iso(),
        }
        logger.info(f" 📨 [CRM] Forwarding lead {email}...")
        self._post(payload)
        logger.info(" ✅ [CRM] Lead delivered.")
        return payload

    def forward_order(self, order: Dict[str, Any]) -> bool:
        """
        Best-effort notification of a paid order; never raises
        """
        payload = {
            "orderId": order.get("sessionId"),
            "customerEmail": order.get("customerEmail"),
            "amount": order.get("totalAmount"),
            "currency": order.get("currency", "usd"),
            "paymentStatus": "paid",
            "productName": ORDER_PRODUCT_NAME,
            "timestamp": utc_now_iso(),
        }
        try:
            self._post(payload)
        except (ConfigurationError, UpstreamError) as e:
            logger.error(f" ❌ [CRM] Order {payload['orderId']} not forwarded: {e}")
            return False
        logger.info(f" ✅ [CRM] Order {payload['orderId']} forwarded.")
        return True

    def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        if not self.webhook_url:
            raise ConfigurationError("Webhook not configured")

        try:
            if self._client is not None:
                response = self._client.post(
                    self.webhook_url, json=payload, timeout=self.timeout
                )
            else:
                response = httpx.post(
                    self.webhook_url, json=payload, timeout=self.timeout
                )
        except httpx.TimeoutException as e:
            logger.error(f" ❌ [CRM] Timed out after {self.timeout}s: {e}")
            raise UpstreamTimeout("CRM did not respond") from e
        except httpx.HTTPError as e:
            logger.error(f" ❌ [CRM] Request failed: {e}")
            raise UpstreamError("CRM unreachable") from e

        if not response.is_success:
            logger.warning(f" ⚠️ [CRM] Webhook responded {response.status_code}.")
            raise UpstreamError(
                "GHL error",
                details={"status": response.status_code, "detail": response.text},
            )
        return response
