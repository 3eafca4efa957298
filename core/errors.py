from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """
    Base error rendered as a JSON envelope by the API layer
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details: Dict[str, Any] = details or {}


class ClientInputError(StorefrontError):
    status_code = 400


class ConfigurationError(StorefrontError):
    """Missing secret or URL. Fix the environment, not the code."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details={"configured": False, **(details or {})})


class UpstreamError(StorefrontError):
    """Stripe or the CRM webhook failed or answered with a non-success status."""

    status_code = 502


class UpstreamTimeout(UpstreamError):
    # the outcome is unknown: the caller must not re-trigger the call automatically
    status_code = 504


class SignatureError(StorefrontError):
    status_code = 400


class NotFoundError(StorefrontError):
    status_code = 404


class AuthorizationError(StorefrontError):
    status_code = 401
