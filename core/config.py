from functools import lru_cache
from typing import Annotated, Any, Optional, Tuple

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from core.errors import ConfigurationError

DEFAULT_SITE_URL = "https://www.brisclothing.com"


def _env(name: str, field_name: str) -> AliasChoices:
    # env var name, or the field name when built in code (tests)
    return AliasChoices(name, field_name)


class Settings(BaseSettings):
    """
    Loaded from environment variables. Unset secrets -> feature not configured.
    """

    model_config = SettingsConfigDict(frozen=True, extra="ignore")

    # secrets / integrations
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    crm_webhook_url: Optional[str] = Field(
        default=None, validation_alias=_env("GHL_WEBHOOK_URL", "crm_webhook_url")
    )
    redis_url: Optional[str] = None
    orders_admin_token: Optional[str] = None
    otel_endpoint: Optional[str] = Field(
        default=None,
        validation_alias=_env("OTEL_EXPORTER_OTLP_ENDPOINT", "otel_endpoint"),
    )

    backup_dir: str = Field(
        default="order-backups",
        validation_alias=_env("ORDER_BACKUP_DIR", "backup_dir"),
    )
    site_url: str = DEFAULT_SITE_URL
    storefront_origins: Annotated[Tuple[str, ...], NoDecode] = (DEFAULT_SITE_URL,)
    line_item_strategy: str = Field(
        default="aggregate",
        validation_alias=_env("CHECKOUT_LINE_ITEMS", "line_item_strategy"),
    )
    crm_source: str = "brisclothing.com"
    crm_tag: str = "exclusive_access"
    crm_forward_orders: bool = False
    http_timeout: float = Field(
        default=5.0,
        gt=0,
        validation_alias=_env("HTTP_TIMEOUT_SECONDS", "http_timeout"),
    )
    log_level: str = "INFO"

    @field_validator(
        "stripe_secret_key",
        "stripe_webhook_secret",
        "crm_webhook_url",
        "redis_url",
        "orders_admin_token",
        "otel_endpoint",
        mode="before",
    )
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("storefront_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    @field_validator("site_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from environment variables; bad values -> ConfigurationError
        """
        try:
            return cls()
        except ValidationError as e:
            names = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            raise ConfigurationError(
                f"Invalid configuration: {', '.join(names)}",
                details={"fields": names},
            ) from e

    @property
    def stripe_configured(self) -> bool:
        return self.stripe_secret_key is not None

    @property
    def webhook_configured(self) -> bool:
        return self.stripe_webhook_secret is not None

    @property
    def crm_configured(self) -> bool:
        return self.crm_webhook_url is not None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
