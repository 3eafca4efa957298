from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from domains.checkout.catalog import DEFAULT_SHIPPING


class CartItem(BaseModel):
    # the storefront also sends name/price; they are ignored, prices are server-side
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    product_id: str
    quantity: int = Field(ge=1)
    size: Optional[str] = None


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    items: Optional[List[CartItem]] = None
    customer_email: Optional[str] = None
    shipping_option: str = DEFAULT_SHIPPING


class CheckoutResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    session_id: str
    url: str
