from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class Product:
    product_id: str
    name: str
    description: str
    image_path: str


COLLECTION_NAME = "BRISCO Collection"
COLLECTION_DESCRIPTION = "Be Your Own Light - Premium Streetwear"
COLLECTION_IMAGE = "/images/Product%20Assets/M%20copy.png"

PRODUCTS: Dict[str, Product] = {
    "brisco-white-tee": Product(
        product_id="brisco-white-tee",
        name="BRISCO White Tee",
        description=COLLECTION_DESCRIPTION,
        image_path="/images/Product%20Assets/M%20copy.png",
    ),
    "brisco-black-tee": Product(
        product_id="brisco-black-tee",
        name="BRISCO Black Tee",
        description=COLLECTION_DESCRIPTION,
        image_path="/images/Product%20Assets/M%20black.png",
    ),
}

# cents
SHIPPING_RATES: Dict[str, int] = {
    "standard": 500,
    "express": 1200,
    "free": 0,
}
DEFAULT_SHIPPING = "standard"


def get_product(product_id: str) -> Optional[Product]:
    return PRODUCTS.get(product_id)


def shipping_label(option: str) -> str:
    return f"{option.capitalize()} Shipping"
