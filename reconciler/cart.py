import json

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from reconciler.fields import clean_string, coerce_number, dig

logger = structlog.get_logger(__name__)


class CartLineItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    catalog_ref: str | None = None
    sku: str | None = None
    name: str | None = None
    description: str | None = None
    unit_price: float | None = Field(default=None, ge=0)
    quantity: int = Field(default=0, ge=0)
    categories: list[str] = Field(default_factory=list)
    stripe_price_id: str | None = None
    stripe_product_id: str | None = None

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_categories(value) -> list[str]:
    """Accept a list, a JSON array string, or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [text for text in (clean_string(item) for item in value) if text]
    text = clean_string(value)
    if not text:
        return []
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return parse_categories(parsed)
    return [part.strip() for part in text.split(",") if part.strip()]


def _metadata(obj) -> dict:
    meta = dig(obj, "metadata")
    return meta if isinstance(meta, dict) else {}


def map_line_item(line_item: dict) -> CartLineItem:
    price = line_item.get("price") if isinstance(line_item.get("price"), dict) else {}
    product = price.get("product") if isinstance(price.get("product"), dict) else {}
    product_meta, price_meta, line_meta = _metadata(product), _metadata(price), _metadata(line_item)

    quantity = coerce_number(line_item.get("quantity"))
    unit_price = coerce_number(price.get("unit_amount"), from_minor_units=True)
    if unit_price is not None and unit_price < 0:
        unit_price = None

    categories: list[str] = []
    for meta in (product_meta, line_meta):
        for category in parse_categories(meta.get("categories") or meta.get("category")):
            if category not in categories:
                categories.append(category)

    product_id = product.get("id") if product else price.get("product")
    return CartLineItem(
        sku=clean_string(product_meta.get("sku"))
        or clean_string(price_meta.get("sku"))
        or clean_string(line_meta.get("sku")),
        name=clean_string(product.get("name")) or clean_string(line_item.get("description")),
        description=clean_string(line_item.get("description")),
        unit_price=unit_price,
        quantity=max(int(quantity or 0), 0),
        categories=categories,
        stripe_price_id=clean_string(price.get("id")),
        stripe_product_id=clean_string(product_id),
    )


def match_product(catalog: list[dict], sku: str | None, title: str | None) -> dict | None:
    if sku:
        for product in catalog:
            if product.get("sku") == sku:
                return product
    if title:
        for product in catalog:
            if product.get("title") == title:
                return product
    return None


def attach_catalog_refs(items: list[CartLineItem], catalog: list[dict]) -> list[CartLineItem]:
    for item in items:
        product = match_product(catalog, item.sku, item.name)
        if product is None:
            continue
        item.catalog_ref = product["_id"]
        if not item.sku and product.get("sku"):
            item.sku = product["sku"]
    return items


def build_cart(gateway, session_id: str) -> list[CartLineItem]:
    return [map_line_item(item) for item in gateway.list_line_items(session_id)]
