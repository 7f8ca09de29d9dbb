import math
from datetime import date, datetime, timedelta, timezone

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from reconciler.cart import CartLineItem, match_product
from reconciler.fields import Address, DerivedFields
from reconciler.store import DocumentNotFound, DocumentStore, patch_first_successful, resolve_alias_ids

logger = structlog.get_logger(__name__)


class InvoiceLineItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    description: str
    sku: str | None = None
    quantity: int = Field(default=1, ge=1)
    unit_price: float | None = None
    line_total: float | None = None
    product_ref: str | None = None

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def line_total(quantity, unit_price) -> float | None:
    try:
        total = float(quantity) * float(unit_price)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(total):
        return None
    return round(total, 2)


def compute_tax_rate(amount_subtotal, amount_tax) -> float:
    """Tax as a percentage of subtotal, two decimals; 0 when undefined."""
    if amount_subtotal is None or amount_tax is None:
        return 0
    try:
        subtotal, tax = float(amount_subtotal), float(amount_tax)
    except (TypeError, ValueError):
        return 0
    if not (math.isfinite(subtotal) and math.isfinite(tax)) or subtotal <= 0:
        return 0
    return round((tax / subtotal) * 10000) / 100


def catalog_lookup_keys(cart: list[CartLineItem]) -> tuple[list[str], list[str]]:
    skus, names = [], []
    for item in cart:
        if item.sku and item.sku not in skus:
            skus.append(item.sku)
        if item.name and item.name not in names:
            names.append(item.name)
    return skus, names


def build_invoice_lines(cart: list[CartLineItem], catalog: list[dict]) -> list[InvoiceLineItem]:
    lines = []
    for item in cart:
        product = match_product(catalog, item.sku, item.name)
        quantity = max(item.quantity, 1)
        lines.append(
            InvoiceLineItem(
                description=item.name or item.description or item.sku or "Item",
                sku=item.sku,
                quantity=quantity,
                unit_price=item.unit_price,
                line_total=line_total(quantity, item.unit_price),
                product_ref=product["_id"] if product else item.catalog_ref,
            )
        )
    return lines


def build_parties(billing: Address | None, shipping: Address | None) -> tuple[dict | None, dict | None]:
    bill = billing if billing is not None and billing.is_present() else None
    ship = shipping if shipping is not None and shipping.is_present() else None
    bill_to = (bill or ship).to_doc() if (bill or ship) else None
    ship_to = ship.to_doc() if ship else None
    return bill_to, ship_to


def resolve_invoice_title(store: DocumentStore, customer_ref: str | None, derived: DerivedFields) -> str:
    if customer_ref:
        customer = store.get(customer_ref) or {}
        full_name = " ".join(
            part for part in (customer.get("firstName"), customer.get("lastName")) if part
        ).strip() or (customer.get("name") or "").strip()
        if full_name:
            return full_name
        if customer.get("email"):
            return customer["email"]
    shipping_name = derived.shipping_address.name if derived.shipping_address else None
    return shipping_name or derived.email or "Invoice"


def build_invoice(
    *,
    order_id: str,
    session_key: str,
    derived: DerivedFields,
    lines: list[InvoiceLineItem],
    title: str,
    customer_ref: str | None = None,
    due_days: int = 30,
    today: date | None = None,
) -> dict:
    today = today or datetime.now(timezone.utc).date()
    bill_to, ship_to = build_parties(derived.billing_address, derived.shipping_address)

    subtotal = derived.amount_subtotal
    if subtotal is None:
        subtotal = round(sum(line.line_total or 0 for line in lines), 2)
    total = derived.total_amount
    if total is None:
        total = round(subtotal + (derived.amount_tax or 0) + (derived.amount_shipping or 0), 2)

    invoice = {
        "_type": "invoice",
        "title": title,
        "orderNumber": derived.order_number or session_key,
        "orderRef": order_id,
        "customerRef": customer_ref,
        "billTo": bill_to,
        "shipTo": ship_to,
        "lineItems": [line.to_doc() for line in lines],
        "taxRate": compute_tax_rate(derived.amount_subtotal, derived.amount_tax),
        "taxAmount": derived.amount_tax,
        "shippingAmount": derived.amount_shipping,
        "subtotal": subtotal,
        "total": total,
        "currency": derived.currency,
        "status": "paid" if derived.payment_status == "paid" else "pending",
        "invoiceDate": today.isoformat(),
        "dueDate": (today + timedelta(days=due_days)).isoformat(),
    }
    return {key: value for key, value in invoice.items() if value is not None}


def link_invoice(store: DocumentStore, order_id: str, invoice_id: str) -> None:
    store.patch(order_id).set({"invoiceRef": invoice_id}).commit()
    logger.info("invoice_linked", order_id=order_id, invoice_id=invoice_id)


def mark_invoice_paid(store: DocumentStore, invoice_id: str) -> str:
    patched = patch_first_successful(
        store,
        resolve_alias_ids(invoice_id),
        {
            "status": "paid",
            "paymentStatus": "paid",
            "paidAt": datetime.now(timezone.utc).isoformat(),
        },
    )
    if patched is None:
        raise DocumentNotFound(f"no variant of invoice {invoice_id} could be patched")
    logger.info("invoice_marked_paid", invoice_id=patched)
    return patched
