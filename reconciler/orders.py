import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from reconciler.cart import CartLineItem
from reconciler.fields import DerivedFields, ShippingDetails
from reconciler.store import DocumentStore, DuplicateDocument

logger = structlog.get_logger(__name__)

ORDER_NUMBER_PREFIX = "FAS"
ORDER_NUMBER_PATTERN = re.compile(r"^FAS-\d{6}$")

# Fields an upsert owns; any of them without a value is removed on patch.
MANAGED_FIELDS = (
    "sessionId",
    "orderNumber",
    "slug",
    "customerName",
    "customerEmail",
    "totalAmount",
    "currency",
    "amountSubtotal",
    "amountTax",
    "amountShipping",
    "paymentStatus",
    "status",
    "paymentIntentId",
    "chargeId",
    "cardBrand",
    "cardLast4",
    "receiptUrl",
    "userId",
    "shippingAddress",
    "cart",
    "customerRef",
    "stripeCheckoutStatus",
    "stripeCheckoutMode",
    "stripePaymentIntentStatus",
    "stripeLastSyncedAt",
    "source",
    "shippingCarrier",
    "selectedService",
    "selectedShippingAmount",
    "selectedShippingCurrency",
    "shippingDeliveryDays",
    "shippingEstimatedDeliveryDate",
    "shippingServiceCode",
    "shippingServiceName",
    "shippingMetadata",
)

# Kept as first written once an order has a number
STABLE_FIELDS = ("orderNumber", "slug")


def sanitize_order_number(value: str | None) -> str | None:
    if not value:
        return None
    trimmed = str(value).strip().upper()
    if not trimmed:
        return None
    if ORDER_NUMBER_PATTERN.match(trimmed):
        return trimmed
    digits = re.sub(r"\D", "", trimmed)
    if len(digits) >= 6:
        return f"{ORDER_NUMBER_PREFIX}-{digits[-6:]}"
    return None


def candidate_from_session_id(session_id: str | None) -> str | None:
    if not session_id:
        return None
    core = re.sub(r"^cs_(?:test|live)_", "", str(session_id).strip(), flags=re.IGNORECASE)
    digits = re.sub(r"\D", "", core)
    if len(digits) >= 6:
        return f"{ORDER_NUMBER_PREFIX}-{digits[-6:]}"
    return None


def resolve_order_number(store: DocumentStore, metadata_number=None, invoice_number=None, session_id=None) -> str:
    candidates = [
        sanitize_order_number(metadata_number),
        sanitize_order_number(invoice_number),
        candidate_from_session_id(session_id),
    ]
    for candidate in filter(None, candidates):
        if not store.count_order_number(candidate):
            return candidate

    for _ in range(8):
        candidate = f"{ORDER_NUMBER_PREFIX}-{random.randint(0, 999_999):06d}"
        if not store.count_order_number(candidate):
            return candidate

    return f"{ORDER_NUMBER_PREFIX}-{int(time.time() * 1000) % 1_000_000:06d}"


def slugify(value: str | None) -> str | None:
    raw = (value or "").strip().lower()
    slug = re.sub(r"[^a-z0-9]+", "-", raw).strip("-")[:96]
    return slug or None


def build_order_fields(
    derived: DerivedFields,
    cart: list[CartLineItem],
    session_key: str,
    order_number: str | None,
    customer_ref: str | None = None,
    source: str = "checkout.session",
    shipping: ShippingDetails | None = None,
) -> dict:
    fields = {
        "sessionId": session_key,
        "orderNumber": order_number,
        "slug": slugify(order_number or session_key),
        "customerName": derived.customer_name,
        "customerEmail": derived.email or None,
        "totalAmount": derived.total_amount,
        "currency": derived.currency,
        "amountSubtotal": derived.amount_subtotal,
        "amountTax": derived.amount_tax,
        "amountShipping": derived.amount_shipping,
        "paymentStatus": derived.payment_status,
        "status": derived.status,
        "paymentIntentId": derived.payment_intent_id,
        "chargeId": derived.charge_id,
        "cardBrand": derived.card_brand,
        "cardLast4": derived.card_last4,
        "receiptUrl": derived.receipt_url,
        "userId": derived.user_id,
        "shippingAddress": derived.shipping_address.to_doc() if derived.shipping_address else None,
        "cart": [item.to_doc() for item in cart] or None,
        "customerRef": customer_ref,
        "stripeCheckoutStatus": derived.checkout_status,
        "stripeCheckoutMode": derived.checkout_mode,
        "stripePaymentIntentStatus": derived.intent_status,
        "stripeLastSyncedAt": datetime.now(timezone.utc).isoformat(),
        "source": source,
    }
    fields.update(selected_shipping_fields(shipping or ShippingDetails(), derived))
    return fields


def selected_shipping_fields(shipping: ShippingDetails, derived: DerivedFields) -> dict:
    amount = shipping.amount if shipping.amount is not None else derived.amount_shipping
    currency = shipping.currency or (derived.currency.upper() if derived.currency else None)

    selected_service = None
    if shipping.service_name or shipping.service_code or amount is not None:
        selected_service = {
            "carrierId": shipping.carrier_id,
            "carrier": shipping.carrier,
            "service": shipping.service_name or shipping.service_code,
            "serviceCode": shipping.service_code or shipping.service_name,
            "amount": amount,
            "currency": currency or "USD",
            "deliveryDays": shipping.delivery_days,
            "estimatedDeliveryDate": shipping.estimated_delivery_date,
        }
        selected_service = {key: value for key, value in selected_service.items() if value is not None}

    return {
        "shippingCarrier": shipping.carrier,
        "selectedService": selected_service,
        "selectedShippingAmount": amount,
        "selectedShippingCurrency": currency,
        "shippingDeliveryDays": shipping.delivery_days,
        "shippingEstimatedDeliveryDate": shipping.estimated_delivery_date,
        "shippingServiceCode": shipping.service_code,
        "shippingServiceName": shipping.service_name,
        "shippingMetadata": shipping.metadata or None,
    }


@dataclass
class UpsertResult:
    order_id: str | None
    created: bool = False
    invoice_ref: str | None = None
    order_number: str | None = None


def write_order(store: DocumentStore, existing: dict | None, fields: dict) -> UpsertResult:
    """Patch ``existing`` or create a new order from ``fields``.

    A create that collides with another order for the same session id is
    retried once as a patch of that order.
    """
    to_set = {key: value for key, value in fields.items() if value is not None}
    to_unset = [key for key in MANAGED_FIELDS if fields.get(key) is None]
    created_at = datetime.now(timezone.utc).isoformat()

    if existing is None:
        try:
            doc = store.create({"_type": "order", **to_set, "createdAt": created_at})
        except DuplicateDocument:
            existing = store.find_order_by_session_id(fields["sessionId"])
            if existing is None:
                raise
            logger.info("order_create_raced", session_id=fields["sessionId"], order_id=existing["_id"])
        else:
            logger.info("order_created", session_id=fields["sessionId"], order_id=doc["_id"])
            return UpsertResult(order_id=doc["_id"], created=True, order_number=doc.get("orderNumber"))

    if existing.get("orderNumber"):
        to_set = {key: value for key, value in to_set.items() if key not in STABLE_FIELDS}
        to_unset = [key for key in to_unset if key not in STABLE_FIELDS]

    doc = (
        store.patch(existing["_id"])
        .set(to_set)
        .unset(to_unset)
        .set_if_missing({"createdAt": created_at})
        .commit()
    )
    logger.info("order_updated", session_id=fields["sessionId"], order_id=doc["_id"])
    return UpsertResult(
        order_id=doc["_id"], invoice_ref=doc.get("invoiceRef"), order_number=doc.get("orderNumber")
    )
