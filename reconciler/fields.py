import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from reconciler.stripe_service import PAYMENT_INTENT, ResolvedPayment

Extractor = Callable[[ResolvedPayment], Any]

INVOICE_ID_KEYS = ("sanity_invoice_id", "invoice_id", "invoiceId")
USER_ID_KEYS = ("auth0_user_id", "auth0_sub", "userId", "user_id")
ORDER_NUMBER_KEYS = ("order_number", "orderNo", "website_order_number")
INVOICE_NUMBER_KEYS = ("sanity_invoice_number", "invoice_number")
CUSTOMER_NAME_KEYS = ("customer_name", "bill_to_name", "ship_to_name")

SHIPPING_AMOUNT_KEYS = ("shipping_amount", "shippingAmount")
SHIPPING_CURRENCY_KEYS = ("shipping_currency", "shippingCurrency")
SHIPPING_CARRIER_KEYS = ("shipping_carrier", "shippingCarrier")
SHIPPING_CARRIER_ID_KEYS = ("shipping_carrier_id", "shippingCarrierId", "shipping_carrier_code")
SHIPPING_SERVICE_NAME_KEYS = ("shipping_service_name", "shipping_service", "shippingServiceName", "shippingService")
SHIPPING_SERVICE_CODE_KEYS = ("shipping_service_code", "shippingServiceCode")
SHIPPING_RATE_ID_KEYS = ("shipping_rate_id", "shipengine_rate_id")
SHIPPING_DELIVERY_DAYS_KEYS = ("shipping_delivery_days", "shippingDeliveryDays")
SHIPPING_ESTIMATED_DATE_KEYS = ("shipping_estimated_delivery_date", "shippingEstimatedDeliveryDate")

# Keys read from a shipping rate's own metadata
RATE_AMOUNT_KEYS = ("shipping_amount", "shippingAmount", "shipengine_amount")
RATE_CURRENCY_KEYS = ("shipping_currency", "shippingCurrency", "shipengine_currency")
RATE_CARRIER_KEYS = ("shipping_carrier", "shipengine_carrier")
RATE_CARRIER_ID_KEYS = (
    "shipping_carrier_id",
    "shipping_carrier_code",
    "shipengine_carrier_id",
    "shipengine_carrier_code",
)
RATE_SERVICE_NAME_KEYS = ("shipping_service_name", "shipping_service", "shipengine_service")
RATE_SERVICE_CODE_KEYS = ("shipping_service_code", "shipengine_service_code")
RATE_DELIVERY_DAYS_KEYS = ("shipping_delivery_days", "shipengine_delivery_days")
RATE_ESTIMATED_DATE_KEYS = ("shipping_estimated_delivery_date", "shipengine_estimated_delivery_date")


class Address(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None

    def is_present(self) -> bool:
        return bool(self.name or self.address_line1)

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# -- primitives --------------------------------------------------------------


def dig(obj, *path):
    """Walk dict keys and list indexes, returning None on any miss."""
    for key in path:
        if obj is None:
            return None
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
            obj = obj[key]
        elif isinstance(obj, dict):
            obj = obj.get(key)
        else:
            return None
    return obj


def clean_string(value) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return None


def coerce_number(value, from_minor_units: bool = False) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    numeric = None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        try:
            numeric = float(trimmed)
        except ValueError:
            cleaned = re.sub(r"[^0-9.\-]", "", trimmed)
            try:
                numeric = float(cleaned)
            except ValueError:
                return None
    if numeric is None or not math.isfinite(numeric):
        return None
    return numeric / 100 if from_minor_units else numeric


def coerce_integer(value) -> int | None:
    numeric = coerce_number(value)
    return None if numeric is None else math.trunc(numeric)


def is_present(value) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, float):
        return math.isfinite(value)
    return True


def first_present(extractors, source, coerce=None):
    for extract in extractors:
        try:
            value = extract(source)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError):
            continue
        if coerce is not None:
            value = coerce(value)
        if is_present(value):
            return value.strip() if isinstance(value, str) else value
    return None


def first_value(*values):
    return next((value for value in values if is_present(value)), None)


def normalize_metadata(source) -> dict[str, str]:
    if not isinstance(source, dict):
        return {}
    normalized = {}
    for key, value in source.items():
        text = clean_string(value)
        if key and text:
            normalized[str(key).strip()] = text
    return normalized


def merge_metadata(resolved: ResolvedPayment) -> dict[str, str]:
    return {
        **normalize_metadata(dig(resolved.session, "metadata")),
        **normalize_metadata(dig(resolved.intent, "metadata")),
    }


def pick_metadata(metadata: dict[str, str], keys) -> str | None:
    for key in keys:
        value = clean_string(metadata.get(key))
        if value:
            return value
    return None


def first_charge(intent: dict | None) -> dict | None:
    """``charges.data[0]`` on older API versions, else the expanded ``latest_charge``."""
    charge = dig(intent, "charges", "data", 0)
    if isinstance(charge, dict):
        return charge
    latest = dig(intent, "latest_charge")
    return latest if isinstance(latest, dict) else None


def _lower(value) -> str:
    return (clean_string(value) or "").lower()


# -- extractor chains ---------------------------------------------------------


def _charge(resolved):
    return first_charge(resolved.intent)


def _intent_amount(resolved):
    received = coerce_number(dig(resolved.intent, "amount_received"), True)
    if received:
        return received
    return coerce_number(dig(resolved.intent, "amount"), True)


EMAIL: tuple[Extractor, ...] = (
    lambda r: dig(r.session, "customer_details", "email"),
    lambda r: dig(r.session, "customer_email"),
    lambda r: dig(r.intent, "receipt_email"),
    lambda r: dig(_charge(r), "billing_details", "email"),
)

PAYMENT_STATUS: tuple[Extractor, ...] = (
    lambda r: dig(r.session, "payment_status"),
    lambda r: ("paid" if _lower(dig(r.intent, "status")) == "succeeded" else "unpaid") if r.intent else None,
)

TOTAL_AMOUNT: tuple[Extractor, ...] = (
    lambda r: coerce_number(dig(r.session, "amount_total"), True),
    _intent_amount,
)

CURRENCY: tuple[Extractor, ...] = (
    lambda r: _lower(dig(r.session, "currency")),
)

AMOUNT_SUBTOTAL: tuple[Extractor, ...] = (
    lambda r: coerce_number(dig(r.session, "amount_subtotal"), True),
)

AMOUNT_TAX: tuple[Extractor, ...] = (
    lambda r: coerce_number(dig(r.session, "total_details", "amount_tax"), True),
)

AMOUNT_SHIPPING: tuple[Extractor, ...] = (
    lambda r: coerce_number(dig(r.session, "shipping_cost", "amount_total"), True),
    lambda r: coerce_number(dig(r.session, "total_details", "amount_shipping"), True),
)

CHARGE_ID: tuple[Extractor, ...] = (lambda r: dig(_charge(r), "id"),)
CARD_BRAND: tuple[Extractor, ...] = (lambda r: dig(_charge(r), "payment_method_details", "card", "brand"),)
CARD_LAST4: tuple[Extractor, ...] = (lambda r: dig(_charge(r), "payment_method_details", "card", "last4"),)
RECEIPT_URL: tuple[Extractor, ...] = (lambda r: dig(_charge(r), "receipt_url"),)

SHIPPING_ADDRESS_SOURCE: tuple[Extractor, ...] = (
    lambda r: dig(r.session, "customer_details", "address"),
    lambda r: dig(r.session, "shipping_details", "address"),
    lambda r: dig(r.session, "collected_information", "shipping_details", "address"),
)

SHIPPING_NAME: tuple[Extractor, ...] = (
    lambda r: dig(r.session, "customer_details", "name"),
    lambda r: dig(r.session, "shipping_details", "name"),
    lambda r: dig(r.session, "collected_information", "shipping_details", "name"),
)

SHIPPING_PHONE: tuple[Extractor, ...] = (
    lambda r: dig(r.session, "customer_details", "phone"),
    lambda r: dig(r.session, "shipping_details", "phone"),
)

CUSTOMER_NAME: tuple[Extractor, ...] = (
    lambda r: dig(r.session, "customer_details", "name"),
    lambda r: dig(_charge(r), "billing_details", "name"),
)

SHIPPING_RATE_REF: tuple[Extractor, ...] = (
    lambda r: dig(r.session, "shipping_cost", "shipping_rate"),
    lambda r: dig(r.session, "shipping_rate"),
)


def _address_from(source: dict, **contact) -> Address:
    return Address(
        address_line1=clean_string(source.get("line1")),
        address_line2=clean_string(source.get("line2")),
        city=clean_string(source.get("city")),
        state=clean_string(source.get("state")),
        postal_code=clean_string(source.get("postal_code")),
        country=(clean_string(source.get("country")) or "").upper() or None,
        **{key: clean_string(value) for key, value in contact.items()},
    )


def derive_shipping_address(resolved: ResolvedPayment, email: str | None) -> Address | None:
    source = first_present(SHIPPING_ADDRESS_SOURCE, resolved)
    if not isinstance(source, dict):
        return None
    return _address_from(
        source,
        name=first_present(SHIPPING_NAME, resolved, coerce=clean_string),
        phone=first_present(SHIPPING_PHONE, resolved, coerce=clean_string),
        email=email,
    )


def derive_billing_address(resolved: ResolvedPayment) -> Address | None:
    details = dig(first_charge(resolved.intent), "billing_details")
    if not isinstance(details, dict):
        return None
    address = _address_from(
        details.get("address") if isinstance(details.get("address"), dict) else {},
        name=details.get("name"),
        phone=details.get("phone"),
        email=details.get("email"),
    )
    return address if address.is_present() else None


def derive_order_status(resolved: ResolvedPayment, payment_status: str) -> str:
    if payment_status == "paid":
        return "paid"
    if _lower(dig(resolved.session, "status")) == "expired":
        return "expired"
    if _lower(dig(resolved.intent, "status")) in ("canceled", "cancelled", "failed"):
        return "cancelled"
    return "pending"


# -- selected shipping ---------------------------------------------------------


@dataclass
class ShippingDetails:
    amount: float | None = None
    currency: str | None = None
    carrier: str | None = None
    carrier_id: str | None = None
    service_code: str | None = None
    service_name: str | None = None
    delivery_days: int | None = None
    estimated_delivery_date: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


def shipping_rate_ref(resolved: ResolvedPayment):
    ref = first_present(SHIPPING_RATE_REF, resolved)
    if isinstance(ref, dict):
        return ref if clean_string(ref.get("id")) else None
    return clean_string(ref)


def split_display_name(display_name) -> tuple[str | None, str | None]:
    """``"UPS - Ground"`` is carrier UPS, service Ground; a single part is only a service."""
    name = clean_string(display_name)
    if not name:
        return None, None
    parts = [part.strip() for part in re.split(r"[\u2013\u2014-]", name) if part.strip()]
    if len(parts) >= 2:
        return parts[0], " \u2013 ".join(parts[1:])
    return None, name


def _upper(value) -> str | None:
    return (clean_string(value) or "").upper() or None


def _delivery_days(rate) -> int | None:
    days = coerce_integer(
        first_value(
            dig(rate, "delivery_estimate", "maximum", "value"),
            dig(rate, "delivery_estimate", "minimum", "value"),
        )
    )
    return None if days is None else max(0, days)


def derive_shipping_details(
    resolved: ResolvedPayment,
    metadata: dict[str, str],
    rate: dict | None = None,
    now: datetime | None = None,
) -> ShippingDetails:
    rate = rate if isinstance(rate, dict) else None
    rate_meta = normalize_metadata(dig(rate, "metadata"))
    rate_ref = shipping_rate_ref(resolved)
    rate_id = rate_ref.get("id") if isinstance(rate_ref, dict) else rate_ref
    rate_carrier, rate_service = split_display_name(dig(rate, "display_name"))
    fixed_amount = dig(rate, "fixed_amount", "amount")

    amount = first_value(
        coerce_number(pick_metadata(metadata, SHIPPING_AMOUNT_KEYS)),
        first_present(AMOUNT_SHIPPING, resolved),
        coerce_number(fixed_amount, True) if isinstance(fixed_amount, (int, float)) else None,
        coerce_number(pick_metadata(rate_meta, RATE_AMOUNT_KEYS)),
    )
    currency = first_value(
        _upper(pick_metadata(metadata, SHIPPING_CURRENCY_KEYS)),
        _upper(dig(resolved.session, "shipping_cost", "currency")),
        _upper(dig(resolved.session, "currency")),
        _upper(dig(resolved.intent, "currency")),
        _upper(dig(rate, "fixed_amount", "currency")),
        _upper(pick_metadata(rate_meta, RATE_CURRENCY_KEYS)),
    )
    carrier = first_value(
        pick_metadata(metadata, SHIPPING_CARRIER_KEYS),
        clean_string(dig(resolved.session, "shipping_details", "carrier")),
        clean_string(dig(resolved.session, "shipping_details", "name")),
        clean_string(dig(resolved.intent, "shipping", "carrier")),
        rate_carrier,
        pick_metadata(rate_meta, RATE_CARRIER_KEYS),
    )
    carrier_id = first_value(
        pick_metadata(metadata, SHIPPING_CARRIER_ID_KEYS),
        clean_string(dig(rate, "id")),
        pick_metadata(rate_meta, RATE_CARRIER_ID_KEYS),
    )
    service_name = first_value(
        pick_metadata(metadata, SHIPPING_SERVICE_NAME_KEYS),
        rate_service,
        pick_metadata(rate_meta, RATE_SERVICE_NAME_KEYS),
    )
    service_code = first_value(
        pick_metadata(metadata, SHIPPING_SERVICE_CODE_KEYS),
        clean_string(dig(rate, "id")),
        pick_metadata(rate_meta, RATE_SERVICE_CODE_KEYS),
    )
    delivery_days = first_value(
        coerce_integer(pick_metadata(metadata, SHIPPING_DELIVERY_DAYS_KEYS)),
        coerce_integer(pick_metadata(rate_meta, RATE_DELIVERY_DAYS_KEYS)),
        _delivery_days(rate),
    )
    estimated_date = first_value(
        pick_metadata(metadata, SHIPPING_ESTIMATED_DATE_KEYS),
        pick_metadata(rate_meta, RATE_ESTIMATED_DATE_KEYS),
    )
    estimated_days = _delivery_days(rate)
    if not estimated_date and estimated_days:
        estimated_date = ((now or datetime.now(timezone.utc)) + timedelta(days=estimated_days)).isoformat()

    if not service_name and service_code:
        service_name = service_code
    if not service_code and service_name and rate_id:
        service_code = rate_id

    doc_metadata = {
        "shipping_amount": f"{amount:.2f}" if amount is not None else None,
        "shipping_currency": currency,
        "shipping_carrier": carrier,
        "shipping_carrier_id": carrier_id,
        "shipping_service_name": service_name,
        "shipping_service_code": service_code,
        "shipping_delivery_days": str(delivery_days) if delivery_days is not None else None,
        "shipping_estimated_delivery_date": estimated_date,
        "shipping_rate_id": first_value(
            rate_id,
            pick_metadata(metadata, SHIPPING_RATE_ID_KEYS),
            pick_metadata(rate_meta, SHIPPING_RATE_ID_KEYS),
        ),
    }
    doc_metadata = {key: value for key, value in doc_metadata.items() if value is not None}
    for key, value in rate_meta.items():
        doc_metadata.setdefault(key, value)

    return ShippingDetails(
        amount=amount,
        currency=currency,
        carrier=carrier,
        carrier_id=carrier_id,
        service_code=service_code,
        service_name=service_name,
        delivery_days=delivery_days,
        estimated_delivery_date=estimated_date,
        metadata=doc_metadata,
    )


@dataclass
class DerivedFields:
    email: str = ""
    payment_status: str = "unpaid"
    status: str = "pending"
    total_amount: float | None = None
    currency: str | None = None
    amount_subtotal: float | None = None
    amount_tax: float | None = None
    amount_shipping: float | None = None
    payment_intent_id: str | None = None
    charge_id: str | None = None
    card_brand: str | None = None
    card_last4: str | None = None
    receipt_url: str | None = None
    shipping_address: Address | None = None
    billing_address: Address | None = None
    customer_name: str | None = None
    checkout_status: str | None = None
    checkout_mode: str | None = None
    intent_status: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    invoice_id: str | None = None
    user_id: str | None = None
    order_number: str | None = None
    invoice_number: str | None = None


def derive_fields(resolved: ResolvedPayment) -> DerivedFields:
    metadata = merge_metadata(resolved)
    email = first_present(EMAIL, resolved, coerce=clean_string) or ""
    payment_status = _lower(first_present(PAYMENT_STATUS, resolved, coerce=clean_string)) or "unpaid"
    checkout = resolved.kind != PAYMENT_INTENT and resolved.session is not None
    customer_name = pick_metadata(metadata, CUSTOMER_NAME_KEYS) or first_present(
        CUSTOMER_NAME, resolved, coerce=clean_string
    )

    return DerivedFields(
        email=email,
        payment_status=payment_status,
        status=derive_order_status(resolved, payment_status),
        total_amount=first_present(TOTAL_AMOUNT, resolved),
        currency=first_present(CURRENCY, resolved) if checkout else None,
        amount_subtotal=first_present(AMOUNT_SUBTOTAL, resolved) if checkout else None,
        amount_tax=first_present(AMOUNT_TAX, resolved) if checkout else None,
        amount_shipping=first_present(AMOUNT_SHIPPING, resolved) if checkout else None,
        payment_intent_id=resolved.intent_id,
        charge_id=first_present(CHARGE_ID, resolved, coerce=clean_string),
        card_brand=first_present(CARD_BRAND, resolved, coerce=clean_string),
        card_last4=first_present(CARD_LAST4, resolved, coerce=clean_string),
        receipt_url=first_present(RECEIPT_URL, resolved, coerce=clean_string),
        shipping_address=derive_shipping_address(resolved, email or None),
        billing_address=derive_billing_address(resolved),
        customer_name=customer_name or email or None,
        checkout_status=clean_string(dig(resolved.session, "status")),
        checkout_mode=clean_string(dig(resolved.session, "mode")),
        intent_status=clean_string(dig(resolved.intent, "status")),
        metadata=metadata,
        invoice_id=pick_metadata(metadata, INVOICE_ID_KEYS),
        user_id=pick_metadata(metadata, USER_ID_KEYS),
        order_number=pick_metadata(metadata, ORDER_NUMBER_KEYS),
        invoice_number=pick_metadata(metadata, INVOICE_NUMBER_KEYS),
    )
