from dataclasses import dataclass

import stripe
import structlog

logger = structlog.get_logger(__name__)

CHECKOUT_SESSION_PREFIX = "cs_"
PAYMENT_INTENT_PREFIX = "pi_"

CHECKOUT_SESSION = "checkout_session"
PAYMENT_INTENT = "payment_intent"
UNKNOWN = "unknown"


class GatewayNotConfigured(RuntimeError):
    pass


class GatewayFetchError(RuntimeError):
    pass


def to_plain(value):
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    if hasattr(value, "to_dict"):
        return to_plain(value.to_dict())
    return value


class StripeGateway:
    def __init__(self, api_key: str):
        if not api_key:
            raise GatewayNotConfigured("STRIPE_SECRET_KEY is not set")
        self.api_key = api_key

    def retrieve_session(self, session_id: str) -> dict:
        session = stripe.checkout.Session.retrieve(
            session_id,
            api_key=self.api_key,
            expand=["payment_intent", "payment_intent.latest_charge"],
        )
        return to_plain(session)

    def retrieve_payment_intent(self, intent_id: str) -> dict:
        intent = stripe.PaymentIntent.retrieve(
            intent_id,
            api_key=self.api_key,
            expand=["latest_charge"],
        )
        return to_plain(intent)

    def list_line_items(self, session_id: str) -> list[dict]:
        items = stripe.checkout.Session.list_line_items(
            session_id,
            api_key=self.api_key,
            limit=100,
            expand=["data.price.product"],
        )
        return [to_plain(item) for item in items.data]

    def retrieve_shipping_rate(self, rate_id: str) -> dict:
        return to_plain(stripe.ShippingRate.retrieve(rate_id, api_key=self.api_key))


def classify_id(raw_id: str) -> str:
    if raw_id.startswith(CHECKOUT_SESSION_PREFIX):
        return CHECKOUT_SESSION
    if raw_id.startswith(PAYMENT_INTENT_PREFIX):
        return PAYMENT_INTENT
    return UNKNOWN


@dataclass(frozen=True)
class ResolvedPayment:
    input_id: str
    kind: str
    session: dict | None = None
    intent: dict | None = None

    @property
    def session_id(self) -> str | None:
        return (self.session or {}).get("id") or None

    @property
    def intent_id(self) -> str | None:
        return (self.intent or {}).get("id") or None

    @property
    def order_key(self) -> str:
        return self.session_id or self.intent_id or self.input_id


def resolve_payment(gateway, raw_id: str) -> ResolvedPayment:
    # Unrecognized ids are fetched as checkout sessions
    kind = classify_id(raw_id)
    try:
        if kind == PAYMENT_INTENT:
            intent = gateway.retrieve_payment_intent(raw_id)
            return ResolvedPayment(input_id=raw_id, kind=kind, intent=intent)

        session = gateway.retrieve_session(raw_id)
    except Exception as exc:
        logger.error("gateway_fetch_failed", input_id=raw_id, kind=kind, error=str(exc))
        raise GatewayFetchError(f"Unable to load {raw_id}: {exc}") from exc

    embedded = session.get("payment_intent")
    intent = embedded if isinstance(embedded, dict) else None
    return ResolvedPayment(input_id=raw_id, kind=kind, session=session, intent=intent)
