from dataclasses import dataclass, field

import httpx
import stripe
import structlog
from sqlalchemy.exc import SQLAlchemyError

from reconciler.cart import attach_catalog_refs, build_cart
from reconciler.fields import DerivedFields, derive_fields, derive_shipping_details, shipping_rate_ref
from reconciler.fulfillment import FulfillmentClient, FulfillmentError, should_fulfill
from reconciler.invoices import (
    build_invoice,
    build_invoice_lines,
    catalog_lookup_keys,
    link_invoice,
    mark_invoice_paid,
    resolve_invoice_title,
)
from reconciler.orders import build_order_fields, candidate_from_session_id, resolve_order_number, write_order
from reconciler.store import DocumentNotFound, DocumentStore, DuplicateDocument
from reconciler.stripe_service import PAYMENT_INTENT, resolve_payment

logger = structlog.get_logger(__name__)


def classify_error(exc: Exception) -> str:
    if isinstance(exc, DocumentNotFound):
        return "not_found"
    if isinstance(exc, (SQLAlchemyError, DuplicateDocument)):
        return "store"
    if isinstance(exc, stripe.StripeError):
        return "gateway"
    if isinstance(exc, (FulfillmentError, httpx.HTTPError)):
        return "http"
    return "unexpected"


@dataclass(frozen=True)
class StepOutcome:
    step: str
    ok: bool
    kind: str | None = None
    error: str | None = None


@dataclass
class RunReport:
    outcomes: list[StepOutcome] = field(default_factory=list)

    def succeeded(self, step: str) -> None:
        self.outcomes.append(StepOutcome(step=step, ok=True))

    def degraded(self, step: str, kind: str, error: str) -> None:
        self.outcomes.append(StepOutcome(step=step, ok=False, kind=kind, error=error))

    def failed_steps(self) -> list[dict]:
        return [
            {"step": o.step, "kind": o.kind, "error": o.error}
            for o in self.outcomes
            if not o.ok
        ]


@dataclass
class ReconcileResult:
    id: str
    type: str
    order_id: str | None = None
    invoice_id: str | None = None
    payment_status: str | None = None
    order_number: str | None = None
    updated: bool = False
    fulfill_called: bool = False
    report: RunReport = field(default_factory=RunReport)

    def to_response(self) -> dict:
        return {
            "ok": True,
            "id": self.id,
            "type": self.type,
            "orderId": self.order_id,
            "invoiceId": self.invoice_id,
            "paymentStatus": self.payment_status,
            "orderNumber": self.order_number,
            "updated": self.updated,
            "fulfillCalled": self.fulfill_called,
            "degraded": self.report.failed_steps(),
        }


class Reconciler:
    def __init__(
        self,
        gateway,
        store: DocumentStore,
        fulfillment: FulfillmentClient | None = None,
        invoice_due_days: int = 30,
    ):
        self.gateway = gateway
        self.store = store
        self.fulfillment = fulfillment
        self.invoice_due_days = invoice_due_days

    def run_step(self, report: RunReport, step: str, fn, *args, default=None, **kwargs):
        try:
            value = fn(*args, **kwargs)
        except Exception as exc:
            self.store.recover()
            kind = classify_error(exc)
            logger.warning("reconcile_step_degraded", step=step, kind=kind, error=str(exc))
            report.degraded(step, kind, str(exc))
            return default
        report.succeeded(step)
        return value

    def reconcile(self, raw_id: str, auto_fulfill: bool = False) -> ReconcileResult:
        """Raises GatewayFetchError when the session or intent cannot be loaded."""
        with structlog.contextvars.bound_contextvars(input_id=raw_id):
            resolved = resolve_payment(self.gateway, raw_id)
            derived = derive_fields(resolved)
            report = RunReport()
            result = ReconcileResult(
                id=raw_id,
                type=resolved.kind,
                payment_status=derived.payment_status,
                report=report,
            )

            cart = []
            if resolved.session_id:
                cart = self.run_step(report, "cart", build_cart, self.gateway, resolved.session_id, default=[])
            if cart:
                skus = [item.sku for item in cart]
                names = [item.name for item in cart]
                catalog = self.run_step(report, "cart_catalog", self.store.find_products, skus, names, default=[])
                attach_catalog_refs(cart, catalog)

            shipping = derive_shipping_details(resolved, derived.metadata, self.load_shipping_rate(report, resolved))

            session_key = resolved.order_key
            existing = self.run_step(report, "order_lookup", self.store.find_order_by_session_id, session_key)

            customer_ref = None
            if derived.email:
                customer_ref = self.run_step(
                    report, "customer_lookup", self.store.find_customer_id_by_email, derived.email
                )
            if customer_ref is None and existing:
                customer_ref = existing.get("customerRef")

            order_number = (existing or {}).get("orderNumber")
            if not order_number:
                order_number = self.run_step(
                    report,
                    "order_number",
                    resolve_order_number,
                    self.store,
                    derived.order_number,
                    derived.invoice_number,
                    session_key,
                    default=candidate_from_session_id(session_key),
                )
            result.order_number = order_number

            fields = build_order_fields(
                derived,
                cart,
                session_key,
                order_number,
                customer_ref=customer_ref,
                source="payment_intent" if resolved.kind == PAYMENT_INTENT else "checkout.session",
                shipping=shipping,
            )
            upsert = self.run_step(report, "order_write", write_order, self.store, existing, fields)
            if upsert:
                result.order_id = upsert.order_id
                result.order_number = upsert.order_number or order_number
            result.updated = result.order_id is not None

            if derived.invoice_id:
                result.invoice_id = derived.invoice_id
                if derived.payment_status == "paid":
                    self.run_step(report, "invoice_mark_paid", mark_invoice_paid, self.store, derived.invoice_id)
            elif result.order_id:
                result.invoice_id = upsert.invoice_ref or self.synthesize_invoice(
                    report, result.order_id, session_key, derived, cart, customer_ref
                )

            if should_fulfill(auto_fulfill, result.order_id, derived.payment_status, derived.shipping_address):
                result.fulfill_called = self.trigger_fulfillment(report, result.order_id)

            logger.info(
                "reconcile_completed",
                session_id=session_key,
                order_id=result.order_id,
                invoice_id=result.invoice_id,
                payment_status=result.payment_status,
                degraded=len(report.failed_steps()),
            )
            return result

    def load_shipping_rate(self, report: RunReport, resolved) -> dict | None:
        rate_ref = shipping_rate_ref(resolved)
        if isinstance(rate_ref, dict) or not rate_ref:
            return rate_ref
        return self.run_step(report, "shipping_rate", self.gateway.retrieve_shipping_rate, rate_ref)

    def synthesize_invoice(
        self,
        report: RunReport,
        order_id: str,
        session_key: str,
        derived: DerivedFields,
        cart: list,
        customer_ref: str | None,
    ) -> str | None:
        skus, names = catalog_lookup_keys(cart)
        catalog = self.run_step(report, "invoice_catalog", self.store.find_products, skus, names, default=[])
        lines = build_invoice_lines(cart, catalog)

        fallback_title = resolve_invoice_title(self.store, None, derived)
        title = self.run_step(
            report, "invoice_title", resolve_invoice_title, self.store, customer_ref, derived, default=fallback_title
        )

        invoice = build_invoice(
            order_id=order_id,
            session_key=session_key,
            derived=derived,
            lines=lines,
            title=title,
            customer_ref=customer_ref,
            due_days=self.invoice_due_days,
        )
        created = self.run_step(report, "invoice_create", self.store.create, invoice)
        if not created:
            return None
        logger.info("invoice_created", order_id=order_id, invoice_id=created["_id"])

        self.run_step(report, "invoice_link", link_invoice, self.store, order_id, created["_id"])
        return created["_id"]

    def trigger_fulfillment(self, report: RunReport, order_id: str) -> bool:
        if self.fulfillment is None:
            report.degraded("fulfillment", "http", "fulfillment client not configured")
            return False
        return self.run_step(report, "fulfillment", self.fulfillment.fulfill, order_id, default=False)
