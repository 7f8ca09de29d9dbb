import json

import httpx
import pytest

from reconciler.fulfillment import FulfillmentClient
from reconciler.models import Document
from reconciler.reconcile import Reconciler
from reconciler.stripe_service import GatewayFetchError
from factories import FakeGateway, make_line_item, make_session


def count(store, doc_type):
    return store.session.query(Document).filter(Document.doc_type == doc_type).count()


@pytest.fixture
def reconciler(gateway, store, fulfillment):
    return Reconciler(gateway, store, fulfillment)


def test_end_to_end_checkout_session(reconciler, store):
    result = reconciler.reconcile("cs_test_123")

    assert result.updated is True
    assert result.order_id
    assert result.type == "checkout_session"
    assert result.payment_status == "paid"
    assert result.report.failed_steps() == []

    order = store.get(result.order_id)
    assert order["sessionId"] == "cs_test_123"
    assert len(order["cart"]) == 1
    assert order["cart"][0]["sku"] == "ABC"
    assert order["invoiceRef"] == result.invoice_id

    invoice = store.get(result.invoice_id)
    assert invoice["subtotal"] == 50.0
    assert invoice["orderRef"] == result.order_id
    assert invoice["lineItems"][0]["lineTotal"] == 50.0


def test_reconciling_twice_keeps_one_order_and_one_invoice(reconciler, store):
    first = reconciler.reconcile("cs_test_123")
    second = reconciler.reconcile("cs_test_123")

    assert second.order_id == first.order_id
    assert second.invoice_id == first.invoice_id
    assert second.order_number == first.order_number
    assert count(store, "order") == 1
    assert count(store, "invoice") == 1


def test_rerun_reflects_latest_upstream_data(reconciler, gateway, store):
    gateway.sessions["cs_test_123"]["payment_status"] = "unpaid"
    first = reconciler.reconcile("cs_test_123")
    assert store.get(first.order_id)["paymentStatus"] == "unpaid"

    gateway.sessions["cs_test_123"]["payment_status"] = "paid"
    second = reconciler.reconcile("cs_test_123")

    assert store.get(second.order_id)["paymentStatus"] == "paid"
    assert count(store, "order") == 1


def test_customer_and_catalog_are_linked(reconciler, store):
    customer = store.create({"_type": "customer", "email": "BUYER@example.com", "firstName": "Pat", "lastName": "B"})
    product = store.create({"_type": "product", "sku": "ABC", "title": "Widget"})

    result = reconciler.reconcile("cs_test_123")

    order = store.get(result.order_id)
    invoice = store.get(result.invoice_id)
    assert order["customerRef"] == customer["_id"]
    assert order["cart"][0]["catalogRef"] == product["_id"]
    assert invoice["lineItems"][0]["productRef"] == product["_id"]
    assert invoice["title"] == "Pat B"


def test_metadata_invoice_is_marked_paid_instead_of_synthesizing(gateway, store, fulfillment):
    gateway.sessions["cs_test_123"]["metadata"] = {"invoice_id": "inv_42"}
    store.create({"_id": "drafts.inv_42", "_type": "invoice", "status": "pending"})

    result = Reconciler(gateway, store, fulfillment).reconcile("cs_test_123")

    assert result.invoice_id == "inv_42"
    assert store.get("drafts.inv_42")["status"] == "paid"
    assert count(store, "invoice") == 1


def test_metadata_invoice_left_alone_when_unpaid(gateway, store, fulfillment):
    gateway.sessions["cs_test_123"]["metadata"] = {"invoice_id": "inv_42"}
    gateway.sessions["cs_test_123"]["payment_status"] = "unpaid"
    store.create({"_id": "inv_42", "_type": "invoice", "status": "pending"})

    Reconciler(gateway, store, fulfillment).reconcile("cs_test_123")

    assert store.get("inv_42")["status"] == "pending"


def test_missing_metadata_invoice_is_reported_not_fatal(gateway, store, fulfillment):
    gateway.sessions["cs_test_123"]["metadata"] = {"invoice_id": "inv_gone"}

    result = Reconciler(gateway, store, fulfillment).reconcile("cs_test_123")

    assert result.updated is True
    assert {"step": "invoice_mark_paid", "kind": "not_found"}.items() <= result.report.failed_steps()[0].items()


def test_cart_failure_degrades_to_empty_cart(reconciler, gateway, store):
    gateway.fail_line_items = True

    result = reconciler.reconcile("cs_test_123")

    assert result.updated is True
    assert "cart" not in store.get(result.order_id)
    assert [step["step"] for step in result.report.failed_steps()] == ["cart"]
    assert result.report.failed_steps()[0]["kind"] == "gateway"
    assert store.get(result.invoice_id)["lineItems"] == []


def test_order_write_failure_reports_not_updated(reconciler, store, mocker):
    mocker.patch("reconciler.reconcile.write_order", side_effect=RuntimeError("store down"))

    result = reconciler.reconcile("cs_test_123")

    assert result.updated is False
    assert result.order_id is None
    assert result.invoice_id is None
    assert count(store, "invoice") == 0


def test_invoice_creation_failure_keeps_the_order(reconciler, store, monkeypatch):
    original_create = store.create

    def fail_invoices(doc):
        if doc["_type"] == "invoice":
            raise RuntimeError("invoice store unavailable")
        return original_create(doc)

    monkeypatch.setattr(store, "create", fail_invoices)

    result = reconciler.reconcile("cs_test_123")

    assert result.updated is True
    assert result.invoice_id is None
    assert count(store, "order") == 1
    assert "invoiceRef" not in store.get(result.order_id)


def test_payment_intent_only_run(store, fulfillment):
    intent = {
        "id": "pi_77",
        "status": "succeeded",
        "amount": 1200,
        "amount_received": 1200,
        "receipt_email": "pi@example.com",
        "metadata": {},
    }
    gateway = FakeGateway(intents={"pi_77": intent})

    result = Reconciler(gateway, store, fulfillment).reconcile("pi_77")

    order = store.get(result.order_id)
    assert result.type == "payment_intent"
    assert order["sessionId"] == "pi_77"
    assert order["totalAmount"] == 12.0
    assert order["customerEmail"] == "pi@example.com"
    assert "currency" not in order
    assert "cart" not in order
    assert ("list_line_items", "pi_77") not in gateway.calls


def test_unknown_id_is_fetched_as_checkout_session(store, fulfillment):
    gateway = FakeGateway(sessions={"legacy-123": make_session("legacy-123")})

    result = Reconciler(gateway, store, fulfillment).reconcile("legacy-123")

    assert result.type == "unknown"
    assert result.updated is True
    assert ("retrieve_session", "legacy-123") in gateway.calls


def test_fetch_failure_is_fatal_and_writes_nothing(reconciler, store):
    with pytest.raises(GatewayFetchError):
        reconciler.reconcile("cs_missing")

    assert count(store, "order") == 0


def test_auto_fulfill_posts_order_id(reconciler, fulfillment_calls):
    result = reconciler.reconcile("cs_test_123", auto_fulfill=True)

    assert result.fulfill_called is True
    assert len(fulfillment_calls) == 1
    assert fulfillment_calls[0].url.path == "/fulfill-order"
    assert json.loads(fulfillment_calls[0].content) == {"orderId": result.order_id}


def test_auto_fulfill_skipped_without_shipping_address(gateway, reconciler, fulfillment_calls):
    gateway.sessions["cs_test_123"]["customer_details"]["address"] = None

    result = reconciler.reconcile("cs_test_123", auto_fulfill=True)

    assert result.fulfill_called is False
    assert fulfillment_calls == []


def test_auto_fulfill_skipped_when_unpaid(gateway, reconciler, fulfillment_calls):
    gateway.sessions["cs_test_123"]["payment_status"] = "unpaid"

    result = reconciler.reconcile("cs_test_123", auto_fulfill=True)

    assert result.fulfill_called is False
    assert fulfillment_calls == []


def test_fulfillment_failure_is_reported_not_fatal(gateway, store):
    failing = FulfillmentClient(
        "https://fulfil.example.test",
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(502))),
    )

    result = Reconciler(gateway, store, failing).reconcile("cs_test_123", auto_fulfill=True)

    assert result.updated is True
    assert result.fulfill_called is False
    assert result.report.failed_steps() == [
        {"step": "fulfillment", "kind": "http", "error": "fulfill-order returned 502"}
    ]


def test_response_payload_shape(reconciler):
    response = reconciler.reconcile("cs_test_123").to_response()

    assert response["ok"] is True
    assert response["id"] == "cs_test_123"
    assert response["type"] == "checkout_session"
    assert set(response) >= {"orderId", "invoiceId", "paymentStatus", "updated", "fulfillCalled"}


def test_multiple_line_items_round_trip_into_invoice(store, fulfillment):
    gateway = FakeGateway(
        sessions={"cs_test_123": make_session(amount_subtotal=10997, amount_total=10997)},
        line_items={
            "cs_test_123": [
                make_line_item("A", "Alpha", quantity=3, unit_amount=1999),
                make_line_item("B", "Beta", quantity=1, unit_amount=5000),
            ]
        },
    )

    result = Reconciler(gateway, store, fulfillment).reconcile("cs_test_123")

    invoice = store.get(result.invoice_id)
    assert [line["lineTotal"] for line in invoice["lineItems"]] == [59.97, 50.0]
    assert invoice["subtotal"] == 109.97


@pytest.mark.parametrize("overrides", [{"payment_status": 1}, {"status": ["complete"]}])
def test_malformed_session_fields_do_not_abort_the_run(store, fulfillment, overrides):
    gateway = FakeGateway(sessions={"cs_test_123": make_session(**overrides)})

    result = Reconciler(gateway, store, fulfillment).reconcile("cs_test_123")

    assert result.updated is True
    assert store.get(result.order_id)["sessionId"] == "cs_test_123"


def test_failed_lookup_on_rerun_keeps_order_number(reconciler, store, monkeypatch):
    first = reconciler.reconcile("cs_test_123")

    find_order = store.find_order_by_session_id
    lookups = []

    def flaky_lookup(session_id):
        lookups.append(session_id)
        if len(lookups) == 1:
            raise RuntimeError("lookup timed out")
        return find_order(session_id)

    monkeypatch.setattr(store, "find_order_by_session_id", flaky_lookup)

    second = reconciler.reconcile("cs_test_123")

    order = store.get(first.order_id)
    assert second.order_id == first.order_id
    assert second.order_number == first.order_number
    assert order["orderNumber"] == first.order_number
    assert [step["step"] for step in second.report.failed_steps()] == ["order_lookup"]
    assert count(store, "order") == 1


def test_shipping_rate_is_retrieved_and_written_to_order(store, fulfillment):
    session = make_session(shipping_cost={"amount_total": 1500, "shipping_rate": "shr_ground"})
    gateway = FakeGateway(
        sessions={"cs_test_123": session},
        shipping_rates={
            "shr_ground": {
                "id": "shr_ground",
                "display_name": "UPS - Ground",
                "fixed_amount": {"amount": 1500, "currency": "usd"},
                "delivery_estimate": {"maximum": {"value": 4}},
            }
        },
    )

    result = Reconciler(gateway, store, fulfillment).reconcile("cs_test_123")

    order = store.get(result.order_id)
    assert ("retrieve_shipping_rate", "shr_ground") in gateway.calls
    assert order["shippingCarrier"] == "UPS"
    assert order["shippingServiceName"] == "Ground"
    assert order["selectedShippingAmount"] == 15.0
    assert order["shippingDeliveryDays"] == 4
    assert order["selectedService"]["serviceCode"] == "shr_ground"
    assert order["shippingMetadata"]["shipping_rate_id"] == "shr_ground"


def test_shipping_rate_failure_is_reported_not_fatal(store, fulfillment):
    session = make_session(shipping_cost={"amount_total": 1500, "shipping_rate": "shr_gone"})
    gateway = FakeGateway(sessions={"cs_test_123": session})

    result = Reconciler(gateway, store, fulfillment).reconcile("cs_test_123")

    order = store.get(result.order_id)
    assert result.updated is True
    assert result.report.failed_steps()[0]["step"] == "shipping_rate"
    assert result.report.failed_steps()[0]["kind"] == "gateway"
    assert order["selectedShippingAmount"] == 15.0
    assert "shippingCarrier" not in order
