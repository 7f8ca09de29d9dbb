import httpx
import structlog

logger = structlog.get_logger(__name__)


class FulfillmentError(RuntimeError):
    pass


def should_fulfill(auto_fulfill: bool, order_id, payment_status, shipping_address) -> bool:
    return bool(auto_fulfill and order_id and payment_status == "paid" and shipping_address)


class FulfillmentClient:
    def __init__(self, base_url: str | None, timeout: float = 10.0, client: httpx.Client | None = None):
        self.base_url = (base_url or "").rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def fulfill(self, order_id: str) -> bool:
        if not self.base_url:
            raise FulfillmentError("FULFILLMENT_BASE_URL is not set")
        try:
            response = self.client.post(f"{self.base_url}/fulfill-order", json={"orderId": order_id})
        except httpx.HTTPError as exc:
            raise FulfillmentError(f"fulfill-order request failed: {exc}") from exc
        if not response.is_success:
            raise FulfillmentError(f"fulfill-order returned {response.status_code}")
        logger.info("fulfillment_requested", order_id=order_id)
        return True

    def close(self) -> None:
        self.client.close()
