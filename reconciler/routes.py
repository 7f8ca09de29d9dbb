from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from reconciler.auth import verify_token
from reconciler.config import TRUTHY, get_settings
from reconciler.database import SessionLocal
from reconciler.fulfillment import FulfillmentClient
from reconciler.reconcile import Reconciler
from reconciler.store import DocumentStore
from reconciler.stripe_service import GatewayFetchError, GatewayNotConfigured, StripeGateway

router = APIRouter()


def get_store():
    store = DocumentStore(SessionLocal())
    try:
        yield store
    finally:
        store.close()


def get_gateway():
    try:
        return StripeGateway(get_settings().stripe_secret_key)
    except GatewayNotConfigured:
        return None


def get_fulfillment():
    settings = get_settings()
    client = FulfillmentClient(settings.fulfillment_base_url, timeout=settings.fulfillment_timeout)
    try:
        yield client
    finally:
        client.close()


def build_reconciler(store: DocumentStore, gateway, fulfillment: FulfillmentClient) -> Reconciler:
    if gateway is None:
        raise HTTPException(status_code=500, detail="Stripe is not configured")
    return Reconciler(gateway, store, fulfillment, invoice_due_days=get_settings().invoice_due_days)


def parse_flag(value) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY


async def read_params(request: Request) -> dict:
    params = dict(request.query_params)
    if request.method == "POST":
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            params.update({k: v for k, v in body.items() if v is not None})
    return params


def run_reconciliation(reconciler: Reconciler, raw_id: str, auto_fulfill: bool) -> dict:
    try:
        result = reconciler.reconcile(raw_id, auto_fulfill=auto_fulfill)
    except GatewayFetchError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return result.to_response()


@router.api_route("/reconcile", methods=["GET", "POST"], dependencies=[Depends(verify_token)])
async def reconcile(
    request: Request,
    store: DocumentStore = Depends(get_store),
    gateway=Depends(get_gateway),
    fulfillment: FulfillmentClient = Depends(get_fulfillment),
):
    params = await read_params(request)
    raw_id = str(params.get("id") or params.get("session_id") or "").strip()
    if not raw_id:
        raise HTTPException(status_code=400, detail="Missing id")

    reconciler = build_reconciler(store, gateway, fulfillment)
    return await run_in_threadpool(
        run_reconciliation, reconciler, raw_id, parse_flag(params.get("autoFulfill"))
    )


@router.get("/health")
def health():
    return {"status": "ok"}
