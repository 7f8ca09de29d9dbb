import stripe
import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from reconciler.config import get_settings
from reconciler.database import Base, engine
from reconciler.fulfillment import FulfillmentClient
from reconciler.models import Document  # noqa: F401  (registers the table)
from reconciler.routes import build_reconciler, get_fulfillment, get_gateway, get_store, router, run_reconciliation
from reconciler.store import DocumentStore
from reconciler.utils.logging import configure_logging

settings = get_settings()
configure_logging(settings.log_level, settings.log_format)
logger = structlog.get_logger(__name__)

RECONCILE_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}

app = FastAPI(title="Order Reconciliation Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_origin_regex=r"^http://localhost:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    store: DocumentStore = Depends(get_store),
    gateway=Depends(get_gateway),
    fulfillment: FulfillmentClient = Depends(get_fulfillment),
):
    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            get_settings().stripe_webhook_secret
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    if event["type"] not in RECONCILE_EVENTS:
        logger.debug("webhook_ignored", event_type=event["type"])
        return {"ok": True}

    session_id = event["data"]["object"]["id"]
    logger.info("webhook_reconcile", event_type=event["type"], session_id=session_id)
    reconciler = build_reconciler(store, gateway, fulfillment)
    result = await run_in_threadpool(
        run_reconciliation, reconciler, session_id, get_settings().auto_fulfill_on_webhook
    )
    return {"ok": True, "orderId": result["orderId"], "invoiceId": result["invoiceId"]}
