import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from config import settings
from database import Base, engine
from errors import BillingError, UpstreamError, ValidationError
from billing.checkout import CheckoutService
from billing.stripe_gateway import configure_stripe
from billing.subscriptions import SubscriptionService
from billing.sweeper import CleanupSweeper
from billing.webhooks import WebhookProcessor
from dependencies import (
    CurrentUser,
    billing_config,
    get_checkout_service,
    get_cleanup_sweeper,
    get_current_user,
    get_subscription_service,
    get_webhook_processor,
    require_cleanup_secret,
)

# Tracing
from opentelemetry import trace
from opentelemetry.exporter.cloud_trace import CloudTraceSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.cloud_trace_propagator import (
    CloudTraceFormatPropagator,
)
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

# Rate Limiting
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

# Configure Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def setup_tracing():
    # Cloud Trace needs Google credentials; only wire it up where they exist
    set_global_textmap(CloudTraceFormatPropagator())
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(BatchSpanProcessor(CloudTraceSpanExporter()))
    trace.set_tracer_provider(tracer_provider)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    configure_stripe(billing_config)
    mode = "test" if billing_config.is_test_mode else "live"
    logger.info(f"Billing service started (Stripe {mode} mode, environment {settings.ENVIRONMENT})")
    yield


# Initialize Limiter
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)
app = FastAPI(title="Readung Billing", version="1.0.0", lifespan=lifespan)

if settings.TRACING_ENABLED:
    setup_tracing()
    # Instrument FastAPI
    FastAPIInstrumentor.instrument_app(app)

# Add CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
    error = ValidationError("Request body is malformed.", details={"errors": errors})
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


class CheckoutRequest(BaseModel):
    plan: Optional[str] = None
    userId: Optional[str] = None
    userEmail: Optional[str] = None
    returnUrl: Optional[str] = None


@app.get("/health")
def health_check():
    return {"status": "healthy"}


@app.post("/api/webhook")
async def stripe_webhook(request: Request, processor: WebhookProcessor = Depends(get_webhook_processor)):
    """
    Stripe webhook receiver. The body must stay unparsed until the
    signature has been verified against it.
    """
    payload = await request.body()
    event = processor.verify(payload, request.headers.get("stripe-signature"))
    try:
        result = await asyncio.to_thread(processor.process, event)
    except BillingError:
        raise
    except Exception:
        logger.error("Error processing webhook", exc_info=True)
        raise UpstreamError("The event could not be processed.", error="Webhook processing failed")
    return {"received": True, "eventType": result["eventType"]}


@app.post("/api/create-checkout-session")
@limiter.limit(settings.RATE_LIMIT)
def create_checkout_session(
    request: Request,
    body: CheckoutRequest,
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        url = service.create_checkout_session(body.plan, body.userId, body.userEmail, body.returnUrl)
    except BillingError:
        raise
    except Exception:
        logger.error("Error creating checkout session", exc_info=True)
        raise UpstreamError("Checkout is temporarily unavailable.", error="Failed to create checkout session")
    return {"url": url}


@app.post("/api/cancel-subscription")
@limiter.limit(settings.RATE_LIMIT)
def cancel_subscription(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        return service.cancel(user.uid)
    except BillingError:
        raise
    except Exception:
        logger.error("Error canceling subscription", exc_info=True)
        raise UpstreamError("The subscription could not be canceled.", error="Failed to cancel subscription")


@app.post("/api/reactivate-subscription")
@limiter.limit(settings.RATE_LIMIT)
def reactivate_subscription(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        return service.reactivate(user.uid)
    except BillingError:
        raise
    except Exception:
        logger.error("Error reactivating subscription", exc_info=True)
        raise UpstreamError("The subscription could not be reactivated.", error="Failed to reactivate subscription")


@app.post("/api/update-user-membership")
def update_user_membership(
    user: CurrentUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Development only: grants premium backed by a test subscription."""
    try:
        return service.grant_test_premium(user.uid, user.email)
    except BillingError:
        raise
    except Exception:
        logger.error("Error updating membership", exc_info=True)
        raise UpstreamError("Membership could not be updated.", error="Failed to update membership")


@app.post("/api/cleanup-expired-premium", dependencies=[Depends(require_cleanup_secret)])
def cleanup_expired_premium(sweeper: CleanupSweeper = Depends(get_cleanup_sweeper)):
    try:
        stats = sweeper.run()
    except Exception:
        logger.error("Error during cleanup", exc_info=True)
        raise UpstreamError("Cleanup did not complete.", error="Cleanup failed")
    return {"success": True, "message": "Cleanup completed successfully", "stats": stats}


if __name__ == "__main__":
    import uvicorn
    # Listen on 0.0.0.0 because we are inside a container
    uvicorn.run(app, host="0.0.0.0", port=8080)
