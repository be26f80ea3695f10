import hmac
import logging
from typing import Optional
from fastapi import Header, Depends, Request
import firebase_admin
from firebase_admin import auth
from pydantic import BaseModel
from sqlalchemy.orm import Session
from database import get_db
from config import settings
from errors import AuthenticationError, ConfigurationError
from billing.config import BillingConfig
from billing.checkout import CheckoutService
from billing.stripe_gateway import StripeGateway
from billing.subscriptions import SubscriptionService
from billing.sweeper import CleanupSweeper
from billing.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)

# Initialize Firebase Admin SDK
# Use Application Default Credentials (ADC) which works automatically on Cloud Run
try:
    firebase_admin.get_app()
except ValueError:
    firebase_admin.initialize_app()

# Resolved once at startup; missing secrets are logged here and surface as 500s per request
billing_config = BillingConfig.from_settings(settings)


class CurrentUser(BaseModel):
    uid: str
    email: Optional[str] = None


def get_billing_config() -> BillingConfig:
    return billing_config


def get_stripe_gateway(config: BillingConfig = Depends(get_billing_config)) -> StripeGateway:
    return StripeGateway(config)


def get_checkout_service(
    db: Session = Depends(get_db),
    config: BillingConfig = Depends(get_billing_config),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CheckoutService:
    return CheckoutService(db, config, gateway)


def get_subscription_service(
    db: Session = Depends(get_db),
    config: BillingConfig = Depends(get_billing_config),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SubscriptionService:
    return SubscriptionService(db, config, gateway)


def get_webhook_processor(
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> WebhookProcessor:
    return WebhookProcessor(db, gateway)


def get_cleanup_sweeper(db: Session = Depends(get_db)) -> CleanupSweeper:
    return CleanupSweeper(db)


def get_current_user(authorization: str = Header(None)) -> CurrentUser:
    """
    Validates the Firebase ID token sent as `Authorization: Bearer <token>`.
    """
    if not authorization or not authorization.startswith("Bearer "):
        logger.warning("Missing or invalid authorization header")
        raise AuthenticationError("Missing bearer token.")

    token = authorization[len("Bearer "):].strip()
    try:
        # Verify the ID token while checking if the token is revoked.
        decoded_token = auth.verify_id_token(token, check_revoked=True)
    except auth.RevokedIdTokenError:
        logger.warning("Firebase token revoked")
        raise AuthenticationError("Token revoked. Please login again.")
    except auth.ExpiredIdTokenError:
        logger.warning("Firebase token expired")
        raise AuthenticationError("Token expired. Please login again.")
    except Exception as e:
        logger.error(f"Firebase token validation error: {e}")
        raise AuthenticationError("Invalid token. Please login again.")

    uid = decoded_token.get("uid")
    if not uid:
        raise AuthenticationError("Token missing user id.")
    return CurrentUser(uid=uid, email=decoded_token.get("email"))


async def require_cleanup_secret(
    request: Request,
    x_cleanup_secret: str = Header(None, alias="X-Cleanup-Secret"),
    config: BillingConfig = Depends(get_billing_config),
) -> None:
    """Shared-secret guard for the scheduled cleanup job."""
    if not config.cleanup_secret:
        logger.error("CLEANUP_SECRET is not configured")
        raise ConfigurationError("Cleanup is not configured on this server.", details={"missing": "CLEANUP_SECRET"})

    secret = x_cleanup_secret
    if not secret:
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            secret = body.get("secret")

    if not secret or not hmac.compare_digest(str(secret).encode(), config.cleanup_secret.encode()):
        logger.warning("Cleanup called with a missing or wrong secret")
        raise AuthenticationError("Invalid cleanup secret.")
