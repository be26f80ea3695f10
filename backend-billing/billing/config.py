import logging
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict

from errors import ConfigurationError

logger = logging.getLogger(__name__)

TEST_KEY_PREFIX = "sk_test_"

REQUIRED_SECRETS = ("stripe_secret_key", "stripe_webhook_secret", "cleanup_secret")


class BillingConfig(BaseModel):
    """Billing settings resolved once at startup and handed to each service."""
    model_config = ConfigDict(frozen=True)

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    price_ids: Dict[str, str] = {}
    cleanup_secret: str = ""
    app_base_url: str = "http://localhost:3000"
    stripe_timeout_seconds: float = 10.0
    development: bool = False

    @classmethod
    def from_settings(cls, settings) -> "BillingConfig":
        config = cls(
            stripe_secret_key=settings.STRIPE_SECRET_KEY,
            stripe_webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            price_ids={
                "monthly": settings.STRIPE_PRICE_MONTHLY,
                "annual": settings.STRIPE_PRICE_ANNUAL,
            },
            cleanup_secret=settings.CLEANUP_SECRET,
            app_base_url=settings.APP_BASE_URL.rstrip("/"),
            stripe_timeout_seconds=settings.STRIPE_TIMEOUT_SECONDS,
            development=settings.is_development,
        )
        missing = config.missing()
        if missing:
            logger.error(f"Billing configuration incomplete, affected endpoints will return 500: {', '.join(missing)}")
        return config

    def missing(self) -> list:
        missing = [name for name in REQUIRED_SECRETS if not getattr(self, name)]
        missing.extend(f"price_ids.{plan}" for plan, price in self.price_ids.items() if not price)
        return missing

    def require(self, *names: str) -> None:
        for name in names:
            if not getattr(self, name):
                logger.error(f"Missing required billing setting: {name}")
                raise ConfigurationError(
                    "Billing is not configured on this server.",
                    details={"missing": name.upper()},
                )

    @property
    def is_test_mode(self) -> bool:
        return self.stripe_secret_key.startswith(TEST_KEY_PREFIX)

    def price_for(self, plan: str) -> Optional[str]:
        return self.price_ids.get(plan)

    @property
    def plans(self) -> list:
        return list(self.price_ids)
