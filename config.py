import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SUPABASE_URL: str = os.environ.get("SUPABASE_URL", "")
SUPABASE_KEY: str = os.environ.get("SUPABASE_KEY", "")

STRIPE_SECRET_KEY: str = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

# planId (as sent by the subscription page) -> Stripe price id
STRIPE_PLAN_PRICE_IDS: dict[str, str] = {
    "basic": os.environ.get("STRIPE_CUSTOMER_BASIC_PRICE_ID", ""),
    "premium": os.environ.get("STRIPE_CUSTOMER_PREMIUM_PRICE_ID", ""),
    "enterprise": os.environ.get("STRIPE_CUSTOMER_ENTERPRISE_PRICE_ID", ""),
    "provider": os.environ.get("STRIPE_PROVIDER_PRICE_ID", ""),
}

APP_URL: str = os.environ.get("APP_URL", "http://localhost:3000").rstrip("/")
CURRENCY: str = os.environ.get("CURRENCY", "usd")

EXPO_ACCESS_TOKEN: str | None = os.environ.get("EXPO_ACCESS_TOKEN")
LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").upper()

SERVICE_IMAGES_BUCKET = "service-images"
DEFAULT_SERVICE_IMAGE = "/default-service.png"

if not SUPABASE_URL or not SUPABASE_KEY:
    logger.warning("SUPABASE_URL or SUPABASE_KEY not set in environment.")

if not STRIPE_SECRET_KEY:
    logger.warning("STRIPE_SECRET_KEY not set; checkout and subscriptions will fail.")
