"""
Centralized configuration for the KAAPAV WhatsApp bot.
Every value can be overridden from the environment or a .env file.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# --- WhatsApp Cloud API ---
WHATSAPP_TOKEN = os.getenv("WHATSAPP_TOKEN", "")
WHATSAPP_PHONE_ID = os.getenv("WHATSAPP_PHONE_ID", "")
WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN", "kaapav-verify")
GRAPH_API_VERSION = os.getenv("GRAPH_API_VERSION", "v20.0")

# --- Shared stores ---
# Empty → in-process TTL store (single worker only)
REDIS_URL = os.getenv("REDIS_URL", "")

# --- Telemetry ---
TELEMETRY_WEBHOOK_URL = os.getenv("TELEMETRY_WEBHOOK_URL", "")

# --- Pipeline tuning ---
RATE_LIMIT_MS = int(os.getenv("RATE_LIMIT_MS", "900"))
MESSAGE_TIMEOUT_MS = int(os.getenv("MESSAGE_TIMEOUT_MS", "5000"))
DEDUPE_TTL_SECONDS = int(os.getenv("DEDUPE_TTL_SECONDS", "3600"))
RATE_LIMIT_TTL_SECONDS = int(os.getenv("RATE_LIMIT_TTL_SECONDS", "60"))
SEEN_CACHE_SIZE = int(os.getenv("SEEN_CACHE_SIZE", "5000"))

# --- Storefront links ---
WEBSITE_URL = os.getenv("WEBSITE_URL", "https://www.kaapav.com")
CATALOG_URL = os.getenv("CATALOG_URL", "https://wa.me/c/919148330016")
WAME_CHAT_URL = os.getenv("WAME_CHAT_URL", "https://wa.me/919148330016")
BESTSELLERS_URL = os.getenv(
    "BESTSELLERS_URL",
    "https://www.kaapav.com/shop/category/all-jewellery-12?category=12&search=&order=&tags=16",
)
PAYMENT_URL = os.getenv("PAYMENT_URL", "https://razorpay.me/@kaapav")
TRACKING_URL = os.getenv("TRACKING_URL", "https://www.shiprocket.in/shipment-tracking/")
FACEBOOK_URL = os.getenv("FACEBOOK_URL", "https://www.facebook.com/kaapavfashionjewellery/")
INSTAGRAM_URL = os.getenv("INSTAGRAM_URL", "https://www.instagram.com/kaapavfashionjewellery/")

# --- Server ---
PORT = int(os.getenv("PORT", "8080"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
