import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DATABASE_URL = os.getenv("DATABASE_URL")

SHOPIFY_STORE_DOMAIN = os.getenv("SHOPIFY_STORE_DOMAIN", "")
SHOPIFY_API_VERSION = os.getenv("SHOPIFY_API_VERSION", "2025-01")
SHOPIFY_ADMIN_API_ACCESS_TOKEN = os.getenv("SHOPIFY_ADMIN_API_ACCESS_TOKEN", "")
SHOPIFY_STOREFRONT_ACCESS_TOKEN = os.getenv("SHOPIFY_STOREFRONT_ACCESS_TOKEN", "")

SEPAY_API_KEY = os.getenv("SEPAY_API_KEY")
SEPAY_BANK_ACCOUNT = os.getenv("SEPAY_BANK_ACCOUNT", "")
SEPAY_BANK_NAME = os.getenv("SEPAY_BANK_NAME", "")
SEPAY_BANK_BIN = os.getenv("SEPAY_BANK_BIN", "")

WAREHOUSE_WEBHOOK_URL = os.getenv("WAREHOUSE_WEBHOOK_URL")
WAREHOUSE_WEBHOOK_SECRET = os.getenv("WAREHOUSE_WEBHOOK_SECRET")

JWT_SECRET = os.getenv("JWT_SECRET")
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

PAYMENT_CODE_PREFIX = os.getenv("PAYMENT_CODE_PREFIX", "PERF")
CHECKOUT_EXPIRY_MINUTES = int(os.getenv("CHECKOUT_EXPIRY_MINUTES", "15"))
COD_DUPLICATE_WINDOW_SECONDS = int(os.getenv("COD_DUPLICATE_WINDOW_SECONDS", "120"))

# "settle": a sufficient payment on an expired session still creates the order.
# "review": the payment is recorded unprocessed for an operator to handle.
LATE_PAYMENT_POLICY = os.getenv("LATE_PAYMENT_POLICY", "settle")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "plain")

HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
