import os
import sys
from decimal import Decimal

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./fanpass.db")
    sys.exit(1)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
# the users row the admin session acts as
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@fanpass.local")

PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "sk_test_dev")
PAYSTACK_BASE_URL = os.environ.get(
    "PAYSTACK_BASE_URL", "https://api.paystack.co"
)
PAYSTACK_TIMEOUT_SECONDS = float(
    os.environ.get("PAYSTACK_TIMEOUT_SECONDS", "10")
)
PAYSTACK_CALLBACK_URL = os.environ.get(
    "PAYSTACK_CALLBACK_URL", "http://localhost:8000/payments/verify"
)

QR_TOKEN_SECRET = os.environ.get("QR_TOKEN_SECRET", "dev-qr-secret")
ACCESS_TOKEN_MAX_AGE = int(
    os.environ.get("ACCESS_TOKEN_MAX_AGE", str(7 * 24 * 3600))
)

COIN_NAIRA_RATE = Decimal(os.environ.get("COIN_NAIRA_RATE", "0.5"))
MIN_WITHDRAWAL_COINS = int(os.environ.get("MIN_WITHDRAWAL_COINS", "100000"))
# max allowed |paid - expected| in kobo; the default accepts anything under one naira
AMOUNT_TOLERANCE_KOBO = int(os.environ.get("AMOUNT_TOLERANCE_KOBO", "99"))
# price of one coin when buying coins, in kobo
COIN_PRICE_KOBO = int(os.environ.get("COIN_PRICE_KOBO", "100"))

REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")
STATS_TTL_SECONDS = int(os.environ.get("STATS_TTL_SECONDS", "30"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
