import os

SERVICE_NAME = "session-service"

DATABASE_URL = os.getenv("SESSION_DB")
if not DATABASE_URL:
    raise RuntimeError("SESSION_DB environment variable is not set")

REDIS_URL = os.getenv("REDIS_URL")
if not REDIS_URL:
    raise RuntimeError("REDIS_URL environment variable is not set")

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events
EXCHANGE_NAME = "session_events"

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY") or ""
PAYMENTS_TIMEOUT_SECONDS = float(os.getenv("PAYMENTS_TIMEOUT_SECONDS") or "5")
CURRENCY = os.getenv("CURRENCY") or "usd"

PLATFORM_FEE_PERCENT = float(os.getenv("PLATFORM_FEE_PERCENT") or "15")

# a settlement claim older than this is considered abandoned and can be taken over
SETTLEMENT_CLAIM_LEASE_SECONDS = int(os.getenv("SETTLEMENT_CLAIM_LEASE_SECONDS") or "300")

# ---- Extension negotiation ----
EXTENSION_TRIGGER_SECONDS = int(os.getenv("EXTENSION_TRIGGER_SECONDS") or "180")
EXTENSION_TRIGGER_TOLERANCE_SECONDS = int(os.getenv("EXTENSION_TRIGGER_TOLERANCE_SECONDS") or "0")
EXTENSION_RESPONSE_SECONDS = int(os.getenv("EXTENSION_RESPONSE_SECONDS") or "30")
EXTENSION_WINDOW_MINUTES = int(os.getenv("EXTENSION_WINDOW_MINUTES") or "30")
EXTENSION_SWEEP_INTERVAL_SECONDS = float(os.getenv("EXTENSION_SWEEP_INTERVAL_SECONDS") or "2")
MIN_CHARGE_CENTS = 50
