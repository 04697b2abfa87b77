import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./priella.db")
SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")

# 'sql' | 'redis'
CALLBACKGATE_BACKEND = os.getenv("CALLBACKGATE_BACKEND", "sql").lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))

# M-Pesa Daraja
MPESA_ENV = os.environ.get("MPESA_ENV", "sandbox")
MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "")
MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "")
MPESA_SHORTCODE = os.environ.get("MPESA_SHORTCODE", "174379")
MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "")
MPESA_CALLBACK_URL = os.environ.get(
    "MPESA_CALLBACK_URL",
    "http://localhost:8000/api/payments/mpesa-callback"
)
MPESA_HTTP_TIMEOUT = float(os.environ.get("MPESA_HTTP_TIMEOUT", "30"))

ADMIN_SESSION_TTL_SECONDS = int(
    os.environ.get("ADMIN_SESSION_TTL_SECONDS", str(24 * 3600))
)
# pending ledger entries older than this show up in the reconciliation list
STALE_PENDING_SECONDS = int(os.environ.get("STALE_PENDING_SECONDS", "300"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.environ.get("LOG_JSON", "1") not in ("0", "false", "no")
