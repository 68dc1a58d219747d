import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)
REDIS_URL = os.environ.get("REDIS_URL", "")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "BX")
DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "usd")

# delivery outbox
# fixed, mirrored by the max_delivery_attempts CHECK constraint
MAX_DELIVERY_ATTEMPTS = 5
DELIVERY_LEASE_SECONDS = int(os.getenv("DELIVERY_LEASE_SECONDS", "300"))
OUTBOX_WORKER_ENABLED = os.getenv("OUTBOX_WORKER_ENABLED", "1") == "1"
OUTBOX_INTERVAL_SECONDS = float(os.getenv("OUTBOX_INTERVAL_SECONDS", "5"))
OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "10"))

DELIVERY_RELAY_URL = os.environ.get("DELIVERY_RELAY_URL", "")
DELIVERY_RELAY_TOKEN = os.environ.get("DELIVERY_RELAY_TOKEN", "")
DELIVERY_FROM = os.environ.get("DELIVERY_FROM", "tickets@boxoffice.local")

# display-only availability snapshots (seconds)
AVAILABILITY_CACHE_TTL = int(os.getenv("AVAILABILITY_CACHE_TTL", "5"))

WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "dev-webhook-secret")
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")
