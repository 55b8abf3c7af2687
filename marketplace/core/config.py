import os

# ✅ Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./marketplace.db")
RUN_MIGRATIONS = os.getenv("RUN_MIGRATIONS", "0") == "1"

# ✅ Security
SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
# Login lives in the external auth service; only advertised in the OpenAPI docs
AUTH_TOKEN_URL = os.getenv("AUTH_TOKEN_URL", "https://auth.example.com/token")

# ✅ Cache
REDIS_URL = os.getenv("REDIS_URL")

# ✅ Realtime notifications
SSE_HEARTBEAT_SECONDS = float(os.getenv("SSE_HEARTBEAT_SECONDS", "30"))
SSE_CLIENT_QUEUE = int(os.getenv("SSE_CLIENT_QUEUE", "100"))

# ✅ Subscriptions
EXPIRY_NOTICE_DAYS = int(os.getenv("EXPIRY_NOTICE_DAYS", "7"))
NOTIFICATION_DEDUPE_DAYS = int(os.getenv("NOTIFICATION_DEDUPE_DAYS", "7"))
FREE_PACKAGE_NAME = os.getenv("FREE_PACKAGE_NAME", "Free")

# ✅ Pricing
DEFAULT_PAID_REVISION_COST = int(os.getenv("DEFAULT_PAID_REVISION_COST", "1"))
DEFAULT_MAX_FREE_REVISIONS = int(os.getenv("DEFAULT_MAX_FREE_REVISIONS", "0"))

# ✅ Scheduled jobs
CRON_SECRET = os.getenv("CRON_SECRET")

# ✅ Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
