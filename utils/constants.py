import os

from dotenv import load_dotenv

load_dotenv(".env.local")

# ENV variables
API_URL = os.getenv("API_URL", "http://localhost:8000")
WEBAPP_URL = os.getenv("WEBAPP_URL", "http://localhost:8081")
IS_DEV = os.getenv("IS_DEV", "true").lower() in ("true", "1", "yes")

# Database configuration (postgresql://... or sqlite://<path> for tests)
DATABASE_URL = os.getenv("DATABASE_URL")
MIGRATIONS_DIR = os.path.join(
    os.path.dirname(__file__), "..", "database", "supabase", "migrations"
)

# Encryption configuration (Fernet key used for aggregator tokens at rest)
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")

# Powens configuration
POWENS_DOMAIN = os.getenv("POWENS_DOMAIN", "sandbox")
POWENS_API_URL = os.getenv("POWENS_API_URL", f"https://{POWENS_DOMAIN}.biapi.pro/2.0")
POWENS_CLIENT_ID = os.getenv("POWENS_CLIENT_ID")
POWENS_CLIENT_SECRET = os.getenv("POWENS_CLIENT_SECRET")
POWENS_PAGE_SIZE = int(os.getenv("POWENS_PAGE_SIZE", "500"))

# Outbound call policy
AGGREGATOR_TIMEOUT_SECONDS = float(os.getenv("AGGREGATOR_TIMEOUT_SECONDS", "30"))
AGGREGATOR_MAX_RETRIES = int(os.getenv("AGGREGATOR_MAX_RETRIES", "3"))
AGGREGATOR_RETRY_BACKOFF_SECONDS = float(
    os.getenv("AGGREGATOR_RETRY_BACKOFF_SECONDS", "0.5")
)

# Sync windows and policy
SYNC_INITIAL_LOOKBACK_DAYS = int(os.getenv("SYNC_INITIAL_LOOKBACK_DAYS", "365"))
SYNC_RECOVERY_LOOKBACK_DAYS = int(os.getenv("SYNC_RECOVERY_LOOKBACK_DAYS", "30"))
SYNC_MIN_INTERVAL_SECONDS = int(os.getenv("SYNC_MIN_INTERVAL_SECONDS", "300"))  # 5 minutes
SYNC_STALE_AFTER_SECONDS = int(os.getenv("SYNC_STALE_AFTER_SECONDS", "21600"))  # 6 hours
TRANSACTION_CONFLICT_POLICY = os.getenv(
    "TRANSACTION_CONFLICT_POLICY", "newer_or_different"
)

# Credential lifecycle
TOKEN_EXPIRY_BUFFER_SECONDS = int(os.getenv("TOKEN_EXPIRY_BUFFER_SECONDS", "600"))  # 10 minutes
TOKEN_REFRESH_LOOKAHEAD_SECONDS = int(
    os.getenv("TOKEN_REFRESH_LOOKAHEAD_SECONDS", "7200")
)  # 2 hours

# Scheduler configuration
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() in ("true", "1", "yes")
SYNC_INTERVAL_SECONDS = int(os.getenv("SYNC_INTERVAL_SECONDS", "7200"))  # 2 hours
HEALTH_CHECK_INTERVAL_SECONDS = int(os.getenv("HEALTH_CHECK_INTERVAL_SECONDS", "900"))  # 15 minutes
TOKEN_REFRESH_INTERVAL_SECONDS = int(os.getenv("TOKEN_REFRESH_INTERVAL_SECONDS", "3600"))  # 1 hour
HOUSEKEEPING_INTERVAL_SECONDS = int(os.getenv("HOUSEKEEPING_INTERVAL_SECONDS", "86400"))  # 1 day

# Browser-initiated callback runs answer within this deadline
CALLBACK_DEADLINE_SECONDS = float(os.getenv("CALLBACK_DEADLINE_SECONDS", "25"))
