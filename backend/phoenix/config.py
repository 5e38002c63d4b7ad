import os

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "") or os.getenv("GOOGLE_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")

SHOPIFY_API_VERSION = os.getenv("SHOPIFY_API_VERSION", "2025-07")

# Shopify OAuth (public apps / Dev Dashboard)
SHOPIFY_CLIENT_ID = os.getenv("SHOPIFY_CLIENT_ID", "")  # Dev Dashboard "Client ID"
SHOPIFY_CLIENT_SECRET = os.getenv("SHOPIFY_CLIENT_SECRET", "")  # Dev Dashboard "Secret" (shpss_...)
# Comma-separated scopes covering products, files, inventory, locations and legal policies.
SHOPIFY_OAUTH_SCOPES = os.getenv(
    "SHOPIFY_OAUTH_SCOPES",
    "read_files,write_files,read_inventory,write_inventory,read_legal_policies,read_locations,"
    "read_products,write_products,read_content,write_content",
)
OAUTH_STATE_SECRET = os.getenv("OAUTH_STATE_SECRET", "")

DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
DATA_DIR = os.getenv("DATA_DIR", "./data")

# Usage periods are calendar months in this timezone
BILLING_TIMEZONE = os.getenv("BILLING_TIMEZONE", "UTC")
ANTI_CHURN_LOCKOUT_DAYS = int(os.getenv("ANTI_CHURN_LOCKOUT_DAYS", "180"))

# Batch fan-out against Shopify + Gemini
BATCH_CONCURRENCY = int(os.getenv("BATCH_CONCURRENCY", "5"))
BATCH_BACKOFF_SECONDS = float(os.getenv("BATCH_BACKOFF_SECONDS", "2.0"))
BURST_SIZE = int(os.getenv("BURST_SIZE", "5"))


# Celery requires an explicit ssl_cert_reqs query param when using `rediss://`.
def _fix_rediss(url: str) -> str:
    if url.startswith("rediss://") and "ssl_cert_reqs=" not in url:
        sep = "&" if "?" in url else "?"
        return f"{url}{sep}ssl_cert_reqs=CERT_NONE"
    return url

CELERY_BROKER_URL = _fix_rediss(os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0"))
CELERY_RESULT_BACKEND = _fix_rediss(os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/0"))

BASE_URL = os.getenv("BASE_URL", "")

# Run background bursts inline unless USE_CELERY is explicitly enabled
USE_CELERY = os.getenv("USE_CELERY", "false").lower() in ("1", "true", "yes")
