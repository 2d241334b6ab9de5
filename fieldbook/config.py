import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./fieldbook.db")

# Frontend base URL for redirects and email action links
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
ACTION_BASE_URL = os.getenv("ACTION_BASE_URL", f"{FRONTEND_URL}/email-actions")

# Staff notifications
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "contact@example.com")

# Security - CRITICAL: No default admin key in production
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")
if not ADMIN_API_KEY:
    import warnings

    warnings.warn(
        "ADMIN_API_KEY not set! Admin-only endpoints will reject every caller",
        RuntimeWarning,
        stacklevel=2,
    )

# Business rules
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "America/Guadeloupe")
ACTION_TOKEN_TTL_HOURS = int(os.getenv("ACTION_TOKEN_TTL_HOURS", "72"))
REMINDER_OFFSET_HOURS = int(os.getenv("REMINDER_OFFSET_HOURS", "24"))
CANCELLATION_WINDOW_HOURS = int(os.getenv("CANCELLATION_WINDOW_HOURS", "24"))
# Whether staff may mark an appointment completed before its scheduled time
ALLOW_EARLY_COMPLETION = os.getenv("ALLOW_EARLY_COMPLETION", "false").lower() == "true"

# Redis (arq job queue). REDIS_URL wins over the discrete settings
REDIS_URL = os.getenv("REDIS_URL")
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
REDIS_SSL = os.getenv("REDIS_SSL", "false").lower() == "true"

# Job queue (arq on redis)
QUEUE_NAME = os.getenv("QUEUE_NAME", "arq:queue")
QUEUE_CALL_TIMEOUT = float(os.getenv("QUEUE_CALL_TIMEOUT", "5.0"))  # seconds per backend call
QUEUE_BACKLOG_THRESHOLD = int(os.getenv("QUEUE_BACKLOG_THRESHOLD", "100"))
QUEUE_MEMORY_CAPACITY_BYTES = int(
    os.getenv("QUEUE_MEMORY_CAPACITY_BYTES", str(50 * 1024 * 1024))
)  # 50 MB
QUEUE_USAGE_CEILING_PERCENT = float(os.getenv("QUEUE_USAGE_CEILING_PERCENT", "80"))
QUEUE_METRICS_INTERVAL = float(os.getenv("QUEUE_METRICS_INTERVAL", "15"))  # seconds between gauge refreshes

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "Fieldbook <noreply@example.com>")
