import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinica.db")

# Redis (availability cache + arq queue). REDIS_URL wins over the individual settings.
REDIS_URL = os.getenv("REDIS_URL")
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_SSL = os.getenv("REDIS_SSL", "false").lower() == "true"
# Set to false to run without Redis at all (in-process cache, log-only notifications)
REDIS_ENABLED = os.getenv("REDIS_ENABLED", "true").lower() == "true"

# Scheduling rules
BUSINESS_HOURS_START = os.getenv("BUSINESS_HOURS_START", "09:00")
BUSINESS_HOURS_END = os.getenv("BUSINESS_HOURS_END", "17:00")
APPOINTMENT_DURATION_MINUTES = int(os.getenv("APPOINTMENT_DURATION_MINUTES", "60"))
CANCELLATION_NOTICE_HOURS = int(os.getenv("CANCELLATION_NOTICE_HOURS", "24"))

# Availability cache
AVAILABILITY_CACHE_TTL = int(os.getenv("AVAILABILITY_CACHE_TTL", "300"))  # 5 minutes
AVAILABILITY_CACHE_ENABLED = os.getenv("AVAILABILITY_CACHE_ENABLED", "true").lower() == "true"

# Notification service (delivered by the arq worker)
NOTIFICATION_SERVICE_URL = os.getenv("NOTIFICATION_SERVICE_URL")
NOTIFICATION_SERVICE_TOKEN = os.getenv("NOTIFICATION_SERVICE_TOKEN")
NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))

# Frontend origins allowed by CORS
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000"
).split(",")


@dataclass(frozen=True)
class SchedulingSettings:
    """Engine-wide scheduling rules, injected into SchedulingService"""

    business_hours_start: str = BUSINESS_HOURS_START
    business_hours_end: str = BUSINESS_HOURS_END
    appointment_duration_minutes: int = APPOINTMENT_DURATION_MINUTES
    cache_ttl: int = AVAILABILITY_CACHE_TTL
    cancellation_notice_hours: int = CANCELLATION_NOTICE_HOURS
