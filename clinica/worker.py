"""
ARQ Background Worker
Delivers appointment notification events to the external notification service
"""

import logging
import os

import httpx
from arq import Retry

from .config import (
    NOTIFICATION_SERVICE_TOKEN,
    NOTIFICATION_SERVICE_URL,
    NOTIFICATION_TIMEOUT_SECONDS,
)
from .redis_client import get_redis_settings

logger = logging.getLogger(__name__)

MAX_TRIES = 3


async def send_appointment_notification(ctx, kind: str, appointment: dict) -> dict:
    """
    Post one appointment event to the notification service

    Args:
        ctx: ARQ context
        kind: Event kind (scheduled, rescheduled, cancelled, ...)
        appointment: Appointment snapshot as produced by appointment_payload

    Returns:
        dict with delivery status
    """
    appointment_id = appointment.get("id")
    job_try = ctx.get("job_try", 1)

    if not NOTIFICATION_SERVICE_URL:
        logger.info(f"ℹ️ Notification service not configured, skipping {kind} for {appointment_id}")
        return {"delivered": False, "reason": "not_configured"}

    headers = {}
    if NOTIFICATION_SERVICE_TOKEN:
        headers["Authorization"] = f"Bearer {NOTIFICATION_SERVICE_TOKEN}"

    logger.info(f"📧 Sending {kind} notification for {appointment_id} (try {job_try})")
    try:
        async with httpx.AsyncClient(timeout=NOTIFICATION_TIMEOUT_SECONDS) as client:
            response = await client.post(
                f"{NOTIFICATION_SERVICE_URL.rstrip('/')}/appointment-events",
                json={"event": kind, "appointment": appointment},
                headers=headers,
            )
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        if e.response.status_code < 500:
            logger.error(f"❌ Notification service rejected {kind} for {appointment_id}: {e}")
            return {"delivered": False, "reason": f"http_{e.response.status_code}"}
        if job_try >= MAX_TRIES:
            raise
        logger.warning(f"⚠️ Notification service error for {appointment_id}, retrying: {e}")
        raise Retry(defer=job_try * 5) from e
    except httpx.TransportError as e:
        if job_try >= MAX_TRIES:
            raise
        logger.warning(f"⚠️ Notification service unreachable for {appointment_id}, retrying: {e}")
        raise Retry(defer=job_try * 5) from e

    logger.info(f"✅ {kind} notification delivered for {appointment_id}")
    return {"delivered": True}


class WorkerSettings:
    """ARQ Worker Settings"""

    functions = [send_appointment_notification]
    redis_settings = get_redis_settings()

    max_jobs = int(os.getenv("ARQ_MAX_JOBS", "20"))
    job_timeout = int(os.getenv("ARQ_JOB_TIMEOUT", "60"))
    keep_result = int(os.getenv("ARQ_KEEP_RESULT", "3600"))  # Keep job results for 1 hour

    health_check_interval = 60

    max_tries = MAX_TRIES
