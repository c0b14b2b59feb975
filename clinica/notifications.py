"""
Appointment notification dispatch
Scheduling writes hand events to a notifier; delivery happens in the arq worker
"""

import asyncio
import logging
from concurrent.futures import Future
from typing import Literal, Protocol

from arq.connections import ArqRedis

from .domain.scheduling.schemas import AppointmentResponse
from .models import Appointment

logger = logging.getLogger(__name__)

AppointmentEvent = Literal["scheduled", "rescheduled", "cancelled", "confirmed", "completed"]

NOTIFICATION_JOB = "send_appointment_notification"


class Notifier(Protocol):
    def notify_appointment_event(self, kind: AppointmentEvent, appointment: Appointment) -> None: ...


def appointment_payload(appointment: Appointment) -> dict:
    """JSON-safe snapshot of an appointment for the notification job"""
    return AppointmentResponse.model_validate(appointment).model_dump(mode="json")


class LoggingNotifier:
    """Fallback used when no queue is configured: records the event and moves on"""

    def notify_appointment_event(self, kind: AppointmentEvent, appointment: Appointment) -> None:
        logger.info(
            f"📧 Appointment {kind}: {appointment.id} patient={appointment.patient_id} "
            f"doctor={appointment.doctor_id} {appointment.date} {appointment.start_time}"
        )


class QueueNotifier:
    """
    Enqueues notification jobs on the arq pool.

    Scheduling runs in threadpool workers, so the enqueue coroutine is handed
    to the application's event loop and never awaited by the caller.
    """

    def __init__(self, pool: ArqRedis, loop: asyncio.AbstractEventLoop):
        self.pool = pool
        self.loop = loop

    def notify_appointment_event(self, kind: AppointmentEvent, appointment: Appointment) -> None:
        payload = appointment_payload(appointment)
        future = asyncio.run_coroutine_threadsafe(
            self.pool.enqueue_job(NOTIFICATION_JOB, kind, payload), self.loop
        )
        future.add_done_callback(lambda f: _log_enqueue_result(f, kind, appointment.id))


def _log_enqueue_result(future: Future, kind: str, appointment_id: str) -> None:
    if future.cancelled():
        logger.warning(f"⚠️ {kind} notification for {appointment_id} was cancelled before enqueue")
        return
    error = future.exception()
    if error is not None:
        logger.error(f"❌ Failed to enqueue {kind} notification for {appointment_id}: {error}")
    else:
        logger.info(f"✅ Queued {kind} notification for {appointment_id}")
