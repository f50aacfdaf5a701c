"""
Status-change notification hook.
Email/SMS delivery lives outside this package; dispatch is best-effort and
runs only after the transition has committed.
"""
from typing import List, Optional

import structlog

from ..config import settings
from ..models.models import Service, ServiceStatus


logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Collaborator interface for email/SMS side effects."""

    def on_status_change(self, service: Service, old: ServiceStatus, new: ServiceStatus) -> None:
        raise NotImplementedError


class LogNotificationDispatcher(NotificationDispatcher):
    """
    Default dispatcher: records which channels would fire.
    Respects the global ENABLE_EMAIL / ENABLE_PUSH switches.
    """

    def channels(self) -> List[str]:
        channels = []
        if settings.enable_email:
            channels.append("email")
        if settings.enable_push:
            channels.append("sms")
        return channels

    def on_status_change(self, service: Service, old: ServiceStatus, new: ServiceStatus) -> None:
        for channel in self.channels():
            logger.info(
                "notification_queued",
                channel=channel,
                template_key=f"service_{new.value}",
                service_id=service.id,
                client_id=service.client_id,
                technician_id=service.technician_id,
                old_status=old.value,
                new_status=new.value,
            )


def dispatch_status_change(
    dispatcher: Optional[NotificationDispatcher],
    service: Service,
    old: ServiceStatus,
    new: ServiceStatus,
) -> Optional[str]:
    """
    Invoke the dispatcher and swallow its failure.

    Returns:
        None on success, otherwise a short error message for the response
    """
    if dispatcher is None:
        return None
    try:
        dispatcher.on_status_change(service, old, new)
    except Exception as e:
        logger.warning(
            "notification_failed",
            service_id=service.id,
            old_status=old.value,
            new_status=new.value,
            error=str(e),
        )
        return f"Notification failed: {e}"
    return None
