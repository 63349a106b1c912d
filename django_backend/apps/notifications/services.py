"""
Notification descriptor services.

The workflow engines never deliver messages. They describe what should
be sent (type, channel, recipients, template, urgency) and hand the
descriptor to ``NotificationService``, which logs it and keeps it in an
outbox until an external transport drains it.
"""

import logging
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from django.utils import timezone

from apps.common.utils import generate_id
from .choices import NotificationChannel, NotificationType, NotificationUrgency

logger = logging.getLogger(__name__)


@dataclass
class NotificationDescriptor:
    """A notification the engine wants delivered."""

    id: str
    notification_type: str
    channel: str
    recipients: List[str]
    subject: str
    message: str
    template: Optional[str] = None
    urgency: str = NotificationUrgency.MEDIUM
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=timezone.now)

    @property
    def recipient(self) -> Optional[str]:
        return self.recipients[0] if self.recipients else None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class NotificationService:
    """Builds descriptors and collects them in an in-memory outbox."""

    def __init__(self):
        self._outbox: List[NotificationDescriptor] = []
        self._lock = threading.RLock()

    def build(
        self,
        notification_type: str,
        recipients: List[str],
        subject: str,
        message: str,
        channel: str = NotificationChannel.IN_APP,
        template: Optional[str] = None,
        urgency: str = NotificationUrgency.MEDIUM,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> NotificationDescriptor:
        """
        Create a descriptor and queue it in the outbox.

        Args:
            notification_type: Business event being announced
            recipients: User ids or role names to notify
            subject: Short subject line
            message: Body text
            channel: Requested delivery channel
            template: Template name for the transport to render
            urgency: Urgency hint for the transport
            metadata: Extra data (case id, task id, rule id)

        Returns:
            The queued descriptor
        """
        descriptor = NotificationDescriptor(
            id=generate_id('notification'),
            notification_type=str(notification_type),
            channel=str(channel),
            recipients=[str(recipient) for recipient in recipients if recipient],
            subject=subject,
            message=message,
            template=template,
            urgency=str(urgency),
            metadata=dict(metadata or {}),
        )

        with self._lock:
            self._outbox.append(descriptor)

        logger.info(
            f"Queued {descriptor.channel} notification '{descriptor.notification_type}' "
            f"for {', '.join(descriptor.recipients) or 'nobody'}"
        )
        return descriptor

    def summary_for_new_tasks(self, case_id: str, phase: str, task_count: int,
                              recipient: str, metadata: Optional[Dict[str, Any]] = None) -> NotificationDescriptor:
        """Descriptor sent after a phase transition created tasks."""
        return self.build(
            notification_type=NotificationType.WORKFLOW_SUMMARY,
            recipients=[recipient],
            subject=f"New Tasks Created for {case_id}",
            message=f"{task_count} new tasks have been created for case phase {phase}",
            channel=NotificationChannel.IN_APP,
            metadata={'caseId': case_id, 'taskCount': task_count, 'phase': phase, **(metadata or {})},
        )

    def pending(self) -> List[NotificationDescriptor]:
        with self._lock:
            return list(self._outbox)

    def drain(self) -> List[NotificationDescriptor]:
        """Return and clear every queued descriptor."""
        with self._lock:
            drained, self._outbox = self._outbox, []
        return drained


notification_service = NotificationService()
