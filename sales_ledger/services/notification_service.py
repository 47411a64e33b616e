from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy.orm import Session

from sales_ledger.services.notification_dispatchers import Notification
from sales_ledger.services.provider_factory import get_lead_provider, get_notification_dispatcher

PENDING_KEY = 'pending_notifications'


@dataclass
class PendingNotification:
    notification: Notification
    recipients: list[str] = field(default_factory=list)
    customer_id: int | None = None


def queue_notification(
    db: Session,
    notification: Notification,
    *,
    recipients: list[str | None] | None = None,
    customer_id: int | None = None,
) -> None:
    pending = PendingNotification(
        notification=notification,
        recipients=[recipient for recipient in (recipients or []) if recipient],
        customer_id=customer_id,
    )
    db.info.setdefault(PENDING_KEY, []).append(pending)


def pending_notifications(db: Session) -> list[PendingNotification]:
    return list(db.info.get(PENDING_KEY, []))


def dispatch_pending(db: Session) -> int:
    """Send notifications queued during a committed transaction; failures are logged only."""
    pending: list[PendingNotification] = db.info.pop(PENDING_KEY, [])
    sent = 0
    for item in pending:
        recipients = list(item.recipients)
        try:
            if item.customer_id is not None:
                lead = get_lead_provider().get_lead_or_null(item.customer_id)
                if lead and lead.owner_department_email:
                    recipients.append(lead.owner_department_email)
            recipients = sorted(set(recipients))
            if not recipients:
                logger.debug(f'No recipients for notification {item.notification.type}')
                continue
            get_notification_dispatcher().notify(recipients, item.notification)
            sent += 1
        except Exception as exc:
            logger.error(f'Notification {item.notification.type} for {item.notification.reference_id} failed: {exc}')
    return sent


def commit_and_dispatch(db: Session) -> None:
    db.commit()
    dispatch_pending(db)
