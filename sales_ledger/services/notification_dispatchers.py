from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from loguru import logger

from sales_ledger.config import settings
from sales_ledger.errors import DependencyError


@dataclass(frozen=True)
class Notification:
    type: str
    title: str
    message: str
    reference_id: int | None = None


class NotificationDispatcher(Protocol):
    def notify(self, recipients: list[str], notification: Notification) -> None: ...


class LogNotificationDispatcher:
    def notify(self, recipients: list[str], notification: Notification) -> None:
        logger.info(f'Notification {notification.type} to {", ".join(recipients)}: {notification.title}')


class WebhookNotificationDispatcher:
    def __init__(self) -> None:
        if not settings.notification_webhook_url:
            raise ValueError('NOTIFICATION_WEBHOOK_URL is required when NOTIFICATION_DISPATCHER=webhook')
        self.url = settings.notification_webhook_url

    def notify(self, recipients: list[str], notification: Notification) -> None:
        data = json.dumps({'recipients': recipients, **asdict(notification)}).encode('utf-8')
        req = Request(url=self.url, data=data, headers={'Content-Type': 'application/json'}, method='POST')
        try:
            with urlopen(req, timeout=settings.collaborator_timeout_seconds):
                pass
        except HTTPError as exc:
            raise DependencyError(f'Notification webhook returned {exc.code}') from exc
        except URLError as exc:
            raise DependencyError(f'Notification webhook unreachable: {exc.reason}') from exc
