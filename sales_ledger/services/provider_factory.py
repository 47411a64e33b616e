from __future__ import annotations

from functools import lru_cache

from sales_ledger.config import settings
from sales_ledger.services.http_lead_provider import HttpLeadProvider
from sales_ledger.services.mock_lead_provider import MockLeadProvider
from sales_ledger.services.notification_dispatchers import LogNotificationDispatcher, WebhookNotificationDispatcher


@lru_cache(maxsize=1)
def get_lead_provider():
    provider = settings.lead_provider.strip().lower()
    if provider == 'http':
        return HttpLeadProvider()
    return MockLeadProvider()


@lru_cache(maxsize=1)
def get_notification_dispatcher():
    dispatcher = settings.notification_dispatcher.strip().lower()
    if dispatcher == 'webhook':
        return WebhookNotificationDispatcher()
    return LogNotificationDispatcher()
