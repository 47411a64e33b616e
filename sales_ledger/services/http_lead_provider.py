from __future__ import annotations

import json
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from sales_ledger.config import settings
from sales_ledger.errors import DependencyError
from sales_ledger.services.lead_provider import LeadInfo


class HttpLeadProvider:
    def __init__(self) -> None:
        if not settings.lead_service_url:
            raise ValueError('LEAD_SERVICE_URL is required when LEAD_PROVIDER=http')

        self.base_url = settings.lead_service_url.rstrip('/')
        self.headers = {'Accept': 'application/json'}
        if settings.lead_service_token:
            self.headers['Authorization'] = f'Bearer {settings.lead_service_token}'

    def _get(self, path: str) -> dict | None:
        req = Request(url=f'{self.base_url}{path}', headers=self.headers, method='GET')
        try:
            with urlopen(req, timeout=settings.collaborator_timeout_seconds) as response:
                parsed = json.loads(response.read().decode('utf-8'))
        except HTTPError as exc:
            if exc.code == 404:
                return None
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise DependencyError(f'Lead service error {exc.code} on {path}: {body}') from exc
        except URLError as exc:
            raise DependencyError(f'Lead service network error on {path}: {exc.reason}') from exc
        except json.JSONDecodeError as exc:
            raise DependencyError(f'Lead service returned invalid JSON on {path}') from exc

        # The lead service wraps payloads in {"success": ..., "data": ...}.
        if isinstance(parsed, dict) and 'data' in parsed:
            parsed = parsed['data']
        return parsed or None

    def get_lead_or_null(self, lead_id: int) -> LeadInfo | None:
        payload = self._get(f'/leads/{lead_id}')
        if not payload:
            return None
        return LeadInfo(
            id=int(payload.get('id', lead_id)),
            name=payload.get('name') or '',
            phone=payload.get('phone'),
            email=payload.get('email'),
            address=payload.get('address'),
            business=payload.get('business'),
            owner_department_email=payload.get('ownerDepartmentEmail') or payload.get('owner_department_email'),
        )
