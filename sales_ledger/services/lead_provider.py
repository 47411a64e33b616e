from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class LeadInfo:
    id: int
    name: str
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    business: str | None = None
    owner_department_email: str | None = None


class LeadProvider(Protocol):
    def get_lead_or_null(self, lead_id: int) -> LeadInfo | None: ...
