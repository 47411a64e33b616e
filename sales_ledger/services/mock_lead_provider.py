from __future__ import annotations

from sales_ledger.services.lead_provider import LeadInfo


class MockLeadProvider:
    def __init__(self, leads: list[LeadInfo] | None = None) -> None:
        if leads is None:
            leads = [
                LeadInfo(
                    id=1,
                    name='Shakti Cables',
                    phone='9800000001',
                    email='purchase@shakticables.example',
                    address='Plot 12, Industrial Area, Jabalpur',
                    business='Shakti Cables Pvt Ltd',
                    owner_department_email='head.sales@example.com',
                ),
                LeadInfo(
                    id=2,
                    name='Narmada Power Works',
                    phone='9800000002',
                    email='accounts@narmadapower.example',
                    address='Civil Lines, Bhopal',
                    business='Narmada Power Works',
                    owner_department_email='head.sales@example.com',
                ),
            ]
        self.leads_by_id = {lead.id: lead for lead in leads}

    def get_lead_or_null(self, lead_id: int) -> LeadInfo | None:
        return self.leads_by_id.get(lead_id)
