from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status

from sales_ledger.config import settings


class Role(str, Enum):
    SALESPERSON = 'salesperson'
    DEPARTMENT_HEAD = 'department_head'
    ACCOUNTS = 'accounts'
    ADMIN = 'admin'


@dataclass
class Actor:
    email: str
    role: Role
    user_id: str | None = None


def get_current_actor(request: Request) -> Actor:
    # Authentication happens upstream; the gateway forwards the verified identity as headers.
    email = (request.headers.get(settings.actor_email_header) or '').strip()
    if not email:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Missing actor identity')
    raw_role = (request.headers.get(settings.actor_role_header) or Role.SALESPERSON.value).strip().lower()
    try:
        role = Role(raw_role)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f'Unknown role {raw_role}') from exc
    user_id = (request.headers.get(settings.actor_id_header) or '').strip() or None
    return Actor(email=email, role=role, user_id=user_id)


def require_role(*allowed: Role):
    def _dep(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed and actor.role != Role.ADMIN:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Not allowed for this role')
        return actor

    return _dep
