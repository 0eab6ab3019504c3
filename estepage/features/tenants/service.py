"""Tenant lookups used for notification addressing."""

from typing import Optional

from sqlalchemy import select

from estepage.core.database import SessionFactory, get_db_session, tenants
from estepage.models.tenant import Tenant


class TenantDirectory:
    def __init__(self, session_factory: SessionFactory = get_db_session):
        self._session_factory = session_factory

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._session_factory() as session:
            row = session.execute(select(tenants).where(tenants.c.tenant_id == tenant_id)).first()
        if row is None:
            return None
        return Tenant.model_validate(dict(row._mapping))
