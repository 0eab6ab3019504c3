"""
estepage/models/tenant.py

Tenant (agent or agency account) as seen by billing: contact details only.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Tenant(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    email: str
    company_name: Optional[str] = None
    status: str = "active"
    created_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.company_name or self.email
