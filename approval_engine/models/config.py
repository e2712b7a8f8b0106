from typing import List, Optional
from pydantic import Field, field_validator
from approval_engine.models.base import MongoModel

class CompanyPolicy(MongoModel):
    """
    Per-company approval policy document.
    """
    company_id: str = Field(..., description="Unique Tenant ID")
    company_name: str = ""

    require_approval: bool = True
    approval_limit: float = Field(0.0, description="Amounts below this skip approval")
    approval_deadline_hours: int = 24

    allow_auto_approval: bool = False
    auto_approval_threshold: float = 0.0
    credit_limit: Optional[float] = None

    exempt_user_types: List[str] = ["company_admin"]
    base_currency: str = "EUR"

    @field_validator('approval_limit', 'auto_approval_threshold')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError('limits must not be negative')
        return v
