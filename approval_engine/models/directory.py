from enum import Enum
from typing import Optional
from pydantic import Field
from approval_engine.models.base import MongoModel

class UserType(str, Enum):
    EMPLOYEE = "employee"
    MANAGER = "manager"
    COMPANY_ADMIN = "company_admin"

class Role(str, Enum):
    USER = "user"
    ADMIN = "admin" # system administrator

class DirectoryUser(MongoModel):
    """
    Org-chart view of a user: who they report to and how much they may approve.
    """
    user_id: str = Field(..., description="Unique user ID")
    company_id: Optional[str] = None
    full_name: str = ""
    email: Optional[str] = None

    manager_id: Optional[str] = None
    approval_limit: float = Field(0.0, ge=0)
    can_approve: bool = False
    is_active: bool = True

    user_type: UserType = UserType.EMPLOYEE
    role: Role = Role.USER
    seniority: int = Field(0, description="Hierarchy level, higher is more senior")

    @property
    def is_company_admin(self) -> bool:
        return self.user_type == UserType.COMPANY_ADMIN

    @property
    def is_system_admin(self) -> bool:
        return self.role == Role.ADMIN
