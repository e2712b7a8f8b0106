from typing import Optional
from pymongo import DESCENDING
from approval_engine.repositories.base import BaseRepository
from approval_engine.models.directory import DirectoryUser, UserType

class UserDirectory(BaseRepository[DirectoryUser]):
    """
    Org-chart lookups over the ``users`` collection.
    """

    async def get_user(self, user_id: str) -> Optional[DirectoryUser]:
        return await self.get_by_field("user_id", user_id)

    async def manager_of(self, user_id: str) -> Optional[DirectoryUser]:
        user = await self.get_user(user_id)
        if not user or not user.manager_id:
            return None
        return await self.get_user(user.manager_id)

    async def approval_limit_of(self, user_id: str) -> float:
        user = await self.get_user(user_id)
        return user.approval_limit if user else 0.0

    async def can_approve(self, user_id: str) -> bool:
        user = await self.get_user(user_id)
        return bool(user and user.can_approve)

    async def is_active(self, user_id: str) -> bool:
        user = await self.get_user(user_id)
        return bool(user and user.is_active)

    async def top_administrator(self, company_id: str) -> Optional[DirectoryUser]:
        doc = await self.collection.find_one(
            {"company_id": company_id, "user_type": UserType.COMPANY_ADMIN.value, "is_active": True},
            sort=[("seniority", DESCENDING)]
        )
        return self.model_cls.from_mongo(doc) if doc else None

    async def find_fallback_approver(self, company_id: str, amount: float,
                                     exclude_user_id: Optional[str] = None) -> Optional[DirectoryUser]:
        """Most senior active approver whose limit covers the amount."""
        query = {
            "company_id": company_id,
            "can_approve": True,
            "is_active": True,
            "approval_limit": {"$gte": amount}
        }
        if exclude_user_id:
            query["user_id"] = {"$ne": exclude_user_id}
        doc = await self.collection.find_one(
            query,
            sort=[("seniority", DESCENDING)]
        )
        return self.model_cls.from_mongo(doc) if doc else None

    async def find_highest_limit_approver(self, company_id: str) -> Optional[DirectoryUser]:
        doc = await self.collection.find_one(
            {"company_id": company_id, "can_approve": True, "is_active": True},
            sort=[("approval_limit", DESCENDING)]
        )
        return self.model_cls.from_mongo(doc) if doc else None
