from typing import Optional
from approval_engine.repositories.base import BaseRepository
from approval_engine.models.config import CompanyPolicy

class CompanyPolicyRepository(BaseRepository[CompanyPolicy]):
    async def get_by_company_id(self, company_id: str) -> Optional[CompanyPolicy]:
        doc = await self.collection.find_one({"company_id": company_id})
        return self.model_cls.from_mongo(doc) if doc else None
