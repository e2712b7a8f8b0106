from datetime import datetime
from typing import Any, Dict, List, Optional
from pymongo import ASCENDING, DESCENDING
from approval_engine.repositories.base import BaseRepository
from approval_engine.models.approval import ApprovalRequest, FinalStatus, StepStatus
from approval_engine.exceptions import NotFound, VersionConflict

SORT_FIELDS = {
    "created_at": "timeline.created_at",
    "required_by": "timeline.required_by",
    "amount": "financials.amount",
}

class ApprovalRepository(BaseRepository[ApprovalRequest]):
    """
    Persistence store for approval requests. Every write after the insert is a
    compare-and-swap on ``version``.
    """

    async def load(self, request_id: str) -> ApprovalRequest:
        request = await self.get_by_field("request_id", request_id)
        if request is None:
            raise NotFound(f"Approval request {request_id} not found", request_id)
        return request

    async def insert(self, request: ApprovalRequest) -> ApprovalRequest:
        request.version = 1
        return await self.create(request)

    async def save(self, request: ApprovalRequest, expected_version: int) -> ApprovalRequest:
        """Replace the stored document only if nobody saved since ``expected_version``."""
        doc = request.to_mongo()
        doc.pop("_id", None)
        doc["version"] = expected_version + 1

        result = await self.collection.replace_one(
            {"request_id": request.request_id, "version": expected_version},
            doc
        )
        if result.matched_count == 0:
            exists = await self.collection.count_documents({"request_id": request.request_id}, limit=1)
            if not exists:
                raise NotFound(f"Approval request {request.request_id} not found", request.request_id)
            raise VersionConflict(request.request_id, expected_version)

        request.version = expected_version + 1
        return request

    async def query(self, filters: Optional[Dict[str, Any]] = None, skip: int = 0, limit: int = 100) -> List[ApprovalRequest]:
        """Advanced search by company, status, urgency and amount range."""
        return await self.list(self.build_query(filters or {}), skip=skip, limit=limit,
                               sort=[("timeline.created_at", DESCENDING)])

    @staticmethod
    def build_query(filters: Dict[str, Any]) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if filters.get("company_id"):
            query["company_id"] = filters["company_id"]
        if filters.get("requester_id"):
            query["requester_id"] = filters["requester_id"]
        if filters.get("status"):
            query["final_status"] = filters["status"]
        if filters.get("urgency"):
            query["justification.urgency"] = filters["urgency"]

        amount: Dict[str, float] = {}
        if filters.get("min_amount") is not None:
            amount["$gte"] = filters["min_amount"]
        if filters.get("max_amount") is not None:
            amount["$lte"] = filters["max_amount"]
        if amount:
            query["financials.amount"] = amount
        return query

    async def find_pending(self, limit: int = 500) -> List[ApprovalRequest]:
        query = {"final_status": FinalStatus.PENDING.value}
        return await self.list(query, limit=limit, sort=[("timeline.created_at", ASCENDING)])

    async def find_overdue(self, now: datetime, limit: int = 500) -> List[ApprovalRequest]:
        query = {
            "final_status": FinalStatus.PENDING.value,
            "timeline.required_by": {"$lt": now}
        }
        return await self.list(query, limit=limit)

    def pending_for_query(self, user_id: str, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query = self.build_query(filters or {})
        query["final_status"] = FinalStatus.PENDING.value
        query["chain"] = {"$elemMatch": {
            "status": StepStatus.PENDING.value,
            "$or": [{"approver_id": user_id, "delegated_to_id": None}, {"delegated_to_id": user_id}]
        }}
        return query

    async def find_pending_for(self, user_id: str, filters: Optional[Dict[str, Any]] = None,
                               skip: int = 0, limit: int = 20,
                               sort_by: str = "created_at", descending: bool = True) -> List[ApprovalRequest]:
        sort_field = SORT_FIELDS.get(sort_by, SORT_FIELDS["created_at"])
        return await self.list(self.pending_for_query(user_id, filters), skip=skip, limit=limit,
                               sort=[(sort_field, DESCENDING if descending else ASCENDING)])

    async def count_pending_for(self, user_id: str, filters: Optional[Dict[str, Any]] = None) -> int:
        return await self.count(self.pending_for_query(user_id, filters))
