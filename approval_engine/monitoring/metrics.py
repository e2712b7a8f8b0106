import logging
from datetime import datetime
from typing import Dict, Any, Optional
from approval_engine.database import db
from approval_engine.models.approval import ApprovalRequest, FinalStatus, StepStatus

logger = logging.getLogger(__name__)

class ApprovalMetrics:
    """
    Running statistics and company level approval reporting.
    """

    async def record_outcome(self, request: ApprovalRequest):
        """
        Bump requester, approver and company counters after a final decision.
        """
        if not request.is_terminal:
            return

        await db.db["users"].update_one(
            {"user_id": request.requester_id},
            {"$inc": {"stats.approvals_received": 1}}
        )

        approvers = {s.decider_id for s in request.chain if s.status == StepStatus.APPROVED}
        for approver_id in approvers:
            await db.db["users"].update_one(
                {"user_id": approver_id},
                {"$inc": {"stats.approvals_given": 1}}
            )

        company_inc: Dict[str, Any] = {"statistics.total_requests": 1}
        if request.final_status == FinalStatus.APPROVED:
            company_inc["statistics.total_spent"] = request.amount
        await db.db["companies"].update_one(
            {"company_id": request.company_id},
            {"$inc": company_inc}
        )
        logger.info(f"Stats updated for {request.request_id} ({request.final_status})")

    async def get_company_approval_stats(self, company_id: str,
                                         start: Optional[datetime] = None,
                                         end: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Breakdown by status and urgency plus SLA compliance for resolved requests.
        """
        match: Dict[str, Any] = {"company_id": company_id}
        if start and end:
            match["timeline.created_at"] = {"$gte": start, "$lte": end}

        # 1. By final status
        status_pipeline = [
            {"$match": match},
            {"$group": {
                "_id": "$final_status",
                "count": {"$sum": 1},
                "total_amount": {"$sum": "$financials.amount"},
                "avg_processing_minutes": {"$avg": "$timeline.processing_time_minutes"},
                "avg_chain_length": {"$avg": {"$size": "$chain"}}
            }}
        ]
        by_status = await db.approvals.collection.aggregate(status_pipeline).to_list(length=None)

        # 2. By urgency
        urgency_pipeline = [
            {"$match": match},
            {"$group": {
                "_id": "$justification.urgency",
                "count": {"$sum": 1},
                "avg_processing_minutes": {"$avg": "$timeline.processing_time_minutes"}
            }}
        ]
        by_urgency = await db.approvals.collection.aggregate(urgency_pipeline).to_list(length=None)

        # 3. SLA compliance
        sla_pipeline = [
            {"$match": {**match, "final_status": {"$ne": FinalStatus.PENDING.value}}},
            {"$group": {
                "_id": None,
                "total": {"$sum": 1},
                "compliant": {"$sum": {"$cond": ["$timeline.sla_compliant", 1, 0]}}
            }}
        ]
        sla = await db.approvals.collection.aggregate(sla_pipeline).to_list(length=None)

        sla_compliance = None
        if sla and sla[0]["total"] > 0:
            sla_compliance = {
                "total": sla[0]["total"],
                "compliant": sla[0]["compliant"],
                "rate": round(sla[0]["compliant"] / sla[0]["total"] * 100, 1)
            }

        return {
            "by_status": {item["_id"]: {k: v for k, v in item.items() if k != "_id"} for item in by_status},
            "by_urgency": {item["_id"]: {k: v for k, v in item.items() if k != "_id"} for item in by_urgency},
            "sla_compliance": sla_compliance
        }

approval_metrics = ApprovalMetrics()
