import copy
import sys
import os
sys.path.append(os.getcwd())

import pytest
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

from approval_engine.models.approval import (
    ApprovalRequest, ApprovalStep, FinalStatus, Financials, Justification, StepStatus, Timeline,
)
from approval_engine.models.config import CompanyPolicy
from approval_engine.models.directory import DirectoryUser
from approval_engine.engine.chain_builder import ChainBuilder
from approval_engine.engine.coordinator import RequestCoordinator
from approval_engine.engine.deadlines import DeadlineCalculator
from approval_engine.engine.state_machine import ApprovalStateMachine
from approval_engine.guardrails.permissions import PermissionChecker
from approval_engine.exceptions import NotFound, VersionConflict

NOW = datetime(2026, 3, 2, 9, 0, 0)
COMPANY = "acme"


class FakeDirectory:
    """In-memory org chart with the same lookups as UserDirectory."""

    def __init__(self, users=()):
        self.users: Dict[str, DirectoryUser] = {u.user_id: u for u in users}

    def add(self, user_id: str, **fields) -> DirectoryUser:
        fields.setdefault("company_id", COMPANY)
        user = DirectoryUser(user_id=user_id, **fields)
        self.users[user_id] = user
        return user

    async def get_user(self, user_id: str) -> Optional[DirectoryUser]:
        return self.users.get(user_id)

    async def manager_of(self, user_id: str) -> Optional[DirectoryUser]:
        user = self.users.get(user_id)
        if not user or not user.manager_id:
            return None
        return self.users.get(user.manager_id)

    async def top_administrator(self, company_id: str) -> Optional[DirectoryUser]:
        admins = [u for u in self.users.values()
                  if u.company_id == company_id and u.is_company_admin and u.is_active]
        return max(admins, key=lambda u: u.seniority, default=None)

    async def find_fallback_approver(self, company_id: str, amount: float,
                                     exclude_user_id: Optional[str] = None) -> Optional[DirectoryUser]:
        candidates = [u for u in self.users.values()
                      if u.company_id == company_id and u.can_approve and u.is_active
                      and u.approval_limit >= amount and u.user_id != exclude_user_id]
        return max(candidates, key=lambda u: u.seniority, default=None)

    async def find_highest_limit_approver(self, company_id: str) -> Optional[DirectoryUser]:
        candidates = [u for u in self.users.values()
                      if u.company_id == company_id and u.can_approve and u.is_active]
        return max(candidates, key=lambda u: u.approval_limit, default=None)


class InMemoryApprovalStore:
    """Document store with the same version check as ApprovalRepository.save."""

    def __init__(self):
        self.docs: Dict[str, dict] = {}

    async def load(self, request_id: str) -> ApprovalRequest:
        doc = self.docs.get(request_id)
        if doc is None:
            raise NotFound(f"Approval request {request_id} not found", request_id)
        return ApprovalRequest.from_mongo(copy.deepcopy(doc))

    async def insert(self, request: ApprovalRequest) -> ApprovalRequest:
        request.version = 1
        self.docs[request.request_id] = copy.deepcopy(request.to_mongo())
        return request

    async def save(self, request: ApprovalRequest, expected_version: int) -> ApprovalRequest:
        current = self.docs.get(request.request_id)
        if current is None:
            raise NotFound(f"Approval request {request.request_id} not found", request.request_id)
        if current["version"] != expected_version:
            raise VersionConflict(request.request_id, expected_version)
        request.version = expected_version + 1
        self.docs[request.request_id] = copy.deepcopy(request.to_mongo())
        return request

    def _all(self) -> List[ApprovalRequest]:
        return [ApprovalRequest.from_mongo(copy.deepcopy(doc)) for doc in self.docs.values()]

    async def find_pending(self, limit: int = 500):
        pending = [r for r in self._all() if r.final_status == FinalStatus.PENDING]
        return sorted(pending, key=lambda r: r.timeline.created_at)[:limit]

    async def find_overdue(self, now: datetime, limit: int = 500):
        return [r for r in self._all()
                if r.final_status == FinalStatus.PENDING and r.timeline.required_by < now][:limit]

    def _pending_for(self, user_id: str, filters: Optional[dict]):
        filters = filters or {}
        found = []
        for r in self._all():
            if r.final_status != FinalStatus.PENDING:
                continue
            if not any(s.status == StepStatus.PENDING and s.decider_id == user_id for s in r.chain):
                continue
            if filters.get("urgency") and r.justification.urgency != filters["urgency"]:
                continue
            if filters.get("min_amount") is not None and r.amount < filters["min_amount"]:
                continue
            if filters.get("max_amount") is not None and r.amount > filters["max_amount"]:
                continue
            found.append(r)
        return found

    async def find_pending_for(self, user_id: str, filters: Optional[dict] = None, skip: int = 0,
                               limit: int = 20, sort_by: str = "created_at", descending: bool = True):
        found = sorted(self._pending_for(user_id, filters),
                       key=lambda r: r.timeline.created_at, reverse=descending)
        return found[skip:skip + limit]

    async def count_pending_for(self, user_id: str, filters: Optional[dict] = None) -> int:
        return len(self._pending_for(user_id, filters))


class FakePolicies:
    def __init__(self, policies=()):
        self.policies = {p.company_id: p for p in policies}

    async def get_by_company_id(self, company_id: str) -> Optional[CompanyPolicy]:
        return self.policies.get(company_id)


class RecordingDispatcher:
    def __init__(self):
        self.intents = []

    async def dispatch(self, intents) -> int:
        self.intents.extend(intents)
        return 0

    def types(self):
        return [i.type for i in self.intents]


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def directory():
    """
    employee -> manager (3000) -> director (20000) -> vp (50000) -> ceo (company admin)
    plus a peer manager and the finance lead who can take delegations.
    """
    d = FakeDirectory()
    d.add("ceo", approval_limit=250000, can_approve=True, user_type="company_admin", seniority=5)
    d.add("vp", manager_id="ceo", approval_limit=50000, can_approve=True, user_type="manager", seniority=4)
    d.add("director", manager_id="vp", approval_limit=20000, can_approve=True, user_type="manager", seniority=3)
    d.add("manager", manager_id="director", approval_limit=3000, can_approve=True, user_type="manager", seniority=2)
    d.add("peer", manager_id="director", approval_limit=3000, can_approve=True, user_type="manager", seniority=2)
    d.add("finance", manager_id="vp", approval_limit=30000, can_approve=True, user_type="manager", seniority=3)
    d.add("employee", manager_id="manager", user_type="employee", seniority=1)
    return d


@pytest.fixture
def policy():
    return CompanyPolicy(company_id=COMPANY, company_name="Acme", approval_limit=500, credit_limit=40000)


@pytest.fixture
def store():
    return InMemoryApprovalStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def machine(store, directory):
    return ApprovalStateMachine(store=store, directory=directory, permissions=PermissionChecker())


@pytest.fixture
def stats():
    mock = AsyncMock()
    mock.record_outcome = AsyncMock()
    return mock


@pytest.fixture
def coordinator(machine, directory, store, policy, dispatcher, stats):
    return RequestCoordinator(
        state_machine=machine,
        directory=directory,
        policies=FakePolicies([policy]),
        store=store,
        chains=ChainBuilder(directory=directory),
        deadlines=DeadlineCalculator(blackout_hours=24),
        dispatcher=dispatcher,
        stats=stats,
        retry_attempts=3
    )


def make_request(request_id="APR-TEST", chain=None, amount=5000.0, urgency="medium",
                 requester_id="employee", created_at=NOW, required_by=None, **fields) -> ApprovalRequest:
    """Builds an unsaved pending request; steps given as (approver_id, level) tuples or ApprovalStep."""
    steps = []
    for item in chain or [("manager", 1)]:
        if isinstance(item, ApprovalStep):
            steps.append(item)
        else:
            approver_id, level = item
            steps.append(ApprovalStep(approver_id=approver_id, level=level, assigned_at=created_at))
    return ApprovalRequest(
        request_id=request_id,
        requester_id=requester_id,
        company_id=COMPANY,
        purchase_ref_id=f"BK-{request_id}",
        chain=steps,
        justification=Justification(purpose="Client workshop in Lyon", urgency=urgency),
        financials=Financials(amount=amount),
        timeline=Timeline(created_at=created_at, required_by=required_by or created_at + timedelta(hours=24)),
        **fields
    )


@pytest.fixture
def create_request(machine, now):
    async def _create(**kwargs) -> ApprovalRequest:
        transition = await machine.create(make_request(**kwargs), now=kwargs.get("created_at", now))
        return transition.request
    return _create


@pytest.fixture
def request_factory():
    return make_request
