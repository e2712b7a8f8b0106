import logging
from motor.motor_asyncio import AsyncIOMotorClient
from approval_engine.config import settings
from approval_engine.repositories.approval import ApprovalRepository
from approval_engine.repositories.directory import UserDirectory
from approval_engine.repositories.config import CompanyPolicyRepository
from approval_engine.models.approval import ApprovalRequest
from approval_engine.models.directory import DirectoryUser
from approval_engine.models.config import CompanyPolicy

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    # Repositories
    approvals: ApprovalRepository = None
    directory: UserDirectory = None
    policies: CompanyPolicyRepository = None

    def connect(self):
        """Initialize database connection and repositories."""
        self.client = AsyncIOMotorClient(settings.MONGODB_URL)
        self.db = self.client[settings.DB_NAME]

        # Initialize repositories with their respective collections and models
        self.approvals = ApprovalRepository(self.db.approval_requests, ApprovalRequest)
        self.directory = UserDirectory(self.db.users, DirectoryUser)
        self.policies = CompanyPolicyRepository(self.db.companies, CompanyPolicy)

        logger.info(f"Connected to MongoDB ({settings.DB_NAME})")

    async def ensure_indexes(self):
        """Indexes backing the CAS writes, pending listings and sweeps."""
        await self.db.approval_requests.create_index("request_id", unique=True)
        await self.db.approval_requests.create_index("purchase_ref_id", unique=True)
        await self.db.approval_requests.create_index([("company_id", 1), ("final_status", 1)])
        await self.db.approval_requests.create_index([("final_status", 1), ("timeline.required_by", 1)])
        await self.db.approval_requests.create_index([("chain.approver_id", 1), ("chain.status", 1)])
        await self.db.approval_requests.create_index([("chain.delegated_to_id", 1), ("chain.status", 1)])
        await self.db.users.create_index("user_id", unique=True)
        await self.db.users.create_index([("company_id", 1), ("user_type", 1)])
        await self.db.companies.create_index("company_id", unique=True)

    def close(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

db = Database()
