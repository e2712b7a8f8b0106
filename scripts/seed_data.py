import asyncio
import sys
import os
sys.path.append(os.getcwd())
from approval_engine.config import settings
from approval_engine.database import db

async def seed_db():
    print(f"Connecting to {settings.MONGODB_URL}...")
    db.connect()

    company_id = "acme_travel"

    # 1. Company policy
    print("Seeding Company Policy...")
    await db.db.companies.update_one(
        {"company_id": company_id},
        {"$set": {
            "company_id": company_id,
            "company_name": "Acme Travel Ltd",
            "require_approval": True,
            "approval_limit": 500.0,
            "approval_deadline_hours": 24,
            "allow_auto_approval": False,
            "credit_limit": 50000.0,
            "exempt_user_types": ["company_admin"],
            "base_currency": "EUR"
        }},
        upsert=True
    )

    # 2. Org chart: employee -> manager -> director -> vp -> ceo (company admin)
    print("Seeding Users...")
    users = [
        {"user_id": "u_ceo", "full_name": "Carla Ortiz", "manager_id": None,
         "approval_limit": 100000.0, "can_approve": True, "user_type": "company_admin", "seniority": 5},
        {"user_id": "u_vp", "full_name": "Victor Pema", "manager_id": "u_ceo",
         "approval_limit": 25000.0, "can_approve": True, "user_type": "manager", "seniority": 4},
        {"user_id": "u_director", "full_name": "Dana Reyes", "manager_id": "u_vp",
         "approval_limit": 10000.0, "can_approve": True, "user_type": "manager", "seniority": 3},
        {"user_id": "u_manager", "full_name": "Milo Ngata", "manager_id": "u_director",
         "approval_limit": 2000.0, "can_approve": True, "user_type": "manager", "seniority": 2},
        {"user_id": "u_employee", "full_name": "Eve Lindqvist", "manager_id": "u_manager",
         "approval_limit": 0.0, "can_approve": False, "user_type": "employee", "seniority": 1},
    ]

    for u in users:
        u.update({"company_id": company_id, "email": f"{u['user_id']}@acme.example", "is_active": True})
        await db.db.users.update_one(
            {"user_id": u["user_id"]},
            {"$set": u},
            upsert=True
        )

    # 3. A booking awaiting approval
    print("Seeding Bookings...")
    await db.db.bookings.update_one(
        {"booking_id": "BK-1001"},
        {"$set": {
            "booking_id": "BK-1001",
            "company_id": company_id,
            "user_id": "u_employee",
            "total_amount": 3000.0,
            "currency": "EUR",
            "status": "draft"
        }},
        upsert=True
    )

    print("Seeding complete.")
    db.close()

if __name__ == "__main__":
    asyncio.run(seed_db())
