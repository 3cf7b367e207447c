# scripts/seed.py

import os
import sys
import argparse

from dotenv import load_dotenv
from sqlmodel import Session, select

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# ✅ Load environment variables
load_dotenv()

from core.database import engine, create_db_and_tables  # noqa: E402
from models.models import SubscriptionPlan  # noqa: E402


def default_plans() -> list[dict]:
    """Plan catalog; Stripe ids come from the environment."""
    return [
        {
            "name": "starter",
            "display_name": "Starter",
            "description": "For small teams hiring occasionally",
            "price_monthly": 49.0,
            "price_yearly": 490.0,
            "stripe_price_id_monthly": os.getenv("STRIPE_STARTER_MONTHLY_PRICE_ID", "price_starter_monthly"),
            "stripe_price_id_yearly": os.getenv("STRIPE_STARTER_YEARLY_PRICE_ID", "price_starter_yearly"),
            "stripe_product_id": os.getenv("STRIPE_STARTER_PRODUCT_ID", "prod_starter"),
            "features": {"candidate_search": True, "advanced_analytics": False, "api_access": False},
            "limits": {"job_postings": 5, "team_members": 2, "applications": 200},
            "tier": 1,
            "sort_order": 1,
        },
        {
            "name": "professional",
            "display_name": "Professional",
            "description": "For growing companies with a steady hiring pipeline",
            "price_monthly": 149.0,
            "price_yearly": 1490.0,
            "stripe_price_id_monthly": os.getenv("STRIPE_PROFESSIONAL_MONTHLY_PRICE_ID", "price_professional_monthly"),
            "stripe_price_id_yearly": os.getenv("STRIPE_PROFESSIONAL_YEARLY_PRICE_ID", "price_professional_yearly"),
            "stripe_product_id": os.getenv("STRIPE_PROFESSIONAL_PRODUCT_ID", "prod_professional"),
            "features": {"candidate_search": True, "advanced_analytics": True, "api_access": False},
            "limits": {"job_postings": 50, "team_members": 10, "applications": 1000},
            "tier": 2,
            "sort_order": 2,
            "is_popular": True,
        },
        {
            "name": "enterprise",
            "display_name": "Enterprise",
            "description": "For large organizations hiring at scale",
            "price_monthly": 499.0,
            "price_yearly": 4990.0,
            "stripe_price_id_monthly": os.getenv("STRIPE_ENTERPRISE_MONTHLY_PRICE_ID", "price_enterprise_monthly"),
            "stripe_price_id_yearly": os.getenv("STRIPE_ENTERPRISE_YEARLY_PRICE_ID", "price_enterprise_yearly"),
            "stripe_product_id": os.getenv("STRIPE_ENTERPRISE_PRODUCT_ID", "prod_enterprise"),
            "features": {"candidate_search": True, "advanced_analytics": True, "api_access": True},
            "limits": {"job_postings": 500, "team_members": 100, "applications": 10000},
            "tier": 3,
            "sort_order": 3,
        },
    ]


def seed_plans(update_existing: bool = False) -> None:
    """Insert the plan catalog, optionally refreshing plans that already exist."""
    print("🌱 Seeding subscription plans...")
    create_db_and_tables()

    with Session(engine) as session:
        for plan_data in default_plans():
            plan = session.exec(
                select(SubscriptionPlan).where(SubscriptionPlan.name == plan_data["name"])
            ).first()

            if not plan:
                session.add(SubscriptionPlan(**plan_data))
                print(f"✅ Created plan {plan_data['name']}")
            elif update_existing:
                for key, value in plan_data.items():
                    setattr(plan, key, value)
                session.add(plan)
                print(f"🔄 Updated plan {plan_data['name']}")

        session.commit()

    print("🌱 Subscription plan seeding complete.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the billing plan catalog.")
    parser.add_argument(
        "--update",
        action="store_true",
        help="Overwrite plans that already exist with the defaults",
    )
    args = parser.parse_args()

    seed_plans(update_existing=args.update)
