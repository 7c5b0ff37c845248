# scripts/seed.py

import os
import sys
import argparse

from dotenv import load_dotenv
from sqlmodel import Session, select

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import get_settings
from core.database import create_db_and_tables, create_db_engine
from core.security import create_token_for_user
from models.models import User
from services.subscription_state import SubscriptionStateService
from services.usage_ledger import UsageLedger, current_period

# ✅ Load environment variables
load_dotenv()

DEMO_USERS = {
    "dev": [
        ("Demo Creator", "creator@demo.com"),
        ("Second Creator", "creator2@demo.com"),
    ],
    "staging": [
        ("Staging Creator", "staging-creator@captionflow.app"),
    ],
}


def seed_users(env: str) -> None:
    """Create demo users, each with a FREE subscription and an empty usage record."""
    print(f"🌱 Seeding {env} data...")

    settings = get_settings()
    engine = create_db_engine(settings.DATABASE_URL)
    create_db_and_tables(engine)

    ledger = UsageLedger()
    states = SubscriptionStateService(ledger)

    with Session(engine) as session:
        for full_name, email in DEMO_USERS[env]:
            user = session.exec(select(User).where(User.email == email)).first()
            if not user:
                user = User(full_name=full_name, email=email, is_active=True)
                session.add(user)
                session.commit()
                session.refresh(user)
                print(f"✅ Added {email}")

            states.get_or_create_state(session, user.id)
            ledger.get_or_create(session, user.id, current_period())
            session.commit()

            # Tokens normally come from the auth service; handy for local curl testing
            print(f"🔑 {email}: {create_token_for_user(user, settings)}")

    print(f"🌱 {env.capitalize()} data seeding complete.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the CaptionFlow billing database.")
    parser.add_argument(
        "--env",
        choices=["dev", "staging"],
        default="dev",
        help="Select environment to seed (dev or staging)",
    )
    args = parser.parse_args()
    seed_users(args.env)
