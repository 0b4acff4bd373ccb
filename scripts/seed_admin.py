"""
Create the first administrator account.

Public registration only ever creates clients, so the initial admin has to be
provisioned out of band.

Usage:
    python scripts/seed_admin.py --email admin@example.com --password 'secret123' --first Ada --last Admin
"""
import sys
import os
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from dotenv import load_dotenv
load_dotenv()

from portal.db import Base, SessionLocal, engine
from portal.errors import PortalError
from portal.services.access import Role
from portal.services.users import create_user, get_user_by_email


def seed_admin(email: str, password: str, first_name: str, last_name: str) -> int:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        existing = get_user_by_email(db, email)
        if existing:
            print(f"[SKIP] {existing.email} already exists with role {existing.role}")
            return 0
        try:
            user = create_user(db, email, password, first_name, last_name, role=Role.ADMIN)
        except PortalError as e:
            print(f"[ERROR] {e.detail}")
            return 1
        print(f"[OK] Created admin {user.email} ({user.id})")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create an administrator account")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--first", default="Admin")
    parser.add_argument("--last", default="User")
    args = parser.parse_args()
    sys.exit(seed_admin(args.email, args.password, args.first, args.last))
