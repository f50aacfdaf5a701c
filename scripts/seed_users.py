"""
Create the tables and an initial administrator.
Run from the project root: python scripts/seed_users.py --username admin --password '...'
"""
import argparse
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables first
from dotenv import load_dotenv

load_dotenv()

from service_integrity.auth.security import get_password_hash
from service_integrity.db import Base, SessionLocal, engine
from service_integrity.models.models import User
from service_integrity.services.capabilities import Role
from service_integrity.services.security_audit import SecurityAuditService


def seed_admin(username: str, password: str, full_name: str) -> None:
    """Create the admin user if it does not exist yet"""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        existing = db.query(User).filter(User.username == username).first()
        if existing:
            print(f"User '{username}' already exists (role={existing.role}), nothing to do")
            return

        strength = SecurityAuditService.assess_password_strength(password)
        if strength["strength"] == "weak":
            print("WARNING: weak password: " + "; ".join(strength["suggestions"]))

        db.add(User(
            username=username,
            full_name=full_name,
            password_hash=get_password_hash(password),
            role=Role.ADMIN.value,
            is_active=True,
        ))
        db.commit()
        print(f"Created admin user '{username}'")
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the initial administrator")
    parser.add_argument("--username", default="admin")
    parser.add_argument("--password", required=True)
    parser.add_argument("--full-name", default="Administrator")
    args = parser.parse_args()
    seed_admin(args.username, args.password, args.full_name)
