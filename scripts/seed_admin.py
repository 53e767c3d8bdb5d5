#!/usr/bin/env python3
"""Create the platform billing admin (if missing) and print an access token for it."""
import os
import sys
from datetime import timedelta

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from perdexa.core.security import create_access_token
from perdexa.db.session import SessionLocal
from perdexa.models.user import User


def seed_admin(email: str):
    db = SessionLocal()
    try:
        admin = db.query(User).filter(User.email == email, User.is_admin.is_(True)).first()
        if admin:
            print(f"Admin user {email} already exists")
        else:
            admin = User(email=email, name="Billing admin", is_admin=True)
            db.add(admin)
            db.commit()
            db.refresh(admin)
            print(f"Admin user created: {email}")

        token = create_access_token(
            {"sub": admin.email, "user_id": str(admin.id), "is_admin": True},
            expires_delta=timedelta(days=1),
        )
        print(f"Access token (24h): {token}")
    finally:
        db.close()


if __name__ == "__main__":
    seed_admin(sys.argv[1] if len(sys.argv) > 1 else "admin@perdexa.local")
