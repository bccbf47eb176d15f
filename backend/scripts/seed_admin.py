#!/usr/bin/env python3
"""
Admin User Seed Script
Creates an operator (admin) account for manual triggers and the sign-off queue.

Usage:
    python -m scripts.seed_admin <email> <password> [full_name]

Example:
    python -m scripts.seed_admin ops@signoff.app securepassword123 "Sign-Off Operator"
"""
import sys
import os
from typing import Optional
from uuid import uuid4

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from app.database import SessionLocal, init_db
from app.models.db_models import UserDB
from app.auth import hash_password


def create_admin_user(db: Session, email: str, password: str, full_name: Optional[str] = None) -> bool:
    """Create an admin user, or promote an existing account with that email."""
    existing = db.query(UserDB).filter(UserDB.email == email).first()

    if existing:
        if existing.role == "admin":
            print(f"User '{email}' is already an admin.")
            return False
        existing.role = "admin"
        db.commit()
        print(f"Upgraded existing user '{email}' to admin role.")
        return True

    admin_user = UserDB(
        id=str(uuid4()),
        email=email,
        full_name=full_name,
        password_hash=hash_password(password),
        role="admin",
    )
    db.add(admin_user)
    db.commit()

    print("Admin user created successfully!")
    print(f"  Email: {email}")
    print("  Role: admin")
    return True


def main():
    if len(sys.argv) not in (3, 4):
        print(__doc__)
        sys.exit(1)

    email = sys.argv[1]
    password = sys.argv[2]
    full_name = sys.argv[3] if len(sys.argv) == 4 else None

    # Basic validation
    if len(password) < 8:
        print("Error: Password must be at least 8 characters.")
        sys.exit(1)

    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    init_db()
    db = SessionLocal()
    try:
        success = create_admin_user(db, email, password, full_name)
    except SQLAlchemyError as e:
        db.rollback()
        print(f"Error creating admin user: {e}")
        success = False
    finally:
        db.close()
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
