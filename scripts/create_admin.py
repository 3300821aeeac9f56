#!/usr/bin/env python3
"""
Script to create the first admin user (with admin PIN).
"""
import sys
from getpass import getpass
from pathlib import Path

# Add parent directory to the system path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError as SchemaError

from database.connection import Database
from core.exceptions import ValidationError
from services.directory_service import AdminFields, DirectoryService, NewUser
import config


def create_admin():
    """Create an admin user."""
    # Initialize database
    config.db = Database(
        database_url=config.DATABASE_URL,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW
    )
    config.db.create_tables()

    print("Creating admin user...")
    print("=" * 50)

    # Get user input
    username = input("Username: ").strip()
    email = input(f"Email (@{config.SCHOOL_EMAIL_DOMAIN}): ").strip()
    password = getpass("Password: ")
    pin = getpass("Admin PIN (6 digits): ").strip()

    if not username or not email or not password or not pin:
        print("Error: Username, email, password and PIN are required")
        sys.exit(1)

    try:
        data = NewUser(
            username=username,
            password=password,
            profile=AdminFields(role="Admin", email=email, pin=pin)
        )
    except SchemaError as e:
        print("\n✗ Error:")
        for err in e.errors():
            print(f"  - {err['msg']}")
        sys.exit(1)

    try:
        with config.db.get_session() as db:
            DirectoryService.validate_new_user(db, data)
            user = DirectoryService.create_user(db, data, is_active=True)
            print(f"\n✓ Admin user created successfully!")
            print(f"  Username: {user.username}")
            print(f"  Email: {user.email}")
            print(f"  Role: {user.role.value}")
    except ValidationError as e:
        print("\n✗ Error:")
        for message in e.errors:
            print(f"  - {message}")
        sys.exit(1)


if __name__ == "__main__":
    create_admin()
