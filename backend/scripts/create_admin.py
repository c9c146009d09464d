"""
Script to create admin user, or promote an existing user to admin
Run: python scripts/create_admin.py
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from hubqueue.core.errors import HubQueueError
from hubqueue.core.security import pwd_context
from hubqueue.core.services import build_services


def create_admin():
    services = build_services(pwd_context)

    username = input("Admin username: ").strip()
    if not username:
        username = "admin"
        print(f"Using default username: {username}")

    password = input("Password (only used if the account is new): ").strip()
    if not password:
        print("❌ A password is required")
        return

    try:
        user, created = services.users.ensure_admin(username, password)
        if created:
            print(f"\n✅ Admin created!")
            print(f"   Username: {user.username}")
            print(f"   Role: {user.role.value}")
        else:
            print(f"✅ {user.username} is now an admin (password unchanged)")
    except HubQueueError as e:
        print(f"❌ Error: {e.message}")
    finally:
        services.close()


if __name__ == "__main__":
    print("=" * 50)
    print("   CREATE ADMIN ACCOUNT - HubQueue")
    print("=" * 50)
    create_admin()
