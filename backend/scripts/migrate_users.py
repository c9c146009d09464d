#!/usr/bin/env python3
"""
Convert legacy user records (isAdmin / isTrusted / isBanned flags) to roles.
The server does the same at startup; this script is for running it by hand.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from hubqueue.core.errors import HubQueueError
from hubqueue.core.security import pwd_context
from hubqueue.core.services import build_services


def run_migration():
    """Rewrite every legacy record in the users collection"""
    services = build_services(pwd_context)
    try:
        migrated = services.users.migrate_legacy_records()
        if migrated:
            print(f"✅ Migrated {migrated} user record(s)")
        else:
            print("Nothing to migrate")
    except HubQueueError as e:
        print(f"❌ Migration failed: {e.message}")
        sys.exit(1)
    finally:
        services.close()


if __name__ == "__main__":
    run_migration()
