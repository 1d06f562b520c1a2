#!/usr/bin/env python3
"""Bootstrap an admin account and optionally start two-factor enrollment.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_NAME="Site Admin" python scripts/bootstrap_admin.py

    # Or with command line args, printing the authenticator URI and backup codes:
    python scripts/bootstrap_admin.py --email admin@example.com --name "Site Admin" --enroll-2fa

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_NAME: Display name for the admin account
    DATABASE_URL: PostgreSQL connection string. When it is unset this script sets
        USE_MEMORY_STORE=true itself and keeps state under SHARED_FS_ROOT
        (default /tmp/admingate-bootstrap). The library default of a local
        PostgreSQL database is not used.

Passwords are handled by the identity service, not by this tool.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import structlog

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, name: str, *, enroll: bool = False, dry_run: bool = False) -> dict:
    """Create an admin if missing, then optionally begin 2FA enrollment.

    Returns:
        dict with user_id, email, status and, when enrolling, the setup material
    """
    # Import here to avoid loading config before env vars are set
    from admingate.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.get_admin_by_email(email)
    if existing:
        print(f"Admin {email} already exists (id: {existing.id})")
        result = {"user_id": existing.id, "email": email, "status": "exists"}
        admin = existing
    elif dry_run:
        print(f"[DRY RUN] Would create admin: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}
    else:
        admin = runtime.store.create_admin(email, name)
        print(f"Created admin: {email} (id: {admin.id})")
        result = {"user_id": admin.id, "email": email, "status": "created"}

    if enroll:
        if dry_run:
            print(f"[DRY RUN] Would start 2FA enrollment for {email}")
            return result
        setup = runtime.enrollment.begin(admin.id)
        result["otpauth_url"] = setup.otpauth_url
        result["backup_codes"] = setup.backup_codes
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Admin display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--enroll-2fa",
        action="store_true",
        help="Generate a TOTP secret and backup codes for the admin",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/admingate-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print(
            "Note: DATABASE_URL not set, using the file-backed memory store under "
            f"{os.environ['SHARED_FS_ROOT']}"
        )

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        with structlog.contextvars.bound_contextvars(command="bootstrap_admin"):
            result = bootstrap_admin(
                args.email, args.name, enroll=args.enroll_2fa, dry_run=args.dry_run
            )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result.get("otpauth_url"):
        print("\nTwo-factor enrollment started (confirm with a code to enable it).")
        print(f"  Authenticator URI: {result['otpauth_url']}")
        print("  Backup codes (store these somewhere safe):")
        for code in result["backup_codes"]:
            print(f"    {code}")


if __name__ == "__main__":
    main()
