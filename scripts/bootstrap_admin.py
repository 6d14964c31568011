#!/usr/bin/env python3
"""Create the first organization and its admin user.

Usage:
    ADMIN_EMAIL=owner@acme.com ADMIN_PASSWORD='Secr3tPW!' \\
        python scripts/bootstrap_admin.py --org-name "Acme" --first-name Ada --last-name Owner

    python scripts/bootstrap_admin.py --org-name Acme --email owner@acme.com \\
        --password 'Secr3tPW!' --first-name Ada --last-name Owner --dry-run

Registration goes through the regular auth flow, so on an empty database the
user becomes an admin automatically. When other users already exist the new
account is promoted and its email marked verified. An existing account with
the same email is promoted in place. Either way the user is left without live
sessions and signs in normally afterwards.

Environment Variables:
    ADMIN_EMAIL / ADMIN_PASSWORD: defaults for --email / --password
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    org_name: str,
    email: str,
    password: str,
    *,
    first_name: str,
    last_name: str,
    dry_run: bool = False,
) -> dict:
    """Register or promote ``email`` as an organization admin.

    Returns:
        dict with user_id, org_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so settings are read after the env defaults below are applied
    from crmcore.api.schemas import _validate_email, _validate_password_strength
    from crmcore.service.runtime import get_runtime
    from crmcore.storage.models import Role

    email = _validate_email(email)
    _validate_password_strength(password)
    runtime = get_runtime()

    existing = runtime.store.get_user_by_email(email)
    if existing:
        if existing.role == Role.ADMIN:
            return {
                "user_id": existing.id,
                "org_id": existing.org_id,
                "email": email,
                "status": "already_admin",
            }
        if dry_run:
            return {"user_id": existing.id, "org_id": existing.org_id, "email": email, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, Role.ADMIN)
        runtime.store.mark_email_verified(existing.id)
        # Outstanding tokens still carry the old role claim
        runtime.sessions.revoke_all_for_user(existing.id)
        return {
            "user_id": existing.id,
            "org_id": existing.org_id,
            "email": email,
            "status": "promoted",
        }

    if dry_run:
        return {"user_id": None, "org_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(
        org_name, email, password, first_name=first_name, last_name=last_name
    )
    if result.user.role != Role.ADMIN:
        runtime.store.update_user_role(result.user.id, Role.ADMIN)
        runtime.store.mark_email_verified(result.user.id)
    # The CLI never hands out the session that registration opened
    runtime.sessions.revoke_all_for_user(result.user.id)
    return {
        "user_id": result.user.id,
        "org_id": result.user.org_id,
        "email": email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an organization admin for CRM Core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--org-name", required=True, help="Organization name")
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/crmcore-bootstrap")
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")
    # Rate limits are irrelevant for a one-shot CLI run
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.org_name,
                args.email,
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Organization ID: {result['org_id']}")
    elif status == "promoted":
        print(f"\nExisting user {result['email']} promoted to admin.")
    elif status == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    else:
        print(f"\n[DRY RUN] No changes made for {result['email']}.")


if __name__ == "__main__":
    main()
