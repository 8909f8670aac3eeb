#!/usr/bin/env python3
"""Create or promote an admin account in the persisted store.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (must satisfy the signup password policy)
    JWT_SECRET: Signing key, same value the server runs with
    SHARED_FS_ROOT: Directory holding the store snapshot the server loads
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email, and status
        ('created', 'promoted', 'already_admin', or 'dry_run')
    """
    # Deferred so the environment is final before settings are read
    from tokenward.service.runtime import get_runtime

    runtime = get_runtime()
    admin_role = runtime.settings.admin_role
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.has_role(admin_role) and existing.enabled:
            return {"account_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"account_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.auth.grant_role(existing.id, admin_role)
        return {"account_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"account_id": None, "email": email, "status": "dry_run"}

    summary = runtime.auth.signup(email, password, "Administrator")
    runtime.auth.grant_role(summary.id, admin_role)
    return {"account_id": summary.id, "email": summary.email, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Tokenward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/--password or ADMIN_EMAIL/ADMIN_PASSWORD required")
        sys.exit(1)
    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set to the server's signing key")
        sys.exit(1)

    from tokenward.api.schemas import _validate_email, _validate_password_strength

    try:
        email = _validate_email(args.email)
        _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    # The server only sees the account if the store snapshot is written
    os.environ["PERSIST_STATE"] = "true"

    result = bootstrap_admin(email, args.password, args.dry_run)
    print(f"{result['status']}: {result['email']} (id: {result['account_id']})")


if __name__ == "__main__":
    main()
