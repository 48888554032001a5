#!/usr/bin/env python3
"""Register an email/password credential for an existing directory user.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=tech@example.com BOOTSTRAP_PASSWORD=secret1 BOOTSTRAP_USER_ID=42 \
        python scripts/bootstrap_credential.py

    # Or with command line args:
    python scripts/bootstrap_credential.py --email tech@example.com --password secret1 --user-id 42

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the credential
    BOOTSTRAP_PASSWORD: Password for the credential (at least 6 characters)
    BOOTSTRAP_USER_ID: Directory user id that owns the credential
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_credential(
    email: str, password: str, user_id: int, dry_run: bool = False, login: bool = False
) -> dict:
    """Create the credential unless the email is already registered.

    Returns:
        dict with credential_id, email, user_id and status
        ('created', 'exists' or 'dry_run')
    """
    # imported late so env defaults below apply before settings load
    from fixerauth.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.credentials.find_by_email(email)
    if existing:
        print(f"Credential {email} already exists (id: {existing.id}, user: {existing.user_id})")
        return {
            "credential_id": existing.id,
            "email": email,
            "user_id": existing.user_id,
            "status": "exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would register {email} for user {user_id}")
        return {"credential_id": None, "email": email, "user_id": user_id, "status": "dry_run"}

    credential = runtime.auth.register(email, password, user_id)
    print(f"Registered credential: {email} (id: {credential.id})")
    result = {
        "credential_id": credential.id,
        "email": email,
        "user_id": user_id,
        "status": "created",
    }
    if login:
        login_result = runtime.auth.login_with_password(email, password, None, "bootstrap")
        result["access_token"] = login_result.token.secret
        result["session_token"] = login_result.session.session_token
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Register a HomeFixer login credential",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="Credential email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Credential password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--user-id",
        type=int,
        default=os.environ.get("BOOTSTRAP_USER_ID"),
        help="Owning directory user id (or set BOOTSTRAP_USER_ID env var)",
    )
    parser.add_argument(
        "--login",
        action="store_true",
        help="Log in after registering and print the issued tokens",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not args.user_id:
        print("Error: --user-id or BOOTSTRAP_USER_ID environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/fixerauth-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_credential(
            args.email, args.password, int(args.user_id), args.dry_run, args.login
        )
        if result["status"] == "created":
            print("\nCredential registered successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
            if result.get("access_token"):
                print(f"  Access Token: {result['access_token']}")
                print(f"  Session Token: {result['session_token']}")
        elif result["status"] == "exists":
            print("\nNo changes needed - email is already registered.")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
