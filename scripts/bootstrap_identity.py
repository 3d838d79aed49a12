#!/usr/bin/env python3
"""Bootstrap a local identity for testing and initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_IDENTIFIER=ops@example.com BOOTSTRAP_SECRET=SecurePassword123! python scripts/bootstrap_identity.py

    # Or with command line args:
    python scripts/bootstrap_identity.py --identifier ops@example.com --secret SecurePassword123! --role admin

Environment Variables:
    BOOTSTRAP_IDENTIFIER: Login identifier (usually an email address)
    BOOTSTRAP_SECRET: Secret for the identity (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


def validate_secret(secret: str) -> bool:
    """Check the secret meets complexity requirements."""
    if len(secret) < 12:
        return False
    has_upper = any(c.isupper() for c in secret)
    has_lower = any(c.islower() for c in secret)
    has_digit = any(c.isdigit() for c in secret)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in secret)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_identity(
    identifier: str, secret: str, role: str = "user", dry_run: bool = False
) -> dict:
    """Create an identity unless one already exists.

    Returns:
        dict with subject_id, identifier, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from trustcore.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.find_by_identifier(identifier)
    if existing:
        print(f"Identity {identifier} already exists (id: {existing.subject_id})")
        return {
            "subject_id": existing.subject_id,
            "identifier": identifier,
            "status": "exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would create identity: {identifier} with role {role}")
        return {"subject_id": None, "identifier": identifier, "status": "dry_run"}

    digest, algo = runtime.hasher.hash_password(secret)
    identity = runtime.store.create_identity(
        identifier,
        email=identifier if "@" in identifier else None,
        secret_digest=digest,
        secret_algo=algo,
        roles=[role],
        email_verified=True,
    )
    await runtime.recorder.record_system_action(
        "CREATE_USER",
        details={"identifier": identifier, "roles": [role], "source": "bootstrap"},
        entity_type="Identity",
        entity_id=identity.subject_id,
    )

    result = await runtime.auth.authenticate(identifier, secret)
    await runtime.recorder.close()
    print(f"Created identity: {identifier} (id: {identity.subject_id})")
    return {
        "subject_id": identity.subject_id,
        "identifier": identifier,
        "status": "created",
        "access_token": result.value.access_token if result.ok else None,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an identity for Trust Core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--identifier",
        default=os.environ.get("BOOTSTRAP_IDENTIFIER"),
        help="Login identifier (or set BOOTSTRAP_IDENTIFIER env var)",
    )
    parser.add_argument(
        "--secret",
        default=os.environ.get("BOOTSTRAP_SECRET"),
        help="Secret (or set BOOTSTRAP_SECRET env var)",
    )
    parser.add_argument("--role", default="user", help="Role to grant (default: user)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.identifier:
        print("Error: --identifier or BOOTSTRAP_IDENTIFIER environment variable required")
        sys.exit(1)

    if not args.secret:
        print("Error: --secret or BOOTSTRAP_SECRET environment variable required")
        sys.exit(1)

    if not validate_secret(args.secret):
        print("Error: Secret must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/trustcore-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using file-backed memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_identity(args.identifier, args.secret, args.role, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nIdentity created successfully!")
        print(f"  Identifier: {result['identifier']}")
        print(f"  Subject ID: {result['subject_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "exists":
        print("\nNo changes needed - identity already exists.")


if __name__ == "__main__":
    main()
