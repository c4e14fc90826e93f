#!/usr/bin/env python3
"""Add or update a principal in the JSON file loaded via PRINCIPALS_FILE.

Usage:
    # Using environment variables:
    PRINCIPALS_FILE=principals.json python scripts/add_principal.py --user-id u-1 --pi-id alice

    # Register a KYC-verified merchant:
    python scripts/add_principal.py --file principals.json --user-id u-2 --pi-id bob \
        --merchant --kyc-status verified

Environment Variables:
    PRINCIPALS_FILE: Path of the principals JSON list (used when --file is omitted)
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from piauth.storage.models import Principal  # noqa: E402

KYC_STATUSES = ("pending", "verified", "rejected")


def _principal_record(principal: Principal) -> dict:
    return {
        "user_id": principal.user_id,
        "pi_id": principal.pi_id,
        "roles": list(principal.roles),
        "is_merchant": principal.is_merchant,
        "kyc_status": principal.kyc_status,
    }


def upsert_principal(path: Path, principal: Principal, dry_run: bool = False) -> str:
    """Insert or replace the entry with the same pi_id.

    Returns 'created', 'updated', 'unchanged' or 'dry_run'.
    """
    records = json.loads(path.read_text(encoding="utf-8")) if path.exists() else []
    record = _principal_record(principal)

    existing = next((i for i, item in enumerate(records) if item.get("pi_id") == principal.pi_id), None)
    if existing is not None and records[existing] == record:
        print(f"Principal {principal.pi_id} already up to date")
        return "unchanged"

    if dry_run:
        action = "update" if existing is not None else "create"
        print(f"[DRY RUN] Would {action} principal {principal.pi_id}")
        return "dry_run"

    if existing is not None:
        records[existing] = record
        status = "updated"
    else:
        records.append(record)
        status = "created"

    path.write_text(json.dumps(records, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    print(f"{status.capitalize()} principal {principal.pi_id} (user: {principal.user_id})")
    return status


def main():
    parser = argparse.ArgumentParser(
        description="Register a principal for the Pi auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--file",
        default=os.environ.get("PRINCIPALS_FILE"),
        help="Principals JSON file (or set PRINCIPALS_FILE env var)",
    )
    parser.add_argument("--user-id", required=True, help="Internal user id")
    parser.add_argument("--pi-id", required=True, help="Pi Network user id")
    parser.add_argument("--merchant", action="store_true", help="Grant the merchant role")
    parser.add_argument("--kyc-status", default="pending", choices=KYC_STATUSES)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.file:
        print("Error: --file or PRINCIPALS_FILE environment variable required")
        sys.exit(1)

    roles = ["user", "merchant"] if args.merchant else ["user"]
    principal = Principal(
        user_id=args.user_id.strip(),
        pi_id=args.pi_id.strip(),
        roles=roles,
        is_merchant=args.merchant,
        kyc_status=args.kyc_status,
    )

    try:
        upsert_principal(Path(args.file), principal, args.dry_run)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
