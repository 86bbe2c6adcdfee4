#!/usr/bin/env python3
"""Operator tooling for the persisted record store.

Usage:
    # Promote an administrator to super_admin:
    STATE_PATH=/srv/medgate/state.json python scripts/promote_super_admin.py --email admin@example.com

    # Suspend (or reactivate) a hospital:
    python scripts/promote_super_admin.py --state-path state.json --tenant HOSP0001 --tenant-status suspended

Environment Variables:
    STATE_PATH: JSON snapshot written by the memory store (required unless --state-path is given)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

_TENANT_STATUSES = ("pending", "active", "suspended", "inactive")


def promote(store, email: str, dry_run: bool = False) -> dict:
    admin = store.get_administrator_by_email(email.strip().lower())
    if admin is None:
        raise LookupError(f"no administrator with email {email}")
    if admin.role == "super_admin":
        print(f"{email} is already super_admin (id: {admin.id})")
        return {"admin_id": admin.id, "status": "already_super_admin"}
    if dry_run:
        print(f"[DRY RUN] Would promote {email} to super_admin")
        return {"admin_id": admin.id, "status": "dry_run"}
    store.set_administrator_role(admin.id, "super_admin")
    print(f"Promoted {email} to super_admin (id: {admin.id})")
    return {"admin_id": admin.id, "status": "promoted"}


def set_tenant_status(store, tenant_id: str, status: str, dry_run: bool = False) -> dict:
    tenant = store.get_tenant(tenant_id)
    if tenant is None:
        raise LookupError(f"no hospital with id {tenant_id}")
    if dry_run:
        print(f"[DRY RUN] Would change {tenant_id} status {tenant.status} -> {status}")
        return {"tenant_id": tenant_id, "status": "dry_run"}
    store.set_tenant_status(tenant_id, status)
    print(f"Changed {tenant_id} status {tenant.status} -> {status}")
    return {"tenant_id": tenant_id, "status": "updated"}


def main():
    parser = argparse.ArgumentParser(
        description="Administrative tooling for the Medgate record store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--state-path", default=os.environ.get("STATE_PATH"))
    parser.add_argument("--email", help="Administrator email to promote to super_admin")
    parser.add_argument("--tenant", help="Hospital id (HOSP####) whose status to change")
    parser.add_argument("--tenant-status", choices=_TENANT_STATUSES)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.state_path:
        print("Error: --state-path or STATE_PATH environment variable required")
        sys.exit(1)
    if not args.email and not (args.tenant and args.tenant_status):
        print("Error: pass --email, or --tenant together with --tenant-status")
        sys.exit(1)
    if not Path(args.state_path).exists():
        print(f"Error: state file {args.state_path} does not exist")
        sys.exit(1)

    from medgate.storage.memory import MemoryStore

    store = MemoryStore(state_path=args.state_path)
    try:
        if args.email:
            promote(store, args.email, args.dry_run)
        if args.tenant and args.tenant_status:
            set_tenant_status(store, args.tenant, args.tenant_status, args.dry_run)
    except LookupError as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
