#!/usr/bin/env python3
"""Bootstrap the first administrator so a management token can be issued.

Creates (or reuses) a person, a service, a role and a set of permissions, wires
role -> permissions, service -> role and person -> (service, role), then logs in
once to prove the credentials work.

Usage:
    ADMIN_USERNAME=admin ADMIN_PASSWORD=ChangeMe123 python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username admin --password ChangeMe123 \\
        --document-number 00000000 --service warden --role admin \\
        --permission users.manage --permission services.manage

Environment Variables:
    ADMIN_USERNAME: Username for the administrator
    ADMIN_PASSWORD: Password for the administrator (8+ characters)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_PERMISSIONS = ["users.manage", "services.manage", "roles.manage"]


def _find_by_name(items, name: str):
    return next((item for item in items if item.name == name), None)


def bootstrap_admin(
    username: str,
    password: str,
    *,
    name: str,
    document_number: str,
    service_name: str,
    role_name: str,
    permission_names: List[str],
    dry_run: bool = False,
) -> dict:
    """Create or reuse every row needed for an administrator.

    Returns:
        dict with person_id, service_id, role_id, permissions and status
    """
    # imported late so the environment above is read by Settings
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    directory = runtime.directory

    existing = runtime.store.get_person_by_username(username)
    if dry_run:
        action = "reuse" if existing else "create"
        print(f"[DRY RUN] Would {action} person {username} with role {role_name} on {service_name}")
        return {"person_id": existing.id if existing else None, "status": "dry_run"}

    person = existing or directory.create_person(
        username, password, name, document_number
    )
    service = runtime.store.get_service_by_name(service_name) or directory.create_service(
        service_name, "management api"
    )
    role = _find_by_name(directory.list_roles(), role_name) or directory.create_role(role_name)

    known = directory.list_permissions()
    granted = []
    for permission_name in permission_names:
        permission = _find_by_name(known, permission_name) or directory.create_permission(
            permission_name
        )
        directory.assign_permission_to_role(role.id, permission.id)
        granted.append(permission.name)

    directory.assign_role_to_service(service.id, role.id)
    directory.assign_role_to_person(person.id, service.id, role.id)

    result = {
        "person_id": person.id,
        "service_id": service.id,
        "role_id": role.id,
        "permissions": granted,
        "status": "updated" if existing else "created",
    }
    if not existing:
        _, issued = runtime.auth.login(username, password)
        result["token"] = issued.token
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for Warden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--name", default="Administrator")
    parser.add_argument("--document-number", default="00000000")
    parser.add_argument("--service", default="warden")
    parser.add_argument("--role", default="admin")
    parser.add_argument(
        "--permission",
        action="append",
        dest="permissions",
        help="Permission to grant the role (repeatable)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)
    if not args.password or len(args.password) < 8:
        print("Error: --password or ADMIN_PASSWORD (8+ characters) required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("TOKEN_REAPER_ENABLED", "false")

    try:
        result = bootstrap_admin(
            args.username,
            args.password,
            name=args.name,
            document_number=args.document_number,
            service_name=args.service,
            role_name=args.role,
            permission_names=args.permissions or DEFAULT_PERMISSIONS,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "dry_run":
        return
    print(f"\nAdministrator {result['status']}!")
    print(f"  Person ID: {result['person_id']}")
    print(f"  Service ID: {result['service_id']}")
    print(f"  Role ID: {result['role_id']}")
    print(f"  Permissions: {', '.join(result['permissions'])}")
    if result.get("token"):
        print(f"  Token: {result['token']}")


if __name__ == "__main__":
    main()
