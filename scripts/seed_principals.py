#!/usr/bin/env python3
"""Seed an admin user and an admin employee for local setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
    EMPLOYEE_EMAIL=ops@example.com EMPLOYEE_PASSWORD=SecurePassword123! \
        python scripts/seed_principals.py

    # Or with command line args:
    python scripts/seed_principals.py --email admin@example.com --password SecurePassword123! \
        --employee-email ops@example.com --employee-password SecurePassword123! \
        --department Operations --position admin

Environment Variables:
    ADMIN_EMAIL / ADMIN_PASSWORD: Credentials for the admin user
    EMPLOYEE_EMAIL / EMPLOYEE_PASSWORD: Credentials for the admin employee
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)

The same email may not be used for both principals: login resolves users
first, so the employee would be unreachable.
"""
from __future__ import annotations

import argparse
import os
import sys


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def seed_admin_user(runtime, email: str, password: str, *, dry_run: bool = False) -> dict:
    existing = runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id}, role: {existing.role})")
        return {"id": existing.id, "email": email, "status": "exists"}
    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"id": None, "email": email, "status": "dry_run"}
    user = runtime.store.create_user(
        "Administrator", email, runtime.verifier.hash_secret(password), role="admin"
    )
    print(f"Created admin user: {email} (id: {user.id})")
    return {"id": user.id, "email": email, "status": "created"}


def seed_admin_employee(
    runtime,
    email: str,
    password: str,
    *,
    department: str,
    position: str,
    dry_run: bool = False,
) -> dict:
    existing = runtime.store.get_employee_by_email(email)
    if existing:
        print(f"Employee {email} already exists (id: {existing.id}, role: {existing.role})")
        return {"id": existing.id, "email": email, "status": "exists"}
    if dry_run:
        print(f"[DRY RUN] Would create employee {email} in department {department}")
        return {"id": None, "email": email, "status": "dry_run"}
    dept = runtime.store.create_department(department)
    employee = runtime.store.create_employee(
        "Administrator",
        email,
        runtime.verifier.hash_secret(password),
        department_id=dept.id,
        position=position,
    )
    print(f"Created employee: {email} (id: {employee.id}, department: {dept.name})")
    return {"id": employee.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed principals for the dashboard session service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--employee-email", default=os.environ.get("EMPLOYEE_EMAIL"))
    parser.add_argument("--employee-password", default=os.environ.get("EMPLOYEE_PASSWORD"))
    parser.add_argument("--department", default="Administration")
    parser.add_argument("--position", default="admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email and not args.employee_email:
        print("Error: --email and/or --employee-email required")
        sys.exit(1)
    if args.email and args.employee_email and args.email.lower() == args.employee_email.lower():
        print("Error: the user and the employee need different emails")
        sys.exit(1)
    for label, email, password in (
        ("admin", args.email, args.password),
        ("employee", args.employee_email, args.employee_password),
    ):
        if email and (not password or not validate_password(password)):
            print(f"Error: {label} password must be at least 12 characters with 3+ character classes")
            sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/dashauth-seed"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    # Import after the environment is prepared so settings pick it up
    from dashauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if args.email:
            seed_admin_user(runtime, args.email, args.password, dry_run=args.dry_run)
        if args.employee_email:
            seed_admin_employee(
                runtime,
                args.employee_email,
                args.employee_password,
                department=args.department,
                position=args.position,
                dry_run=args.dry_run,
            )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
