#!/usr/bin/env python3
"""Operator commands for sessions and share links.

Usage:
    # Invalidate every outstanding staff session:
    python scripts/auth_ops.py revoke staff

    # Invalidate every session of every role:
    python scripts/auth_ops.py revoke all

    # Show indexed sessions, newest first:
    python scripts/auth_ops.py list-sessions --limit 50

    # Delete expired and revoked share links across all content:
    python scripts/auth_ops.py sweep-shares

    # Report weak or missing secrets:
    python scripts/auth_ops.py security-check

Environment Variables:
    REDIS_URL: Redis connection string shared with the API process
    AUTH_SECRET, ADMIN_PASSWORD, STAFF_PIN, UPLOAD_PIN, CRON_SECRET: role secrets
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def revoke(target: str) -> dict:
    """Bump the token version of one role (or all) and return the new versions."""
    # Import here to avoid loading config before env vars are set
    from latchkey.service.roles import Role
    from latchkey.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if target == "all":
            return await runtime.auth.revoke_all()
        role = Role.parse(target)
        return {role.value: await runtime.auth.revoke_role(role)}
    finally:
        await runtime.close()


async def list_sessions(limit: int) -> dict:
    from latchkey.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        listing = await runtime.auth.list_sessions(limit)
        return listing.to_dict()
    finally:
        await runtime.close()


async def sweep_shares() -> dict:
    from latchkey.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        totals = await runtime.shares.sweep()
        return totals.to_dict()
    finally:
        await runtime.close()


def security_check() -> list[str]:
    from latchkey.config import get_settings

    return get_settings().security_warnings()


def main():
    parser = argparse.ArgumentParser(
        description="Operate Latchkey sessions and share links",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    revoke_parser = commands.add_parser("revoke", help="Invalidate every session of a role")
    revoke_parser.add_argument("role", choices=["admin", "staff", "upload", "all"])

    list_parser = commands.add_parser("list-sessions", help="Show indexed sessions")
    list_parser.add_argument("--limit", type=int, default=250)

    commands.add_parser("sweep-shares", help="Delete expired and revoked share links")
    commands.add_parser("security-check", help="Report weak or missing secrets")

    args = parser.parse_args()

    if args.command == "security-check":
        warnings = security_check()
        for warning in warnings:
            print(f"WARNING: {warning}")
        if warnings:
            sys.exit(1)
        print("No security warnings.")
        return

    try:
        if args.command == "revoke":
            result = asyncio.run(revoke(args.role))
        elif args.command == "list-sessions":
            result = asyncio.run(list_sessions(args.limit))
        else:
            result = asyncio.run(sweep_shares())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
