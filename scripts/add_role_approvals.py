#!/usr/bin/env python3
"""
Add or replace role pre-approvals directly in the database.

Usage:
    python scripts/add_role_approvals.py alice@example.com mentor
    python scripts/add_role_approvals.py bob@example.com team_member researcher --note "Lab lead"
"""
import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

# Load environment variables before reading settings
load_dotenv()
logging.basicConfig(level=logging.INFO)

from roboclub.base_microservice import Database
from roboclub.config import Settings
from roboclub.auth.errors import AuthServiceError
from roboclub.auth.role_approvals import RoleApprovalRegistry


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Add or replace a role pre-approval")
    parser.add_argument("email", help="Email to pre-approve")
    parser.add_argument("roles", nargs="+", help="Roles the email may hold")
    parser.add_argument("--note", default="Added via add_role_approvals script")
    return parser.parse_args(argv)


async def ensure_role_approval(email, roles, note):
    settings = Settings.from_env()
    database = Database(settings.database_url)
    try:
        await database.create_all()
        async with database.session_factory() as session:
            approval = await RoleApprovalRegistry().upsert(email, roles, session, note=note)
            print(f"Upserted role approval: {approval.email} -> [{', '.join(approval.allowed_roles)}]")
    finally:
        await database.dispose()


def main(argv=None):
    args = parse_args(argv)
    try:
        asyncio.run(ensure_role_approval(args.email, args.roles, args.note))
    except AuthServiceError as e:
        print(f"Failed to add role approval: {e.message}")
        sys.exit(1)
    print("Done.")


if __name__ == "__main__":
    main()
