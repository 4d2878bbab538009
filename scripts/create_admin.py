#!/usr/bin/env python3
"""
Create the first admin account.

Admins cannot self-register, so the first one is created here; later role
changes go through ``PUT /users/{id}``.

Usage:
    python scripts/create_admin.py admin@example.com 'Str0ng!Pass' Ada Admin
"""
import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

load_dotenv()
logging.basicConfig(level=logging.INFO)

from pydantic import ValidationError as SchemaError

from roboclub.base_microservice import Database
from roboclub.config import Settings
from roboclub.auth.errors import AuthServiceError
from roboclub.auth.models import ADMIN
from roboclub.auth.users import UserCreate, UserService


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Create an admin account")
    parser.add_argument("email")
    parser.add_argument("password")
    parser.add_argument("first_name")
    parser.add_argument("last_name")
    return parser.parse_args(argv)


async def create_admin(data: UserCreate):
    settings = Settings.from_env()
    database = Database(settings.database_url)
    try:
        await database.create_all()
        async with database.session_factory() as session:
            user = await UserService(settings).create(data, ADMIN, session)
            print(f"Created admin {user.email} (id={user.id})")
    finally:
        await database.dispose()


def main(argv=None):
    args = parse_args(argv)
    try:
        data = UserCreate(
            email=args.email,
            password=args.password,
            first_name=args.first_name,
            last_name=args.last_name,
        )
        asyncio.run(create_admin(data))
    except SchemaError as e:
        print(f"Invalid input: {e}")
        sys.exit(1)
    except AuthServiceError as e:
        print(f"Failed to create admin: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
