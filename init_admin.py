#!/usr/bin/env python3
"""
Create the first admin user.

Usage:
  DATABASE_URL=sqlite:///./priella.db \
      python init_admin.py --email owner@example.com --name "Owner"

The password is read from ADMIN_PASSWORD or prompted for.
"""
import argparse
import asyncio
import getpass
import os
import sys

from priella import config
from priella.errors import PriellaError
from priella.infra.sql import make_async_engine
from priella.model import admin
from priella.model.db import Base


async def create_first_admin(email: str, name: str, password: str,
                             role: str) -> str:
    engine, SessionAsync, gated = make_async_engine(config.DATABASE_URL)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with SessionAsync() as db:
            async with gated():
                async with db.begin():
                    user = await admin.create_admin_user(
                        db, email=email, name=name, password=password,
                        role=role,
                    )
        return user.id
    finally:
        await engine.dispose()


def main():
    ap = argparse.ArgumentParser(description="Create a Priella admin user")
    ap.add_argument("--email", required=True)
    ap.add_argument("--name", default="")
    ap.add_argument("--role", default="super_admin", choices=admin.ROLES)
    args = ap.parse_args()

    password = os.environ.get("ADMIN_PASSWORD") or getpass.getpass(
        "Password: "
    )
    try:
        admin_id = asyncio.run(create_first_admin(
            args.email, args.name, password, args.role
        ))
    except PriellaError as e:
        print(f"error: {e.message}")
        sys.exit(1)
    print(f"created admin {args.email} ({admin_id})")


if __name__ == "__main__":
    main()
