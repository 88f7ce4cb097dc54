from __future__ import annotations

import argparse
import asyncio

from sqlalchemy import select

from .db import SessionLocal, User, init_db
from .loops import new_api_token, register_user
from .phone_directory import normalize_phone
from .reminders import send_reminders


def create_user(args: argparse.Namespace) -> None:
    """Create a user (optionally privileged) and print its API token."""
    db = SessionLocal()
    try:
        user = register_user(
            db,
            first_name=args.first_name,
            last_name=args.last_name,
            phone_number=args.phone,
            email=args.email,
            privileged=args.privileged,
        )
        print(f"user {user.id} created{' (privileged)' if user.is_privileged else ''}")
        print(f"token: {user.api_token}")
    finally:
        db.close()


def grant(args: argparse.Namespace) -> None:
    """Set the privilege flag on an existing user and rotate its token."""
    db = SessionLocal()
    try:
        phone = normalize_phone(args.phone)
        user = db.scalars(select(User).where(User.phone_number == phone)).first()
        if user is None:
            raise SystemExit(f"no user with phone {phone}")
        user.is_privileged = True
        user.api_token = new_api_token()
        db.commit()
        print(f"user {user.id} is now privileged")
        print(f"token: {user.api_token}")
    finally:
        db.close()


def remind(args: argparse.Namespace) -> None:
    """Run one reminder tick now."""
    report = asyncio.run(send_reminders())
    print(f"attempted={report.attempted} succeeded={report.succeeded} failed={report.failed}")


def main() -> None:
    parser = argparse.ArgumentParser(prog="loopedin-admin")
    sub = parser.add_subparsers(dest="command", required=True)

    p_create = sub.add_parser("create-user")
    p_create.add_argument("--first-name", required=True)
    p_create.add_argument("--last-name", default="")
    p_create.add_argument("--phone", required=True)
    p_create.add_argument("--email", default=None)
    p_create.add_argument("--privileged", action="store_true")
    p_create.set_defaults(func=create_user)

    p_grant = sub.add_parser("grant")
    p_grant.add_argument("--phone", required=True)
    p_grant.set_defaults(func=grant)

    p_remind = sub.add_parser("remind")
    p_remind.set_defaults(func=remind)

    args = parser.parse_args()
    init_db()
    args.func(args)


if __name__ == "__main__":
    main()
