#!/usr/bin/env python3
"""
Gentle Space Realty admin -- management commands.

Usage:
  python main.py create-user someone@gentlespacerealty.com --name "Some One"
  python main.py create-user someone@gentlespacerealty.com --name "Some One" --password
  python main.py list-users
  python main.py serve --port 8000 --reload

create-user never takes a role: the role is derived from the email domain,
exactly as on a first Google sign-in. --password prompts for a password so
the account can also use the email/password form; without it the account
is Google-only.

Configuration comes from the environment / .env file (see .env.example).
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.roles import domain_to_role
from auth.store import UserStore
from auth.tokens import MAX_PASSWORD_BYTES, hash_password, password_too_long
from core.config import Settings, load_settings
from core.log import configure_logging


def _create_user(settings: Settings, args: argparse.Namespace) -> int:
    role = domain_to_role(
        args.email,
        admin_domain=settings.admin_email_domain,
        super_admin_email=settings.super_admin_email,
    )
    hashed = None
    if args.password:
        password = getpass.getpass("Password: ")
        if len(password) < 8:
            print("  [!] Password must be at least 8 characters.")
            return 1
        if password_too_long(password):
            print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes (UTF-8).")
            return 1
        if password != getpass.getpass("Confirm password: "):
            print("  [!] Passwords do not match.")
            return 1
        hashed = hash_password(password)

    name = args.name or args.email.split("@", 1)[0]
    store = UserStore(settings.database_url)
    try:
        user_id = store.create_user(User(email=args.email, name=name, role=role.value, hashed_password=hashed))
    except IntegrityError:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    finally:
        store.close()
    print(f"  Created user id={user_id} ({args.email}) with role {role.value}.")
    return 0


def _list_users(settings: Settings, args: argparse.Namespace) -> int:
    store = UserStore(settings.database_url)
    try:
        users = store.list_users()
    finally:
        store.close()
    if not users:
        print("  No users yet.")
        return 0
    for u in users:
        status = "active" if u.is_active else "disabled"
        print(f"  {u.id:>4}  {u.email:<40} {u.role:<12} {status:<9} last sign-in: {u.last_login or 'never'}")
    return 0


def _serve(args: argparse.Namespace) -> int:
    """Run uvicorn on asgi:app. asgi.py loads the one Settings object for the server."""
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload, log_config=None)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gentlespace-admin",
        description="Management commands for the Gentle Space Realty admin service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create an account (role derived from the email domain)")
    create.add_argument("email", help="Account email address")
    create.add_argument("--name", help="Display name (default: the email's local part)")
    create.add_argument("--password", action="store_true", help="Prompt for a password for email/password login")
    create.set_defaults(func=_create_user)

    list_cmd = sub.add_parser("list-users", help="List all accounts")
    list_cmd.set_defaults(func=_list_users)

    serve = sub.add_parser("serve", help="Run the web server with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development)")

    args = parser.parse_args(argv)
    if args.command == "serve":
        return _serve(args)
    settings = load_settings()
    configure_logging(settings)
    return args.func(settings, args)


if __name__ == "__main__":
    sys.exit(main())
