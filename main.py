#!/usr/bin/env python3
"""
Gatehouse -- Role-based authorization and identity engine.
Operator commands for the identity schema. The HTTP API lives in asgi.py.

Usage:
  python main.py audit
  python main.py bootstrap
  python main.py rebuild --yes

Environment variables (see core/config.py for the full list):
  DATABASE_URL    SQLAlchemy URL of the identity store (default: sqlite:///gatehouse_auth.db)
  CRYPTO_SECRET   Master secret for stored client secrets. Required unless DEBUG=true.
  SECRET_KEY      JWT signing secret. Required unless DEBUG=true.
"""

import argparse
import sys

from auth.bootstrap import SchemaBootstrap
from auth.errors import AuthError
from auth.store import create_store_engine
from core.config import Settings, get_settings


def _bootstrap(settings: Settings) -> SchemaBootstrap:
    return SchemaBootstrap(
        create_store_engine(settings.database_url),
        crypto_secret=settings.crypto_secret,
        extra_resources=settings.extra_resources,
        main_application_name=settings.main_application_name,
        client_id_suffix=settings.client_id_suffix,
        credentials_path=settings.credentials_file,
        reseed_when_no_admin=settings.reseed_when_no_admin,
    )


def cmd_audit(bootstrap: SchemaBootstrap) -> int:
    """Print every schema inconsistency. Exit status 1 when there is any."""
    problems = bootstrap.audit()
    if not problems:
        print("  Schema is consistent.")
        return 0
    for problem in problems:
        print(f"  [!] {problem}")
    print(f"\n  {len(problems)} inconsistenc{'y' if len(problems) == 1 else 'ies'} found. Run 'bootstrap' to rebuild.")
    return 1


def cmd_bootstrap(bootstrap: SchemaBootstrap) -> int:
    result = bootstrap.run()
    if result.rebuilt:
        print(f"  Schema rebuilt ({len(result.inconsistencies)} inconsistencies).")
    if result.seeded:
        print(f"  Admin credentials written to {bootstrap.credentials_path}")
    if not result.rebuilt and not result.seeded:
        print("  Nothing to do.")
    return 0


def cmd_rebuild(bootstrap: SchemaBootstrap, confirmed: bool) -> int:
    if not confirmed:
        print("  [!] rebuild drops every identity table. Re-run with --yes to confirm.")
        return 2
    bootstrap.rebuild()
    print(f"  Schema rebuilt. Admin credentials written to {bootstrap.credentials_path}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Audit, bootstrap or rebuild the Gatehouse identity schema.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py audit
  DATABASE_URL=postgresql://... python main.py bootstrap
  python main.py rebuild --yes
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("audit", help="Report schema drift without changing anything (exit 1 on drift)")
    sub.add_parser("bootstrap", help="Run the startup bootstrap: rebuild on drift, seed when no admin exists")
    rebuild = sub.add_parser("rebuild", help="Drop, recreate and reseed every identity table")
    rebuild.add_argument("--yes", action="store_true", help="Confirm the destructive rebuild")
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    bootstrap = _bootstrap(get_settings())
    try:
        if args.command == "audit":
            return cmd_audit(bootstrap)
        if args.command == "bootstrap":
            return cmd_bootstrap(bootstrap)
        return cmd_rebuild(bootstrap, args.yes)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        bootstrap.engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
