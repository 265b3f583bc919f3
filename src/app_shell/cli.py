import argparse
import logging
import sys
from datetime import timedelta
from pathlib import Path
from uuid import UUID

from src.adapters.sqlite.migrator import SQLiteMigrator
from src.adapters.sqlite_db import (
    SQLiteAttributionLookup,
    SQLiteAuditSink,
    SQLiteEventLogRepo,
    SQLiteMembershipRepo,
    SQLitePostAnalyticsRepo,
)
from src.api.auth_utils import create_access_token
from src.api.deps import Settings
from src.app_shell.config import validate_ops_rules
from src.components.analytics import AnalyticsError, RebuildInput, run_rebuild
from src.rules.loader import load_rules
from src.rules.models import Rules

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cli")


def get_rules(settings: Settings) -> Rules:
    if not Path(settings.rules_path).exists():
        logger.error("Rules file %s not found.", settings.rules_path)
        sys.exit(1)
    return load_rules(Path(settings.rules_path))


def handle_migrate(settings: Settings, rules: Rules) -> None:
    validate_ops_rules(rules, settings.data_dir)
    applied = SQLiteMigrator(settings.db_path).run_migrations()
    print(f"Applied {len(applied)} migration(s) to {settings.db_path}.")


def handle_grant(settings: Settings, rules: Rules, args: argparse.Namespace) -> None:
    if args.role not in rules.rbac.roles:
        logger.error("Unknown role '%s' (expected one of %s)", args.role, rules.rbac.roles)
        sys.exit(1)

    membership = SQLiteMembershipRepo(settings.db_path)
    membership.ensure_tenant(args.tenant_id, args.tenant_name or "")
    membership.add(args.tenant_id, args.user_id, args.role)
    print(f"Granted '{args.role}' on tenant {args.tenant_id} to {args.user_id}.")


def handle_rebuild(settings: Settings, rules: Rules, args: argparse.Namespace) -> None:
    try:
        out = run_rebuild(
            RebuildInput(tenant_id=args.tenant_id),
            caller_id=args.as_user,
            event_log=SQLiteEventLogRepo(settings.db_path),
            store=SQLitePostAnalyticsRepo(settings.db_path),
            membership=SQLiteMembershipRepo(settings.db_path),
            lookup=SQLiteAttributionLookup(settings.db_path),
            audit=SQLiteAuditSink(settings.db_path),
            rules=rules.analytics,
            allowed_roles=frozenset(rules.rbac.rebuild_roles),
        )
    except AnalyticsError as e:
        logger.error("Rebuild failed: %s", e)
        sys.exit(1)

    print(
        f"Rebuilt {out.rows_written} rows from {out.events_replayed} events "
        f"({out.events_skipped} unattributed)."
    )


def handle_token(args: argparse.Namespace) -> None:
    token = create_access_token(
        {"sub": str(args.user_id)}, expires_delta=timedelta(minutes=args.minutes)
    )
    print(token)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Post Analytics Engine CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # migrate
    subparsers.add_parser("migrate", help="Apply pending database migrations")

    # grant
    grant_parser = subparsers.add_parser("grant", help="Add a user to a tenant")
    grant_parser.add_argument("tenant_id", type=UUID)
    grant_parser.add_argument("user_id", type=UUID)
    grant_parser.add_argument("--role", default="member", help="owner, admin, member, viewer")
    grant_parser.add_argument("--tenant-name", help="Name used if the tenant is new")

    # rebuild
    rebuild_parser = subparsers.add_parser(
        "rebuild", help="Recompute a tenant's aggregates from its event log"
    )
    rebuild_parser.add_argument("tenant_id", type=UUID)
    rebuild_parser.add_argument(
        "--as-user", type=UUID, required=True, help="Owner/admin performing the rebuild"
    )

    # token
    token_parser = subparsers.add_parser("token", help="Mint a dev bearer token")
    token_parser.add_argument("user_id", type=UUID)
    token_parser.add_argument("--minutes", type=int, default=60)

    args = parser.parse_args(argv)

    if args.command == "token":
        handle_token(args)
        return

    settings = Settings()
    rules = get_rules(settings)

    if args.command == "migrate":
        handle_migrate(settings, rules)
    elif args.command == "grant":
        handle_grant(settings, rules, args)
    elif args.command == "rebuild":
        handle_rebuild(settings, rules, args)


if __name__ == "__main__":
    main()
