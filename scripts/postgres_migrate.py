import argparse
import os
import sys
from importlib.util import find_spec
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Apply forward-only PostgreSQL migrations for the quote lifecycle store."
    )
    parser.add_argument(
        "--dsn",
        default=os.getenv("QUOTE_POSTGRES_DSN", "").strip(),
        help="PostgreSQL DSN of the quote store (defaults to QUOTE_POSTGRES_DSN).",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only report pending migrations; exit 1 when any are pending.",
    )
    args = parser.parse_args(argv)

    if not args.dsn:
        raise RuntimeError("POSTGRES_MIGRATION_DSN_REQUIRED:quotes")
    if find_spec("psycopg") is None:
        raise RuntimeError("POSTGRES_MIGRATION_DRIVER_MISSING")
    import psycopg
    from psycopg.rows import dict_row

    from src.infrastructure.postgres_migrations import (
        QUOTES_NAMESPACE,
        apply_postgres_migrations,
        pending_postgres_migrations,
    )

    with psycopg.connect(args.dsn, row_factory=dict_row) as connection:
        if args.check:
            pending = pending_postgres_migrations(connection=connection)
            if pending:
                print(f"Pending migrations for namespace={QUOTES_NAMESPACE}: {', '.join(pending)}")
                return 1
            print(f"No pending migrations for namespace={QUOTES_NAMESPACE}")
            return 0
        applied = apply_postgres_migrations(connection=connection)
    print(
        f"Applied migrations for namespace={QUOTES_NAMESPACE}: "
        f"{', '.join(applied) if applied else 'none'}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
