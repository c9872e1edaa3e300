#!/usr/bin/env python3
"""Check the ledger schema against the Supabase project.

The Supabase Python client cannot execute raw SQL, so this script splits
the migration into statements, reports which ledger tables already exist,
and points the operator at the SQL editor for the rest.

Credentials come from the same settings as the API (SUPABASE_URL and
SUPABASE_SECRET_KEY, from the environment or .env).
"""

import sys
from pathlib import Path

from app.config import get_settings
from app.database import create_supabase_client
from app.ledger.supabase_store import (
    EARNINGS_TABLE,
    JOB_APPLICATIONS_TABLE,
    JOBS_TABLE,
    PAYMENT_ACCOUNTS_TABLE,
    PAYMENTS_TABLE,
    TASKS_TABLE,
)
from app.notifier import NOTIFICATIONS_TABLE

MIGRATION = Path(__file__).parent / "supabase" / "migrations" / "001_marketplace_ledger.sql"

LEDGER_TABLES = [
    JOBS_TABLE,
    TASKS_TABLE,
    JOB_APPLICATIONS_TABLE,
    PAYMENTS_TABLE,
    EARNINGS_TABLE,
    PAYMENT_ACCOUNTS_TABLE,
    NOTIFICATIONS_TABLE,
]


def split_statements(sql: str) -> list[str]:
    """Split a migration into statements, dropping comments and blank lines."""
    statements = []
    current = []
    for line in sql.split("\n"):
        line = line.strip()
        if line.startswith("--") or not line:
            continue
        current.append(line)
        if line.endswith(";"):
            statements.append(" ".join(current))
            current = []
    return statements


def main() -> int:
    settings = get_settings()
    statements = split_statements(MIGRATION.read_text())
    print(f"{MIGRATION.name}: {len(statements)} statements")

    client = create_supabase_client(settings)
    missing = []
    for table in LEDGER_TABLES:
        try:
            client.table(table).select("*").limit(1).execute()
            print(f"  ✓ {table}")
        except Exception as e:
            print(f"  ✗ {table}: {str(e)[:80]}")
            missing.append(table)

    if not missing:
        print("\nLedger schema is in place.")
        return 0

    print(f"\n{len(missing)} table(s) missing. Apply the migration in the Supabase SQL editor:")
    print(f"  {settings.supabase_url.rstrip('/')} -> SQL Editor -> paste {MIGRATION}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
