#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bizops.db.rls import PostgresRlsManager
from bizops.db.schema import initialize_schema


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the bizops PostgreSQL schema (idempotent)")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument("--apply-rls", action="store_true", help="also apply tenant RLS policies")
    args = parser.parse_args()

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    tables = initialize_schema(dsn)
    report: dict[str, object] = {"tables": tables, "count": len(tables)}
    if args.apply_rls:
        report["rls_tables"] = PostgresRlsManager(dsn).apply()
    print(json.dumps(report, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
