#!/usr/bin/env python3
"""Database overview and integrity checks for the campus resources store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Tools",
    "Loans",
    "Rooms",
    "Reservations",
    "RoomDaySlots",
    "Reports",
    "AuditLogs",
    "NotificationQueue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Tools": ["ToolID", "ToolName", "Category", "StockTotal", "StockAvailable", "Version"],
    "Loans": ["LoanID", "UserID", "ToolID", "Quantity", "State", "RequestedAt", "FulfilledAt", "DueAt", "ReturnedAt", "Version"],
    "Reservations": ["ReservationID", "RoomID", "UserID", "ReservationDate", "StartTime", "EndTime", "State", "ApprovedAt", "Version"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = _table_exists(engine, table)
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if not _table_exists(engine, table):
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if _table_exists(engine, "Tools"):
        checks.append(
            _count_check(
                engine,
                "tools:stock_out_of_bounds",
                """
                SELECT COUNT(*)
                FROM "Tools"
                WHERE "StockTotal" < 0 OR "StockAvailable" < 0 OR "StockAvailable" > "StockTotal"
                """,
            )
        )

    if _table_exists(engine, "Tools") and _table_exists(engine, "Loans"):
        # Units held by fulfilled/overdue loans must match what is missing from the shelf.
        checks.append(
            _count_check(
                engine,
                "loans:held_quantity_mismatch",
                """
                SELECT COUNT(*)
                FROM "Tools" t
                LEFT JOIN (
                    SELECT "ToolID", SUM("Quantity") AS held
                    FROM "Loans"
                    WHERE "State" IN ('fulfilled', 'overdue')
                    GROUP BY "ToolID"
                ) l ON l."ToolID" = t."ToolID"
                WHERE COALESCE(l.held, 0) > t."StockTotal" - t."StockAvailable"
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "loans:orphan_toolid",
                """
                SELECT COUNT(*)
                FROM "Loans" l
                LEFT JOIN "Tools" t ON t."ToolID" = l."ToolID"
                WHERE t."ToolID" IS NULL
                """,
            )
        )

    if _table_exists(engine, "Reservations"):
        checks.append(
            _count_check(
                engine,
                "reservations:active_overlap",
                """
                SELECT COUNT(*)
                FROM "Reservations" a
                JOIN "Reservations" b
                  ON a."RoomID" = b."RoomID"
                 AND a."ReservationDate" = b."ReservationDate"
                 AND a."ReservationID" < b."ReservationID"
                 AND a."StartTime" < b."EndTime"
                 AND a."EndTime" > b."StartTime"
                WHERE a."State" IN ('pending', 'approved')
                  AND b."State" IN ('pending', 'approved')
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "reservations:empty_interval",
                'SELECT COUNT(*) FROM "Reservations" WHERE "StartTime" >= "EndTime"',
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f'SELECT COUNT(*) FROM "{table}"')
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if _table_exists(engine, "AuditLogs"):
        rows = _rows(
            engine,
            """
            SELECT "AuditID", "EntityType", "EntityID", "Action", "UserID", "CreatedAt"
            FROM "AuditLogs"
            ORDER BY "AuditID" DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Campus resources DB overview")
    parser.add_argument("--db-url", default=os.environ.get("CAMPUS_RESOURCES_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("CAMPUS_RESOURCES_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
