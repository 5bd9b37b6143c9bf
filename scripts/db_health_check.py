#!/usr/bin/env python
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from dutywatch.settings import get_settings

EXPECTED_HEAD = "0002_missed_log_expected_at"
REQUIRED_TABLES = ("users", "duty_sessions", "hourly_logs", "strikes", "notifications", "audit_logs")


def run() -> dict:
    engine = create_engine(get_settings().database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append({"name": name, "status": status, "details": details})

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema='public'
                    """
                )
            ).scalars()
        )

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        missing = [table for table in REQUIRED_TABLES if table not in tables]
        add("missing_tables", "fail" if missing else "ok", {"tables": missing})
        if missing:
            return report

        multiple_active_sessions = conn.execute(
            text(
                """
                select user_id, count(*)
                from duty_sessions
                where ended_at is null
                group by user_id
                having count(*) > 1
                """
            )
        ).fetchall()
        add(
            "multiple_active_duty_sessions",
            "fail" if multiple_active_sessions else "ok",
            {"rows": [list(row) for row in multiple_active_sessions]},
        )

        strike_count_drift = conn.execute(
            text(
                """
                select u.id, u.strike_count, count(s.id) as active_strikes
                from users u
                left join strikes s on s.user_id = u.id and s.is_active = true
                group by u.id, u.strike_count
                having u.strike_count <> count(s.id)
                limit 50
                """
            )
        ).fetchall()
        add(
            "strike_count_drift",
            "warn" if strike_count_drift else "ok",
            {"rows": [list(row) for row in strike_count_drift]},
        )

        unresolved_inactive = conn.execute(
            text(
                """
                select id
                from strikes
                where is_active = false and resolved_at is null
                limit 20
                """
            )
        ).fetchall()
        add(
            "inactive_strike_without_resolution",
            "fail" if unresolved_inactive else "ok",
            {"sample_ids": [row[0] for row in unresolved_inactive]},
        )

        lapsed_suspensions = conn.execute(
            text(
                """
                select count(*)
                from users
                where suspended_until is not null and suspended_until <= now()
                """
            )
        ).scalar_one()
        add(
            "lapsed_suspensions_pending_cleanup",
            "warn" if lapsed_suspensions else "ok",
            {"count": int(lapsed_suspensions)},
        )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2, default=str))
