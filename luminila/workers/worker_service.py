#!/usr/bin/env python3
"""
Long-running worker service.

Runs scheduled background jobs for all companies (or a specified subset)
using a DB-backed schedule (`background_job_schedules`): channel sync,
stock pushes to the sales channels and loyalty point expiry.

    python -m luminila.workers.worker_service --once
"""

import argparse
import json
import os
import sys
import time
import traceback
from typing import Any

import psycopg
from psycopg.rows import dict_row

from luminila.app.db import set_company_context
from luminila.app.jsonlog import json_log
from luminila.app.loyalty import expire_points
from luminila.workers.channel_sync import run_channel_full_sync, run_channel_push

DB_URL_DEFAULT = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or "postgresql://localhost/luminila"

DEFAULT_JOB_SPECS: dict[str, dict[str, Any]] = {
    # Pull catalog + orders from every configured channel, then push queued stock.
    "CHANNEL_FULL_SYNC": {"interval_seconds": 900, "options_json": {}},
    # Stock changes reach the storefronts within a minute.
    "CHANNEL_PUSH_INVENTORY": {"interval_seconds": 60, "options_json": {"limit": 100}},
    "LOYALTY_EXPIRY": {"interval_seconds": 86400, "options_json": {}},
}

WORKER_NAME = "luminila-worker"


def list_company_ids(db_url: str):
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM companies ORDER BY created_at ASC")
            return [str(r["id"]) for r in cur.fetchall()]


def record_worker_heartbeat(db_url: str, company_id: str, details: dict, worker_name=None):
    # Per-company heartbeat so the admin UI can show "worker alive" without log access.
    name = str(worker_name or WORKER_NAME).strip() or WORKER_NAME
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            set_company_context(conn, company_id)
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO worker_heartbeats (company_id, worker_name, last_seen_at, details)
                    VALUES (%s, %s, now(), %s::jsonb)
                    ON CONFLICT (company_id, worker_name)
                    DO UPDATE SET last_seen_at = now(), details = EXCLUDED.details
                    """,
                    (company_id, name, json.dumps(details or {}, default=str)),
                )


def ensure_default_job_schedules(conn, company_id: str):
    set_company_context(conn, company_id)
    with conn.cursor() as cur:
        for job_code, spec in DEFAULT_JOB_SPECS.items():
            cur.execute(
                """
                INSERT INTO background_job_schedules
                  (company_id, job_code, enabled, interval_seconds, options_json, next_run_at)
                VALUES
                  (%s, %s, true, %s, %s::jsonb, now())
                ON CONFLICT (company_id, job_code) DO NOTHING
                """,
                (company_id, job_code, spec["interval_seconds"], json.dumps(spec["options_json"])),
            )


def claim_due_job(conn, company_id: str):
    set_company_context(conn, company_id)
    with conn.cursor() as cur:
        cur.execute(
            """
            WITH due AS (
              SELECT job_code
              FROM background_job_schedules
              WHERE company_id = %s
                AND enabled = true
                AND (next_run_at IS NULL OR next_run_at <= now())
              ORDER BY next_run_at NULLS FIRST, job_code
              FOR UPDATE SKIP LOCKED
              LIMIT 1
            )
            UPDATE background_job_schedules s
            SET last_run_at = now(),
                next_run_at = now() + interval '1 second' * s.interval_seconds,
                updated_at = now()
            FROM due
            WHERE s.company_id = %s AND s.job_code = due.job_code
            RETURNING s.job_code, s.options_json
            """,
            (company_id, company_id),
        )
        return cur.fetchone()


def record_job_run_start(conn, company_id: str, job_code: str, details: dict):
    set_company_context(conn, company_id)
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO background_job_runs
              (id, company_id, job_code, status, started_at, details_json)
            VALUES
              (gen_random_uuid(), %s, %s, 'running', now(), %s::jsonb)
            RETURNING id
            """,
            (company_id, job_code, json.dumps(details, default=str)),
        )
        return cur.fetchone()["id"]


def record_job_run_finish(conn, company_id: str, run_id: str, status: str, error_message: str | None = None, details: dict | None = None):
    set_company_context(conn, company_id)
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE background_job_runs
            SET status = %s,
                finished_at = now(),
                error_message = %s,
                details_json = details_json || %s::jsonb
            WHERE company_id = %s AND id = %s
            """,
            (status, error_message, json.dumps(details or {}, default=str), company_id, run_id),
        )


def run_loyalty_expiry(db_url: str, company_id: str) -> dict:
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            set_company_context(conn, company_id)
            with conn.cursor() as cur:
                return {"expired_points": expire_points(cur, company_id)}


def execute_job(db_url: str, company_id: str, job_code: str, options: dict) -> dict:
    if job_code == "CHANNEL_FULL_SYNC":
        return run_channel_full_sync(db_url, company_id)
    if job_code == "CHANNEL_PUSH_INVENTORY":
        limit = int(options.get("limit") or 100)
        return run_channel_push(db_url, company_id, limit=limit)
    if job_code == "LOYALTY_EXPIRY":
        return run_loyalty_expiry(db_url, company_id)
    raise ValueError(f"unknown job_code: {job_code}")


def run_status(summary: dict) -> str:
    # A sync job that finished with some failed channel runs is not a clean success.
    return "partial" if (summary or {}).get("failed") else "success"


def _run_job(conn, db_url: str, company_id: str, job_code: str, options: dict, run_id) -> None:
    json_log("info", "worker.job.started", company_id=company_id, job_code=job_code)
    started = time.time()
    try:
        summary = execute_job(db_url, company_id, job_code, options)
    except Exception as ex:
        with conn.transaction():
            record_job_run_finish(conn, company_id, run_id, "failed", error_message=str(ex))
        json_log("error", "worker.job.failed", company_id=company_id, job_code=job_code, error=str(ex))
        traceback.print_exc(file=sys.stderr)
        return
    status = run_status(summary)
    with conn.transaction():
        record_job_run_finish(conn, company_id, run_id, status, details={"summary": summary})
    json_log(
        "info" if status == "success" else "warning",
        "worker.job.finished",
        company_id=company_id,
        job_code=job_code,
        status=status,
        duration_ms=int((time.time() - started) * 1000),
        summary=summary,
    )


def run_due_jobs(db_url: str, company_id: str, max_jobs: int = 3) -> int:
    ran = 0
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            ensure_default_job_schedules(conn, company_id)

        for _ in range(max_jobs):
            with conn.transaction():
                claimed = claim_due_job(conn, company_id)
                if not claimed:
                    break
                job_code = claimed["job_code"]
                options = claimed.get("options_json") or {}
                if isinstance(options, str):
                    options = json.loads(options)
                run_id = record_job_run_start(conn, company_id, job_code, {"options": options})
            _run_job(conn, db_url, company_id, job_code, options, run_id)
            ran += 1
    return ran


def run_job_now(db_url: str, company_id: str, job_code: str) -> None:
    """Run one job immediately, outside its schedule (`--run JOB_CODE`)."""
    if job_code not in DEFAULT_JOB_SPECS:
        raise ValueError(f"unknown job_code: {job_code}")
    options = DEFAULT_JOB_SPECS[job_code]["options_json"]
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            run_id = record_job_run_start(conn, company_id, job_code, {"options": options, "manual": True})
        _run_job(conn, db_url, company_id, job_code, options, run_id)


def main():
    parser = argparse.ArgumentParser(description="Luminila background worker")
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--sleep", type=float, default=5.0)
    parser.add_argument("--max-jobs", type=int, default=3)
    parser.add_argument("--companies", nargs="*", help="Optional list of company UUIDs to process")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--run", choices=sorted(DEFAULT_JOB_SPECS), help="Run one job for each company now and exit")
    args = parser.parse_args()

    if args.run:
        for cid in args.companies or list_company_ids(args.db):
            run_job_now(args.db, cid, args.run)
        return

    while True:
        company_ids = args.companies or list_company_ids(args.db)
        did_work = False
        for cid in company_ids:
            jobs_ran = 0
            jobs_error = None
            try:
                jobs_ran = run_due_jobs(args.db, cid, max_jobs=args.max_jobs)
                did_work = did_work or bool(jobs_ran)
            except Exception as ex:
                # One store's scheduling problem must not stop the others.
                json_log("error", "worker.jobs.error", company_id=cid, error=str(ex))
                traceback.print_exc(file=sys.stderr)
                jobs_error = str(ex)

            try:
                record_worker_heartbeat(args.db, cid, {"jobs_ran": jobs_ran, "jobs_error": jobs_error})
            except Exception as ex:
                json_log("error", "worker.heartbeat.error", company_id=cid, error=str(ex))

        if args.once:
            break

        time.sleep(0 if did_work else args.sleep)


if __name__ == "__main__":
    main()
