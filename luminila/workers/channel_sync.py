"""
Channel sync jobs for the worker: full sync (pull catalog and orders, then
push stock) and the more frequent stock-only push.
"""
import psycopg
from psycopg.rows import dict_row

from luminila.app import sync_engine
from luminila.app.jsonlog import json_log


def _connect(db_url: str):
    # Autocommit so each sync item's transaction commits on its own.
    return psycopg.connect(db_url, autocommit=True, row_factory=dict_row)


def _summarize(results: list) -> dict:
    return {
        "runs": len(results),
        "failed": sum(1 for r in results if r["status"] == "failed"),
        "created": sum(r["created"] for r in results),
        "updated": sum(r["updated"] for r in results),
        "conflicts": sum(r["conflicts"] for r in results),
    }


def run_channel_full_sync(db_url: str, company_id: str) -> dict:
    adapters = sync_engine.available_adapters()
    if not adapters:
        json_log("info", "worker.channel_sync.skipped", company_id=company_id, reason="no channel configured")
        return _summarize([])
    with _connect(db_url) as conn:
        results = sync_engine.full_sync(conn, company_id, adapters)
    return _summarize(results)


def run_channel_push(db_url: str, company_id: str, limit: int = sync_engine.PUSH_BATCH_SIZE) -> dict:
    adapters = sync_engine.available_adapters()
    if not adapters:
        return _summarize([])
    with _connect(db_url) as conn:
        results = sync_engine.push_inventory(conn, company_id, adapters, limit=limit)
    return _summarize(results)
