"""rq job entry points."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from wtguard.transactions import run_command

log = logging.getLogger(__name__)


def run_transaction(command: str, payload: dict[str, Any], dry_run: bool = False) -> dict:
    """rq worker entry point: run one transaction to completion.

    Transaction failures are part of the returned result, so the rq job
    itself only fails on a crash.
    """
    from rq import get_current_job

    current_job = get_current_job()
    job_id = current_job.id if current_job else None
    log.info("Transaction job %s started: %s", job_id, command)

    result = asyncio.run(run_command(command, payload, dry_run))
    if result.success:
        log.info("Transaction job %s completed: %s", job_id, command)
    else:
        log.warning(
            "Transaction job %s failed: %s %s",
            job_id,
            command,
            result.error["code"] if result.error else "",
        )
    return result.to_dict()


def on_transaction_failure(job, _connection, _exc_type, exc_value, _traceback):
    """rq failure callback: the worker crashed before producing a result."""
    command = job.args[0] if job.args else "?"
    log.error("Transaction job %s (%s) crashed: %s", getattr(job, "id", None), command, exc_value)
