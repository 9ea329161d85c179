"""rq-based transaction queue.

``wtguard exec --enqueue`` pushes a transaction here instead of running it
inline. Each enqueue spawns its own burst worker, so every transaction
runs in a fresh short-lived process with its own record-store connection.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import uuid
from collections.abc import Mapping
from typing import Any

from redis import ConnectionPool, Redis
from rq import Callback, Queue
from rq.job import Job

from wtguard.paths import WTGUARD_CONFIG_DIR

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("WTGUARD_REDIS_URL", "redis://localhost:6379/0")

QUEUE_TRANSACTIONS = "wtguard:transactions"

FAILURE_TTL = 7 * 24 * 3600  # auto-expire failed jobs after 7 days

LOG_DIR = WTGUARD_CONFIG_DIR / "logs"


_pool = ConnectionPool.from_url(REDIS_URL)


def get_redis() -> Redis:
    return Redis(connection_pool=_pool)


def get_queue(name: str = QUEUE_TRANSACTIONS) -> Queue:
    # No rq-level timeout: clone and fetch run to completion. Burst workers
    # exit as soon as the queue drains.
    return Queue(name, connection=get_redis(), default_timeout=-1)


def enqueue_transaction(
    command: str, payload: Mapping[str, Any], *, dry_run: bool = False
) -> Job:
    """Enqueue one transaction and spawn a worker for it.

    The job result is the transaction's ``ExecutorResult.to_dict()``.
    """
    from wtguard.jobs import run_transaction

    job_id = f"txn-{uuid.uuid4().hex[:12]}"
    q = get_queue(QUEUE_TRANSACTIONS)
    job = q.enqueue(
        run_transaction,
        command,
        dict(payload),
        dry_run,
        job_id=job_id,
        on_failure=Callback("wtguard.jobs.on_transaction_failure"),
        failure_ttl=FAILURE_TTL,
        description=f"{command} {job_id}",
    )
    _spawn_worker(QUEUE_TRANSACTIONS, job_id=job_id)
    return job


def _spawn_worker(queue_name: str = QUEUE_TRANSACTIONS, *, job_id: str | None = None) -> None:
    """Spawn a burst rq worker for *queue_name*.

    With *job_id*, worker output goes to ``~/.config/wtguard/logs/<job_id>.log``.
    """
    cmd = [
        sys.executable,
        "-m",
        "rq.cli",
        "worker",
        "--burst",
        "--url",
        REDIS_URL,
        queue_name,
    ]

    log_fh = None
    try:
        if job_id:
            LOG_DIR.mkdir(parents=True, exist_ok=True, mode=0o700)
            log_fh = open(LOG_DIR / f"{job_id}.log", "w")  # noqa: SIM115
            stdout_target = log_fh
            stderr_target = subprocess.STDOUT
        else:
            stdout_target = subprocess.DEVNULL
            stderr_target = subprocess.DEVNULL

        proc = subprocess.Popen(
            cmd,
            stdout=stdout_target,
            stderr=stderr_target,
            start_new_session=True,
        )
    finally:
        # parent closes its copy; child keeps writing
        if log_fh is not None:
            log_fh.close()

    log.info("Spawned worker pid=%d for %s", proc.pid, queue_name)


def get_job(job_id: str) -> Job | None:
    """Fetch a job by ID."""
    try:
        return Job.fetch(job_id, connection=get_redis())
    except Exception:
        return None
