"""Flip PENDING confirmation sessions whose link window has passed to EXPIRED.

Every read path re-checks expiry on its own; this sweep only keeps the
table tidy for reporting.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Optional

from contract_confirm.domain.confirmation import container
from contract_confirm.domain.confirmation.repository import ConfirmationStore
from contract_confirm.domain.confirmation.service import utc_now
from contract_confirm.maintenance.scheduler import MaintenanceScheduler
from contract_confirm.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

JOB_NAME = "confirmation_expiry_sweep"


async def expire_stale_sessions(store: ConfirmationStore, *, now: Optional[datetime] = None) -> int:
    async with store.begin() as tx:
        return await tx.sessions.expire_stale(now or utc_now())


async def run_once(*, now: Optional[datetime] = None) -> int:
    start = time.perf_counter()
    try:
        expired = await expire_stale_sessions(container.get_store(), now=now)
    except Exception:
        obs_metrics.record_job_run(JOB_NAME, result="error")
        logger.exception("confirmation_sweep_failed")
        raise
    obs_metrics.record_job_run(JOB_NAME, result="ok", duration_seconds=time.perf_counter() - start)
    obs_metrics.inc_sweep_expired(expired)
    if expired:
        logger.info("confirmation_sweep_expired", extra={"count": expired})
    return expired


def install(scheduler: MaintenanceScheduler, *, minutes: int) -> None:
    scheduler.schedule_every(JOB_NAME, run_once, minutes=minutes)
