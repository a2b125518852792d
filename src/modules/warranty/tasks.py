"""Celery tasks for warranty lifecycle automation."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from celery_app import celery
from src.modules.warranty.constants import SWEEP_TASK_NAME

logger = logging.getLogger(__name__)


async def _reconcile_warranties_async() -> dict:
    """Expire elapsed warranties and repair drifted conversations."""
    from src.modules.warranty.sweep import ReconciliationSweep

    report = await ReconciliationSweep().run(datetime.now(UTC))
    return report.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Celery task wrappers
# ---------------------------------------------------------------------------


@celery.task(name=SWEEP_TASK_NAME)
def reconcile_warranties():
    """Periodic reconciliation sweep over warranty-tracked appointments."""
    stats = asyncio.run(_reconcile_warranties_async())
    if stats["skipped"]:
        logger.info("reconcile_warranties skipped: previous run still in flight")
    else:
        logger.info(
            "reconcile_warranties complete: examined=%d expired=%d repaired=%d defects=%d errors=%d",
            stats["examined"], stats["expired"], stats["conversations_repaired"],
            len(stats["integrity_defects"]), len(stats["errors"]),
        )
    return stats
