# backend/consultcore/routes/v1/internal.py
"""
Scheduler-facing endpoints.

The Celery beat task is the normal trigger; this route lets an external
cron run a tick on demand.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends

from ...api.dependencies import get_lifecycle_sweeper, require_cron_secret
from ...schemas.lifecycle import SweepReportResponse
from ...services.lifecycle_sweeper import LifecycleSweeper

logger = logging.getLogger(__name__)

router = APIRouter(tags=["internal"], include_in_schema=False)


@router.post(
    "/lifecycle/sweep",
    response_model=SweepReportResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def run_lifecycle_sweep(
    sweeper: LifecycleSweeper = Depends(get_lifecycle_sweeper),
) -> SweepReportResponse:
    report = await asyncio.to_thread(sweeper.run)
    return SweepReportResponse(**report.to_dict())
