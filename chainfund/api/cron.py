import structlog
from fastapi import APIRouter, Depends, HTTPException

from chainfund.api.deps import require_cron_secret
from chainfund.services.sweeps import JOBS

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/{job}")
async def run_job(job: str):
    """Run one housekeeping job now and return its counts"""
    if job not in JOBS:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job}")
    logger.info("Cron job triggered", job=job)
    counts = await JOBS[job]()
    return {"job": job, "success": True, "results": counts}
