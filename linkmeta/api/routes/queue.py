from fastapi import APIRouter, Depends, HTTPException, status

from linkmeta.schemas.jobs import QueueStatsOut
from linkmeta.services.job_queue import JobQueue, QueueError, get_job_queue

router = APIRouter()


@router.get("/stats", response_model=QueueStatsOut)
async def queue_stats(queue: JobQueue = Depends(get_job_queue)) -> QueueStatsOut:
    try:
        return await queue.stats()
    except QueueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="queue unavailable") from exc
