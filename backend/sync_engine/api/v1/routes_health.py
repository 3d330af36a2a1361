# 健康检查（含队列库探活）

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError

from sync_engine.api.v1.deps import get_job_queue
from sync_engine.services.job_queue import JobQueue

router = APIRouter(tags=["health"])


@router.get("/health")
def health(queue: JobQueue = Depends(get_job_queue)):
    try:
        queue.ping()
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"queue store unreachable: {type(exc).__name__}") from exc
    return {"status": "ok"}
