"""
Queue inspection API Routes

Job status lookup and live queue counts.
"""
from fastapi import APIRouter, Depends, HTTPException

from thinkspace.pipeline.broadcaster import ConnectionRegistry
from thinkspace.pipeline.errors import JobNotFound
from thinkspace.routes.deps import get_pipeline, get_registry
from thinkspace.worker import Pipeline

router = APIRouter()


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    try:
        status = await pipeline.queue.get_status(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return {"success": True, "data": status}


@router.get("/queue/metrics")
async def get_queue_metrics(
    pipeline: Pipeline = Depends(get_pipeline),
    registry: ConnectionRegistry = Depends(get_registry),
):
    counts = await pipeline.queue.get_metrics()
    return {
        "success": True,
        "data": {**counts, "connections": registry.get_connection_count()},
    }
