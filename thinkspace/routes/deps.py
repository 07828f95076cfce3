"""Dependencies that hand route handlers the objects built at startup."""
from fastapi import HTTPException, Request

from thinkspace.pipeline.broadcaster import ConnectionRegistry
from thinkspace.worker import Pipeline


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return pipeline
