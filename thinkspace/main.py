import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from thinkspace.config import get_settings
from thinkspace.database import init_db
from thinkspace.middleware.correlation import CorrelationIdFilter, CorrelationMiddleware
from thinkspace.pipeline.broadcaster import ConnectionRegistry
from thinkspace.pipeline.relay import run_event_relay
from thinkspace.routes import ai, conversations, jobs
from thinkspace.services.gateway import get_gateway
from thinkspace.services.redis_client import close_redis, init_redis, is_redis_healthy
from thinkspace.utils.logger import logger
from thinkspace.utils.metrics import get_snapshot, record_queue_depth, set_gauge
from thinkspace.worker import WorkerPool, build_pipeline

settings = get_settings()

for _handler in logging.getLogger("thinkspace").handlers:
    _handler.addFilter(CorrelationIdFilter())

limiter = conversations.limiter

app = FastAPI(title=settings.app_name, version=settings.app_version)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Live subscriber connections of this process
app.state.registry = ConnectionRegistry()

# CORS - Explicit origins for security
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-User-ID", "X-Correlation-ID"],
)
app.add_middleware(CorrelationMiddleware)


# Startup: database, pipeline, worker pool, event relay
@app.on_event("startup")
async def startup_event():
    logger.info("Starting Thinkspace backend...")
    await init_db()

    registry: ConnectionRegistry = app.state.registry
    pipeline = build_pipeline(registry)
    await pipeline.conversations.seed_techniques()
    app.state.pipeline = pipeline

    app.state.worker_pool = None
    if settings.run_worker_in_process:
        app.state.worker_pool = WorkerPool.from_settings(pipeline.queue, pipeline.processor)
        app.state.worker_pool.start()

    app.state.relay_task = None
    redis = await init_redis()
    if redis is not None:
        # Events published by standalone workers
        app.state.relay_task = asyncio.create_task(run_event_relay(redis, registry), name="event-relay")

    logger.info(f"Backend ready at http://{settings.backend_host}:{settings.backend_port}")


@app.on_event("shutdown")
async def shutdown_event():
    if getattr(app.state, "worker_pool", None) is not None:
        await app.state.worker_pool.stop()

    relay_task = getattr(app.state, "relay_task", None)
    if relay_task is not None:
        relay_task.cancel()
        await asyncio.gather(relay_task, return_exceptions=True)

    await app.state.registry.close()
    await close_redis()
    logger.info("Thinkspace backend stopped")


# Health check endpoint
@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "redis": await is_redis_healthy(),
        "circuits": get_gateway().get_circuit_states(),
        "connections": app.state.registry.get_connection_count(),
    }


@app.get("/metrics")
async def metrics():
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        record_queue_depth(await pipeline.queue.get_metrics())
    set_gauge("connections", app.state.registry.get_connection_count())
    return get_snapshot()


# Register routes
app.include_router(conversations.router, prefix="/api/conversations", tags=["Conversations"])
app.include_router(jobs.router, prefix="/api", tags=["Queue"])
app.include_router(ai.router, prefix="/api/ai", tags=["AI"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "thinkspace.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug,
    )
