import os
import time
import logging
from contextlib import asynccontextmanager

import redis
from dotenv import load_dotenv
from fastapi import FastAPI

from . import metrics
from . import queue as task_queue
from .auth_middleware import WorkerAuthMiddleware
from .engine import WorkflowEngine
from .routes import internal_router, project_router, webhook_router
from .services import build_services
from .workflows import build_functions

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
WORKER_CONCURRENCY = int(os.environ.get("WORKER_CONCURRENCY", "4"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())

    # Tests install their own engine and services
    owns_engine = not hasattr(app.state, "engine")
    if owns_engine:
        r = redis.from_url(REDIS_URL, decode_responses=True)
        r.ping()
        logger.info(f"Redis connected: {REDIS_URL[:30]}...")
        app.state.redis = r
        app.state.services = build_services()
        app.state.engine = WorkflowEngine(r, build_functions(), deps=app.state.services)
        app.state.engine.start(workers=WORKER_CONCURRENCY)
    yield
    logger.info("Worker shutting down...")
    if owns_engine:
        app.state.engine.stop()


app = FastAPI(lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
app.include_router(project_router)
app.include_router(internal_router)
app.include_router(webhook_router)


@app.get("/health")
def health_check():
    """Verify worker is running and env vars are configured."""
    return {
        "status": "ok",
        "engine_running": hasattr(app.state, "engine"),
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
        "gemini_api_key_set": bool(os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")),
        "eleven_api_key_set": bool(os.environ.get("ELEVEN_API_KEY")),
        "did_api_key_set": bool(os.environ.get("DID_API_KEY")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        r = engine.redis
        metrics.set_gauge("queue_depth", task_queue.get_queue_length(r))
        metrics.set_gauge("tasks_in_flight", task_queue.get_processing_count(r))
        metrics.set_gauge("tasks_scheduled", task_queue.get_scheduled_count(r))
        metrics.set_gauge("dead_letter_count", len(task_queue.get_dead_letter_tasks(r)))
    return metrics.get_snapshot()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("avatar_studio.main:app", host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
