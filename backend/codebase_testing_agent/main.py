import logging
from contextlib import asynccontextmanager

from arq import create_pool
from fastapi import FastAPI

from codebase_testing_agent.api.v1 import agents as agents_api
from codebase_testing_agent.api.v1 import logs as logs_api
from codebase_testing_agent.api.v1 import projects as projects_api
from codebase_testing_agent.api.v1 import testcases as testcases_api
from codebase_testing_agent.logging_utils import configure_logging
from codebase_testing_agent.worker import WorkerSettings

# Configure log persistence for uvicorn/FastAPI early in the import cycle.
configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # On startup, create the Redis connection pool used for background stages
    app.state.arq_pool = None
    logger.debug("Creating Redis connection pool for ARQ worker")
    try:
        app.state.arq_pool = await create_pool(WorkerSettings.redis_settings)
        logger.info("Redis connection pool created for ARQ worker")
    except Exception:  # noqa: BLE001
        logger.exception("Redis unavailable; stages can only run inline")

    yield

    # On shutdown, close the pool
    if app.state.arq_pool is not None:
        logger.debug("Shutting down Redis connection pool for ARQ worker")
        await app.state.arq_pool.close()
        logger.info("Redis connection pool closed")


app = FastAPI(title="Codebase Testing Agent API", version="0.1.0", lifespan=lifespan)

# Include the projects router (stage triggers and read models)
app.include_router(projects_api.router, prefix="/api/v1/projects", tags=["Projects"])

# Include test case router (outcomes, estimates)
app.include_router(
    testcases_api.router, prefix="/api/v1/testcases", tags=["Test Cases"]
)

# Include the agents router
app.include_router(agents_api.router, prefix="/api/v1/agents", tags=["Agents"])

# Include the log export router
app.include_router(logs_api.router, prefix="/api/v1/logs", tags=["Logs"])


@app.get("/")
def read_root():
    logger.debug("Root endpoint called")
    return {"message": "Codebase Testing Agent API is running."}
