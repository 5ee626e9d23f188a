import logging

from arq.connections import RedisSettings

from codebase_testing_agent.logging_utils import configure_logging
from codebase_testing_agent.services.errors import OrchestratorError
from codebase_testing_agent.services.orchestrator import get_orchestrator
from codebase_testing_agent.utils.config import settings

logger = logging.getLogger(__name__)


async def run_stage_task(ctx, project_id: int, stage: str, options: dict = None):
    """
    Background execution of a workflow stage queued by the API.

    The outcome is persisted in the project's workflow state (flags and last
    stage report); callers poll GET /projects/{id}/workflow.
    """
    logger.info(
        "Starting queued stage %s for project %s (job=%s)",
        stage,
        project_id,
        ctx.get("job_id") if ctx else None,
    )
    orchestrator = get_orchestrator()
    try:
        result = await orchestrator.run_stage(project_id, stage, options or {})
    except OrchestratorError as exc:
        # The failure is already recorded in the stage report.
        logger.warning(
            "Queued stage %s for project %s ended: %s", stage, project_id, exc
        )
        return {
            "project_id": project_id,
            "stage": stage,
            "status": "error",
            "error": str(exc),
        }
    except Exception:
        logger.exception("Queued stage %s for project %s crashed", stage, project_id)
        raise

    logger.info(
        "Queued stage %s for project %s finished: %s",
        stage,
        project_id,
        result.message,
    )
    return result.model_dump(mode="json")


async def startup(ctx):
    configure_logging()
    logger.info("Worker started")


# ARQ Worker Settings
class WorkerSettings:
    functions = [run_stage_task]
    on_startup = startup
    redis_settings = RedisSettings(host=settings.redis.host, port=settings.redis.port)
