import logging
from collections import deque

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import FileResponse, PlainTextResponse

from codebase_testing_agent.logging_utils import LOG_FILE_PATH

router = APIRouter()
logger = logging.getLogger(__name__)


def _require_log_file():
    if not LOG_FILE_PATH.exists():
        logger.debug("Log file not found at %s", LOG_FILE_PATH)
        raise HTTPException(status_code=404, detail="Log file not found")


@router.get("/export", response_class=FileResponse)
async def export_logs():
    """
    Download the orchestration log file of this API process.
    """
    _require_log_file()
    logger.debug("Streaming log file %s", LOG_FILE_PATH)
    return FileResponse(
        path=LOG_FILE_PATH,
        media_type="text/plain",
        filename=LOG_FILE_PATH.name,
    )


@router.get("/tail", response_class=PlainTextResponse)
async def tail_logs(lines: int = Query(default=200, ge=1, le=5000)):
    """Last ``lines`` lines of the log file, for a quick look at a running stage."""
    _require_log_file()
    with open(LOG_FILE_PATH, "r", encoding="utf-8", errors="replace") as f:
        last = deque(f, maxlen=lines)
    return PlainTextResponse("".join(last))
