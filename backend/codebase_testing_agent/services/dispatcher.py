import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from codebase_testing_agent.services.agents.backend import AgentBackend
from codebase_testing_agent.services.errors import (
    AgentTimeout,
    AgentUnavailable,
    TransientError,
    ValidationError,
)
from codebase_testing_agent.services.ingestion import AgentPayload, parse_payload
from codebase_testing_agent.services.registry import AgentRegistry
from codebase_testing_agent.storage.models import AgentRole
from codebase_testing_agent.utils.config import DispatchSettings

logger = logging.getLogger(__name__)


class SubTaskStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SubTask:
    """One agent invocation within a stage."""

    key: str
    role: AgentRole
    payload_kind: str
    input: Mapping[str, Any]
    test_case_id: Optional[int] = None

    def __post_init__(self):
        # Agents get a read-only view of the snapshot.
        self.input = MappingProxyType(dict(self.input))


@dataclass
class SubTaskResult:
    key: str
    role: AgentRole
    status: SubTaskStatus
    attempts: int = 0
    payload: Optional[AgentPayload] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    agent_id: Optional[int] = None
    test_case_id: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def as_issue(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "role": self.role.value,
            "error": self.error,
            "error_kind": self.error_kind,
            "attempts": self.attempts,
        }


@dataclass
class DispatchOutcome:
    project_id: int
    stage: str
    results: List[SubTaskResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> List[SubTaskResult]:
        return [r for r in self.results if r.status is SubTaskStatus.SUCCEEDED]

    @property
    def issues(self) -> List[Dict[str, Any]]:
        return [
            r.as_issue() for r in self.results if r.status is SubTaskStatus.FAILED
        ]


SubTaskHook = Callable[..., Awaitable[None]]
CancelCheck = Callable[[], Awaitable[bool]]


def _error_kind(exc: BaseException) -> str:
    if isinstance(exc, AgentTimeout):
        return "timeout"
    if isinstance(exc, AgentUnavailable):
        return "unavailable"
    if isinstance(exc, TransientError):
        return "transient"
    if isinstance(exc, ValidationError):
        return "validation"
    return "error"


class TaskDispatcher:
    """
    Fans a stage out to agents and settles every sub-task before returning.

    A single semaphore bounds in-flight invocations across all projects. Each
    invocation has its own timeout; transient failures are retried with
    exponential backoff, validation failures are not.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        backend: AgentBackend,
        *,
        max_concurrency: int = 4,
        timeout_seconds: float = 120.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        unavailable_backoff_multiplier: float = 4.0,
        cancel_poll_seconds: float = 1.0,
    ):
        self.registry = registry
        self.backend = backend
        self.max_concurrency = max(1, max_concurrency)
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.unavailable_backoff_multiplier = unavailable_backoff_multiplier
        self.cancel_poll_seconds = cancel_poll_seconds
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._inflight: Dict[int, Set[asyncio.Task]] = {}
        self._cancelled: Set[int] = set()

    @classmethod
    def from_settings(
        cls, registry: AgentRegistry, backend: AgentBackend, config: DispatchSettings
    ) -> "TaskDispatcher":
        return cls(
            registry,
            backend,
            max_concurrency=config.max_concurrency,
            timeout_seconds=config.timeout_seconds,
            max_attempts=config.max_attempts,
            backoff_seconds=config.backoff_seconds,
            unavailable_backoff_multiplier=config.unavailable_backoff_multiplier,
            cancel_poll_seconds=config.cancel_poll_seconds,
        )

    def is_running(self, project_id: int) -> bool:
        return bool(self._inflight.get(project_id))

    def cancel_stage(self, project_id: int) -> int:
        """Cancel every in-flight sub-task of the project. Returns how many."""
        tasks = [t for t in self._inflight.get(project_id, ()) if not t.done()]
        if not tasks:
            return 0
        self._cancelled.add(project_id)
        for task in tasks:
            task.cancel()
        logger.info(
            "Cancelling %s in-flight sub-task(s) for project %s", len(tasks), project_id
        )
        return len(tasks)

    async def dispatch(
        self,
        project_id: int,
        stage: str,
        subtasks: List[SubTask],
        on_start: Optional[SubTaskHook] = None,
        on_settle: Optional[SubTaskHook] = None,
        cancel_check: Optional[CancelCheck] = None,
    ) -> DispatchOutcome:
        """
        Run ``subtasks`` in parallel and wait for all of them to settle.

        ``on_start(subtask)`` is awaited before the first attempt and
        ``on_settle(subtask, result)`` after the sub-task settles, including
        when it was cancelled. ``cancel_check()`` is polled while waiting and
        before every retry; once it returns True the stage is cancelled as if
        ``cancel_stage`` had been called in this process.
        """
        logger.info(
            "Dispatching %s sub-task(s) for project %s stage %s",
            len(subtasks),
            project_id,
            stage,
        )
        self._cancelled.discard(project_id)
        tasks = [
            asyncio.create_task(
                self._run_subtask(
                    project_id, stage, subtask, on_start, on_settle, cancel_check
                ),
                name=f"{stage}:{project_id}:{subtask.key}",
            )
            for subtask in subtasks
        ]
        self._inflight.setdefault(project_id, set()).update(tasks)
        try:
            await self._wait_settled(project_id, tasks, cancel_check)
            settled = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._inflight.get(project_id, set()).difference_update(tasks)
            if not self._inflight.get(project_id):
                self._inflight.pop(project_id, None)

        outcome = DispatchOutcome(project_id=project_id, stage=stage)
        for subtask, item in zip(subtasks, settled):
            if isinstance(item, SubTaskResult):
                outcome.results.append(item)
            elif isinstance(item, asyncio.CancelledError):
                outcome.results.append(
                    SubTaskResult(
                        key=subtask.key,
                        role=subtask.role,
                        status=SubTaskStatus.CANCELLED,
                        test_case_id=subtask.test_case_id,
                    )
                )
            else:
                logger.error(
                    "Sub-task %s for project %s stage %s crashed: %r",
                    subtask.key,
                    project_id,
                    stage,
                    item,
                )
                outcome.results.append(
                    SubTaskResult(
                        key=subtask.key,
                        role=subtask.role,
                        status=SubTaskStatus.FAILED,
                        error=str(item),
                        error_kind=_error_kind(item),
                        test_case_id=subtask.test_case_id,
                    )
                )

        outcome.cancelled = project_id in self._cancelled or any(
            r.status is SubTaskStatus.CANCELLED for r in outcome.results
        )
        self._cancelled.discard(project_id)

        logger.info(
            "Project %s stage %s settled: %s succeeded, %s failed, cancelled=%s",
            project_id,
            stage,
            len(outcome.succeeded),
            len(outcome.issues),
            outcome.cancelled,
        )
        return outcome

    async def _wait_settled(
        self,
        project_id: int,
        tasks: List[asyncio.Task],
        cancel_check: Optional[CancelCheck],
    ) -> None:
        if not tasks:
            return
        try:
            if cancel_check is None:
                await asyncio.wait(tasks)
                return
            pending = set(tasks)
            while pending:
                _, pending = await asyncio.wait(
                    pending, timeout=self.cancel_poll_seconds
                )
                if pending and await self._cancel_requested(project_id, cancel_check):
                    self.cancel_stage(project_id)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

    async def _cancel_requested(
        self, project_id: int, cancel_check: Optional[CancelCheck]
    ) -> bool:
        if cancel_check is None or project_id in self._cancelled:
            return False
        try:
            requested = await cancel_check()
        except Exception:  # noqa: BLE001
            logger.exception("Cancel check failed for project %s", project_id)
            return False
        if requested:
            logger.info("Cancel requested for project %s", project_id)
        return requested

    async def _run_subtask(
        self,
        project_id: int,
        stage: str,
        subtask: SubTask,
        on_start: Optional[SubTaskHook],
        on_settle: Optional[SubTaskHook],
        cancel_check: Optional[CancelCheck] = None,
    ) -> SubTaskResult:
        result = SubTaskResult(
            key=subtask.key,
            role=subtask.role,
            status=SubTaskStatus.FAILED,
            test_case_id=subtask.test_case_id,
            started_at=datetime.now(timezone.utc),
        )
        try:
            if on_start is not None:
                await on_start(subtask)
            result.payload = await self._invoke_with_retry(
                project_id, stage, subtask, result, cancel_check
            )
            result.status = SubTaskStatus.SUCCEEDED
        except asyncio.CancelledError:
            result.status = SubTaskStatus.CANCELLED
            logger.info(
                "Sub-task %s for project %s stage %s cancelled after %s attempt(s)",
                subtask.key,
                project_id,
                stage,
                result.attempts,
            )
        except Exception as exc:  # noqa: BLE001
            result.error = str(exc)
            result.error_kind = _error_kind(exc)
            logger.warning(
                "Sub-task %s for project %s stage %s failed after %s attempt(s) (%s): %s",
                subtask.key,
                project_id,
                stage,
                result.attempts,
                result.error_kind,
                exc,
            )
        result.completed_at = datetime.now(timezone.utc)

        if on_settle is not None:
            try:
                await on_settle(subtask, result)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Settle hook failed for sub-task %s (project %s stage %s)",
                    subtask.key,
                    project_id,
                    stage,
                )
        return result

    async def _invoke_with_retry(
        self,
        project_id: int,
        stage: str,
        subtask: SubTask,
        result: SubTaskResult,
        cancel_check: Optional[CancelCheck] = None,
    ) -> AgentPayload:
        while True:
            result.attempts += 1
            try:
                return await self._invoke_once(subtask, result)
            except TransientError as exc:
                if result.attempts >= self.max_attempts:
                    raise
                delay = self.backoff_seconds * (2 ** (result.attempts - 1))
                if isinstance(exc, AgentUnavailable):
                    delay *= self.unavailable_backoff_multiplier
                logger.info(
                    "Retrying sub-task %s for project %s stage %s in %.2fs "
                    "(attempt %s/%s): %s",
                    subtask.key,
                    project_id,
                    stage,
                    delay,
                    result.attempts,
                    self.max_attempts,
                    exc,
                )
                if await self._cancel_requested(project_id, cancel_check):
                    # Cancels this task too; the sleep below raises.
                    self.cancel_stage(project_id)
                await asyncio.sleep(delay)

    async def _invoke_once(
        self, subtask: SubTask, result: SubTaskResult
    ) -> AgentPayload:
        async with self._semaphore:
            agent = self.registry.acquire(subtask.role)
            result.agent_id = agent.id
            ok = False
            try:
                try:
                    raw = await asyncio.wait_for(
                        self.backend.invoke_agent(subtask.role, dict(subtask.input)),
                        timeout=self.timeout_seconds,
                    )
                except asyncio.TimeoutError as exc:
                    raise AgentTimeout(
                        subtask.role.value, self.timeout_seconds
                    ) from exc
                payload = parse_payload(subtask.payload_kind, raw)
                ok = True
                return payload
            except asyncio.CancelledError:
                # Cancellation is not an agent fault.
                ok = True
                raise
            finally:
                self.registry.release(agent.id, ok)
