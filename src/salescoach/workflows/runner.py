"""Durable background workflows on top of Redis.

A workflow instance is a JSON record under ``workflow:<id>``. It is persisted
before the work is scheduled, every finished step is checkpointed into it,
and instances still ``queued`` or ``running`` are picked up again by
``resume_pending`` at startup. Completed steps are never executed twice.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Protocol

from ..errors import StorageError, WorkflowNotFoundError
from ..services.redis import RedisCrudService

logger = logging.getLogger(__name__)

WORKFLOW_KEY_PREFIX = "workflow:"

QUEUED = "queued"
RUNNING = "running"
COMPLETE = "complete"
ERRORED = "errored"
PENDING_STATUSES = (QUEUED, RUNNING)


@dataclass
class WorkflowInstance:
    id: str
    name: str
    payload: Dict[str, Any]
    status: str = QUEUED
    steps: Dict[str, Any] = field(default_factory=dict)
    output: Any = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "payload": self.payload,
            "status": self.status,
            "steps": self.steps,
            "output": self.output,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowInstance":
        return cls(
            id=data["id"],
            name=data["name"],
            payload=data.get("payload") or {},
            status=data.get("status", QUEUED),
            steps=data.get("steps") or {},
            output=data.get("output"),
            error=data.get("error"),
            created_at=data.get("createdAt", time.time()),
            updated_at=data.get("updatedAt", time.time()),
        )


class Workflow(Protocol):
    name: str

    async def run(self, payload: Dict[str, Any], step: "WorkflowStep") -> Any: ...


class WorkflowStep:
    """Runs named steps of one instance, checkpointing each result."""

    def __init__(self, runner: "WorkflowRunner", instance: WorkflowInstance) -> None:
        self._runner = runner
        self._instance = instance

    async def do(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` unless step ``name`` already finished; return its (JSON-serializable) result."""
        if name in self._instance.steps:
            logger.info("Workflow %s: step %s already done, skipping", self._instance.id, name)
            return self._instance.steps[name]
        logger.info("Workflow %s: step %s start", self._instance.id, name)
        result = await fn()
        self._instance.steps[name] = result
        await self._runner.save(self._instance)
        return result


class WorkflowRunner:
    """Creates workflow instances and executes them as background tasks."""

    def __init__(self, redis_crud: RedisCrudService, ttl_seconds: int = 0) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds
        self._workflows: Dict[str, Workflow] = {}
        self._tasks: Dict[str, asyncio.Task[None]] = {}

    def _key(self, workflow_id: str) -> str:
        return f"{WORKFLOW_KEY_PREFIX}{workflow_id}"

    def register(self, workflow: Workflow) -> None:
        self._workflows[workflow.name] = workflow

    async def save(self, instance: WorkflowInstance) -> None:
        instance.updated_at = time.time()
        await self._redis.set(
            self._key(instance.id),
            json.dumps(instance.to_dict()),
            ttl_seconds=self._ttl or None,
        )

    async def get(self, workflow_id: str) -> WorkflowInstance:
        raw = await self._redis.get(self._key(workflow_id))
        if raw is None:
            raise WorkflowNotFoundError(workflow_id)
        try:
            return WorkflowInstance.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning("Invalid workflow record %s: %s", workflow_id, e)
            raise WorkflowNotFoundError(workflow_id) from e

    async def create(self, name: str, payload: Dict[str, Any]) -> WorkflowInstance:
        """Persist a new instance and schedule it. Returns as soon as it is stored."""
        if name not in self._workflows:
            raise ValueError(f"Unknown workflow: {name}")
        instance = WorkflowInstance(id=uuid.uuid4().hex, name=name, payload=payload)
        await self.save(instance)
        logger.info("Workflow %s (%s) created", instance.id, name)
        self._schedule(instance)
        return instance

    def _schedule(self, instance: WorkflowInstance) -> None:
        if instance.id in self._tasks:
            return
        task = asyncio.create_task(self._execute(instance), name=f"workflow-{instance.id}")
        self._tasks[instance.id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(instance.id, None))

    async def _execute(self, instance: WorkflowInstance) -> None:
        workflow = self._workflows.get(instance.name)
        if workflow is None:
            logger.error("Workflow %s: no handler registered for %s", instance.id, instance.name)
            return
        try:
            instance.status = RUNNING
            await self.save(instance)
            output = await workflow.run(instance.payload, WorkflowStep(self, instance))
        except asyncio.CancelledError:
            # Left as running so the next startup resumes it.
            logger.info("Workflow %s cancelled", instance.id)
            raise
        except StorageError as e:
            logger.error("Workflow %s lost its storage: %s", instance.id, e)
            return
        except Exception as e:
            logger.exception("Workflow %s failed: %s", instance.id, e)
            instance.status = ERRORED
            instance.error = str(e)
        else:
            instance.status = COMPLETE
            instance.output = output
            logger.info("Workflow %s complete", instance.id)
        try:
            await self.save(instance)
        except StorageError as e:
            logger.error("Workflow %s result could not be saved: %s", instance.id, e)

    async def resume_pending(self) -> int:
        """Schedule every stored instance that has not finished. Returns how many were resumed."""
        resumed = 0
        for key in await self._redis.keys_with_prefix(WORKFLOW_KEY_PREFIX):
            workflow_id = key[len(WORKFLOW_KEY_PREFIX):]
            try:
                instance = await self.get(workflow_id)
            except WorkflowNotFoundError:
                continue
            if instance.status in PENDING_STATUSES and instance.name in self._workflows:
                logger.info("Resuming workflow %s (%s)", instance.id, instance.status)
                self._schedule(instance)
                resumed += 1
        return resumed

    async def wait(self, workflow_id: str) -> None:
        """Wait for an instance scheduled in this process to finish."""
        task = self._tasks.get(workflow_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        """Cancel in-flight tasks; their records stay pending and resume on next start."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
