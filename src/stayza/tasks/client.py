"""Tasks client with idempotent enqueue.

Backends selectable via TASKS_BACKEND env var:
- inline (default): records the task without executing it (dev/tests)
- http: POSTs the task to the worker
- cloud_tasks: creates a Google Cloud Task targeting the worker
"""

import os
from datetime import datetime

TASKS_BACKEND = os.environ.get("TASKS_BACKEND", "inline")


class TasksClient:
    """Tasks client with idempotent enqueue by task_id.

    The same task_id enqueued twice is a no-op, so callers may derive ids
    from the work itself (e.g. ``reconcile-{reference}``).
    """

    def __init__(self, backend: str | None = None) -> None:
        self._executed_ids: set[str] = set()
        self._scheduled_tasks: list[dict] = []
        self._backend = backend or TASKS_BACKEND

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
        schedule_time: datetime | None = None,
    ) -> bool:
        """Enqueue a worker task.

        Args:
            task_id: Unique identifier for idempotency.
            url_path: Worker endpoint path (e.g., "/tasks/settlement/reconcile-transfer").
            payload: Task data (must not contain PII).
            correlation_id: Optional correlation ID for tracing.
            schedule_time: Optional future execution time.

        Returns:
            True if the task was enqueued, False if task_id was already seen.

        Raises:
            ValueError: If TASKS_BACKEND is unknown.
        """
        if task_id in self._executed_ids:
            return False

        self._executed_ids.add(task_id)

        if self._backend == "inline":
            self._scheduled_tasks.append({
                "task_id": task_id,
                "url_path": url_path,
                "payload": payload,
                "correlation_id": correlation_id,
                "schedule_time": schedule_time,
            })
            return True

        elif self._backend == "http":
            from stayza.tasks.http_backend import enqueue_http
            return enqueue_http(
                task_id, url_path, payload, correlation_id, schedule_time
            )

        elif self._backend == "cloud_tasks":
            from stayza.tasks.cloud_tasks_backend import enqueue_cloud_task
            return enqueue_cloud_task(
                task_id, url_path, payload, correlation_id, schedule_time
            )

        else:
            raise ValueError(f"Unknown TASKS_BACKEND: {self._backend}")

    def was_executed(self, task_id: str) -> bool:
        return task_id in self._executed_ids

    def get_scheduled_tasks(self) -> list[dict]:
        """Tasks recorded by the inline backend (useful for testing)."""
        return list(self._scheduled_tasks)

    def clear(self) -> None:
        self._executed_ids.clear()
        self._scheduled_tasks.clear()
