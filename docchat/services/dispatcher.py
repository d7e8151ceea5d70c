"""
Job Dispatcher

Hands ingestion jobs (``{documentId, userId}``) to a delivery mechanism.

    - QueueDispatcher: publishes to an HTTP message queue that calls the
      worker webhook back with a signed request, at least once.
    - LocalDispatcher: runs the job in-process on the event loop. Used
      for local development and whenever no queue token is configured.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from docchat.core.config import settings
from docchat.core.exceptions import DispatchError
from docchat.models.schemas import IngestionJob

logger = logging.getLogger(__name__)

JobRunner = Callable[[IngestionJob], Awaitable[Any]]


class JobDispatcher(ABC):
    @abstractmethod
    async def enqueue(self, job: IngestionJob) -> str:
        """Enqueue ``job`` and return the transport's message id."""


class QueueDispatcher(JobDispatcher):
    """
    Publishes jobs to an HTTP queue (QStash-compatible API).

    The queue POSTs the JSON payload to ``worker_url`` and redelivers up
    to ``retries`` times when the worker answers with an error.
    """

    def __init__(
        self,
        publish_url: str | None = None,
        token: str | None = None,
        worker_url: str | None = None,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self._publish_url = (publish_url or settings.QUEUE_PUBLISH_URL).rstrip("/")
        self._token = token or settings.QUEUE_TOKEN
        self._worker_url = worker_url or settings.WORKER_URL
        self._retries = settings.QUEUE_RETRIES if retries is None else retries
        self._timeout = timeout or settings.QUEUE_TIMEOUT_SECONDS

    async def enqueue(self, job: IngestionJob) -> str:
        payload = job.model_dump(by_alias=True, exclude_none=True)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._publish_url}/{self._worker_url}",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._token}",
                        "Upstash-Retries": str(self._retries),
                    },
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DispatchError(f"Could not publish job: {exc}") from exc

        message_id = str(response.json().get("messageId", ""))
        logger.info(
            "Enqueued ingestion of %s (message=%s)", job.document_id, message_id
        )
        return message_id


class LocalDispatcher(JobDispatcher):
    """
    Runs jobs as background asyncio tasks in this process.

    No redelivery: a failed run stays failed until a manual retry.
    """

    def __init__(self, runner: JobRunner) -> None:
        self._runner = runner
        self._tasks: set[asyncio.Task[Any]] = set()

    async def enqueue(self, job: IngestionJob) -> str:
        message_id = f"local-{uuid.uuid4()}"
        task = asyncio.create_task(self._run(job, message_id))
        # Keep a strong reference until the task finishes
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Scheduled in-process ingestion of %s (%s)", job.document_id, message_id)
        return message_id

    async def _run(self, job: IngestionJob, message_id: str) -> None:
        try:
            await self._runner(job)
        except Exception:
            logger.exception("In-process ingestion %s crashed", message_id)

    async def drain(self) -> None:
        """Wait for every scheduled job (used at shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_dispatcher(runner: JobRunner) -> JobDispatcher:
    """Queue dispatcher when a queue token is configured, local otherwise."""
    if settings.QUEUE_TOKEN:
        return QueueDispatcher()
    logger.info("QUEUE_TOKEN not set, ingestion jobs run in-process")
    return LocalDispatcher(runner)
