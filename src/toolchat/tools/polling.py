"""Polling support for long-running capabilities.

Generation jobs (video, deferred completions) are started once and then
checked until they finish. The capability owns the timeout and poll
interval, so the orchestrator sees the whole call as one bounded operation
and always receives a terminal status in the payload instead of an
exception.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel

from toolchat.observability.logging import get_logger
from toolchat.tools.base import CapabilityError, ToolDefinition, load_arguments

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

log = get_logger(__name__)

DEFAULT_TIMEOUT = 600.0
DEFAULT_POLL_INTERVAL = 5.0

STATUS_DONE = "done"
STATUS_PENDING = "pending"
STATUS_EXPIRED = "expired"
STATUS_TIMEOUT = "timeout"
STATUS_FAILED = "failed"


@dataclass
class JobStatus:
    """Snapshot of a long-running job.

    Attributes:
        status: One of ``done``, ``pending``, ``expired``, ``timeout``, ``failed``.
        job_id: Backend identifier of the job.
        data: Result fields (URLs, durations, ...) once available.
        error: Error description for ``timeout`` and ``failed``.
    """

    status: str
    job_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == STATUS_PENDING

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status, "request_id": self.job_id, **self.data}
        if self.error:
            payload["error"] = self.error
        return payload


async def poll_job(
    fetch_status: Callable[[], Awaitable[JobStatus]],
    timeout: float = DEFAULT_TIMEOUT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    job_id: str = "",
) -> JobStatus:
    """Check a job until it leaves ``pending`` or the timeout elapses.

    Errors raised by ``fetch_status`` end polling with a ``failed`` status.
    ``asyncio.CancelledError`` propagates so callers can abandon the wait.

    Args:
        fetch_status: Coroutine function returning the job's current status.
        timeout: Seconds to wait in total.
        poll_interval: Seconds between checks.
        job_id: Identifier reported on timeout and failure.

    Returns:
        The first non-pending status, or a ``timeout`` status.
    """
    deadline = time.monotonic() + timeout
    checks = 0

    while True:
        try:
            status = await fetch_status()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("job_poll_error", job_id=job_id, error=str(e))
            return JobStatus(status=STATUS_FAILED, job_id=job_id, error=f"Failed to poll job: {e}")

        checks += 1
        if not status.is_pending:
            log.debug("job_finished", job_id=job_id, status=status.status, checks=checks)
            return status

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        await asyncio.sleep(min(poll_interval, remaining))

    log.warning("job_poll_timeout", job_id=job_id, timeout=timeout, checks=checks)
    return JobStatus(
        status=STATUS_TIMEOUT,
        job_id=job_id,
        error=f"Job did not finish within {timeout:g} seconds.",
    )


class JobBackend(Protocol):
    """Backend that runs a long job for a :class:`PollingCapability`."""

    async def start(self, arguments: dict[str, Any]) -> str:
        """Submit the job and return its identifier."""
        ...

    async def check(self, job_id: str) -> JobStatus:
        """Return the job's current status."""
        ...


class PollingCapability:
    """Capability that submits a job and waits for it inside ``execute``.

    Arguments are validated against ``args_model`` before anything is
    submitted. With ``"wait": false`` in the arguments the capability returns
    the ``pending`` status right after submission.

    Example:
        >>> tool = PollingCapability(
        ...     ToolDefinition(name="generate_video", description="...", parameters={...}),
        ...     backend=VideoJobs(client),
        ...     args_model=VideoArgs,
        ...     timeout=600,
        ...     poll_interval=5,
        ... )
    """

    def __init__(
        self,
        definition: ToolDefinition,
        backend: JobBackend,
        args_model: type[BaseModel],
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._definition = definition
        self._backend = backend
        self._args_model = args_model
        self._timeout = timeout
        self._poll_interval = poll_interval

    @property
    def definition(self) -> ToolDefinition:
        return self._definition

    async def execute(self, arguments: str) -> str:
        try:
            args = load_arguments(arguments, self._args_model)
        except CapabilityError as e:
            return json.dumps({"error": str(e), "status": STATUS_FAILED})

        fields = args.model_dump(exclude_none=True)
        wait = fields.pop("wait", True)

        try:
            job_id = await self._backend.start(fields)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("job_start_error", tool=self._definition.name, error=str(e))
            return json.dumps({"error": f"Failed to start job: {e}", "status": STATUS_FAILED})

        log.debug("job_started", tool=self._definition.name, job_id=job_id, wait=wait)
        if not wait:
            return json.dumps(JobStatus(status=STATUS_PENDING, job_id=job_id).to_payload())

        status = await poll_job(
            lambda: self._backend.check(job_id),
            timeout=self._timeout,
            poll_interval=self._poll_interval,
            job_id=job_id,
        )
        return json.dumps(status.to_payload())
