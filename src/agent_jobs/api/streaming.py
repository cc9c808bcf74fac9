"""Server-Sent Events transport for live job output."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from agent_jobs.orchestrator.errors import CancelledByDisconnect, JobNotFound
from agent_jobs.orchestrator.executor import terminal_event
from agent_jobs.orchestrator.models import EventName, JobEvent
from agent_jobs.orchestrator.services import OrchestratorService

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.5


def format_sse(name: EventName | str, data: dict[str, Any] | None = None) -> str:
    """Render one SSE frame: ``event: <name>`` + ``data: <json>`` + blank line."""

    event_name = name.value if isinstance(name, EventName) else name
    payload = json.dumps(data or {}, ensure_ascii=False, default=str)
    return f"event: {event_name}\ndata: {payload}\n\n"


async def stream_job_events(  # noqa: C901
    service: OrchestratorService,
    job_id: str,
    *,
    keepalive_seconds: float = 30.0,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    cancel_on_disconnect: bool = True,
) -> AsyncIterator[str]:
    """Yield snapshot, backlog, live events and exactly one terminal event.

    Leaving early (client gone or generator closed) cancels a job that is still
    live when ``cancel_on_disconnect`` is set.
    """

    subscription = service.subscribe(job_id)
    finished = False
    try:
        job = service.get_job(job_id)
        yield format_sse(EventName.BUILD_STATUS, job.to_payload())

        last_log_id = 0
        for entry in service.get_logs(job_id):
            last_log_id = max(last_log_id, entry.log_id)
            yield format_sse(EventName.BUILD_LOG, entry.to_payload())

        if job.status.terminal and not service.is_active(job_id):
            finished = True
            yield format_sse(*_frame(terminal_event(job)))
            return

        last_sent = time.monotonic()
        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.info("Client disconnected from job_id=%s stream", job_id)
                return

            event = await asyncio.to_thread(subscription.get, POLL_SECONDS)
            if event is not None:
                if event.log_id is not None and event.log_id <= last_log_id:
                    continue
                if event.log_id is not None:
                    last_log_id = event.log_id
                last_sent = time.monotonic()
                if event.terminal:
                    finished = True
                yield format_sse(*_frame(event))
                if finished:
                    return
                continue

            if subscription.overflowed:
                subscription.close()
                subscription = service.subscribe(job_id)
                for entry in service.get_logs(job_id, after_log_id=last_log_id):
                    last_log_id = entry.log_id
                    yield format_sse(EventName.BUILD_LOG, entry.to_payload())
                last_sent = time.monotonic()

            if not service.is_active(job_id):
                current = service.get_job(job_id)
                if current.status.terminal:
                    finished = True
                    yield format_sse(*_frame(terminal_event(current)))
                    return

            if time.monotonic() - last_sent >= keepalive_seconds:
                last_sent = time.monotonic()
                yield format_sse(EventName.KEEPALIVE)
    finally:
        subscription.close()
        if not finished and cancel_on_disconnect:
            await _cancel_after_disconnect(service, job_id)


def _frame(event: JobEvent) -> tuple[EventName, dict[str, Any]]:
    return event.name, event.data


async def _cancel_after_disconnect(service: OrchestratorService, job_id: str) -> None:
    # Runs to completion even when the request task itself is cancelled.
    await asyncio.shield(asyncio.to_thread(_cancel_job_quietly, service, job_id))


def _cancel_job_quietly(service: OrchestratorService, job_id: str) -> None:
    try:
        accepted = service.cancel_or_defer(job_id, CancelledByDisconnect)
    except JobNotFound:
        return
    if accepted:
        logger.info("Cancelled job_id=%s after client disconnect", job_id)
