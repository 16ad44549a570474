from __future__ import annotations

"""Long-poll loop shared by job completion and session readiness checks."""

import asyncio
import logging
import os
from datetime import datetime
from typing import Any

import httpx

from .auth import AuthConfig, get_tokens
from .errors import InternalServerError, JobStatePollError, NotFoundError, SASjsError
from .models import Job, ParsedResponse, PollOptions
from .request import RequestClient

logger = logging.getLogger(__name__)

LONG_POLL_WAIT = 300
LOG_CHUNK_LIMIT = 10000
DEFAULT_LOG_LINE_COUNT = 1000000
POLLABLE_STATES = frozenset({"running", "", "pending", "unavailable"})

# Failures that count against the poll error budget rather than aborting.
TRANSIENT_POLL_ERRORS = (httpx.HTTPError, InternalServerError, NotFoundError)


async def long_poll(
    request_client: RequestClient,
    state_url: str,
    *,
    access_token: str | None = None,
    etag: str | None = None,
    wait: int = LONG_POLL_WAIT,
    debug: bool = False,
) -> ParsedResponse:
    """Issue one long-poll read of a resource state link."""
    headers = {"If-None-Match": etag} if etag else None
    return await request_client.get(
        f"{state_url}?_action=wait&wait={wait}",
        access_token,
        "text/plain",
        headers,
        debug,
    )


async def read_state(request_client: RequestClient, state_url: str, **kwargs: Any) -> str:
    response = await long_poll(request_client, state_url, **kwargs)
    return str(response.result or "").strip()


async def fetch_log(
    request_client: RequestClient,
    access_token: str | None,
    log_url: str,
    start: int,
    end: int,
) -> str:
    """Fetch log lines in `[start, end)` using bounded windows."""
    chunks: list[str] = []
    limit = min(max(end - start, 0), LOG_CHUNK_LIMIT)
    position = start
    while limit and position < end:
        logger.info("Fetching logs from line no: %d to %d of %d.", position + 1, position + limit, end)
        response = await request_client.get(f"{log_url}?start={position}&limit={limit}", access_token)
        items = (response.result or {}).get("items") if isinstance(response.result, dict) else None
        if not items:
            break
        chunks.append("\n".join(str(item.get("line", "")) for item in items))
        position += limit
    return "\n".join(chunks)


async def fetch_log_by_chunks(
    request_client: RequestClient,
    access_token: str | None,
    log_url: str,
    log_count: int,
) -> str:
    """Fetch a whole log of `log_count` lines."""
    return await fetch_log(request_client, access_token, log_url, 0, log_count)


class _LogStreamer:
    """Appends newly produced job log lines to a file after each poll."""

    def __init__(self, job: Job, folder: str | None) -> None:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        file_name = f"{job.name or 'job'}-{timestamp}.log"
        self.path = os.path.join(folder or os.getcwd(), file_name)
        self.job = job
        self.next_line = 0

    async def save(self, request_client: RequestClient, access_token: str | None) -> None:
        log_link = self.job.link("log")
        if log_link is None:
            raise SASjsError(f"Log URL for job {self.job.id} was not found.")

        line_count = DEFAULT_LOG_LINE_COUNT
        self_link = self.job.link("self")
        if self_link is not None:
            response = await request_client.get(self_link.href, access_token)
            if isinstance(response.result, dict):
                line_count = Job.from_dict(response.result).log_line_count or line_count

        if line_count <= self.next_line:
            return
        log = await fetch_log(
            request_client, access_token, f"{log_link.href}/content", self.next_line, line_count
        )
        self.next_line = line_count
        if not log:
            return
        logger.info("Writing logs to %s", self.path)
        with open(self.path, "a", encoding="utf-8") as fp:
            fp.write(log + "\n")


def _stages(options: PollOptions) -> list[PollOptions]:
    """Expand a poll strategy into the ordered stages to run."""
    if options.poll_strategy:
        return list(options.poll_strategy)
    return [options]


async def poll_job_state(
    request_client: RequestClient,
    job: Job,
    debug: bool,
    *,
    etag: str | None = None,
    auth_config: AuthConfig | None = None,
    poll_options: PollOptions | None = None,
) -> str:
    """
    Wait for a job to leave its pending/running states.

    Transport failures count against `max_error_count`; a successful read
    resets the counter. Exhausting the poll count returns the last state
    observed instead of raising.
    """

    options = poll_options or PollOptions()
    state_link = job.link("state")
    if state_link is None:
        raise JobStatePollError(job.id, "Job state link was not found.")

    access_token = auth_config.access_token if auth_config else None
    if auth_config is not None:
        auth_config = await get_tokens(request_client, auth_config)
        access_token = auth_config.access_token

    try:
        state = await read_state(
            request_client, state_link.href, access_token=access_token, etag=etag, debug=debug
        )
    except TRANSIENT_POLL_ERRORS as exc:
        logger.error(
            "Error fetching job state from %s. Starting poll, assuming job to be running. %s",
            state_link.href,
            exc,
        )
        state = "unavailable"

    if state == "completed":
        return state

    streamer = _LogStreamer(job, options.log_folder_path) if options.stream_log else None
    error_count = 0
    printed_state = ""

    for stage in _stages(options):
        poll_count = 0
        while state in POLLABLE_STATES:
            await asyncio.sleep(stage.poll_interval)

            if auth_config is not None:
                auth_config = await get_tokens(request_client, auth_config)
                access_token = auth_config.access_token

            try:
                state = await read_state(
                    request_client, state_link.href, access_token=access_token, etag=etag, debug=debug
                )
            except TRANSIENT_POLL_ERRORS as exc:
                error_count += 1
                if error_count >= options.max_error_count:
                    raise JobStatePollError(job.id, exc) from exc
                logger.error(
                    "Error fetching job state from %s. Resuming poll, assuming job to be running. %s",
                    state_link.href,
                    exc,
                )
                state = "unavailable"
            else:
                if state != "unavailable":
                    error_count = 0

            if state != printed_state:
                logger.info("Current job state: %s", state)
                printed_state = state

            poll_count += 1
            if streamer is not None and state != "unavailable":
                await streamer.save(request_client, access_token)

            if poll_count >= stage.max_poll_count:
                break

        if state not in POLLABLE_STATES:
            return state

    return state
