from __future__ import annotations

"""Pool of pre-warmed compute sessions for one named execution context."""

import asyncio
import logging
from typing import Any

from .errors import NoSessionStateError, SASjsError, SessionStateError
from .models import Context, Session
from .polling import TRANSIENT_POLL_ERRORS, long_poll
from .request import RequestClient

logger = logging.getLogger(__name__)

MAX_SESSION_COUNT = 1
SESSION_STATE_WAIT = 30
SESSION_WAIT_STATES = frozenset({"pending", "running", ""})
MAX_SESSION_STATE_ERRORS = 5


class SessionManager:
    """Hands out ready compute sessions and refills the pool in the background.

    A withdrawn session is popped from the pool before anything else can
    observe it, so the same session is never handed out twice.
    """

    def __init__(
        self,
        server_url: str,
        context_name: str,
        request_client: RequestClient,
        *,
        debug: bool = False,
        max_session_count: int = MAX_SESSION_COUNT,
        poll_interval: float = 0.3,
    ) -> None:
        if not context_name:
            raise ValueError("context_name cannot be empty")
        if max_session_count < 1:
            raise ValueError("max_session_count must be at least 1")
        self.server_url = server_url.rstrip("/")
        self.context_name = context_name
        self.request_client = request_client
        self.debug = debug
        self.max_session_count = max_session_count
        self.poll_interval = poll_interval

        self._sessions: list[Session] = []
        self._current_context: Context | None = None
        self._context_lock = asyncio.Lock()
        self._replenish_task: asyncio.Task[None] | None = None
        self._background_errors: list[BaseException] = []
        self._reported_empty_states: set[int] = set()

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions)

    @property
    def background_errors(self) -> list[BaseException]:
        return list(self._background_errors)

    # ------------------------------------------------------------------
    # Public API.
    # ------------------------------------------------------------------
    async def get_session(self, access_token: str | None = None) -> Session:
        """Return a ready session, creating one in the foreground if needed."""
        self._prune_expired()
        if self._sessions:
            session = self._sessions.pop(0)
            self._schedule_replenish(access_token)
            return session

        try:
            session = await self._create_and_wait_for_session(access_token)
        except Exception as exc:
            exc.background_errors = self.background_errors  # type: ignore[attr-defined]
            self._background_errors = []
            raise

        self._schedule_replenish(access_token)
        return session

    async def clear_session(self, session_id: str, access_token: str | None = None) -> None:
        """Delete a session on the server and forget it locally."""
        await self.request_client.delete(f"/compute/sessions/{session_id}", access_token)
        self._sessions = [session for session in self._sessions if session.id != session_id]

    async def get_variable(self, session_id: str, name: str, access_token: str | None = None) -> Any:
        response = await self.request_client.get(
            f"/compute/sessions/{session_id}/variables/{name}", access_token
        )
        return response.result

    async def aclose(self) -> None:
        """Wait for an in-flight background refill to settle."""
        task = self._replenish_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Pool maintenance.
    # ------------------------------------------------------------------
    def _prune_expired(self) -> None:
        fresh = [session for session in self._sessions if not session.is_expired()]
        if len(fresh) != len(self._sessions):
            logger.info("Discarding %d expired session(s).", len(self._sessions) - len(fresh))
        self._sessions = fresh

    def _schedule_replenish(self, access_token: str | None) -> None:
        if self._replenish_task is not None and not self._replenish_task.done():
            return
        if len(self._sessions) >= self.max_session_count:
            return
        self._replenish_task = asyncio.ensure_future(self._replenish(access_token))

    async def _replenish(self, access_token: str | None) -> None:
        """Fill the pool up to its limit, recording rather than raising errors."""
        while len(self._sessions) < self.max_session_count:
            try:
                session = await self._create_and_wait_for_session(access_token)
            except Exception as exc:
                logger.warning("Background session creation failed: %s", exc)
                self._background_errors.append(exc)
                return
            self._sessions = [*self._sessions, session]

    async def _set_current_context(self, access_token: str | None) -> Context:
        async with self._context_lock:
            if self._current_context is not None:
                return self._current_context

            response = await self.request_client.get("/compute/contexts?limit=10000", access_token)
            items = response.result.get("items", []) if isinstance(response.result, dict) else []
            for item in items:
                if isinstance(item, dict) and item.get("name") == self.context_name:
                    self._current_context = Context.from_dict(item)
                    return self._current_context

            raise SASjsError(
                f"The context '{self.context_name}' was not found on the server {self.server_url}."
            )

    async def _create_and_wait_for_session(self, access_token: str | None) -> Session:
        context = await self._set_current_context(access_token)
        response = await self.request_client.post(
            f"/compute/contexts/{context.id}/sessions", None, access_token
        )
        if not isinstance(response.result, dict):
            raise SASjsError("Unexpected response while creating a compute session.")
        session = Session.from_dict(response.result, etag=response.etag)
        session.state = await self._wait_for_session(session, access_token)
        if session.state in ("error", "failed"):
            raise SessionStateError(session.id, session.state)
        return session

    async def _wait_for_session(self, session: Session, access_token: str | None) -> str:
        """
        Long-poll a new session until it leaves the pending/running states.

        An empty state is a server anomaly: it is logged once per response
        status and polled again without counting as an error.
        """

        state = session.state
        state_link = session.link("state")
        if state_link is None or state not in SESSION_WAIT_STATES:
            return state

        if self.debug:
            logger.info("Polling session status...")
        error_count = 0
        while True:
            try:
                response = await long_poll(
                    self.request_client,
                    state_link.href,
                    access_token=access_token,
                    etag=session.etag,
                    wait=SESSION_STATE_WAIT,
                    debug=self.debug,
                )
            except TRANSIENT_POLL_ERRORS as exc:
                error_count += 1
                if error_count >= MAX_SESSION_STATE_ERRORS:
                    raise
                logger.error("Error fetching session state from %s: %s", state_link.href, exc)
                await asyncio.sleep(self.poll_interval)
                continue

            error_count = 0
            state = str(response.result or "").strip()
            if state == "":
                self._report_empty_state(session, state_link.href, response.status)
                await asyncio.sleep(self.poll_interval)
                continue

            if self.debug:
                logger.info("Current session state: %s", state)
            if state not in SESSION_WAIT_STATES:
                return state
            await asyncio.sleep(self.poll_interval)

    def _report_empty_state(self, session: Session, state_url: str, status: int) -> None:
        if status in self._reported_empty_states:
            return
        self._reported_empty_states.add(status)
        log_link = session.link("log")
        error = NoSessionStateError(status, self.server_url + state_url, log_link.href if log_link else "")
        logger.warning("%s", error)
