from __future__ import annotations

"""High-level client for running SAS jobs.

`SASjsClient` wires the request client, request history, session pool and
job executors together and picks the executor that matches the configured
server flavor:
- Viya with `use_compute_api=True` runs jobs in compute sessions
- Viya with `use_compute_api=False` submits Job Execution Service jobs
- SAS 9 with credentials signs in through the stored process runner
- SASjs server posts to its stored program endpoint
- anything else posts straight to the job runner URL
"""

import logging
from typing import Any, Mapping, Sequence

import httpx

from .auth import AuthConfig
from .config import ClientConfig
from .errors import ArgumentError
from .executors import (
    ComputeJobExecutor,
    FileUploader,
    JesJobExecutor,
    JobExecutor,
    LoginRequiredCallback,
    Sas9JobExecutor,
    SasjsJobExecutor,
    WebJobExecutor,
)
from .history import RequestHistory
from .models import CsrfToken, ExtraResponseAttribute, SasjsRequest, ServerType, UploadFile
from .request import RequestClient, Sas9RequestClient, SasjsRequestClient
from .sessions import SessionManager
from .tables import validate_input
from .viya import ViyaJobLocator

logger = logging.getLogger(__name__)


class SASjsClient:
    """Async entry point for executing jobs against one SAS server."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        request_client: RequestClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self._transport = transport
        self.request_client = request_client or self._build_request_client()
        self.history = RequestHistory(self.config.request_history_limit)

        self._locator: ViyaJobLocator | None = None
        self._session_manager: SessionManager | None = None
        self._sas9_client: Sas9RequestClient | None = None
        self._executors: dict[str, JobExecutor] = {}

    async def __aenter__(self) -> "SASjsClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _build_request_client(self) -> RequestClient:
        client_cls = SasjsRequestClient if self.config.server_type == ServerType.SASJS else RequestClient
        return client_cls(
            self.config.server_url,
            transport=self._transport,
            verify=not self.config.allow_insecure_requests,
            verbose=self.config.verbose,
        )

    # ------------------------------------------------------------------
    # Executor wiring.
    # ------------------------------------------------------------------
    @property
    def locator(self) -> ViyaJobLocator:
        if self._locator is None:
            self._locator = ViyaJobLocator(self.request_client, self.config.server_url, self.config.app_loc)
        return self._locator

    def _get_session_manager(self, config: ClientConfig) -> SessionManager:
        if self._session_manager is None:
            self._session_manager = SessionManager(
                config.server_url,
                config.context_name,
                self.request_client,
                debug=config.debug,
                poll_interval=config.poll_interval,
            )
        return self._session_manager

    def _get_sas9_client(self) -> Sas9RequestClient:
        if self._sas9_client is None:
            self._sas9_client = Sas9RequestClient(
                self.config.server_url,
                token_store=self.request_client.token_store,
                transport=self._transport,
                verify=not self.config.allow_insecure_requests,
                verbose=self.config.verbose,
            )
        return self._sas9_client

    def _executor_kind(self, config: ClientConfig) -> str:
        if config.server_type == ServerType.SASVIYA and config.use_compute_api is not None:
            return "compute" if config.use_compute_api else "jes"
        if config.server_type == ServerType.SAS9 and config.username and config.password:
            return "sas9"
        if config.server_type == ServerType.SASJS:
            return "sasjs"
        return "web"

    def get_executor(self, config: ClientConfig | None = None) -> JobExecutor:
        """Return the executor used for `config`, creating it on first use."""
        config = config or self.config
        kind = self._executor_kind(config)
        executor = self._executors.get(kind)
        if executor is not None:
            return executor

        if kind == "compute":
            executor = ComputeJobExecutor(
                config.server_url,
                self.history,
                self.request_client,
                self._get_session_manager(config),
                self.locator,
            )
        elif kind == "jes":
            executor = JesJobExecutor(config.server_url, self.history, self.request_client, self.locator)
        elif kind == "sas9":
            executor = Sas9JobExecutor(config.server_url, config.path_sas9, self.history, self._get_sas9_client())
        elif kind == "sasjs":
            executor = SasjsJobExecutor(config.server_url, config.path_sasjs, self.history, self.request_client)
        else:
            locator = self.locator if config.server_type == ServerType.SASVIYA else None
            executor = WebJobExecutor(
                config.server_url,
                config.server_type,
                config.jobs_path,
                self.history,
                self.request_client,
                locator,
            )
        self._executors[kind] = executor
        return executor

    # ------------------------------------------------------------------
    # Public API.
    # ------------------------------------------------------------------
    async def request(
        self,
        sas_job: str,
        data: Mapping[str, Any] | None,
        config_overrides: Mapping[str, Any] | None = None,
        login_required_callback: LoginRequiredCallback | None = None,
        auth_config: AuthConfig | None = None,
        extra_response_attributes: Sequence[ExtraResponseAttribute | str] = (),
    ) -> Any:
        """
        Run a job and return its result.

        Tables in `data` are validated before any request is sent. The result
        is the parsed job output, or a mapping with `result` plus the
        requested extra attributes.
        """

        config = self.config.merged(**dict(config_overrides or {}))
        is_valid, message = validate_input(data)
        if not is_valid:
            raise ArgumentError(message)

        executor = self.get_executor(config)
        if config.debug:
            logger.info("Executing %s with %s.", sas_job, type(executor).__name__)
        return await executor.execute(
            sas_job,
            data,
            config,
            login_required_callback=login_required_callback,
            auth_config=auth_config,
            extra_response_attributes=extra_response_attributes,
        )

    async def upload_file(
        self,
        sas_job: str,
        files: Sequence[UploadFile],
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        uploader = FileUploader(
            self.config.server_url,
            self.config.jobs_path,
            self.request_client,
            self.config.app_loc,
            server_type=self.config.server_type,
            history=self.history,
        )
        return await uploader.upload_file(
            sas_job,
            files,
            params,
            debug=self.config.debug,
            context_name=self.config.context_name,
        )

    async def resend_waiting_requests(self) -> None:
        """Replay requests parked while a login was required."""
        for executor in list(self._executors.values()):
            await executor.resend_waiting_requests()

    def get_sas_requests(self) -> list[SasjsRequest]:
        return self.history.get_requests()

    def clear_sas_requests(self) -> None:
        self.history.clear()

    def set_debug_state(self, value: bool) -> None:
        self.config.debug = value
        if self._session_manager is not None:
            self._session_manager.debug = value

    def get_csrf_token(self, kind: str = "general") -> CsrfToken | None:
        return self.request_client.get_csrf_token(kind)

    def log_out(self) -> None:
        """Forget CSRF tokens learned for the current login."""
        self.request_client.clear_csrf_tokens()

    async def aclose(self) -> None:
        if self._session_manager is not None:
            await self._session_manager.aclose()
        if self._sas9_client is not None:
            await self._sas9_client.aclose()
        await self.request_client.aclose()
