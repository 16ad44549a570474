from __future__ import annotations

"""Job executors for each server flavor and execution route.

Every executor shares the same outer behavior, implemented by `JobExecutor`:
- a `LoginRequiredError` parks the call in a FIFO queue and notifies the
  caller's login callback; `resend_waiting_requests()` replays the queue
- a `JobExecutionError` parsed from a response is recorded in the request
  history before it propagates
"""

import asyncio
import inspect
import json
import logging
import re
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Iterable, Mapping, Sequence
from urllib.parse import urlencode

from .auth import AuthConfig, get_tokens
from .config import ClientConfig
from .errors import (
    ArgumentError,
    JobExecutionError,
    LoginRequiredError,
    SASjsError,
    WeboutResponseError,
)
from .history import RequestHistory
from .models import (
    ExtraResponseAttribute,
    Job,
    ParsedResponse,
    PollOptions,
    SasjsRequest,
    ServerType,
    UploadFile,
    WaitingRequest,
)
from .polling import poll_job_state
from .request import RequestClient, Sas9RequestClient
from .sessions import SessionManager
from .tables import convert_to_csv, format_data_for_request, is_formats_table
from .utils import (
    compose_program_path,
    find_viya_debug_url,
    get_valid_json,
    parse_sas_viya_log,
    parse_webout_response,
)
from .viya import (
    ViyaJobLocator,
    encode_script_tables,
    encode_tables,
    execute_script,
    split_job_path,
    upload_tables,
    webin_arguments,
)

logger = logging.getLogger(__name__)

FILE_UPLOAD_THRESHOLD = 500000
DEBUG_LEVEL = 131

LoginRequiredCallback = Callable[[bool], Any]


# ---------------------------------------------------------------------------
# Shared helpers.
# ---------------------------------------------------------------------------
def append_extra_response_attributes(
    response: Mapping[str, Any],
    attributes: Iterable[ExtraResponseAttribute | str] = (),
) -> Any:
    """
    Merge requested response attributes next to the result.

    Without attributes the bare result is returned.
    """

    requested = [ExtraResponseAttribute(attribute).value for attribute in attributes or ()]
    if not requested:
        return response.get("result")
    merged: dict[str, Any] = {"result": response.get("result")}
    for name in requested:
        merged[name] = response.get(name)
    return merged


def build_csv_files(data: Mapping[str, Any]) -> list[tuple[str, tuple[str, str, str]]]:
    """Encode each table as a `<name>.csv` multipart file field."""
    files: list[tuple[str, tuple[str, str, str]]] = []
    for table_name, rows in data.items():
        if is_formats_table(table_name) or not isinstance(rows, list):
            continue
        csv = convert_to_csv(data, table_name)
        files.append((table_name, (f"{table_name}.csv", csv, "application/csv")))
    return files


def _access_token(auth_config: AuthConfig | None) -> str | None:
    return auth_config.access_token if auth_config is not None else None


def _parse_result(result: Any) -> Any:
    if isinstance(result, str):
        return get_valid_json(result) if result.strip() else None
    return result


async def _notify_login_required(callback: LoginRequiredCallback) -> None:
    outcome = callback(True)
    if inspect.isawaitable(outcome):
        await outcome


class JobExecutor(ABC):
    """Base class holding the waiting-request queue and request history."""

    def __init__(
        self,
        server_url: str,
        server_type: ServerType,
        history: RequestHistory,
        request_client: RequestClient,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.server_type = server_type
        self.history = history
        self.request_client = request_client
        self._waiting_requests: deque[WaitingRequest] = deque()

    @property
    def waiting_request_count(self) -> int:
        return len(self._waiting_requests)

    def get_requests(self) -> list[SasjsRequest]:
        return self.history.get_requests()

    def clear_requests(self) -> None:
        self.history.clear()

    async def execute(
        self,
        sas_job: str,
        data: Mapping[str, Any] | None,
        config: ClientConfig,
        *,
        login_required_callback: LoginRequiredCallback | None = None,
        auth_config: AuthConfig | None = None,
        extra_response_attributes: Sequence[ExtraResponseAttribute | str] = (),
    ) -> Any:
        """
        Run `sas_job` and return its result.

        When the server demands a login and a callback was given, the call is
        queued, the callback is invoked with `True`, and this coroutine waits
        until `resend_waiting_requests()` settles it.
        """

        attributes = tuple(ExtraResponseAttribute(item) for item in extra_response_attributes)
        try:
            return await self._run(sas_job, data, config, auth_config, attributes)
        except LoginRequiredError:
            if login_required_callback is None:
                raise

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._waiting_requests.append(
            WaitingRequest(
                sas_job=sas_job,
                data=data,
                config=config,
                future=future,
                login_required_callback=login_required_callback,
                auth_config=auth_config,
                extra_response_attributes=attributes,
            )
        )
        logger.info("Login required for %s; request queued.", sas_job)
        await _notify_login_required(login_required_callback)
        return await future

    async def resend_waiting_requests(self) -> None:
        """Replay queued requests in the order they were queued."""
        pending, self._waiting_requests = self._waiting_requests, deque()
        while pending:
            waiting = pending.popleft()
            if waiting.future.done():
                continue
            try:
                result = await self._run(
                    waiting.sas_job,
                    waiting.data,
                    waiting.config,
                    waiting.auth_config,
                    waiting.extra_response_attributes,
                )
            except LoginRequiredError:
                self._waiting_requests.append(waiting)
                await _notify_login_required(waiting.login_required_callback)
            except Exception as exc:
                waiting.future.set_exception(exc)
            else:
                waiting.future.set_result(result)

    async def _run(
        self,
        sas_job: str,
        data: Mapping[str, Any] | None,
        config: ClientConfig,
        auth_config: AuthConfig | None,
        attributes: tuple[ExtraResponseAttribute, ...],
    ) -> Any:
        try:
            return await self._execute(sas_job, data, config, auth_config, attributes)
        except JobExecutionError as exc:
            self.history.append(exc.result if exc.result is not None else str(exc), sas_job, config.debug)
            raise

    @abstractmethod
    async def _execute(
        self,
        sas_job: str,
        data: Mapping[str, Any] | None,
        config: ClientConfig,
        auth_config: AuthConfig | None,
        attributes: tuple[ExtraResponseAttribute, ...],
    ) -> Any:
        raise NotImplementedError

    def _poll_options(self, config: ClientConfig) -> PollOptions:
        return PollOptions(max_poll_count=config.max_poll_count, poll_interval=config.poll_interval)

    def _request_params(self, config: ClientConfig) -> dict[str, Any]:
        if not config.debug:
            return {}
        return {"_omittextlog": "false", "_omitsessionresults": "false", "_debug": DEBUG_LEVEL}


# ---------------------------------------------------------------------------
# Viya REST routes.
# ---------------------------------------------------------------------------
class ComputeJobExecutor(JobExecutor):
    """Runs job definitions through pooled compute sessions."""

    def __init__(
        self,
        server_url: str,
        history: RequestHistory,
        request_client: RequestClient,
        session_manager: SessionManager,
        locator: ViyaJobLocator,
    ) -> None:
        super().__init__(server_url, ServerType.SASVIYA, history, request_client)
        self.session_manager = session_manager
        self.locator = locator

    async def _execute(
        self,
        sas_job: str,
        data: Mapping[str, Any] | None,
        config: ClientConfig,
        auth_config: AuthConfig | None,
        attributes: tuple[ExtraResponseAttribute, ...],
    ) -> Any:
        tables = encode_script_tables(data) if data else None
        if auth_config is not None:
            auth_config = await get_tokens(self.request_client, auth_config)
        access_token = _access_token(auth_config)

        job = await self.locator.get_job(sas_job, access_token)
        code = await self.locator.get_job_code(job, access_token)
        lines_of_code = code.replace("\r\n", "\n").split("\n")

        outcome = await execute_script(
            self.request_client,
            self.session_manager,
            self.locator.root_folder,
            sas_job,
            lines_of_code,
            config.context_name,
            auth_config=auth_config,
            tables=tables,
            debug=config.debug,
            poll_options=self._poll_options(config),
        )
        result = _parse_result(outcome.result)
        self.history.append(ParsedResponse(result=result, log=outcome.log), sas_job, config.debug)
        return append_extra_response_attributes({"result": result, "log": outcome.log}, attributes)


class JesJobExecutor(JobExecutor):
    """Submits Job Execution Service jobs against deployed job definitions."""

    def __init__(
        self,
        server_url: str,
        history: RequestHistory,
        request_client: RequestClient,
        locator: ViyaJobLocator,
    ) -> None:
        super().__init__(server_url, ServerType.SASVIYA, history, request_client)
        self.locator = locator

    async def _execute(
        self,
        sas_job: str,
        data: Mapping[str, Any] | None,
        config: ClientConfig,
        auth_config: AuthConfig | None,
        attributes: tuple[ExtraResponseAttribute, ...],
    ) -> Any:
        tables = encode_tables(data, as_files=True) if data else None
        if auth_config is not None:
            auth_config = await get_tokens(self.request_client, auth_config)
        access_token = _access_token(auth_config)

        folder_path, job_name = split_job_path(sas_job, self.locator.root_folder)
        job = await self.locator.get_job(sas_job, access_token)
        files = await upload_tables(self.request_client, tables.files, access_token) if tables else []
        definition = await self.locator.get_job_definition(job, access_token)

        arguments: dict[str, Any] = {
            "_contextName": config.context_name,
            "_program": f"{folder_path}/{job_name}",
            "_OMITJSONLISTING": True,
            "_OMITJSONLOG": True,
            "_OMITSESSIONRESULTS": True,
            "_OMITTEXTLISTING": True,
            "_OMITTEXTLOG": True,
        }
        if config.debug:
            arguments["_OMITTEXTLOG"] = "false"
            arguments["_OMITSESSIONRESULTS"] = "false"
            arguments["_DEBUG"] = DEBUG_LEVEL
        arguments.update(webin_arguments(files))

        body = {
            "name": f"exec-{job_name}",
            "description": "Powered by SASjs",
            "jobDefinition": definition,
            "arguments": arguments,
        }
        response = await self.request_client.post("/jobExecution/jobs?_action=wait", body, access_token)
        if not isinstance(response.result, dict):
            raise SASjsError("Unexpected response while posting a job.")
        posted_job = Job.from_dict(response.result)

        job_state = await poll_job_state(
            self.request_client,
            posted_job,
            config.debug,
            etag=response.etag,
            auth_config=auth_config,
            poll_options=self._poll_options(config),
        )

        response = await self.request_client.get(f"/jobExecution/jobs/{posted_job.id}", access_token)
        current_job = Job.from_dict(response.result if isinstance(response.result, dict) else {})

        raw_result: Any = None
        result_link = current_job.results.get("_webout.json")
        if result_link:
            webout = await self.request_client.get(f"{result_link}/content", access_token, "text/plain")
            raw_result = webout.result

        log = ""
        log_link = current_job.link("log")
        if config.debug and log_link is not None:
            log_response = await self.request_client.get(f"{log_link.href}/content", access_token)
            log = parse_sas_viya_log(log_response.result)

        if job_state == "failed":
            error = current_job.error or {}
            raise JobExecutionError(error.get("errorCode", ""), str(error.get("message", "")), log)

        result = _parse_result(raw_result)
        self.history.append(ParsedResponse(result=result, log=log), sas_job, config.debug)
        return append_extra_response_attributes({"result": result, "log": log}, attributes)


# ---------------------------------------------------------------------------
# Job runner routes.
# ---------------------------------------------------------------------------
class WebJobExecutor(JobExecutor):
    """Posts directly to the job runner endpoint of a Viya or SAS 9 server."""

    def __init__(
        self,
        server_url: str,
        server_type: ServerType,
        jobs_path: str,
        history: RequestHistory,
        request_client: RequestClient,
        locator: ViyaJobLocator | None = None,
    ) -> None:
        super().__init__(server_url, server_type, history, request_client)
        self.jobs_path = jobs_path
        self.locator = locator

    async def _job_uri(self, sas_job: str, access_token: str | None) -> str:
        if self.locator is None:
            return ""
        return await self.locator.get_job_uri(sas_job, access_token)

    def _uses_file_upload(self, data: Mapping[str, Any]) -> bool:
        if self.server_type in (ServerType.SAS9, ServerType.SASJS):
            return True
        serialized = json.dumps(data)
        return len(serialized) > FILE_UPLOAD_THRESHOLD or ";" in serialized

    async def _execute(
        self,
        sas_job: str,
        data: Mapping[str, Any] | None,
        config: ClientConfig,
        auth_config: AuthConfig | None,
        attributes: tuple[ExtraResponseAttribute, ...],
    ) -> Any:
        params = self._request_params(config)
        files: list[tuple[str, tuple[str, str, str]]] = []
        if data:
            if self._uses_file_upload(data):
                files = build_csv_files(data)
            else:
                params.update(format_data_for_request(data))

        access_token = _access_token(auth_config)
        program = compose_program_path(config.app_loc, sas_job)
        api_url = f"{self.jobs_path}/?_program={program}"

        if self.server_type == ServerType.SASVIYA:
            job_uri = await self._job_uri(sas_job, access_token)
            if job_uri:
                api_url = api_url.replace("_program=", "__program=") + f"&_job={job_uri}"
            if config.context_name and not re.search(r"\s", config.context_name):
                api_url += f"&_contextname={config.context_name}"

        response = await self.request_client.post(
            api_url,
            params or None,
            access_token,
            "multipart/form-data",
            files=files or None,
            debug=config.debug,
        )
        self.history.append(response, sas_job, config.debug)

        result = response.result
        if config.debug and isinstance(result, str):
            if self.server_type == ServerType.SASVIYA:
                result = await self._fetch_debug_result(result)
            else:
                webout = parse_webout_response(result)
                if not webout:
                    raise WeboutResponseError(api_url)
                result = get_valid_json(webout)

        return append_extra_response_attributes({"result": result, "log": response.log}, attributes)

    async def _fetch_debug_result(self, page: str) -> Any:
        """Read the webout file referenced by a Viya debug page."""
        url = find_viya_debug_url(page)
        if not url:
            raise SASjsError("Unable to find webout file URL.")
        response = await self.request_client.get(url, None, "text/plain")
        return get_valid_json(response.result)


class Sas9JobExecutor(JobExecutor):
    """Runs SAS 9 stored processes with username/password sign-in."""

    def __init__(
        self,
        server_url: str,
        jobs_path: str,
        history: RequestHistory,
        request_client: Sas9RequestClient,
    ) -> None:
        super().__init__(server_url, ServerType.SAS9, history, request_client)
        self.sas9_client = request_client
        self.jobs_path = jobs_path

    async def _execute(
        self,
        sas_job: str,
        data: Mapping[str, Any] | None,
        config: ClientConfig,
        auth_config: AuthConfig | None,
        attributes: tuple[ExtraResponseAttribute, ...],
    ) -> Any:
        if not (config.username and config.password):
            raise ArgumentError("A username and password are required to run SAS 9 jobs.")

        query: dict[str, Any] = {"_program": compose_program_path(config.app_loc, sas_job)}
        query["_username"] = config.username
        query["_password"] = config.password
        if config.debug:
            query["_debug"] = DEBUG_LEVEL
        api_url = f"{self.jobs_path}?{urlencode(query, safe='/')}"

        files = build_csv_files(data) if data else []
        params = {"_debug": DEBUG_LEVEL} if config.debug else None

        client = self.sas9_client
        await client.login(config.username, config.password, self.jobs_path)

        response = await client.post(
            api_url,
            params,
            None,
            "multipart/form-data",
            {"Accept": "*/*", "Connection": "Keep-Alive"},
            files=files or None,
            debug=config.debug,
        )
        self.history.append(response, sas_job, config.debug)
        return append_extra_response_attributes({"result": response.result, "log": response.log}, attributes)


class SasjsJobExecutor(JobExecutor):
    """Runs stored programs on a SASjs server."""

    def __init__(
        self,
        server_url: str,
        jobs_path: str,
        history: RequestHistory,
        request_client: RequestClient,
    ) -> None:
        super().__init__(server_url, ServerType.SASJS, history, request_client)
        self.jobs_path = jobs_path

    async def _execute(
        self,
        sas_job: str,
        data: Mapping[str, Any] | None,
        config: ClientConfig,
        auth_config: AuthConfig | None,
        attributes: tuple[ExtraResponseAttribute, ...],
    ) -> Any:
        program = compose_program_path(config.app_loc, sas_job)
        api_url = f"{self.jobs_path}/?_program={program}"
        files = build_csv_files(data) if data else []

        response = await self.request_client.post(
            api_url,
            self._request_params(config) or None,
            _access_token(auth_config),
            "multipart/form-data",
            files=files or None,
            debug=config.debug,
        )

        webout, log = response.result, response.log or ""
        if isinstance(webout, Mapping) and "_webout" in webout:
            lines = webout.get("log") or []
            log = "\n".join(str(line.get("line", "")) for line in lines if isinstance(line, Mapping))
            webout = webout["_webout"]

        if webout is None or (isinstance(webout, str) and not webout.strip()):
            raise JobExecutionError(
                0,
                f"No webout was returned by job {program}.  Please check the SAS log for more info.",
                log,
            )

        if isinstance(webout, str):
            embedded = parse_webout_response(webout) if config.debug else ""
            result = get_valid_json(embedded or webout)
        else:
            result = webout

        self.history.append(ParsedResponse(result=result, log=log), sas_job, config.debug)
        return append_extra_response_attributes(
            {"result": result, "log": log, "output": response.print_output}, attributes
        )


# ---------------------------------------------------------------------------
# File uploads.
# ---------------------------------------------------------------------------
class FileUploader:
    """Uploads arbitrary files to a job through the job runner."""

    def __init__(
        self,
        server_url: str,
        jobs_path: str,
        request_client: RequestClient,
        app_loc: str = "",
        *,
        server_type: ServerType = ServerType.SASVIYA,
        history: RequestHistory | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.jobs_path = jobs_path
        self.request_client = request_client
        self.app_loc = app_loc
        self.server_type = server_type
        self.history = history

    async def upload_file(
        self,
        sas_job: str,
        files: Sequence[UploadFile],
        params: Mapping[str, Any] | None = None,
        *,
        debug: bool = False,
        context_name: str = "",
    ) -> Any:
        if not files:
            raise ArgumentError("At least one file must be provided.")
        if not sas_job:
            raise ArgumentError("sasJob must be provided.")

        query: dict[str, Any] = {"_program": compose_program_path(self.app_loc, sas_job)}
        query.update(params or {})
        upload_url = f"{self.jobs_path}/?{urlencode(query, safe='/')}"

        form: dict[str, str] = {}
        token = self.request_client.get_csrf_token("file")
        if token is not None:
            form["_csrf"] = token.value
        if debug:
            form["_debug"] = str(DEBUG_LEVEL)
        if self.server_type == ServerType.SASVIYA and context_name:
            form["_contextname"] = context_name

        multipart = [("file", (item.file_name, item.content, item.content_type)) for item in files]
        headers = {"cache-control": "no-cache", "Accept": "*/*"}
        try:
            response = await self.request_client.post(
                upload_url, form, None, "multipart/form-data", headers, files=multipart, debug=debug
            )
        except JobExecutionError as exc:
            if self.history is not None:
                self.history.append(exc.result if exc.result is not None else str(exc), sas_job, debug)
            raise

        if self.history is not None:
            self.history.append(response, sas_job, debug)

        result = response.result
        if not isinstance(result, str):
            return result
        if debug and self.server_type == ServerType.SASVIYA:
            url = find_viya_debug_url(result)
            if not url:
                raise SASjsError("Unable to find webout file URL.")
            webout = await self.request_client.get(url, None, "text/plain")
            return get_valid_json(webout.result)
        if debug and self.server_type == ServerType.SAS9:
            webout = parse_webout_response(result)
            if not webout:
                raise WeboutResponseError(upload_url)
            return get_valid_json(webout)
        return get_valid_json(result)
