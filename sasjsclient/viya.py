from __future__ import annotations

"""SAS Viya REST helpers shared by the compute and job-execution executors."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from .auth import AuthConfig, get_tokens
from .errors import AuthenticationError, ComputeJobExecutionError, NotFoundError, SASjsError
from .models import Job, PollOptions
from .polling import DEFAULT_LOG_LINE_COUNT, fetch_log_by_chunks, poll_job_state
from .request import RequestClient
from .sessions import SessionManager
from .tables import convert_to_csv, format_data_for_request, is_formats_table
from .utils import is_relative_path

logger = logging.getLogger(__name__)

FILE_UPLOAD_URL = "/files/files#rawUpload"


def split_job_path(sas_job: str, root_folder: str) -> tuple[str, str]:
    """Split a job path into its absolute folder path and job name."""
    if is_relative_path(sas_job) and not root_folder:
        raise SASjsError("Relative paths cannot be used without specifying a root folder name.")
    folder, _, job_name = sas_job.rpartition("/")
    if is_relative_path(sas_job):
        folder = f"{root_folder.rstrip('/')}/{folder}" if folder else root_folder.rstrip("/")
    return folder, job_name


def program_path(sas_job: str, root_folder: str) -> str:
    if is_relative_path(sas_job) and root_folder:
        return f"{root_folder.rstrip('/')}/{sas_job}"
    return sas_job


@dataclass
class FolderMember:
    """Item listed inside a Viya folder."""

    name: str
    uri: str = ""
    content_type: str = ""
    links: list[dict[str, Any]] = field(default_factory=list)
    code: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FolderMember":
        return cls(
            name=str(payload.get("name", "")),
            uri=str(payload.get("uri", "") or ""),
            content_type=str(payload.get("contentType", "") or ""),
            links=[link for link in payload.get("links") or [] if isinstance(link, Mapping)],
        )

    def link_href(self, rel: str) -> str | None:
        for link in self.links:
            if link.get("rel") == rel:
                return str(link.get("href", ""))
        return None


class ViyaJobLocator:
    """Resolves job definitions by folder path, caching folder listings."""

    def __init__(self, request_client: RequestClient, server_url: str, root_folder: str) -> None:
        self.request_client = request_client
        self.server_url = server_url.rstrip("/")
        self.root_folder = root_folder
        self._folder_map: dict[str, list[FolderMember]] = {}

    async def _populate_folder(self, folder_path: str, access_token: str | None) -> list[FolderMember]:
        if folder_path in self._folder_map:
            return self._folder_map[folder_path]

        response = await self.request_client.get(f"/folders/folders/@item?path={folder_path}", access_token)
        folder = response.result
        if not isinstance(folder, Mapping) or not folder.get("id"):
            raise SASjsError(f"The path {folder_path} does not exist on {self.server_url}")

        limit = folder.get("memberCount") or 1000
        response = await self.request_client.get(
            f"/folders/folders/{folder['id']}/members?limit={limit}", access_token
        )
        items = response.result.get("items", []) if isinstance(response.result, Mapping) else []
        members = [FolderMember.from_dict(item) for item in items if isinstance(item, Mapping)]
        self._folder_map[folder_path] = members
        return members

    async def get_job(self, sas_job: str, access_token: str | None = None) -> FolderMember:
        folder_path, job_name = split_job_path(sas_job, self.root_folder)
        try:
            members = await self._populate_folder(folder_path, access_token)
        except NotFoundError as exc:
            raise SASjsError(f"The folder '{folder_path}' was not found on '{self.server_url}'") from exc
        for member in members:
            if member.name == job_name:
                return member
        raise SASjsError("Job was not found.")

    async def get_job_uri(self, sas_job: str, access_token: str | None = None) -> str:
        """Return the job definition URI, or an empty string if unknown."""
        try:
            job = await self.get_job(sas_job, access_token)
        except AuthenticationError:
            raise
        except SASjsError:
            return ""
        if job.content_type and job.content_type != "jobDefinition":
            return ""
        return job.uri

    async def get_job_definition(self, job: FolderMember, access_token: str | None = None) -> dict[str, Any]:
        href = job.link_href("getResource")
        if not href:
            raise SASjsError("URI of job definition was not found.")
        response = await self.request_client.get(href, access_token)
        if not isinstance(response.result, dict):
            raise SASjsError("Unexpected job definition response.")
        return response.result

    async def get_job_code(self, job: FolderMember, access_token: str | None = None) -> str:
        """Return the job's source code, fetching and caching its definition."""
        if job.code is None:
            definition = await self.get_job_definition(job, access_token)
            job.code = str(definition.get("code") or "")
        return job.code


@dataclass
class EncodedTables:
    """Tables encoded before any request is made.

    `fields` holds inline `sasjs<n>data` request fields; `files` maps table
    names to CSV text destined for the files service.
    """

    fields: dict[str, str | int] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)


def encode_tables(data: Mapping[str, Any], *, as_files: bool = False) -> EncodedTables:
    """Encode a table set up front so codec errors surface before any call."""
    if as_files:
        return EncodedTables(
            files={name: convert_to_csv(data, name) for name in data if not is_formats_table(name)}
        )
    return EncodedTables(fields=format_data_for_request(data))


async def upload_tables(
    request_client: RequestClient,
    tables: Mapping[str, str],
    access_token: str | None = None,
) -> list[dict[str, Any]]:
    """Upload encoded CSV tables to the Viya files service."""
    uploaded: list[dict[str, Any]] = []
    for table_name, csv in tables.items():
        response = await request_client.upload_file(FILE_UPLOAD_URL, csv, access_token)
        uploaded.append({"tableName": table_name, "file": response.result})
    return uploaded


def webin_arguments(files: list[dict[str, Any]]) -> dict[str, Any]:
    """Build the `_webin_*` variables describing uploaded tables."""
    arguments: dict[str, Any] = {"_webin_file_count": len(files)}
    for index, file_info in enumerate(files, start=1):
        file_id = (file_info.get("file") or {}).get("id", "")
        arguments[f"_webin_fileuri{index}"] = f"/files/files/{file_id}"
        arguments[f"_webin_name{index}"] = file_info["tableName"]
    return arguments


@dataclass
class ScriptResult:
    """Outcome of a compute script run."""

    result: Any
    log: str = ""
    job: Job | None = None


def encode_script_tables(data: Mapping[str, Any]) -> EncodedTables:
    """Encode tables for a compute job; semicolons force a file upload."""
    return encode_tables(data, as_files=";" in json.dumps(data))


async def execute_script(
    request_client: RequestClient,
    session_manager: SessionManager,
    root_folder: str,
    job_path: str,
    lines_of_code: list[str],
    context_name: str,
    *,
    auth_config: AuthConfig | None = None,
    data: Mapping[str, Any] | None = None,
    tables: EncodedTables | None = None,
    debug: bool = False,
    expect_webout: bool = True,
    poll_options: PollOptions | None = None,
    print_pid: bool = False,
    variables: Mapping[str, Any] | None = None,
) -> ScriptResult:
    """
    Run lines of SAS code in a pooled compute session.

    Pass either raw `data` or pre-encoded `tables`; raw data is encoded before
    any request is made. The session is cleared once the job has finished,
    whether it succeeded or not. Failed jobs raise `ComputeJobExecutionError`
    carrying the job and (in debug mode) its log.
    """

    if tables is None and data:
        tables = encode_script_tables(data)

    access_token = auth_config.access_token if auth_config else None
    if auth_config is not None:
        auth_config = await get_tokens(request_client, auth_config)
        access_token = auth_config.access_token

    session = await session_manager.get_session(access_token)
    try:
        return await _run_in_session(
            request_client,
            session_manager,
            session.id,
            root_folder,
            job_path,
            lines_of_code,
            context_name,
            auth_config=auth_config,
            access_token=access_token,
            tables=tables,
            debug=debug,
            expect_webout=expect_webout,
            poll_options=poll_options,
            print_pid=print_pid,
            variables=variables,
        )
    finally:
        await session_manager.clear_session(session.id, access_token)


async def _run_in_session(
    request_client: RequestClient,
    session_manager: SessionManager,
    session_id: str,
    root_folder: str,
    job_path: str,
    lines_of_code: list[str],
    context_name: str,
    *,
    auth_config: AuthConfig | None,
    access_token: str | None,
    tables: EncodedTables | None,
    debug: bool,
    expect_webout: bool,
    poll_options: PollOptions | None,
    print_pid: bool,
    variables: Mapping[str, Any] | None,
) -> ScriptResult:
    if print_pid:
        job_id_variable = await session_manager.get_variable(session_id, "SYSJOBID", access_token)
        if isinstance(job_id_variable, Mapping) and job_id_variable.get("value"):
            relative = job_path.replace(root_folder, "", 1).lstrip("/") if root_folder else job_path
            logger.info(
                "Triggered '%s' with PID %s at %s",
                relative,
                job_id_variable["value"],
                datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            )

    job_arguments: dict[str, Any] = {
        "_contextName": context_name,
        "_OMITJSONLISTING": True,
        "_OMITJSONLOG": True,
        "_OMITSESSIONRESULTS": True,
        "_OMITTEXTLISTING": True,
        "_OMITTEXTLOG": True,
    }
    if debug:
        job_arguments["_OMITTEXTLOG"] = False
        job_arguments["_OMITSESSIONRESULTS"] = False

    if is_relative_path(job_path):
        file_name = "exec-" + (job_path.split("/")[1] if "/" in job_path else job_path)
    else:
        file_name = job_path.rsplit("/", 1)[-1]

    job_variables: dict[str, Any] = {
        "SYS_JES_JOB_URI": "",
        "_program": program_path(job_path, root_folder),
    }
    if variables:
        job_variables.update(variables)
    if debug:
        job_variables["_DEBUG"] = 131

    if tables is not None:
        if tables.files:
            files = await upload_tables(request_client, tables.files, access_token)
            job_variables.update(webin_arguments(files))
        job_variables.update(tables.fields)

    job_body = {
        "name": file_name,
        "description": "Powered by SASjs",
        "code": lines_of_code,
        "variables": job_variables,
        "arguments": job_arguments,
    }
    response = await request_client.post(f"/compute/sessions/{session_id}/jobs", job_body, access_token)
    if not isinstance(response.result, dict):
        raise SASjsError("Unexpected response while posting a compute job.")
    posted_job = Job.from_dict(response.result)

    if debug:
        logger.info("Job has been submitted for '%s'.", file_name)

    job_state = await poll_job_state(
        request_client,
        posted_job,
        debug,
        etag=response.etag,
        auth_config=auth_config,
        poll_options=poll_options,
    )

    if auth_config is not None:
        auth_config = await get_tokens(request_client, auth_config)
        access_token = auth_config.access_token

    response = await request_client.get(f"/compute/sessions/{session_id}/jobs/{posted_job.id}", access_token)
    current_job = Job.from_dict(response.result if isinstance(response.result, dict) else {})
    log_link = current_job.link("log")

    log = ""
    if debug and log_link is not None:
        log = await fetch_log_by_chunks(
            request_client,
            access_token,
            f"{log_link.href}/content",
            current_job.log_line_count or DEFAULT_LOG_LINE_COUNT,
        )

    if job_state in ("failed", "error"):
        raise ComputeJobExecutionError(current_job, log)

    if not expect_webout:
        return ScriptResult(result=None, log=log, job=current_job)

    try:
        webout = await request_client.get(
            f"/compute/sessions/{session_id}/filerefs/_webout/content", access_token, "text/plain"
        )
    except NotFoundError as exc:
        if log_link is not None and not log:
            log = await fetch_log_by_chunks(
                request_client,
                access_token,
                f"{log_link.href}/content",
                current_job.log_line_count or DEFAULT_LOG_LINE_COUNT,
            )
        raise ComputeJobExecutionError(current_job, log) from exc

    return ScriptResult(result=webout.result, log=log, job=current_job)
