from __future__ import annotations

"""HTTP request clients for SAS servers.

`RequestClient` wraps an `httpx.AsyncClient` and layers the conventions every
SAS server flavor shares on top of it:
- CSRF tokens learned from 403/449 challenges and replayed on later calls
- typed errors for login, authorization, missing resources and job failures
- opportunistic JSON/webout parsing of response bodies

`Sas9RequestClient` and `SasjsRequestClient` adjust redirects, headers and the
response envelope for their server flavors.
"""

import json
import ssl
import sys
from dataclasses import dataclass
from typing import Any, Mapping, TextIO
from urllib.parse import urlencode

import httpx

from .errors import (
    AuthorizeError,
    CertificateError,
    InternalServerError,
    InvalidCsrfError,
    JobExecutionError,
    LoginRequiredError,
    NotFoundError,
    RetryLimitError,
)
from .models import CsrfToken, ParsedResponse
from .utils import (
    is_login_required,
    needs_retry,
    parse_authorize_form,
    parse_webout_response,
)

SASJS_LOGS_SEPARATOR = "SASJS_LOGS_SEPARATOR_163ee17b6ff24f028928972d80a26784"
CSRF_KINDS = ("general", "file")
DEFAULT_TIMEOUT = httpx.Timeout(60.0, read=330.0)

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


class CsrfTokenStore:
    """Holds the CSRF token for each request class.

    Writes replace the whole mapping so concurrent readers never see a
    half-updated value.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, CsrfToken] = {}

    def get(self, kind: str = "general") -> CsrfToken | None:
        _check_kind(kind)
        return self._tokens.get(kind)

    def set(self, kind: str, token: CsrfToken) -> None:
        _check_kind(kind)
        self._tokens = {**self._tokens, kind: token}

    def clear(self) -> None:
        self._tokens = {}


def _check_kind(kind: str) -> None:
    if kind not in CSRF_KINDS:
        raise ValueError(f"unknown CSRF token kind: {kind}")


@dataclass
class _RetryBudget:
    """Retries still allowed for one logical call."""

    csrf: int = 1
    server: int = 5
    authorize: int = 1


def _is_certificate_failure(exc: BaseException) -> bool:
    """Walk the exception chain looking for a TLS verification failure."""
    current: BaseException | None = exc
    seen: set[int] = set()
    while current is not None and id(current) not in seen:
        if isinstance(current, ssl.SSLCertVerificationError):
            return True
        if "CERTIFICATE_VERIFY_FAILED" in str(current):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def _throw_if_error(result: Any, text: str) -> None:
    """Raise typed errors embedded in an otherwise successful response."""
    if isinstance(result, Mapping):
        entity_id = result.get("entityID")
        if isinstance(entity_id, str) and "login" in entity_id:
            raise LoginRequiredError()
        if result.get("auth_request"):
            options = result.get("options") or {}
            confirm = options.get("confirm") or {} if isinstance(options, Mapping) else {}
            raise AuthorizeError(str(result.get("message", "")), str(confirm.get("location", "")))

    error = parse_error(text)
    if error is not None:
        raise error


def parse_error(text: str) -> JobExecutionError | None:
    """Build a JobExecutionError from an `errorCode`/`message` body."""
    if not text:
        return None
    flattened = text.replace("\r", " ").replace("\n", " ")
    try:
        payload = json.loads(flattened)
    except ValueError:
        payload = None
    if isinstance(payload, Mapping):
        if payload.get("errorCode") and payload.get("message"):
            return JobExecutionError(payload["errorCode"], str(payload["message"]), flattened)
        return None

    marker = '{"errorCode'
    if marker not in text:
        return None
    fragment = marker + text.split(marker, 1)[1].split('"}', 1)[0] + '"}'
    try:
        embedded = json.loads(fragment.replace("\r", " ").replace("\n", " "))
    except ValueError:
        return None
    if not isinstance(embedded, Mapping):
        return None
    return JobExecutionError(embedded.get("errorCode", ""), str(embedded.get("message", "")), text)


class RequestClient:
    """Async HTTP client speaking the SAS server conventions."""

    log_prefix = "[sasjsclient]"

    def __init__(
        self,
        base_url: str = "",
        *,
        token_store: CsrfTokenStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        verify: bool = True,
        verbose: bool = False,
        verbose_stream: TextIO | None = None,
        max_server_retries: int = 5,
        follow_redirects: bool = True,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ) -> None:
        if max_server_retries < 0:
            raise ValueError("max_server_retries cannot be negative")
        self.base_url = base_url.rstrip("/")
        self.token_store = token_store if token_store is not None else CsrfTokenStore()
        self.verbose = verbose
        self.verbose_stream = verbose_stream
        self.max_server_retries = max_server_retries
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            verify=verify,
            follow_redirects=follow_redirects,
            timeout=timeout,
        )

    async def __aenter__(self) -> "RequestClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _verbose_log(self, message: str) -> None:
        """Emit verbose request traces when `verbose=True`."""
        if not self.verbose:
            return
        stream = self.verbose_stream if self.verbose_stream is not None else sys.stderr
        try:
            stream.write(f"{self.log_prefix} {message}\n")
            stream.flush()
        except Exception:
            pass

    # ------------------------------------------------------------------
    # CSRF token state.
    # ------------------------------------------------------------------
    def get_csrf_token(self, kind: str = "general") -> CsrfToken | None:
        return self.token_store.get(kind)

    def clear_csrf_tokens(self) -> None:
        self.token_store.clear()

    @staticmethod
    def _parse_csrf_token(response: httpx.Response) -> CsrfToken | None:
        header_name = response.headers.get("x-csrf-header")
        if not header_name:
            return None
        header_name = header_name.lower()
        return CsrfToken(header_name=header_name, value=response.headers.get(header_name, ""))

    # ------------------------------------------------------------------
    # Public verbs.
    # ------------------------------------------------------------------
    async def get(
        self,
        url: str,
        access_token: str | None = None,
        content_type: str = "application/json",
        headers: Mapping[str, str] | None = None,
        debug: bool = False,
    ) -> ParsedResponse:
        return await self._request(
            "GET", url, access_token=access_token, content_type=content_type, headers=headers, debug=debug
        )

    async def post(
        self,
        url: str,
        data: Any = None,
        access_token: str | None = None,
        content_type: str = "application/json",
        headers: Mapping[str, str] | None = None,
        files: Any = None,
        debug: bool = False,
    ) -> ParsedResponse:
        return await self._request(
            "POST",
            url,
            data=data,
            files=files,
            access_token=access_token,
            content_type=content_type,
            headers=headers,
            debug=debug,
        )

    async def put(
        self,
        url: str,
        data: Any,
        access_token: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> ParsedResponse:
        return await self._request("PUT", url, data=data, access_token=access_token, headers=headers)

    async def patch(self, url: str, data: Any = None, access_token: str | None = None) -> ParsedResponse:
        return await self._request("PATCH", url, data=data if data is not None else {}, access_token=access_token)

    async def delete(self, url: str, access_token: str | None = None) -> ParsedResponse:
        return await self._request("DELETE", url, access_token=access_token)

    async def upload_file(self, url: str, content: str | bytes, access_token: str | None = None) -> ParsedResponse:
        """Post raw file content, using the file-upload CSRF token."""
        return await self._request(
            "POST", url, data=content, access_token=access_token, csrf_kind="file"
        )

    # ------------------------------------------------------------------
    # Request pipeline.
    # ------------------------------------------------------------------
    def _get_headers(self, access_token: str | None, content_type: str, csrf_kind: str) -> dict[str, str]:
        headers: dict[str, str] = {}
        if content_type not in _FORM_CONTENT_TYPES:
            headers["Content-Type"] = content_type
        if content_type == "text/plain":
            headers["Accept"] = "*/*"
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        token = self.token_store.get("general")
        if token is not None and token.value:
            headers[token.header_name] = token.value
        if csrf_kind == "file":
            file_token = self.token_store.get("file")
            if file_token is not None and file_token.value:
                headers[file_token.header_name] = file_token.value
        return headers

    async def _send(
        self,
        method: str,
        url: str,
        *,
        data: Any,
        files: Any,
        headers: dict[str, str],
        content_type: str,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {"headers": headers}
        if files:
            kwargs["files"] = files
            if data:
                kwargs["data"] = {key: str(value) for key, value in data.items()}
        elif data is None:
            pass
        elif content_type == "multipart/form-data" and isinstance(data, Mapping) and data:
            kwargs["files"] = [(key, (None, str(value))) for key, value in data.items()]
        elif content_type in _FORM_CONTENT_TYPES and isinstance(data, Mapping):
            kwargs["data"] = {key: str(value) for key, value in data.items()}
        elif isinstance(data, (str, bytes)):
            kwargs["content"] = data
        else:
            kwargs["content"] = json.dumps(data)

        try:
            return await self._http.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            if _is_certificate_failure(exc):
                raise CertificateError(str(exc)) from exc
            self._verbose_log(f"{method} {url} failed: {exc}")
            raise

    async def _request(
        self,
        method: str,
        url: str,
        *,
        data: Any = None,
        files: Any = None,
        access_token: str | None = None,
        content_type: str = "application/json",
        headers: Mapping[str, str] | None = None,
        csrf_kind: str = "general",
        debug: bool = False,
    ) -> ParsedResponse:
        budget = _RetryBudget(server=self.max_server_retries)

        while True:
            request_headers = self._get_headers(access_token, content_type, csrf_kind)
            if headers:
                request_headers.update(headers)

            response = await self._send(
                method,
                url,
                data=data,
                files=files,
                headers=request_headers,
                content_type=content_type,
            )
            self._verbose_log(f"{method} {url} -> {response.status_code}")

            redirected = await self._on_redirect(response, access_token, content_type, headers)
            if redirected is not None:
                return redirected

            status = response.status_code
            if status in (403, 449):
                token = self._parse_csrf_token(response)
                if token is None:
                    response.raise_for_status()
                self.token_store.set(csrf_kind, token)
                if budget.csrf > 0:
                    budget.csrf -= 1
                    self._verbose_log(f"retrying {method} {url} with refreshed CSRF token")
                    continue
                raise InvalidCsrfError()

            if status == 401:
                self.token_store.clear()
                raise LoginRequiredError()
            if status == 404:
                raise NotFoundError(url)
            if status == 502:
                if debug:
                    raise InternalServerError()
                return ParsedResponse(result=None, etag="", status=status)

            text = response.text
            if status >= 400 and "invalid_grant" in text:
                self.token_store.clear()
                raise LoginRequiredError()

            if needs_retry(text):
                if budget.server > 0:
                    budget.server -= 1
                    self._verbose_log(f"server asked to retry {method} {url}")
                    continue
                raise RetryLimitError()

            if status >= 400:
                response.raise_for_status()

            if "application_authorization" in text and budget.authorize > 0:
                form = parse_authorize_form(text)
                if form is not None:
                    budget.authorize -= 1
                    await self._submit_authorize_form(form.action, form.fields)
                    continue

            if is_login_required(text):
                self.token_store.clear()
                raise LoginRequiredError()

            parsed = self._parse_response(response, content_type)
            try:
                _throw_if_error(parsed.result, text)
            except AuthorizeError as exc:
                if budget.authorize <= 0 or not exc.confirm_url:
                    raise
                budget.authorize -= 1
                await self._confirm_authorization(exc.confirm_url, access_token)
                continue
            return parsed

    async def _on_redirect(
        self,
        response: httpx.Response,
        access_token: str | None,
        content_type: str,
        headers: Mapping[str, str] | None,
    ) -> ParsedResponse | None:
        """Hook for clients that handle redirects themselves."""
        return None

    async def _confirm_authorization(self, confirm_url: str, access_token: str | None) -> None:
        self._verbose_log(f"confirming authorization at {confirm_url}")
        headers = self._get_headers(access_token, "application/json", "general")
        response = await self._http.post(confirm_url, content=json.dumps({"value": True}), headers=headers)
        response.raise_for_status()

    async def _submit_authorize_form(self, action: str, fields: Mapping[str, str]) -> None:
        self._verbose_log(f"submitting authorization form to {action}")
        response = await self._http.post(action, data=dict(fields))
        response.raise_for_status()

    def _parse_response(self, response: httpx.Response, content_type: str) -> ParsedResponse:
        """Parse JSON bodies, falling back to webout extraction and raw text."""
        etag = response.headers.get("etag", "")
        text = response.text
        if content_type == "text/plain" or not text:
            return ParsedResponse(result=text, etag=etag, status=response.status_code)

        try:
            return ParsedResponse(result=json.loads(text), etag=etag, status=response.status_code)
        except ValueError:
            pass

        webout = parse_webout_response(text)
        if webout:
            try:
                result = json.loads(webout)
            except ValueError:
                result = None
            if result is not None:
                return ParsedResponse(result=result, etag=etag, status=response.status_code, log=text)
        return ParsedResponse(result=text, etag=etag, status=response.status_code)


class Sas9RequestClient(RequestClient):
    """Request client for SAS 9 stored processes.

    Redirects are followed manually and session cookies are kept by the
    underlying client between calls.
    """

    def __init__(self, base_url: str = "", **kwargs: Any) -> None:
        kwargs["follow_redirects"] = False
        super().__init__(base_url, **kwargs)

    async def login(self, username: str, password: str, jobs_path: str) -> None:
        """Start a stored process session through the runner program."""
        code_injector_path = f"/User Folders/{username}/My Folder/sasjs/runner"
        self._http.cookies.clear()
        query = urlencode(
            {"_program": code_injector_path, "_username": username, "_password": password}
        )
        await self.get(f"{jobs_path}?{query}", None, "text/plain")

    async def _on_redirect(
        self,
        response: httpx.Response,
        access_token: str | None,
        content_type: str,
        headers: Mapping[str, str] | None,
    ) -> ParsedResponse | None:
        if response.status_code != 302:
            return None
        location = response.headers.get("location")
        if not location:
            return None
        return await self.get(location, access_token, content_type, headers)


class SasjsRequestClient(RequestClient):
    """Request client for SASjs server; splits log and print output."""

    def _get_headers(self, access_token: str | None, content_type: str, csrf_kind: str) -> dict[str, str]:
        headers: dict[str, str] = {}
        if content_type not in _FORM_CONTENT_TYPES:
            headers["Content-Type"] = content_type
        headers["Accept"] = content_type if content_type == "application/json" else "*/*"
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def _parse_response(self, response: httpx.Response, content_type: str) -> ParsedResponse:
        etag = response.headers.get("etag", "")
        text = response.text
        try:
            return ParsedResponse(result=json.loads(text), etag=etag, status=response.status_code)
        except ValueError:
            pass

        if SASJS_LOGS_SEPARATOR not in text:
            return ParsedResponse(result=text, etag=etag, status=response.status_code)

        parts = text.split(SASJS_LOGS_SEPARATOR)
        webout = parts[0]
        log_parts = parts[1:-1]
        print_output = parts[-1] if len(parts) > 1 else None
        return ParsedResponse(
            result=webout,
            etag=etag,
            status=response.status_code,
            log=SASJS_LOGS_SEPARATOR.join(log_parts) if log_parts else None,
            print_output=print_output or None,
        )
