from __future__ import annotations

"""Capped diagnostic history of executed requests."""

from collections import deque
from datetime import datetime, timezone
from typing import Any

from .models import ParsedResponse, SasjsRequest
from .utils import parse_generated_code, parse_sas_work, parse_source_code

DEFAULT_REQUEST_HISTORY_LIMIT = 20


def _log_text(response: Any) -> str:
    """Pick the most useful log text out of a response or raw payload."""
    if isinstance(response, ParsedResponse):
        if response.log:
            return response.log
        response = response.result
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    if isinstance(response, dict) and isinstance(response.get("log"), str):
        return response["log"]
    return str(response)


class RequestHistory:
    """Ring buffer of `SasjsRequest` records; the oldest entry is evicted first."""

    def __init__(self, limit: int = DEFAULT_REQUEST_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("request history limit must be at least 1")
        self._entries: deque[SasjsRequest] = deque(maxlen=limit)

    @property
    def limit(self) -> int:
        return self._entries.maxlen or DEFAULT_REQUEST_HISTORY_LIMIT

    def set_limit(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("request history limit must be at least 1")
        self._entries = deque(self._entries, maxlen=limit)

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, response: Any, service_link: str, debug: bool) -> SasjsRequest:
        """Record one execution; log sections are only parsed in debug mode."""
        log = _log_text(response)
        source_code = ""
        generated_code = ""
        sas_work = None
        if debug and log:
            source_code = parse_source_code(log)
            generated_code = parse_generated_code(log)
            result = response.result if isinstance(response, ParsedResponse) else response
            sas_work = parse_sas_work(result)

        entry = SasjsRequest(
            service_link=service_link,
            timestamp=datetime.now(timezone.utc),
            source_code=source_code,
            generated_code=generated_code,
            sas_work=sas_work,
            log_file=log,
        )
        self._entries.append(entry)
        return entry

    def get_requests(self) -> list[SasjsRequest]:
        """Return recorded requests, newest first."""
        return list(reversed(self._entries))

    def clear(self) -> None:
        self._entries.clear()
