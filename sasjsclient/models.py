from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


class ServerType(str, Enum):
    """Supported server flavors."""

    SASVIYA = "SASVIYA"
    SAS9 = "SAS9"
    SASJS = "SASJS"


class ExtraResponseAttribute(str, Enum):
    """Job Execution response attributes that can be merged into results."""

    FILE = "file"
    DATA = "data"
    OUTPUT = "output"


@dataclass(frozen=True)
class CsrfToken:
    """Anti-forgery header learned from a 403/449 challenge."""

    header_name: str
    value: str


@dataclass
class Link:
    rel: str
    href: str
    method: str = "GET"
    uri: str = ""
    type: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Link":
        return cls(
            rel=str(payload.get("rel", "")),
            href=str(payload.get("href", "")),
            method=str(payload.get("method", "GET")),
            uri=str(payload.get("uri", "")),
            type=str(payload.get("type", "")),
        )


def _parse_links(payload: Any) -> list[Link]:
    """Build typed links from a resource's `links` collection."""
    if not isinstance(payload, list):
        return []
    return [Link.from_dict(item) for item in payload if isinstance(item, Mapping)]


def _find_link(links: list[Link], rel: str) -> Link | None:
    for link in links:
        if link.rel == rel:
            return link
    return None


def _parse_timestamp(value: str) -> datetime | None:
    """Parse ISO-8601 timestamps as returned by the compute service."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Context:
    """Named compute context on a Viya server."""

    id: str
    name: str
    created_by: str = ""
    version: int = 0

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Context":
        return cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name", "")),
            created_by=str(payload.get("createdBy", "")),
            version=int(payload.get("version", 0) or 0),
        )


@dataclass
class Session:
    """Live execution context bound to one compute context."""

    id: str
    state: str = ""
    links: list[Link] = field(default_factory=list)
    creation_time_stamp: str = ""
    inactive_timeout: int | None = None
    etag: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], etag: str = "") -> "Session":
        attributes = payload.get("attributes") or {}
        timeout = attributes.get("sessionInactiveTimeout") if isinstance(attributes, Mapping) else None
        return cls(
            id=str(payload.get("id", "")),
            state=str(payload.get("state", "") or ""),
            links=_parse_links(payload.get("links")),
            creation_time_stamp=str(payload.get("creationTimeStamp", "") or ""),
            inactive_timeout=int(timeout) if timeout is not None else None,
            etag=etag,
        )

    def link(self, rel: str) -> Link | None:
        return _find_link(self.links, rel)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return whether the session has outlived its inactivity timeout."""
        if self.inactive_timeout is None:
            return False
        created = _parse_timestamp(self.creation_time_stamp)
        if created is None:
            return False
        current = now or datetime.now(timezone.utc)
        return (current - created).total_seconds() >= self.inactive_timeout


@dataclass
class Job:
    """Unit of remote execution created by a job executor."""

    id: str
    name: str = ""
    uri: str = ""
    state: str = ""
    code: str = ""
    links: list[Link] = field(default_factory=list)
    results: dict[str, str] = field(default_factory=dict)
    log_line_count: int | None = None
    error: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Job":
        statistics = payload.get("logStatistics") or {}
        line_count = statistics.get("lineCount") if isinstance(statistics, Mapping) else None
        results = payload.get("results") or {}
        error = payload.get("error")
        return cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name", "") or ""),
            uri=str(payload.get("uri", "") or ""),
            state=str(payload.get("state", "") or ""),
            code=str(payload.get("code", "") or ""),
            links=_parse_links(payload.get("links")),
            results=dict(results) if isinstance(results, Mapping) else {},
            log_line_count=int(line_count) if line_count is not None else None,
            error=dict(error) if isinstance(error, Mapping) else None,
            raw=dict(payload),
        )

    def link(self, rel: str) -> Link | None:
        return _find_link(self.links, rel)


@dataclass
class ParsedResponse:
    """Result of one Request Client call."""

    result: Any
    etag: str = ""
    status: int = 0
    log: str | None = None
    print_output: str | None = None

    @property
    def has_log(self) -> bool:
        return bool(self.log)


@dataclass
class PollOptions:
    """Tuning for the state poller."""

    max_poll_count: int = 1000
    poll_interval: float = 0.3
    max_error_count: int = 5
    stream_log: bool = False
    log_folder_path: str | None = None
    poll_strategy: list["PollOptions"] | None = None

    def __post_init__(self) -> None:
        if self.max_poll_count < 1:
            raise ValueError("max_poll_count must be at least 1")
        if self.poll_interval < 0:
            raise ValueError("poll_interval cannot be negative")
        if self.max_error_count < 1:
            raise ValueError("max_error_count must be at least 1")


@dataclass
class SasjsRequest:
    """Diagnostic record of one past execution."""

    service_link: str
    timestamp: datetime
    source_code: str = ""
    generated_code: str = ""
    sas_work: Any = None
    log_file: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "serviceLink": self.service_link,
            "timestamp": self.timestamp.isoformat(),
            "sourceCode": self.source_code,
            "generatedCode": self.generated_code,
            "SASWORK": self.sas_work,
            "logFile": self.log_file,
        }


@dataclass
class WaitingRequest:
    """Deferred execute() call awaiting re-authentication."""

    sas_job: str
    data: Any
    config: Any
    future: "asyncio.Future[Any]"
    login_required_callback: Any = None
    auth_config: Any = None
    extra_response_attributes: tuple[ExtraResponseAttribute, ...] = ()


@dataclass
class UploadFile:
    """One file sent through the multipart upload endpoint."""

    file_name: str
    content: bytes | str
    content_type: str = "application/octet-stream"

    def __post_init__(self) -> None:
        if not self.file_name.strip():
            raise ValueError("file_name must be a non-empty string")
