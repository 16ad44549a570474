from __future__ import annotations

"""Client configuration and the `client.conf` loader.

Only the `[client]` section is read. Environment variables can override the
server location, flavor and debug flag without editing the file.
"""

import os
import re
from dataclasses import dataclass, fields, replace
from typing import Any

from .models import ServerType

DEFAULT_CONFIG_PATH = os.path.join(os.path.expanduser("~"), ".sasjs", "client.conf")


@dataclass
class ClientConfig:
    """Recognized options for one client instance."""

    server_url: str = ""
    server_type: ServerType = ServerType.SASVIYA
    app_loc: str = ""
    path_sas9: str = "/SASStoredProcess/do"
    path_sasviya: str = "/SASJobExecution"
    path_sasjs: str = "/SASjsApi/stp/execute"
    context_name: str = ""
    use_compute_api: bool | None = None
    debug: bool = False
    poll_interval: float = 0.3
    max_poll_count: int = 1000
    request_history_limit: int = 20
    verbose: bool = False
    allow_insecure_requests: bool = False
    username: str | None = None
    password: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.server_type, ServerType):
            self.server_type = ServerType(str(self.server_type).upper())
        self.server_url = self.server_url.rstrip("/")

    @property
    def jobs_path(self) -> str:
        """Job runner path for the configured server flavor."""
        if self.server_type == ServerType.SAS9:
            return self.path_sas9
        if self.server_type == ServerType.SASJS:
            return self.path_sasjs
        return self.path_sasviya

    def merged(self, **overrides: Any) -> "ClientConfig":
        """Return a copy with non-None overrides applied."""
        known = {item.name for item in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"unknown configuration option(s): {', '.join(unknown)}")
        applied = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **applied)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def _parse_optional_bool(value: str) -> bool | None:
    if not value.strip():
        return None
    return _parse_bool(value)


def _strip_comments(record: str) -> str:
    hash_pos = record.find("#")
    if hash_pos == -1:
        return record
    return record[:hash_pos]


def load_client_config(path: str = DEFAULT_CONFIG_PATH) -> ClientConfig:
    """
    Parse client configuration from disk.

    A missing file yields the defaults. Unknown keys are ignored.
    """

    cfg = ClientConfig()
    if path and os.path.exists(path):
        section_re = re.compile(r"^\s*\[([^\]]+)\]\s*$")
        kv_re = re.compile(r"^\s*(\w+)\s*=\s*(.*?)\s*$")
        in_client_section = False

        with open(path, "r", encoding="utf-8") as fp:
            for raw_record in fp:
                record = _strip_comments(raw_record).strip()
                if not record:
                    continue

                section_match = section_re.match(record)
                if section_match:
                    in_client_section = section_match.group(1) == "client"
                    continue

                if not in_client_section:
                    continue

                kv_match = kv_re.match(record)
                if not kv_match:
                    continue

                key, value = kv_match.group(1), kv_match.group(2)
                if key == "serverUrl":
                    cfg.server_url = value.rstrip("/")
                elif key == "serverType":
                    cfg.server_type = ServerType(value.upper())
                elif key == "appLoc":
                    cfg.app_loc = value
                elif key == "contextName":
                    cfg.context_name = value
                elif key == "useComputeApi":
                    cfg.use_compute_api = _parse_optional_bool(value)
                elif key == "debug":
                    cfg.debug = _parse_bool(value)
                elif key == "pollInterval":
                    cfg.poll_interval = float(value)
                elif key == "maxPollCount":
                    cfg.max_poll_count = int(value)
                elif key == "requestHistoryLimit":
                    cfg.request_history_limit = int(value)
                elif key == "verbose":
                    cfg.verbose = _parse_bool(value)
                elif key == "allowInsecureRequests":
                    cfg.allow_insecure_requests = _parse_bool(value)

    server_url = os.environ.get("SASJS_SERVER_URL")
    if server_url:
        cfg.server_url = server_url.rstrip("/")
    server_type = os.environ.get("SASJS_SERVER_TYPE")
    if server_type:
        cfg.server_type = ServerType(server_type.strip().upper())
    debug = os.environ.get("SASJS_DEBUG")
    if debug is not None:
        cfg.debug = _parse_bool(debug)

    return cfg
