from __future__ import annotations

from pathlib import Path

import pytest

from sasjsclient.config import ClientConfig, load_client_config
from sasjsclient.models import ServerType


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("SASJS_SERVER_URL", "SASJS_SERVER_TYPE", "SASJS_DEBUG"):
        monkeypatch.delenv(key, raising=False)


def test_load_client_config_reads_client_section(tmp_path: Path) -> None:
    path = tmp_path / "client.conf"
    path.write_text(
        "\n".join(
            [
                "[other]",
                "serverUrl = https://ignored.example.com",
                "[client]",
                "serverUrl = https://viya.example.com/   # trailing comment",
                "serverType = sasviya",
                "appLoc = /Public/app",
                "contextName = SAS Job Execution compute context",
                "useComputeApi = true",
                "debug = true",
                "pollInterval = 0.5",
                "maxPollCount = 25",
                "requestHistoryLimit = 5",
                "allowInsecureRequests = true",
                "somethingElse = ignored",
            ]
        ),
        encoding="utf-8",
    )

    cfg = load_client_config(str(path))

    assert cfg.server_url == "https://viya.example.com"
    assert cfg.server_type == ServerType.SASVIYA
    assert cfg.app_loc == "/Public/app"
    assert cfg.context_name == "SAS Job Execution compute context"
    assert cfg.use_compute_api is True
    assert cfg.debug is True
    assert cfg.poll_interval == 0.5
    assert cfg.max_poll_count == 25
    assert cfg.request_history_limit == 5
    assert cfg.allow_insecure_requests is True


def test_load_client_config_missing_file_yields_defaults(tmp_path: Path) -> None:
    cfg = load_client_config(str(tmp_path / "missing.conf"))

    assert cfg == ClientConfig()
    assert cfg.use_compute_api is None
    assert cfg.jobs_path == "/SASJobExecution"


def test_environment_overrides_file_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "client.conf"
    path.write_text("[client]\nserverUrl = https://file.example.com\ndebug = true\n", encoding="utf-8")
    monkeypatch.setenv("SASJS_SERVER_URL", "https://env.example.com/")
    monkeypatch.setenv("SASJS_SERVER_TYPE", "sas9")
    monkeypatch.setenv("SASJS_DEBUG", "false")

    cfg = load_client_config(str(path))

    assert cfg.server_url == "https://env.example.com"
    assert cfg.server_type == ServerType.SAS9
    assert cfg.debug is False
    assert cfg.jobs_path == "/SASStoredProcess/do"


def test_merged_applies_non_none_overrides() -> None:
    base = ClientConfig(server_url="https://viya.example.com", context_name="ctx")

    merged = base.merged(debug=True, context_name=None, use_compute_api=False)

    assert merged.debug is True
    assert merged.context_name == "ctx"
    assert merged.use_compute_api is False
    assert base.debug is False

    with pytest.raises(ValueError):
        base.merged(not_an_option=1)


def test_server_type_accepts_strings() -> None:
    cfg = ClientConfig(server_type="sasjs")  # type: ignore[arg-type]

    assert cfg.server_type == ServerType.SASJS
    assert cfg.jobs_path == "/SASjsApi/stp/execute"
