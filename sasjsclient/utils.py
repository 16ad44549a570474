from __future__ import annotations

"""Parsing helpers for SAS responses, logs and server-rendered HTML pages."""

import json
import re
from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import Any, Mapping

from .errors import InvalidJsonError, JsonParseArrayError

WEBOUT_BEGIN = ">>weboutBEGIN<<"
WEBOUT_END = ">>weboutEND<<"

_LOGIN_FORM = re.compile(r"<form.+action=\"(.*Logon[^\"]*).*>")
_VIYA_IFRAME_START = re.compile(
    r'<iframe style="width: 99%; height: 500px" src="'
    r'|<iframe style="width: 99%; height: 500px; background-color:Canvas;" src='
)
_VIYA_IFRAME_END = re.compile(r'"></iframe>|></iframe>')


def parse_webout_response(response: str) -> str:
    """Return the text between webout markers, or an empty string."""
    if WEBOUT_BEGIN not in response:
        return ""
    return response.split(WEBOUT_BEGIN, 1)[1].split(WEBOUT_END, 1)[0]


def get_valid_json(value: Any) -> Any:
    """Parse a JSON string, passing mappings through and rejecting arrays."""
    if isinstance(value, list):
        raise JsonParseArrayError()
    if isinstance(value, Mapping):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if not isinstance(value, str):
        raise InvalidJsonError("Invalid JSON response.")
    try:
        return json.loads(value)
    except ValueError as exc:
        raise InvalidJsonError("Invalid JSON response.") from exc


def is_valid_json(value: str) -> bool:
    try:
        json.loads(value)
    except (TypeError, ValueError):
        return False
    return True


def is_login_required(response: str) -> bool:
    """Detect a SASLogon page served in place of the expected content."""
    return bool(_LOGIN_FORM.search(response))


def needs_retry(response_text: str) -> bool:
    """Detect body-signalled CSRF/authentication retries."""
    return (
        (
            '"errorCode":403' in response_text
            and "_csrf" in response_text
            and "X-CSRF-TOKEN" in response_text
        )
        or ('"status":403' in response_text and '"error":"Forbidden"' in response_text)
        or (
            '"status":449' in response_text
            and "Authentication success, retry original request" in response_text
        )
    )


def parse_source_code(log: str) -> str:
    """Keep numbered source lines echoed in a SAS log."""
    lines = [line for line in log.split("\n") if re.match(r"^\d", line.strip()[:10].lstrip())]
    return "\r\n".join(lines)


def parse_generated_code(log: str) -> str:
    """Keep macro-generated (MPRINT) lines from a SAS log."""
    lines = [line for line in log.split("\n") if line.strip().startswith("MPRINT")]
    return "\r\n".join(lines)


def parse_sas_viya_log(log_response: Any) -> str:
    """Join Viya log items into plain text."""
    if isinstance(log_response, Mapping) and isinstance(log_response.get("items"), list):
        return "\n".join(str(item.get("line", "")) for item in log_response["items"])
    if isinstance(log_response, str):
        return log_response
    return json.dumps(log_response)


def find_viya_debug_url(response: str) -> str | None:
    """Extract the webout file URL from a Viya debug page iframe."""
    parts = _VIYA_IFRAME_START.split(response, maxsplit=1)
    if len(parts) < 2:
        return None
    url = _VIYA_IFRAME_END.split(parts[1], maxsplit=1)[0]
    return url or None


def parse_sas_work(result: Any) -> Any:
    """Return the WORK library manifest attached to debug responses."""
    payload = result
    if isinstance(payload, str):
        webout = parse_webout_response(payload) or payload
        try:
            payload = json.loads(webout)
        except ValueError:
            return None
    if isinstance(payload, Mapping):
        return payload.get("WORK")
    return None


def is_relative_path(path: str) -> bool:
    return bool(path) and not path.startswith("/")


def compose_program_path(app_loc: str, sas_job: str) -> str:
    """Prefix relative job paths with the application location."""
    if not app_loc or not is_relative_path(sas_job):
        return sas_job
    return app_loc.rstrip("/") + "/" + sas_job


@dataclass
class AuthorizeForm:
    action: str
    fields: dict[str, str] = field(default_factory=dict)


class _AuthorizeFormParser(HTMLParser):
    """Collect the inputs of the `application_authorization` form."""

    def __init__(self) -> None:
        super().__init__()
        self.form: AuthorizeForm | None = None
        self._inside = False

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        attributes = {name: value or "" for name, value in attrs}
        if tag == "form" and attributes.get("id") == "application_authorization":
            self.form = AuthorizeForm(action=attributes.get("action", ""))
            self._inside = True
        elif tag == "input" and self._inside and self.form is not None:
            name = attributes.get("name")
            if name:
                value = "true" if name == "user_oauth_approval" else attributes.get("value", "")
                self.form.fields[name] = value

    def handle_endtag(self, tag: str) -> None:
        if tag == "form":
            self._inside = False


def parse_authorize_form(response: str) -> AuthorizeForm | None:
    """Find the OAuth approval form in an HTML page, approving it."""
    parser = _AuthorizeFormParser()
    parser.feed(response)
    parser.close()
    if parser.form is None or not parser.form.action:
        return None
    return parser.form
