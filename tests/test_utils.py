from __future__ import annotations

import pytest

from sasjsclient.errors import InvalidJsonError, JsonParseArrayError
from sasjsclient.utils import (
    compose_program_path,
    find_viya_debug_url,
    get_valid_json,
    is_login_required,
    is_relative_path,
    is_valid_json,
    needs_retry,
    parse_authorize_form,
    parse_generated_code,
    parse_sas_viya_log,
    parse_sas_work,
    parse_source_code,
    parse_webout_response,
)


def test_parse_webout_response_between_markers() -> None:
    text = 'log\n>>weboutBEGIN<<{"a": 1}>>weboutEND<<\nmore log'

    assert parse_webout_response(text) == '{"a": 1}'
    assert parse_webout_response("no markers") == ""


def test_get_valid_json() -> None:
    assert get_valid_json('{"a": 1}') == {"a": 1}
    assert get_valid_json({"a": 1}) == {"a": 1}
    assert get_valid_json(b'{"b": 2}') == {"b": 2}

    with pytest.raises(JsonParseArrayError):
        get_valid_json([1, 2])
    with pytest.raises(InvalidJsonError):
        get_valid_json("{not json")
    with pytest.raises(InvalidJsonError):
        get_valid_json(42)

    assert is_valid_json('{"a": 1}')
    assert not is_valid_json("{")


def test_login_and_retry_detection() -> None:
    assert is_login_required('<form class="x" action="/SASLogon/login.do" method="post">')
    assert not is_login_required("<form action='/other'>")

    assert needs_retry('{"errorCode":403,"message":"_csrf X-CSRF-TOKEN missing"}')
    assert needs_retry('{"status":403,"error":"Forbidden"}')
    assert needs_retry('{"status":449,"message":"Authentication success, retry original request"}')
    assert not needs_retry('{"status":200}')


def test_log_section_parsers() -> None:
    log = "\n".join(
        [
            "NOTE: starting",
            "1          data a;",
            "2            set b;",
            "MPRINT(MM_WEBOUT):   proc json;",
            "  MPRINT(MM_WEBOUT):   run;",
        ]
    )

    assert parse_source_code(log) == "1          data a;\r\n2            set b;"
    assert parse_generated_code(log) == (
        "MPRINT(MM_WEBOUT):   proc json;\r\n  MPRINT(MM_WEBOUT):   run;"
    )


def test_parse_sas_viya_log_and_work() -> None:
    assert parse_sas_viya_log({"items": [{"line": "a"}, {"line": "b"}]}) == "a\nb"
    assert parse_sas_viya_log("plain") == "plain"

    assert parse_sas_work({"WORK": [{"LIBNAME": "WORK"}]}) == [{"LIBNAME": "WORK"}]
    assert parse_sas_work('>>weboutBEGIN<<{"WORK": []}>>weboutEND<<') == []
    assert parse_sas_work("not json") is None


def test_find_viya_debug_url_handles_both_iframe_styles() -> None:
    viya35 = '<iframe style="width: 99%; height: 500px" src="/files/files/abc/content"></iframe>'
    viya4 = (
        '<iframe style="width: 99%; height: 500px; background-color:Canvas;" '
        "src=/files/files/def/content></iframe>"
    )

    assert find_viya_debug_url(viya35) == "/files/files/abc/content"
    assert find_viya_debug_url(viya4) == "/files/files/def/content"
    assert find_viya_debug_url("<html></html>") is None


def test_program_paths() -> None:
    assert is_relative_path("common/appinit")
    assert not is_relative_path("/Public/app/common/appinit")
    assert not is_relative_path("")

    assert compose_program_path("/Public/app/", "common/appinit") == "/Public/app/common/appinit"
    assert compose_program_path("/Public/app", "/Other/job") == "/Other/job"
    assert compose_program_path("", "common/appinit") == "common/appinit"


def test_parse_authorize_form_approves_request() -> None:
    page = (
        "<html><body>"
        '<form id="application_authorization" action="/SASLogon/oauth/authorize" method="POST">'
        '<input type="hidden" name="X-Uaa-Csrf" value="tok">'
        '<input name="user_oauth_approval" value="false">'
        "</form></body></html>"
    )

    form = parse_authorize_form(page)

    assert form is not None
    assert form.action == "/SASLogon/oauth/authorize"
    assert form.fields == {"X-Uaa-Csrf": "tok", "user_oauth_approval": "true"}
    assert parse_authorize_form("<form id='other'></form>") is None
