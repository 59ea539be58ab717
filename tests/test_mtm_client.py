from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest
import respx

from meetsync.errors import (
    AuthExpiredError,
    IngestionError,
    RateLimitedError,
    TransientNetworkError,
)
from meetsync_app.config import AppSettings
from meetsync_app.http_client import classify_response, parse_retry_after
from meetsync_app.mtm import MtmClient

_BASE = "https://mtm.test/v1"
_START = datetime(2025, 8, 12, tzinfo=timezone.utc)
_END = datetime(2025, 10, 19, tzinfo=timezone.utc)


def _cfg(tmp_path: Path) -> AppSettings:
    cfg = AppSettings(
        data_root=tmp_path,
        db_path=tmp_path / "db" / "meetsync.db",
        retry_initial_seconds=0,
        retry_max_seconds=0,
        retry_jitter_seconds=0,
    )
    cfg.mtm_api_base_url = _BASE
    cfg.mtm_page_size = 2
    cfg.retry_max_attempts = 3
    return cfg


def _page(ids, *, page: int, has_next: bool):
    return httpx.Response(
        200,
        json={
            "meetings": [{"id": item, "title": f"Meeting {item}"} for item in ids],
            "pagination": {"page": page, "pageSize": 2, "hasNext": has_next},
        },
    )


@respx.mock
def test_list_meetings_sends_window_paging_and_bearer(tmp_path: Path):
    route = respx.get(f"{_BASE}/meetings").mock(return_value=_page(["a"], page=1, has_next=False))

    page = MtmClient(_cfg(tmp_path)).list_meetings("token-1", _START, _END)

    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer token-1"
    assert request.url.params["from"] == "2025-08-12T00:00:00Z"
    assert request.url.params["to"] == "2025-10-19T00:00:00Z"
    assert request.url.params["page"] == "1"
    assert request.url.params["pageSize"] == "2"
    assert page["meetings"] == [{"id": "a", "title": "Meeting a"}]
    assert page["pagination"] == {"page": 1, "pageSize": 2, "hasNext": False}


@respx.mock
def test_pager_follows_has_next_until_last_page(tmp_path: Path):
    route = respx.get(f"{_BASE}/meetings")
    route.side_effect = [
        _page(["a", "b"], page=1, has_next=True),
        _page(["c", "d"], page=2, has_next=True),
        _page(["e"], page=3, has_next=False),
    ]

    pager = MtmClient(_cfg(tmp_path)).paginate_meetings("token-1", _START, _END)
    pages = [[item["id"] for item in page] for page in pager]

    assert pages == [["a", "b"], ["c", "d"], ["e"]]
    assert pager.pages_fetched == 3
    assert [call.request.url.params["page"] for call in route.calls] == ["1", "2", "3"]


@respx.mock
def test_closed_pager_issues_no_further_requests(tmp_path: Path):
    route = respx.get(f"{_BASE}/meetings").mock(return_value=_page(["a"], page=1, has_next=True))

    with MtmClient(_cfg(tmp_path)).paginate_meetings("token-1", _START, _END) as pager:
        first = next(pager)
    assert pager.closed is True
    assert list(pager) == []

    assert first == [{"id": "a", "title": "Meeting a"}]
    assert route.call_count == 1


@respx.mock
def test_unauthorized_raises_auth_expired_without_retry(tmp_path: Path):
    route = respx.get(f"{_BASE}/meetings").mock(return_value=httpx.Response(401))

    with pytest.raises(AuthExpiredError):
        MtmClient(_cfg(tmp_path)).list_meetings("token-1", _START, _END)
    assert route.call_count == 1


@respx.mock
def test_rate_limit_is_retried_then_succeeds(tmp_path: Path):
    route = respx.get(f"{_BASE}/meetings")
    route.side_effect = [
        httpx.Response(429, headers={"Retry-After": "0"}),
        _page(["a"], page=1, has_next=False),
    ]

    page = MtmClient(_cfg(tmp_path)).list_meetings("token-1", _START, _END)

    assert route.call_count == 2
    assert page["meetings"][0]["id"] == "a"


@respx.mock
def test_persistent_server_errors_exhaust_retries(tmp_path: Path):
    route = respx.get(f"{_BASE}/meetings").mock(return_value=httpx.Response(502))

    with pytest.raises(TransientNetworkError):
        MtmClient(_cfg(tmp_path)).list_meetings("token-1", _START, _END)
    assert route.call_count == 3


@respx.mock
def test_transport_errors_are_transient(tmp_path: Path):
    respx.get(f"{_BASE}/meetings").mock(side_effect=httpx.ConnectError("refused"))

    with pytest.raises(TransientNetworkError):
        MtmClient(_cfg(tmp_path)).list_meetings("token-1", _START, _END)


@respx.mock
def test_client_error_is_not_retried(tmp_path: Path):
    route = respx.get(f"{_BASE}/meetings").mock(return_value=httpx.Response(404))

    with pytest.raises(IngestionError) as excinfo:
        MtmClient(_cfg(tmp_path)).list_meetings("token-1", _START, _END)
    assert excinfo.value.status_code == 404
    assert route.call_count == 1


@respx.mock
def test_non_object_page_is_an_ingestion_error(tmp_path: Path):
    respx.get(f"{_BASE}/meetings").mock(return_value=httpx.Response(200, json=["a"]))

    with pytest.raises(IngestionError):
        MtmClient(_cfg(tmp_path)).list_meetings("token-1", _START, _END)


def test_rate_limit_carries_retry_after():
    resp = httpx.Response(429, headers={"Retry-After": "7"})

    with pytest.raises(RateLimitedError) as excinfo:
        classify_response(resp, label="Meeting API")
    assert excinfo.value.retry_after == 7.0


@pytest.mark.parametrize(
    "value,expected",
    [(None, None), ("", None), ("12", 12.0), ("-3", 0.0), ("soon", None)],
)
def test_parse_retry_after(value, expected):
    assert parse_retry_after(value) == expected


def test_parse_retry_after_http_date_in_past_is_zero():
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
