"""Client for the OAuth meeting API (paginated meeting listing)."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from meetsync.errors import IngestionError
from meetsync.utils import iso_z

from .config import AppSettings
from .http_client import upstream_request

_logger = logging.getLogger(__name__)


def _page_from_payload(body: Any, *, page: int, page_size: int) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise IngestionError("Meeting API returned a non-object page")
    meetings = body.get("meetings")
    if meetings is None:
        meetings = body.get("items") or []
    if not isinstance(meetings, list):
        raise IngestionError("Meeting API page has no meetings list")
    pagination = body.get("pagination") if isinstance(body.get("pagination"), dict) else {}
    return {
        "meetings": meetings,
        "pagination": {
            "page": int(pagination.get("page") or page),
            "pageSize": int(pagination.get("pageSize") or page_size),
            "hasNext": bool(pagination.get("hasNext")),
        },
    }


class MeetingPager:
    """Iterator over meeting pages; yields one list of raw records per step.

    No request is issued once :meth:`close` was called or after a page
    reported ``hasNext == false``.
    """

    def __init__(
        self,
        client: "MtmClient",
        token: str,
        window_start: datetime,
        window_end: datetime,
        *,
        page_size: int,
    ) -> None:
        self._client = client
        self._token = token
        self._window_start = window_start
        self._window_end = window_end
        self._page_size = page_size
        self._next_page = 1
        self._exhausted = False
        self.closed = False
        self.pages_fetched = 0

    def __iter__(self) -> "MeetingPager":
        return self

    def __next__(self) -> list[dict[str, Any]]:
        if self.closed or self._exhausted:
            raise StopIteration
        page = self._client.list_meetings(
            self._token,
            self._window_start,
            self._window_end,
            page=self._next_page,
            page_size=self._page_size,
        )
        self.pages_fetched += 1
        self._next_page += 1
        if not page["pagination"]["hasNext"]:
            self._exhausted = True
        return page["meetings"]

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "MeetingPager":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class MtmClient:
    def __init__(self, settings: AppSettings | None = None) -> None:
        self.settings = settings or AppSettings()
        self.base_url = self.settings.mtm_api_base_url.rstrip("/")

    def list_meetings(
        self,
        token: str,
        window_start: datetime,
        window_end: datetime,
        *,
        page: int = 1,
        page_size: int | None = None,
    ) -> dict[str, Any]:
        size = int(page_size or self.settings.mtm_page_size)
        resp = upstream_request(
            "GET",
            f"{self.base_url}/meetings",
            settings=self.settings,
            label="Meeting API",
            params={
                "from": iso_z(window_start),
                "to": iso_z(window_end),
                "page": page,
                "pageSize": size,
            },
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )
        try:
            body = resp.json()
        except ValueError as exc:
            raise IngestionError("Meeting API returned invalid JSON") from exc
        result = _page_from_payload(body, page=page, page_size=size)
        _logger.debug(
            "Fetched meeting page=%s count=%s has_next=%s",
            page,
            len(result["meetings"]),
            result["pagination"]["hasNext"],
        )
        return result

    def paginate_meetings(
        self,
        token: str,
        window_start: datetime,
        window_end: datetime,
        *,
        page_size: int | None = None,
    ) -> MeetingPager:
        return MeetingPager(
            self,
            token,
            window_start,
            window_end,
            page_size=int(page_size or self.settings.mtm_page_size),
        )


__all__ = ["MeetingPager", "MtmClient"]
