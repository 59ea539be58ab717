import copy
import pathlib
import sys
from types import SimpleNamespace

from googleapiclient.errors import HttpError
import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from meetsync_app import keystore  # noqa: E402
from meetsync_app.calendar import ics as ics_module  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_vault_cache():
    keystore.reset_vault_cache()
    yield
    keystore.reset_vault_cache()


@pytest.fixture(autouse=True)
def _no_dns_lookups(monkeypatch):
    monkeypatch.setattr(ics_module, "_resolves_only_loopback", lambda _hostname: False)


class _Request:
    def __init__(self, fn):
        self._fn = fn

    def execute(self):
        return self._fn()


def _http_error(status: int) -> HttpError:
    return HttpError(SimpleNamespace(status=status, reason="error"), b"")


class FakeCalendarEvents:
    """In-memory stand-in for ``service.events()`` of the Calendar API."""

    def __init__(self) -> None:
        self.items: dict[str, dict] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.fail_with: int | None = None
        self._next_id = 0

    def _check(self) -> None:
        if self.fail_with is not None:
            raise _http_error(self.fail_with)

    def insert(self, calendarId, body):
        def _run():
            self._check()
            self._next_id += 1
            event_id = f"evt-{self._next_id}"
            self.items[event_id] = {**copy.deepcopy(body), "id": event_id, "calendarId": calendarId}
            self.calls.append(("insert", event_id))
            return {"id": event_id}

        return _Request(_run)

    def patch(self, calendarId, eventId, body):
        def _run():
            self._check()
            if eventId not in self.items:
                raise _http_error(404)
            self.items[eventId].update(copy.deepcopy(body))
            self.calls.append(("patch", eventId))
            return {"id": eventId}

        return _Request(_run)

    def delete(self, calendarId, eventId):
        def _run():
            self._check()
            if eventId not in self.items:
                raise _http_error(410)
            del self.items[eventId]
            self.calls.append(("delete", eventId))
            return None

        return _Request(_run)

    def list(self, calendarId, privateExtendedProperty=None, **_params):
        def _run():
            self._check()
            items = list(self.items.values())
            if privateExtendedProperty:
                name, _, value = privateExtendedProperty.partition("=")
                items = [
                    item
                    for item in items
                    if ((item.get("extendedProperties") or {}).get("private") or {}).get(name)
                    == value
                ]
            return {"items": copy.deepcopy(items)}

        return _Request(_run)


class FakeCalendarService:
    def __init__(self) -> None:
        self.events_api = FakeCalendarEvents()

    def events(self) -> FakeCalendarEvents:
        return self.events_api


@pytest.fixture
def fake_calendar() -> FakeCalendarService:
    return FakeCalendarService()
