from .ics import IcsFetchResult, fetch_ics, parse_ics_events, validate_ics_url
from .mirror import mirror_account, mirror_to_google
from .service import SyncState, calendar_window, sync_account

__all__ = [
    "IcsFetchResult",
    "SyncState",
    "calendar_window",
    "fetch_ics",
    "mirror_account",
    "mirror_to_google",
    "parse_ics_events",
    "sync_account",
    "validate_ics_url",
]
