from __future__ import annotations

DEFAULT_RQ_QUEUE_NAME = "meetsync"

PROVIDER_MTM = "mtm"
PROVIDER_ICS = "ics"
PROVIDER_GOOGLE = "google"
SYNC_PROVIDERS = (PROVIDER_MTM, PROVIDER_ICS)
OAUTH_PROVIDERS = (PROVIDER_MTM, PROVIDER_GOOGLE)
PROVIDERS = (PROVIDER_MTM, PROVIDER_ICS, PROVIDER_GOOGLE)

ACCOUNT_STATUS_CONNECTED = "connected"
ACCOUNT_STATUS_ERROR = "error"
ACCOUNT_STATUS_REAUTH_REQUIRED = "reauth_required"
ACCOUNT_STATUSES = (
    ACCOUNT_STATUS_CONNECTED,
    ACCOUNT_STATUS_ERROR,
    ACCOUNT_STATUS_REAUTH_REQUIRED,
)

MEETING_STATUS_CANCELED = "canceled"

MIRROR_KEY_PROPERTY = "meetsyncKey"
MIRROR_SOURCE_PROPERTY = "meetsyncSource"
MIRROR_TITLE_PREFIX = "[MTM] "
DEFAULT_MIRROR_CALENDAR_ID = "primary"

DEFAULT_VENUE_ALIASES: dict[str, tuple[str, ...]] = {
    "koelnmesse": ("koelnmesse", "koeln messe", "messe köln", "cologne exhibition centre"),
    "congress-center-east": ("congress-centrum ost", "congress center east", "cc east"),
    "hall-11": ("hall 11", "halle 11"),
}

__all__ = [
    "ACCOUNT_STATUSES",
    "ACCOUNT_STATUS_CONNECTED",
    "ACCOUNT_STATUS_ERROR",
    "ACCOUNT_STATUS_REAUTH_REQUIRED",
    "DEFAULT_MIRROR_CALENDAR_ID",
    "DEFAULT_RQ_QUEUE_NAME",
    "DEFAULT_VENUE_ALIASES",
    "MEETING_STATUS_CANCELED",
    "MIRROR_KEY_PROPERTY",
    "MIRROR_SOURCE_PROPERTY",
    "MIRROR_TITLE_PREFIX",
    "OAUTH_PROVIDERS",
    "PROVIDERS",
    "PROVIDER_GOOGLE",
    "PROVIDER_ICS",
    "PROVIDER_MTM",
    "SYNC_PROVIDERS",
]
