"""meetsync engine: credential vault, normalizer and merge/dedup."""

from .errors import *
from .merge import Admission, PassDeduper, meeting_fingerprint, merge_and_dedupe, resolve_status
from .models import Attendee, ExternalRef, Meeting, Provenance
from .normalizer import Geocoder, normalize, normalize_batch, normalize_timezone
from .vault import LocalKeyProvider, Vault, fingerprint, generate_wrapped_key
from . import errors

__all__ = [
    "Admission",
    "Attendee",
    "ExternalRef",
    "Geocoder",
    "LocalKeyProvider",
    "Meeting",
    "PassDeduper",
    "Provenance",
    "Vault",
    "fingerprint",
    "generate_wrapped_key",
    "meeting_fingerprint",
    "merge_and_dedupe",
    "normalize",
    "normalize_batch",
    "normalize_timezone",
    "resolve_status",
    *errors.__all__,
]
