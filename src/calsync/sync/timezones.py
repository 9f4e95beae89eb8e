"""Timezone resolution between IANA and Windows zone names.

Microsoft Graph reports and accepts Windows zone names ("W. Europe Standard
Time"); Google and the local store use IANA names ("Europe/Berlin").
"""

from __future__ import annotations

import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

UTC = "UTC"

WINDOWS_TO_IANA: dict[str, str] = {
    "UTC": "UTC",
    "W. Europe Standard Time": "Europe/Berlin",
    "Central Europe Standard Time": "Europe/Budapest",
    "Central European Standard Time": "Europe/Warsaw",
    "Romance Standard Time": "Europe/Paris",
    "GMT Standard Time": "Europe/London",
    "Greenwich Standard Time": "Etc/Greenwich",
    "E. Europe Standard Time": "Europe/Bucharest",
    "Eastern Standard Time": "America/New_York",
    "Pacific Standard Time": "America/Los_Angeles",
    "Mountain Standard Time": "America/Denver",
    "China Standard Time": "Asia/Shanghai",
    "Tokyo Standard Time": "Asia/Tokyo",
    "India Standard Time": "Asia/Kolkata",
}

IANA_TO_WINDOWS: dict[str, str] = {
    iana.lower(): windows for windows, iana in WINDOWS_TO_IANA.items()
}
_WINDOWS_BY_LOWER: dict[str, str] = {name.lower(): name for name in WINDOWS_TO_IANA}


def is_valid_timezone(name: str | None) -> bool:
    """Check whether `name` is a zone known to the IANA database."""
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_timezone(name: str | None) -> str | None:
    """Resolve a Windows or IANA zone name to a valid IANA name.

    Lookups are case-insensitive. Returns None when the name is empty or
    unknown.
    """
    if not name:
        return None
    candidate = name.strip()
    windows = _WINDOWS_BY_LOWER.get(candidate.lower())
    if windows is not None:
        candidate = WINDOWS_TO_IANA[windows]
    return candidate if is_valid_timezone(candidate) else None


def safe_user_timezone(name: str | None) -> str:
    """Return the user's zone when valid, UTC otherwise."""
    return resolve_timezone(name) or UTC


def to_windows_timezone(name: str | None) -> str | None:
    """Map a zone name to the form Microsoft Graph expects.

    IANA names with a known Windows equivalent are translated; names that are
    already Windows names are returned as is. Any other name is passed
    through when it is a valid IANA zone, and dropped otherwise.
    """
    if not name:
        return None
    key = name.strip().lower()
    if key in IANA_TO_WINDOWS:
        return IANA_TO_WINDOWS[key]
    if key in _WINDOWS_BY_LOWER:
        return _WINDOWS_BY_LOWER[key]
    if is_valid_timezone(name.strip()):
        return name.strip()
    logger.debug(f"No Windows timezone for {name!r}")
    return None
