"""Derive a canonical source name from harvested page-header text."""

import re

UNKNOWN_NAME = "Unknown Group"

_SITE_SUFFIX = re.compile(
    r"\s*[|\-–—•·:]\s*(facebook|instagram|meta|groups?)\s*$",
    re.IGNORECASE,
)
_NOTIFICATION_PREFIX = re.compile(r"^\(\d+\+?\)\s*")

# Platform chrome that shows up in headers but never names the page.
_UI_NOISE = (
    "log in",
    "log into",
    "sign up",
    "create new account",
    "forgot password",
    "notifications",
    "messages",
    "messenger",
    "settings",
    "see more",
    "home",
    "profile",
)

MIN_LENGTH = 5
MAX_LENGTH = 100


def _clean(line: str) -> str:
    line = _NOTIFICATION_PREFIX.sub("", line.strip())
    # Suffixes can stack, e.g. "Karaoke Nights | Groups | Facebook".
    while True:
        stripped = _SITE_SUFFIX.sub("", line).strip()
        if stripped == line:
            return stripped
        line = stripped


def _is_noise(line: str) -> bool:
    lowered = line.lower()
    if lowered in {"facebook", "instagram"}:
        return True
    return any(lowered == noise or lowered.startswith(noise + " ") for noise in _UI_NOISE)


def resolve_name(header_text: str) -> str:
    """Return the first usable header line, or ``UNKNOWN_NAME``."""
    for raw in (header_text or "").splitlines():
        line = _clean(raw)
        if not MIN_LENGTH <= len(line) <= MAX_LENGTH:
            continue
        if _is_noise(line):
            continue
        return line
    return UNKNOWN_NAME
