from __future__ import annotations

import re
from typing import Iterable
from urllib.parse import SplitResult, urlsplit

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z\d+.-]*://")
_WWW_RE = re.compile(r"^www\.", re.IGNORECASE)


def with_default_scheme(raw: str) -> str:
    """Prefix https:// when the value carries no scheme."""
    value = raw.strip()
    if value and not _SCHEME_RE.match(value):
        value = "https://" + value
    return value


def safe_urlsplit(raw: str | None) -> SplitResult | None:
    """Parse a user/page supplied URL, or None when it is not a usable URL."""
    value = with_default_scheme(raw or "")
    if not value:
        return None
    try:
        parsed = urlsplit(value)
        # Accessing port validates it; a malformed port is a parse failure.
        parsed.port
    except ValueError:
        return None
    if not parsed.hostname:
        return None
    if any(ch.isspace() for ch in parsed.netloc):
        return None
    return parsed


def strip_www(hostname: str) -> str:
    return _WWW_RE.sub("", hostname)


def normalize_domain(raw: str | None) -> str:
    value = (raw or "").strip().lower()
    if not value:
        return ""
    value = with_default_scheme(value)
    parsed = safe_urlsplit(value)
    if parsed is not None and parsed.hostname:
        return strip_www(parsed.hostname)
    # Best effort when the URL parser rejects the value.
    value = _SCHEME_RE.sub("", value, count=1)
    return strip_www(value.split("/", 1)[0])


def is_trusted_domain(url: str | None, trusted: Iterable[str] | None) -> bool:
    domain = normalize_domain(url)
    if not domain or not trusted:
        return False
    for raw_entry in trusted:
        entry = (raw_entry or "").strip().lower()
        if not entry:
            continue
        if entry.startswith("*."):
            if domain.endswith(entry[1:]):
                return True
        elif entry.startswith("."):
            if domain.endswith(entry):
                return True
        elif domain == entry or domain.endswith("." + entry):
            return True
    return False
