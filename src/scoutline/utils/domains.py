"""
Normalisation and validation of competitor domains.
"""

from __future__ import annotations

import re
from typing import Iterable, List
from urllib.parse import urlparse

_LABEL = r"(?!-)[a-z0-9-]{1,63}(?<!-)"
_DOMAIN_RE = re.compile(rf"^(?:{_LABEL}\.)+[a-z]{{2,63}}$")


def normalize_domain(value: str) -> str:
    """
    Reduce a URL or host to a bare lowercase domain.

    ``"https://WWW.Example.com/pricing"`` becomes ``"example.com"``.

    Raises:
        ValueError: the value does not contain a valid domain name.
    """
    raw = (value or "").strip().lower()
    if not raw:
        raise ValueError("Domain must not be empty")
    host = urlparse(raw if "://" in raw else f"//{raw}").hostname or ""
    host = host.rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    if not _DOMAIN_RE.match(host):
        raise ValueError(f"Invalid domain: {value!r}")
    return host


def normalize_targets(values: Iterable[str]) -> List[str]:
    """Normalise every value and drop duplicates, keeping first-seen order."""
    seen: List[str] = []
    for value in values:
        domain = normalize_domain(value)
        if domain not in seen:
            seen.append(domain)
    return seen
