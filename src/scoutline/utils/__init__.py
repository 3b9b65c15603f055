"""Shared helpers."""

from __future__ import annotations

from .domains import normalize_domain, normalize_targets

__all__ = ["normalize_domain", "normalize_targets"]
