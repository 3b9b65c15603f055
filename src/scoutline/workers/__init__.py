"""Stage handlers bound to the pipeline's work queues."""

from __future__ import annotations

from .ai import AIStage
from .base import call_collaborator
from .scraping import ScrapingStage

__all__ = ["AIStage", "ScrapingStage", "call_collaborator"]
