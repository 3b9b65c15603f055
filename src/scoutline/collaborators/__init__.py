"""Default scraping and AI collaborators."""

from __future__ import annotations

from .insights import InsightGenerator, fallback_insights
from .scraper import SeoScraper, extract_seo_data

__all__ = ["InsightGenerator", "SeoScraper", "extract_seo_data", "fallback_insights"]
