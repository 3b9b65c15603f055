"""
Built-in AI collaborator: turns scraped competitor data into SWOT-style
insights using an OpenAI-compatible chat completions endpoint.

Without an API key, or when the model answers with something that is not
usable JSON, insights are derived heuristically from the scraped signals so
the analysis still completes.
"""

from __future__ import annotations

import asyncio
import json
from statistics import mean
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from scoutline.config.config import AIConfig
from scoutline.protocols import CollaboratorResult

INSIGHT_KEYS = (
    "strengths",
    "weaknesses",
    "opportunities",
    "threats",
    "recommendations",
    "competitive_advantage",
    "risk_level",
    "overall_score",
)

SYSTEM_PROMPT = (
    "You are an SEO competitive analyst. Reply with a single JSON object with the keys "
    "strengths, weaknesses, opportunities, threats, recommendations (arrays of short strings), "
    "competitive_advantage (string), risk_level (low, medium or high) and overall_score (0-100)."
)


def _summarise(competitor: Dict[str, Any]) -> Dict[str, Any]:
    data = competitor.get("data", competitor)
    seo = data.get("seo_data", {})
    technical = data.get("technical", {})
    return {
        "domain": competitor.get("domain") or data.get("domain", ""),
        "title": seo.get("title", ""),
        "has_meta_description": bool(seo.get("meta_description")),
        "h1_count": len(seo.get("headings", {}).get("h1", [])),
        "word_count": seo.get("word_count", 0),
        "internal_links": seo.get("internal_links", 0),
        "external_links": seo.get("external_links", 0),
        "images_missing_alt": seo.get("images_missing_alt", 0),
        "structured_data": bool(seo.get("structured_data")),
        "seo_score": technical.get("seo_score"),
        "https": technical.get("https_enabled"),
        "sitemap": technical.get("xml_sitemap"),
        "robots_txt": technical.get("robots_txt"),
    }


def fallback_insights(competitors: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Deterministic insights computed from scraped signals alone."""
    summaries = [_summarise(c) for c in competitors]
    scores = [s["seo_score"] for s in summaries if isinstance(s["seo_score"], (int, float))]
    overall = round(mean(scores)) if scores else 50

    strengths: List[str] = []
    weaknesses: List[str] = []
    for s in summaries:
        domain = s["domain"]
        if s["word_count"] >= 1000:
            strengths.append(f"{domain} publishes long-form content ({s['word_count']} words on the homepage)")
        if s["structured_data"]:
            strengths.append(f"{domain} uses structured data markup")
        if s["internal_links"] >= 50:
            strengths.append(f"{domain} has a dense internal linking structure")
        if not s["has_meta_description"]:
            weaknesses.append(f"{domain} is missing a meta description")
        if s["h1_count"] == 0:
            weaknesses.append(f"{domain} has no H1 heading")
        if s["images_missing_alt"]:
            weaknesses.append(f"{domain} has {s['images_missing_alt']} images without alt text")
        if s["sitemap"] is False:
            weaknesses.append(f"{domain} does not expose /sitemap.xml")

    if not strengths:
        strengths.append("Competitors show a balanced on-page SEO profile")
    if not weaknesses:
        weaknesses.append("No obvious on-page gaps among the analysed competitors")

    if overall >= 75:
        risk_level = "high"
    elif overall >= 50:
        risk_level = "medium"
    else:
        risk_level = "low"

    leader = max(summaries, key=lambda s: s["seo_score"] or 0)["domain"] if summaries else None
    return {
        "strengths": strengths,
        "weaknesses": weaknesses,
        "opportunities": [
            "Target long-tail keywords with lower difficulty",
            "Improve internal linking structure",
            "Expand content clusters around high-intent topics",
        ],
        "threats": [
            f"{leader} leads the group on technical SEO" if leader else "Competitors investing in technical SEO",
            "Increasing competition for key transactional keywords",
        ],
        "recommendations": [
            "Audit keyword strategy and fill gaps",
            "Improve content quality and depth",
            "Enhance technical SEO (Core Web Vitals, sitemap, structured data)",
        ],
        "competitive_advantage": "Balanced SEO profile with opportunities to scale content and technical optimizations",
        "risk_level": risk_level,
        "overall_score": overall,
        "competitors": summaries,
        "source": "heuristic",
    }


class InsightGenerator:
    """AI collaborator that calls a chat completions API."""

    def __init__(self, config: AIConfig) -> None:
        self.config = config
        self._session: Optional[aiohttp.ClientSession] = None
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def initialize(self) -> None:
        if self.config.api_key:
            self._get_session()
        else:
            self.logger.info("No AI API key configured, using heuristic insights")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            )
        return self._session

    def build_prompt(self, aggregated: Dict[str, Any]) -> str:
        summaries = [_summarise(c) for c in aggregated.get("competitors", [])]
        return (
            f"Analysis type: {aggregated.get('analysis_type') or 'basic'}\n"
            f"Competitors:\n{json.dumps(summaries, indent=2)}\n"
            "Provide strengths, weaknesses, opportunities, threats and recommendations."
        )

    async def analyze(self, aggregated: Dict[str, Any]) -> CollaboratorResult:
        competitors = aggregated.get("competitors", [])
        if not competitors:
            return CollaboratorResult.failure("No competitor data to analyze")
        if not self.config.api_key:
            return CollaboratorResult.success(fallback_insights(competitors))

        body = {
            "model": self.config.model,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self.build_prompt(aggregated)},
            ],
        }
        url = f"{self.config.base_url.rstrip('/')}/chat/completions"
        try:
            async with self._get_session().post(url, json=body) as response:
                if response.status >= 400:
                    text = await response.text()
                    return CollaboratorResult.failure(f"AI API returned HTTP {response.status}: {text[:200]}")
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return CollaboratorResult.failure(f"AI API request failed: {type(e).__name__}: {e}")

        insights = self._parse(payload)
        if insights is None:
            self.logger.warning("Unusable model response, falling back to heuristic insights")
            return CollaboratorResult.success(fallback_insights(competitors), model=self.config.model)

        usage = payload.get("usage", {}) if isinstance(payload, dict) else {}
        return CollaboratorResult.success(insights, model=self.config.model, tokens=usage.get("total_tokens"))

    def _parse(self, payload: Any) -> Optional[Dict[str, Any]]:
        try:
            content = payload["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (KeyError, IndexError, TypeError, ValueError):
            return None
        if not isinstance(parsed, dict) or not any(key in parsed for key in INSIGHT_KEYS):
            return None
        parsed["source"] = "model"
        return parsed
