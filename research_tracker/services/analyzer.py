from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

from research_tracker.core.config import Settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a sales analyst qualifying leads for a custom AI model training company. "
    "Extract fit scores and write compelling pitches based on company research."
)

USER_PROMPT_TEMPLATE = """Based on the following deep research about a company, extract:

1. A fit score from 1-10 (10 = perfect fit, 1 = no fit)
2. A concise, compelling 2-3 sentence pitch
3. The company's employee count if the research mentions it: a number, a range such as "50-100",
   or an open-ended value such as "10000+". Use null when unknown.

Research context:
{research}

Respond in JSON only:
{{"score": 7, "narrative": "...", "attribute": "50-100"}}"""

SCORE_PATTERN = re.compile(r"^\s*(\d{1,2})(?:\s*/\s*10)?\s*$")
ATTRIBUTE_PATTERN = re.compile(r"^\d[\d,]*(?:\s*-\s*\d[\d,]*|\+)?$")
NULLISH_ATTRIBUTES = {"", "null", "none", "unknown", "n/a"}


class EnrichmentError(Exception):
    """Raised when the analyzer call fails; never escalated past the lifecycle."""


@dataclass(slots=True, frozen=True)
class FitAnalysis:
    score: int
    narrative: str
    attribute: str | None = None


class FitAnalyzer:
    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-5",
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def analyze(self, research: Any) -> FitAnalysis | None:
        """Single best-effort inference call; malformed output yields ``None``."""
        if not self.enabled:
            logger.debug("analyzer api key not set; skipping fit analysis")
            return None

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": USER_PROMPT_TEMPLATE.format(research=json.dumps(research, indent=2))},
            ],
            "response_format": {"type": "json_object"},
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.post("/chat/completions", json=payload)
        except httpx.HTTPError as exc:
            raise EnrichmentError(f"analyzer unreachable: {exc.__class__.__name__}") from exc

        if not response.is_success:
            raise EnrichmentError(f"analyzer request failed status={response.status_code}")

        try:
            body = response.json()
        except ValueError:
            logger.warning("analyzer returned non-JSON envelope")
            return None
        return parse_analysis(_message_content(body))


def parse_analysis(content: str | None) -> FitAnalysis | None:
    if not content:
        return None
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        logger.warning("analyzer output is not valid JSON")
        return None
    if not isinstance(parsed, dict):
        return None

    score = _parse_score(_first_present(parsed, "score", "fitScore", "fit_score"))
    narrative = _as_text(_first_present(parsed, "narrative", "pitch"))
    if score is None or narrative is None:
        logger.warning("analyzer output missing score or narrative keys=%s", sorted(parsed))
        return None

    raw_attribute = _first_present(parsed, "attribute", "employeeCount", "employee_count")
    attribute: str | None = None
    if isinstance(raw_attribute, str) and raw_attribute.strip().lower() in NULLISH_ATTRIBUTES:
        raw_attribute = None
    if raw_attribute is not None:
        attribute = _parse_attribute(raw_attribute)
        if attribute is None:
            logger.warning("analyzer attribute is malformed value=%r", raw_attribute)
            return None
    return FitAnalysis(score=score, narrative=narrative, attribute=attribute)


def _message_content(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _parse_score(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        score = value
    elif isinstance(value, float) and value.is_integer():
        score = int(value)
    elif isinstance(value, str):
        match = SCORE_PATTERN.match(value)
        if not match:
            return None
        score = int(match.group(1))
    else:
        return None
    return score if 1 <= score <= 10 else None


def _parse_attribute(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value) if value >= 0 else None
    if not isinstance(value, str):
        return None
    compact = value.strip().replace(" ", "")
    if not ATTRIBUTE_PATTERN.match(compact):
        return None
    return compact.replace(",", "")


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def build_analyzer(settings: Settings) -> FitAnalyzer:
    return FitAnalyzer(
        settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.analyzer_model,
        timeout_seconds=settings.analyzer_timeout_seconds,
    )
