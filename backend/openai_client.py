"""Image captioning and tagging through an OpenAI vision model."""

from __future__ import annotations

import json
import logging
import re
from concurrent.futures import Executor
from typing import Any, Dict, List, Optional

from openai import OpenAI

from collaborators import AnalysisResult, run_blocking
from errors import ConfigurationError, ExternalServiceError

logger = logging.getLogger(__name__)

DEFAULT_TAG_STYLE = "neutral"
TAG_STYLES: Dict[str, str] = {
    "neutral": (
        "Generate a concise list of 5 neutral tags that accurately describe the content, setting, "
        "and main objects in the image. Use short, clear, factual terms. Avoid emotional, opinionated, "
        "or marketing words. Example tags: mountain, sunset, lake, reflection, trees."
    ),
    "playful": (
        "Generate 5 playful, expressive tags that describe this image with energy or humor. Short "
        "phrases or slang are fine. Combine literal and imaginative tags. Example tags: sunset vibes, "
        "wanderlust, weekend chill, good times, nature mood."
    ),
    "seo": (
        "Generate 5 SEO-friendly tags for this image. Use specific, searchable keywords and long-tail "
        "phrases people might use to find this image online. Avoid hashtags or emojis. Example tags: "
        "cozy coffee shop interior, cafe with warm lighting, modern cafe design."
    ),
}
_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


def resolve_tag_style(style_hint: Optional[str]) -> str:
    """Return a known tag style, falling back to neutral."""
    style = (style_hint or "").strip().lower()
    return style if style in TAG_STYLES else DEFAULT_TAG_STYLE


def build_prompt(tag_style: str) -> str:
    return (
        "Analyze this image and provide:\n"
        "1. A detailed, engaging description of what you see (1-2 sentences)\n"
        f"2. {TAG_STYLES[tag_style]}\n\n"
        "Format your response as JSON:\n"
        '{\n  "description": "Your description here",\n'
        '  "tags": ["tag1", "tag2", "tag3", "tag4", "tag5"]\n}'
    )


def parse_analysis(content: str, tag_style: str) -> AnalysisResult:
    """Extract the JSON object from a model reply."""
    match = _JSON_BLOCK.search(content or "")
    if not match:
        raise ValueError("Could not parse AI response.")
    payload = json.loads(match.group(0))
    description = str(payload.get("description") or "").strip()
    if not description:
        raise ValueError("AI response has no description.")
    raw_tags: List[Any] = payload.get("tags") or []
    tags = [str(tag).strip() for tag in raw_tags if str(tag).strip()]
    return AnalysisResult(description=description, tags=tags, tag_style=tag_style)


class OpenAIImageAnalyzer:
    """Wraps the OpenAI chat completions API for image analysis."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        max_tokens: int = 500,
        timeout_seconds: float = 60.0,
        max_retries: int = 2,
        executor: Optional[Executor] = None,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.executor = executor
        self.client: Optional[OpenAI] = client
        if self.client is None and api_key:
            self.client = OpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=max_retries)
        self.enabled = self.client is not None

    def _analyze_sync(self, image_url: str, tag_style: str) -> AnalysisResult:
        if not self.enabled or not self.client:
            raise ConfigurationError("OpenAI is not configured.")

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": build_prompt(tag_style)},
                            {"type": "image_url", "image_url": {"url": image_url}},
                        ],
                    }
                ],
                max_tokens=self.max_tokens,
            )
            content = response.choices[0].message.content or ""
            return parse_analysis(content, tag_style)
        except Exception as exc:
            logger.warning("AI analysis failed model=%s error=%s", self.model, exc)
            raise ExternalServiceError("AI", str(exc)) from exc

    async def analyze(self, image_url: str, style_hint: str = DEFAULT_TAG_STYLE) -> AnalysisResult:
        return await run_blocking(self.executor, self._analyze_sync, image_url, resolve_tag_style(style_hint))

    def health_snapshot(self) -> Dict[str, Any]:
        return {"openai_enabled": self.enabled, "model": self.model}
