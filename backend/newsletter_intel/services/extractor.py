"""Company extraction from newsletter text with an OpenAI chat model.

extract() never raises for model/transport failures: it returns an empty
result with metadata.error set, and the batch runner treats that exactly like
an exception for the email being processed.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Optional, Protocol

from pydantic import ValidationError

from ..config import settings
from ..errors import ConfigurationError
from ..schemas import ExtractedCompany, ExtractionMetadata, ExtractionResult

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    async def extract(self, text: str, source_name: str) -> ExtractionResult: ...


SYSTEM_PROMPT = """You are an expert venture capital analyst specializing in consumer brands and startups.

Your task is to extract company mentions from newsletter content with high precision.

Return ONLY a JSON object with this shape:
{
  "companies": [
    {
      "name": "Exact company name as written",
      "description": "One sentence on what the company does",
      "industry": ["Category", "..."],
      "context": "The sentence or passage where the company is mentioned",
      "confidence": 0.0-1.0,
      "sentiment": "positive" | "negative" | "neutral"
    }
  ]
}

Rules:
- Only include real companies or brands, not people, products of unnamed companies, or publications.
- Prefer consumer brands, startups and venture-backed companies.
- Exclude public companies unless they are launching a new venture.
- Each company appears once even if mentioned several times.
- If there are no companies, return {"companies": []}."""


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + " ...[truncated]"


def _parse_json_response(text: str) -> dict:
    """Parse JSON from LLM response, handling markdown code blocks."""
    text = re.sub(r"```json\s*", "", text)
    text = re.sub(r"```\s*", "", text)
    text = text.strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        # Try to extract JSON object from text
        match = re.search(r"\{[\s\S]*\}", text, re.DOTALL)
        if match:
            try:
                return json.loads(match.group())
            except json.JSONDecodeError:
                pass
    raise ValueError("Failed to parse model response as JSON")


def parse_companies(payload: dict) -> list[ExtractedCompany]:
    """Validate the model's company list, dropping entries without a usable name."""
    raw = payload.get("companies")
    if raw is None:
        raise ValueError("Model response has no 'companies' field")
    if not isinstance(raw, list):
        raise ValueError("Model response 'companies' is not a list")
    companies: list[ExtractedCompany] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            company = ExtractedCompany.model_validate(item)
        except ValidationError as e:
            logger.debug(f"Skipping malformed company entry: {e}")
            continue
        if company.name:
            companies.append(company)
    return companies


class OpenAIExtractor:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_chars: Optional[int] = None,
        max_tokens: Optional[int] = None,
        client=None,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        self.temperature = temperature if temperature is not None else settings.openai_temperature
        self.max_chars = max_chars or settings.extraction_max_chars
        self.max_tokens = max_tokens or settings.extraction_max_tokens
        self._client = client

    def is_configured(self) -> bool:
        return bool(self._client is not None or self.api_key)

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise ConfigurationError("OPENAI_API_KEY not set. Add to .env or environment.")
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def _call_llm(self, prompt: str) -> tuple[str, int]:
        client = self._get_client()
        response = await client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        )
        usage = getattr(response, "usage", None)
        tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
        return (response.choices[0].message.content or "").strip(), tokens

    async def extract(self, text: str, source_name: str) -> ExtractionResult:
        started = time.monotonic()
        prompt = (
            f"Newsletter: {source_name}\n"
            f"Content: {_truncate(text, self.max_chars)}\n\n"
            "Extract all company mentions following the schema provided."
        )
        try:
            content, tokens = await self._call_llm(prompt)
            if not content:
                raise ValueError("Empty response from model")
            companies = parse_companies(_parse_json_response(content))
        except Exception as e:
            logger.warning(f"Company extraction failed for '{source_name}': {e}")
            return ExtractionResult(
                companies=[],
                metadata=ExtractionMetadata(
                    processing_time_ms=(time.monotonic() - started) * 1000,
                    token_count=0,
                    model_version=self.model,
                    error=str(e) or e.__class__.__name__,
                ),
            )

        return ExtractionResult(
            companies=companies,
            metadata=ExtractionMetadata(
                processing_time_ms=(time.monotonic() - started) * 1000,
                token_count=tokens,
                model_version=self.model,
            ),
        )
