"""
KNX Resolver — Interpretation Adapter

Asks a text-generation model (Anthropic Messages API) what product an
unresolved identifier most likely is. Every failure mode — transport error,
non-2xx, malformed or off-schema JSON, low confidence — comes back as None.
"""
from __future__ import annotations
import json
import logging
import re
from typing import Optional

import httpx
from pydantic import ValidationError

from config import Settings
from models import Guess, Manufacturer, ParsedSegments

logger = logging.getLogger(__name__)

MIN_GUESS_CONFIDENCE = 0.5

PROMPT_TEMPLATE = """You are a KNX building automation expert. Identify this KNX product from its ETS identifier.

KNX ID: {raw}
Manufacturer: {name} ({short_name}, {code})
Parsed segments:
- Hardware ID: {hardware_id}
- Program Number: {program_number}
- Program Version: {program_version}
- Order Reference: {order_ref}

Based on your knowledge of {name} KNX products, identify:
1. The product name
2. The order number / article number
3. The product category
4. A brief description

Respond with ONLY valid JSON (no markdown):
{{
  "productName": "Switching actuator 16fold/shutter actuator 8fold 16A",
  "orderNumber": "1038 00",
  "category": "switch actuator",
  "description": "Combined switching and shutter actuator, 16 switching channels or 8 shutter channels, 16A, DIN rail mounting",
  "confidence": 0.9,
  "searchTerms": ["1038 00", "switching actuator 16fold"]
}}

If you cannot identify the product, respond with:
{{"productName": null, "orderNumber": null, "confidence": 0}}"""

_FENCE_RE = re.compile(r'```(?:json)?\s*')


def build_prompt(manufacturer: Manufacturer, segments: ParsedSegments) -> str:
    return PROMPT_TEMPLATE.format(
        raw=segments.raw,
        name=manufacturer.name,
        short_name=manufacturer.display_short_name,
        code=manufacturer.knx_manufacturer_id,
        hardware_id=segments.hardware_id or "unknown",
        program_number=segments.program_number or "unknown",
        program_version=segments.program_version or "unknown",
        order_ref=segments.order_ref or "none",
    )


def parse_guess(text: str) -> Optional[Guess]:
    """Parse model output into a usable Guess, or None."""
    cleaned = _FENCE_RE.sub('', text).strip()
    try:
        data = json.loads(cleaned)
    except ValueError:
        logger.warning("Interpretation returned non-JSON output")
        return None
    if not isinstance(data, dict):
        return None
    try:
        guess = Guess.model_validate(data)
    except ValidationError as e:
        logger.warning("Interpretation JSON did not fit the guess schema: %s",
                       e.error_count())
        return None

    if guess.confidence < MIN_GUESS_CONFIDENCE or not guess.product_name:
        return None
    return guess


class ClaudeInterpreter:
    """Interpretation oracle backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        api_url: str = "https://api.anthropic.com/v1/messages",
        api_version: str = "2023-06-01",
        max_tokens: int = 500,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.api_version = api_version
        self.max_tokens = max_tokens
        self.client = client
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings,
                      client: Optional[httpx.AsyncClient] = None) -> Optional[ClaudeInterpreter]:
        """None when no API key is configured."""
        if not settings.interpretation_enabled:
            return None
        return cls(
            api_key=settings.anthropic_api_key,
            model=settings.llm_model,
            api_url=settings.anthropic_api_url,
            api_version=settings.anthropic_version,
            max_tokens=settings.llm_max_tokens,
            client=client,
            timeout=settings.http_timeout_seconds,
        )

    async def _post(self, payload: dict) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": self.api_version,
            "x-api-key": self.api_key,
        }
        if self.client is not None:
            return await self.client.post(self.api_url, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.api_url, json=payload, headers=headers)

    async def interpret(
        self,
        manufacturer: Manufacturer,
        segments: ParsedSegments,
    ) -> Optional[Guess]:
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": "user", "content": build_prompt(manufacturer, segments)},
            ],
        }
        try:
            response = await self._post(payload)
        except httpx.HTTPError as e:
            logger.warning("Interpretation request failed for %s: %s", segments.raw, e)
            return None

        if not response.is_success:
            logger.warning("Interpretation failed for %s: HTTP %d",
                           segments.raw, response.status_code)
            return None

        try:
            body = response.json()
        except ValueError:
            logger.warning("Interpretation response was not JSON for %s", segments.raw)
            return None

        blocks = (body.get("content") or []) if isinstance(body, dict) else []
        text = "".join(
            b.get("text", "") for b in blocks
            if isinstance(b, dict) and b.get("type") == "text"
        )
        guess = parse_guess(text)
        if guess:
            logger.info("Interpreted %s as %r (%s, confidence=%.2f)",
                        segments.raw, guess.product_name, guess.order_number,
                        guess.confidence)
        return guess
