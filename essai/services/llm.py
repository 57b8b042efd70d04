"""
LLM Service Module.

This module provides the LLMService class, which interfaces with the Google Gemini API,
plus the tolerant JSON parser and rate-limit retry helper shared by every model call.
"""

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from google import genai

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_RATE_LIMIT_RE = re.compile(r"\brate[\s_-]?limit|\brate\b|quota", re.IGNORECASE)


def parse_json_response(text: str) -> Any:
    """
    Safely parses JSON from LLM output.

    Strips Markdown code fences, tries a direct parse, then falls back to the
    first balanced {...} object in the text. Raises ValueError if nothing parses.
    """
    cleaned = (text or "").strip()
    fenced = _FENCE_RE.search(cleaned)
    if fenced:
        cleaned = fenced.group(1).strip()

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    source = text or ""
    start = source.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(source, start)
            return obj
        except json.JSONDecodeError:
            start = source.find("{", start + 1)

    raise ValueError(f"No JSON payload found in model output: {cleaned[:200]!r}")


def is_rate_limit_error(error: BaseException) -> bool:
    """True for HTTP 429 or errors whose message mentions rate or quota."""
    for attr in ("code", "status_code", "status"):
        if getattr(error, attr, None) == 429:
            return True
    if getattr(error, "status", None) == "RESOURCE_EXHAUSTED":
        return True
    return bool(_RATE_LIMIT_RE.search(str(error)))


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 2.0,
) -> T:
    """Retries fn on rate-limit errors with exponential backoff; other errors propagate."""
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:  # pylint: disable=broad-exception-caught
            if not is_rate_limit_error(e) or attempt >= max_attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning("Rate limited (attempt %d/%d). Waiting %.1fs...", attempt, max_attempts, delay)
            await asyncio.sleep(delay)
            attempt += 1


class LLMService:
    """
    Service for interacting with the Google Gemini API.

    Calls return raw text; callers own parsing. Search-grounded calls enable the
    Google Search tool so the model can look up live URLs.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        search_model: Optional[str] = None,
        max_attempts: int = 3,
        base_delay: float = 2.0,
    ):
        self.api_key = api_key
        self.model = model
        self.search_model = search_model or model
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.client: Optional[genai.Client] = None
        try:
            self.client = genai.Client(api_key=api_key)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Failed to initialize Gemini client: %s", e)
            self.client = None

    def _build_config(
        self, use_search: bool, json_output: bool, temperature: Optional[float]
    ) -> Dict[str, Any]:
        config: Dict[str, Any] = {}
        if use_search:
            config["tools"] = [{"google_search": {}}]
        elif json_output:
            # Gemini rejects a JSON mime type when tools are enabled
            config["response_mime_type"] = "application/json"
        if temperature is not None:
            config["temperature"] = temperature
        return config

    async def generate(
        self,
        prompt: str,
        use_search: bool = False,
        json_output: bool = False,
        temperature: Optional[float] = None,
    ) -> str:
        """Sends a prompt and returns the response text."""
        if not self.client:
            raise RuntimeError("Gemini client not initialized.")

        client = self.client
        model = self.search_model if use_search else self.model
        config = self._build_config(use_search, json_output, temperature)

        async def _call():
            return await client.aio.models.generate_content(
                model=model, contents=prompt, config=config
            )

        response = await retry_with_backoff(
            _call, max_attempts=self.max_attempts, base_delay=self.base_delay
        )
        text = response.text if response.text else ""
        if not text:
            raise ValueError("Empty response from Gemini")
        return text
