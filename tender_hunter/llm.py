"""
llm.py — Generative-model client, call throttling, and JSON recovery.

Every stage that talks to Gemini goes through GenAIClient.generate(). It
owns three concerns so the stages don't have to:

  * Throttling. The free tier rejects bursts, so consecutive generative
    calls are spaced by at least config.genai.min_call_interval seconds.
    The first call of a process goes out immediately. Search calls never
    pass through here, so they are never delayed.

  * Retries. 429s and 503s from the API are transient more often than not.
    We retry with exponential backoff (2s, 4s, 8s) and only then give up
    with a GenerationError.

  * Images. Tender photos and drawings arrive as base64 ImageParts and are
    attached to the request as inline bytes.

parse_json_output() lives here too because every caller needs it: even
with response_mime_type="application/json" the model occasionally wraps
the payload in ```json fences or starts with a sentence of prose.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from tender_hunter.config import config
from tender_hunter.errors import GenerationError
from tender_hunter.schemas import ImagePart

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


class RateLimiter:
    """
    Minimum-interval limiter.

    acquire() blocks until at least min_interval seconds have passed since
    the previous acquire(). clock and sleep are injectable so tests can run
    the whole pipeline without actually waiting.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Wait for the next slot. Returns how long we slept."""
        with self._lock:
            waited = 0.0
            if self._last is not None and self.min_interval > 0:
                remaining = self.min_interval - (self._clock() - self._last)
                if remaining > 0:
                    logger.debug("Rate limiter: sleeping %.2fs before next call", remaining)
                    self._sleep(remaining)
                    waited = remaining
            self._last = self._clock()
            return waited


class GenAIClient:
    """
    Thin wrapper around google-genai.

    Usage:
        client = GenAIClient()
        text = client.generate(prompt, response_schema=SCHEMA)
        data = parse_json_output(text)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        limiter: Optional[RateLimiter] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key if api_key is not None else config.genai.api_key
        self.model = model or config.genai.model
        self.limiter = limiter or RateLimiter(config.genai.min_call_interval)
        self.max_retries = max_retries or config.genai.max_retries
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else config.genai.retry_base_delay
        )
        self._sleep = sleep
        self._client = None

    def _get_client(self):
        """
        Lazily build the SDK client.

        Constructing it eagerly made importing the package fail on machines
        without a key, which broke the unit tests for the pure modules.
        """
        if self._client is not None:
            return self._client
        if not self.api_key:
            raise GenerationError(
                "No generative-model API key configured. Set GEMINI_API_KEY."
            )
        from google import genai

        self._client = genai.Client(api_key=self.api_key)
        return self._client

    def generate(
        self,
        prompt: str,
        images: Optional[Sequence[ImagePart]] = None,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Send one prompt (plus optional images) and return the raw text.

        With a response_schema the model is asked for JSON; without one the
        caller gets free text and parses it loosely.
        """
        from google.genai import types

        client = self._get_client()
        contents: List[Any] = [prompt]
        for image in images or []:
            contents.append(
                types.Part.from_bytes(
                    data=base64.b64decode(image.data),
                    mime_type=image.mime_type,
                )
            )

        config_kwargs: Dict[str, Any] = {"temperature": config.genai.temperature}
        if response_schema is not None:
            config_kwargs["response_mime_type"] = "application/json"
            config_kwargs["response_schema"] = response_schema
        gen_config = types.GenerateContentConfig(**config_kwargs)

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            self.limiter.acquire()
            try:
                response = client.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=gen_config,
                )
                text = (response.text or "").strip()
                logger.info(
                    "GenAI returned %d chars on attempt %d/%d",
                    len(text), attempt, self.max_retries,
                )
                return text
            except Exception as exc:
                last_error = exc
                if attempt == self.max_retries:
                    break
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "GenAI attempt %d/%d failed: %s. Retrying in %.1fs.",
                    attempt, self.max_retries, exc, delay,
                )
                self._sleep(delay)

        raise GenerationError(
            f"Generation failed after {self.max_retries} attempts: {last_error}"
        ) from last_error


def parse_json_output(text: Optional[str]) -> Optional[Any]:
    """
    Recover the JSON value from a model response.

    Strategies, in order:
    1. Direct parse.
    2. Content of the first ```json fenced block.
    3. The first well-formed object or array, trailing text ignored.
    Returns None if nothing parses; callers decide whether that is fatal.
    """
    if not text or not text.strip():
        return None
    candidate = text.strip()

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    fenced = _FENCED_BLOCK.search(candidate)
    if fenced:
        try:
            return json.loads(fenced.group(1))
        except json.JSONDecodeError:
            candidate = fenced.group(1)

    # Decode the first value and ignore whatever prose follows it.
    decoder = json.JSONDecoder()
    for start, char in enumerate(candidate):
        if char not in "{[":
            continue
        try:
            value, _ = decoder.raw_decode(candidate, start)
            return value
        except json.JSONDecodeError:
            continue

    logger.error("Could not parse model output as JSON. First 300 chars: %s", text[:300])
    return None
