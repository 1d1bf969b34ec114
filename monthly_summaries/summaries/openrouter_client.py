"""OpenRouter chat completions over httpx, with retries and typed failures."""
from __future__ import annotations

import json
import logging
import math
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import httpx

from .storage import atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class OpenRouterError(RuntimeError):
    """Base error raised for OpenRouter failures."""


class AuthenticationError(OpenRouterError):
    """Raised when the API key is missing, invalid or not allowed."""


class RateLimitError(OpenRouterError):
    """Raised when OpenRouter keeps answering 429 after retries."""


class TransientError(OpenRouterError):
    """Raised for server or network failures that outlived the retries."""


class ResponseFormatError(OpenRouterError):
    """Raised when a response body is not the shape we expect."""


class ContextLengthError(OpenRouterError):
    """Raised when the prompt does not fit the model's input window."""


_RETRY_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})
_CONTEXT_LENGTH_CODES = frozenset({"context_length_exceeded", "string_above_max_length"})
_CONTEXT_LENGTH_PATTERN = re.compile(
    r"maximum context length|context[ _]length|context window|token limit"
    r"|input tokens exceed|too many tokens|prompt is too long|reduce the length",
    re.IGNORECASE,
)


def is_context_length_failure(status_code: int, message: Optional[str], code: Any = None) -> bool:
    """Return True when an error response means "input too large"."""
    if status_code == 413:
        return True
    if isinstance(code, str) and code in _CONTEXT_LENGTH_CODES:
        return True
    if status_code >= 500 or not message:
        return False
    return bool(_CONTEXT_LENGTH_PATTERN.search(message))


def error_for_status(status_code: int, message: Optional[str], code: Any = None) -> OpenRouterError:
    """Map a failed response to the matching exception instance."""
    if status_code in (401, 403):
        return AuthenticationError(message or f"OpenRouter rejected the API key ({status_code})")
    if is_context_length_failure(status_code, message, code):
        return ContextLengthError(message or f"Input too large for model ({status_code})")
    if status_code == 429:
        return RateLimitError(message or "OpenRouter rate limit exceeded (429)")
    if status_code >= 500:
        return TransientError(message or f"OpenRouter server error ({status_code})")
    return OpenRouterError(message or f"OpenRouter request failed ({status_code})")


def retry_delay(attempt: int, retry_after: Optional[str] = None) -> float:
    """Exponential backoff with jitter, honouring ``Retry-After`` seconds."""
    delay = min(2 ** attempt, 16) * random.uniform(0.5, 1.5)
    if retry_after:
        try:
            delay += float(retry_after)
        except ValueError:
            pass
    return max(0.5, delay)


@dataclass(frozen=True)
class Completion:
    """Text and token accounting for one chat completion."""

    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class ModelPrice:
    """USD per token, as published in the OpenRouter model list."""

    prompt: float
    completion: float

    def cost(self, completion: Completion) -> float:
        total = self.prompt * completion.prompt_tokens + self.completion * completion.completion_tokens
        return round(total, 6)


def parse_completion(data: Mapping[str, Any]) -> Completion:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], Mapping):
        raise ResponseFormatError("OpenRouter chat response missing choices")

    choice = choices[0]
    message = choice.get("message")
    if not isinstance(message, Mapping):
        raise ResponseFormatError("OpenRouter chat response missing message")
    text = message.get("content")
    if text is None:
        text = ""
    if not isinstance(text, str):
        raise ResponseFormatError("OpenRouter chat response content is not text")

    usage = data.get("usage")
    if not isinstance(usage, Mapping):
        usage = {}
    finish_reason = choice.get("finish_reason")
    return Completion(
        text=text,
        prompt_tokens=_token_count(usage.get("prompt_tokens")),
        completion_tokens=_token_count(usage.get("completion_tokens")),
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )


class PriceCatalog:
    """Per-model prices, cached in memory and optionally on disk for an hour."""

    TTL = timedelta(hours=1)

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self.prices: Dict[str, ModelPrice] = {}
        self.fetched_at: Optional[datetime] = None
        if path is not None and path.is_file():
            self._read()

    def is_fresh(self) -> bool:
        if self.fetched_at is None:
            return False
        return datetime.now(timezone.utc) - self.fetched_at < self.TTL

    def replace(self, models: Sequence[Any]) -> None:
        prices = {}
        for model in models:
            if not isinstance(model, Mapping) or not model.get("id"):
                continue
            price = _model_price(model.get("pricing"))
            if price is not None:
                prices[model["id"]] = price
        self.prices = prices
        self.fetched_at = datetime.now(timezone.utc)
        self._write()

    def _read(self) -> None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            fetched_at = datetime.fromisoformat(payload["timestamp"])
            prices = {
                model_id: ModelPrice(float(entry["prompt"]), float(entry["completion"]))
                for model_id, entry in payload["prices"].items()
            }
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.debug("Ignoring unreadable price cache %s: %s", self.path, exc)
            return
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)
        self.prices = prices
        self.fetched_at = fetched_at

    def _write(self) -> None:
        if self.path is None or self.fetched_at is None:
            return
        payload = {
            "timestamp": self.fetched_at.isoformat(),
            "prices": {
                model_id: {"prompt": price.prompt, "completion": price.completion}
                for model_id, price in sorted(self.prices.items())
            },
        }
        try:
            atomic_write_text(self.path, json.dumps(payload, indent=2) + "\n")
        except OSError as exc:
            logger.debug("Could not write price cache %s: %s", self.path, exc)


class OpenRouterClient:
    """Blocking client for the chat completions and model list endpoints."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        *,
        referer: Optional[str] = None,
        title: Optional[str] = None,
        timeout: float = 120.0,
        max_retries: int = 3,
        price_cache_path: Optional[Path] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not api_key:
            raise AuthenticationError("OpenRouter API key is required")

        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.catalog = PriceCatalog(price_cache_path)

        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        if referer:
            headers["HTTP-Referer"] = referer
        if title:
            headers["X-Title"] = title
        self._http = httpx.Client(base_url=self.base_url, headers=headers, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def complete(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        """Run one chat completion and return its text and token usage."""
        payload: Dict[str, Any] = {"model": model, "messages": list(messages)}
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return parse_completion(self._request("POST", "/chat/completions", json=payload))

    def price_for(self, model: str) -> Optional[ModelPrice]:
        """Look up ``model`` in the price list, refreshing it when stale."""
        if not self.catalog.is_fresh():
            models = self._request("GET", "/models").get("data")
            if not isinstance(models, list):
                raise ResponseFormatError("OpenRouter models endpoint returned unexpected payload")
            self.catalog.replace(models)
        return self.catalog.prices.get(model)

    def cost_of(self, model: str, completion: Completion) -> Optional[float]:
        price = self.price_for(model)
        return price.cost(completion) if price else None

    def _request(self, method: str, path: str, **kwargs: Any) -> Mapping[str, Any]:
        last_error: Optional[httpx.HTTPError] = None
        for attempt in range(self.max_retries + 1):
            retries_left = attempt < self.max_retries
            try:
                response = self._http.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                last_error = exc
                if retries_left:
                    logger.debug("%s %s failed (%s), retrying", method, path, exc)
                    time.sleep(retry_delay(attempt))
                continue

            if response.status_code in _RETRY_STATUS_CODES and retries_left:
                logger.debug("%s %s returned %d, retrying", method, path, response.status_code)
                time.sleep(retry_delay(attempt, response.headers.get("Retry-After")))
                continue
            if response.status_code >= 400:
                message, code = _error_fields(response)
                raise error_for_status(response.status_code, message, code)

            data = _json_object(response)
            # Upstream provider failures can arrive inside a 200 body.
            error = data.get("error")
            if isinstance(error, Mapping):
                message = error.get("message") if isinstance(error.get("message"), str) else None
                code = error.get("code")
                raise error_for_status(code if isinstance(code, int) else 400, message, code)
            return data

        if isinstance(last_error, httpx.TimeoutException):
            raise TransientError("OpenRouter request timed out after retries") from last_error
        raise TransientError("OpenRouter request failed after retries") from last_error


def _error_fields(response: httpx.Response) -> "tuple[Optional[str], Any]":
    try:
        body = response.json()
    except ValueError:
        return response.text or None, None
    if isinstance(body, Mapping) and isinstance(body.get("error"), Mapping):
        return body["error"].get("message"), body["error"].get("code")
    return response.text or None, None


def _json_object(response: httpx.Response) -> Mapping[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise ResponseFormatError("OpenRouter returned a non-JSON response") from exc
    if not isinstance(data, Mapping):
        raise ResponseFormatError("OpenRouter response was not a JSON object")
    return data


def _model_price(pricing: Any) -> Optional[ModelPrice]:
    if not isinstance(pricing, Mapping):
        return None
    try:
        prompt = float(pricing.get("prompt"))
        completion = float(pricing.get("completion"))
    except (TypeError, ValueError):
        return None
    if not all(math.isfinite(value) for value in (prompt, completion)):
        return None
    return ModelPrice(prompt, completion)


def _token_count(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
