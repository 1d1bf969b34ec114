"""Summarizer client abstraction consumed by the recursive summarizer."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Sequence

import httpx

from .openrouter_client import Completion, ContextLengthError, OpenRouterClient, OpenRouterError
from .types import ORDINALS, Segment


class ErrorKind(enum.Enum):
    """Classification of a failed summarizer call."""

    SIZE_LIMIT = "size_limit"
    SERVICE = "service"


class SummarizerError(RuntimeError):
    """The only failure a summarizer client may surface to the engine."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.SERVICE) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def is_size_limit(self) -> bool:
        return self.kind is ErrorKind.SIZE_LIMIT


class SummarizerClient(Protocol):
    model: str

    def summarize(self, system_prompt: str, user_prompt: str) -> str:
        ...

    def combine(self, system_prompt: str, parts: Sequence[str]) -> str:
        ...


@dataclass
class UsageTotals:
    """Running totals across every completion made by one client."""

    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0
    priced: bool = False

    def add(self, completion: Completion, cost: Optional[float] = None) -> None:
        self.calls += 1
        self.prompt_tokens += completion.prompt_tokens
        self.completion_tokens += completion.completion_tokens
        if cost is not None:
            self.cost_usd += cost
            self.priced = True


def format_combine_request(parts: Sequence[str]) -> str:
    """Lay out partial summaries as a single user message, in order."""
    blocks = []
    for index, part in enumerate(parts):
        ordinal = ORDINALS[index] if index < len(ORDINALS) else f"Part {index + 1}"
        blocks.append(f"{ordinal} part summary:\n{part.strip()}")
    return f"Please combine these {len(parts)} summaries into one comprehensive summary:\n\n" + "\n\n".join(
        blocks
    )


def segment_heading(label: str, segment: Optional[Segment] = None) -> str:
    if segment is None or segment.total == 1:
        return f"# {label}"
    return f"# {label} ({segment.label})"


class OpenRouterSummarizer:
    """Adapts :class:`OpenRouterClient` to the ``SummarizerClient`` protocol."""

    def __init__(
        self,
        client: OpenRouterClient,
        model: str,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        track_cost: bool = True,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.track_cost = track_cost
        self.usage = UsageTotals()
        self._logger = logger or logging.getLogger(__name__)

    def summarize(self, system_prompt: str, user_prompt: str) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        return self._complete(messages)

    def combine(self, system_prompt: str, parts: Sequence[str]) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": format_combine_request(parts)},
        ]
        return self._complete(messages)

    def _complete(self, messages: Sequence[Mapping[str, str]]) -> str:
        try:
            completion = self._client.complete(
                self.model,
                messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except ContextLengthError as exc:
            raise SummarizerError(str(exc), ErrorKind.SIZE_LIMIT) from exc
        except (OpenRouterError, httpx.HTTPError) as exc:
            raise SummarizerError(str(exc) or exc.__class__.__name__, ErrorKind.SERVICE) from exc

        self.usage.add(completion, self._cost_of(completion))
        self._logger.debug(
            "completion",
            extra={
                "completion": {
                    "model": self.model,
                    "prompt_tokens": completion.prompt_tokens,
                    "completion_tokens": completion.completion_tokens,
                    "finish_reason": completion.finish_reason,
                }
            },
        )
        return completion.text.strip()

    def _cost_of(self, completion: Completion) -> Optional[float]:
        if not self.track_cost:
            return None
        try:
            return self._client.cost_of(self.model, completion)
        except (OpenRouterError, httpx.HTTPError) as exc:
            self._logger.debug("Cost estimate unavailable for %s: %s", self.model, exc)
            self.track_cost = False
            return None
