"""Shared test fixtures and stubs."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import pytest

from monthly_summaries.documents import Document, document_from_text
from monthly_summaries.summaries import CacheStore, MonthSummarizer
from monthly_summaries.summaries.client import ErrorKind, SummarizerError

DIGEST_MARKER = "Please create a one-sentence summary"


class FakeClock:
    """Deterministic clock for cache freshness checks."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class StubClient:
    """Scripted ``SummarizerClient`` that records every call."""

    model = "stub-model"

    def __init__(
        self,
        responder: Optional[Callable[[str], str]] = None,
        combiner: Optional[Callable[[Sequence[str]], str]] = None,
        digest: Optional[Callable[[str], str]] = None,
    ) -> None:
        self._responder = responder or (lambda user: "A summary that is long enough to keep.")
        self._combiner = combiner or (lambda parts: "Combined narrative of every part.")
        self._digest = digest or (lambda user: "The month in one sentence.")
        self.calls: List[str] = []
        self.combine_calls: List[Tuple[str, ...]] = []

    @property
    def summary_calls(self) -> List[str]:
        return [c for c in self.calls if not c.startswith(DIGEST_MARKER)]

    @property
    def digest_calls(self) -> List[str]:
        return [c for c in self.calls if c.startswith(DIGEST_MARKER)]

    def summarize(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append(user_prompt)
        if user_prompt.startswith(DIGEST_MARKER):
            return self._digest(user_prompt)
        return self._responder(user_prompt)

    def combine(self, system_prompt: str, parts: Sequence[str]) -> str:
        self.combine_calls.append(tuple(parts))
        return self._combiner(parts)


def size_limit(message: str = "Input tokens exceed the configured limit") -> SummarizerError:
    return SummarizerError(message, ErrorKind.SIZE_LIMIT)


def heading_of(user_prompt: str) -> str:
    return user_prompt.split("\n", 1)[0]


def make_document(key: str = "2021-02", days: int = 4, lines_per_day: int = 3) -> Document:
    lines: List[str] = []
    for day in range(1, days + 1):
        lines.append(f"## {key}-{day:02d}")
        lines.extend(f"**user{n}**: message {n} on day {day}" for n in range(lines_per_day))
    return document_from_text(key, "\n".join(lines), Path(f"{key}.md"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(tmp_path: Path, clock: FakeClock) -> CacheStore:
    return CacheStore(tmp_path / "cache", clock=clock)


@pytest.fixture
def document() -> Document:
    return make_document()


@pytest.fixture
def make_summarizer(cache: CacheStore) -> Callable[..., MonthSummarizer]:
    def _make(client: StubClient, **kwargs: object) -> MonthSummarizer:
        return MonthSummarizer(client, cache, **kwargs)

    return _make
