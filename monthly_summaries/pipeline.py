"""Sequential driver that summarizes every month and persists output as it goes."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .documents import Document, sort_documents
from .summaries import MonthSummarizer, SummaryOutcome
from .summaries.storage import atomic_write_text

TITLE = "# Company Conversation Summary"
DESCRIPTION = (
    "This document contains AI-generated summaries of monthly Slack conversations, ",
    "providing insights into the company's journey, decisions, and key discussions.",
)
COST_PER_DOCUMENT_USD = (0.15, 0.30)
DEFAULT_PAUSE_SECONDS = 1.0

ProgressCallback = Callable[[int, int, SummaryOutcome], None]


@dataclass
class RunPlan:
    """Which documents can be served from cache and which need API calls."""

    cached: List[Document] = field(default_factory=list)
    pending: List[Document] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.cached) + len(self.pending)


@dataclass
class RunStats:
    processed: int = 0
    cached: int = 0
    fresh: int = 0
    failed: int = 0
    api_calls: int = 0

    def record(self, outcome: SummaryOutcome) -> None:
        self.processed += 1
        self.api_calls += outcome.api_calls
        if outcome.cached:
            self.cached += 1
        elif outcome.failed:
            self.failed += 1
        else:
            self.fresh += 1


def estimate_cost_range(
    document_count: int, per_document: Tuple[float, float] = COST_PER_DOCUMENT_USD
) -> Tuple[float, float]:
    low, high = per_document
    return round(document_count * low, 2), round(document_count * high, 2)


def render_header(total: int, *, generated_at: datetime, final: bool = False) -> str:
    count_label = "Total months processed" if final else "Total months to process"
    lines = [
        TITLE,
        "",
        *DESCRIPTION,
        "",
        f"Generated on: {generated_at.isoformat()}",
        f"{count_label}: {total}",
        "",
        "",
    ]
    return "\n".join(lines)


class OutputWriter:
    """Append-only markdown output that is valid after every document."""

    def __init__(self, path: Path, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.path = Path(path).expanduser()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._header = ""

    def start(self, total: int) -> None:
        self._header = render_header(total, generated_at=self._clock())
        atomic_write_text(self.path, self._header)

    def append(self, block: str) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(block.rstrip("\n") + "\n\n")
            handle.flush()
            os.fsync(handle.fileno())

    def finish(self, processed: int) -> None:
        content = self.path.read_text(encoding="utf-8")
        if self._header and content.startswith(self._header):
            content = content[len(self._header) :]
        header = render_header(processed, generated_at=self._clock(), final=True)
        atomic_write_text(self.path, header + content)


class SummaryPipeline:
    """Drives :class:`MonthSummarizer` over documents in strict order."""

    def __init__(
        self,
        summarizer: MonthSummarizer,
        output_path: Path,
        *,
        pause_seconds: float = DEFAULT_PAUSE_SECONDS,
        refresh: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        writer: Optional[OutputWriter] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._summarizer = summarizer
        self.output_path = Path(output_path).expanduser()
        self.pause_seconds = pause_seconds
        self.refresh = refresh
        self._sleep = sleep
        self._writer = writer or OutputWriter(self.output_path)
        self._logger = logger or logging.getLogger(__name__)

    def plan(self, documents: Sequence[Document]) -> RunPlan:
        plan = RunPlan()
        for document in sort_documents(documents):
            if not self.refresh and self._summarizer.cache.is_cached(document.key):
                plan.cached.append(document)
            else:
                plan.pending.append(document)
        return plan

    def run(self, documents: Sequence[Document], progress: Optional[ProgressCallback] = None) -> RunStats:
        ordered = sort_documents(documents)
        stats = RunStats()
        self._writer.start(len(ordered))
        self._logger.debug("pipeline-start", extra={"pipeline": {"documents": len(ordered), "output": str(self.output_path)}})

        for index, document in enumerate(ordered, start=1):
            outcome = self._summarizer.generate(document, refresh=self.refresh)
            self._writer.append(outcome.text)
            stats.record(outcome)
            self._logger.info(
                "Completed %d/%d months (%s, %s)", index, len(ordered), document.key, outcome.source.value
            )
            if progress:
                progress(index, len(ordered), outcome)
            if outcome.api_calls and self.pause_seconds > 0:
                self._sleep(self.pause_seconds)

        self._writer.finish(stats.processed)
        return stats

