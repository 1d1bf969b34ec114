"""Dataclasses shared across the summaries feature."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Sequence

ORDINALS = ("First", "Second", "Third", "Fourth", "Fifth", "Sixth", "Seventh", "Eighth")
_PART_NAMES = {2: "Half", 4: "Quarter"}


@dataclass(frozen=True)
class CacheEntry:
    """A persisted summary (or digest) record loaded from the cache area."""

    key: str
    text: str
    timestamp: datetime
    path: Path
    model: Optional[str] = None
    metadata: Dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class Segment:
    """Contiguous slice of a document's lines produced by the splitter."""

    index: int
    total: int
    lines: Sequence[str]

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def ordinal(self) -> str:
        return ORDINALS[self.index] if self.index < len(ORDINALS) else f"Part {self.index + 1}"

    @property
    def label(self) -> str:
        """Human readable position such as ``First Half`` or ``Third Quarter``."""
        part = _PART_NAMES.get(self.total, f"of {self.total}")
        return f"{self.ordinal} {part}"


class Stage(enum.Enum):
    """Escalation tiers of the recursive summarizer."""

    CACHE = "cache"
    WHOLE = "whole"
    HALVES = "halves"
    QUARTERS = "quarters"


class OutcomeSource(enum.Enum):
    CACHE = "cache"
    FRESH = "fresh"
    PLACEHOLDER = "placeholder"
    FAILED = "failed"


@dataclass
class SummaryOutcome:
    """Rendered block for one document plus bookkeeping for the pipeline."""

    key: str
    text: str
    source: OutcomeSource
    stage: Stage
    api_calls: int = 0
    error: Optional[str] = None

    @property
    def cached(self) -> bool:
        return self.source is OutcomeSource.CACHE

    @property
    def failed(self) -> bool:
        return self.source is OutcomeSource.FAILED
