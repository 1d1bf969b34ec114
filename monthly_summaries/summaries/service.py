"""Cache-aware, size-adaptive summarization of a single monthly document."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Mapping, Optional, Sequence, Tuple

from .client import SummarizerClient, SummarizerError, segment_heading
from .prompts import COMBINE_PROMPT, DIGEST_PROMPT, SUMMARIZE_PROMPT, PromptLoader
from .splitter import SECTION_MARKER, split_in_four, split_in_two
from .storage import CacheStore
from .types import CacheEntry, OutcomeSource, Segment, Stage, SummaryOutcome

if TYPE_CHECKING:
    from ..documents import Document

PLACEHOLDER_BODY = "No significant activity recorded for this month."
DIGEST_FALLBACK = "Unable to generate summary."
DIGEST_REQUEST = "Please create a one-sentence summary of this month's activities:\n\n{summary}"


class Merge(enum.Enum):
    NONE = "none"
    CONCATENATE = "concatenate"
    COMBINE = "combine"


@dataclass(frozen=True)
class StagePlan:
    """One escalation tier: how many segments and how to merge their summaries."""

    stage: Stage
    fan_out: int
    merge: Merge


# Escalation order on size-limit failures. The last row is a hard bound.
STAGE_PLANS: Tuple[StagePlan, ...] = (
    StagePlan(Stage.WHOLE, 1, Merge.NONE),
    StagePlan(Stage.HALVES, 2, Merge.CONCATENATE),
    StagePlan(Stage.QUARTERS, 4, Merge.COMBINE),
)


class _CallCounter:
    def __init__(self) -> None:
        self.count = 0


class MonthSummarizer:
    """Turns one document into a headed summary block, never raising.

    Order of operations: cache lookup, a whole-document attempt, then a
    two-way and finally a four-way split when the summarizer reports the
    input as too large. Fresh results are cached before the optional
    one-sentence digest is derived.
    """

    def __init__(
        self,
        client: SummarizerClient,
        cache: CacheStore,
        *,
        prompt_loader: Optional[PromptLoader] = None,
        with_digest: bool = True,
        section_marker: str = SECTION_MARKER,
        stage_plans: Sequence[StagePlan] = STAGE_PLANS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self.cache = cache
        self._prompt_loader = prompt_loader or PromptLoader()
        self.with_digest = with_digest
        self.section_marker = section_marker
        self._stage_plans = tuple(stage_plans)
        self._logger = logger or logging.getLogger(__name__)

    def generate(self, document: "Document", *, refresh: bool = False) -> SummaryOutcome:
        """Return the rendered block for ``document``."""
        calls = _CallCounter()

        if not refresh:
            cached = self.cache.get(document.key)
            if cached:
                self._log_debug("cache-hit", document, {"cache_path": str(cached.path)})
                text = self._finish(document, cached, calls)
                return SummaryOutcome(document.key, text, OutcomeSource.CACHE, Stage.CACHE, calls.count)

        index = 0
        while True:
            plan = self._stage_plans[index]
            try:
                body = self._summarize_stage(document, plan, calls)
                break
            except SummarizerError as exc:
                can_escalate = self._can_escalate(document, index)
                if exc.is_size_limit and can_escalate:
                    index += 1
                    self._logger.info(
                        "Token limit exceeded for %s at stage %s, splitting into %d parts",
                        document.label,
                        plan.stage.value,
                        self._stage_plans[index].fan_out,
                    )
                    continue
                self._logger.error("Error summarizing %s (%s): %s", document.label, plan.stage.value, exc)
                return SummaryOutcome(
                    document.key,
                    render_error(document, str(exc)),
                    OutcomeSource.FAILED,
                    plan.stage,
                    calls.count,
                    error=str(exc),
                )

        if len(body.strip()) < self.cache.min_length:
            placeholder = render_placeholder(document)
            self._store(document, placeholder)
            self._log_debug("placeholder", document, {"stage": plan.stage.value})
            return SummaryOutcome(document.key, placeholder, OutcomeSource.PLACEHOLDER, plan.stage, calls.count)

        entry = self._store(document, f"{document.heading}\n\n{body}")
        text = self._finish(document, entry, calls)
        return SummaryOutcome(document.key, text, OutcomeSource.FRESH, plan.stage, calls.count)

    def _can_escalate(self, document: "Document", index: int) -> bool:
        """A tier is only worth trying when every segment gets at least one line."""
        if index + 1 >= len(self._stage_plans):
            return False
        return len(document.lines) >= self._stage_plans[index + 1].fan_out

    def _store(self, document: "Document", text: str) -> CacheEntry:
        """Cache ``text``; on a write failure keep going with an unsaved entry."""
        try:
            entry = self.cache.put(document.key, text, model=self._model_tag())
        except OSError as exc:
            self._logger.error(
                "Could not cache summary for %s, it will be regenerated next run: %s", document.label, exc
            )
            return CacheEntry(
                key=document.key,
                text=text,
                timestamp=self.cache.now(),
                path=self.cache.summary_path_for(document.key),
                model=self._model_tag(),
            )
        self._log_debug("cache-write", document, {"cache_path": str(entry.path)})
        return entry

    # ------------------------------
    # Stages
    # ------------------------------
    def _summarize_stage(self, document: "Document", plan: StagePlan, calls: _CallCounter) -> str:
        system_prompt = self._prompt_loader.render(SUMMARIZE_PROMPT, period=document.label)
        segments = self._segments_for(document, plan)

        summaries: List[str] = []
        for segment in segments:
            heading = segment_heading(document.label, segment if plan.fan_out > 1 else None)
            self._log_debug("summarize", document, {"stage": plan.stage.value, "segment": heading})
            calls.count += 1
            summary = self._client.summarize(system_prompt, f"{heading}\n\n{segment.text}")
            summaries.append(summary.strip())

        if plan.merge is Merge.COMBINE:
            return self._combine(document, summaries, calls)
        return "\n\n".join(s for s in summaries if s)

    def _segments_for(self, document: "Document", plan: StagePlan) -> List[Segment]:
        if plan.fan_out == 1:
            return [Segment(index=0, total=1, lines=document.lines)]
        if plan.fan_out == 2:
            return list(split_in_two(document.lines, self.section_marker))
        if plan.fan_out == 4:
            return split_in_four(document.lines, self.section_marker)
        raise ValueError(f"Unsupported fan-out {plan.fan_out}")

    def _combine(self, document: "Document", summaries: List[str], calls: _CallCounter) -> str:
        system_prompt = self._prompt_loader.render(
            COMBINE_PROMPT, period=document.label, count=len(summaries)
        )
        try:
            calls.count += 1
            combined = self._client.combine(system_prompt, summaries).strip()
        except SummarizerError as exc:
            self._logger.warning("Error combining summaries for %s, concatenating instead: %s", document.label, exc)
            combined = ""
        return combined or "\n\n".join(s for s in summaries if s)

    # ------------------------------
    # Digest
    # ------------------------------
    def _finish(self, document: "Document", entry: CacheEntry, calls: _CallCounter) -> str:
        text = ensure_heading(document, entry.text)
        if not self.with_digest or text == render_placeholder(document):
            return text
        sentence = self._digest_for(document, entry, calls)
        return splice_digest(document, text, sentence)

    def _digest_for(self, document: "Document", entry: CacheEntry, calls: _CallCounter) -> str:
        cached = self.cache.get_digest(document.key, parent=entry)
        if cached:
            self._log_debug("digest-cache-hit", document, {"cache_path": str(cached.path)})
            return cached.text.strip()

        system_prompt = self._prompt_loader.render(DIGEST_PROMPT, period=document.label)
        try:
            calls.count += 1
            sentence = self._client.summarize(system_prompt, DIGEST_REQUEST.format(summary=entry.text)).strip()
        except SummarizerError as exc:
            self._logger.warning("Error generating one-sentence summary for %s: %s", document.label, exc)
            return DIGEST_FALLBACK

        sentence = " ".join(sentence.split())
        if len(sentence) < self.cache.min_length:
            self._logger.warning("Empty one-sentence summary for %s", document.label)
            return DIGEST_FALLBACK
        try:
            self.cache.put_digest(document.key, sentence, parent=entry, model=self._model_tag())
        except OSError as exc:
            self._logger.warning("Could not cache one-sentence summary for %s: %s", document.label, exc)
        return sentence

    # ------------------------------
    # Helpers
    # ------------------------------
    def _model_tag(self) -> Optional[str]:
        model = getattr(self._client, "model", None)
        return model if isinstance(model, str) else None

    def _log_debug(self, event: str, document: "Document", extra: Mapping[str, object]) -> None:
        if not self._logger:
            return
        payload = {"event": event, "document": document.key, "label": document.label}
        payload.update(dict(extra))
        self._logger.debug("summary-service", extra={"summary": payload})


def render_placeholder(document: "Document") -> str:
    return f"{document.heading}\n\n{PLACEHOLDER_BODY}"


def render_error(document: "Document", message: str) -> str:
    return f"{document.heading}\n\nError generating summary: {message}"


def ensure_heading(document: "Document", text: str) -> str:
    first_line, _, _ = text.partition("\n")
    if first_line.strip() == document.heading:
        return text
    return f"{document.heading}\n\n{text.lstrip()}"


def splice_digest(document: "Document", text: str, sentence: str) -> str:
    """Insert a ``**tl;dr:**`` line right after the heading of ``text``."""
    _, _, rest = ensure_heading(document, text).partition("\n")
    body = rest.lstrip("\n")
    return f"{document.heading}\n\n**tl;dr:** {sentence}\n\n{body}"
