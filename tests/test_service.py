"""Tests for the recursive month summarizer."""

from __future__ import annotations

import re
from typing import Callable

import pytest

from conftest import FakeClock, StubClient, heading_of, make_document, size_limit
from monthly_summaries.documents import Document, document_from_text
from monthly_summaries.summaries import CacheStore, MonthSummarizer, OutcomeSource, Stage
from monthly_summaries.summaries.client import ErrorKind, SummarizerError
from monthly_summaries.summaries.service import (
    DIGEST_FALLBACK,
    PLACEHOLDER_BODY,
    splice_digest,
)

MakeSummarizer = Callable[..., MonthSummarizer]


def _by_heading(user_prompt: str) -> str:
    return f"Summary of {heading_of(user_prompt)[2:]}."


def _reject_whole(user_prompt: str) -> str:
    if heading_of(user_prompt) == "# February 2021":
        raise size_limit()
    return _by_heading(user_prompt)


def _reject_whole_and_halves(user_prompt: str) -> str:
    heading = heading_of(user_prompt)
    if heading == "# February 2021" or "Half)" in heading:
        raise size_limit()
    return _by_heading(user_prompt)


class TestWholeDocument:
    def test_fresh_summary_is_cached_and_headed(
        self, make_summarizer: MakeSummarizer, cache: CacheStore, document: Document
    ) -> None:
        client = StubClient()
        outcome = make_summarizer(client, with_digest=False).generate(document)

        assert outcome.source is OutcomeSource.FRESH
        assert outcome.stage is Stage.WHOLE
        assert outcome.api_calls == 1
        assert outcome.text == "## February 2021\n\nA summary that is long enough to keep."
        assert cache.get("2021-02").text == outcome.text

    def test_user_prompt_carries_label_and_content(
        self, make_summarizer: MakeSummarizer, document: Document
    ) -> None:
        client = StubClient()
        make_summarizer(client, with_digest=False).generate(document)
        assert client.calls[0] == f"# February 2021\n\n{document.text}"

    def test_second_run_is_served_from_cache(
        self, make_summarizer: MakeSummarizer, document: Document
    ) -> None:
        first = make_summarizer(StubClient(), with_digest=False).generate(document)
        client = StubClient()
        second = make_summarizer(client, with_digest=False).generate(document)

        assert second.source is OutcomeSource.CACHE
        assert second.stage is Stage.CACHE
        assert second.api_calls == 0
        assert client.calls == []
        assert second.text == first.text

    def test_refresh_bypasses_cache(self, make_summarizer: MakeSummarizer, document: Document) -> None:
        make_summarizer(StubClient(), with_digest=False).generate(document)
        client = StubClient(responder=lambda user: "A brand new summary of the month.")
        outcome = make_summarizer(client, with_digest=False).generate(document, refresh=True)
        assert outcome.source is OutcomeSource.FRESH
        assert outcome.text.endswith("A brand new summary of the month.")

    def test_expired_cache_is_regenerated(
        self, make_summarizer: MakeSummarizer, document: Document, clock: FakeClock
    ) -> None:
        make_summarizer(StubClient(), with_digest=False).generate(document)
        clock.advance(days=8)
        client = StubClient()
        outcome = make_summarizer(client, with_digest=False).generate(document)
        assert outcome.source is OutcomeSource.FRESH
        assert len(client.calls) == 1

    def test_corrupted_cache_is_reprocessed(
        self, make_summarizer: MakeSummarizer, cache: CacheStore, document: Document
    ) -> None:
        path = cache.summary_path_for(document.key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("---\n{{{ not yaml\n---\n\n## February 2021\n\nold", encoding="utf-8")

        client = StubClient()
        outcome = make_summarizer(client, with_digest=False).generate(document)
        assert outcome.source is OutcomeSource.FRESH
        assert cache.get(document.key).text == outcome.text

    @pytest.mark.parametrize("response", ["", "   \n  ", "OK"])
    def test_trivial_response_becomes_cached_placeholder(
        self, make_summarizer: MakeSummarizer, cache: CacheStore, document: Document, response: str
    ) -> None:
        outcome = make_summarizer(StubClient(responder=lambda user: response)).generate(document)
        expected = f"## February 2021\n\n{PLACEHOLDER_BODY}"

        assert outcome.source is OutcomeSource.PLACEHOLDER
        assert outcome.text == expected
        assert cache.get(document.key).text == expected

        client = StubClient()
        again = make_summarizer(client).generate(document)
        assert again.source is OutcomeSource.CACHE
        assert again.text == expected
        assert client.calls == []

    def test_service_error_is_rendered_inline_and_not_cached(
        self, make_summarizer: MakeSummarizer, cache: CacheStore, document: Document
    ) -> None:
        def fail(user: str) -> str:
            raise SummarizerError("quota exceeded", ErrorKind.SERVICE)

        outcome = make_summarizer(StubClient(responder=fail)).generate(document)

        assert outcome.source is OutcomeSource.FAILED
        assert outcome.failed
        assert outcome.text == "## February 2021\n\nError generating summary: quota exceeded"
        assert outcome.error == "quota exceeded"
        assert not cache.summary_path_for(document.key).exists()


class TestEscalation:
    def test_size_limit_splits_into_halves(
        self, make_summarizer: MakeSummarizer, cache: CacheStore, document: Document
    ) -> None:
        client = StubClient(responder=_reject_whole)
        outcome = make_summarizer(client, with_digest=False).generate(document)

        assert outcome.stage is Stage.HALVES
        assert outcome.source is OutcomeSource.FRESH
        assert [heading_of(c) for c in client.calls] == [
            "# February 2021",
            "# February 2021 (First Half)",
            "# February 2021 (Second Half)",
        ]
        assert client.combine_calls == []
        expected = (
            "## February 2021\n\n"
            "Summary of February 2021 (First Half).\n\n"
            "Summary of February 2021 (Second Half)."
        )
        assert outcome.text == expected
        assert cache.get(document.key).text == expected

    def test_halves_cover_the_whole_document(
        self, make_summarizer: MakeSummarizer, document: Document
    ) -> None:
        client = StubClient(responder=_reject_whole)
        make_summarizer(client, with_digest=False).generate(document)
        first_body = client.calls[1].split("\n\n", 1)[1]
        second_body = client.calls[2].split("\n\n", 1)[1]
        assert first_body.split("\n") + second_body.split("\n") == list(document.lines)

    def test_size_limit_in_a_half_escalates_to_quarters(
        self, make_summarizer: MakeSummarizer, cache: CacheStore, document: Document
    ) -> None:
        client = StubClient(responder=_reject_whole_and_halves)
        outcome = make_summarizer(client, with_digest=False).generate(document)

        assert outcome.stage is Stage.QUARTERS
        quarter_headings = [heading_of(c) for c in client.calls[2:]]
        assert quarter_headings == [
            "# February 2021 (First Quarter)",
            "# February 2021 (Second Quarter)",
            "# February 2021 (Third Quarter)",
            "# February 2021 (Fourth Quarter)",
        ]
        # Whole attempt, the failing first half, four quarters and one combine.
        assert outcome.api_calls == 7
        assert client.combine_calls == [
            tuple(f"Summary of February 2021 ({n} Quarter)." for n in ("First", "Second", "Third", "Fourth"))
        ]
        assert outcome.text == "## February 2021\n\nCombined narrative of every part."
        assert cache.get(document.key).text == outcome.text

    def test_quarters_split_the_original_document(
        self, make_summarizer: MakeSummarizer, document: Document
    ) -> None:
        client = StubClient(responder=_reject_whole_and_halves)
        make_summarizer(client, with_digest=False).generate(document)
        bodies = [c.split("\n\n", 1)[1].split("\n") for c in client.calls[2:]]
        assert [line for body in bodies for line in body] == list(document.lines)

    def test_failed_combine_falls_back_to_concatenation(
        self, make_summarizer: MakeSummarizer, document: Document
    ) -> None:
        def broken_combine(parts):
            raise SummarizerError("upstream unavailable")

        client = StubClient(responder=_reject_whole_and_halves, combiner=broken_combine)
        outcome = make_summarizer(client, with_digest=False).generate(document)

        assert outcome.source is OutcomeSource.FRESH
        assert outcome.text == "## February 2021\n\n" + "\n\n".join(
            f"Summary of February 2021 ({n} Quarter)." for n in ("First", "Second", "Third", "Fourth")
        )

    def test_size_limit_in_quarters_is_terminal(
        self, make_summarizer: MakeSummarizer, cache: CacheStore, document: Document
    ) -> None:
        def always_too_big(user: str) -> str:
            raise size_limit()

        client = StubClient(responder=always_too_big)
        outcome = make_summarizer(client).generate(document)

        assert outcome.source is OutcomeSource.FAILED
        assert outcome.stage is Stage.QUARTERS
        assert outcome.text.startswith("## February 2021\n\nError generating summary: ")
        # Whole, first half, first quarter; nothing deeper.
        assert len(client.calls) == 3
        assert not cache.summary_path_for(document.key).exists()

    def test_service_error_in_a_half_fails_the_document(
        self, make_summarizer: MakeSummarizer, document: Document
    ) -> None:
        def responder(user: str) -> str:
            if heading_of(user) == "# February 2021":
                raise size_limit()
            raise SummarizerError("connection reset")

        client = StubClient(responder=responder)
        outcome = make_summarizer(client).generate(document)
        assert outcome.source is OutcomeSource.FAILED
        assert outcome.stage is Stage.HALVES
        assert outcome.text.endswith("Error generating summary: connection reset")

    def test_single_line_document_is_not_split(self, make_summarizer: MakeSummarizer) -> None:
        document = document_from_text("2021-02", "one enormous line")

        def always_too_big(user: str) -> str:
            raise size_limit("token limit reached")

        client = StubClient(responder=always_too_big)
        outcome = make_summarizer(client).generate(document)
        assert outcome.source is OutcomeSource.FAILED
        assert outcome.stage is Stage.WHOLE
        assert len(client.calls) == 1

    @pytest.mark.parametrize("line_count", [2, 3])
    def test_short_document_never_sends_empty_segments(
        self, make_summarizer: MakeSummarizer, cache: CacheStore, line_count: int
    ) -> None:
        text = "\n".join(["## 2021-02-01", *(f"huge line {n}" for n in range(line_count - 1))])
        document = document_from_text("2021-02", text)
        client = StubClient(responder=_reject_whole_and_halves)
        outcome = make_summarizer(client).generate(document)

        assert all(c.split("\n\n", 1)[1].strip() for c in client.calls)
        assert not any("Quarter)" in heading_of(c) for c in client.calls)
        assert outcome.source is OutcomeSource.FAILED
        assert outcome.stage is Stage.HALVES
        assert outcome.api_calls == 2
        assert not cache.summary_path_for(document.key).exists()

    def test_four_line_document_reaches_quarters_with_one_line_each(
        self, make_summarizer: MakeSummarizer
    ) -> None:
        document = document_from_text("2021-02", "## 2021-02-01\nline a\n## 2021-02-02\nline b")
        client = StubClient(responder=_reject_whole_and_halves)
        outcome = make_summarizer(client, with_digest=False).generate(document)

        assert outcome.stage is Stage.QUARTERS
        bodies = [c.split("\n\n", 1)[1] for c in client.calls if "Quarter)" in heading_of(c)]
        assert bodies == list(document.lines)


class TestDigest:
    def test_digest_is_spliced_after_heading(
        self, make_summarizer: MakeSummarizer, cache: CacheStore, document: Document
    ) -> None:
        client = StubClient()
        outcome = make_summarizer(client).generate(document)

        assert outcome.text == (
            "## February 2021\n\n"
            "**tl;dr:** The month in one sentence.\n\n"
            "A summary that is long enough to keep."
        )
        assert outcome.api_calls == 2
        assert len(client.digest_calls) == 1
        # Cached summary stays without the tl;dr line.
        assert "tl;dr" not in cache.get(document.key).text
        assert cache.get_digest(document.key).text == "The month in one sentence."

    def test_digest_request_contains_full_summary(
        self, make_summarizer: MakeSummarizer, document: Document
    ) -> None:
        client = StubClient()
        make_summarizer(client).generate(document)
        assert "## February 2021\n\nA summary that is long enough to keep." in client.digest_calls[0]

    def test_cache_hit_reuses_digest(self, make_summarizer: MakeSummarizer, document: Document) -> None:
        first = make_summarizer(StubClient()).generate(document)
        client = StubClient()
        second = make_summarizer(client).generate(document)
        assert second.source is OutcomeSource.CACHE
        assert second.text == first.text
        assert client.calls == []

    def test_expired_digest_is_regenerated_for_cache_hit(
        self, make_summarizer: MakeSummarizer, cache: CacheStore, document: Document, clock: FakeClock
    ) -> None:
        make_summarizer(StubClient()).generate(document)
        digest_path = cache.digest_path_for(document.key)
        raw = digest_path.read_text(encoding="utf-8")
        stale = re.sub(r"^timestamp: .*$", "timestamp: '2023-01-01T00:00:00+00:00'", raw, flags=re.M)
        digest_path.write_text(stale, encoding="utf-8")

        client = StubClient(digest=lambda user: "A fresher one-sentence digest.")
        outcome = make_summarizer(client).generate(document)
        assert outcome.source is OutcomeSource.CACHE
        assert outcome.api_calls == 1
        assert "**tl;dr:** A fresher one-sentence digest." in outcome.text

    def test_regenerated_summary_invalidates_digest(
        self, make_summarizer: MakeSummarizer, document: Document, clock: FakeClock
    ) -> None:
        make_summarizer(StubClient()).generate(document)
        clock.advance(hours=1)
        client = StubClient(digest=lambda user: "A digest of the new summary.")
        outcome = make_summarizer(client).generate(document, refresh=True)
        assert len(client.digest_calls) == 1
        assert "**tl;dr:** A digest of the new summary." in outcome.text

    def test_digest_failure_degrades_to_placeholder_sentence(
        self, make_summarizer: MakeSummarizer, cache: CacheStore, document: Document
    ) -> None:
        def broken_digest(user: str) -> str:
            raise SummarizerError("timeout")

        outcome = make_summarizer(StubClient(digest=broken_digest)).generate(document)
        assert outcome.source is OutcomeSource.FRESH
        assert f"**tl;dr:** {DIGEST_FALLBACK}" in outcome.text
        assert cache.get(document.key) is not None
        assert cache.get_digest(document.key) is None

    def test_digest_uses_split_summary(self, make_summarizer: MakeSummarizer, document: Document) -> None:
        client = StubClient(responder=_reject_whole)
        outcome = make_summarizer(client).generate(document)
        assert outcome.text.startswith("## February 2021\n\n**tl;dr:** The month in one sentence.\n\n")
        assert "(Second Half)" in client.digest_calls[0]


def test_splice_digest_adds_missing_heading() -> None:
    document = make_document()
    spliced = splice_digest(document, "Body without heading.", "One sentence.")
    assert spliced == "## February 2021\n\n**tl;dr:** One sentence.\n\nBody without heading."
