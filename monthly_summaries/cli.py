from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from .documents import InputMissingError, load_documents
from .pipeline import DEFAULT_PAUSE_SECONDS, SummaryPipeline, estimate_cost_range
from .summaries import (
    AuthenticationError,
    CacheStore,
    MonthSummarizer,
    OpenRouterClient,
    OpenRouterError,
    OpenRouterSummarizer,
    PromptLoader,
    SummaryOutcome,
)
from .summaries.prompts import PROMPT_NAMES, PromptValidationError

DEFAULT_MODEL = "openai/gpt-5-mini"

Confirm = Callable[[str], bool]


def get_default_input_dir() -> Path:
    return Path("output")


def get_default_output_path() -> Path:
    return Path("summary.md")


def get_default_cache_dir() -> Path:
    return Path("cache")


def get_openrouter_config_path() -> Path:
    return Path("~/.config/openrouter/key").expanduser()


def load_openrouter_api_key() -> Optional[str]:
    env_key = os.getenv("OPENROUTER_API_KEY")
    if env_key and env_key.strip():
        return env_key.strip()

    config_path = get_openrouter_config_path()
    try:
        contents = config_path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return contents or None


def build_openrouter_client(cache_dir: Path) -> OpenRouterClient:
    api_key = load_openrouter_api_key()
    if not api_key:
        raise AuthenticationError(
            "OpenRouter API key not found. Set OPENROUTER_API_KEY or place a key in ~/.config/openrouter/key."
        )

    base_url = os.getenv("OPENROUTER_API_BASE", "https://openrouter.ai/api/v1")
    referer = os.getenv("OPENROUTER_REFERER") or None
    title = os.getenv("OPENROUTER_TITLE", "monthly-summaries") or None
    return OpenRouterClient(
        api_key=api_key,
        base_url=base_url,
        referer=referer,
        title=title,
        price_cache_path=cache_dir / "_prices.json",
    )


def prompt_confirm(message: str) -> bool:
    from prompt_toolkit.shortcuts import confirm

    try:
        return confirm(message)
    except (EOFError, KeyboardInterrupt):
        return False


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def render_progress(index: int, total: int, outcome: SummaryOutcome) -> None:
    status = outcome.source.value
    print(f"[{status}] Completed {index}/{total} months ({outcome.key})")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="monthly-summaries",
        description="Summarize monthly conversation exports (YYYY-MM.md) into a single narrative document.",
    )
    p.add_argument(
        "--input-dir",
        type=Path,
        default=get_default_input_dir(),
        help="Directory containing monthly YYYY-MM.md files (default: ./output)",
    )
    p.add_argument(
        "-o",
        "--output",
        type=Path,
        default=get_default_output_path(),
        help="Combined summary file to write (default: ./summary.md)",
    )
    p.add_argument(
        "--cache-dir",
        type=Path,
        default=get_default_cache_dir(),
        help="Directory for cached monthly summaries (default: ./cache)",
    )
    p.add_argument(
        "--model",
        default=DEFAULT_MODEL,
        help=f"OpenRouter model identifier to use (default: {DEFAULT_MODEL})",
    )
    p.add_argument(
        "--prompts-dir",
        type=Path,
        help="Directory with summarize.md / combine.md / digest.md overrides",
    )
    p.add_argument(
        "--temperature",
        type=float,
        help="Optional sampling temperature for completions",
    )
    p.add_argument(
        "--max-tokens",
        type=int,
        help="Optional cap for completion tokens",
    )
    p.add_argument(
        "--max-age-days",
        type=float,
        default=7.0,
        help="Reuse cached summaries younger than this many days (default: 7)",
    )
    p.add_argument(
        "--pause",
        type=float,
        default=DEFAULT_PAUSE_SECONDS,
        help=f"Seconds to wait after each month that needed API calls (default: {DEFAULT_PAUSE_SECONDS})",
    )
    p.add_argument("--no-digest", action="store_true", help="Skip the one-sentence tl;dr line per month")
    p.add_argument(
        "--refresh",
        action="store_true",
        help="Ignore cached summaries and regenerate every month",
    )
    p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation before calling the API")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return p


def main(argv: Optional[list[str]] = None, *, confirm: Optional[Confirm] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        documents = load_documents(args.input_dir)
    except InputMissingError as exc:
        print(f"{exc}. Please run the export step first to generate monthly files.", file=sys.stderr)
        return 1
    if not documents:
        print(f"No monthly markdown files found in {args.input_dir}", file=sys.stderr)
        return 1

    prompt_loader = PromptLoader(args.prompts_dir)
    try:
        for name in PROMPT_NAMES:
            prompt_loader.load(name)
    except (OSError, UnicodeDecodeError, PromptValidationError) as exc:
        print(f"Cannot use prompt templates: {exc}", file=sys.stderr)
        return 1

    cache_dir: Path = args.cache_dir.expanduser()
    cache = CacheStore(cache_dir, max_age=timedelta(days=args.max_age_days))

    client: Optional[OpenRouterClient] = None
    try:
        client = build_openrouter_client(cache_dir)
    except AuthenticationError as exc:
        parser.error(str(exc))
        return 2
    except OpenRouterError as exc:
        parser.error(f"Failed to initialise OpenRouter client: {exc}")
        return 2

    try:
        summarizer_client = OpenRouterSummarizer(
            client,
            args.model,
            temperature=args.temperature,
            max_tokens=args.max_tokens,
        )
        summarizer = MonthSummarizer(
            summarizer_client,
            cache,
            prompt_loader=prompt_loader,
            with_digest=not args.no_digest,
        )
        pipeline = SummaryPipeline(
            summarizer,
            args.output,
            pause_seconds=args.pause,
            refresh=args.refresh,
        )

        plan = pipeline.plan(documents)
        low, high = estimate_cost_range(len(plan.pending))
        print(f"Found {plan.total} monthly files")
        print(f"{len(plan.cached)} months already cached")
        print(f"{len(plan.pending)} months need API calls")
        print(
            f"This will make {len(plan.pending)} API calls. Estimated cost: ${low:.2f} - ${high:.2f}"
        )

        if not args.yes:
            ask = confirm or prompt_confirm
            if not ask("Do you want to continue?"):
                print("Operation cancelled.")
                return 0

        stats = pipeline.run(documents, progress=render_progress)

        run_low, run_high = estimate_cost_range(stats.fresh + stats.failed)
        print()
        print("Successfully generated comprehensive summary!")
        print(f"Summary saved to: {pipeline.output_path}")
        print(f"Processed {stats.processed} months")
        print(f"Used {stats.cached} cached summaries")
        print(f"Generated {stats.fresh} new summaries ({stats.api_calls} API calls)")
        if stats.failed:
            print(f"{stats.failed} months failed; see the inline errors in the output")
        usage = summarizer_client.usage
        print(f"Tokens used: {usage.prompt_tokens} prompt / {usage.completion_tokens} completion")
        if usage.priced:
            print(f"Estimated cost for this run: ${usage.cost_usd:.4f}")
        else:
            print(f"Estimated cost for this run: ${run_low:.2f} - ${run_high:.2f}")
        return 0
    finally:
        if client:
            client.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
