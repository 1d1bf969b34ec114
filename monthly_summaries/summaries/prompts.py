"""System prompts for summarizing, combining and digesting a month."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

_PLACEHOLDER = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")
_BUNDLED_DIR = Path(__file__).resolve().parent / "prompts"
_SUFFIXES = (".md", ".txt")

SUMMARIZE_PROMPT = "summarize"
COMBINE_PROMPT = "combine"
DIGEST_PROMPT = "digest"
PROMPT_NAMES = (SUMMARIZE_PROMPT, COMBINE_PROMPT, DIGEST_PROMPT)


class PromptValidationError(ValueError):
    """Raised when a prompt template fails validation checks."""


@dataclass(frozen=True)
class PromptDocument:
    """A validated template and the file it came from."""

    content: str
    path: Path

    def render(self, **values: object) -> str:
        """Substitute ``{{name}}`` placeholders; unused values are ignored."""

        def _replace(match: "re.Match[str]") -> str:
            name = match.group(1)
            if name not in values:
                raise PromptValidationError(f"Prompt '{self.path}' expects a value for '{name}'.")
            return str(values[name])

        return _PLACEHOLDER.sub(_replace, self.content).strip()


def validate_template(content: str, path: Path) -> None:
    opening, closing = content.count("{{"), content.count("}}")
    if opening != closing:
        raise PromptValidationError(
            f"Prompt '{path}' has mismatched template braces: {opening} '{{{{' vs {closing} '}}}}'."
        )
    if not _PLACEHOLDER.search(content):
        raise PromptValidationError(f"Prompt '{path}' has no '{{{{name}}}}' placeholder.")


class PromptLoader:
    """Looks prompts up by name, preferring ``prompts_dir`` over the bundled set."""

    def __init__(self, prompts_dir: Optional[Path] = None) -> None:
        self.search_dirs = [_BUNDLED_DIR]
        if prompts_dir:
            self.search_dirs.insert(0, Path(prompts_dir).expanduser())
        self._loaded: Dict[str, PromptDocument] = {}

    def resolve(self, name: str) -> Path:
        for directory in self.search_dirs:
            for suffix in _SUFFIXES:
                path = directory / f"{name}{suffix}"
                if path.is_file():
                    return path
        searched = ", ".join(str(d) for d in self.search_dirs)
        raise FileNotFoundError(f"Prompt '{name}' was not found in: {searched}")

    def load(self, name: str) -> PromptDocument:
        if name not in self._loaded:
            path = self.resolve(name)
            content = path.read_text(encoding="utf-8")
            validate_template(content, path)
            self._loaded[name] = PromptDocument(content=content, path=path)
        return self._loaded[name]

    def render(self, name: str, **values: object) -> str:
        return self.load(name).render(**values)
