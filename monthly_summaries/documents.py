"""Helpers for discovering and loading per-month markdown documents."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import List, Sequence, Tuple

_MONTH_FILE = re.compile(r"^(\d{4})-(\d{2})\.md$")
_MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


class InputMissingError(FileNotFoundError):
    """Raised when the monthly input directory does not exist."""


@dataclass(frozen=True)
class Document:
    """One month of conversation text, read-only."""

    key: str
    label: str
    lines: Tuple[str, ...]
    path: Path

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def heading(self) -> str:
        return f"## {self.label}"


def parse_month_key(filename: str):
    """Return ``date(year, month, 1)`` for a ``YYYY-MM.md`` name, else ``None``."""
    match = _MONTH_FILE.match(filename)
    if not match:
        return None
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        return None
    return date(year, month, 1)


def month_label(key: str) -> str:
    """``"2021-02"`` -> ``"February 2021"``."""
    year, month = key.split("-")
    return f"{_MONTH_NAMES[int(month) - 1]} {int(year)}"


def list_monthly_files(directory: Path) -> List[Path]:
    directory = Path(directory).expanduser()
    if not directory.is_dir():
        raise InputMissingError(f"Input directory not found: {directory}")
    files = [p for p in directory.iterdir() if p.is_file() and parse_month_key(p.name) is not None]
    return sorted(files, key=lambda p: p.name)


def document_from_text(key: str, text: str, path: Path = Path(".")) -> Document:
    return Document(key=key, label=month_label(key), lines=tuple(text.split("\n")), path=Path(path))


def load_document(path: Path) -> Document:
    path = Path(path)
    if parse_month_key(path.name) is None:
        raise ValueError(f"Not a monthly document name (expected YYYY-MM.md): {path.name}")
    text = path.read_text(encoding="utf-8")
    return document_from_text(path.stem, text, path)


def load_documents(directory: Path) -> List[Document]:
    return [load_document(path) for path in list_monthly_files(directory)]


def sort_documents(documents: Sequence[Document]) -> List[Document]:
    return sorted(documents, key=lambda d: d.key)
