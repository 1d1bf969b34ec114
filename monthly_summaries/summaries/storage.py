"""Filesystem cache for monthly summaries and their one-sentence digests."""
from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple

import yaml

from .types import CacheEntry

_FRONT_MATTER_DELIMITER = "---"
_SUMMARY_SUFFIX = ".md"
_DIGEST_SUFFIX = "-digest.md"

DEFAULT_MAX_AGE = timedelta(days=7)
MIN_SUMMARY_LENGTH = 10

Clock = Callable[[], datetime]


class CacheCorruptError(ValueError):
    """Raised internally when a cache record cannot be parsed."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheStore:
    """Durable key -> summary store with freshness and validity rules.

    Each record is a small markdown file with YAML front matter holding the
    timestamp, source key and model tag. Anything that fails to parse is
    reported as a miss rather than an error.
    """

    def __init__(
        self,
        cache_dir: Path,
        *,
        max_age: timedelta = DEFAULT_MAX_AGE,
        min_length: int = MIN_SUMMARY_LENGTH,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cache_dir = Path(cache_dir).expanduser()
        self.max_age = max_age
        self.min_length = min_length
        self._clock = clock or _utcnow
        self._logger = logger or logging.getLogger(__name__)

    # ------------------------------
    # Paths
    # ------------------------------
    def summary_path_for(self, key: str) -> Path:
        return self.cache_dir / f"{key}{_SUMMARY_SUFFIX}"

    def digest_path_for(self, key: str) -> Path:
        return self.cache_dir / f"{key}{_DIGEST_SUFFIX}"

    # ------------------------------
    # Full summaries
    # ------------------------------
    def get(self, key: str) -> Optional[CacheEntry]:
        """Return a fresh, non-trivial summary for ``key`` or ``None``."""
        return self._load_valid(key, self.summary_path_for(key), kind="summary")

    def put(self, key: str, text: str, *, model: Optional[str] = None) -> CacheEntry:
        """Write (or overwrite) the summary record for ``key``."""
        metadata: Dict[str, object] = {"source": key}
        if model:
            metadata["model"] = model
        return self._write(key, self.summary_path_for(key), text, metadata)

    def is_cached(self, key: str) -> bool:
        return self.get(key) is not None

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------
    # Digests
    # ------------------------------
    def get_digest(self, key: str, parent: Optional[CacheEntry] = None) -> Optional[CacheEntry]:
        """Return a valid digest for ``key``.

        When ``parent`` is given the digest must have been derived from that
        exact summary record (matching ``parent_timestamp``), otherwise it is
        reported as stale.
        """
        entry = self._load_valid(key, self.digest_path_for(key), kind="digest")
        if entry is None or parent is None:
            return entry
        recorded = entry.metadata.get("parent_timestamp")
        if isinstance(recorded, datetime):
            recorded = recorded.isoformat()
        if recorded != parent.timestamp.isoformat():
            self._logger.info("Digest cache stale for %s (summary was regenerated)", key)
            return None
        return entry

    def put_digest(
        self,
        key: str,
        text: str,
        *,
        parent: Optional[CacheEntry] = None,
        model: Optional[str] = None,
    ) -> CacheEntry:
        metadata: Dict[str, object] = {"source": key}
        if model:
            metadata["model"] = model
        if parent is not None:
            metadata["parent_timestamp"] = parent.timestamp.isoformat()
        return self._write(key, self.digest_path_for(key), text, metadata)

    # ------------------------------
    # Helpers
    # ------------------------------
    def _load_valid(self, key: str, path: Path, *, kind: str) -> Optional[CacheEntry]:
        if not path.is_file():
            self._logger.debug("No cached %s for %s", kind, key)
            return None
        try:
            entry = load_entry(key, path)
        except (CacheCorruptError, OSError, UnicodeDecodeError) as exc:
            self._logger.info("Corrupted %s cache for %s, will regenerate (%s)", kind, key, exc)
            return None

        age = self._clock() - entry.timestamp
        if age > self.max_age:
            self._logger.info("Cached %s expired for %s, will regenerate", kind, key)
            return None
        if len(entry.text.strip()) < self.min_length:
            self._logger.info("Invalid %s cache for %s, will regenerate", kind, key)
            return None
        return entry

    def _write(self, key: str, path: Path, text: str, metadata: Mapping[str, object]) -> CacheEntry:
        timestamp = self._clock()
        payload: Dict[str, object] = {"timestamp": timestamp.isoformat()}
        payload.update(metadata)
        write_record(path, text, payload)
        self._logger.debug("cache-write", extra={"cache": {"key": key, "path": str(path)}})
        model = payload.get("model")
        return CacheEntry(
            key=key,
            text=text,
            timestamp=timestamp,
            path=path,
            model=model if isinstance(model, str) else None,
            metadata=payload,
        )


def load_entry(key: str, path: Path) -> CacheEntry:
    """Parse a cache record, raising ``CacheCorruptError`` on malformed data."""
    raw_text = Path(path).read_text(encoding="utf-8")
    metadata, body = _split_front_matter(raw_text)

    timestamp_value = metadata.get("timestamp")
    if isinstance(timestamp_value, datetime):
        timestamp = timestamp_value
    elif isinstance(timestamp_value, str):
        try:
            timestamp = datetime.fromisoformat(timestamp_value)
        except ValueError as exc:
            raise CacheCorruptError(f"bad timestamp {timestamp_value!r}") from exc
    else:
        raise CacheCorruptError("missing timestamp")
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    model = metadata.get("model")
    return CacheEntry(
        key=key,
        text=body.rstrip("\n"),
        timestamp=timestamp,
        path=Path(path),
        model=model if isinstance(model, str) else None,
        metadata=metadata,
    )


def write_record(path: Path, body: str, metadata: Mapping[str, object]) -> None:
    """Persist ``body`` with YAML front matter via a temp file and rename."""
    front_matter = yaml.safe_dump(dict(metadata), sort_keys=True, allow_unicode=True).strip()
    body = body if body.endswith("\n") else f"{body}\n"
    atomic_write_text(path, f"{_FRONT_MATTER_DELIMITER}\n{front_matter}\n{_FRONT_MATTER_DELIMITER}\n\n{body}")


def atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` without exposing a partial file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _split_front_matter(content: str) -> Tuple[Dict[str, object], str]:
    lines = content.splitlines()
    if not lines or lines[0].strip() != _FRONT_MATTER_DELIMITER:
        raise CacheCorruptError("missing front matter")

    for idx in range(1, len(lines)):
        if lines[idx].strip() == _FRONT_MATTER_DELIMITER:
            front_matter_text = "\n".join(lines[1:idx]).strip()
            try:
                metadata = yaml.safe_load(front_matter_text) if front_matter_text else {}
            except yaml.YAMLError as exc:
                raise CacheCorruptError("unparsable front matter") from exc
            if not isinstance(metadata, dict):
                raise CacheCorruptError("front matter must deserialize to a mapping")
            body_lines = lines[idx + 1 :]
            # One blank separator line follows the closing delimiter.
            if body_lines and not body_lines[0].strip():
                body_lines = body_lines[1:]
            return metadata, "\n".join(body_lines)

    raise CacheCorruptError("unterminated front matter")
