"""On-disk cache of fetched Git sources and their fetch metadata."""

from __future__ import annotations

import json
import logging
import shutil
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .constants import CACHE_METADATA_FILENAME
from .models import CacheMetadata

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Cache:
    """Tracks where each source is cloned and when it was last refreshed.

    ``cache.json`` is the single source of truth across restarts. Every
    mutation happens under ``self._lock`` and is written to disk before the
    lock is released.
    """

    def __init__(self, base_dir: Path | str, ttl: timedelta = DEFAULT_TTL):
        self.base_dir = Path(base_dir)
        self.meta_path = self.base_dir / CACHE_METADATA_FILENAME
        self._ttl = ttl
        self._lock = threading.RLock()
        self._metadata: Dict[str, CacheMetadata] = {}

        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Failed to create cache directory %s: %s", self.base_dir, exc)

        self._load_metadata()

    @property
    def ttl(self) -> timedelta:
        with self._lock:
            return self._ttl

    def set_ttl(self, ttl: timedelta) -> None:
        with self._lock:
            self._ttl = ttl

    def get_repo_path(self, source_name: str) -> Path:
        return self.base_dir / source_name

    def needs_update(self, source_name: str) -> bool:
        """True when the source was never fetched or its TTL has elapsed."""
        with self._lock:
            meta = self._metadata.get(source_name)
            if meta is None or meta.last_updated is None:
                return True
            last = meta.last_updated
            if last.tzinfo is None:
                last = last.replace(tzinfo=timezone.utc)
            return _now() - last >= self._ttl

    def mark_updated(self, source_name: str) -> None:
        with self._lock:
            meta = self._entry(source_name)
            meta.last_updated = _now()
            self._save_metadata()

    def set_commit(self, source_name: str, commit: str) -> None:
        with self._lock:
            self._entry(source_name).commit = commit
            self._save_metadata()

    def get_commit(self, source_name: str) -> str:
        with self._lock:
            meta = self._metadata.get(source_name)
            return meta.commit if meta else ""

    def set_source_info(self, source_name: str, url: str = "", branch: str = "") -> None:
        """Record display-only URL/branch for a source."""
        with self._lock:
            meta = self._entry(source_name)
            meta.url = url
            meta.branch = branch
            self._save_metadata()

    def get_last_updated(self, source_name: str) -> Optional[datetime]:
        with self._lock:
            meta = self._metadata.get(source_name)
            return meta.last_updated if meta else None

    def get_metadata(self) -> Dict[str, CacheMetadata]:
        with self._lock:
            return {name: meta.model_copy() for name, meta in self._metadata.items()}

    def get_cached_sources(self) -> List[str]:
        with self._lock:
            return sorted(self._metadata)

    def force_expire(self, source_name: str) -> None:
        """Make the next lookup refresh the source; files stay on disk."""
        with self._lock:
            self._entry(source_name).last_updated = None
            self._save_metadata()

    def clear(self, source_name: str) -> None:
        with self._lock:
            self._metadata.pop(source_name, None)
            self._save_metadata()
            repo_path = self.get_repo_path(source_name)
            if repo_path.exists():
                shutil.rmtree(repo_path)
        logger.info("Cleared cache for source %s", source_name)

    def clear_all(self) -> None:
        """Drop every cached tree and all metadata, keeping ``cache.json`` itself."""
        with self._lock:
            self._metadata = {}
            self._save_metadata()
            for entry in self.base_dir.iterdir():
                if entry.name == CACHE_METADATA_FILENAME:
                    continue
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
        logger.info("Cleared all cached sources in %s", self.base_dir)

    def exists(self, source_name: str) -> bool:
        return self.get_repo_path(source_name).exists()

    def is_cached(self, source_name: str) -> bool:
        return self.exists(source_name) and not self.needs_update(source_name)

    def get_size(self) -> int:
        """Total size in bytes of every file below the cache directory."""
        return sum(p.stat().st_size for p in self.base_dir.rglob("*") if p.is_file() and not p.is_symlink())

    # ── internal ────────────────────────────────────────────────────

    def _entry(self, source_name: str) -> CacheMetadata:
        meta = self._metadata.get(source_name)
        if meta is None:
            meta = CacheMetadata(name=source_name)
            self._metadata[source_name] = meta
        return meta

    def _load_metadata(self) -> None:
        if not self.meta_path.exists():
            return
        try:
            raw = json.loads(self.meta_path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("cache metadata must be a JSON object")
            metadata = {name: CacheMetadata.model_validate(entry) for name, entry in raw.items()}
        except (OSError, ValueError, PydanticValidationError) as exc:
            logger.warning("Ignoring unreadable cache metadata %s: %s", self.meta_path, exc)
            return
        self._metadata = metadata

    def _save_metadata(self) -> None:
        payload = {name: meta.model_dump(mode="json", by_alias=True) for name, meta in self._metadata.items()}
        try:
            self.meta_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to save cache metadata %s: %s", self.meta_path, exc)
