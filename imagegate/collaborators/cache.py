"""
Best-effort layer cache for Buildx's local cache directory.

Entries are directory snapshots stored under a cache root, keyed by
``<runner_os>-buildx-<sha>``.  A restore that misses the exact key falls
back to the newest entry matching a broader prefix.  Nothing here may fail
a run: every filesystem problem is logged and reported as a miss.
"""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


class LocalLayerCache:
    """Snapshot and restore ``cache_dir`` under ``cache_root``.

    Parameters
    ----------
    cache_dir : str
        Directory Buildx reads (``--cache-from``) and writes (``--cache-to``).
    cache_root : str
        Where keyed snapshots live.  Defaults to ``~/.cache/imagegate/buildx``.
    """

    def __init__(self, cache_dir: str, cache_root: str = ""):
        self.cache_dir = Path(cache_dir)
        self.cache_root = Path(cache_root) if cache_root else Path.home() / ".cache" / "imagegate" / "buildx"

    def _entry(self, key: str) -> Path:
        return self.cache_root / key

    def _best_match(self, key: str, restore_prefixes: Sequence[str]) -> Optional[Path]:
        exact = self._entry(key)
        if exact.is_dir():
            return exact
        if not self.cache_root.is_dir():
            return None
        for prefix in restore_prefixes:
            candidates = [
                p for p in self.cache_root.iterdir()
                if p.is_dir() and p.name.startswith(prefix)
            ]
            if candidates:
                return max(candidates, key=lambda p: p.stat().st_mtime)
        return None

    def restore(self, key: str, restore_prefixes: Sequence[str] = ()) -> Optional[str]:
        """Copy the best matching snapshot into ``cache_dir``.

        Returns the key that was restored, or ``None`` on a miss.
        """
        try:
            match = self._best_match(key, restore_prefixes)
            if match is None:
                logger.info("Layer cache miss for %s", key)
                return None
            if self.cache_dir.exists():
                shutil.rmtree(self.cache_dir)
            shutil.copytree(match, self.cache_dir)
        except OSError as exc:
            logger.warning("Layer cache restore failed for %s: %s", key, exc)
            return None

        if match.name == key:
            logger.info("Layer cache hit for %s", key)
        else:
            logger.info("Layer cache partial hit: restored %s for %s", match.name, key)
        return match.name

    def save(self, key: str) -> bool:
        """Snapshot ``cache_dir`` under *key*.

        Existing entries are immutable; saving an existing key is a no-op.
        """
        entry = self._entry(key)
        if entry.exists():
            logger.info("Layer cache entry %s already exists; not overwriting", key)
            return False
        if not self.cache_dir.is_dir():
            logger.info("No layer cache at %s to save", self.cache_dir)
            return False

        staging = self.cache_root / f".{key}.{uuid.uuid4().hex}.tmp"
        try:
            self.cache_root.mkdir(parents=True, exist_ok=True)
            shutil.copytree(self.cache_dir, staging)
            staging.rename(entry)
        except OSError as exc:
            logger.warning("Layer cache save failed for %s: %s", key, exc)
            shutil.rmtree(staging, ignore_errors=True)
            return False

        logger.info("Saved layer cache %s", key)
        return True
