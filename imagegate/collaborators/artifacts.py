"""Artifact store that retains report bundles on the local filesystem."""

from __future__ import annotations

import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from ..exceptions import StepError
from ..reporting import write_json_atomic
from ..schemas import UploadedBundle

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def bundle_directory_name(name: str) -> str:
    """Filesystem-safe directory name for a bundle called *name*."""
    safe = _UNSAFE_NAME.sub("-", name.strip()).strip("-.")
    return safe or "artifact"


class LocalArtifactStore:
    """Copy named bundles of files under ``root/<name>/``.

    Each upload writes a ``manifest.json`` listing the stored files, so a
    reader can tell a complete bundle from an interrupted one.
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def upload(self, name: str, paths: Sequence[Path]) -> UploadedBundle:
        """Store *paths* under the bundle *name*.

        Raises
        ------
        StepError
            If no file exists or a copy fails.
        """
        present = [Path(p) for p in paths if Path(p).is_file()]
        missing = [str(p) for p in paths if not Path(p).is_file()]
        for path in missing:
            logger.warning("Artifact %s does not exist; skipping", path)
        if not present:
            raise StepError(f"no files to upload for bundle '{name}'", step="artifact_upload")

        destination = self.root / bundle_directory_name(name)
        stored = []
        try:
            destination.mkdir(parents=True, exist_ok=True)
            for path in present:
                target = destination / path.name
                shutil.copy2(path, target)
                stored.append(str(target))
        except OSError as exc:
            raise StepError(f"could not store bundle '{name}': {exc}", step="artifact_upload") from exc

        write_json_atomic(
            {
                "name": name,
                "uploaded_at": datetime.now(tz=timezone.utc).isoformat(),
                "files": [Path(p).name for p in stored],
                "missing": missing,
            },
            destination / "manifest.json",
        )
        logger.info("Uploaded %d file(s) to %s", len(stored), destination)
        return UploadedBundle(name=name, destination=str(destination), files=stored)
