"""Per-feature photo folders.

Photos attached to a feature live in ``<layer dir>/<feature id>/``. The
folder name follows the feature id, so it is renamed together with the
store row when the server assigns a new id.
"""

from __future__ import annotations

import logging
import shutil
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pathlib

logger = logging.getLogger(__name__)


class PhotoStore:
    def __init__(self, root: pathlib.Path) -> None:
        self.root = root

    def folder(self, feature_id: int) -> pathlib.Path:
        return self.root / str(feature_id)

    def path(self, feature_id: int, name: str) -> pathlib.Path:
        return self.folder(feature_id) / name

    def names(self, feature_id: int) -> list[str]:
        folder = self.folder(feature_id)
        if not folder.is_dir():
            return []
        return sorted(p.name for p in folder.iterdir() if p.is_file())

    def add(self, feature_id: int, source: pathlib.Path, name: str | None = None) -> str:
        """Copy a photo into the feature folder and return its stored name."""
        folder = self.folder(feature_id)
        folder.mkdir(parents=True, exist_ok=True)
        target = folder / (name or source.name)
        shutil.copyfile(source, target)
        return target.name

    def remove(self, feature_id: int, name: str) -> bool:
        target = self.path(feature_id, name)
        if not target.exists():
            return False
        target.unlink()
        return True

    def delete_folder(self, feature_id: int) -> None:
        shutil.rmtree(self.folder(feature_id), ignore_errors=True)

    def rename_folder(self, old_id: int, new_id: int) -> bool:
        """Move the folder of old_id to new_id.

        Returns False when there is nothing to move or the target already
        exists, which makes replaying an interrupted remap harmless.
        """
        source = self.folder(old_id)
        target = self.folder(new_id)
        if not source.exists() or target.exists():
            return False
        source.rename(target)
        logger.debug("Renamed photo folder %s to %s", source, target)
        return True
