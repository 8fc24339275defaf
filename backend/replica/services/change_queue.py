"""Ordered queue of pending feature mutations.

The queue holds at most one ChangeItem per feature id (the full-layer
delete sentinel aside) and collapses redundant edits as they are recorded:

* delete after create cancels both,
* delete after change or photo replaces the entry with a fresh delete,
* change after create or change is redundant,
* a second create for a queued id is a caller bug and is ignored.

Every mutation is saved to the layer document before the call returns, so
the queue survives a crash. Mutation and save happen under one lock; the
sync thread works on snapshots returned by items().
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import TYPE_CHECKING

from replica.core import errors
from replica.db import layer_config
from replica.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


logger = logging.getLogger(__name__)


class ChangeQueue:
    """Change queue of one layer, persisted in its layer document."""

    def __init__(
        self,
        layer_id: str,
        repo: layer_config.LayerConfigRepositoryProtocol,
    ) -> None:
        self.layer_id = layer_id
        self._repo = repo
        self._lock = threading.RLock()
        self._items: list[db_models.ChangeItem] = []
        self._sync_type = db_models.SyncType.NONE
        self.load()

    def load(self) -> None:
        """Replace the in-memory queue with the one saved in the document."""
        with self._lock:
            document = layer_config.require(self._repo, self.layer_id)
            self._items = document.change_items()
            self._sync_type = document.sync_flags

    @property
    def sync_type(self) -> db_models.SyncType:
        return self._sync_type

    @sync_type.setter
    def sync_type(self, value: db_models.SyncType) -> None:
        def apply(document: layer_config.LayerConfig) -> None:
            document.sync_type = int(value)

        with self._lock:
            self._sync_type = value
            self.edit_document(apply)

    def edit_document(
        self, mutator: Callable[[layer_config.LayerConfig], None]
    ) -> layer_config.LayerConfig:
        """Read, modify and save the layer document under the queue lock.

        Every writer of the layer document goes through here so that the
        serialized queue and the other members never overwrite each other.
        """
        with self._lock:
            document = layer_config.require(self._repo, self.layer_id)
            mutator(document)
            document.set_change_items(self._items)
            self._repo.save(document)
            return document

    def document(self) -> layer_config.LayerConfig:
        with self._lock:
            return layer_config.require(self._repo, self.layer_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[db_models.ChangeItem]:
        return iter(self.items())

    def items(self) -> list[db_models.ChangeItem]:
        """Snapshot of the queue in push order."""
        with self._lock:
            return [
                dataclasses.replace(item, photo_changes=list(item.photo_changes))
                for item in self._items
            ]

    def get(self, feature_id: int) -> db_models.ChangeItem | None:
        with self._lock:
            for item in self._items:
                if item.feature_id == feature_id:
                    return item
            return None

    def record(self, feature_id: int, operation: db_models.ChangeOperation) -> None:
        """Record a data change of a feature, merging with a queued one."""
        with self._lock:
            if not self._sync_type & db_models.SyncType.DATA:
                return
            try:
                changed = self._merge(feature_id, operation)
            except errors.ChangeQueueLogicError as exc:
                logger.warning("Layer %s: %s", self.layer_id, exc)
                return
            if changed:
                self._save()

    def _merge(self, feature_id: int, operation: db_models.ChangeOperation) -> bool:
        if (
            feature_id == db_models.NOT_FOUND
            and operation == db_models.ChangeOperation.DELETE
        ):
            self._items = [db_models.ChangeItem(feature_id, operation)]
            return True

        for index, item in enumerate(self._items):
            if item.feature_id != feature_id:
                continue

            if operation == db_models.ChangeOperation.DELETE:
                if item.operation == db_models.ChangeOperation.DELETE:
                    return False
                del self._items[index]
                if item.operation == db_models.ChangeOperation.NEW:
                    return True
                break

            if operation == db_models.ChangeOperation.CHANGED:
                item.revision += 1
                if item.operation in (
                    db_models.ChangeOperation.CHANGED,
                    db_models.ChangeOperation.NEW,
                ):
                    return False
                item.operation = operation
                return True

            if operation == db_models.ChangeOperation.NEW:
                raise errors.ChangeQueueLogicError(
                    f"feature {feature_id} created twice"
                )

        self._items.append(db_models.ChangeItem(feature_id, operation))
        return True

    def record_photo(
        self,
        feature_id: int,
        photo_name: str,
        operation: db_models.ChangeOperation,
    ) -> None:
        """Record a photo change; dropped when the feature is being deleted."""
        with self._lock:
            if not self._sync_type & db_models.SyncType.PHOTO:
                return
            item = self.get(feature_id)
            if item is None:
                item = db_models.ChangeItem(
                    feature_id, db_models.ChangeOperation.PHOTO
                )
                self._items.append(item)
            elif item.operation == db_models.ChangeOperation.DELETE:
                return
            item.add_photo_change(photo_name, operation)
            self._save()

    def remove(self, item: db_models.ChangeItem) -> bool:
        """Drop the queued entry matching a pushed snapshot item.

        Work recorded while the push was in flight stays queued: a data
        edit turns the entry into CHANGED, and late photo sub-changes are
        kept on a PHOTO entry.

        Returns:
            False when no entry with the item's id and operation is queued.
        """
        with self._lock:
            current = self.get(item.feature_id)
            if current is None or current.operation != item.operation:
                return False
            late_photos = current.photo_changes[len(item.photo_changes):]
            if current.revision != item.revision:
                current.operation = db_models.ChangeOperation.CHANGED
                current.photo_changes = late_photos
            elif late_photos:
                current.operation = db_models.ChangeOperation.PHOTO
                current.photo_changes = late_photos
            else:
                self._items.remove(current)
            self._save()
            return True

    def replace_id(self, old_id: int, new_id: int) -> None:
        """Rewrite the queued entry of a feature after its id changed."""
        with self._lock:
            item = self.get(old_id)
            if item is None:
                return
            item.feature_id = new_id
            self._save()

    def clear(self) -> None:
        with self._lock:
            self._items = []
            self._save()

    def _save(self) -> None:
        self.edit_document(lambda document: None)
