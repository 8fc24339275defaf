"""Two-way synchronization of a remote layer.

One pass of SyncCoordinator.sync() runs, in order:

1. replay of id remaps interrupted by a crash (the remap journal kept in
   the layer document);
2. pull: the remote feature listing is decoded and reconciled with the
   local store by a PullPolicy, without queueing anything;
3. push: the change queue is drained in insertion order, one remote call
   per entry. A failed entry stays queued and the pass continues.

Failures never escape a pass; they are counted in the SyncStats of the
returned SyncOutcome.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Protocol

from replica.core import errors, events
from replica.db import layer_config
from replica.db import models as db_models
from replica.services import download, remote

if TYPE_CHECKING:
    from collections.abc import Iterable

    from replica.services import layer as vector_layer

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class PullPlan:
    """Local store changes derived from the remote listing."""

    inserted: list[db_models.Feature] = dataclasses.field(default_factory=list)
    updated: list[db_models.Feature] = dataclasses.field(default_factory=list)
    deleted: list[int] = dataclasses.field(default_factory=list)


class PullPolicy(Protocol):
    def plan(
        self,
        local: Iterable[db_models.Feature],
        remote_features: Iterable[db_models.Feature],
        remote_ids: set[int],
        queued_ids: set[int],
    ) -> PullPlan: ...


def same_content(a: db_models.Feature, b: db_models.Feature) -> bool:
    if a.attributes != b.attributes:
        return False
    return bool(a.geometry.equals_exact(b.geometry, tolerance=1e-6))


class RemoteWinsUnlessQueued:
    """Take the remote state for every feature without a pending local edit.

    Placeholder ids (not yet created remotely) are never touched, nor are
    remote ids whose geometry could not be decoded.
    """

    def plan(
        self,
        local: Iterable[db_models.Feature],
        remote_features: Iterable[db_models.Feature],
        remote_ids: set[int],
        queued_ids: set[int],
    ) -> PullPlan:
        by_id = {feature.id: feature for feature in local}
        result = PullPlan()
        for feature in remote_features:
            if feature.id in queued_ids:
                continue
            current = by_id.get(feature.id)
            if current is None:
                result.inserted.append(feature)
            elif not same_content(current, feature):
                result.updated.append(feature)
        for feature_id in by_id:
            if feature_id < 0 or feature_id in queued_ids:
                continue
            if feature_id not in remote_ids:
                result.deleted.append(feature_id)
        return result


def _apply_remap(layer: vector_layer.VectorLayer, old_id: int, new_id: int) -> None:
    # Every step is a no-op when already done, so a journal entry can be
    # replayed any number of times.
    layer.store.change_id(old_id, new_id)
    layer.cache.rekey(old_id, new_id)
    layer.photos.rename_folder(old_id, new_id)
    layer.queue.replace_id(old_id, new_id)


def _clear_journal(layer: vector_layer.VectorLayer, old_id: int, new_id: int) -> None:
    def apply(document: layer_config.LayerConfig) -> None:
        document.pending_remaps = [
            record
            for record in document.pending_remaps
            if (record.old_id, record.new_id) != (old_id, new_id)
        ]

    layer.queue.edit_document(apply)


def remap_feature_id(layer: vector_layer.VectorLayer, old_id: int, new_id: int) -> None:
    """Move a feature from its placeholder id to the server-assigned one.

    The store row, cache entry, photo folder and queued change move together
    under the layer id lock. The remap is journaled in the layer document
    first, so an interrupted remap is finished by repair_pending_remaps().
    """

    def journal(document: layer_config.LayerConfig) -> None:
        document.pending_remaps.append(
            layer_config.RemapRecord(old_id=old_id, new_id=new_id)
        )

    with layer.id_lock:
        layer.queue.edit_document(journal)
        _apply_remap(layer, old_id, new_id)
        _clear_journal(layer, old_id, new_id)
    logger.info("Layer %s: feature %d is now %d", layer.id, old_id, new_id)
    layer.events.publish(
        events.LayerEvent(
            events.EventKind.FEATURE_ID_CHANGED, layer.id, new_id, old_id
        )
    )


def repair_pending_remaps(layer: vector_layer.VectorLayer) -> int:
    """Finish remaps left in the journal by a crash; returns how many."""
    pending = list(layer.document().pending_remaps)
    for record in pending:
        logger.warning(
            "Layer %s: replaying interrupted remap %d -> %d",
            layer.id,
            record.old_id,
            record.new_id,
        )
        with layer.id_lock:
            _apply_remap(layer, record.old_id, record.new_id)
            _clear_journal(layer, record.old_id, record.new_id)
        layer.events.publish(
            events.LayerEvent(
                events.EventKind.FEATURE_ID_CHANGED,
                layer.id,
                record.new_id,
                record.old_id,
            )
        )
    return len(pending)


class SyncCoordinator:
    """Runs sync passes of one remote layer.

    Attributes:
        layer: The layer being synchronized.
        client: Client of the layer's remote resource.
        policy: Reconciliation policy of the pull step.
    """

    def __init__(
        self,
        layer: vector_layer.VectorLayer,
        client: remote.RemoteLayerClient,
        policy: PullPolicy | None = None,
    ) -> None:
        self.layer = layer
        self.client = client
        self.policy = policy or RemoteWinsUnlessQueued()

    def should_sync(self) -> bool:
        flags = self.layer.queue.sync_type
        if not self.layer.is_remote or flags & db_models.SyncType.NONE:
            return False
        return bool(flags & db_models.SyncType.ALL)

    def sync(self) -> db_models.SyncOutcome:
        stats = db_models.SyncStats()
        if not self.should_sync():
            return db_models.SyncOutcome(self.layer.id, stats, skipped=True)

        with self.layer.sync_lock:
            repair_pending_remaps(self.layer)
            if self.layer.queue.sync_type & db_models.SyncType.DATA:
                self._pull(stats)
            self._push(stats)

        logger.info(
            "Layer %s synced: pulled=%d pushed=%d io_errors=%d parse_errors=%d",
            self.layer.id,
            stats.pulled,
            stats.pushed,
            stats.num_io_exceptions,
            stats.num_parse_exceptions,
        )
        return db_models.SyncOutcome(self.layer.id, stats)

    def _pull(self, stats: db_models.SyncStats) -> None:
        if not self.client.is_network_available():
            logger.info("Layer %s: offline, skipping pull", self.layer.id)
            return

        document = self.layer.document()
        try:
            features, remote_ids = download.decode_features(
                self.client.get_vector_data(), document.schema(), document.srid
            )
        except errors.NetworkUnavailable:
            return
        except errors.TransportFailure as exc:
            logger.warning("Layer %s: pull failed: %s", self.layer.id, exc)
            stats.num_io_exceptions += 1
            return
        except errors.MalformedResponse as exc:
            logger.warning("Layer %s: pull payload rejected: %s", self.layer.id, exc)
            stats.num_parse_exceptions += 1
            return

        # Local edits write the store and queue their change under id_lock.
        with self.layer.id_lock:
            queued_ids = {item.feature_id for item in self.layer.queue.items()}
            pull_plan = self.policy.plan(
                self.layer.store.all(), features, remote_ids, queued_ids
            )
            stats.pulled += self.layer.apply_remote(
                pull_plan.inserted, pull_plan.updated, pull_plan.deleted
            )

    def _push(self, stats: db_models.SyncStats) -> None:
        for item in self.layer.queue.items():
            try:
                pushed = self._push_item(item)
            except errors.NetworkUnavailable:
                logger.info("Layer %s: offline, push stopped", self.layer.id)
                return
            except errors.TransportFailure as exc:
                logger.warning("Layer %s: push of %s failed: %s", self.layer.id, item, exc)
                stats.num_io_exceptions += 1
                continue
            except errors.MalformedResponse as exc:
                logger.warning("Layer %s: push of %s rejected: %s", self.layer.id, item, exc)
                stats.num_parse_exceptions += 1
                continue
            except Exception:
                logger.exception("Layer %s: push of %s failed", self.layer.id, item)
                stats.num_io_exceptions += 1
                continue
            if pushed:
                stats.pushed += 1

    def _push_item(self, item: db_models.ChangeItem) -> bool:
        queue = self.layer.queue
        operation = item.operation

        if item.feature_id == db_models.NOT_FOUND:
            queue.remove(item)
            return False

        if operation == db_models.ChangeOperation.PHOTO:
            return self._push_photos(item.feature_id)

        feature_id = item.feature_id
        if operation in (db_models.ChangeOperation.NEW, db_models.ChangeOperation.CHANGED):
            feature = self.layer.get_feature(feature_id)
            if feature is None:
                logger.warning(
                    "Layer %s: feature %d is gone, keeping %s queued",
                    self.layer.id,
                    feature_id,
                    operation.name,
                )
                return False
            document = self.layer.document()
            payload = remote.feature_payload(feature, document.schema(), document.srid)
            if operation == db_models.ChangeOperation.NEW:
                new_id = self.client.create_feature(payload)
                if new_id is None:
                    raise errors.MalformedResponse("Create response carries no id")
                remap_feature_id(self.layer, feature_id, new_id)
                feature_id = new_id
            else:
                self.client.update_feature(feature_id, payload)
        else:
            self.client.delete_feature(feature_id)

        # Photo sub-changes stay queued as a PHOTO entry until uploaded.
        pushed = dataclasses.replace(item, feature_id=feature_id, photo_changes=[])
        if not queue.remove(pushed) and operation == db_models.ChangeOperation.NEW:
            logger.info(
                "Layer %s: feature %d was deleted while being created",
                self.layer.id,
                feature_id,
            )
            queue.record(feature_id, db_models.ChangeOperation.DELETE)
        self._push_photos(feature_id)
        return True

    def _push_photos(self, feature_id: int) -> bool:
        queued = self.layer.queue.get(feature_id)
        if queued is None or queued.operation != db_models.ChangeOperation.PHOTO:
            return False
        snapshot = dataclasses.replace(queued, photo_changes=list(queued.photo_changes))

        for change in snapshot.photo_changes:
            if change.operation == db_models.ChangeOperation.DELETE:
                self.client.delete_attachment(feature_id, change.name)
                continue
            path = self.layer.photos.path(feature_id, change.name)
            if not path.is_file():
                logger.info(
                    "Layer %s: photo %s of feature %d no longer exists",
                    self.layer.id,
                    change.name,
                    feature_id,
                )
                continue
            self.client.upload_attachment(feature_id, path)

        return self.layer.queue.remove(snapshot)
