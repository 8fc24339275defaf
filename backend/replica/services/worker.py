"""Background execution of downloads and sync passes.

Each layer gets one single-thread executor, so jobs of a layer run one at a
time in submission order while different layers proceed in parallel.
Callers receive a Future and decide themselves whether to wait on it.
"""

from __future__ import annotations

import logging
import threading
from concurrent import futures
from typing import TYPE_CHECKING

from replica.services import download, sync

if TYPE_CHECKING:
    from replica.db import models as db_models
    from replica.services import layer as vector_layer

logger = logging.getLogger(__name__)


class LayerWorker:
    def __init__(self, registry: vector_layer.LayerRegistry) -> None:
        self.registry = registry
        self._executors: dict[str, futures.ThreadPoolExecutor] = {}
        self._lock = threading.Lock()

    def _executor(self, layer_id: str) -> futures.ThreadPoolExecutor:
        with self._lock:
            executor = self._executors.get(layer_id)
            if executor is None:
                executor = futures.ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=f"layer-{layer_id}"
                )
                self._executors[layer_id] = executor
            return executor

    def _download(self, layer_id: str) -> db_models.DownloadResult:
        layer = self.registry.get(layer_id)
        with self.registry.client_for(layer) as client:
            return download.LayerDownloader(layer, client).download()

    def _sync(self, layer_id: str) -> db_models.SyncOutcome:
        layer = self.registry.get(layer_id)
        with self.registry.client_for(layer) as client:
            return sync.SyncCoordinator(layer, client).sync()

    def submit_download(self, layer_id: str) -> futures.Future[db_models.DownloadResult]:
        logger.debug("Queueing download of layer %s", layer_id)
        return self._executor(layer_id).submit(self._download, layer_id)

    def submit_sync(self, layer_id: str) -> futures.Future[db_models.SyncOutcome]:
        logger.debug("Queueing sync of layer %s", layer_id)
        return self._executor(layer_id).submit(self._sync, layer_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.shutdown(wait=wait)
