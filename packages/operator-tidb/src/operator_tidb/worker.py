"""
ReconcileWorker daemon.

Drives ClusterReconciler over every cluster a ClusterSource lists:

- Each cluster is reconciled once per resync interval when healthy
- A cluster that raised RequeueError, or failed, comes back after a
  backoff delay that grows with consecutive failures
- Clusters due in the same cycle are reconciled concurrently; a cluster
  is never reconciled concurrently with itself
- Status is written back after every pass, whatever its outcome
- SIGINT/SIGTERM stop the loop after the current cycle
"""

import asyncio
import functools
import logging
import signal
import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from operator_tidb.config import Settings, settings as default_settings
from operator_tidb.controller import ClusterReconciler
from operator_tidb.errors import RequeueError
from operator_tidb.retry import RetryConfig
from operator_tidb.types import Cluster

logger = logging.getLogger(__name__)


@runtime_checkable
class ClusterSource(Protocol):
    """Where clusters come from and where their status goes."""

    async def list_clusters(self) -> list[Cluster]: ...

    async def update_status(self, cluster: Cluster) -> None: ...


@dataclass
class ReconcileResult:
    """
    Outcome of one pass.

    Attributes:
        requeue_after: Seconds until the cluster should be reconciled again.
        reason: Why the pass did not complete, empty on success.
    """

    requeue_after: float
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return not self.reason


def cluster_key(cluster: Cluster) -> str:
    return f"{cluster.kind.value}/{cluster.namespace}/{cluster.name}"


class ReconcileWorker:
    """
    Example:
        worker = ReconcileWorker(ClusterReconciler(deps))
        await worker.run(KubeClusterSource(api_client))  # until SIGINT/SIGTERM
    """

    def __init__(
        self,
        reconciler: ClusterReconciler,
        settings: Settings | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.settings = settings or default_settings
        self.retry = retry or RetryConfig.from_settings(self.settings)
        self._failures: dict[str, int] = {}
        self._due: dict[str, float] = {}
        self._shutdown = asyncio.Event()

    async def process(self, cluster: Cluster) -> ReconcileResult:
        """Run one pass and decide when the cluster comes back."""
        key = cluster_key(cluster)
        try:
            await self.reconciler.reconcile(cluster)
        except RequeueError as e:
            delay = self._backoff(key)
            logger.info(f"Requeue {key} after {delay:.1f}s: {e.reason}")
            return ReconcileResult(requeue_after=delay, reason=e.reason)
        except Exception as e:
            delay = self._backoff(key)
            logger.error(f"Failed to reconcile {key}, retry after {delay:.1f}s", exc_info=True)
            return ReconcileResult(requeue_after=delay, reason=str(e) or type(e).__name__)

        self._failures.pop(key, None)
        return ReconcileResult(requeue_after=self.settings.resync_duration_seconds)

    def _backoff(self, key: str) -> float:
        attempt = self._failures.get(key, 0)
        self._failures[key] = attempt + 1
        return self.retry.delay(attempt)

    async def run_once(self, source: ClusterSource) -> None:
        """Reconcile every cluster that is due, then persist their status."""
        now = time.monotonic()
        clusters = await source.list_clusters()
        due = [c for c in clusters if self._due.get(cluster_key(c), 0.0) <= now]
        if due:
            await asyncio.gather(*(self._reconcile_and_persist(source, c) for c in due))

        # Forget clusters that no longer exist
        live = {cluster_key(c) for c in clusters}
        for key in set(self._due) - live:
            self._due.pop(key, None)
            self._failures.pop(key, None)

    async def _reconcile_and_persist(self, source: ClusterSource, cluster: Cluster) -> None:
        result = await self.process(cluster)
        self._due[cluster_key(cluster)] = time.monotonic() + result.requeue_after
        try:
            await source.update_status(cluster)
        except Exception:
            logger.error(f"Failed to update status of {cluster_key(cluster)}", exc_info=True)

    def next_wakeup(self) -> float:
        """Seconds until the earliest due cluster, capped at the resync interval."""
        interval = self.settings.resync_duration_seconds
        if not self._due:
            return interval
        return max(0.0, min(interval, min(self._due.values()) - time.monotonic()))

    async def run(self, source: ClusterSource, handle_signals: bool = True) -> None:
        """Run until stop() is called or a shutdown signal arrives."""
        loop = asyncio.get_running_loop()
        if handle_signals:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, functools.partial(self._handle_signal, sig))

        logger.info(f"Reconcile worker starting (resync: {self.settings.resync_duration_seconds}s)")
        try:
            while not self._shutdown.is_set():
                try:
                    await self.run_once(source)
                except Exception:
                    logger.error("Reconcile cycle failed", exc_info=True)

                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=self.next_wakeup())
                except asyncio.TimeoutError:
                    pass
        finally:
            if handle_signals:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(sig)
        logger.info("Reconcile worker stopped")

    def stop(self) -> None:
        self._shutdown.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, shutting down...")
        self.stop()
