"""
Reconciler Module - Background completion of interrupted documents.
===================================================================

A process that dies between two pipeline steps leaves documents in
`pending` or `embedding`. The ReconciliationSweeper periodically lists
such documents that have not been touched for `stale_after` seconds and
resumes them through the IngestionCoordinator. Documents whose ownership
token is held by a live pipeline are skipped.

Each pass is idempotent, so at-least-once scheduling is enough.
"""

import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from docvector.ingestion.coordinator import IngestionCoordinator
from docvector.shared.errors import DocVectorError
from docvector.shared.logging import get_logger
from docvector.shared.schemas import DocumentStatus, utcnow
from docvector.storage.metadata_store import MetadataStore

if TYPE_CHECKING:
    from docvector.shared.config import ReconciliationConfig

logger = get_logger(__name__)

STALE_STATUSES = [DocumentStatus.PENDING, DocumentStatus.EMBEDDING]


@dataclass
class SweepReport:
    """Outcome of one reconciliation pass."""

    examined: int = 0
    resumed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"examined={self.examined}, resumed={self.resumed}, "
            f"skipped={self.skipped}, failed={self.failed}"
        )


class ReconciliationSweeper:
    """
    Resumes stale documents, on demand or on a daemon thread.

    Example:
        >>> sweeper = ReconciliationSweeper(metadata_store, coordinator)
        >>> report = sweeper.sweep_once()
        >>> sweeper.start()  # every interval_seconds until stop()
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        coordinator: IngestionCoordinator,
        interval_seconds: float = 60.0,
        stale_after_seconds: float = 300.0,
        batch_size: int = 100,
    ):
        self.metadata_store = metadata_store
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.batch_size = batch_size

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(
        cls,
        config: "ReconciliationConfig",
        metadata_store: MetadataStore,
        coordinator: IngestionCoordinator,
    ) -> "ReconciliationSweeper":
        return cls(
            metadata_store=metadata_store,
            coordinator=coordinator,
            interval_seconds=config.interval_seconds,
            stale_after_seconds=config.stale_after_seconds,
            batch_size=config.batch_size,
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep_once(self) -> SweepReport:
        """
        Resume every stale document found in one listing.

        Returns:
            SweepReport with per-outcome counts
        """
        report = SweepReport()
        cutoff = utcnow() - timedelta(seconds=self.stale_after_seconds)
        stale = self.metadata_store.list_stale(STALE_STATUSES, cutoff, limit=self.batch_size)

        for document in stale:
            report.examined += 1
            try:
                result = self.coordinator.resume(document.id, blocking=False)
            except DocVectorError as e:
                report.failed += 1
                report.errors.append(f"{document.id}: {e}")
                logger.warning(f"Reconciliation of {document.id[:12]} failed: {e}")
                continue
            except Exception as e:
                report.failed += 1
                report.errors.append(f"{document.id}: {type(e).__name__}: {e}")
                logger.exception(f"Unexpected error reconciling {document.id[:12]}")
                continue

            if result is None:
                report.skipped += 1
            elif result.ok:
                report.resumed += 1
            else:
                report.failed += 1
                report.errors.append(f"{document.id}: {result.status_label}")

        if report.examined:
            logger.info(f"Reconciliation pass: {report.summary()}")
        return report

    def start(self) -> None:
        """Run sweep_once every interval_seconds on a daemon thread."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="docvector-reconciler", daemon=True
        )
        self._thread.start()
        logger.info(f"Reconciliation sweeper started (interval={self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Signal the sweeper thread and wait for it to finish its pass."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("Reconciliation sweeper stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except DocVectorError as e:
                # Metadata store outages end this pass only
                logger.warning(f"Reconciliation pass aborted: {e}")
            except Exception:
                logger.exception("Reconciliation pass aborted by an unexpected error")
