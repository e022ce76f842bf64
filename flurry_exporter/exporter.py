"""Prometheus metrics exporter module.

This module handles:
- Defining Prometheus metrics (gauges, counters)
- Exposing metrics HTTP server on configurable port
- Recording page downloads, invalid responses and export results
"""

import logging
import time
from typing import List, Optional, Set, Tuple

from prometheus_client import Counter, Gauge, start_http_server, REGISTRY, CollectorRegistry

from flurry_exporter.csv_pages import ExceptionRecord

# Configure module logger
logger = logging.getLogger(__name__)


class FlurryExporter:
    """Prometheus exporter for Flurry exception log exports.

    Exposes the following metrics:
    - flurry_pages_downloaded_total: Valid CSV pages downloaded
    - flurry_invalid_pages_total: Invalid/rate-limited responses that were retried
    - flurry_exported_rows: Exception rows in the last export
    - flurry_export_success: Whether the last export succeeded (1=success, 0=failure)
    - flurry_export_timestamp: Unix timestamp of last export
    - flurry_export_duration_seconds: Duration of last export
    - flurry_exception_count: Exceptions per error name in the last export

    All metrics carry a project label.

    Attributes:
        port: HTTP server port (default 9121)
    """

    def __init__(
        self,
        port: int = 9121,
        registry: Optional[CollectorRegistry] = None
    ):
        """Initialize the exporter.

        Args:
            port: Port to run the HTTP server on
            registry: Optional custom registry for testing. If None, uses default REGISTRY.
        """
        self.port = port
        self._registry = registry if registry is not None else REGISTRY
        self._server_started = False

        self._pages_downloaded = Counter(
            'flurry_pages_downloaded',
            'Valid exception log CSV pages downloaded',
            ['project'],
            registry=self._registry
        )

        self._invalid_pages = Counter(
            'flurry_invalid_pages',
            'Invalid or rate-limited responses that were retried',
            ['project'],
            registry=self._registry
        )

        self._exported_rows = Gauge(
            'flurry_exported_rows',
            'Number of exception rows written by the last export',
            ['project'],
            registry=self._registry
        )

        self._export_success = Gauge(
            'flurry_export_success',
            'Whether the last export succeeded (1=success, 0=failure)',
            ['project'],
            registry=self._registry
        )

        self._export_timestamp = Gauge(
            'flurry_export_timestamp',
            'Unix timestamp of the last export',
            ['project'],
            registry=self._registry
        )

        self._export_duration = Gauge(
            'flurry_export_duration_seconds',
            'Duration of the last export in seconds',
            ['project'],
            registry=self._registry
        )

        # Exceptions per error name in the last export
        self._exception_count = Gauge(
            'flurry_exception_count',
            'Number of logged exceptions per error name in the last export',
            ['project', 'error'],
            registry=self._registry
        )

        # Track which label combinations we've set (for cleanup)
        self._active_error_labels: Set[Tuple[str, str]] = set()

    def update_error_counts(self, project: str, records: List[ExceptionRecord]) -> None:
        """Update per-error exception counts from exported records.

        Error names that no longer appear in the export are removed.

        Args:
            project: Flurry project identifier
            records: Parsed exception records
        """
        counts: dict[str, int] = {}
        for record in records:
            counts[record.error] = counts.get(record.error, 0) + 1

        stale = {
            labels for labels in self._active_error_labels
            if labels[0] == project and labels[1] not in counts
        }
        for labels in stale:
            try:
                self._exception_count.remove(*labels)
            except KeyError:
                pass  # Label combination doesn't exist
            self._active_error_labels.discard(labels)

        for error, count in counts.items():
            self._exception_count.labels(project=project, error=error).set(count)
            self._active_error_labels.add((project, error))

        logger.info(f"Metrics updated: {len(counts)} distinct errors for project {project}")

    def record_page(self, project: str) -> None:
        """Count one valid page download."""
        self._pages_downloaded.labels(project=project).inc()

    def record_invalid_page(self, project: str) -> None:
        """Count one invalid response."""
        self._invalid_pages.labels(project=project).inc()

    def set_export_result(
        self,
        project: str,
        success: bool,
        duration: float,
        rows: Optional[int] = None
    ) -> None:
        """Update export status metrics.

        Args:
            project: Flurry project identifier
            success: Whether the export succeeded
            duration: Duration of the export in seconds
            rows: Number of exported rows (only updated on success)
        """
        self._export_success.labels(project=project).set(1 if success else 0)
        self._export_timestamp.labels(project=project).set(time.time())
        self._export_duration.labels(project=project).set(duration)

        if success and rows is not None:
            self._exported_rows.labels(project=project).set(rows)

        logger.debug(f"Export status: success={success}, duration={duration:.2f}s")

    def start(self) -> None:
        """Start the Prometheus HTTP server.

        Only starts the server once; subsequent calls are no-ops.
        """
        if self._server_started:
            logger.warning("HTTP server already started")
            return

        start_http_server(self.port, registry=self._registry)
        self._server_started = True
        logger.info(f"Prometheus metrics server started on port {self.port}")

    @property
    def is_running(self) -> bool:
        """Check if the HTTP server has been started."""
        return self._server_started
