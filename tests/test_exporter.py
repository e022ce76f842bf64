from unittest.mock import patch

from prometheus_client import CollectorRegistry, generate_latest

from flurry_exporter.csv_pages import ExceptionRecord
from flurry_exporter.exporter import FlurryExporter


def record(error: str, index: int = 0) -> ExceptionRecord:
    return ExceptionRecord(
        timestamp="2013-03-04 11:45:35",
        index=str(index),
        error=error,
        message="m",
        version="1.0",
        error_id=str(index),
        method="main",
        platform="iPhone",
    )


def metrics(registry: CollectorRegistry) -> str:
    return generate_latest(registry).decode("utf-8")


def test_page_counters():
    registry = CollectorRegistry()
    exporter = FlurryExporter(registry=registry)

    exporter.record_page("PRJ42")
    exporter.record_page("PRJ42")
    exporter.record_invalid_page("PRJ42")

    output = metrics(registry)
    assert 'flurry_pages_downloaded_total{project="PRJ42"} 2.0' in output
    assert 'flurry_invalid_pages_total{project="PRJ42"} 1.0' in output


def test_export_result_success_and_failure():
    registry = CollectorRegistry()
    exporter = FlurryExporter(registry=registry)

    exporter.set_export_result("PRJ42", True, 12.5, rows=31)
    output = metrics(registry)
    assert 'flurry_export_success{project="PRJ42"} 1.0' in output
    assert 'flurry_export_duration_seconds{project="PRJ42"} 12.5' in output
    assert 'flurry_exported_rows{project="PRJ42"} 31.0' in output
    assert 'flurry_export_timestamp{project="PRJ42"}' in output

    exporter.set_export_result("PRJ42", False, 5.0)
    output = metrics(registry)
    assert 'flurry_export_success{project="PRJ42"} 0.0' in output
    # Row count from the last successful export is kept
    assert 'flurry_exported_rows{project="PRJ42"} 31.0' in output


def test_update_error_counts_replaces_stale_errors():
    registry = CollectorRegistry()
    exporter = FlurryExporter(registry=registry)

    exporter.update_error_counts("PRJ42", [record("NPE", 0), record("NPE", 1), record("OOM", 2)])
    output = metrics(registry)
    assert 'flurry_exception_count{error="NPE",project="PRJ42"} 2.0' in output
    assert 'flurry_exception_count{error="OOM",project="PRJ42"} 1.0' in output

    exporter.update_error_counts("PRJ42", [record("NPE", 3)])
    output = metrics(registry)
    assert 'flurry_exception_count{error="NPE",project="PRJ42"} 1.0' in output
    assert 'error="OOM"' not in output


def test_start_only_once():
    exporter = FlurryExporter(port=9999, registry=CollectorRegistry())

    with patch("flurry_exporter.exporter.start_http_server") as start:
        exporter.start()
        exporter.start()

    start.assert_called_once_with(9999, registry=exporter._registry)
    assert exporter.is_running
