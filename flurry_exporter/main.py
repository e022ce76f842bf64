"""Main entry point for the Flurry exception log exporter.

This module handles:
- Loading configuration from environment variables and CLI arguments
- Running a one-shot export, or scheduling daily exports with APScheduler
- Coordinating scraper, date conversion and exporter components
- Cleaning up temporary files whether or not the export succeeded
"""

import argparse
import logging
import os
import shutil
import sys
import tempfile
import time
from pathlib import Path
from typing import List, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv

from flurry_exporter.csv_pages import CSVPageError, parse_records
from flurry_exporter.date_converter import (
    DEFAULT_FORMAT,
    DEFAULT_TIMEZONE,
    DateConversionError,
    convert_csv_dates,
)
from flurry_exporter.exporter import FlurryExporter
from flurry_exporter.influxdb_exporter import InfluxDBExporter
from flurry_exporter.scraper import FlurryError, FlurryScraper

# Configure module logger
logger = logging.getLogger(__name__)

# Global exporter instances (shared across scheduled runs)
prometheus_exporter: Optional[FlurryExporter] = None
influxdb_exporter: Optional[InfluxDBExporter] = None

# Configuration from environment
config = {
    "email": "",
    "password": "",
    "project_id": "",
    "limit": 1000,
    "output": "exceptions.csv",
    "timezone": DEFAULT_TIMEZONE,
    "date_format": DEFAULT_FORMAT,
    "convert_dates": True,
    "retry_delay": 20,
    "page_delay": 5,
    "max_retries": 10,
    "retry_increment": 0,
    "retry_jitter": 0,
    "verify_ssl": True,
    "debug": False,
    "scrape_hour": None,
    "exporter_port": 9121,
    # InfluxDB config
    "influxdb_url": "http://localhost:8086",
    "influxdb_token": "",
    "influxdb_org": "flurry",
    "influxdb_bucket": "exceptions",
}


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    """Read an integer environment variable, falling back to default."""
    value = os.getenv(name, "")
    if value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid {name}, using default: {default}")
        return default


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable, falling back to default."""
    value = os.getenv(name, "")
    if value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid {name}, using default: {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean environment variable (true/false, yes/no, 1/0)."""
    value = os.getenv(name, "").strip().lower()
    if value == "":
        return default
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    logger.warning(f"Invalid {name}, using default: {default}")
    return default


def validate_scrape_hour() -> bool:
    """Check the configured schedule hour is unset or within 0-23."""
    hour = config["scrape_hour"]
    if hour is not None and not (0 <= hour <= 23):
        logger.error(f"Schedule hour must be between 0 and 23, got {hour}")
        return False
    return True


def load_config() -> bool:
    """Load configuration from environment variables.

    Required:
        FLURRY_EMAIL: Portal login email
        FLURRY_PASSWORD: Portal password
        FLURRY_PROJECT_ID: Flurry project identifier

    Optional:
        FLURRY_LIMIT: Offset at which to stop (default: 1000, 0 = no limit)
        FLURRY_OUTPUT: Output CSV path (default: exceptions.csv)
        FLURRY_TIMEZONE: Target timezone for dates (default: Europe/Amsterdam)
        FLURRY_DATE_FORMAT: strftime format for converted dates
        CONVERT_DATES: Convert the date column (default: true)
        FLURRY_RETRY_DELAY: Seconds before retrying an invalid page (default: 20)
        FLURRY_PAGE_DELAY: Seconds between page requests (default: 5)
        FLURRY_MAX_RETRIES: Attempts per page before giving up (default: 10)
        FLURRY_RETRY_INCREMENT: Seconds added per consecutive failure (default: 0)
        FLURRY_RETRY_JITTER: Max random seconds added to each retry (default: 0)
        FLURRY_VERIFY_SSL: Verify TLS certificates (default: true)
        DEBUG: Enable debug logging (default: false)
        SCRAPE_HOUR: Run daily at this hour instead of once (default: unset)
        EXPORTER_PORT: Prometheus port for scheduled mode (default: 9121)
        INFLUXDB_URL, INFLUXDB_TOKEN, INFLUXDB_ORG, INFLUXDB_BUCKET:
            InfluxDB sink, enabled when INFLUXDB_TOKEN is set

    Returns:
        True if all required config loaded, False otherwise
    """
    config["email"] = os.getenv("FLURRY_EMAIL", "")
    config["password"] = os.getenv("FLURRY_PASSWORD", "")
    config["project_id"] = os.getenv("FLURRY_PROJECT_ID", "")

    config["limit"] = _env_int("FLURRY_LIMIT", 1000)
    config["output"] = os.getenv("FLURRY_OUTPUT", "exceptions.csv")
    config["timezone"] = os.getenv("FLURRY_TIMEZONE", DEFAULT_TIMEZONE)
    config["date_format"] = os.getenv("FLURRY_DATE_FORMAT", DEFAULT_FORMAT)
    config["convert_dates"] = _env_bool("CONVERT_DATES", True)
    config["retry_delay"] = _env_int("FLURRY_RETRY_DELAY", 20)
    config["page_delay"] = _env_int("FLURRY_PAGE_DELAY", 5)
    config["max_retries"] = _env_int("FLURRY_MAX_RETRIES", 10)
    config["retry_increment"] = _env_float("FLURRY_RETRY_INCREMENT", 0.0)
    config["retry_jitter"] = _env_float("FLURRY_RETRY_JITTER", 0.0)
    config["verify_ssl"] = _env_bool("FLURRY_VERIFY_SSL", True)
    config["debug"] = _env_bool("DEBUG", False)
    config["scrape_hour"] = _env_int("SCRAPE_HOUR", None)
    config["exporter_port"] = _env_int("EXPORTER_PORT", 9121)

    # InfluxDB configuration
    config["influxdb_url"] = os.getenv("INFLUXDB_URL", "http://localhost:8086")
    config["influxdb_token"] = os.getenv("INFLUXDB_TOKEN", "")
    config["influxdb_org"] = os.getenv("INFLUXDB_ORG", "flurry")
    config["influxdb_bucket"] = os.getenv("INFLUXDB_BUCKET", "exceptions")

    missing = []
    if not config["email"]:
        missing.append("FLURRY_EMAIL")
    if not config["password"]:
        missing.append("FLURRY_PASSWORD")
    if not config["project_id"]:
        missing.append("FLURRY_PROJECT_ID")

    if missing:
        logger.error(f"Missing required environment variables: {', '.join(missing)}")
        return False

    if not validate_scrape_hour():
        return False

    logger.info(f"Configuration loaded: project={config['project_id']}, "
                f"limit={config['limit']}, output={config['output']}, "
                f"timezone={config['timezone']}")
    return True


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments overriding the environment."""
    parser = argparse.ArgumentParser(
        description="Export the Flurry exception log to a single CSV file."
    )
    parser.add_argument("--output", "-o", help="Output CSV path. Falls back to FLURRY_OUTPUT.")
    parser.add_argument("--limit", type=int, help="Stop at this row offset (0 = until the last page).")
    parser.add_argument("--timezone", help="Target timezone for the date column.")
    parser.add_argument("--date-format", help="strftime format for converted dates.")
    parser.add_argument(
        "--no-convert-dates",
        action="store_true",
        help="Keep the dates as exported by the portal.",
    )
    parser.add_argument(
        "--schedule-hour",
        type=int,
        help="Keep running and export daily at this hour.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def apply_args(args: argparse.Namespace) -> None:
    """Overlay CLI arguments on the loaded configuration."""
    if args.output:
        config["output"] = args.output
    if args.limit is not None:
        config["limit"] = args.limit
    if args.timezone:
        config["timezone"] = args.timezone
    if args.date_format:
        config["date_format"] = args.date_format
    if args.no_convert_dates:
        config["convert_dates"] = False
    if args.schedule_hour is not None:
        config["scrape_hour"] = args.schedule_hour
    if args.debug:
        config["debug"] = True


def prepare_output(path: Path) -> None:
    """Create or truncate the output file.

    Raises:
        OSError: If the file cannot be written
    """
    logger.info(f"Will write output to {path.resolve()}")
    if path.exists():
        logger.debug(f"Truncating existing output file {path}")
    path.write_text("", encoding="utf-8")


def build_scraper() -> FlurryScraper:
    """Create a scraper from the current configuration."""
    project = config["project_id"]
    on_page = on_invalid = None
    if prometheus_exporter:
        on_page = lambda offset: prometheus_exporter.record_page(project)
        on_invalid = lambda offset: prometheus_exporter.record_invalid_page(project)

    return FlurryScraper(
        email=config["email"],
        password=config["password"],
        project_id=project,
        limit=config["limit"] or None,
        retry_delay=config["retry_delay"],
        page_delay=config["page_delay"],
        max_invalid_retries=config["max_retries"],
        retry_increment=config["retry_increment"],
        retry_jitter=config["retry_jitter"],
        verify_ssl=config["verify_ssl"],
        on_page=on_page,
        on_invalid=on_invalid,
    )


def run_export(scraper: Optional[FlurryScraper] = None) -> bool:
    """Execute the download, convert and write flow.

    This function:
    1. Prepares the output file
    2. Creates a temporary working directory for the per-page files
    3. Logs in and downloads all pages
    4. Converts the date column to the target timezone
    5. Writes the output file and pushes records to InfluxDB
    6. Removes the temporary directory

    Args:
        scraper: Optional scraper instance (built from config if None)

    Returns:
        True if the export succeeded, False otherwise
    """
    logger.info("Starting export")
    start_time = time.time()
    project = config["project_id"]
    output_path = Path(config["output"])

    def failed() -> bool:
        if prometheus_exporter:
            prometheus_exporter.set_export_result(project, False, time.time() - start_time)
        return False

    try:
        prepare_output(output_path)
    except OSError as e:
        logger.error(f"Could not create the output file {output_path}: {e}")
        return failed()

    if scraper is None:
        scraper = build_scraper()

    try:
        with tempfile.TemporaryDirectory(prefix=f"flurry_exporter.{time.strftime('%Y%m%d.%H%M%S')}.") as tmp:
            work_dir = Path(tmp)
            logger.debug(f"    tmpDir    : {work_dir}")

            csv_content = scraper.scrape(work_dir)

            # Records keep the portal's UTC timestamps
            records = parse_records(csv_content)

            if config["convert_dates"]:
                csv_content = convert_csv_dates(
                    csv_content,
                    target_tz=config["timezone"],
                    fmt=config["date_format"],
                )

            # Write next to the pages first so a failed write leaves no partial output
            tmp_csv = work_dir / "exceptions.csv"
            tmp_csv.write_text(csv_content, encoding="utf-8")
            shutil.copyfile(tmp_csv, output_path)
            logger.info(f"Wrote {len(records)} exceptions to {output_path}")

            if influxdb_exporter:
                record_count, daily_count = influxdb_exporter.write_all(project, records)
                logger.info(f"Wrote to InfluxDB: {record_count} exceptions, {daily_count} daily counts")

            if prometheus_exporter:
                prometheus_exporter.update_error_counts(project, records)
                prometheus_exporter.set_export_result(
                    project, True, time.time() - start_time, rows=len(records)
                )

            logger.debug("Removing tmpDir")

        logger.info("Done!")
        return True

    except FlurryError as e:
        logger.error(f"Export failed (Flurry error): {e}")
        return failed()

    except (DateConversionError, CSVPageError) as e:
        logger.error(f"Export failed (CSV error): {e}")
        return failed()

    except Exception as e:
        logger.error(f"Export failed (unexpected error): {e}")
        return failed()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point.

    1. Load .env file with python-dotenv
    2. Load configuration and apply CLI overrides
    3. Connect to InfluxDB if configured
    4. Run a single export, or start the scheduler with a daily export job
       (plus Prometheus metrics and an initial export)

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    global prometheus_exporter, influxdb_exporter

    args = parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    load_dotenv()

    if not load_config():
        logger.error("Configuration failed, exiting")
        return 1

    apply_args(args)

    if not validate_scrape_hour():
        logger.error("Configuration failed, exiting")
        return 1

    if config["debug"]:
        logging.getLogger().setLevel(logging.DEBUG)

    if config["influxdb_token"]:
        influxdb_exporter = InfluxDBExporter(
            url=config["influxdb_url"],
            token=config["influxdb_token"],
            org=config["influxdb_org"],
            bucket=config["influxdb_bucket"],
        )
        if not influxdb_exporter.connect():
            logger.error("Failed to connect to InfluxDB, exiting")
            return 1

    try:
        if config["scrape_hour"] is None:
            return 0 if run_export() else 1

        prometheus_exporter = FlurryExporter(port=config["exporter_port"])
        prometheus_exporter.start()
        logger.info(f"Prometheus metrics available at http://localhost:{config['exporter_port']}/metrics")

        scheduler = BlockingScheduler()
        trigger = CronTrigger(hour=config["scrape_hour"], minute=0)
        scheduler.add_job(
            run_export,
            trigger=trigger,
            id="daily_export",
            name=f"Daily export at {config['scrape_hour']}:00"
        )
        logger.info(f"Scheduled daily export at {config['scrape_hour']}:00")

        logger.info("Running initial export at startup")
        run_export()

        logger.info("Starting scheduler, press Ctrl+C to exit")
        try:
            scheduler.start()
        except KeyboardInterrupt:
            logger.info("Received interrupt, shutting down")
            scheduler.shutdown()

        return 0

    finally:
        if influxdb_exporter:
            influxdb_exporter.close()


if __name__ == "__main__":
    sys.exit(main())
