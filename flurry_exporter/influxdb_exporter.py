"""InfluxDB exporter module.

This module handles:
- Pushing exception records to InfluxDB at their logged time
  (records carry the portal timestamps, before any timezone conversion)
- Writing daily exception counts for dashboards
"""

import logging
from typing import Dict, List, Optional, Tuple

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS

from flurry_exporter.csv_pages import ExceptionRecord
from flurry_exporter.date_converter import DEFAULT_SOURCE_TIMEZONE, DateConversionError, to_utc

# Configure module logger
logger = logging.getLogger(__name__)


class InfluxDBExporter:
    """InfluxDB exporter for Flurry exception logs.

    Measurements:
    - flurry_exception: One point per logged exception (count=1, message)
    - flurry_exception_daily: Exceptions per day and error name

    Tags:
    - project: Flurry project identifier
    - error, version, platform (flurry_exception)
    - error (flurry_exception_daily)

    Attributes:
        url: InfluxDB server URL
        token: InfluxDB API token
        org: InfluxDB organization
        bucket: InfluxDB bucket name
    """

    def __init__(
        self,
        url: str = "http://localhost:8086",
        token: str = "",
        org: str = "flurry",
        bucket: str = "exceptions",
    ):
        """Initialize the InfluxDB exporter.

        Args:
            url: InfluxDB server URL
            token: InfluxDB API token (required for writes)
            org: InfluxDB organization name
            bucket: InfluxDB bucket name
        """
        self.url = url
        self.token = token
        self.org = org
        self.bucket = bucket
        self._client: Optional[InfluxDBClient] = None
        self._write_api = None

    def connect(self) -> bool:
        """Connect to InfluxDB.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            self._client = InfluxDBClient(
                url=self.url,
                token=self.token,
                org=self.org
            )
            self._write_api = self._client.write_api(write_options=SYNCHRONOUS)

            health = self._client.health()
            if health.status == "pass":
                logger.info(f"Connected to InfluxDB at {self.url}")
                return True
            else:
                logger.error(f"InfluxDB health check failed: {health.message}")
                return False
        except Exception as e:
            logger.error(f"Failed to connect to InfluxDB: {e}")
            return False

    def close(self) -> None:
        """Close the InfluxDB connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._write_api = None
            logger.info("InfluxDB connection closed")

    @staticmethod
    def _timestamped(
        records: List[ExceptionRecord], source_tz: str
    ) -> List[Tuple[ExceptionRecord, int]]:
        """Pair records with their epoch in nanoseconds, skipping bad dates."""
        result = []
        for record in records:
            try:
                epoch_ns = int(to_utc(record.timestamp, source_tz).timestamp()) * 1_000_000_000
            except DateConversionError as e:
                logger.warning(f"Skipping record {record.index}: {e}")
                continue
            result.append((record, epoch_ns))
        return result

    def build_points(
        self,
        project: str,
        records: List[ExceptionRecord],
        source_tz: str = DEFAULT_SOURCE_TIMEZONE,
    ) -> List[Point]:
        """Build one point per exception record.

        Args:
            project: Flurry project identifier
            records: Parsed exception records
            source_tz: Timezone of naive record timestamps

        Returns:
            List of points
        """
        points: List[Point] = []

        for record, epoch_ns in self._timestamped(records, source_tz):
            point = (
                Point("flurry_exception")
                .tag("project", project)
                .tag("error", record.error)
                .tag("version", record.version)
                .tag("platform", record.platform)
                .field("count", 1)
                .field("message", record.message)
                .field("error_id", record.error_id)
                .time(epoch_ns, WritePrecision.NS)
            )
            points.append(point)

        return points

    def write_records(
        self,
        project: str,
        records: List[ExceptionRecord],
        source_tz: str = DEFAULT_SOURCE_TIMEZONE,
    ) -> int:
        """Write exception records to InfluxDB.

        Returns:
            Number of points written

        Raises:
            RuntimeError: If not connected to InfluxDB
        """
        if not self._write_api:
            raise RuntimeError("Not connected to InfluxDB. Call connect() first.")

        if not records:
            logger.warning("No records to write")
            return 0

        points = self.build_points(project, records, source_tz)

        try:
            self._write_api.write(bucket=self.bucket, org=self.org, record=points)
            logger.info(f"Wrote {len(points)} exceptions to InfluxDB for project {project}")
        except Exception as e:
            logger.error(f"Failed to write to InfluxDB: {e}")
            raise

        return len(points)

    def write_daily_counts(
        self,
        project: str,
        records: List[ExceptionRecord],
        source_tz: str = DEFAULT_SOURCE_TIMEZONE,
    ) -> int:
        """Write per-day, per-error exception counts to InfluxDB.

        Each day is timestamped at midnight UTC.

        Returns:
            Number of points written
        """
        if not self._write_api:
            raise RuntimeError("Not connected to InfluxDB. Call connect() first.")

        if not records:
            return 0

        # Group by (day start epoch, error) and count
        daily_counts: Dict[Tuple[int, str], int] = {}
        day_ns = 86_400 * 1_000_000_000
        for record, epoch_ns in self._timestamped(records, source_tz):
            key = (epoch_ns - epoch_ns % day_ns, record.error)
            daily_counts[key] = daily_counts.get(key, 0) + 1

        points: List[Point] = []
        for (day_epoch_ns, error), count in daily_counts.items():
            point = (
                Point("flurry_exception_daily")
                .tag("project", project)
                .tag("error", error)
                .field("count", count)
                .time(day_epoch_ns, WritePrecision.NS)
            )
            points.append(point)

        try:
            self._write_api.write(bucket=self.bucket, org=self.org, record=points)
            logger.info(f"Wrote {len(points)} daily counts to InfluxDB for project {project}")
        except Exception as e:
            logger.error(f"Failed to write daily counts: {e}")
            raise

        return len(points)

    def write_all(
        self,
        project: str,
        records: List[ExceptionRecord],
        source_tz: str = DEFAULT_SOURCE_TIMEZONE,
    ) -> tuple[int, int]:
        """Write both exception records and daily counts.

        Returns:
            Tuple of (record_count, daily_count)
        """
        record_count = self.write_records(project, records, source_tz)
        daily_count = self.write_daily_counts(project, records, source_tz)
        return record_count, daily_count
