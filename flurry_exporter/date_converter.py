"""Timestamp conversion for exported exception logs.

The portal writes timestamps in UTC; this module rewrites the first CSV
column in a target timezone and format.
"""

import csv
import io
import logging
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/Amsterdam"
DEFAULT_FORMAT = "%m/%d/%y %I:%M:%S %p %Z"
DEFAULT_SOURCE_TIMEZONE = "UTC"

PROGRESS_EVERY = 100


class DateConversionError(Exception):
    """Exception raised when a timestamp or timezone cannot be handled."""
    pass


def get_zone(tz_name: str) -> ZoneInfo:
    """Look up a timezone by IANA name.

    Raises:
        DateConversionError: If the timezone is unknown
    """
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise DateConversionError(f"Unknown timezone: {tz_name}") from e


def parse_timestamp(value: str, source_tz: str = DEFAULT_SOURCE_TIMEZONE) -> datetime:
    """Parse a portal timestamp into an aware datetime.

    Naive values are interpreted in source_tz.

    Example:
        >>> parse_timestamp("03/04/13 12:45:35 AM").hour
        0
    """
    try:
        dt = date_parser.parse(value.strip())
    except (ValueError, OverflowError) as e:
        raise DateConversionError(f"Could not parse date: {value!r}") from e

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=get_zone(source_tz))
    return dt


def convert_timestamp(
    value: str,
    target_tz: str = DEFAULT_TIMEZONE,
    fmt: str = DEFAULT_FORMAT,
    source_tz: str = DEFAULT_SOURCE_TIMEZONE,
) -> str:
    """Convert a timestamp string to target_tz and format it.

    Args:
        value: Timestamp as exported by the portal
        target_tz: IANA name of the target timezone
        fmt: strftime format of the result
        source_tz: Timezone assumed for timestamps without one

    Returns:
        The reformatted timestamp

    Raises:
        DateConversionError: If the value or a timezone is invalid

    Example:
        >>> convert_timestamp("2013-03-04 11:45:35", "Europe/Amsterdam")
        '03/04/13 12:45:35 PM CET'
    """
    dt = parse_timestamp(value, source_tz)
    return dt.astimezone(get_zone(target_tz)).strftime(fmt)


def convert_csv_dates(
    content: str,
    target_tz: str = DEFAULT_TIMEZONE,
    fmt: str = DEFAULT_FORMAT,
    source_tz: str = DEFAULT_SOURCE_TIMEZONE,
    strict: bool = False,
) -> str:
    """Rewrite the date column (first field) of every data row.

    The header line is copied unchanged. Data rows are written back with
    all fields quoted. Blank lines are dropped. Quoted fields may span
    several lines.

    Args:
        content: Merged CSV content
        target_tz: IANA name of the target timezone
        fmt: strftime format for converted dates
        source_tz: Timezone assumed for timestamps without one
        strict: Raise on unparseable dates instead of keeping the row as-is

    Returns:
        CSV content with converted dates

    Raises:
        DateConversionError: On unknown timezones, or bad dates when strict
    """
    # Fail early on bad timezone names rather than once per row
    get_zone(target_tz)
    get_zone(source_tz)

    logger.info(f"Converting CSV dates to use TimeZone '{target_tz}'")

    # Do not process CSV header
    header, _, body = content.partition("\n")
    reader = csv.reader(io.StringIO(body), skipinitialspace=True)
    rows = [(reader.line_num + 1, row) for row in reader]
    total_lines = len(rows) + 1

    out = io.StringIO()
    out.write(header.rstrip("\r") + "\n")
    writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
    converted = 0

    logger.info(f"Processed 0 out of {total_lines}")

    for i, (line_num, row) in enumerate(rows, 1):
        if i % PROGRESS_EVERY == 0:
            logger.info(f"Processed {i} out of {total_lines}")

        if not row or not any(field.strip() for field in row):
            continue

        original = row[0]
        try:
            row[0] = convert_timestamp(original, target_tz, fmt, source_tz)
        except DateConversionError as e:
            if strict:
                raise
            logger.warning(f"Line {line_num}: {e}, keeping row unchanged")
        else:
            logger.debug(f"{original} => {row[0]}")
            converted += 1

        writer.writerow(row)

    logger.info(f"Converted {converted} dates")
    return out.getvalue()


def to_utc(value: str, source_tz: str = DEFAULT_SOURCE_TIMEZONE) -> datetime:
    """Parse a timestamp as exported by the portal into a UTC datetime.

    Only meant for unconverted values: naive timestamps are read in
    source_tz, which keeps instants in a repeated DST hour distinct.

    Example:
        >>> to_utc("2013-03-04 11:45:35").isoformat()
        '2013-03-04T11:45:35+00:00'
    """
    return parse_timestamp(value, source_tz).astimezone(get_zone("UTC"))
