"""Flurry exception log CSV page handling.

This module handles:
- Validating downloaded CSV pages (the portal answers rate-limited requests
  with an HTML page instead of CSV)
- Counting data rows so pagination can detect the end of the log
- Concatenating valid pages into one CSV document
- Parsing the merged CSV into exception records

Exception log CSV format (as exported by dev.flurry.com):
- Line 1: header "Timestamp,Index,Error,Message,Version,Error ID,Method, Platform"
- Following lines: one exception per line, fields quoted
"""

import csv
import io
from dataclasses import dataclass
from typing import Iterable, List

CSV_HEADER = "Timestamp,Index,Error,Message,Version,Error ID,Method, Platform"

# Number of columns in CSV_HEADER
CSV_COLUMNS = 8


class CSVPageError(Exception):
    """Exception raised for malformed exception log CSV content."""
    pass


@dataclass
class ExceptionRecord:
    """A single row of the exception log.

    Attributes:
        timestamp: Timestamp as written in the CSV (converted or not)
        index: Row index assigned by the portal
        error: Error name
        message: Error message
        version: Application version
        error_id: Portal error identifier
        method: Method/stack location reported with the error
        platform: Device platform
    """
    timestamp: str
    index: str
    error: str
    message: str
    version: str
    error_id: str
    method: str
    platform: str


def is_valid_page(content: str, header: str = CSV_HEADER) -> bool:
    """Check whether a downloaded page looks like an exception log CSV.

    The check is a plain substring search for the header. Anything else
    (empty body, login page, anti-bot page) is treated as invalid.

    Args:
        content: Raw response body
        header: Expected CSV header line

    Returns:
        True if the header is present in the content
    """
    if not content:
        return False
    return header in content


def count_rows(content: str) -> int:
    """Count data rows in a CSV page (non-empty lines after the header).

    Example:
        >>> count_rows('h\\n"a"\\n\\n"b"\\n')
        2
    """
    lines = content.splitlines()[1:]
    return sum(1 for line in lines if line.strip())


def merge_pages(pages: Iterable[str]) -> str:
    """Concatenate CSV pages into a single document.

    The first page is kept as-is (including its header); the header line of
    every later page is dropped. Each page is terminated by a newline.

    Args:
        pages: Page contents in download order

    Returns:
        Merged CSV content, or an empty string if there were no pages
    """
    parts: List[str] = []

    for page_num, page in enumerate(pages):
        if page_num == 0:
            body = page
        else:
            # Drop the header line
            _, _, body = page.partition("\n")

        if not body.endswith("\n"):
            body += "\n"
        parts.append(body)

    return "".join(parts)


def parse_records(content: str) -> List[ExceptionRecord]:
    """Parse merged exception log CSV content into records.

    Blank lines and repeated header rows are skipped.

    Args:
        content: CSV content (merged and optionally date-converted)

    Returns:
        List of ExceptionRecord objects in file order

    Raises:
        CSVPageError: If a row does not have the expected number of columns
    """
    header_fields = [f.strip() for f in CSV_HEADER.split(",")]
    records = []

    reader = csv.reader(io.StringIO(content), skipinitialspace=True)
    for line_num, row in enumerate(reader, 1):
        if not row or not any(field.strip() for field in row):
            continue

        if [f.strip() for f in row] == header_fields:
            continue

        if len(row) != CSV_COLUMNS:
            raise CSVPageError(
                f"Line {line_num}: expected {CSV_COLUMNS} columns, got {len(row)}"
            )

        records.append(ExceptionRecord(*(field.strip() for field in row)))

    return records
