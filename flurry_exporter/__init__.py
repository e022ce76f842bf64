"""Flurry exception log exporter package.

Logs into the Flurry developer portal, downloads the exception log as
15-row CSV pages, retries rate-limited responses, merges the pages into one
CSV file and converts the dates to a target timezone.
"""

__version__ = "0.1.0"
