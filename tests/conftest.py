import sys
from pathlib import Path

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from flurry_exporter.csv_pages import CSV_HEADER


def make_page(start: int, rows: int) -> str:
    """Build a CSV page the way the portal exports it."""
    lines = [CSV_HEADER]
    for i in range(start, start + rows):
        lines.append(
            f'"2013-03-04 11:{i % 60:02d}:35","{i}","NullPointerException",'
            f'"message {i}","1.2.{i % 3}","{1000 + i}","onCreate","iPhone"'
        )
    return "\n".join(lines) + "\n"


class FakeResponse:
    def __init__(self, text: str = "", status_code: int = 200):
        self.text = text
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class FakeSession:
    """Stand-in for requests.Session replaying queued responses.

    Queued items may be FakeResponse objects or exceptions to raise.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []
        self.headers = {}
        self.verify = True

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)


@pytest.fixture
def no_sleep():
    """Sleep replacement recording requested delays."""
    delays = []
    return delays.append, delays


@pytest.fixture
def page_factory():
    return make_page
