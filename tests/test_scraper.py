from urllib.parse import parse_qs, urlparse

import pytest
import requests

from flurry_exporter.csv_pages import CSV_HEADER
from flurry_exporter.scraper import (
    FlurryAuthError,
    FlurryDownloadError,
    FlurryScraper,
)
from tests.conftest import FakeResponse, FakeSession, make_page

LOGIN_PAGE = """
<html><body>
<form action="/secure/loginAction.do" method="post">
  <input type="hidden" name="struts.token" value="abc123"/>
  <input type="text" name="loginEmail"/>
  <input type="password" name="loginPassword"/>
</form>
</body></html>
"""

DASHBOARD = "<html><body>Welcome back</body></html>"
RATE_LIMITED = "<html><body>Access denied, too many requests</body></html>"


def make_scraper(responses, sleep, **kwargs):
    session = FakeSession(responses)
    scraper = FlurryScraper(
        "dev@example.com",
        "s3cret&pass",
        "PRJ42",
        session=session,
        sleep=sleep,
        **kwargs,
    )
    return scraper, session


def logged_in(responses, sleep, **kwargs):
    scraper, session = make_scraper(responses, sleep, **kwargs)
    scraper._authenticated = True
    return scraper, session


def test_login_posts_credentials_and_hidden_fields(no_sleep):
    sleep, _ = no_sleep
    scraper, session = make_scraper([FakeResponse(LOGIN_PAGE), FakeResponse(DASHBOARD)], sleep)

    assert scraper.login() is True

    method, url, kwargs = session.calls[1]
    assert method == "POST"
    assert url == FlurryScraper.LOGIN_URL
    assert kwargs["data"] == {
        "struts.token": "abc123",
        "loginEmail": "dev@example.com",
        "loginPassword": "s3cret&pass",
        "rememberMe": "true",
        "__checkbox_rememberMe": "true",
    }


def test_login_rejected_when_form_returned(no_sleep):
    sleep, _ = no_sleep
    scraper, _ = make_scraper([FakeResponse(LOGIN_PAGE), FakeResponse(LOGIN_PAGE)], sleep)

    with pytest.raises(FlurryAuthError):
        scraper.login()


def test_login_retries_network_errors(no_sleep):
    sleep, delays = no_sleep
    responses = [
        requests.ConnectionError("boom"),
        FakeResponse(LOGIN_PAGE),
        FakeResponse(DASHBOARD),
    ]
    scraper, _ = make_scraper(responses, sleep)

    assert scraper.login() is True
    assert delays == [FlurryScraper.RETRY_DELAY]


def test_login_gives_up_after_max_retries(no_sleep):
    sleep, _ = no_sleep
    responses = [requests.ConnectionError("down")] * FlurryScraper.MAX_RETRIES
    scraper, _ = make_scraper(responses, sleep)

    with pytest.raises(FlurryAuthError, match="Error while logging in"):
        scraper.login()


def test_build_page_url():
    scraper = FlurryScraper("a@b.c", "p", "PRJ42", session=FakeSession())

    url = scraper.build_page_url(30)

    parsed = urlparse(url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == FlurryScraper.EXPORT_URL
    assert parse_qs(parsed.query) == {
        "projectID": ["PRJ42"],
        "versionCut": ["versionsAll"],
        "intervalCut": ["allTime"],
        "stream": ["true"],
        "direction": ["1"],
        "offset": ["30"],
    }


def test_verify_ssl_applied_to_session():
    session = FakeSession()
    FlurryScraper("a@b.c", "p", "PRJ42", session=session, verify_ssl=False)
    assert session.verify is False


def test_download_page_requires_login(no_sleep):
    sleep, _ = no_sleep
    scraper, _ = make_scraper([], sleep)

    with pytest.raises(FlurryDownloadError, match="Not authenticated"):
        scraper.download_page(0)


def test_download_page_retries_same_offset_on_invalid_response(no_sleep):
    sleep, delays = no_sleep
    invalid = []
    responses = [FakeResponse(RATE_LIMITED), FakeResponse(""), FakeResponse(make_page(15, 15))]
    scraper, session = logged_in(responses, sleep, retry_delay=20, on_invalid=invalid.append)

    content = scraper.download_page(15)

    assert CSV_HEADER in content
    assert delays == [20, 20]
    assert invalid == [15, 15]
    urls = {url for _, url, _ in session.calls}
    assert len(urls) == 1
    assert "offset=15" in urls.pop()


def test_download_page_retries_transport_errors(no_sleep):
    sleep, _ = no_sleep
    responses = [requests.Timeout("slow"), FakeResponse(make_page(0, 15))]
    scraper, _ = logged_in(responses, sleep)

    assert scraper.download_page(0).startswith(CSV_HEADER)


def test_download_page_retry_delay_increments(no_sleep):
    sleep, delays = no_sleep
    responses = [FakeResponse(RATE_LIMITED)] * 3 + [FakeResponse(make_page(0, 1))]
    scraper, _ = logged_in(responses, sleep, retry_delay=20, retry_increment=10)

    scraper.download_page(0)

    assert delays == [20, 30, 40]


def test_download_page_retry_jitter_bounded(no_sleep):
    sleep, delays = no_sleep
    responses = [FakeResponse(RATE_LIMITED)] * 5 + [FakeResponse(make_page(0, 1))]
    scraper, _ = logged_in(responses, sleep, retry_delay=20, retry_jitter=5)

    scraper.download_page(0)

    assert len(delays) == 5
    assert all(20 <= d <= 25 for d in delays)


def test_download_page_gives_up(no_sleep):
    sleep, delays = no_sleep
    responses = [FakeResponse(RATE_LIMITED)] * 3
    scraper, _ = logged_in(responses, sleep, max_invalid_retries=3)

    with pytest.raises(FlurryDownloadError, match="offset 0 still invalid after 3 attempts"):
        scraper.download_page(0)
    assert len(delays) == 2


def test_iter_pages_stops_at_limit(no_sleep):
    sleep, delays = no_sleep
    responses = [FakeResponse(make_page(i, 15)) for i in range(0, 45, 15)]
    scraper, session = logged_in(responses, sleep, limit=45, page_delay=5)

    pages = list(scraper.iter_pages())

    assert [offset for offset, _ in pages] == [0, 15, 30]
    assert len(session.calls) == 3
    assert delays == [5, 5, 5]


def test_iter_pages_stops_on_short_page(no_sleep):
    sleep, _ = no_sleep
    responses = [FakeResponse(make_page(0, 15)), FakeResponse(make_page(15, 7))]
    scraper, session = logged_in(responses, sleep, limit=None)

    pages = list(scraper.iter_pages())

    assert [offset for offset, _ in pages] == [0, 15]
    assert len(session.calls) == 2


def test_iter_pages_reports_valid_pages(no_sleep):
    sleep, _ = no_sleep
    seen = []
    responses = [FakeResponse(RATE_LIMITED), FakeResponse(make_page(0, 2))]
    scraper, _ = logged_in(responses, sleep, on_page=seen.append)

    list(scraper.iter_pages())

    assert seen == [0]


def test_download_writes_pages_and_merges(tmp_path, no_sleep):
    sleep, _ = no_sleep
    responses = [
        FakeResponse(make_page(0, 15)),
        FakeResponse(RATE_LIMITED),
        FakeResponse(make_page(15, 3)),
    ]
    scraper, _ = logged_in(responses, sleep)

    merged = scraper.download(tmp_path)

    assert sorted(p.name for p in tmp_path.iterdir()) == ["exception1.csv", "exception2.csv"]
    assert (tmp_path / "exception2.csv").read_text() == make_page(15, 3)
    assert merged.count(CSV_HEADER) == 1
    assert len(merged.splitlines()) == 1 + 18


def test_scrape_logs_in_then_downloads(tmp_path, no_sleep):
    sleep, _ = no_sleep
    responses = [
        FakeResponse(LOGIN_PAGE),
        FakeResponse(DASHBOARD),
        FakeResponse(make_page(0, 4)),
    ]
    scraper, session = make_scraper(responses, sleep)

    merged = scraper.scrape(tmp_path)

    assert [method for method, _, _ in session.calls] == ["GET", "POST", "GET"]
    assert len(merged.splitlines()) == 5
