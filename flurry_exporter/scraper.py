"""Flurry authentication and exception log download module.

This module handles:
- Authentication with the Flurry developer portal (cookie-based session)
- Downloading the exception log as paginated CSV exports (15 rows per request)
- Detecting invalid/rate-limited responses and retrying the same page
"""

import logging
import random
import time
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple
from urllib.parse import urlencode

import requests
from bs4 import BeautifulSoup

from flurry_exporter.csv_pages import CSV_HEADER, count_rows, is_valid_page, merge_pages

# Configure module logger
logger = logging.getLogger(__name__)


class FlurryError(Exception):
    """Base exception for Flurry scraper errors."""
    pass


class FlurryAuthError(FlurryError):
    """Exception raised when authentication fails."""
    pass


class FlurryDownloadError(FlurryError):
    """Exception raised when data download fails."""
    pass


class FlurryScraper:
    """Scraper for the Flurry exception log CSV export.

    The portal only exports 15 rows per request and denies access with an
    HTML page when too many requests arrive in a short time. Every page is
    checked for the CSV header and re-requested after a pause if missing.

    Attributes:
        email: Portal login email
        password: Portal login password
        project_id: Flurry project identifier
        page_size: Rows per exported page
        limit: Offset at which to stop downloading (None = until the last page)
    """

    BASE_URL = "https://dev.flurry.com"
    LOGIN_URL = f"{BASE_URL}/secure/loginAction.do"
    LOGIN_PAGE_URL = f"{BASE_URL}/secure/login.do"
    EXPORT_URL = f"{BASE_URL}/exceptionLogsCsv.do"

    # Network retry configuration (login requests)
    MAX_RETRIES = 3
    RETRY_DELAY = 2  # seconds

    PAGE_SIZE = 15

    def __init__(
        self,
        email: str,
        password: str,
        project_id: str,
        page_size: int = PAGE_SIZE,
        limit: Optional[int] = 1000,
        retry_delay: float = 20,
        page_delay: float = 5,
        max_invalid_retries: int = 10,
        retry_increment: float = 0,
        retry_jitter: float = 0,
        verify_ssl: bool = True,
        header: str = CSV_HEADER,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_page: Optional[Callable[[int], None]] = None,
        on_invalid: Optional[Callable[[int], None]] = None,
    ):
        """Initialize the scraper with credentials.

        Args:
            email: Portal login email
            password: Portal login password
            project_id: Flurry project identifier
            page_size: Rows per exported page (portal cap is 15)
            limit: Stop once the offset reaches this value (None = no limit)
            retry_delay: Seconds to wait before re-requesting an invalid page
            page_delay: Seconds to wait after every page request
            max_invalid_retries: Consecutive failures allowed for one page
            retry_increment: Seconds added to retry_delay per consecutive failure
            retry_jitter: Upper bound of random seconds added to each retry wait
            verify_ssl: Verify TLS certificates
            header: Expected CSV header used to validate pages
            session: Optional requests session (for testing)
            sleep: Sleep function (for testing)
            on_page: Callback invoked with the offset of each valid page
            on_invalid: Callback invoked with the offset of each invalid response
        """
        self.email = email
        self.password = password
        self.project_id = project_id
        self.page_size = page_size
        self.limit = limit
        self.retry_delay = retry_delay
        self.page_delay = page_delay
        self.max_invalid_retries = max_invalid_retries
        self.retry_increment = retry_increment
        self.retry_jitter = retry_jitter
        self.header = header
        self.session = session if session is not None else requests.Session()
        self.session.verify = verify_ssl
        self._sleep = sleep
        self._on_page = on_page
        self._on_invalid = on_invalid
        self._authenticated = False

        self.session.headers.update({
            "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "Accept": "text/csv,text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
        })

    def _extract_form_data(self, html: str) -> dict:
        """Extract all hidden form inputs from HTML.

        Args:
            html: HTML content containing the login form

        Returns:
            Dictionary of form field names to values
        """
        soup = BeautifulSoup(html, "html.parser")
        form_data = {}

        for inp in soup.find_all("input", {"type": "hidden"}):
            name = inp.get("name")
            if name:
                form_data[name] = inp.get("value", "")

        logger.debug(f"Extracted {len(form_data)} hidden form fields")
        return form_data

    @staticmethod
    def _is_login_page(html: str) -> bool:
        """Check whether a response still shows the login form."""
        soup = BeautifulSoup(html, "html.parser")
        return soup.find("input", {"name": "loginEmail"}) is not None

    def _retry_request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Execute request with retry logic.

        Args:
            method: HTTP method (GET, POST)
            url: Request URL
            **kwargs: Additional arguments passed to requests

        Returns:
            Response object

        Raises:
            FlurryError: After all retries exhausted
        """
        last_error = None

        for attempt in range(self.MAX_RETRIES):
            try:
                if attempt > 0:
                    delay = self.RETRY_DELAY * (2 ** (attempt - 1))  # Exponential backoff
                    logger.info(f"Retry {attempt}/{self.MAX_RETRIES} after {delay}s delay")
                    self._sleep(delay)

                response = self.session.request(method, url, **kwargs)
                response.raise_for_status()
                return response

            except requests.RequestException as e:
                last_error = e
                logger.warning(f"Request failed (attempt {attempt + 1}): {e}")

        raise FlurryError(f"Request failed after {self.MAX_RETRIES} retries: {last_error}")

    def login(self) -> bool:
        """Authenticate with the Flurry portal.

        Performs the login process:
        1. GET login page to pick up session cookies and hidden form fields
        2. POST credentials to the login action
        3. Verify the response no longer shows the login form

        Returns:
            True if authentication succeeded

        Raises:
            FlurryAuthError: If authentication fails
        """
        logger.info(f"Logging into flurry as {self.email}")
        logger.debug(f"    url : {self.LOGIN_URL}")

        try:
            response = self._retry_request("GET", self.LOGIN_PAGE_URL)
            form_data = self._extract_form_data(response.text)

            form_data.update({
                "loginEmail": self.email,
                "loginPassword": self.password,
                "rememberMe": "true",
                "__checkbox_rememberMe": "true",
            })

            response = self._retry_request(
                "POST",
                self.LOGIN_URL,
                data=form_data,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Referer": self.LOGIN_PAGE_URL,
                    "Origin": self.BASE_URL,
                },
                allow_redirects=True,
            )

            if self._is_login_page(response.text):
                raise FlurryAuthError("Login failed - portal returned the login form again")

            self._authenticated = True
            logger.info("Authentication successful")
            return True

        except FlurryAuthError:
            raise
        except Exception as e:
            logger.error(f"Login failed: {e}")
            raise FlurryAuthError(f"Error while logging in: {e}")

    def build_page_url(self, offset: int) -> str:
        """Build the export URL for the page starting at offset."""
        params = {
            "projectID": self.project_id,
            "versionCut": "versionsAll",
            "intervalCut": "allTime",
            "stream": "true",
            "direction": 1,
            "offset": offset,
        }
        return f"{self.EXPORT_URL}?{urlencode(params)}"

    def _retry_wait(self, failures: int) -> float:
        """Seconds to wait after the given number of consecutive failures."""
        delay = self.retry_delay + self.retry_increment * (failures - 1)
        if self.retry_jitter > 0:
            delay += random.uniform(0, self.retry_jitter)
        return delay

    def download_page(self, offset: int) -> str:
        """Download and validate one CSV page.

        Invalid responses (missing CSV header) and transport errors are
        retried for the same offset after a pause.

        Args:
            offset: Row offset of the page

        Returns:
            The page content

        Raises:
            FlurryDownloadError: If the page is still invalid after
                max_invalid_retries attempts
        """
        if not self._authenticated:
            raise FlurryDownloadError("Not authenticated - call login() first")

        url = self.build_page_url(offset)
        logger.debug(f"Url : {url}")

        failures = 0
        while True:
            try:
                response = self.session.get(url, allow_redirects=True)
                content = response.text
            except requests.RequestException as e:
                logger.warning(f"Error while retrieving page at offset {offset}: {e}")
                content = None

            if content is not None and is_valid_page(content, self.header):
                return content

            failures += 1
            if self._on_invalid:
                self._on_invalid(offset)

            if failures >= self.max_invalid_retries:
                raise FlurryDownloadError(
                    f"Page at offset {offset} still invalid after {failures} attempts"
                )

            delay = self._retry_wait(failures)
            logger.warning(
                f"The result for offset {offset} seems invalid. "
                f"Retrying in {delay:.0f}s ({failures}/{self.max_invalid_retries})"
            )
            self._sleep(delay)

    def iter_pages(self) -> Iterator[Tuple[int, str]]:
        """Download pages sequentially until the limit or the last page.

        Yields:
            Tuples of (offset, content) for each valid page
        """
        offset = 0
        counter = 1

        while self.limit is None or offset < self.limit:
            logger.info(f"Processing request #{counter} (offset {offset})")

            content = self.download_page(offset)
            if self._on_page:
                self._on_page(offset)

            yield offset, content

            rows = count_rows(content)
            if rows < self.page_size:
                logger.info(f"Request #{counter} returned {rows} rows, reached end of log")
                break

            # Wait some time so that flurry doesn't nag
            self._sleep(self.page_delay)

            offset += self.page_size
            counter += 1

    def download(self, work_dir: Path) -> str:
        """Download all pages into work_dir and merge them.

        Each valid page is saved as exception<N>.csv before merging.

        Args:
            work_dir: Directory for the per-page files

        Returns:
            Merged CSV content
        """
        logger.info("Downloading CSVs")
        work_dir = Path(work_dir)
        pages = []

        for counter, (offset, content) in enumerate(self.iter_pages(), 1):
            page_file = work_dir / f"exception{counter}.csv"
            try:
                page_file.write_text(content, encoding="utf-8")
            except OSError as e:
                raise FlurryDownloadError(f"Could not write to {page_file}: {e}")
            pages.append(content)

        logger.info(f"Downloaded {len(pages)} pages")
        return merge_pages(pages)

    def scrape(self, work_dir: Path) -> str:
        """Complete scrape flow: authenticate and download all pages.

        Args:
            work_dir: Directory for the per-page files

        Returns:
            Merged CSV content

        Raises:
            FlurryAuthError: If authentication fails
            FlurryDownloadError: If download fails
        """
        logger.info(f"Starting scrape for project {self.project_id}")

        self.login()
        csv_content = self.download(work_dir)

        logger.info(f"Scrape complete, received {len(csv_content)} bytes")
        return csv_content
