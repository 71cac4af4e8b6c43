"""Selenium Chrome drivers shared by the browser-backed data sources."""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from selenium import webdriver
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from webdriver_manager.chrome import ChromeDriverManager

from .config import BROWSER_HEADLESS, PAGE_LOAD_TIMEOUT_SECONDS, USER_AGENT

logger = logging.getLogger(__name__)


class BrowserLaunchError(RuntimeError):
    """Chrome could not be started."""


def create_driver(headless: bool = BROWSER_HEADLESS) -> webdriver.Chrome:
    """Start a new Chrome WebDriver."""
    options = Options()
    if headless:
        options.add_argument("--headless")
    options.add_argument("--disable-gpu")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--window-size=1920,1080")
    options.add_argument(f"user-agent={USER_AGENT}")

    try:
        service = Service(ChromeDriverManager().install())
        driver = webdriver.Chrome(service=service, options=options)
    except Exception as e:
        logger.error(f"Failed to initialize Chrome WebDriver: {e}")
        raise BrowserLaunchError(str(e)) from e

    driver.set_page_load_timeout(PAGE_LOAD_TIMEOUT_SECONDS)
    return driver


class BrowserSession:
    """Chrome drivers for one resulting batch, released together.

    WebDriver is not thread-safe, so every source gets its own driver for
    the lifetime of the session. The first driver is started on enter; a
    launch failure there aborts the whole batch.

    Use as a context manager; all drivers are quit on exit, whether the
    batch succeeded or not.
    """

    def __init__(self, headless: bool = BROWSER_HEADLESS, driver_factory=create_driver):
        self.headless = headless
        self._driver_factory = driver_factory
        self._lock = threading.Lock()
        self._idle: List[webdriver.Chrome] = []
        self._assigned: Dict[str, webdriver.Chrome] = {}
        self._closed = False

    def __enter__(self) -> "BrowserSession":
        self._idle.append(self._driver_factory(self.headless))
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def driver(self, owner: str) -> webdriver.Chrome:
        """Get the driver assigned to `owner`, starting one if needed."""
        with self._lock:
            if self._closed:
                raise BrowserLaunchError("Browser session already closed")
            driver = self._assigned.get(owner)
            if driver is None and self._idle:
                driver = self._idle.pop()
                self._assigned[owner] = driver
            if driver is not None:
                return driver

        driver = self._driver_factory(self.headless)
        with self._lock:
            if not self._closed:
                self._assigned[owner] = driver
                return driver
        _quit_quietly(driver)
        raise BrowserLaunchError("Browser session already closed")

    def release(self, owner: str) -> None:
        """Quit the driver of a source that hung; its next call gets a fresh one."""
        with self._lock:
            driver = self._assigned.pop(owner, None)
        if driver is not None:
            _quit_quietly(driver)

    def close(self) -> None:
        with self._lock:
            drivers = list(self._assigned.values()) + self._idle
            self._assigned = {}
            self._idle = []
            self._closed = True
        for driver in drivers:
            _quit_quietly(driver)
        if drivers:
            logger.debug(f"Closed {len(drivers)} browser(s)")


def _quit_quietly(driver: webdriver.Chrome) -> None:
    try:
        driver.quit()
    except Exception as e:
        logger.warning(f"Error while closing browser: {e}")


@contextmanager
def borrowed_driver(session: Optional[BrowserSession], owner: str) -> Iterator[webdriver.Chrome]:
    """Yield the session's driver for `owner`, or a private one that is quit afterwards."""
    if session is not None:
        yield session.driver(owner)
        return

    driver = create_driver()
    try:
        yield driver
    finally:
        _quit_quietly(driver)
