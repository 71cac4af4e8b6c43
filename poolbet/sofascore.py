"""SofaScore result source (Selenium, search URL)."""
import logging
from typing import Dict, Optional
from urllib.parse import quote, urljoin

from bs4 import BeautifulSoup
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from .browser import BrowserSession, borrowed_driver
from .config import SOFASCORE_BASE_URL
from .matching import mentions_fixture
from .models import MatchObservation

logger = logging.getLogger(__name__)

SEARCH_RESULT_SELECTOR = 'div[data-testid="search-result-event"]'


def find_event_link(html: str, home_team: str, away_team: str) -> Optional[str]:
    """Return the href of the first search result naming both teams."""
    soup = BeautifulSoup(html, "lxml")
    for result in soup.select(SEARCH_RESULT_SELECTOR):
        if not mentions_fixture(result.get_text(" ", strip=True), home_team, away_team):
            continue
        link = result.find("a", href=True)
        if link:
            return link["href"]
    return None


def parse_event_page(html: str) -> Optional[Dict[str, str]]:
    """
    Extract teams, score and status from a SofaScore event page.

    The page header holds both team names in <bdi> tags and the two scores
    in large display spans.
    """
    soup = BeautifulSoup(html, "lxml")

    names = soup.select("h1 bdi")
    if len(names) < 2:
        return None

    scores = soup.select('span[class*="textStyle_display.extraLarge"]')
    home_score = scores[0].get_text(strip=True) if len(scores) > 0 else ""
    away_score = scores[1].get_text(strip=True) if len(scores) > 1 else ""
    status_el = soup.select_one('div[class*="ai_center"]')

    return {
        "home": names[0].get_text(strip=True),
        "away": names[1].get_text(strip=True),
        "score": f"{home_score}-{away_score}" if home_score and away_score else "?",
        "status": status_el.get_text(" ", strip=True) if status_el else "",
    }


class SofaScoreSource:
    """Looks a fixture up through SofaScore's search page."""

    name = "SofaScore"

    def __init__(self, base_url: str = SOFASCORE_BASE_URL, wait_seconds: int = 10):
        self.base_url = base_url
        self.wait_seconds = wait_seconds

    def find_match(
        self,
        home_team: str,
        away_team: str,
        browser: Optional[BrowserSession] = None,
    ) -> Optional[MatchObservation]:
        logger.info(f"[SofaScore] Searching for {home_team} vs {away_team}...")
        try:
            with borrowed_driver(browser, self.name) as driver:
                html = self._open_event_page(driver, home_team, away_team)
        except TimeoutException:
            logger.warning(f"[SofaScore] Page load timed out for {home_team} vs {away_team}")
            return None
        except WebDriverException as e:
            logger.error(f"[SofaScore] WebDriver error: {e}")
            return None
        except Exception as e:
            logger.error(f"[SofaScore] Scrape failed: {e}")
            return None

        if html is None:
            logger.warning(f"[SofaScore] No matching results found for {home_team} vs {away_team}")
            return None

        details = parse_event_page(html)
        if not details:
            logger.warning("[SofaScore] Event page structure mismatch")
            return None

        logger.info(
            f"[SofaScore] Found: {details['home']} {details['score']} {details['away']} ({details['status']})"
        )
        return MatchObservation(
            source=self.name,
            home_team=details["home"],
            away_team=details["away"],
            status_text=f"SofaScore: {details['score']} ({details['status']})",
        )

    def _open_event_page(self, driver, home_team: str, away_team: str) -> Optional[str]:
        wait = WebDriverWait(driver, self.wait_seconds)

        driver.get(f"{self.base_url}/search?q={quote(home_team + ' ' + away_team)}")
        try:
            wait.until(EC.presence_of_element_located((By.CSS_SELECTOR, SEARCH_RESULT_SELECTOR)))
        except TimeoutException:
            return None

        link = find_event_link(driver.page_source, home_team, away_team)
        if not link:
            return None

        driver.get(urljoin(self.base_url, link))
        wait.until(EC.presence_of_element_located((By.TAG_NAME, "h1")))
        return driver.page_source
