"""LiveScore result source (Selenium, text heuristics on a mirror site)."""
import logging
import re
from typing import Dict, Optional
from urllib.parse import quote, urljoin

from bs4 import BeautifulSoup
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from .browser import BrowserSession, borrowed_driver
from .config import LIVESCORE_BASE_URL
from .matching import mentions_fixture
from .models import MatchObservation

logger = logging.getLogger(__name__)

SCORE_PATTERN = re.compile(r"(\d+)\s*-\s*(\d+)")
STATUS_PATTERN = re.compile(r"\b(FT|Full Time|Finished|AET|After Pen\w*|HT|Half Time|Live)\b", re.IGNORECASE)
HEADER_SPLIT = re.compile(r"\s+(?:vs?\.?|-)\s+", re.IGNORECASE)


def find_match_link(html: str, home_team: str, away_team: str, base_url: str = LIVESCORE_BASE_URL) -> Optional[str]:
    """Return the absolute URL of the first link whose text names both teams."""
    soup = BeautifulSoup(html, "lxml")
    for link in soup.find_all("a", href=True):
        if mentions_fixture(link.get_text(" ", strip=True), home_team, away_team):
            return urljoin(base_url, link["href"])
    return None


def parse_match_text(html: str) -> Dict[str, Optional[str]]:
    """
    Pull a score and status out of a match page by text search.

    Class names on the mirror are obfuscated, so this reads the visible
    text: the first "d - d" is the score, the first status keyword wins.
    Team names come from the <h1> header when it splits into two sides.
    """
    soup = BeautifulSoup(html, "lxml")
    text = soup.get_text(" ", strip=True)

    score_match = SCORE_PATTERN.search(text)
    status_match = STATUS_PATTERN.search(text)

    home = away = None
    header = soup.find("h1")
    if header:
        parts = HEADER_SPLIT.split(header.get_text(" ", strip=True), maxsplit=1)
        if len(parts) == 2:
            home, away = parts[0].strip(), parts[1].strip()

    return {
        "home": home,
        "away": away,
        "score": f"{score_match.group(1)}-{score_match.group(2)}" if score_match else "?",
        "status": status_match.group(0) if status_match else "Unknown",
    }


class LiveScoreSource:
    """Searches the livescores.com mirror; the main site blocks automation."""

    name = "LiveScore"

    def __init__(self, base_url: str = LIVESCORE_BASE_URL, wait_seconds: int = 10):
        self.base_url = base_url
        self.wait_seconds = wait_seconds

    def find_match(
        self,
        home_team: str,
        away_team: str,
        browser: Optional[BrowserSession] = None,
    ) -> Optional[MatchObservation]:
        logger.info(f"[LiveScore] Searching for {home_team} vs {away_team}...")
        try:
            with borrowed_driver(browser, self.name) as driver:
                html = self._open_match_page(driver, home_team, away_team)
        except TimeoutException:
            logger.error(f"[LiveScore] Timeout while searching {home_team} vs {away_team}")
            return None
        except WebDriverException as e:
            logger.error(f"[LiveScore] WebDriver error: {e}")
            return None
        except Exception as e:
            logger.error(f"[LiveScore] Scrape failed: {e}")
            return None

        if html is None:
            logger.warning("[LiveScore] No match link found in search results")
            return None

        details = parse_match_text(html)
        logger.info(f"[LiveScore] Found: {details['home']} vs {details['away']} -> {details['score']}")

        # The link was chosen because its text names both teams, so the
        # requested names stand in when the header cannot be split.
        return MatchObservation(
            source=self.name,
            home_team=details["home"] or home_team,
            away_team=details["away"] or away_team,
            status_text=f"LiveScore: {details['score']} ({details['status']})",
        )

    def _open_match_page(self, driver, home_team: str, away_team: str) -> Optional[str]:
        wait = WebDriverWait(driver, self.wait_seconds)

        driver.get(f"{self.base_url}/search/?q={quote(home_team)}")
        wait.until(EC.presence_of_element_located((By.TAG_NAME, "body")))

        link = find_match_link(driver.page_source, home_team, away_team, self.base_url)
        if not link:
            return None

        driver.get(link)
        wait.until(EC.presence_of_element_located((By.TAG_NAME, "body")))
        return driver.page_source
