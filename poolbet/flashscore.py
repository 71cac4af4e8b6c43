"""Flashscore result source (Selenium, search-driven)."""
import logging
from typing import Dict, Optional

from bs4 import BeautifulSoup
from selenium.common.exceptions import NoSuchElementException, TimeoutException, WebDriverException
from selenium.webdriver.common.by import By
from selenium.webdriver.common.keys import Keys
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from .browser import BrowserSession, borrowed_driver
from .config import FLASHSCORE_BASE_URL
from .matching import mentions_fixture
from .models import MatchObservation

logger = logging.getLogger(__name__)


def parse_match_page(html: str) -> Optional[Dict[str, str]]:
    """
    Extract teams, score and status from a Flashscore match detail page.

    Returns:
        Dict with home, away, score and status, or None if the page does not
        look like a match page.
    """
    soup = BeautifulSoup(html, "lxml")

    home_el = soup.select_one(".duelParticipant__home .participant__participantName")
    away_el = soup.select_one(".duelParticipant__away .participant__participantName")
    score_el = soup.select_one(".detailScore__wrapper")
    status_el = soup.select_one(".fixedHeaderDetail__status, .detailScore__status")

    if not home_el or not away_el or not score_el:
        return None

    return {
        "home": home_el.get_text(strip=True),
        "away": away_el.get_text(strip=True),
        "score": score_el.get_text(strip=True) or "?",
        "status": status_el.get_text(strip=True) if status_el else "Unknown",
    }


class FlashscoreSource:
    """Finds a fixture through the Flashscore search box and reads its detail page."""

    name = "Flashscore"

    def __init__(self, base_url: str = FLASHSCORE_BASE_URL, wait_seconds: int = 10):
        self.base_url = base_url
        self.wait_seconds = wait_seconds

    def find_match(
        self,
        home_team: str,
        away_team: str,
        browser: Optional[BrowserSession] = None,
    ) -> Optional[MatchObservation]:
        logger.info(f"[Flashscore] Searching for {home_team} vs {away_team}...")
        try:
            with borrowed_driver(browser, self.name) as driver:
                html = self._open_match_page(driver, home_team, away_team)
        except TimeoutException:
            logger.error(f"[Flashscore] Timeout while searching {home_team} vs {away_team}")
            return None
        except WebDriverException as e:
            logger.error(f"[Flashscore] WebDriver error: {e}")
            return None
        except Exception as e:
            logger.error(f"[Flashscore] Scrape failed: {e}")
            return None

        if html is None:
            logger.warning(f"[Flashscore] No matching search results for {home_team} vs {away_team}")
            return None

        details = parse_match_page(html)
        if not details:
            logger.warning("[Flashscore] Match page structure mismatch")
            return None

        logger.info(f"[Flashscore] Found: {details['home']} {details['score']} {details['away']}")
        return MatchObservation(
            source=self.name,
            home_team=details["home"],
            away_team=details["away"],
            status_text=f"Flashscore: {details['score']} ({details['status']})",
        )

    def _open_match_page(self, driver, home_team: str, away_team: str) -> Optional[str]:
        """Run the search and click through to the match. Returns page HTML or None."""
        wait = WebDriverWait(driver, self.wait_seconds)

        driver.get(self.base_url)
        wait.until(EC.presence_of_element_located((By.TAG_NAME, "body")))

        try:
            driver.find_element(By.CSS_SELECTOR, "#search-window").click()
        except NoSuchElementException:
            driver.find_element(By.CSS_SELECTOR, ".searchIcon").click()

        search_input = wait.until(
            EC.presence_of_element_located((By.CSS_SELECTOR, ".searchInput__input"))
        )
        search_input.send_keys(f"{home_team} {away_team}", Keys.ENTER)

        wait.until(EC.presence_of_element_located((By.CSS_SELECTOR, ".searchResult")))

        for result in driver.find_elements(By.CSS_SELECTOR, ".searchResult"):
            if mentions_fixture(result.text, home_team, away_team):
                result.click()
                wait.until(
                    EC.presence_of_element_located((By.CSS_SELECTOR, ".duelParticipant__home"))
                )
                return driver.page_source

        return None
