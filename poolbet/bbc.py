"""BBC Sport result source (plain HTTP, no browser needed)."""
import logging
from typing import Dict, Optional
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup

from .browser import BrowserSession
from .config import BBC_SEARCH_URL, PAGE_LOAD_TIMEOUT_SECONDS, USER_AGENT
from .matching import compact_name
from .models import MatchObservation

logger = logging.getLogger(__name__)

HOME_NAME = '[data-testid="home-team-name"], .HomeTeam .DesktopValue, [class*="StyledTeam-HomeTeam"] [class*="DesktopValue"]'
AWAY_NAME = '[data-testid="away-team-name"], .AwayTeam .DesktopValue, [class*="StyledTeam-AwayTeam"] [class*="DesktopValue"]'
HOME_SCORE = '.HomeScore, [data-testid="score"] [class*="HomeScore"]'
AWAY_SCORE = '.AwayScore, [data-testid="score"] [class*="AwayScore"]'
STATUS = '[class*="StyledPeriod"], [class*="MatchProgressWrapper"]'


def find_report_link(html: str, home_team: str, away_team: str, base_url: str = BBC_SEARCH_URL) -> Optional[str]:
    """First football link in the search results mentioning either team.

    Fixture lists and league tables also live under /sport/football/ and
    are skipped.
    """
    soup = BeautifulSoup(html, "lxml")
    home, away = compact_name(home_team), compact_name(away_team)

    for link in soup.select('a[href*="/sport/football/"]'):
        href = link["href"].lower()
        if "scores-fixtures" in href or "tables" in href:
            continue
        text = compact_name(link.get_text(" ", strip=True))
        if (home and home in text) or (away and away in text):
            return urljoin(base_url, link["href"])
    return None


def parse_report_page(html: str) -> Optional[Dict[str, str]]:
    """Extract teams, score and period from a BBC match page scoreboard."""
    soup = BeautifulSoup(html, "lxml")

    home_el = soup.select_one(HOME_NAME)
    away_el = soup.select_one(AWAY_NAME)
    home_score_el = soup.select_one(HOME_SCORE)
    away_score_el = soup.select_one(AWAY_SCORE)
    status_el = soup.select_one(STATUS)

    if not home_el or not away_el or not home_score_el or not away_score_el:
        return None

    return {
        "home": home_el.get_text(strip=True),
        "away": away_el.get_text(strip=True),
        "score": f"{home_score_el.get_text(strip=True)}-{away_score_el.get_text(strip=True)}",
        "status": status_el.get_text(" ", strip=True) if status_el else "Unknown",
    }


class BBCSource:
    """Searches BBC Sport and reads the scoreboard of the first match report."""

    name = "BBC Sport"

    def __init__(self, search_url: str = BBC_SEARCH_URL, timeout: float = PAGE_LOAD_TIMEOUT_SECONDS):
        self.search_url = search_url
        self.timeout = timeout

    def find_match(
        self,
        home_team: str,
        away_team: str,
        browser: Optional[BrowserSession] = None,
    ) -> Optional[MatchObservation]:
        # BBC pages are server-rendered; a shared browser is accepted but not used.
        logger.info(f"[BBC] Searching for {home_team} vs {away_team}...")
        session = requests.Session()
        session.headers.update({"User-Agent": USER_AGENT})
        try:
            resp = session.get(
                self.search_url,
                params={"q": f"{home_team} {away_team}", "filter": "sport"},
                timeout=self.timeout,
            )
            resp.raise_for_status()

            link = find_report_link(resp.text, home_team, away_team, self.search_url)
            if not link:
                logger.warning("[BBC] No match report found in search")
                return None

            resp = session.get(link, timeout=self.timeout)
            resp.raise_for_status()
            details = parse_report_page(resp.text)
        except requests.exceptions.Timeout:
            logger.error(f"[BBC] Request timed out after {self.timeout} seconds")
            return None
        except requests.exceptions.RequestException as e:
            logger.error(f"[BBC] Request failed: {e}")
            return None
        except Exception as e:
            logger.error(f"[BBC] Scrape failed: {e}")
            return None
        finally:
            session.close()

        if not details:
            logger.warning("[BBC] Match report page structure mismatch")
            return None

        logger.info(f"[BBC] Found: {details['home']} {details['score']} {details['away']} ({details['status']})")
        return MatchObservation(
            source=self.name,
            home_team=details["home"],
            away_team=details["away"],
            status_text=f"BBC: {details['score']} ({details['status']})",
        )
