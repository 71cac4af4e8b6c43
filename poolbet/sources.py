"""Data-source capability and the registry of available sources."""
import logging
from typing import Dict, List, Optional, Protocol

from .bbc import BBCSource
from .browser import BrowserSession
from .config import ORACLE_SOURCES
from .flashscore import FlashscoreSource
from .livescore import LiveScoreSource
from .models import MatchObservation
from .sofascore import SofaScoreSource

logger = logging.getLogger(__name__)


class DataSource(Protocol):
    """Anything that can look up a fixture and report what it saw.

    Implementations must not raise: any failure is logged and reported as
    None so one broken source never blocks the others.
    """

    name: str

    def find_match(
        self,
        home_team: str,
        away_team: str,
        browser: Optional[BrowserSession] = None,
    ) -> Optional[MatchObservation]: ...


SOURCE_TYPES: Dict[str, type] = {
    "flashscore": FlashscoreSource,
    "sofascore": SofaScoreSource,
    "livescore": LiveScoreSource,
    "bbc": BBCSource,
}


def build_sources(names: List[str] = None) -> List[DataSource]:
    """Instantiate the configured sources, in configuration order."""
    if names is None:
        names = ORACLE_SOURCES

    sources = []
    for name in names:
        source_type = SOURCE_TYPES.get(name.lower())
        if source_type is None:
            logger.warning(f"Unknown data source '{name}', skipping")
            continue
        sources.append(source_type())
    return sources
