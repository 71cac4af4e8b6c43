"""Consensus oracle: reconcile independent, unreliable result sources."""
import logging
import re
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Tuple

from .browser import BrowserSession
from .config import CONSENSUS_TIE_BREAK, FINISHED_MARKERS, SOURCE_TIMEOUT_SECONDS
from .matching import fixture_matches
from .models import ConsensusResult, MatchObservation
from .sources import DataSource, build_sources

logger = logging.getLogger(__name__)

SCORE_TOKEN = re.compile(r"(\d+)\s*-\s*(\d+)")

TIE_BREAK_POLICIES = ("first_seen", "reject")


def _finished_pattern(markers: List[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(m) for m in sorted(markers, key=len, reverse=True))
    return re.compile(rf"(?<![A-Za-z])(?:{alternatives})(?![A-Za-z])", re.IGNORECASE)


FINISHED_PATTERN = _finished_pattern(FINISHED_MARKERS)


def extract_score(status_text: str) -> Optional[str]:
    """Return the first "d-d" score token in a status string, normalized."""
    if not status_text:
        return None
    match = SCORE_TOKEN.search(status_text)
    if not match:
        return None
    return f"{int(match.group(1))}-{int(match.group(2))}"


def is_finished_status(status_text: str, pattern: re.Pattern = FINISHED_PATTERN) -> bool:
    """Does the status text say the match is over (FT, AET, pens, finished...)?"""
    return bool(status_text) and pattern.search(status_text) is not None


def tally_scores(observations: List[MatchObservation]) -> Dict[str, int]:
    """Votes per score. Dict order is the order scores were first seen."""
    counts: Dict[str, int] = {}
    for obs in observations:
        score = extract_score(obs.status_text)
        if score is not None:
            counts[score] = counts.get(score, 0) + 1
    return counts


def pick_majority(counts: Dict[str, int], tie_break: str = "first_seen") -> Optional[Tuple[str, int]]:
    """
    Pick the score with the most votes.

    Args:
        counts: Votes per score, in first-seen order
        tie_break: "first_seen" keeps the earliest of the tied leaders,
            "reject" returns None when the lead is shared

    Returns:
        (score, votes) or None
    """
    if not counts:
        return None
    max_votes = max(counts.values())
    leaders = [score for score, votes in counts.items() if votes == max_votes]
    if len(leaders) > 1 and tie_break == "reject":
        return None
    return leaders[0], max_votes


class ConsensusEngine:
    """Asks every source about a fixture and majority-votes the final score."""

    def __init__(
        self,
        sources: List[DataSource] = None,
        timeout: float = SOURCE_TIMEOUT_SECONDS,
        tie_break: str = CONSENSUS_TIE_BREAK,
        finished_markers: List[str] = None,
    ):
        if tie_break not in TIE_BREAK_POLICIES:
            raise ValueError(f"Unknown tie-break policy '{tie_break}', expected one of {TIE_BREAK_POLICIES}")
        self.sources = build_sources() if sources is None else sources
        self.timeout = timeout
        self.tie_break = tie_break
        self.finished_pattern = (
            _finished_pattern(finished_markers) if finished_markers else FINISHED_PATTERN
        )

    def get_consensus(
        self,
        home_team: str,
        away_team: str,
        browser: Optional[BrowserSession] = None,
    ) -> Optional[ConsensusResult]:
        """Gather observations and reconcile them. None means no verdict yet."""
        logger.info(f"[Oracle] Gathering consensus for {home_team} vs {away_team}...")
        observations = self.gather(home_team, away_team, browser)
        return self.reconcile(home_team, away_team, observations)

    def gather(
        self,
        home_team: str,
        away_team: str,
        browser: Optional[BrowserSession] = None,
    ) -> List[MatchObservation]:
        """
        Query all sources in parallel and wait at most `timeout` seconds.

        Sources still running at the deadline are abandoned. Their browser,
        if they were using the shared session, is quit so the stuck call
        unwinds. Observations come back in source configuration order.
        """
        if not self.sources:
            return []

        executor = ThreadPoolExecutor(max_workers=len(self.sources), thread_name_prefix="oracle")
        try:
            futures = {
                executor.submit(self._ask, source, home_team, away_team, browser): source
                for source in self.sources
            }
            done, not_done = wait(futures, timeout=self.timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        for future in not_done:
            source = futures[future]
            logger.warning(f"[Oracle] Source {source.name} timed out after {self.timeout:.0f}s, ignoring it")
            if browser is not None:
                browser.release(source.name)

        observations = []
        for future in futures:
            if future in done:
                observation = future.result()
                if observation is not None:
                    observations.append(observation)
        return observations

    @staticmethod
    def _ask(
        source: DataSource,
        home_team: str,
        away_team: str,
        browser: Optional[BrowserSession],
    ) -> Optional[MatchObservation]:
        try:
            return source.find_match(home_team, away_team, browser)
        except Exception as e:
            logger.error(f"[Oracle] Source {source.name} failed: {e}", exc_info=True)
            return None

    def verify(
        self,
        home_team: str,
        away_team: str,
        observations: List[MatchObservation],
    ) -> List[MatchObservation]:
        """Drop observations that describe some other fixture."""
        valid = []
        for obs in observations:
            if fixture_matches(home_team, away_team, obs.home_team, obs.away_team):
                valid.append(obs)
            else:
                logger.warning(
                    f"[Oracle] {obs.source} returned mismatching results. "
                    f"Expected: {home_team} vs {away_team}, Found: {obs.home_team} vs {obs.away_team}"
                )
        return valid

    def reconcile(
        self,
        home_team: str,
        away_team: str,
        observations: List[MatchObservation],
    ) -> Optional[ConsensusResult]:
        """
        Turn raw observations into a verdict.

        A verdict needs a score majority among the verified observations and
        at least one of them reporting the match as finished. A majority
        alone is not enough: scores are visible while the match is running.
        """
        valid = self.verify(home_team, away_team, observations)
        if not valid:
            logger.warning("[Oracle] No data found from any source.")
            return None

        winner = pick_majority(tally_scores(valid), self.tie_break)
        if winner is None:
            logger.warning("[Oracle] No consensus reached.")
            return None
        score, votes = winner

        if not any(is_finished_status(obs.status_text, self.finished_pattern) for obs in valid):
            logger.info(
                f"[Oracle] {score} leads with {votes}/{len(valid)} votes but no source reports "
                f"{home_team} vs {away_team} as finished yet."
            )
            return None

        result = ConsensusResult(
            home_team=home_team,
            away_team=away_team,
            score=score,
            is_finished=True,
            votes=votes,
            total_sources=len(valid),
            sport=valid[0].sport,
        )
        logger.info(f"[Oracle] Consensus Reached: {score} with {votes}/{len(valid)} votes.")
        return result
