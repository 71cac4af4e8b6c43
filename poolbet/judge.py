"""Outcome determination and market generation through an OpenRouter-hosted model."""
import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from .config import (
    APP_URL,
    LLM_TIMEOUT_SECONDS,
    OPENROUTER_API_KEY,
    OPENROUTER_API_URL,
    OPENROUTER_MODEL,
    VOID_OUTCOME,
)
from .models import ConsensusResult, MarketResult, MarketTemplate, SettlementDecision

logger = logging.getLogger(__name__)

CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)

SETTLE_PROMPT = """You are the judge for a pool betting system.

Event: {home} vs {away}
Sport: {sport}
Start time: {start_time}
Info: {summary}

Markets to settle:
{markets}

Rules:
1. The Info line is a verified consensus of several result sources. Treat its score as the final result.
2. Give the winning outcome for every market listed above, using the market name exactly as written.
3. Answer "{void}" only when the match was abandoned or cancelled, or the score is missing.

Return ONLY valid JSON:
{{
    "matchParams": "final score or short summary",
    "results": [
        {{"marketName": "Match Result", "winningOutcome": "Home Win"}},
        {{"marketName": "Total Goals", "winningOutcome": "Over 2.5"}}
    ]
}}
"""

MARKETS_PROMPT = """You are a market maker for a pool betting system where winners share the pot.

Event: {home} vs {away}
Sport: {sport}
Start time: {start_time}

Generate 3 to 5 betting markets suited to this sport. Pools have no odds:
give each market a name and its complete list of possible outcomes.

Return ONLY valid JSON:
{{
    "sport": "string",
    "markets": [
        {{"name": "Match Result", "outcomes": ["Home Win", "Draw", "Away Win"]}},
        {{"name": "Total Goals", "outcomes": ["Over 2.5", "Under 2.5"]}}
    ]
}}
"""


def strip_code_fences(content: Optional[str]) -> str:
    """Remove ```json fences models like to wrap their answers in."""
    return CODE_FENCE.sub("", content or "").strip()


def _load_object(content: Optional[str]) -> Optional[Dict[str, Any]]:
    cleaned = strip_code_fences(content)
    if not cleaned:
        return None
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning(f"Model returned invalid JSON: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Model returned {type(data).__name__}, expected an object")
        return None
    return data


def parse_settlement(content: Optional[str]) -> SettlementDecision:
    """
    Parse a settlement answer.

    Malformed answers give a decision with no results, which callers treat
    as "nothing to write". Entries without a market name or outcome are
    dropped individually.
    """
    data = _load_object(content)
    if data is None:
        return SettlementDecision(summary="Malformed response")

    raw_results = data.get("results")
    if not isinstance(raw_results, list):
        raw_results = []

    results = []
    for item in raw_results:
        if not isinstance(item, dict):
            continue
        name = item.get("marketName")
        outcome = item.get("winningOutcome")
        if not isinstance(name, str) or not isinstance(outcome, str):
            continue
        if not name.strip() or not outcome.strip():
            continue
        results.append(MarketResult(market_name=name.strip(), winning_outcome=outcome.strip()))

    summary = data.get("matchParams")
    return SettlementDecision(summary=str(summary) if summary is not None else "", results=results)


def parse_markets(content: Optional[str]) -> List[MarketTemplate]:
    """Parse generated markets. A market needs a name and at least two outcomes."""
    data = _load_object(content)
    if data is None:
        return []

    raw_markets = data.get("markets")
    if not isinstance(raw_markets, list):
        return []

    markets = []
    seen = set()
    for item in raw_markets:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        outcomes = item.get("outcomes")
        if not isinstance(name, str) or not name.strip() or not isinstance(outcomes, list):
            continue
        outcomes = [str(o).strip() for o in outcomes if str(o).strip()]
        if len(outcomes) < 2 or name.strip() in seen:
            continue
        seen.add(name.strip())
        markets.append(MarketTemplate(name=name.strip(), outcomes=outcomes))
    return markets


class OutcomeJudge:
    """Client for the chat-completions model that settles and generates markets."""

    def __init__(
        self,
        api_key: str = OPENROUTER_API_KEY,
        api_url: str = OPENROUTER_API_URL,
        model: str = OPENROUTER_MODEL,
        timeout: float = LLM_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.timeout = timeout

    def _complete(self, prompt: str, title: str) -> str:
        """Send one user message and return the model's reply text."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": APP_URL,
            "X-Title": title,
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "response_format": {"type": "json_object"},
        }

        logger.debug(f"Making request to {self.api_url} with model {self.model}")
        response = requests.post(self.api_url, headers=headers, json=payload, timeout=self.timeout)
        response.raise_for_status()

        body = response.json()
        choices = body.get("choices") if isinstance(body, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            logger.warning(f"Unexpected completion body: {str(body)[:200]}")
            return ""
        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            logger.warning(f"Completion has no text content: {str(choices[0])[:200]}")
            return ""
        logger.debug(f"Raw model response: {content}")
        return content

    def settle_markets(
        self,
        consensus: ConsensusResult,
        market_names: List[str],
        start_time: Optional[datetime] = None,
    ) -> SettlementDecision:
        """
        Ask the model for the winning outcome of each market.

        Args:
            consensus: Verified result of the fixture
            market_names: Names of the markets still to be resulted
            start_time: Kick-off, passed along as context

        Returns:
            The parsed decision. Any failure, and a missing API key, give a
            decision with no results so nothing is written and the event is
            retried on a later sweep.
        """
        logger.info(
            f"Settling {len(market_names)} markets for {consensus.home_team} vs "
            f"{consensus.away_team} ({consensus.summary})"
        )
        if not self.api_key:
            logger.warning("OPENROUTER_API_KEY not set, returning an empty settlement")
            return SettlementDecision(summary="Mock Settle")

        prompt = SETTLE_PROMPT.format(
            home=consensus.home_team,
            away=consensus.away_team,
            sport=consensus.sport,
            start_time=start_time.isoformat() if start_time else "unknown",
            summary=consensus.summary,
            markets=json.dumps(market_names),
            void=VOID_OUTCOME,
        )
        try:
            content = self._complete(prompt, "Pool Betting Judge")
        except requests.exceptions.Timeout:
            logger.error(f"Settlement request timed out after {self.timeout} seconds")
            return SettlementDecision(summary="Error")
        except requests.exceptions.RequestException as e:
            logger.error(f"Settlement request failed: {e}")
            return SettlementDecision(summary="Error")
        except ValueError as e:
            logger.error(f"Settlement response was not JSON: {e}")
            return SettlementDecision(summary="Error")

        return parse_settlement(content)

    def generate_markets(
        self,
        home_team: str,
        away_team: str,
        sport: str = "football",
        start_time: Optional[datetime] = None,
    ) -> List[MarketTemplate]:
        """Propose markets for a new event. Returns [] on any failure."""
        logger.info(f"Generating markets for {home_team} vs {away_team}")
        if not self.api_key:
            logger.error("OPENROUTER_API_KEY not set. Please set it in your .env file.")
            return []

        prompt = MARKETS_PROMPT.format(
            home=home_team,
            away=away_team,
            sport=sport,
            start_time=start_time.isoformat() if start_time else "unknown",
        )
        try:
            content = self._complete(prompt, "Pool Betting Market Maker")
        except requests.exceptions.RequestException as e:
            logger.error(f"Market generation request failed: {e}")
            return []
        except ValueError as e:
            logger.error(f"Market generation response was not JSON: {e}")
            return []

        return parse_markets(content)
