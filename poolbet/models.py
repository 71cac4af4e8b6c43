"""Data models for the resolution pipeline."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


# Event lifecycle
SCHEDULED = "SCHEDULED"
IN_PLAY = "IN_PLAY"
AWAITING_RESULTS = "AWAITING_RESULTS"
FINISHED = "FINISHED"

# Market lifecycle
OPEN = "OPEN"
LOCKED = "LOCKED"
RESULTED = "RESULTED"

# Bet statuses
PENDING = "PENDING"
WON = "WON"
LOST = "LOST"
VOID = "VOID"


@dataclass
class Event:
    """Represents a real-world fixture that markets are attached to."""
    id: Optional[int]
    external_id: str
    home_team: str
    away_team: str
    start_time: datetime
    projected_end: datetime
    sport: str = "football"
    status: str = SCHEDULED
    updated_at: Optional[datetime] = None


@dataclass
class Market:
    """A single bettable question on an event."""
    id: Optional[int]
    event_id: int
    name: str
    status: str = OPEN
    winning_outcome: Optional[str] = None


@dataclass
class Bet:
    """A stake placed by a user on one outcome of a market."""
    id: Optional[int]
    market_id: int
    user_id: str
    outcome: str
    stake: float
    status: str = PENDING
    payout: Optional[float] = None


@dataclass
class Wallet:
    """A user's balance."""
    user_id: str
    balance: float


@dataclass
class MatchObservation:
    """What one data source saw for a fixture.

    Team names are kept as the source spells them, they are checked
    against the requested pair before the observation is trusted.
    """
    source: str
    home_team: str
    away_team: str
    status_text: str  # e.g. "Flashscore: 2-1 (Finished)"
    sport: str = "football"


@dataclass
class ConsensusResult:
    """The reconciled verdict for a fixture. Never persisted."""
    home_team: str
    away_team: str
    score: str
    is_finished: bool
    votes: int
    total_sources: int
    sport: str = "football"

    @property
    def summary(self) -> str:
        """Provenance line handed to outcome determination and the logs."""
        return f"Consensus: {self.score} (Votes: {self.votes}/{self.total_sources})"


@dataclass
class MarketResult:
    """Winning outcome for one market, or VOID."""
    market_name: str
    winning_outcome: str


@dataclass
class SettlementDecision:
    """Outcome determination response for an event."""
    summary: str
    results: List[MarketResult] = field(default_factory=list)


@dataclass
class MarketTemplate:
    """A generated market: a name and its valid outcomes."""
    name: str
    outcomes: List[str] = field(default_factory=list)
