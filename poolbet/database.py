"""Database connection and operations for events, markets, bets and wallets."""
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, List, Optional

from .config import DB_PATH, DEFAULT_MATCH_MINUTES
from .matching import make_external_id
from .models import (
    AWAITING_RESULTS,
    FINISHED,
    IN_PLAY,
    LOCKED,
    OPEN,
    PENDING,
    RESULTED,
    SCHEDULED,
    LOST,
    Bet,
    Event,
    Market,
    Wallet,
)


class WalletNotFoundError(LookupError):
    """Raised when a credit targets a user without a wallet."""


def get_connection(db_path: Path = DB_PATH) -> sqlite3.Connection:
    """Create a database connection with row factory enabled."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for database transactions."""
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def init_database(conn: sqlite3.Connection) -> None:
    """Initialize the database schema."""
    conn.executescript("""
        -- Real-world fixtures
        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY,
            external_id TEXT UNIQUE NOT NULL,
            home_team TEXT NOT NULL,
            away_team TEXT NOT NULL,
            start_time TEXT NOT NULL,
            projected_end TEXT NOT NULL,
            sport TEXT NOT NULL DEFAULT 'football',
            status TEXT NOT NULL DEFAULT 'SCHEDULED',
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT
        );

        -- Bettable questions on a fixture
        CREATE TABLE IF NOT EXISTS markets (
            id INTEGER PRIMARY KEY,
            event_id INTEGER NOT NULL REFERENCES events(id),
            name TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'OPEN',
            winning_outcome TEXT,
            resulted_at TEXT,
            UNIQUE(event_id, name),
            CHECK ((status = 'RESULTED') = (winning_outcome IS NOT NULL))
        );

        -- User balances
        CREATE TABLE IF NOT EXISTS wallets (
            user_id TEXT PRIMARY KEY,
            balance REAL NOT NULL DEFAULT 0
        );

        -- Pool bets (stake already taken from the wallet at placement)
        CREATE TABLE IF NOT EXISTS bets (
            id INTEGER PRIMARY KEY,
            market_id INTEGER NOT NULL REFERENCES markets(id),
            user_id TEXT NOT NULL,
            outcome TEXT NOT NULL,
            stake REAL NOT NULL CHECK (stake > 0),
            status TEXT NOT NULL DEFAULT 'PENDING',
            payout REAL,
            placed_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            settled_at TEXT
        );

        -- Indexes
        CREATE INDEX IF NOT EXISTS idx_events_status ON events(status);
        CREATE INDEX IF NOT EXISTS idx_markets_event ON markets(event_id);
        CREATE INDEX IF NOT EXISTS idx_bets_market ON bets(market_id, status);
    """)
    conn.commit()


# Time helpers
def to_db_time(value: datetime) -> str:
    """Serialize a datetime as a UTC ISO string. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        external_id=row["external_id"],
        home_team=row["home_team"],
        away_team=row["away_team"],
        start_time=from_db_time(row["start_time"]),
        projected_end=from_db_time(row["projected_end"]),
        sport=row["sport"],
        status=row["status"],
        updated_at=from_db_time(row["updated_at"]),
    )


def _row_to_market(row: sqlite3.Row) -> Market:
    return Market(
        id=row["id"],
        event_id=row["event_id"],
        name=row["name"],
        status=row["status"],
        winning_outcome=row["winning_outcome"],
    )


def _row_to_bet(row: sqlite3.Row) -> Bet:
    return Bet(
        id=row["id"],
        market_id=row["market_id"],
        user_id=row["user_id"],
        outcome=row["outcome"],
        stake=row["stake"],
        status=row["status"],
        payout=row["payout"],
    )


# Event operations
def upsert_event(
    conn: sqlite3.Connection,
    home_team: str,
    away_team: str,
    start_time: datetime,
    projected_end: Optional[datetime] = None,
    sport: str = "football",
) -> int:
    """Get existing event or create new one, returning ID.

    Keyed on the external id, so repeated ingestion runs never create a
    second row and never reset the status of an event already in play.
    """
    external_id = make_external_id(home_team, away_team, start_time)
    if projected_end is None:
        projected_end = start_time + timedelta(minutes=DEFAULT_MATCH_MINUTES)

    conn.execute(
        """
        INSERT INTO events (external_id, home_team, away_team, start_time, projected_end, sport, status, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(external_id) DO NOTHING
        """,
        (
            external_id,
            home_team,
            away_team,
            to_db_time(start_time),
            to_db_time(projected_end),
            sport,
            SCHEDULED,
            to_db_time(utcnow()),
        ),
    )
    row = conn.execute("SELECT id FROM events WHERE external_id = ?", (external_id,)).fetchone()
    return row["id"]


def get_event(conn: sqlite3.Connection, event_id: int) -> Optional[Event]:
    """Get an event by its ID."""
    row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
    return _row_to_event(row) if row else None


def get_event_by_external_id(conn: sqlite3.Connection, external_id: str) -> Optional[Event]:
    row = conn.execute("SELECT * FROM events WHERE external_id = ?", (external_id,)).fetchone()
    return _row_to_event(row) if row else None


def list_events(
    conn: sqlite3.Connection,
    status: str,
    sport: Optional[str] = None,
    newest_first: bool = False,
    limit: Optional[int] = None,
) -> List[Event]:
    """Get events with a given status, optionally for one sport."""
    query = "SELECT * FROM events WHERE status = ?"
    params: list = [status]
    if sport and sport != "all":
        query += " AND sport = ?"
        params.append(sport)
    query += " ORDER BY start_time DESC" if newest_first else " ORDER BY start_time ASC"
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]


def get_events_due_to_start(conn: sqlite3.Connection, now: datetime) -> List[Event]:
    """SCHEDULED events whose start time has passed."""
    cursor = conn.execute(
        "SELECT * FROM events WHERE status = ? AND start_time <= ? ORDER BY start_time",
        (SCHEDULED, to_db_time(now)),
    )
    return [_row_to_event(row) for row in cursor.fetchall()]


def get_events_due_to_end(conn: sqlite3.Connection, now: datetime) -> List[Event]:
    """IN_PLAY events whose projected end has passed."""
    cursor = conn.execute(
        "SELECT * FROM events WHERE status = ? AND projected_end <= ? ORDER BY projected_end",
        (IN_PLAY, to_db_time(now)),
    )
    return [_row_to_event(row) for row in cursor.fetchall()]


def get_result_candidates(conn: sqlite3.Connection, limit: int = 50) -> List[Event]:
    """Events that still need resulting.

    AWAITING_RESULTS events with unresolved markets (or no markets at all),
    plus FINISHED events left with unresolved markets, most recently
    updated first.
    """
    cursor = conn.execute(
        """
        SELECT e.* FROM events e
        WHERE e.status IN (?, ?)
        AND (
            EXISTS (SELECT 1 FROM markets m WHERE m.event_id = e.id AND m.status != ?)
            OR (e.status = ? AND NOT EXISTS (SELECT 1 FROM markets m WHERE m.event_id = e.id))
        )
        ORDER BY e.updated_at DESC
        LIMIT ?
        """,
        (AWAITING_RESULTS, FINISHED, RESULTED, AWAITING_RESULTS, limit),
    )
    return [_row_to_event(row) for row in cursor.fetchall()]


def set_event_status(
    conn: sqlite3.Connection,
    event_id: int,
    status: str,
    expected: Optional[str] = None,
) -> bool:
    """Move an event to a new status.

    With `expected`, the update only applies if the event is still in that
    status, which keeps concurrent or repeated sweeps from skipping stages.
    """
    query = "UPDATE events SET status = ?, updated_at = ? WHERE id = ?"
    params: list = [status, to_db_time(utcnow()), event_id]
    if expected is not None:
        query += " AND status = ?"
        params.append(expected)
    return conn.execute(query, params).rowcount > 0


# Market operations
def add_market(conn: sqlite3.Connection, event_id: int, name: str) -> int:
    """Get existing market by name or create new one, returning ID."""
    conn.execute(
        "INSERT OR IGNORE INTO markets (event_id, name, status) VALUES (?, ?, ?)",
        (event_id, name, OPEN),
    )
    row = conn.execute(
        "SELECT id FROM markets WHERE event_id = ? AND name = ?", (event_id, name)
    ).fetchone()
    return row["id"]


def get_market(conn: sqlite3.Connection, market_id: int) -> Optional[Market]:
    row = conn.execute("SELECT * FROM markets WHERE id = ?", (market_id,)).fetchone()
    return _row_to_market(row) if row else None


def get_markets_for_event(conn: sqlite3.Connection, event_id: int) -> List[Market]:
    """Get all markets of an event."""
    cursor = conn.execute("SELECT * FROM markets WHERE event_id = ? ORDER BY id", (event_id,))
    return [_row_to_market(row) for row in cursor.fetchall()]


def lock_event_markets(conn: sqlite3.Connection, event_id: int) -> int:
    """Lock every OPEN market of an event, returning how many changed."""
    cursor = conn.execute(
        "UPDATE markets SET status = ? WHERE event_id = ? AND status = ?",
        (LOCKED, event_id, OPEN),
    )
    return cursor.rowcount


def resolve_market(conn: sqlite3.Connection, market_id: int, winning_outcome: str) -> bool:
    """Record the winning outcome. A RESULTED market is never touched again."""
    cursor = conn.execute(
        """
        UPDATE markets SET status = ?, winning_outcome = ?, resulted_at = ?
        WHERE id = ? AND status != ?
        """,
        (RESULTED, winning_outcome, to_db_time(utcnow()), market_id, RESULTED),
    )
    return cursor.rowcount > 0


# Bet operations
def insert_bet(
    conn: sqlite3.Connection,
    market_id: int,
    user_id: str,
    outcome: str,
    stake: float,
) -> int:
    """Record a placed bet. Stake checks and wallet debits happen upstream."""
    cursor = conn.execute(
        "INSERT INTO bets (market_id, user_id, outcome, stake, status) VALUES (?, ?, ?, ?, ?)",
        (market_id, user_id, outcome, stake, PENDING),
    )
    return cursor.lastrowid


def get_pending_bets(conn: sqlite3.Connection, market_id: int) -> List[Bet]:
    cursor = conn.execute(
        "SELECT * FROM bets WHERE market_id = ? AND status = ? ORDER BY id",
        (market_id, PENDING),
    )
    return [_row_to_bet(row) for row in cursor.fetchall()]


def get_bets_for_market(conn: sqlite3.Connection, market_id: int) -> List[Bet]:
    cursor = conn.execute("SELECT * FROM bets WHERE market_id = ? ORDER BY id", (market_id,))
    return [_row_to_bet(row) for row in cursor.fetchall()]


def set_bet_result(conn: sqlite3.Connection, bet_id: int, status: str, payout: float) -> bool:
    """Settle one PENDING bet. Returns False if it was already settled."""
    cursor = conn.execute(
        "UPDATE bets SET status = ?, payout = ?, settled_at = ? WHERE id = ? AND status = ?",
        (status, payout, to_db_time(utcnow()), bet_id, PENDING),
    )
    return cursor.rowcount > 0


def mark_bets_lost(conn: sqlite3.Connection, market_id: int, winning_outcome: str) -> int:
    """Mark every PENDING bet not on the winning outcome as LOST with no payout."""
    cursor = conn.execute(
        """
        UPDATE bets SET status = ?, payout = 0, settled_at = ?
        WHERE market_id = ? AND status = ? AND outcome != ?
        """,
        (LOST, to_db_time(utcnow()), market_id, PENDING, winning_outcome),
    )
    return cursor.rowcount


# Wallet operations
def create_wallet(conn: sqlite3.Connection, user_id: str, balance: float = 0.0) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO wallets (user_id, balance) VALUES (?, ?)",
        (user_id, balance),
    )


def get_wallet(conn: sqlite3.Connection, user_id: str) -> Optional[Wallet]:
    row = conn.execute("SELECT * FROM wallets WHERE user_id = ?", (user_id,)).fetchone()
    if row:
        return Wallet(user_id=row["user_id"], balance=row["balance"])
    return None


def credit_wallet(conn: sqlite3.Connection, user_id: str, amount: float) -> None:
    """Add amount to a user's balance."""
    cursor = conn.execute(
        "UPDATE wallets SET balance = balance + ? WHERE user_id = ?",
        (amount, user_id),
    )
    if cursor.rowcount == 0:
        raise WalletNotFoundError(f"Wallet not found for user {user_id}")
