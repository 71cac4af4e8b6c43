"""Lifecycle scheduler: periodic sweeps that lock, close and result events."""
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .browser import BrowserLaunchError, BrowserSession
from .config import (
    CLOSE_INTERVAL_SECONDS,
    DB_PATH,
    LOCK_INTERVAL_SECONDS,
    RESULT_BATCH_LIMIT,
    RESULT_INTERVAL_SECONDS,
)
from .database import (
    get_connection,
    get_events_due_to_end,
    get_events_due_to_start,
    get_markets_for_event,
    get_result_candidates,
    list_events,
    lock_event_markets,
    resolve_market,
    set_event_status,
    to_db_time,
    transaction,
    utcnow,
)
from .judge import OutcomeJudge
from .models import AWAITING_RESULTS, FINISHED, IN_PLAY, RESULTED, SCHEDULED, Event, Market, MarketResult
from .oracle import ConsensusEngine
from .settlement import settle_market

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], None]

TASKS = ("lock", "close", "result")


def lock_started_events(conn: sqlite3.Connection, now: datetime = None) -> Dict[str, int]:
    """
    Move SCHEDULED events whose start time has passed to IN_PLAY and lock
    their OPEN markets, one transaction per event.

    Returns:
        Stats dict with counts of events started and markets locked
    """
    now = now or utcnow()
    stats = {"events": 0, "markets": 0, "errors": 0}

    events = get_events_due_to_start(conn, now)
    if not events:
        return stats
    logger.info(f"Found {len(events)} events to lock")

    for event in events:
        try:
            with transaction(conn):
                if not set_event_status(conn, event.id, IN_PLAY, expected=SCHEDULED):
                    continue
                locked = lock_event_markets(conn, event.id)
            stats["events"] += 1
            stats["markets"] += locked
            logger.info(
                f"Locked {locked} markets for Event: {event.home_team} vs {event.away_team} "
                f"(Started at {event.start_time.isoformat()})"
            )
        except Exception as e:
            logger.error(f"Error locking event {event.id}: {e}", exc_info=True)
            stats["errors"] += 1

    return stats


def close_finished_play(conn: sqlite3.Connection, now: datetime = None) -> Dict[str, int]:
    """Move IN_PLAY events past their projected end to AWAITING_RESULTS."""
    now = now or utcnow()
    stats = {"events": 0, "errors": 0}

    events = get_events_due_to_end(conn, now)
    if not events:
        return stats
    logger.info(f"Found {len(events)} frozen live events. Moving to {AWAITING_RESULTS}.")

    for event in events:
        try:
            with transaction(conn):
                changed = set_event_status(conn, event.id, AWAITING_RESULTS, expected=IN_PLAY)
            if changed:
                stats["events"] += 1
        except Exception as e:
            logger.error(f"Error closing event {event.id}: {e}", exc_info=True)
            stats["errors"] += 1

    return stats


def match_results(markets: List[Market], results: List[MarketResult]) -> List[Tuple[Market, str]]:
    """
    Pair decided outcomes with the markets they name.

    Names are compared exactly first, then ignoring case and surrounding
    whitespace. Names that match no market are logged and dropped, and
    only the first answer for a market counts.
    """
    by_name = {m.name: m for m in markets}
    by_folded = {m.name.strip().casefold(): m for m in markets}

    pairs = []
    seen = set()
    for result in results:
        market = by_name.get(result.market_name) or by_folded.get(result.market_name.strip().casefold())
        if market is None:
            logger.warning(f"Ignoring result for unknown market '{result.market_name}'")
            continue
        if market.id in seen:
            logger.warning(f"Ignoring duplicate result for market '{market.name}'")
            continue
        seen.add(market.id)
        pairs.append((market, result.winning_outcome))
    return pairs


def resolve_event(
    conn: sqlite3.Connection,
    event: Event,
    engine: ConsensusEngine,
    judge: OutcomeJudge,
    browser: Optional[BrowserSession] = None,
) -> Dict[str, int]:
    """
    Try to result one candidate event.

    Nothing is written unless the oracle gives a finished verdict and the
    judge names at least one known market. The FINISHED status and the
    market outcomes are written together; bets are settled afterwards,
    market by market.
    """
    stats = {"finished": 0, "markets_resolved": 0, "bets_settled": 0, "inconclusive": 0, "errors": 0}

    markets = get_markets_for_event(conn, event.id)
    unresolved = [m for m in markets if m.status != RESULTED]
    if markets and not unresolved:
        return stats

    consensus = engine.get_consensus(event.home_team, event.away_team, browser)
    if consensus is None:
        logger.info(f"No verdict yet for {event.home_team} vs {event.away_team}, will retry")
        stats["inconclusive"] += 1
        return stats

    if not markets:
        with transaction(conn):
            if set_event_status(conn, event.id, FINISHED, expected=AWAITING_RESULTS):
                stats["finished"] += 1
        logger.info(f"Event {event.home_team} vs {event.away_team} finished ({consensus.summary}), no markets")
        return stats

    logger.info(f"Event Finished! Resulting markets for: {event.home_team} vs {event.away_team}")
    decision = judge.settle_markets(consensus, [m.name for m in unresolved], event.start_time)
    logger.info(f"Oracle decision: {decision.summary} ({len(decision.results)} results)")

    resolutions = match_results(unresolved, decision.results)
    if not resolutions:
        logger.warning(f"No usable results for {event.home_team} vs {event.away_team}, will retry")
        stats["inconclusive"] += 1
        return stats

    resolved = []
    with transaction(conn):
        if event.status != FINISHED and set_event_status(conn, event.id, FINISHED):
            stats["finished"] += 1
        for market, outcome in resolutions:
            if resolve_market(conn, market.id, outcome):
                resolved.append((market, outcome))
    stats["markets_resolved"] += len(resolved)

    for market, outcome in resolved:
        try:
            result = settle_market(conn, market.id, outcome)
            stats["bets_settled"] += result["won"] + result["lost"] + result["refunded"]
            stats["errors"] += result["errors"]
        except Exception as e:
            logger.error(f"Failed to settle bets for market {market.id}: {e}", exc_info=True)
            stats["errors"] += 1

    logger.info(f"Resulted {len(resolved)} markets for {event.home_team} vs {event.away_team}")
    return stats


def resolve_awaiting_events(
    conn: sqlite3.Connection,
    engine: ConsensusEngine,
    judge: OutcomeJudge,
    browser_factory: Callable = BrowserSession,
    limit: int = RESULT_BATCH_LIMIT,
) -> Dict[str, int]:
    """
    Result every candidate event, sharing one browser session for the batch.

    The session is only started when there is something to result, and is
    closed when the batch ends however it ends. If it cannot be started the
    batch is abandoned and retried on the next tick.
    """
    stats = {
        "candidates": 0,
        "finished": 0,
        "markets_resolved": 0,
        "bets_settled": 0,
        "inconclusive": 0,
        "errors": 0,
    }

    candidates = get_result_candidates(conn, limit)
    stats["candidates"] = len(candidates)
    if not candidates:
        return stats
    logger.info(f"Checking {len(candidates)} events for results")

    try:
        with browser_factory() as browser:
            for event in candidates:
                try:
                    event_stats = resolve_event(conn, event, engine, judge, browser)
                except Exception as e:
                    logger.error(f"Error resulting event {event.id}: {e}", exc_info=True)
                    stats["errors"] += 1
                    continue
                for key, value in event_stats.items():
                    stats[key] += value
    except BrowserLaunchError as e:
        logger.error(f"Could not start browser, aborting resulting batch: {e}")
        stats["errors"] += 1

    return stats


def event_payload(conn: sqlite3.Connection, event: Event) -> Dict[str, Any]:
    """Plain-dict view of an event and its markets for listeners."""
    return {
        "id": event.id,
        "external_id": event.external_id,
        "home_team": event.home_team,
        "away_team": event.away_team,
        "sport": event.sport,
        "status": event.status,
        "start_time": to_db_time(event.start_time),
        "projected_end": to_db_time(event.projected_end),
        "markets": [
            {"id": m.id, "name": m.name, "status": m.status, "winning_outcome": m.winning_outcome}
            for m in get_markets_for_event(conn, event.id)
        ],
    }


class LifecycleScheduler:
    """
    Runs the lock, close and result sweeps on their own timers.

    Each task has a non-blocking guard: a tick that fires while the previous
    run of the same task is still going is dropped with a warning. The
    guards live in this process only, so run a single scheduler per
    database.
    """

    def __init__(
        self,
        db_path: Path = DB_PATH,
        engine: ConsensusEngine = None,
        judge: OutcomeJudge = None,
        browser_factory: Callable = BrowserSession,
        intervals: Dict[str, float] = None,
    ):
        self.db_path = db_path
        self.engine = engine or ConsensusEngine()
        self.judge = judge or OutcomeJudge()
        self.browser_factory = browser_factory
        self.intervals = {
            "lock": LOCK_INTERVAL_SECONDS,
            "close": CLOSE_INTERVAL_SECONDS,
            "result": RESULT_INTERVAL_SECONDS,
        }
        if intervals:
            self.intervals.update(intervals)

        self._guards = {task: threading.Lock() for task in TASKS}
        self._listeners: List[Listener] = []
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def subscribe(self, listener: Listener) -> Listener:
        """Register a callback for {"type": "live" | "finished", "events": [...]} updates."""
        self._listeners.append(listener)
        return listener

    def _notify(self, conn: sqlite3.Connection, kind: str) -> None:
        if not self._listeners:
            return
        if kind == "live":
            events = list_events(conn, IN_PLAY, newest_first=True)
        else:
            events = list_events(conn, FINISHED, newest_first=True, limit=RESULT_BATCH_LIMIT)
        payload = {"type": kind, "events": [event_payload(conn, e) for e in events]}

        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Update listener failed: {e}", exc_info=True)

    def _sweep(self, task: str, conn: sqlite3.Connection) -> Dict[str, int]:
        if task == "lock":
            stats = lock_started_events(conn)
            if stats["events"]:
                self._notify(conn, "live")
        elif task == "close":
            stats = close_finished_play(conn)
        elif task == "result":
            stats = resolve_awaiting_events(conn, self.engine, self.judge, self.browser_factory)
            if stats["candidates"]:
                self._notify(conn, "finished")
        else:
            raise ValueError(f"Unknown task '{task}'")
        return stats

    def run_once(self, task: str) -> Optional[Dict[str, int]]:
        """
        Run one sweep now, unless the same sweep is already running.

        Returns:
            The sweep's stats, or None if the tick was dropped or failed
        """
        guard = self._guards[task]
        if not guard.acquire(blocking=False):
            logger.warning(f"{task.capitalize()} sweep already in progress. Skipping...")
            return None

        try:
            conn = get_connection(self.db_path)
            try:
                return self._sweep(task, conn)
            finally:
                conn.close()
        except Exception as e:
            logger.error(f"Error in {task} sweep: {e}", exc_info=True)
            return None
        finally:
            guard.release()

    def run_all(self) -> Dict[str, Optional[Dict[str, int]]]:
        """Run lock, close and result once each, in lifecycle order."""
        return {task: self.run_once(task) for task in TASKS}

    def start(self) -> None:
        """Start one timer thread per task. Returns immediately."""
        self._stop_event.clear()
        for task in TASKS:
            thread = threading.Thread(
                target=self._timer_loop, args=(task,), name=f"{task}-timer", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.info(
            f"Scheduler started (lock every {self.intervals['lock']:.0f}s, "
            f"close every {self.intervals['close']:.0f}s, result every {self.intervals['result']:.0f}s)"
        )

    def _timer_loop(self, task: str) -> None:
        # Each tick runs on its own worker so a slow sweep never delays the
        # timer; overlapping runs are dropped by the task guard.
        while not self._stop_event.wait(timeout=self.intervals[task]):
            worker = threading.Thread(target=self.run_once, args=(task,), name=f"{task}-sweep", daemon=True)
            worker.start()

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the timers. Sweeps already running finish on their own."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Scheduler stopped")
