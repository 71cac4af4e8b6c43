"""Tests for the lifecycle sweeps and the scheduler."""
import threading
from contextlib import nullcontext
from datetime import timedelta

import pytest

from poolbet.browser import BrowserLaunchError
from poolbet.database import (
    add_market,
    create_wallet,
    get_bets_for_market,
    get_event,
    get_market,
    get_markets_for_event,
    get_wallet,
    insert_bet,
    transaction,
    upsert_event,
    utcnow,
)
from poolbet.models import (
    AWAITING_RESULTS,
    FINISHED,
    IN_PLAY,
    LOCKED,
    OPEN,
    RESULTED,
    SCHEDULED,
    WON,
    ConsensusResult,
    MarketResult,
)
from poolbet.scheduler import (
    LifecycleScheduler,
    close_finished_play,
    lock_started_events,
    match_results,
    resolve_awaiting_events,
)

from fakes import FakeEngine, FakeJudge

VERDICT = ConsensusResult("Real Madrid", "Barcelona", "2-1", True, 3, 4)


def _event(conn, start_offset_minutes, duration_minutes=120, markets=("Match Result",)):
    start = utcnow() + timedelta(minutes=start_offset_minutes)
    with transaction(conn):
        event_id = upsert_event(conn, "Real Madrid", "Barcelona", start, start + timedelta(minutes=duration_minutes))
        for name in markets:
            add_market(conn, event_id, name)
    return event_id


def _resolve(conn, engine, judge):
    return resolve_awaiting_events(conn, engine, judge, browser_factory=nullcontext)


def _sweep_all(conn, engine, judge):
    lock_started_events(conn)
    close_finished_play(conn)
    return _resolve(conn, engine, judge)


class TestLifecycle:
    def test_started_but_not_ended_is_only_in_play(self, conn):
        event_id = _event(conn, start_offset_minutes=-10)

        _sweep_all(conn, FakeEngine(VERDICT), FakeJudge())

        assert get_event(conn, event_id).status == IN_PLAY
        assert all(m.status == LOCKED for m in get_markets_for_event(conn, event_id))

    def test_future_event_untouched(self, conn):
        event_id = _event(conn, start_offset_minutes=30)

        _sweep_all(conn, FakeEngine(VERDICT), FakeJudge())

        assert get_event(conn, event_id).status == SCHEDULED
        assert get_markets_for_event(conn, event_id)[0].status == OPEN

    def test_inconclusive_oracle_stays_awaiting(self, conn):
        event_id = _event(conn, start_offset_minutes=-300)

        stats = _sweep_all(conn, FakeEngine(None), FakeJudge())

        assert get_event(conn, event_id).status == AWAITING_RESULTS
        assert get_markets_for_event(conn, event_id)[0].status == LOCKED
        assert stats["inconclusive"] == 1

    def test_full_lifecycle(self, conn):
        event_id = _event(conn, start_offset_minutes=-300, markets=("Match Result", "Total Goals"))
        judge = FakeJudge([
            MarketResult("Match Result", "Home Win"),
            MarketResult("Total Goals", "Over 2.5"),
        ])

        stats = _sweep_all(conn, FakeEngine(VERDICT), judge)

        assert get_event(conn, event_id).status == FINISHED
        markets = {m.name: m for m in get_markets_for_event(conn, event_id)}
        assert markets["Match Result"].status == RESULTED
        assert markets["Match Result"].winning_outcome == "Home Win"
        assert markets["Total Goals"].winning_outcome == "Over 2.5"
        assert stats["markets_resolved"] == 2
        assert judge.asked == [["Match Result", "Total Goals"]]

    def test_lock_is_atomic_per_event(self, conn):
        event_id = _event(conn, start_offset_minutes=-5, markets=("A", "B", "C"))

        stats = lock_started_events(conn)

        assert stats == {"events": 1, "markets": 3, "errors": 0}
        assert get_event(conn, event_id).status == IN_PLAY

    def test_event_without_markets_finishes_on_verdict(self, conn):
        event_id = _event(conn, start_offset_minutes=-300, markets=())

        _sweep_all(conn, FakeEngine(VERDICT), FakeJudge())

        assert get_event(conn, event_id).status == FINISHED


class TestResulting:
    def _awaiting(self, conn, markets=("Match Result",)):
        event_id = _event(conn, start_offset_minutes=-300, markets=markets)
        lock_started_events(conn)
        close_finished_play(conn)
        return event_id

    def test_resolution_is_idempotent(self, conn):
        event_id = self._awaiting(conn)
        market_id = get_markets_for_event(conn, event_id)[0].id
        with transaction(conn):
            create_wallet(conn, "alice")
            create_wallet(conn, "bob")
            insert_bet(conn, market_id, "alice", "Home Win", 10)
            insert_bet(conn, market_id, "bob", "Draw", 10)
        engine = FakeEngine(VERDICT)

        _resolve(conn, engine, FakeJudge([MarketResult("Match Result", "Home Win")]))
        second = _resolve(conn, engine, FakeJudge([MarketResult("Match Result", "Draw")]))

        assert get_market(conn, market_id).winning_outcome == "Home Win"
        assert get_wallet(conn, "alice").balance == pytest.approx(20.0)
        assert get_wallet(conn, "bob").balance == 0
        assert second["candidates"] == 0
        assert len(engine.calls) == 1

    def test_malformed_judge_output_writes_nothing(self, conn):
        event_id = self._awaiting(conn)

        stats = _resolve(conn, FakeEngine(VERDICT), FakeJudge([]))

        assert get_event(conn, event_id).status == AWAITING_RESULTS
        assert get_markets_for_event(conn, event_id)[0].status == LOCKED
        assert stats["inconclusive"] == 1

    def test_unknown_market_names_are_ignored(self, conn):
        event_id = self._awaiting(conn, markets=("Match Result", "Total Goals"))
        judge = FakeJudge([
            MarketResult("Match Result", "Away Win"),
            MarketResult("First Scorer", "Vinicius"),
        ])

        _resolve(conn, FakeEngine(VERDICT), judge)

        markets = {m.name: m for m in get_markets_for_event(conn, event_id)}
        assert markets["Match Result"].winning_outcome == "Away Win"
        assert markets["Total Goals"].status == LOCKED
        assert "First Scorer" not in markets
        assert get_event(conn, event_id).status == FINISHED

    def test_finished_event_with_leftover_market_is_retried(self, conn):
        event_id = self._awaiting(conn, markets=("Match Result", "Total Goals"))
        _resolve(conn, FakeEngine(VERDICT), FakeJudge([MarketResult("Match Result", "Home Win")]))

        judge = FakeJudge([MarketResult("Total Goals", "Over 2.5")])
        _resolve(conn, FakeEngine(VERDICT), judge)

        assert judge.asked == [["Total Goals"]]
        assert all(m.status == RESULTED for m in get_markets_for_event(conn, event_id))

    def test_void_market(self, conn):
        event_id = self._awaiting(conn)
        market_id = get_markets_for_event(conn, event_id)[0].id
        with transaction(conn):
            create_wallet(conn, "alice")
            insert_bet(conn, market_id, "alice", "Home Win", 10)

        _resolve(conn, FakeEngine(VERDICT), FakeJudge([MarketResult("Match Result", "VOID")]))

        assert get_market(conn, market_id).winning_outcome == "VOID"
        assert get_wallet(conn, "alice").balance == pytest.approx(10.0)

    def test_browser_launch_failure_aborts_batch(self, conn):
        event_id = self._awaiting(conn)
        engine = FakeEngine(VERDICT)

        def broken_browser():
            raise BrowserLaunchError("chrome not found")

        stats = resolve_awaiting_events(conn, engine, FakeJudge(), browser_factory=broken_browser)

        assert stats["errors"] == 1
        assert engine.calls == []
        assert get_event(conn, event_id).status == AWAITING_RESULTS

    def test_no_browser_without_candidates(self, conn):
        def unexpected_browser():
            raise AssertionError("browser should not start")

        stats = resolve_awaiting_events(conn, FakeEngine(VERDICT), FakeJudge(), browser_factory=unexpected_browser)

        assert stats["candidates"] == 0

    def test_winners_paid_after_resolution(self, conn):
        event_id = self._awaiting(conn)
        market_id = get_markets_for_event(conn, event_id)[0].id
        with transaction(conn):
            for user in ("alice", "bob", "carol"):
                create_wallet(conn, user)
            insert_bet(conn, market_id, "alice", "A", 10)
            insert_bet(conn, market_id, "bob", "B", 5)
            insert_bet(conn, market_id, "carol", "B", 15)

        _resolve(conn, FakeEngine(VERDICT), FakeJudge([MarketResult("Match Result", "A")]))

        bets = {b.user_id: b for b in get_bets_for_market(conn, market_id)}
        assert bets["alice"].status == WON
        assert bets["alice"].payout == pytest.approx(30.0)


def test_match_results_dedupes_and_folds_case(conn):
    event_id = _event(conn, start_offset_minutes=30, markets=("Match Result",))
    markets = get_markets_for_event(conn, event_id)

    pairs = match_results(markets, [
        MarketResult(" match result ", "Home Win"),
        MarketResult("Match Result", "Draw"),
        MarketResult("Nope", "X"),
    ])

    assert [(m.name, outcome) for m, outcome in pairs] == [("Match Result", "Home Win")]


class TestScheduler:
    def test_busy_task_drops_tick(self, db_path):
        scheduler = LifecycleScheduler(db_path, engine=FakeEngine(), judge=FakeJudge(), browser_factory=nullcontext)
        scheduler._guards["result"].acquire()
        try:
            assert scheduler.run_once("result") is None
        finally:
            scheduler._guards["result"].release()
        assert scheduler.run_once("result") is not None

    def test_overlapping_ticks_run_once(self, db_path, conn):
        _event(conn, start_offset_minutes=-300)
        lock_started_events(conn)
        close_finished_play(conn)

        entered = threading.Event()
        release = threading.Event()

        class SlowEngine(FakeEngine):
            def get_consensus(self, home_team, away_team, browser=None):
                entered.set()
                release.wait(timeout=5)
                return super().get_consensus(home_team, away_team, browser)

        engine = SlowEngine(None)
        scheduler = LifecycleScheduler(db_path, engine=engine, judge=FakeJudge(), browser_factory=nullcontext)
        worker = threading.Thread(target=scheduler.run_once, args=("result",))
        worker.start()
        try:
            assert entered.wait(timeout=5)
            assert scheduler.run_once("result") is None
        finally:
            release.set()
            worker.join(timeout=5)

        assert len(engine.calls) == 1

    def test_event_error_is_contained(self, db_path, conn):
        event_id = _event(conn, start_offset_minutes=-300)

        class ExplodingEngine(FakeEngine):
            def get_consensus(self, home_team, away_team, browser=None):
                raise RuntimeError("boom")

        scheduler = LifecycleScheduler(db_path, engine=ExplodingEngine(), judge=FakeJudge(), browser_factory=nullcontext)
        results = scheduler.run_all()

        assert results["result"]["errors"] == 1
        assert get_event(conn, event_id).status == AWAITING_RESULTS

    def test_failed_sweep_releases_guard(self, tmp_path):
        # No schema: every query fails.
        scheduler = LifecycleScheduler(
            tmp_path / "empty.db", engine=FakeEngine(), judge=FakeJudge(), browser_factory=nullcontext
        )
        assert scheduler.run_once("lock") is None
        assert not scheduler._guards["lock"].locked()
        assert scheduler.run_once("lock") is None

    def test_run_all_in_lifecycle_order(self, db_path, conn):
        event_id = _event(conn, start_offset_minutes=-300)
        judge = FakeJudge([MarketResult("Match Result", "Home Win")])
        scheduler = LifecycleScheduler(db_path, engine=FakeEngine(VERDICT), judge=judge, browser_factory=nullcontext)

        results = scheduler.run_all()

        assert list(results) == ["lock", "close", "result"]
        assert get_event(conn, event_id).status == FINISHED

    def test_subscribers_notified(self, db_path, conn):
        _event(conn, start_offset_minutes=-10)
        scheduler = LifecycleScheduler(db_path, engine=FakeEngine(), judge=FakeJudge(), browser_factory=nullcontext)
        updates = []

        def broken(update):
            raise ValueError("listener bug")

        scheduler.subscribe(broken)
        scheduler.subscribe(updates.append)
        scheduler.run_once("lock")

        assert len(updates) == 1
        assert updates[0]["type"] == "live"
        assert updates[0]["events"][0]["status"] == IN_PLAY
        assert updates[0]["events"][0]["markets"][0]["status"] == LOCKED

    def test_start_and_stop(self, db_path):
        scheduler = LifecycleScheduler(
            db_path,
            engine=FakeEngine(),
            judge=FakeJudge(),
            browser_factory=nullcontext,
            intervals={"lock": 0.05, "close": 0.05, "result": 0.05},
        )
        scheduler.start()
        scheduler.stop(timeout=1)
        assert scheduler._threads == []
