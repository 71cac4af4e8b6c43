"""Tests for database operations."""
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from poolbet.database import (
    WalletNotFoundError,
    add_market,
    create_wallet,
    credit_wallet,
    get_event,
    get_event_by_external_id,
    get_events_due_to_end,
    get_events_due_to_start,
    get_market,
    get_result_candidates,
    get_wallet,
    list_events,
    resolve_market,
    set_event_status,
    transaction,
    upsert_event,
)
from poolbet.models import AWAITING_RESULTS, FINISHED, IN_PLAY, RESULTED, SCHEDULED

KICKOFF = datetime(2026, 1, 17, 15, 0, tzinfo=timezone.utc)


def test_upsert_event_is_idempotent(conn):
    with transaction(conn):
        first = upsert_event(conn, "Real Madrid", "Barcelona", KICKOFF)
        set_event_status(conn, first, IN_PLAY)
        second = upsert_event(conn, "Real Madrid", "Barcelona", KICKOFF + timedelta(hours=1))

    assert first == second
    assert conn.execute("SELECT COUNT(*) FROM events").fetchone()[0] == 1
    assert get_event(conn, first).status == IN_PLAY


def test_upsert_event_defaults_projected_end(conn):
    with transaction(conn):
        event_id = upsert_event(conn, "Real Madrid", "Barcelona", KICKOFF)

    event = get_event(conn, event_id)
    assert event.start_time == KICKOFF
    assert event.projected_end == KICKOFF + timedelta(minutes=120)
    assert get_event_by_external_id(conn, "realmadrid-vs-barcelona-2026-01-17").id == event_id


def test_due_queries(conn):
    with transaction(conn):
        event_id = upsert_event(conn, "Real Madrid", "Barcelona", KICKOFF)

    assert [e.id for e in get_events_due_to_start(conn, KICKOFF - timedelta(minutes=1))] == []
    assert [e.id for e in get_events_due_to_start(conn, KICKOFF)] == [event_id]

    with transaction(conn):
        set_event_status(conn, event_id, IN_PLAY)
    assert get_events_due_to_end(conn, KICKOFF + timedelta(minutes=119)) == []
    assert [e.id for e in get_events_due_to_end(conn, KICKOFF + timedelta(minutes=120))] == [event_id]


def test_set_event_status_with_expected(conn):
    with transaction(conn):
        event_id = upsert_event(conn, "Real Madrid", "Barcelona", KICKOFF)
        assert not set_event_status(conn, event_id, AWAITING_RESULTS, expected=IN_PLAY)
        assert set_event_status(conn, event_id, IN_PLAY, expected=SCHEDULED)


def test_resolved_market_is_never_resolved_again(conn):
    with transaction(conn):
        event_id = upsert_event(conn, "Real Madrid", "Barcelona", KICKOFF)
        market_id = add_market(conn, event_id, "Match Result")
        assert resolve_market(conn, market_id, "Home Win")
        assert not resolve_market(conn, market_id, "Draw")

    market = get_market(conn, market_id)
    assert (market.status, market.winning_outcome) == (RESULTED, "Home Win")


def test_market_names_unique_per_event(conn):
    with transaction(conn):
        event_id = upsert_event(conn, "Real Madrid", "Barcelona", KICKOFF)
        assert add_market(conn, event_id, "Match Result") == add_market(conn, event_id, "Match Result")


def test_result_candidates(conn):
    with transaction(conn):
        awaiting = upsert_event(conn, "Real Madrid", "Barcelona", KICKOFF)
        add_market(conn, awaiting, "Match Result")
        set_event_status(conn, awaiting, AWAITING_RESULTS)

        done = upsert_event(conn, "Chelsea", "Arsenal", KICKOFF)
        resolve_market(conn, add_market(conn, done, "Match Result"), "Draw")
        set_event_status(conn, done, FINISHED)

        leftover = upsert_event(conn, "Lyon", "Nice", KICKOFF)
        resolve_market(conn, add_market(conn, leftover, "Match Result"), "Draw")
        add_market(conn, leftover, "Total Goals")
        set_event_status(conn, leftover, FINISHED)

    assert {e.id for e in get_result_candidates(conn)} == {awaiting, leftover}
    assert len(get_result_candidates(conn, limit=1)) == 1


def test_list_events_filters(conn):
    with transaction(conn):
        upsert_event(conn, "Real Madrid", "Barcelona", KICKOFF)
        upsert_event(conn, "Lakers", "Celtics", KICKOFF, sport="basketball")

    assert len(list_events(conn, SCHEDULED)) == 2
    assert [e.home_team for e in list_events(conn, SCHEDULED, sport="basketball")] == ["Lakers"]
    assert len(list_events(conn, SCHEDULED, sport="all")) == 2


def test_transaction_rolls_back(conn):
    with pytest.raises(WalletNotFoundError):
        with transaction(conn):
            create_wallet(conn, "alice", 5.0)
            credit_wallet(conn, "alice", 10.0)
            credit_wallet(conn, "nobody", 10.0)

    assert get_wallet(conn, "alice") is None


def test_winning_outcome_only_on_resulted_markets(conn):
    with transaction(conn):
        event_id = upsert_event(conn, "Real Madrid", "Barcelona", KICKOFF)
        market_id = add_market(conn, event_id, "Match Result")

    with pytest.raises(sqlite3.IntegrityError):
        with transaction(conn):
            conn.execute("UPDATE markets SET winning_outcome = 'Draw' WHERE id = ?", (market_id,))
