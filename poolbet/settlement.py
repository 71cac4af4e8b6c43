"""Pool settlement: split the losing pool among the winning stakes."""
import logging
import sqlite3
from typing import Dict, List

from .config import REFUND_WHEN_NO_WINNERS, VOID_OUTCOME, VOID_REFUNDS_STAKES
from .database import (
    WalletNotFoundError,
    credit_wallet,
    get_pending_bets,
    mark_bets_lost,
    set_bet_result,
    transaction,
)
from .models import VOID, WON, Bet

logger = logging.getLogger(__name__)


def compute_payouts(bets: List[Bet], winning_outcome: str) -> Dict[int, float]:
    """
    Payout per winning bet id: the stake back plus a stake-weighted share
    of everything staked on other outcomes.

    Bets on other outcomes get nothing and do not appear in the result.
    """
    total_pool = sum(bet.stake for bet in bets)
    winners = [bet for bet in bets if bet.outcome == winning_outcome]
    winning_pool = sum(bet.stake for bet in winners)
    losing_pool = total_pool - winning_pool

    if winning_pool <= 0:
        return {}
    return {bet.id: bet.stake + bet.stake / winning_pool * losing_pool for bet in winners}


def _new_stats() -> Dict[str, float]:
    return {"bets": 0, "won": 0, "lost": 0, "refunded": 0, "paid_out": 0.0, "errors": 0}


def _pay_bet(conn: sqlite3.Connection, bet: Bet, status: str, amount: float, stats: Dict[str, float]) -> bool:
    """Settle one bet and credit its owner in a single transaction."""
    try:
        with transaction(conn):
            if not set_bet_result(conn, bet.id, status, amount):
                logger.debug(f"Bet {bet.id} already settled, skipping")
                return False
            credit_wallet(conn, bet.user_id, amount)
    except WalletNotFoundError as e:
        logger.error(f"Bet {bet.id} left PENDING: {e}")
        stats["errors"] += 1
        return False
    except Exception as e:
        logger.error(f"Error settling bet {bet.id}: {e}", exc_info=True)
        stats["errors"] += 1
        return False

    stats["paid_out"] += amount
    return True


def refund_bets(conn: sqlite3.Connection, bets: List[Bet], stats: Dict[str, float] = None) -> Dict[str, float]:
    """Return every stake to its owner and mark the bets VOID."""
    if stats is None:
        stats = _new_stats()
    for bet in bets:
        if _pay_bet(conn, bet, VOID, bet.stake, stats):
            stats["refunded"] += 1
            logger.info(f"Bet {bet.id} VOID. Refunded: {bet.stake:.2f}")
    return stats


def settle_market(
    conn: sqlite3.Connection,
    market_id: int,
    winning_outcome: str,
    void_refunds_stakes: bool = VOID_REFUNDS_STAKES,
    refund_when_no_winners: bool = REFUND_WHEN_NO_WINNERS,
) -> Dict[str, float]:
    """
    Settle the PENDING bets of a resulted market.

    Losing bets are marked LOST in one statement. Each winning bet is then
    settled with its wallet credit as its own unit, so one failure leaves
    only that bet PENDING. Already settled bets are never touched, which
    makes a repeated call a no-op.

    Args:
        conn: Database connection
        market_id: The resulted market
        winning_outcome: Its winning outcome, or VOID
        void_refunds_stakes: Refund every stake when the market is VOID
        refund_when_no_winners: Refund every stake when nobody backed the
            winning outcome, instead of marking them all LOST

    Returns:
        Stats dict with counts of bets won, lost, refunded and failed
    """
    stats = _new_stats()
    bets = get_pending_bets(conn, market_id)
    stats["bets"] = len(bets)
    if not bets:
        return stats

    logger.info(f"Settling {len(bets)} bets for market {market_id}. Winner: {winning_outcome}")

    if winning_outcome == VOID_OUTCOME:
        if not void_refunds_stakes:
            logger.warning(f"Market {market_id} is VOID and refunds are disabled, {len(bets)} bets left PENDING")
            return stats
        return refund_bets(conn, bets, stats)

    payouts = compute_payouts(bets, winning_outcome)
    total_pool = sum(bet.stake for bet in bets)

    if not payouts and refund_when_no_winners:
        logger.warning(f"Market {market_id}: nobody backed {winning_outcome}, refunding {total_pool:.2f}")
        return refund_bets(conn, bets, stats)

    with transaction(conn):
        stats["lost"] = mark_bets_lost(conn, market_id, winning_outcome)

    if not payouts:
        logger.warning(f"Market {market_id}: nobody backed {winning_outcome}, pool of {total_pool:.2f} not distributed")
        return stats

    for bet in bets:
        if bet.id not in payouts:
            continue
        payout = payouts[bet.id]
        if _pay_bet(conn, bet, WON, payout, stats):
            stats["won"] += 1
            logger.info(f"Bet {bet.id} WON. Payout: {payout:.2f}")

    return stats
