"""CLI entry point for the pool betting resolution pipeline."""
import logging
import sys
import time
from datetime import timedelta
from functools import partial

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .browser import BrowserLaunchError, BrowserSession
from .config import DB_PATH, DEFAULT_MATCH_MINUTES, OPENROUTER_API_KEY, ORACLE_SOURCES
from .database import (
    add_market,
    get_bets_for_market,
    get_connection,
    get_event,
    get_market,
    get_markets_for_event,
    init_database,
    list_events,
    transaction,
    upsert_event,
)
from .judge import OutcomeJudge
from .models import AWAITING_RESULTS, FINISHED, IN_PLAY, SCHEDULED
from .matching import fixture_matches
from .oracle import ConsensusEngine, extract_score, is_finished_status
from .scheduler import TASKS, LifecycleScheduler
from .sources import SOURCE_TYPES, build_sources

console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(console=console, rich_tracebacks=True)]
)
logger = logging.getLogger(__name__)

STATUS_FILTERS = {
    "upcoming": SCHEDULED,
    "live": IN_PLAY,
    "awaiting": AWAITING_RESULTS,
    "finished": FINISHED,
}

DATETIME_FORMATS = ["%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S"]


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def cli(debug):
    """Pool betting event resolution CLI."""
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command()
def init():
    """Initialize the database."""
    console.print("[bold]Initializing database...[/bold]")
    conn = get_connection()
    init_database(conn)
    conn.close()
    console.print(f"[green]Database initialized at {DB_PATH}[/green]")


@cli.command("add-event")
@click.argument("home_team")
@click.argument("away_team")
@click.option("--start", "-s", required=True, type=click.DateTime(formats=DATETIME_FORMATS),
              help="Kick-off time in UTC, e.g. '2026-01-17 15:00'")
@click.option("--duration", default=DEFAULT_MATCH_MINUTES, show_default=True,
              help="Minutes until the event is expected to be over")
@click.option("--sport", default="football", show_default=True)
@click.option("--market", "-m", "markets", multiple=True, help="Market name to attach (repeatable)")
@click.option("--generate-markets", is_flag=True, help="Ask the model to propose markets")
def add_event(home_team, away_team, start, duration, sport, markets, generate_markets):
    """Register an event, optionally with markets."""
    if generate_markets and not OPENROUTER_API_KEY:
        console.print("[red]Error: OPENROUTER_API_KEY not set. Please set it in your .env file.[/red]")
        sys.exit(1)

    market_names = list(markets)
    if generate_markets:
        console.print(f"[bold]Generating markets for {home_team} vs {away_team}...[/bold]")
        templates = OutcomeJudge().generate_markets(home_team, away_team, sport, start)
        for template in templates:
            console.print(f"  {template.name}: [dim]{' / '.join(template.outcomes)}[/dim]")
            if template.name not in market_names:
                market_names.append(template.name)
        if not templates:
            console.print("[yellow]No markets were generated.[/yellow]")

    conn = get_connection()
    init_database(conn)
    with transaction(conn):
        event_id = upsert_event(
            conn, home_team, away_team, start, start + timedelta(minutes=duration), sport
        )
        for name in market_names:
            add_market(conn, event_id, name)
    event = get_event(conn, event_id)
    market_count = len(get_markets_for_event(conn, event_id))
    conn.close()

    console.print(f"\n[green]Event {event_id} ({event.external_id}) is {event.status}[/green]")
    console.print(f"  Markets: {market_count}")


@cli.command("add-market")
@click.argument("event_id", type=int)
@click.argument("name")
def add_market_cmd(event_id, name):
    """Attach a market to an existing event."""
    conn = get_connection()
    init_database(conn)
    event = get_event(conn, event_id)
    if event is None:
        conn.close()
        console.print(f"[red]Error: no event with id {event_id}[/red]")
        sys.exit(1)

    with transaction(conn):
        market_id = add_market(conn, event_id, name)
    market = get_market(conn, market_id)
    conn.close()
    console.print(f"[green]Market {market_id} '{market.name}' is {market.status}[/green]")


@cli.command("show-events")
@click.option("--status", "status_filter", type=click.Choice(list(STATUS_FILTERS)), default="upcoming",
              show_default=True)
@click.option("--sport", default=None, help="Only this sport")
@click.option("--limit", "-n", default=50, help="Number of events to show")
def show_events(status_filter, sport, limit):
    """Show events by lifecycle stage."""
    conn = get_connection()
    init_database(conn)
    events = list_events(
        conn, STATUS_FILTERS[status_filter], sport, newest_first=status_filter != "upcoming", limit=limit
    )
    rows = [(event, get_markets_for_event(conn, event.id)) for event in events]
    conn.close()

    if not rows:
        console.print(f"[yellow]No {status_filter} events found.[/yellow]")
        return

    table = Table(title=f"{status_filter.capitalize()} Events")
    table.add_column("ID", justify="right")
    table.add_column("Home Team", style="cyan")
    table.add_column("Away Team", style="cyan")
    table.add_column("Start (UTC)")
    table.add_column("Status")
    table.add_column("Markets", justify="right")
    table.add_column("Resulted", justify="right", style="green")

    for event, markets in rows:
        resulted = sum(1 for m in markets if m.winning_outcome is not None)
        table.add_row(
            str(event.id),
            event.home_team[:20],
            event.away_team[:20],
            event.start_time.strftime("%Y-%m-%d %H:%M"),
            event.status,
            str(len(markets)),
            str(resulted),
        )

    console.print(table)


@cli.command("show-bets")
@click.argument("market_id", type=int)
def show_bets(market_id):
    """Show the bets of a market and how they settled."""
    conn = get_connection()
    init_database(conn)
    market = get_market(conn, market_id)
    bets = get_bets_for_market(conn, market_id) if market else []
    conn.close()

    if market is None:
        console.print(f"[red]Error: no market with id {market_id}[/red]")
        sys.exit(1)

    console.print(f"[bold]{market.name}[/bold] ({market.status}, winner: {market.winning_outcome or '-'})")
    if not bets:
        console.print("[yellow]No bets on this market.[/yellow]")
        return

    table = Table(title="Bets")
    table.add_column("ID", justify="right")
    table.add_column("User", style="cyan")
    table.add_column("Outcome")
    table.add_column("Stake", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Payout", justify="right", style="green")

    for bet in bets:
        status_color = {"WON": "green", "LOST": "red", "VOID": "yellow"}.get(bet.status, "white")
        table.add_row(
            str(bet.id),
            bet.user_id,
            bet.outcome,
            f"{bet.stake:.2f}",
            f"[{status_color}]{bet.status}[/{status_color}]",
            f"{bet.payout:.2f}" if bet.payout is not None else "-",
        )

    console.print(table)


@cli.command()
@click.argument("home_team")
@click.argument("away_team")
@click.option("--source", "source_names", multiple=True, type=click.Choice(list(SOURCE_TYPES)),
              help="Only ask these sources (default: all configured)")
@click.option("--no-headless", is_flag=True, help="Show browser window")
def consensus(home_team, away_team, source_names, no_headless):
    """Ask every source about a fixture and show the verdict."""
    engine = ConsensusEngine(build_sources(list(source_names) or ORACLE_SOURCES))
    console.print(f"[bold]Asking {len(engine.sources)} sources about {home_team} vs {away_team}...[/bold]")

    try:
        with BrowserSession(headless=not no_headless) as browser:
            observations = engine.gather(home_team, away_team, browser)
    except BrowserLaunchError as e:
        console.print(f"[red]Error: could not start browser: {e}[/red]")
        sys.exit(1)

    table = Table(title="Observations")
    table.add_column("Source", style="cyan")
    table.add_column("Home Team")
    table.add_column("Away Team")
    table.add_column("Status")
    table.add_column("Score", justify="center")
    table.add_column("Finished", justify="center")
    table.add_column("Match", justify="center")

    for obs in observations:
        matches = fixture_matches(home_team, away_team, obs.home_team, obs.away_team)
        table.add_row(
            obs.source,
            obs.home_team,
            obs.away_team,
            obs.status_text,
            extract_score(obs.status_text) or "-",
            "yes" if is_finished_status(obs.status_text) else "no",
            "[green]yes[/green]" if matches else "[red]no[/red]",
        )
    console.print(table)

    result = engine.reconcile(home_team, away_team, observations)
    if result is None:
        console.print("\n[yellow]No verdict.[/yellow]")
    else:
        console.print(f"\n[bold green]{result.summary}[/bold green]")


def _build_scheduler(no_headless: bool) -> LifecycleScheduler:
    return LifecycleScheduler(browser_factory=partial(BrowserSession, not no_headless))


@cli.command()
@click.option("--task", "-t", type=click.Choice(list(TASKS) + ["all"]), default="all", show_default=True)
@click.option("--no-headless", is_flag=True, help="Show browser window")
def sweep(task, no_headless):
    """Run the lifecycle sweeps once."""
    conn = get_connection()
    init_database(conn)
    conn.close()

    scheduler = _build_scheduler(no_headless)
    tasks = list(TASKS) if task == "all" else [task]

    for name in tasks:
        console.print(f"[bold]Running {name} sweep...[/bold]")
        stats = scheduler.run_once(name)
        if stats is None:
            console.print("  [red]Sweep failed, see log above[/red]")
            continue
        for key, value in stats.items():
            console.print(f"  {key.replace('_', ' ').capitalize()}: {value}")


@cli.command()
@click.option("--no-headless", is_flag=True, help="Show browser window")
def run(no_headless):
    """Run the scheduler until interrupted."""
    conn = get_connection()
    init_database(conn)
    conn.close()

    scheduler = _build_scheduler(no_headless)
    scheduler.subscribe(
        lambda update: logger.info(f"Update: {len(update['events'])} {update['type']} events")
    )
    scheduler.start()
    console.print("[bold green]Scheduler running. Press Ctrl+C to stop.[/bold green]")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[bold]Stopping...[/bold]")
    finally:
        scheduler.stop()


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
