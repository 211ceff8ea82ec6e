"""Command-line interface for operating the rewards engine."""

from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from feedback_rewards.errors import GamificationError
from feedback_rewards.gamification.service import gamification_service
from feedback_rewards.logging_config import configure_logging, get_logger

# Configure logging
configure_logging()
logger = get_logger(__name__)

app = typer.Typer(
    name="feedback-rewards",
    help="Feedback Rewards - referrals, points and badges",
    no_args_is_help=True,
)

# Rich console for pretty output
console = Console()


def _fail(error: GamificationError) -> NoReturn:
    console.print(f"[bold red]✗[/bold red] {escape(error.message)} [dim]({error.code})[/dim]")
    raise typer.Exit(code=1)


@app.command("init")
def init_database() -> None:
    """Initialize the database and create tables."""
    console.print("[bold blue]Initializing database...[/bold blue]")
    gamification_service.db.create_tables()
    console.print("[bold green]✓[/bold green] Database initialized successfully")


@app.command("provision")
def provision_business(
    business_id: Annotated[int, typer.Argument(help="Business ID")],
) -> None:
    """Create default gamification settings for a business."""
    snapshot = gamification_service.provision_business(business_id)

    console.print(f"[bold green]✓[/bold green] Business [bold]{business_id}[/bold] provisioned")
    console.print(f"  Referrals enabled: {snapshot.referral_enabled}")
    console.print(f"  Points per feedback: {snapshot.points_per_feedback}")
    console.print(f"  Points per referral: {snapshot.points_per_referral}")
    console.print(f"  Welcome bonus: {snapshot.welcome_bonus_points}")
    console.print(f"  Badges: {', '.join(rule.badge_key for rule in snapshot.badge_rules) or 'None'}")


@app.command("expire-referrals")
def expire_referrals() -> None:
    """Expire every pending referral past its expiry date."""
    try:
        count = gamification_service.expire_stale_referrals()
    except GamificationError as e:
        _fail(e)
    console.print(f"[bold green]✓[/bold green] Expired {count} referral(s)")


@app.command("leaderboard")
def show_leaderboard(
    business_id: Annotated[int, typer.Argument(help="Business ID")],
    metric: Annotated[str, typer.Option("--metric", "-m", help="points or referral_count")] = "points",
    limit: Annotated[int, typer.Option("--limit", "-l", help="Number of entries")] = 10,
) -> None:
    """Show a business leaderboard."""
    try:
        entries = gamification_service.get_leaderboard(business_id, metric, limit)
    except GamificationError as e:
        _fail(e)

    if not entries:
        console.print("[yellow]No entries yet[/yellow]")
        return

    table = Table(title=f"Leaderboard - business {business_id} ({metric})")
    table.add_column("Rank", justify="right", style="cyan")
    table.add_column("User", style="green")
    table.add_column("Value", justify="right")
    table.add_column("Since")

    for entry in entries:
        table.add_row(
            str(entry.rank),
            str(entry.user_id),
            str(entry.value),
            entry.achieved_at.strftime("%Y-%m-%d %H:%M") if entry.achieved_at else "-",
        )

    console.print(table)


@app.command("reconcile")
def reconcile_ledger(
    business_id: Annotated[int, typer.Argument(help="Business ID")],
) -> None:
    """Check every point balance of a business against its award history."""
    mismatches = gamification_service.reconcile_ledger(business_id)

    if not mismatches:
        console.print(f"[bold green]✓[/bold green] Ledger for business {business_id} is consistent")
        return

    table = Table(title="Balance mismatches")
    table.add_column("User", style="cyan")
    table.add_column("Balance", justify="right")
    table.add_column("Events total", justify="right")
    for mismatch in mismatches:
        table.add_row(str(mismatch.user_id), str(mismatch.balance), str(mismatch.events_total))

    console.print(table)
    raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
