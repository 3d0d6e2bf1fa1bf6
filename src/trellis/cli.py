"""
CLI interface for Trellis.
Uses Typer for commands and Rich for output.
"""

from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from trellis.config import get_settings
from trellis.exceptions import TrellisError
from trellis.models import PlanType, RelationshipType, init_db, session_scope
from trellis.services.admin_service import AdminService
from trellis.services.contact_service import ContactService
from trellis.services.insight_service import InsightService
from trellis.services.organization_service import OrganizationService, UserService

app = typer.Typer(
    name="trellis",
    help="Trellis referral CRM",
    no_args_is_help=True,
)

console = Console()


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(1)


# ============================================================================
# Database Commands
# ============================================================================
@app.command("init")
def init_database():
    """Initialize the database (creates tables if they don't exist)."""
    settings = get_settings()
    console.print(f"[blue]Initializing database:[/blue] {settings.database_url}")
    init_db()
    console.print("[green]Database initialized successfully![/green]")


@app.command("status")
def show_status():
    """Show platform status and statistics."""
    settings = get_settings()

    def configured(value) -> str:
        return "[green]Configured[/green]" if value else "[yellow]Not configured[/yellow]"

    console.print(Panel.fit(
        f"[bold]{settings.app_name}[/bold]\n"
        f"Database: {settings.get_db_path()}\n"
        f"Claude API: {configured(settings.anthropic_api_key)}\n"
        f"Resend: {configured(settings.resend_api_key)}\n"
        f"Polar: {configured(settings.polar_access_token)}\n"
        f"Cron secret: {configured(settings.cron_secret)}",
        title="System Status",
        border_style="blue",
    ))

    with session_scope() as session:
        stats = AdminService(session).get_stats()

    table = Table(title="Platform Totals", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="green")
    for key in ("total_users", "total_orgs", "total_contacts", "total_referrals", "total_deals"):
        table.add_row(key.replace("total_", "").title(), str(stats[key]))
    table.add_row("─" * 20, "─" * 5, style="dim")
    for plan, count in stats["plan_distribution"].items():
        table.add_row(f"{plan.title()} plan", str(count))
    console.print(table)


# ============================================================================
# User and Organization Commands
# ============================================================================
user_app = typer.Typer(help="Manage users")
app.add_typer(user_app, name="user")


@user_app.command("create")
def create_user(
    email: str = typer.Argument(..., help="Email address"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Full name"),
    admin: bool = typer.Option(False, "--admin", help="Grant platform admin"),
):
    """Register a user profile."""
    with session_scope() as session:
        try:
            user = UserService(session).create(email, full_name=name, is_platform_admin=admin)
        except TrellisError as e:
            _fail(e.message)
        console.print(f"[green]User #{user.id} created ({user.email})[/green]")


@user_app.command("list")
def list_users(
    search: Optional[str] = typer.Option(None, "--search", "-q", help="Search term"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of results"),
):
    """List user profiles."""
    with session_scope() as session:
        users = UserService(session).list(search=search, limit=limit)
        if not users:
            console.print("[dim]No users found.[/dim]")
            return

        table = Table(title="Users", box=box.ROUNDED)
        table.add_column("ID", style="dim", width=5)
        table.add_column("Email")
        table.add_column("Name")
        table.add_column("Active org", justify="right")
        table.add_column("Admin")
        for user in users:
            table.add_row(
                str(user.id),
                user.email,
                user.full_name or "-",
                str(user.active_org_id or "-"),
                "yes" if user.is_platform_admin else "",
            )
        console.print(table)


org_app = typer.Typer(help="Manage organizations")
app.add_typer(org_app, name="org")


@org_app.command("create")
def create_org(
    name: str = typer.Argument(..., help="Organization name"),
    owner_email: str = typer.Option(..., "--owner", "-o", help="Owner's email"),
    plan: str = typer.Option("free", "--plan", "-p", help="free, pro or team"),
):
    """Create an organization with the default pipeline."""
    try:
        plan_type = PlanType(plan.lower())
    except ValueError:
        _fail(f"Invalid plan: {plan}")

    with session_scope() as session:
        owner = UserService(session).get_by_email(owner_email)
        if not owner:
            _fail(f"No user with email {owner_email}")
        try:
            org = OrganizationService(session).create(name, owner=owner, plan=plan_type)
        except TrellisError as e:
            _fail(e.message)
        console.print(f"[green]Organization #{org.id} ({org.slug}) created on the {org.plan.value} plan[/green]")


@org_app.command("add-member")
def add_member(
    org_id: int = typer.Argument(..., help="Organization ID"),
    email: str = typer.Argument(..., help="Member's email"),
):
    """Add a registered user to an organization."""
    with session_scope() as session:
        orgs = OrganizationService(session)
        org = orgs.get(org_id)
        user = UserService(session).get_by_email(email)
        if not org or not user:
            _fail("Organization or user not found")
        try:
            orgs.add_member(org, user)
        except TrellisError as e:
            _fail(e.message)
        console.print(f"[green]{email} added to {org.name}[/green]")


@org_app.command("stats")
def org_stats(org_id: int = typer.Argument(..., help="Organization ID")):
    """Show dashboard totals for one organization."""
    with session_scope() as session:
        service = OrganizationService(session)
        org = service.get(org_id)
        if not org:
            _fail(f"Organization {org_id} not found")
        stats = service.get_stats(org_id)

        table = Table(title=f"{org.name} ({org.plan.value})", box=box.ROUNDED)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right", style="green")
        for key, value in stats.items():
            table.add_row(key.replace("_", " ").title(), str(value))
        console.print(table)


# ============================================================================
# Contact Commands
# ============================================================================
contact_app = typer.Typer(help="Browse contacts")
app.add_typer(contact_app, name="contacts")


@contact_app.command("list")
def list_contacts(
    org_id: int = typer.Argument(..., help="Organization ID"),
    search: Optional[str] = typer.Option(None, "--search", "-q", help="Search term"),
    relationship: Optional[str] = typer.Option(None, "--type", "-t", help="Relationship type"),
    limit: int = typer.Option(25, "--limit", "-n", help="Number of results"),
):
    """List an organization's contacts, newest first."""
    relationship_type = None
    if relationship:
        try:
            relationship_type = RelationshipType(relationship.lower())
        except ValueError:
            _fail(f"Invalid relationship type: {relationship}")

    with session_scope() as session:
        contacts, total = ContactService(session).list(
            org_id,
            search=search,
            relationship_type=relationship_type,
            page_size=limit,
        )
        if not contacts:
            console.print("[dim]No contacts found.[/dim]")
            return

        table = Table(title=f"Contacts ({len(contacts)} of {total})", box=box.ROUNDED)
        table.add_column("ID", style="dim", width=5)
        table.add_column("Name", width=24)
        table.add_column("Email")
        table.add_column("Type")
        table.add_column("Gen", justify="right")
        table.add_column("Score", justify="right")
        for contact in contacts:
            table.add_row(
                str(contact.id),
                contact.full_name,
                contact.email or "-",
                contact.relationship_type.value,
                str(contact.generation or "-"),
                str(contact.referral_score or 0),
            )
        console.print(table)


# ============================================================================
# Automation and Batch Commands
# ============================================================================
auto_app = typer.Typer(help="Scheduled jobs and batch processing")
app.add_typer(auto_app, name="auto")


@auto_app.command("process")
def process_enrollments(
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Max enrollments"),
    dry_run: bool = typer.Option(False, "--dry-run", "-d", help="Preview without making changes"),
):
    """Advance due automation enrollments by one step."""
    from trellis.automations.batch_processor import BatchProcessor

    BatchProcessor().process_enrollments(batch_size=batch_size, dry_run=dry_run)


@auto_app.command("expire-exchanges")
def expire_exchanges(
    dry_run: bool = typer.Option(False, "--dry-run", "-d", help="Preview without making changes"),
):
    """Expire pending exchanges past their deadline."""
    from trellis.automations.batch_processor import BatchProcessor

    BatchProcessor().expire_exchanges(dry_run=dry_run)


@auto_app.command("trust")
def recompute_trust():
    """Recompute trust scores for everyone who has exchanged."""
    from trellis.automations.batch_processor import BatchProcessor

    BatchProcessor().recompute_trust_scores()


@auto_app.command("achievements")
def check_achievements():
    """Award newly reached achievement tiers to every member."""
    from trellis.automations.batch_processor import BatchProcessor

    BatchProcessor().check_achievements()


@auto_app.command("cleanup")
def cleanup_insights():
    """Delete expired AI insights."""
    from trellis.automations.batch_processor import BatchProcessor

    BatchProcessor().purge_expired_insights()


@auto_app.command("report")
def generate_report():
    """Generate daily summary report."""
    from trellis.automations.batch_processor import BatchProcessor

    BatchProcessor().generate_daily_report()


@auto_app.command("run-all")
def run_all():
    """Run every scheduled job once."""
    from trellis.automations.batch_processor import BatchProcessor

    BatchProcessor().run_all()


# ============================================================================
# AI Commands
# ============================================================================
@app.command("insights")
def generate_insights(org_id: int = typer.Argument(..., help="Organization ID")):
    """Generate AI insights for a paid organization."""
    with session_scope() as session:
        org = OrganizationService(session).get(org_id)
        if not org:
            _fail(f"Organization {org_id} not found")
        if org.plan == PlanType.FREE:
            _fail("AI insights require a paid plan")

        with console.status("Analyzing referral network..."):
            try:
                result = InsightService(session).generate(org)
            except TrellisError as e:
                _fail(e.message)

        for insight in result["insights"]:
            console.print(Panel(
                insight.summary,
                title=f"[bold]{insight.title}[/bold]",
                subtitle=insight.insight_type.value,
                border_style="magenta",
            ))
        console.print(f"[green]{len(result['insights'])} insight(s) stored[/green]")


# ============================================================================
# Server Commands
# ============================================================================
@app.command("serve")
def start_server(
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Host to bind to"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to bind to"),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload"),
):
    """Start the FastAPI web server."""
    import uvicorn

    console.print(f"[blue]Starting server at http://{host}:{port}[/blue]")
    uvicorn.run(
        "trellis.api.main:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    app()
