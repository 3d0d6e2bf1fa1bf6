"""
Batch processing for Trellis.
Runs the scheduled jobs: automation steps, exchange expiry, trust scores,
achievements, insight cleanup and the daily report.
"""

from datetime import timedelta
from typing import Optional

from rich.console import Console
from rich.table import Table

from trellis.models import (
    AutomationEnrollment,
    EnrollmentStatus,
    ExchangeStatus,
    ReferralExchange,
    session_scope,
    utcnow,
)
from trellis.services.achievement_service import AchievementService
from trellis.services.admin_service import AdminService
from trellis.services.automation_service import EnrollmentProcessor
from trellis.services.email_service import EmailService, get_email_service
from trellis.services.exchange_service import ExchangeService
from trellis.services.insight_service import InsightService
from trellis.services.trust_service import TrustScoreService

console = Console()


class BatchProcessor:
    """
    Batch processor for scheduled Trellis work.

    Supports:
    - Advancing due automation enrollments
    - Expiring pending exchanges past their deadline
    - Recomputing exchange trust scores
    - Awarding achievements for every member
    - Purging expired AI insights
    - Daily report generation
    """

    def __init__(self, email_service: Optional[EmailService] = None):
        self.email_service = email_service

    def _email(self) -> EmailService:
        if self.email_service is None:
            self.email_service = get_email_service()
        return self.email_service

    def process_enrollments(self, batch_size: Optional[int] = None, dry_run: bool = False) -> dict:
        """
        Advance every due enrollment by one step.

        Args:
            batch_size: Max enrollments to handle; defaults to the configured batch size
            dry_run: If True, only count what is due

        Returns:
            dict with "processed" and "errors" counts
        """
        with session_scope() as session:
            processor = EnrollmentProcessor(session, email_service=self._email())
            if dry_run:
                due = processor.due_enrollments(utcnow(), batch_size or processor.settings.automation_batch_size)
                console.print(f"Would process {len(due)} due enrollment(s)")
                return {"processed": 0, "errors": 0, "due": len(due)}

            stats = processor.process_due(batch_size=batch_size)

        color = "red" if stats["errors"] else "green"
        console.print(
            f"\n[{color}]Processed {stats['processed']} enrollment(s), {stats['errors']} error(s)[/{color}]"
        )
        return stats

    def expire_exchanges(self, dry_run: bool = False) -> dict:
        """Mark pending exchanges past their expiry as expired."""
        now = utcnow()
        with session_scope() as session:
            if dry_run:
                count = (
                    session.query(ReferralExchange)
                    .filter(
                        ReferralExchange.status == ExchangeStatus.PENDING,
                        ReferralExchange.expires_at.isnot(None),
                        ReferralExchange.expires_at <= now,
                    )
                    .count()
                )
            else:
                count = ExchangeService(session).expire_pending(now)

        action = "Would expire" if dry_run else "Expired"
        console.print(f"\n[yellow]{action} {count} exchange(s)[/yellow]")
        return {"expired": count}

    def recompute_trust_scores(self) -> dict:
        with session_scope() as session:
            count = TrustScoreService(session).recompute_all()
        console.print(f"\n[green]Recomputed {count} trust score(s)[/green]")
        return {"users": count}

    def check_achievements(self) -> dict:
        """Award newly reached tiers for every org member. Streaks are untouched."""
        with session_scope() as session:
            awarded = AchievementService(session).check_all()
        console.print(f"\n[green]Awarded {awarded} achievement tier(s)[/green]")
        return {"awarded": awarded}

    def purge_expired_insights(self) -> dict:
        with session_scope() as session:
            deleted = InsightService(session).purge_expired()
        console.print(f"\n[yellow]Deleted {deleted} expired insight(s)[/yellow]")
        return {"deleted": deleted}

    def generate_daily_report(self) -> dict:
        """
        Generate a daily summary report.

        Returns:
            dict with report data
        """
        today = utcnow().date()
        since = utcnow() - timedelta(days=1)

        with session_scope() as session:
            stats = AdminService(session).get_stats()

            exchanges_by_status = {status.value: 0 for status in ExchangeStatus}
            for exchange in session.query(ReferralExchange).all():
                exchanges_by_status[exchange.status.value] += 1

            sent_last_day = (
                session.query(ReferralExchange)
                .filter(ReferralExchange.created_at >= since, ReferralExchange.status != ExchangeStatus.DRAFT)
                .count()
            )
            active_enrollments = (
                session.query(AutomationEnrollment)
                .filter(AutomationEnrollment.status == EnrollmentStatus.ACTIVE)
                .count()
            )

        report = {
            "date": today.isoformat(),
            **stats,
            "exchanges_by_status": exchanges_by_status,
            "exchanges_sent_last_day": sent_last_day,
            "active_enrollments": active_enrollments,
        }

        # Print report
        console.print()
        console.print(f"[bold]Daily Report - {today.isoformat()}[/bold]")
        table = Table(show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Users", str(stats["total_users"]))
        table.add_row("Organizations", str(stats["total_orgs"]))
        table.add_row("Contacts", str(stats["total_contacts"]))
        table.add_row("Referrals", str(stats["total_referrals"]))
        table.add_row("Won revenue", f"${stats['won_revenue']:,.2f}")
        table.add_row("Exchanges sent (24h)", str(sent_last_day))
        table.add_row("Active enrollments", str(active_enrollments))
        console.print(table)

        console.print("[bold]Exchanges by status:[/bold]")
        for status, count in sorted(exchanges_by_status.items()):
            console.print(f"  {status}: {count}")
        console.print("[bold]Plans:[/bold]")
        for plan, count in sorted(stats["plan_distribution"].items()):
            console.print(f"  {plan}: {count}")

        return report

    def run_all(self) -> dict:
        """Run every scheduled job once."""
        return {
            "enrollments": self.process_enrollments(),
            "exchanges": self.expire_exchanges(),
            "trust": self.recompute_trust_scores(),
            "achievements": self.check_achievements(),
            "insights": self.purge_expired_insights(),
        }
