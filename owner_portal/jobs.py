# =========================================================
# owner_portal/jobs.py
# Scheduled reports: monthly statements, monthly SAFT, daily digest
# =========================================================
#
# Every job walks the property directory one property (or owner) at a time
# and isolates failures: an error is logged and counted, the batch goes on.
#
# Start command for a one-off run:
#   python -m owner_portal.jobs statements --year 2025 --month 3
#
# =========================================================

import argparse
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from . import config
from .config import PropertyDirectory, configure_logging, load_property_directory, read_bool, read_int
from .hostkit import HostkitConnector
from .invoices import InvoiceRecord
from .mailer import Attachment, ConsoleEmailClient, EmailClient, build_email_client_from_env
from .models import StatementPeriod, previous_month
from .renderers import money
from .saft import fetch_saft
from .statements import fetch_invoices, generate_statement

LOGGER = logging.getLogger(__name__)

DIGEST_MAX_ITEMS = 5


@dataclass
class JobSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def _today(today: Optional[date]) -> date:
    return today or datetime.now(timezone.utc).date()


# =========================
# JOBS
# =========================

def send_monthly_statements(directory: PropertyDirectory, email_client: EmailClient,
                            today: Optional[date] = None, period: Optional[StatementPeriod] = None,
                            connector: Optional[HostkitConnector] = None,
                            output_dir: Optional[str] = None) -> JobSummary:
    period = period or previous_month(_today(today))
    connector = connector or HostkitConnector()
    summary = JobSummary()

    for prop in directory.all():
        if not prop.owner_email:
            LOGGER.info("Property %s has no owner email; skipping statement", prop.property_id)
            summary.skipped += 1
            continue

        summary.attempted += 1
        try:
            artifact = generate_statement(prop.property_id, period.year, period.month,
                                          property_name=prop.name or None, connector=connector,
                                          directory=directory, output_dir=output_dir)
            email_client.send(
                prop.owner_email,
                f"Owner Statement for {prop.display_name} - {period.label}",
                f"Please find attached your monthly owner statement for {prop.display_name} ({period.label}).\n\n"
                f"Net payout: {money(artifact.statement.summary.net_payout)}",
                artifact.attachments(),
            )
            summary.succeeded += 1
            LOGGER.info("Sent owner statement for property %s to %s", prop.property_id, prop.owner_email)
        except Exception:
            summary.failed += 1
            LOGGER.exception("Failed to send statement for property %s", prop.property_id)

    LOGGER.info("Monthly statements %s: %s", period.label, summary.to_dict())
    return summary


def send_monthly_saft(directory: PropertyDirectory, email_client: EmailClient,
                      today: Optional[date] = None, period: Optional[StatementPeriod] = None,
                      connector: Optional[HostkitConnector] = None) -> JobSummary:
    period = period or previous_month(_today(today))
    connector = connector or HostkitConnector()
    summary = JobSummary()

    for owner_email, props in directory.by_owner().items():
        attachments: List[Attachment] = []
        for prop in props:
            if not prop.invoicing_nif:
                summary.skipped += 1
                continue
            summary.attempted += 1
            try:
                doc = fetch_saft(prop.property_id, period.year, period.month, prop.invoicing_nif,
                                 connector=connector, directory=directory)
                attachments.append(Attachment(filename=doc.filename, content=doc.content,
                                              content_type="application/xml"))
                summary.succeeded += 1
            except Exception:
                summary.failed += 1
                LOGGER.exception("SAFT generation failed for property %s (owner %s)", prop.property_id, owner_email)

        if not attachments:
            continue
        try:
            email_client.send(
                owner_email,
                f"Monthly SAFT Report - {period.label}",
                f"Please find attached your monthly SAFT report for {period.label}.",
                attachments,
            )
            LOGGER.info("SAFT for %s emailed to %s", period.label, owner_email)
        except Exception:
            # the files were produced but never reached the owner
            summary.succeeded -= len(attachments)
            summary.failed += len(attachments)
            LOGGER.exception("Could not email SAFT to %s", owner_email)

    LOGGER.info("Monthly SAFT %s: %s", period.label, summary.to_dict())
    return summary


def compose_digest(day: date, invoices: List[Dict[str, object]]) -> str:
    lines = ["Good morning!", "", f"Here's your daily property summary for {day.isoformat()}:", ""]
    if invoices:
        lines.append(f"New Invoices ({len(invoices)}):")
        for item in invoices[:DIGEST_MAX_ITEMS]:
            lines.append(f"- Property {item['propertyId']}: Invoice {item['invoiceId']} - {money(item['total'])}")
        if len(invoices) > DIGEST_MAX_ITEMS:
            lines.append(f"... and {len(invoices) - DIGEST_MAX_ITEMS} more invoices")
    else:
        lines.append("No new invoices today.")
    lines += ["", "Log in to your owner portal to view complete details.", "", "Owner Portal"]
    return "\n".join(lines)


def send_daily_digest(directory: PropertyDirectory, email_client: EmailClient,
                      today: Optional[date] = None, connector: Optional[HostkitConnector] = None) -> JobSummary:
    day = _today(today)
    connector = connector or HostkitConnector()
    summary = JobSummary()

    for owner_email, props in directory.by_owner().items():
        summary.attempted += 1
        found: List[Dict[str, object]] = []
        for prop in props:
            try:
                invoices: List[InvoiceRecord] = fetch_invoices(connector, directory, prop.property_id, day, day)
            except Exception:
                LOGGER.exception("Digest: could not load invoices for property %s", prop.property_id)
                continue
            found.extend({"propertyId": prop.property_id, "invoiceId": i.id, "total": i.total} for i in invoices)

        try:
            email_client.send(owner_email, f"Daily Property Digest - {day.isoformat()}", compose_digest(day, found))
            summary.succeeded += 1
        except Exception:
            summary.failed += 1
            LOGGER.exception("Could not send daily digest to %s", owner_email)

    LOGGER.info("Daily digest %s: %s", day.isoformat(), summary.to_dict())
    return summary


# =========================
# SCHEDULER
# =========================

@dataclass
class ScheduledJob:
    name: str
    func: Callable[[], object]
    hour: int
    minute: int = 0
    day: Optional[int] = None  # day of month; None = every day

    def next_run_after(self, now: datetime) -> datetime:
        candidate = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if self.day is None:
            if candidate <= now:
                candidate += timedelta(days=1)
            return candidate

        candidate = candidate.replace(day=self.day)
        if candidate <= now:
            if candidate.month == 12:
                candidate = candidate.replace(year=candidate.year + 1, month=1)
            else:
                candidate = candidate.replace(month=candidate.month + 1)
        return candidate


class JobScheduler:
    """Runs ScheduledJobs on a daemon thread; one tick per due job."""

    def __init__(self, jobs: List[ScheduledJob], clock: Optional[Callable[[], datetime]] = None):
        self.jobs = jobs
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_job(self, job: ScheduledJob) -> None:
        LOGGER.info("Running scheduled job %s", job.name)
        try:
            job.func()
        except Exception:
            LOGGER.exception("Scheduled job %s failed", job.name)

    def next_due(self) -> Optional[tuple]:
        if not self.jobs:
            return None
        now = self._clock()
        return min(((job.next_run_after(now), job) for job in self.jobs), key=lambda x: x[0])

    def _worker(self) -> None:
        while not self._stop.is_set():
            due = self.next_due()
            if due is None:
                return
            when, job = due
            wait = max((when - self._clock()).total_seconds(), 1.0)
            if self._stop.wait(wait):
                break
            self.run_job(job)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._worker, name="owner-portal-jobs", daemon=True)
        self._thread.start()
        LOGGER.info("Scheduler started with jobs: %s", ", ".join(j.name for j in self.jobs))

    def stop(self) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
            LOGGER.info("Scheduler stopped.")


def default_jobs(directory: Optional[PropertyDirectory] = None,
                 email_client: Optional[EmailClient] = None) -> List[ScheduledJob]:
    directory = directory or load_property_directory()
    email_client = email_client or build_email_client_from_env()
    return [
        ScheduledJob("monthly_statements", lambda: send_monthly_statements(directory, email_client),
                     hour=read_int("STATEMENTS_RUN_HOUR", 8), day=2),
        ScheduledJob("monthly_saft", lambda: send_monthly_saft(directory, email_client),
                     hour=read_int("SAFT_RUN_HOUR", 9), day=2),
        ScheduledJob("daily_digest", lambda: send_daily_digest(directory, email_client),
                     hour=read_int("DIGEST_RUN_HOUR", 8)),
    ]


def start_scheduler_from_env() -> Optional[JobScheduler]:
    if not read_bool("OWNER_PORTAL_SCHEDULER_ENABLED"):
        LOGGER.info("Scheduler disabled. Set OWNER_PORTAL_SCHEDULER_ENABLED=1 to enable it.")
        return None
    scheduler = JobScheduler(default_jobs())
    scheduler.start()
    return scheduler


# =========================
# CLI
# =========================

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an owner portal report job once.")
    parser.add_argument("job", choices=["statements", "saft", "digest"])
    parser.add_argument("--year", type=int, help="Statement/SAFT year (default: previous month)")
    parser.add_argument("--month", type=int, help="Statement/SAFT month (default: previous month)")
    parser.add_argument("--output-dir", default=None, help=f"Statement directory (default: {config.STATEMENTS_DIR})")
    parser.add_argument("--dry-run", action="store_true", help="Log emails instead of sending them.")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging("DEBUG" if args.verbose else None)

    directory = load_property_directory()
    client: EmailClient = ConsoleEmailClient() if args.dry_run else build_email_client_from_env()

    period = None
    if args.year or args.month:
        if not (args.year and args.month):
            LOGGER.error("--year and --month must be given together")
            return 2
        period = StatementPeriod(args.year, args.month)

    if args.job == "statements":
        summary = send_monthly_statements(directory, client, period=period, output_dir=args.output_dir)
    elif args.job == "saft":
        summary = send_monthly_saft(directory, client, period=period)
    else:
        summary = send_daily_digest(directory, client)

    return 1 if summary.failed else 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
