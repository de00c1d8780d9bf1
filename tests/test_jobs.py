"""Tests for the scheduled report jobs, the scheduler and the job CLI."""

from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from owner_portal.errors import NotificationError, UpstreamError
from owner_portal.invoices import InvoiceRecord
from owner_portal.jobs import (
    JobScheduler,
    ScheduledJob,
    compose_digest,
    main,
    send_daily_digest,
    send_monthly_saft,
    send_monthly_statements,
)
from owner_portal.mailer import ConsoleEmailClient
from owner_portal.models import StatementPeriod
from owner_portal.saft import SaftDocument


def _artifact(net=12.5):
    artifact = MagicMock()
    artifact.statement.summary.net_payout = net
    artifact.attachments.return_value = []
    return artifact


def _saft(property_id):
    return SaftDocument(property_id=property_id, year=2025, month=2, generated="", sent="", content=b"<x/>")


class FailingEmailClient(ConsoleEmailClient):
    def send(self, to, subject, text, attachments=()):
        raise NotificationError("SendGrid down")


class TestMonthlyStatements:
    def test_one_failure_does_not_stop_the_batch(self, directory):
        client = ConsoleEmailClient()
        with patch("owner_portal.jobs.generate_statement",
                   side_effect=[RuntimeError("boom"), _artifact(), _artifact()]) as gen:
            summary = send_monthly_statements(directory, client, today=date(2025, 3, 2), connector=MagicMock())

        assert gen.call_count == 3
        assert summary.to_dict() == {"attempted": 3, "succeeded": 2, "failed": 1, "skipped": 0}
        assert [r["to"] for r in client.records] == ["ana@example.com", "rui@example.com"]
        assert client.records[0]["subject"] == "Owner Statement for Lote 8 4-B - 2025-02"
        assert "12.50 €" in client.records[0]["text"]

    def test_previous_month_in_january(self, directory):
        with patch("owner_portal.jobs.generate_statement", return_value=_artifact()) as gen:
            send_monthly_statements(directory, ConsoleEmailClient(), today=date(2025, 1, 2), connector=MagicMock())
        args = gen.call_args_list[0][0]
        assert args[1:] == (2024, 12)

    def test_explicit_period(self, directory):
        with patch("owner_portal.jobs.generate_statement", return_value=_artifact()) as gen:
            send_monthly_statements(directory, ConsoleEmailClient(), period=StatementPeriod(2023, 7),
                                    connector=MagicMock())
        assert gen.call_args_list[0][0][1:] == (2023, 7)

    def test_property_without_owner_skipped(self, directory):
        directory.get(103).owner_email = ""
        with patch("owner_portal.jobs.generate_statement", return_value=_artifact()):
            summary = send_monthly_statements(directory, ConsoleEmailClient(), today=date(2025, 3, 2),
                                              connector=MagicMock())
        assert summary.skipped == 1
        assert summary.succeeded == 2

    def test_email_failure_counts_as_failure(self, directory):
        with patch("owner_portal.jobs.generate_statement", return_value=_artifact()):
            summary = send_monthly_statements(directory, FailingEmailClient(), today=date(2025, 3, 2),
                                              connector=MagicMock())
        assert summary.failed == 3
        assert summary.succeeded == 0


class TestMonthlySaft:
    def test_one_email_per_owner(self, directory):
        client = ConsoleEmailClient()
        with patch("owner_portal.jobs.fetch_saft", side_effect=lambda pid, *a, **kw: _saft(pid)) as fetch:
            summary = send_monthly_saft(directory, client, today=date(2025, 3, 2), connector=MagicMock())

        # 102 has no invoicing NIF
        assert fetch.call_count == 2
        assert summary.to_dict() == {"attempted": 2, "succeeded": 2, "failed": 0, "skipped": 1}
        assert [(r["to"], r["attachments"]) for r in client.records] == [
            ("ana@example.com", ["saft_101_2025-02.xml"]),
            ("rui@example.com", ["saft_103_2025-02.xml"]),
        ]
        assert client.records[0]["subject"] == "Monthly SAFT Report - 2025-02"

    def test_owner_without_files_gets_no_email(self, directory):
        client = ConsoleEmailClient()
        with patch("owner_portal.jobs.fetch_saft", side_effect=UpstreamError("getSAFT", "down", 500)):
            summary = send_monthly_saft(directory, client, today=date(2025, 3, 2), connector=MagicMock())
        assert summary.failed == 2
        assert client.records == []

    def test_undelivered_files_count_as_failed(self, directory):
        with patch("owner_portal.jobs.fetch_saft", side_effect=lambda pid, *a, **kw: _saft(pid)):
            summary = send_monthly_saft(directory, FailingEmailClient(), today=date(2025, 3, 2),
                                        connector=MagicMock())
        assert summary.succeeded == 0
        assert summary.failed == 2


class TestDailyDigest:
    def test_compose_empty(self):
        text = compose_digest(date(2025, 3, 2), [])
        assert "daily property summary for 2025-03-02" in text
        assert "No new invoices today." in text

    def test_compose_truncates(self):
        items = [{"propertyId": 101, "invoiceId": f"F{n}", "total": 10.0} for n in range(7)]
        text = compose_digest(date(2025, 3, 2), items)
        assert "New Invoices (7):" in text
        assert "- Property 101: Invoice F4 - 10.00 €" in text
        assert "F5" not in text
        assert "... and 2 more invoices" in text

    def test_one_digest_per_owner(self, directory):
        inv = InvoiceRecord(id="F1", date="", guest_name="G", gross_revenue=100.0, vat=6.0, total=106.0)

        def fake_fetch(connector, directory, property_id, start, end):
            if property_id == 102:
                raise UpstreamError("getInvoices", "down", 503)
            return [inv] if property_id == 101 else []

        client = ConsoleEmailClient()
        with patch("owner_portal.jobs.fetch_invoices", side_effect=fake_fetch):
            summary = send_daily_digest(directory, client, today=date(2025, 3, 2), connector=MagicMock())

        assert summary.succeeded == 2
        ana, rui = client.records
        assert "Property 101: Invoice F1 - 106.00 €" in ana["text"]
        assert "No new invoices today." in rui["text"]
        assert ana["subject"] == "Daily Property Digest - 2025-03-02"


class TestScheduledJob:
    def test_daily_later_today(self):
        job = ScheduledJob("d", lambda: None, hour=8)
        now = datetime(2025, 3, 5, 7, 0, tzinfo=timezone.utc)
        assert job.next_run_after(now) == datetime(2025, 3, 5, 8, 0, tzinfo=timezone.utc)

    def test_daily_tomorrow(self):
        job = ScheduledJob("d", lambda: None, hour=8)
        now = datetime(2025, 3, 5, 8, 0, tzinfo=timezone.utc)
        assert job.next_run_after(now) == datetime(2025, 3, 6, 8, 0, tzinfo=timezone.utc)

    def test_monthly_this_month(self):
        job = ScheduledJob("m", lambda: None, hour=8, day=2)
        now = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert job.next_run_after(now) == datetime(2025, 3, 2, 8, 0, tzinfo=timezone.utc)

    def test_monthly_next_month(self):
        job = ScheduledJob("m", lambda: None, hour=8, day=2)
        now = datetime(2025, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert job.next_run_after(now) == datetime(2025, 4, 2, 8, 0, tzinfo=timezone.utc)

    def test_monthly_rolls_over_year(self):
        job = ScheduledJob("m", lambda: None, hour=8, day=2)
        now = datetime(2025, 12, 31, 23, 0, tzinfo=timezone.utc)
        assert job.next_run_after(now) == datetime(2026, 1, 2, 8, 0, tzinfo=timezone.utc)


class TestJobScheduler:
    def test_next_due_picks_earliest(self):
        now = datetime(2025, 3, 1, 7, 0, tzinfo=timezone.utc)
        daily = ScheduledJob("daily", lambda: None, hour=8)
        monthly = ScheduledJob("monthly", lambda: None, hour=8, day=2)
        when, job = JobScheduler([monthly, daily], clock=lambda: now).next_due()
        assert job is daily
        assert when == datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)

    def test_no_jobs(self):
        assert JobScheduler([]).next_due() is None

    def test_run_job_isolates_errors(self):
        def broken():
            raise RuntimeError("boom")

        JobScheduler([]).run_job(ScheduledJob("broken", broken, hour=1))

    def test_start_and_stop(self):
        far = datetime(2025, 3, 1, 0, 0, tzinfo=timezone.utc)
        scheduler = JobScheduler([ScheduledJob("d", lambda: None, hour=23)], clock=lambda: far)
        scheduler.start()
        assert scheduler._thread.is_alive()
        scheduler.stop()
        assert not scheduler._thread.is_alive()


class TestCli:
    def test_year_without_month(self):
        assert main(["statements", "--year", "2025", "--dry-run"]) == 2

    def test_dry_run_statements(self):
        with patch("owner_portal.jobs.load_property_directory") as load, \
                patch("owner_portal.jobs.send_monthly_statements") as send:
            send.return_value.failed = 0
            assert main(["statements", "--year", "2025", "--month", "2", "--dry-run"]) == 0
        kwargs = send.call_args[1]
        assert kwargs["period"] == StatementPeriod(2025, 2)
        assert isinstance(send.call_args[0][1], ConsoleEmailClient)
        assert send.call_args[0][0] is load.return_value

    def test_failures_give_exit_code(self):
        with patch("owner_portal.jobs.load_property_directory"), \
                patch("owner_portal.jobs.send_daily_digest") as send:
            send.return_value.failed = 1
            assert main(["digest", "--dry-run"]) == 1

    def test_unknown_job(self):
        with pytest.raises(SystemExit):
            main(["payroll"])
