# =========================================================
# owner_portal/statements.py
# Owner statement pipeline: fetch -> normalise -> aggregate -> render -> write
# =========================================================
#
# Invoices are the one required input: their failure fails the statement.
# Expenses and commissions are optional modules on the Hostkit account and
# degrade to empty lists (404 = module not subscribed).
#
# =========================================================

import logging
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from . import config
from .config import PropertyDirectory, load_property_directory
from .errors import ConfigurationError, UpstreamError
from .hostkit import HostkitConnector
from .invoices import InvoiceRecord, normalize_invoices, safe_float
from .mailer import Attachment
from .models import CommissionRecord, ExpenseRecord, Statement, StatementPeriod, aggregate
from .renderers import build_statement_csv, build_statement_pdf

LOGGER = logging.getLogger(__name__)


# =========================
# FETCHERS
# =========================

def fetch_invoices(connector: HostkitConnector, directory: PropertyDirectory, property_id: int,
                   start: date, end: date) -> List[InvoiceRecord]:
    credential = directory.credential_for(property_id)
    prop = directory.find(property_id)
    raw = connector.get_invoices(credential, start, end)
    invoices = normalize_invoices(raw, series=prop.series if prop else None)
    LOGGER.info("Property %s: %d invoices (%d raw) for %s..%s", property_id, len(invoices), len(raw), start, end)
    return invoices


def _optional_module(name: str, fetch: Callable[[], List[Dict[str, Any]]], property_id: int) -> List[Dict[str, Any]]:
    try:
        return fetch()
    except UpstreamError as e:
        if e.not_found:
            LOGGER.info("%s endpoint not found for property %s (module not subscribed)", name.capitalize(), property_id)
        else:
            LOGGER.error("Fetching %s for property %s failed: %s", name, property_id, e)
    except ConfigurationError as e:
        LOGGER.error("Fetching %s for property %s skipped: %s", name, property_id, e)
    return []


def parse_expense(raw: Dict[str, Any], index: int = 0) -> ExpenseRecord:
    return ExpenseRecord(
        id=str(raw.get("expenseId") or raw.get("id") or f"exp_{index}"),
        date=str(raw.get("dateIncurred") or raw.get("date") or raw.get("document_date") or ""),
        vendor=str(raw.get("vendorName") or raw.get("vendor") or "Unknown"),
        amount=safe_float(raw.get("amount")) or 0.0,
    )


def parse_commission(raw: Dict[str, Any], index: int = 0) -> CommissionRecord:
    return CommissionRecord(
        id=str(raw.get("commissionId") or raw.get("id") or f"com_{index}"),
        date=str(raw.get("date") or raw.get("emittedAt") or ""),
        amount=safe_float(raw.get("amount") if raw.get("amount") is not None else raw.get("total")) or 0.0,
    )


def fetch_expenses(connector: HostkitConnector, directory: PropertyDirectory, property_id: int,
                   start: date, end: date) -> List[ExpenseRecord]:
    raw = _optional_module(
        "expenses",
        lambda: connector.get_expenses(directory.credential_for(property_id), property_id, start, end),
        property_id,
    )
    return [parse_expense(x, i) for i, x in enumerate(raw)]


def fetch_commissions(connector: HostkitConnector, directory: PropertyDirectory, property_id: int,
                      start: date, end: date) -> List[CommissionRecord]:
    raw = _optional_module(
        "commissions",
        lambda: connector.get_commissions(directory.credential_for(property_id), property_id, start, end),
        property_id,
    )
    return [parse_commission(x, i) for i, x in enumerate(raw)]


# =========================
# STATEMENT
# =========================

def build_statement(property_id: int, year: int, month: int, property_name: Optional[str] = None,
                    connector: Optional[HostkitConnector] = None,
                    directory: Optional[PropertyDirectory] = None) -> Statement:
    period = StatementPeriod(int(year), int(month))
    connector = connector or HostkitConnector()
    directory = directory or load_property_directory()

    if not property_name:
        prop = directory.find(property_id)
        property_name = prop.name if prop and prop.name else None

    args = (connector, directory, property_id, period.start, period.end)
    with ThreadPoolExecutor(max_workers=3) as ex:
        fut_inv = ex.submit(fetch_invoices, *args)
        fut_exp = ex.submit(fetch_expenses, *args)
        fut_com = ex.submit(fetch_commissions, *args)
        invoices = fut_inv.result()
        expenses = fut_exp.result()
        commissions = fut_com.result()

    summary = aggregate(invoices, expenses, commissions)
    LOGGER.info("Statement %s %s: invoices=%d expenses=%d commissions=%d net=%.2f",
                property_id, period.label, len(invoices), len(expenses), len(commissions), summary.net_payout)

    return Statement(
        property_id=property_id,
        property_name=property_name,
        period=period,
        invoices=invoices,
        expenses=expenses,
        commissions=commissions,
        summary=summary,
    )


# =========================
# PERSISTENCE
# =========================

@dataclass
class StatementArtifact:
    pdf_filename: str
    csv_filename: str
    pdf_path: str
    csv_path: str
    statement: Statement

    def attachments(self) -> List[Attachment]:
        return [
            Attachment(filename=self.pdf_filename, path=self.pdf_path, content_type="application/pdf"),
            Attachment(filename=self.csv_filename, path=self.csv_path, content_type="text/csv"),
        ]


def _stage(path: str, data: Union[bytes, str]) -> str:
    payload = data.encode("utf-8") if isinstance(data, str) else data
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), prefix=".tmp_", suffix=os.path.splitext(path)[1])
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(payload)
    except BaseException:
        os.remove(tmp)
        raise
    return tmp


def _write_atomic(files: Dict[str, Union[bytes, str]]) -> None:
    """Stage every file before replacing any, so a failed write keeps the previous set intact."""
    staged: List[Tuple[str, str]] = []
    try:
        for path, data in files.items():
            staged.append((_stage(path, data), path))
        for tmp, path in staged:
            os.replace(tmp, path)
    finally:
        for tmp, _ in staged:
            if os.path.exists(tmp):
                os.remove(tmp)


def write_artifacts(statement: Statement, output_dir: Optional[str] = None) -> StatementArtifact:
    output_dir = output_dir or config.STATEMENTS_DIR

    # render both before touching the filesystem
    pdf = build_statement_pdf(statement)
    csv_text = build_statement_csv(statement)

    os.makedirs(output_dir, exist_ok=True)
    stem = statement.period.filename_stem(statement.property_id)
    pdf_filename, csv_filename = f"{stem}.pdf", f"{stem}.csv"
    pdf_path = os.path.join(output_dir, pdf_filename)
    csv_path = os.path.join(output_dir, csv_filename)

    _write_atomic({pdf_path: pdf, csv_path: csv_text})
    LOGGER.info("Statement files written: %s, %s", pdf_path, csv_path)

    return StatementArtifact(pdf_filename, csv_filename, pdf_path, csv_path, statement)


def generate_statement(property_id: int, year: int, month: int, property_name: Optional[str] = None,
                       connector: Optional[HostkitConnector] = None,
                       directory: Optional[PropertyDirectory] = None,
                       output_dir: Optional[str] = None) -> StatementArtifact:
    statement = build_statement(property_id, year, month, property_name=property_name,
                                connector=connector, directory=directory)
    return write_artifacts(statement, output_dir=output_dir)
