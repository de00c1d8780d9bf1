"""Statement data model and the pure aggregation step."""

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .invoices import InvoiceRecord


@dataclass
class ExpenseRecord:
    id: str
    date: str
    vendor: str
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "date": self.date, "vendor": self.vendor, "amount": self.amount}


@dataclass
class CommissionRecord:
    id: str
    date: str
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "date": self.date, "amount": self.amount}


@dataclass(frozen=True)
class StatementSummary:
    gross: float = 0.0
    vat: float = 0.0
    invoiced_total: float = 0.0
    expenses_total: float = 0.0
    commissions_total: float = 0.0
    net_payout: float = 0.0

    def lines(self) -> List[Tuple[str, float]]:
        return [
            ("Gross Revenue", self.gross),
            ("VAT", self.vat),
            ("Total Invoiced (guest-paid)", self.invoiced_total),
            ("Total Commissions", self.commissions_total),
            ("Total Expenses", self.expenses_total),
            ("Net Payout", self.net_payout),
        ]

    def to_dict(self) -> Dict[str, float]:
        return {
            "gross": self.gross,
            "vat": self.vat,
            "invoicedTotal": self.invoiced_total,
            "expensesTotal": self.expenses_total,
            "commissionsTotal": self.commissions_total,
            "netPayout": self.net_payout,
        }


def aggregate(invoices: List[InvoiceRecord], expenses: List[ExpenseRecord],
              commissions: List[CommissionRecord]) -> StatementSummary:
    invoiced_total = sum(i.total for i in invoices)
    expenses_total = sum(e.amount for e in expenses)
    commissions_total = sum(c.amount for c in commissions)
    return StatementSummary(
        gross=sum(i.gross_revenue for i in invoices),
        vat=sum(i.vat for i in invoices),
        invoiced_total=invoiced_total,
        expenses_total=expenses_total,
        commissions_total=commissions_total,
        net_payout=invoiced_total - commissions_total - expenses_total,
    )


@dataclass(frozen=True)
class StatementPeriod:
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= int(self.month) <= 12:
            raise ValueError(f"Invalid month {self.month}. Must be between 1 and 12.")
        if int(self.year) < 1970:
            raise ValueError(f"Invalid year {self.year}.")

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    @property
    def label(self) -> str:
        return f"{self.year}-{self.month:02d}"

    def filename_stem(self, property_id: int) -> str:
        return f"statement_{property_id}_{self.year}_{self.month:02d}"


def previous_month(today: Optional[date] = None) -> StatementPeriod:
    today = today or datetime.now(timezone.utc).date()
    if today.month == 1:
        return StatementPeriod(today.year - 1, 12)
    return StatementPeriod(today.year, today.month - 1)


@dataclass
class Statement:
    property_id: int
    period: StatementPeriod
    invoices: List[InvoiceRecord] = field(default_factory=list)
    expenses: List[ExpenseRecord] = field(default_factory=list)
    commissions: List[CommissionRecord] = field(default_factory=list)
    property_name: Optional[str] = None
    summary: StatementSummary = field(default_factory=StatementSummary)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "propertyId": self.property_id,
            "propertyName": self.property_name,
            "period": self.period.label,
            "generatedAt": self.generated_at.isoformat(),
            "summary": self.summary.to_dict(),
            "invoices": [i.to_dict() for i in self.invoices],
            "expenses": [e.to_dict() for e in self.expenses],
            "commissions": [c.to_dict() for c in self.commissions],
        }
