# =========================================================
# owner_portal/invoices.py
# Normalise raw Hostkit invoices into InvoiceRecord rows
# =========================================================
#
# Upstream invoices name their money fields inconsistently:
#   gross:  value | amount | total
#   tax:    vat | taxes (scalar) | taxLines / taxes (list of {amount})
# VAT is resolved by an ordered list of rules (see VatRule) so each tier can
# be tested on its own.
#
# =========================================================

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import config

LOGGER = logging.getLogger(__name__)

CENT_TOLERANCE = 0.005


def safe_float(x: Any) -> Optional[float]:
    try:
        if x is None or x == "":
            return None
        return float(x)
    except (TypeError, ValueError):
        return None


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    s = str(value).strip().lower()
    if s in {"1", "true", "yes", "on"}:
        return True
    if s in {"0", "false", "no", "off"}:
        return False
    return default


def parse_upstream_date(raw: Any) -> Optional[datetime]:
    """Epoch seconds (number or numeric string) or ISO-8601 text -> aware UTC datetime."""
    if raw is None or raw == "":
        return None
    num = safe_float(raw)
    if num is not None:
        try:
            return datetime.fromtimestamp(num, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(raw, str):
        return None
    s = raw.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# =========================
# RECORD MODEL
# =========================

@dataclass
class InvoiceRecord:
    id: str
    date: str
    guest_name: str
    gross_revenue: float
    vat: float
    total: float
    invoice_url: str = ""
    closed: bool = False
    partial: bool = False
    series: str = ""
    vat_rule: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "guestName": self.guest_name,
            "grossRevenue": self.gross_revenue,
            "vat": self.vat,
            "total": self.total,
            "invoiceUrl": self.invoice_url,
            "closed": self.closed,
            "partial": self.partial,
            "series": self.series,
            "vatRule": self.vat_rule,
        }


# =========================
# VAT RESOLUTION
# =========================

class VatRule(str, Enum):
    EXPLICIT_VAT = "explicit_vat"
    EXPLICIT_TOTAL = "explicit_total"
    TAX_LINES = "tax_lines"
    FLAT_RATE = "flat_rate"
    NONE = "none"


@dataclass(frozen=True)
class VatResolution:
    vat: float
    total: float
    rule: VatRule


def gross_revenue_of(raw: Dict[str, Any]) -> float:
    for k in ("value", "amount", "total"):
        v = safe_float(raw.get(k))
        if v is not None:
            return v
    return 0.0


def gross_is_total(raw: Dict[str, Any]) -> bool:
    """True when the only amount upstream sent is the tax-inclusive total."""
    return safe_float(raw.get("value")) is None and safe_float(raw.get("amount")) is None \
        and safe_float(raw.get("total")) is not None


def tax_lines_of(raw: Dict[str, Any]) -> Optional[List[Any]]:
    for k in ("taxLines", "taxes"):
        v = raw.get(k)
        if isinstance(v, list):
            return v
    return None


def explicit_vat(raw: Dict[str, Any]) -> Optional[float]:
    """Rule 1: a VAT amount given directly."""
    if raw.get("vat") is not None:
        return safe_float(raw.get("vat")) or 0.0
    taxes = raw.get("taxes")
    if taxes is not None and not isinstance(taxes, list):
        return safe_float(taxes) or 0.0
    return None


def explicit_total(raw: Dict[str, Any], gross: float, vat: float) -> Optional[Tuple[float, float]]:
    """Rule 2: an authoritative total; derives VAT when none is known yet."""
    if raw.get("total") is None:
        return None
    total = safe_float(raw.get("total")) or gross
    if vat == 0 and total > gross:
        vat = total - gross
    return vat, total


def tax_line_vat(raw: Dict[str, Any], gross: float) -> Optional[Tuple[float, float]]:
    """Rule 3: structured tax lines; overrides rules 1 and 2."""
    lines = tax_lines_of(raw)
    if lines is None:
        return None
    vat = 0.0
    for line in lines:
        amount = safe_float(line.get("amount")) if isinstance(line, dict) else safe_float(line)
        vat += amount or 0.0
    return vat, gross + vat


def flat_rate_vat(gross: float, rate: float) -> Tuple[float, float]:
    """Rule 4: nothing usable upstream, assume the flat room-night rate."""
    vat = gross * rate
    return vat, gross + vat


def resolve_vat(raw: Dict[str, Any], gross: float, flat_rate: Optional[float] = None) -> VatResolution:
    rate = config.DEFAULT_VAT_RATE if flat_rate is None else flat_rate
    vat, total, rule = 0.0, 0.0, VatRule.NONE

    v = explicit_vat(raw)
    if v is not None:
        vat, rule = v, VatRule.EXPLICIT_VAT

    t = explicit_total(raw, gross, vat)
    if t is not None:
        derived = t[0] != vat
        vat, total = t
        if rule is VatRule.NONE or derived:
            rule = VatRule.EXPLICIT_TOTAL

    lines = tax_line_vat(raw, gross)
    if lines is not None:
        vat, total = lines
        rule = VatRule.TAX_LINES

    if vat == 0 and total == 0:
        vat, total = flat_rate_vat(gross, rate)
        rule = VatRule.FLAT_RATE

    return VatResolution(vat=vat, total=total, rule=rule)


def _reconcile(inv_id: str, gross: float, res: VatResolution) -> Tuple[float, float]:
    """Round VAT to cents and keep total == gross + vat, vat >= 0."""
    vat = round(res.vat, 2)
    if vat < 0:
        LOGGER.warning("Invoice %s: negative VAT %.2f clamped to 0", inv_id, vat)
        vat = 0.0
    total = gross + vat
    if res.total and abs(res.total - total) > CENT_TOLERANCE:
        LOGGER.warning("Invoice %s: upstream total %.2f != gross %.2f + VAT %.2f; using %.2f",
                       inv_id, res.total, gross, vat, total)
    return vat, total


# =========================
# STATUS
# =========================

def invoice_status(raw: Dict[str, Any], issued: Optional[datetime], now: Optional[datetime] = None,
                   grace_days: Optional[int] = None) -> Tuple[bool, bool]:
    """
    Return (closed, partial).
    Explicit upstream flags win. Without them an invoice is a guess: dated
    more than grace_days ago -> closed, recent/future/undated -> pending.
    """
    status = str(raw.get("status") or "").strip().lower()
    if parse_bool(raw.get("closed")) or parse_bool(raw.get("paid")) or status in {"closed", "paid"}:
        return True, False
    if parse_bool(raw.get("partial")) or status == "partial":
        return False, True
    if issued is None:
        return False, False

    now = now or datetime.now(timezone.utc)
    grace = config.PENDING_GRACE_DAYS if grace_days is None else grace_days
    return issued < now - timedelta(days=grace), False


# =========================
# NORMALISATION
# =========================

def normalize_invoice(raw: Dict[str, Any], index: int = 0, now: Optional[datetime] = None,
                      flat_rate: Optional[float] = None) -> InvoiceRecord:
    inv_id = str(raw.get("id") or raw.get("invoice_id") or f"inv_{index}")
    gross = gross_revenue_of(raw)
    res = resolve_vat(raw, gross, flat_rate=flat_rate)
    if gross_is_total(raw):
        # VAT is inside the total, take it back out of the gross
        res = VatResolution(vat=res.vat, total=gross, rule=res.rule)
        gross -= max(round(res.vat, 2), 0.0)
    vat, total = _reconcile(inv_id, gross, res)

    issued = parse_upstream_date(raw.get("date"))
    closed, partial = invoice_status(raw, issued, now=now)

    return InvoiceRecord(
        id=inv_id,
        date=issued.isoformat() if issued else "",
        guest_name=str(raw.get("guestName") or raw.get("name") or raw.get("invoice_name") or "Guest"),
        gross_revenue=gross,
        vat=vat,
        total=total,
        invoice_url=str(raw.get("invoice_url") or raw.get("url") or raw.get("download_url") or ""),
        closed=closed,
        partial=partial,
        series=str(raw.get("series") or ""),
        vat_rule=res.rule.value,
    )


def filter_by_series(raw_invoices: Iterable[Dict[str, Any]], series: Optional[Iterable[str]]) -> List[Dict[str, Any]]:
    # getInvoices does not filter by property, the series does
    items = [x for x in raw_invoices if isinstance(x, dict)]
    wanted = set(series or [])
    if not wanted:
        return items
    kept = [x for x in items if str(x.get("series") or "") in wanted]
    if len(kept) != len(items):
        LOGGER.debug("Series filter kept %d of %d invoices (series: %s)",
                     len(kept), len(items), ", ".join(sorted(wanted)))
    return kept


def normalize_invoices(raw_invoices: Iterable[Dict[str, Any]], series: Optional[Iterable[str]] = None,
                       now: Optional[datetime] = None, flat_rate: Optional[float] = None) -> List[InvoiceRecord]:
    out: List[InvoiceRecord] = []
    for i, raw in enumerate(filter_by_series(raw_invoices, series)):
        rec = normalize_invoice(raw, index=i, now=now, flat_rate=flat_rate)
        LOGGER.debug("Invoice %s: gross=%.2f vat=%.2f total=%.2f rule=%s",
                     rec.id, rec.gross_revenue, rec.vat, rec.total, rec.vat_rule)
        out.append(rec)
    return out
