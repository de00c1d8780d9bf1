"""
SAFT (Standard Audit File for Tax) exports.

Two sources:
  - fetch_saft: the monthly file generated by Hostkit (base64 in getSAFT)
  - build_saft_xml: a reduced AuditFile built locally from normalised invoices
"""

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Iterable, Optional

from lxml import etree

from .config import PropertyDirectory, load_property_directory
from .errors import UpstreamError
from .hostkit import HostkitConnector
from .invoices import InvoiceRecord

LOGGER = logging.getLogger(__name__)

NIF_RE = re.compile(r"^\d{9}$")


@dataclass
class SaftDocument:
    property_id: int
    year: int
    month: int
    generated: str
    sent: str
    content: bytes

    @property
    def filename(self) -> str:
        return f"saft_{self.property_id}_{self.year}-{self.month:02d}.xml"


def validate_saft_request(year: int, month: int, invoicing_nif: str, today: Optional[date] = None) -> None:
    today = today or datetime.now(timezone.utc).date()
    if not invoicing_nif or not NIF_RE.match(str(invoicing_nif)):
        raise ValueError("Invalid invoicing VAT ID. Must be 9 digits.")
    if year < 2020 or year > today.year + 1:
        raise ValueError("Invalid year. Must be between 2020 and next year.")
    if month < 1 or month > 12:
        raise ValueError("Invalid month. Must be between 1 and 12.")


def fetch_saft(property_id: int, year: int, month: int, invoicing_nif: Optional[str] = None,
               connector: Optional[HostkitConnector] = None,
               directory: Optional[PropertyDirectory] = None) -> SaftDocument:
    directory = directory or load_property_directory()
    connector = connector or HostkitConnector()

    if not invoicing_nif:
        prop = directory.find(property_id)
        invoicing_nif = prop.invoicing_nif if prop else ""
    validate_saft_request(int(year), int(month), invoicing_nif or "")

    credential = directory.credential_for(property_id)
    data = connector.get_saft(credential, int(year), int(month), invoicing_nif)

    payload = data.get("saft")
    if not payload:
        raise UpstreamError("getSAFT", "response has no saft payload")
    try:
        content = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UpstreamError("getSAFT", f"saft payload is not valid base64: {e}") from e

    now = datetime.now(timezone.utc).isoformat()
    LOGGER.info("SAFT for property %s %d-%02d: %d bytes", property_id, year, month, len(content))
    return SaftDocument(
        property_id=property_id,
        year=int(year),
        month=int(month),
        generated=str(data.get("generated") or now),
        sent=str(data.get("sent") or now),
        content=content,
    )


def _sub(parent, tag: str, text: str):
    el = etree.SubElement(parent, tag)
    el.text = text
    return el


def build_saft_xml(property_id: int, company_name: Optional[str], start: date, end: date,
                   invoices: Iterable[InvoiceRecord], currency: str = "EUR") -> bytes:
    root = etree.Element("AuditFile")

    header = etree.SubElement(root, "Header")
    _sub(header, "CompanyID", str(property_id))
    _sub(header, "CompanyName", company_name or "Not specified")
    _sub(header, "StartDate", start.isoformat())
    _sub(header, "EndDate", end.isoformat())

    inv_root = etree.SubElement(root, "Invoices")
    for inv in invoices:
        node = etree.SubElement(inv_root, "Invoice")
        _sub(node, "InvoiceNo", inv.id)
        _sub(node, "InvoiceDate", inv.date)
        _sub(node, "CustomerName", inv.guest_name or "Unknown")
        _sub(node, "InvoiceTotal", f"{inv.total:.2f}")
        _sub(node, "Currency", currency)
        _sub(node, "Tax", f"{inv.vat:.2f}")

    return etree.tostring(root, pretty_print=True, xml_declaration=True, encoding="UTF-8")
