"""Unit tests for invoice normalisation and VAT resolution."""

from datetime import datetime, timezone

import pytest

from owner_portal.invoices import (
    VatRule,
    filter_by_series,
    normalize_invoice,
    normalize_invoices,
    parse_bool,
    parse_upstream_date,
    resolve_vat,
    safe_float,
)

NOW = datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)


class TestSafeFloat:
    def test_none(self):
        assert safe_float(None) is None

    def test_empty_string(self):
        assert safe_float("") is None

    def test_string(self):
        assert safe_float("12.50") == pytest.approx(12.5)

    def test_bad_string(self):
        assert safe_float("abc") is None


class TestParseBool:
    @pytest.mark.parametrize("value,expected", [
        (None, False), (True, True), (1, True), (0, False),
        ("1", True), ("true", True), ("0", False), ("no", False), ("maybe", False),
    ])
    def test_parse_bool(self, value, expected):
        assert parse_bool(value) == expected


class TestParseUpstreamDate:
    def test_epoch_number(self):
        assert parse_upstream_date(1709251200) == datetime(2024, 3, 1, tzinfo=timezone.utc)

    def test_epoch_string(self):
        assert parse_upstream_date("1709251200").day == 1

    def test_iso_z(self):
        assert parse_upstream_date("2024-03-05T10:30:00Z").hour == 10

    def test_date_only(self):
        assert parse_upstream_date("2024-03-05") == datetime(2024, 3, 5, tzinfo=timezone.utc)

    def test_garbage(self):
        assert parse_upstream_date("not-a-date") is None

    def test_missing(self):
        assert parse_upstream_date(None) is None
        assert parse_upstream_date("") is None


class TestResolveVat:
    def test_flat_rate_fallback(self):
        res = resolve_vat({"value": "100"}, 100.0)
        assert res.rule is VatRule.FLAT_RATE
        assert res.vat == pytest.approx(6.0)
        assert res.total == pytest.approx(106.0)

    def test_explicit_vat(self):
        res = resolve_vat({"value": "100", "vat": "23"}, 100.0)
        assert res.rule is VatRule.EXPLICIT_VAT
        assert res.vat == pytest.approx(23.0)

    def test_scalar_taxes_count_as_explicit_vat(self):
        res = resolve_vat({"value": "100", "taxes": "13"}, 100.0)
        assert res.rule is VatRule.EXPLICIT_VAT
        assert res.vat == pytest.approx(13.0)

    def test_total_derives_vat(self):
        res = resolve_vat({"value": "100", "total": "106"}, 100.0)
        assert res.rule is VatRule.EXPLICIT_TOTAL
        assert res.vat == pytest.approx(6.0)
        assert res.total == pytest.approx(106.0)

    def test_total_keeps_explicit_vat(self):
        res = resolve_vat({"value": "100", "vat": "6", "total": "106"}, 100.0)
        assert res.rule is VatRule.EXPLICIT_VAT
        assert res.vat == pytest.approx(6.0)
        assert res.total == pytest.approx(106.0)

    def test_tax_lines_override_explicit_vat(self):
        res = resolve_vat({"value": "100", "vat": 5, "taxLines": [{"amount": 8}]}, 100.0)
        assert res.rule is VatRule.TAX_LINES
        assert res.vat == pytest.approx(8.0)
        assert res.total == pytest.approx(108.0)

    def test_tax_lines_sum(self):
        res = resolve_vat({"value": "200", "taxes": [{"amount": "10"}, {"amount": "2.5"}]}, 200.0)
        assert res.vat == pytest.approx(12.5)

    def test_custom_flat_rate(self):
        res = resolve_vat({"value": "100"}, 100.0, flat_rate=0.23)
        assert res.vat == pytest.approx(23.0)


class TestNormalizeInvoice:
    def test_fallback_vat_rule(self):
        rec = normalize_invoice({"id": "1", "value": "100"}, now=NOW)
        assert rec.vat == pytest.approx(6.00)
        assert rec.total == pytest.approx(106.00)
        assert rec.vat_rule == "flat_rate"

    def test_tax_line_precedence(self):
        rec = normalize_invoice({"id": "1", "value": 100, "vat": 5, "taxLines": [{"amount": 8}]}, now=NOW)
        assert rec.vat == pytest.approx(8.0)
        assert rec.total == pytest.approx(108.0)

    def test_explicit_vat_backfills_total(self):
        rec = normalize_invoice({"id": "1", "value": 100, "vat": 5}, now=NOW)
        assert rec.total == pytest.approx(105.0)

    def test_inconsistent_total_replaced(self):
        rec = normalize_invoice({"id": "1", "value": 100, "vat": 5, "total": 130}, now=NOW)
        assert rec.total == pytest.approx(105.0)

    def test_total_below_gross_never_goes_under(self):
        rec = normalize_invoice({"id": "1", "value": 100, "total": 90}, now=NOW)
        assert rec.vat == 0
        assert rec.total >= rec.gross_revenue

    def test_negative_tax_lines_clamped(self):
        rec = normalize_invoice({"id": "1", "value": 100, "taxLines": [{"amount": -4}]}, now=NOW)
        assert rec.vat == 0
        assert rec.total == pytest.approx(100.0)

    def test_gross_from_amount_then_total(self):
        assert normalize_invoice({"amount": "50", "vat": 1}, now=NOW).gross_revenue == pytest.approx(50.0)
        only_total = normalize_invoice({"total": "80"}, now=NOW)
        assert only_total.gross_revenue == pytest.approx(80.0)
        assert only_total.vat == 0
        assert only_total.total == pytest.approx(80.0)

    def test_total_with_vat_is_tax_inclusive(self):
        rec = normalize_invoice({"id": "1", "total": 106, "vat": 6}, now=NOW)
        assert rec.gross_revenue == pytest.approx(100.0)
        assert rec.vat == pytest.approx(6.0)
        assert rec.total == pytest.approx(106.0)

    def test_total_with_tax_lines_is_tax_inclusive(self):
        rec = normalize_invoice({"id": "1", "total": "108", "taxLines": [{"amount": 8}]}, now=NOW)
        assert rec.gross_revenue == pytest.approx(100.0)
        assert rec.vat == pytest.approx(8.0)
        assert rec.total == pytest.approx(108.0)

    def test_total_with_scalar_taxes(self):
        rec = normalize_invoice({"id": "1", "total": 123, "taxes": 23}, now=NOW)
        assert rec.gross_revenue == pytest.approx(100.0)
        assert rec.total == pytest.approx(123.0)

    def test_fields_and_defaults(self):
        rec = normalize_invoice({"value": 10, "name": "Maria", "invoice_url": "https://x/inv.pdf",
                                 "date": 1709251200, "series": "HEAVEN2025"}, index=3, now=NOW)
        assert rec.id == "inv_3"
        assert rec.guest_name == "Maria"
        assert rec.invoice_url == "https://x/inv.pdf"
        assert rec.date == "2024-03-01T00:00:00+00:00"
        assert rec.series == "HEAVEN2025"

    def test_missing_name_and_date(self):
        rec = normalize_invoice({"id": "9", "value": 10}, now=NOW)
        assert rec.guest_name == "Guest"
        assert rec.date == ""

    def test_to_dict_shape(self):
        d = normalize_invoice({"id": "1", "value": 100}, now=NOW).to_dict()
        for key in ("id", "date", "grossRevenue", "vat", "total", "guestName", "invoiceUrl", "closed"):
            assert key in d


class TestInvoiceStatus:
    def test_explicit_closed(self):
        assert normalize_invoice({"value": 1, "closed": 1, "date": "2024-03-19"}, now=NOW).closed is True

    def test_status_paid(self):
        assert normalize_invoice({"value": 1, "status": "paid", "date": "2024-03-19"}, now=NOW).closed is True

    def test_partial(self):
        rec = normalize_invoice({"value": 1, "partial": True, "date": "2024-01-01"}, now=NOW)
        assert rec.partial is True
        assert rec.closed is False

    def test_old_invoice_assumed_closed(self):
        assert normalize_invoice({"value": 1, "date": "2024-03-01"}, now=NOW).closed is True

    def test_recent_invoice_pending(self):
        assert normalize_invoice({"value": 1, "date": "2024-03-18"}, now=NOW).closed is False

    def test_future_invoice_pending(self):
        assert normalize_invoice({"value": 1, "date": "2024-04-10"}, now=NOW).closed is False

    def test_undated_invoice_pending(self):
        assert normalize_invoice({"value": 1}, now=NOW).closed is False


class TestSeriesFilter:
    def test_no_series_keeps_everything(self):
        items = [{"series": "A"}, {"series": "B"}, "junk"]
        assert len(filter_by_series(items, None)) == 2

    def test_filters_other_series(self):
        items = [{"id": 1, "series": "A"}, {"id": 2, "series": "B"}]
        assert [x["id"] for x in filter_by_series(items, ["B"])] == [2]


class TestTotalsConsistency:
    @pytest.mark.parametrize("raw", [
        [{"value": 100}],
        [{"value": 100, "vat": 23}, {"value": 50, "total": 56}, {"value": 80, "taxLines": [{"amount": 4.8}]}],
        [{"value": 33.33, "vat": 5, "total": 99}, {"total": 12}, {"amount": 0}],
        [{"total": 106, "vat": 6}, {"total": 53.5, "taxLines": [{"amount": 3.03}]}, {"total": 10, "vat": -2}],
        [],
    ])
    def test_sum_of_totals_matches_gross_plus_vat(self, raw):
        recs = normalize_invoices(raw, now=NOW)
        assert sum(r.total for r in recs) == pytest.approx(
            sum(r.gross_revenue for r in recs) + sum(r.vat for r in recs), abs=1e-9)
        for r in recs:
            assert r.vat >= 0
            assert r.total >= r.gross_revenue
