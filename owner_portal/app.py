# =========================================================
# owner_portal/app.py
# Start command: gunicorn owner_portal.app:app
# =========================================================

import logging
import os
from datetime import date
from io import BytesIO
from typing import Any, Optional

from flask import Flask, abort, jsonify, render_template_string, request, send_file, send_from_directory
from flask_cors import CORS

from . import __version__, config
from .config import PropertyDirectory, configure_logging, load_property_directory
from .errors import ConfigurationError, UpstreamError
from .hostkit import HostkitConnector
from .invoices import parse_upstream_date
from .jobs import start_scheduler_from_env
from .models import StatementPeriod
from .saft import build_saft_xml, fetch_saft
from .statements import build_statement, fetch_expenses, fetch_invoices, generate_statement

LOGGER = logging.getLogger(__name__)

HTML = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>Owner Portal Statements</title><meta name="viewport" content="width=device-width, initial-scale=1">
<style>
body{font-family:system-ui,-apple-system,Segoe UI,Roboto,Helvetica,Arial;margin:0;background:#0b1220;color:#e8eefc}
.wrap{max-width:920px;margin:0 auto;padding:24px}
code{background:#0c1426;padding:2px 6px;border-radius:8px;border:1px solid #1f2b4a}
li{margin:6px 0}
</style></head>
<body><div class="wrap">
<h1>Owner Portal Statements</h1>
<ul>
<li><code>POST /properties/&lt;id&gt;/statements/generate</code> {year, month, propertyName?}</li>
<li><code>GET /properties/&lt;id&gt;/statements/summary?year=&amp;month=</code></li>
<li><code>GET /statements/&lt;filename&gt;</code></li>
<li><code>GET /properties/&lt;id&gt;/invoices?startDate=&amp;endDate=</code></li>
<li><code>GET /properties/&lt;id&gt;/expenses?year=&amp;month=</code></li>
<li><code>POST /properties/&lt;id&gt;/saft</code> {year, month, invoicingNif?, source?}</li>
</ul>
<p>Build {{ version }}</p>
</div></body></html>
"""

configure_logging()

app = Flask(__name__)
app.secret_key = os.getenv("FLASK_SECRET_KEY", "owner-portal-secret")
app.config.setdefault("STATEMENTS_DIR", config.STATEMENTS_DIR)
CORS(app, resources={r"/*": {"origins": "*"}})


def _directory() -> PropertyDirectory:
    directory = app.config.get("PROPERTY_DIRECTORY")
    if directory is None:
        directory = load_property_directory()
        app.config["PROPERTY_DIRECTORY"] = directory
    return directory


def _connector() -> HostkitConnector:
    return HostkitConnector()


def _extract_param(name: str) -> Any:
    if request.is_json:
        v = (request.get_json(silent=True) or {}).get(name)
    elif request.form and name in request.form:
        v = request.form.get(name)
    else:
        v = request.args.get(name)
    return v.strip() if isinstance(v, str) else v


def _int_param(name: str) -> Optional[int]:
    v = _extract_param(name)
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _period_from_request():
    year, month = _int_param("year"), _int_param("month")
    if not year or not month:
        return None, (jsonify({"error": "Missing parameters. Required: year, month."}), 400)
    try:
        return StatementPeriod(year, month), None
    except ValueError as e:
        return None, (jsonify({"error": str(e)}), 400)


@app.get("/")
def home():
    return render_template_string(HTML, version=__version__)


@app.get("/health")
def health():
    return jsonify({"status": "healthy", "version": __version__, "base": config.HOSTKIT_API_URL})


# =========================
# STATEMENTS
# =========================

@app.post("/properties/<int:property_id>/statements/generate")
def generate_statement_handler(property_id: int):
    period, err = _period_from_request()
    if err:
        return err

    try:
        artifact = generate_statement(
            property_id, period.year, period.month,
            property_name=_extract_param("propertyName"),
            connector=_connector(),
            directory=_directory(),
            output_dir=app.config["STATEMENTS_DIR"],
        )
    except ConfigurationError as e:
        LOGGER.error("Statement generation failed for property %s: %s", property_id, e)
        return jsonify({"error": "Failed to generate statement", "reason": str(e)}), 500
    except Exception:
        LOGGER.exception("Statement generation failed for property %s", property_id)
        return jsonify({"error": "Failed to generate statement"}), 500

    return jsonify({
        "message": "Statement generated successfully",
        "pdfFilename": artifact.pdf_filename,
        "csvFilename": artifact.csv_filename,
    }), 201


@app.get("/properties/<int:property_id>/statements/summary")
def statement_summary(property_id: int):
    period, err = _period_from_request()
    if err:
        return err
    try:
        statement = build_statement(property_id, period.year, period.month,
                                    property_name=_extract_param("propertyName"),
                                    connector=_connector(), directory=_directory())
    except ConfigurationError as e:
        return jsonify({"error": "Failed to build statement", "reason": str(e)}), 500
    except Exception:
        LOGGER.exception("Statement summary failed for property %s", property_id)
        return jsonify({"error": "Failed to build statement"}), 500
    return jsonify(statement.to_dict())


@app.get("/statements/<path:filename>")
def download_statement(filename: str):
    if not filename.startswith("statement_") or not filename.endswith((".pdf", ".csv")):
        abort(404)
    return send_from_directory(app.config["STATEMENTS_DIR"], filename, as_attachment=True)


# =========================
# INVOICES / EXPENSES
# =========================

def _date_param(name: str) -> Optional[date]:
    dt = parse_upstream_date(_extract_param(name))
    return dt.date() if dt else None


@app.get("/properties/<int:property_id>/invoices")
def list_invoices(property_id: int):
    start, end = _date_param("startDate"), _date_param("endDate")
    if not start or not end:
        return jsonify({"error": "Missing parameters. Required: startDate, endDate (YYYY-MM-DD)."}), 400
    if end < start:
        return jsonify({"error": "endDate must not be before startDate."}), 400
    try:
        invoices = fetch_invoices(_connector(), _directory(), property_id, start, end)
    except ConfigurationError as e:
        return jsonify({"error": "Failed to fetch invoices", "reason": str(e)}), 500
    except UpstreamError:
        LOGGER.exception("Invoice fetch failed for property %s", property_id)
        return jsonify({"error": "Failed to fetch invoices"}), 502
    return jsonify({"propertyId": property_id, "invoices": [i.to_dict() for i in invoices]})


@app.get("/properties/<int:property_id>/expenses")
def list_expenses(property_id: int):
    period, err = _period_from_request()
    if err:
        return err
    expenses = fetch_expenses(_connector(), _directory(), property_id, period.start, period.end)
    return jsonify({"propertyId": property_id, "period": period.label,
                    "expenses": [e.to_dict() for e in expenses]})


# =========================
# SAFT
# =========================

@app.post("/properties/<int:property_id>/saft")
def saft(property_id: int):
    period, err = _period_from_request()
    if err:
        return err
    source = (_extract_param("source") or "hostkit").lower()

    try:
        if source == "local":
            directory = _directory()
            prop = directory.find(property_id)
            invoices = fetch_invoices(_connector(), directory, property_id, period.start, period.end)
            xml = build_saft_xml(property_id, prop.name if prop else None, period.start, period.end,
                                 invoices, currency=config.CURRENCY_CODE)
            filename = f"saft_{property_id}_{period.label}_local.xml"
        else:
            doc = fetch_saft(property_id, period.year, period.month, _extract_param("invoicingNif"),
                             connector=_connector(), directory=_directory())
            xml, filename = doc.content, doc.filename
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except ConfigurationError as e:
        return jsonify({"error": "Failed to generate SAFT", "reason": str(e)}), 500
    except Exception:
        LOGGER.exception("SAFT generation failed for property %s", property_id)
        return jsonify({"error": "Failed to generate SAFT"}), 500

    return send_file(BytesIO(xml), mimetype="application/xml", as_attachment=True, download_name=filename)


scheduler = start_scheduler_from_env()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=False)
