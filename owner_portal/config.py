# =========================================================
# owner_portal/config.py
# Environment settings, logging setup and the property directory
# =========================================================

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)


# =========================
# ENVIRONMENT
# =========================

HOSTKIT_API_URL = os.getenv("HOSTKIT_API_URL", "https://app.hostkit.pt/api").rstrip("/")
HOSTKIT_API_KEY = os.getenv("HOSTKIT_API_KEY", "").strip()
HOSTKIT_TIMEOUT = int(os.getenv("HOSTKIT_HTTP_TIMEOUT_SECONDS", "30"))
HOSTKIT_OPTIONAL_TIMEOUT = int(os.getenv("HOSTKIT_OPTIONAL_TIMEOUT_SECONDS", "10"))
HOSTKIT_MAX_RETRIES = int(os.getenv("HOSTKIT_MAX_RETRIES", "3"))
HOSTKIT_RETRY_BACKOFF = float(os.getenv("HOSTKIT_RETRY_BACKOFF_SECONDS", "0.5"))

STATEMENTS_DIR = os.getenv("STATEMENTS_DIR", os.path.join(os.getcwd(), "statements"))
DEFAULT_VAT_RATE = float(os.getenv("DEFAULT_VAT_RATE", "0.06"))
PENDING_GRACE_DAYS = int(os.getenv("PENDING_GRACE_DAYS", "7"))
CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "€")
CURRENCY_CODE = os.getenv("CURRENCY_CODE", "EUR")
MAX_PDF_MB = int(os.getenv("MAX_PDF_MB", "18"))

# Empty means no logo in the PDF page header
LOGO_URL = os.getenv("LOGO_URL", "").strip()

PROPERTIES_FILE = os.getenv("OWNER_PORTAL_PROPERTIES_FILE", "").strip()
PROPERTIES_JSON = os.getenv("OWNER_PORTAL_PROPERTIES", "").strip()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def read_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Invalid value for %s=%s; using %s", name, raw, default)
        return default


def configure_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)


# =========================
# PROPERTY DIRECTORY
# =========================

@dataclass
class PropertyCredential:
    api_key: str
    hostkit_id: str


@dataclass
class PropertyConfig:
    property_id: int
    name: str = ""
    hostkit_id: str = ""
    api_key: str = ""
    owner_email: str = ""
    owner_name: str = ""
    invoicing_nif: str = ""
    series: List[str] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or f"Property {self.property_id}"


def _pick(raw: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if raw.get(k) not in (None, ""):
            return raw.get(k)
    return None


def property_from_dict(raw: Dict[str, Any]) -> PropertyConfig:
    pid = _pick(raw, "id", "propertyId", "property_id")
    if pid is None:
        raise ConfigurationError(f"Property entry without an id: {raw}")
    try:
        pid = int(pid)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Property id must be numeric, got {pid!r}")

    series = _pick(raw, "series", "invoiceSeries", "invoice_series") or []
    if isinstance(series, str):
        series = [series]

    return PropertyConfig(
        property_id=pid,
        name=str(_pick(raw, "name", "propertyName", "property_name") or ""),
        hostkit_id=str(_pick(raw, "hostkitId", "hostkit_id") or ""),
        api_key=str(_pick(raw, "apiKey", "api_key", "hostkitApiKey") or ""),
        owner_email=str(_pick(raw, "ownerEmail", "owner_email") or ""),
        owner_name=str(_pick(raw, "ownerName", "owner_name") or ""),
        invoicing_nif=str(_pick(raw, "invoicingNif", "invoicing_nif", "nif") or ""),
        series=[str(s) for s in series],
    )


class PropertyDirectory:
    """Lookup of per-property credentials, owners and invoice series."""

    def get(self, property_id: int) -> PropertyConfig:
        raise NotImplementedError

    def all(self) -> List[PropertyConfig]:
        raise NotImplementedError

    def find(self, property_id: int) -> Optional[PropertyConfig]:
        try:
            return self.get(property_id)
        except ConfigurationError:
            return None

    def by_owner(self) -> Dict[str, List[PropertyConfig]]:
        out: Dict[str, List[PropertyConfig]] = {}
        for prop in self.all():
            if not prop.owner_email:
                continue
            out.setdefault(prop.owner_email, []).append(prop)
        return out

    def credential_for(self, property_id: int) -> PropertyCredential:
        prop = self.find(property_id)
        api_key = (prop.api_key if prop else "") or HOSTKIT_API_KEY
        if not api_key:
            raise ConfigurationError(f"No credential configured for property {property_id}")
        hostkit_id = prop.hostkit_id if prop else ""
        if not hostkit_id:
            raise ConfigurationError(f"No Hostkit ID configured for property {property_id}")
        return PropertyCredential(api_key=api_key, hostkit_id=hostkit_id)


class InMemoryPropertyDirectory(PropertyDirectory):
    def __init__(self, properties: Iterable[PropertyConfig] = ()):
        self._props: Dict[int, PropertyConfig] = {}
        for p in properties:
            self._props[p.property_id] = p

    def get(self, property_id: int) -> PropertyConfig:
        try:
            return self._props[int(property_id)]
        except (KeyError, TypeError, ValueError):
            raise ConfigurationError(f"Property {property_id} is not configured")

    def all(self) -> List[PropertyConfig]:
        return list(self._props.values())


def load_property_directory(path: Optional[str] = None, raw: Optional[str] = None) -> InMemoryPropertyDirectory:
    """
    Build the directory from a JSON file or inline JSON.
    Both hold a list of property objects (camelCase or snake_case keys).
    With neither configured the directory is empty and every lookup falls
    back to HOSTKIT_API_KEY, which still needs a Hostkit id to succeed.
    """
    path = path if path is not None else PROPERTIES_FILE
    raw = raw if raw is not None else PROPERTIES_JSON

    data: Any = []
    if path:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    elif raw:
        data = json.loads(raw)

    if isinstance(data, dict):
        data = data.get("properties") or []
    if not isinstance(data, list):
        raise ConfigurationError("Property directory must be a JSON list of properties")

    props = [property_from_dict(x) for x in data if isinstance(x, dict)]
    LOGGER.info("Loaded %d configured properties", len(props))
    return InMemoryPropertyDirectory(props)
