import pytest

from owner_portal import config
from owner_portal.config import InMemoryPropertyDirectory, PropertyConfig
from owner_portal.hostkit import HostkitConnector

BASE_URL = "https://hostkit.test/api"


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    # never reach for a real logo or an account-wide key from the environment
    monkeypatch.setattr(config, "LOGO_URL", "")
    monkeypatch.setattr(config, "HOSTKIT_API_KEY", "")


@pytest.fixture
def directory():
    return InMemoryPropertyDirectory([
        PropertyConfig(property_id=101, name="Piece of Heaven", hostkit_id="hk-101", api_key="key-101",
                       owner_email="ana@example.com", owner_name="Ana", invoicing_nif="123456789",
                       series=["HEAVEN2025"]),
        PropertyConfig(property_id=102, name="Lote 8 4-B", hostkit_id="hk-102", api_key="key-102",
                       owner_email="ana@example.com", invoicing_nif=""),
        PropertyConfig(property_id=103, name="Waterfront", hostkit_id="hk-103", api_key="key-103",
                       owner_email="rui@example.com", invoicing_nif="987654321"),
    ])


@pytest.fixture
def connector():
    c = HostkitConnector(base_url=BASE_URL, timeout=5, max_retries=2)
    c._RETRY_BACKOFF_BASE = 0.01
    return c
