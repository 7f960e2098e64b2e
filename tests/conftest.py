"""
Pytest configuration and fixtures for the subscription / rule-set tests.
"""

import base64
import json
import sqlite3
import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop cached module-level instances between tests."""
    yield
    import db_helper

    if db_helper._db_manager is not None:
        db_helper._db_manager.close_connection()
    db_helper._db_manager = None

    if "api_server" in sys.modules:
        sys.modules["api_server"].set_services(None)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def user_db_path(temp_dir: Path) -> Path:
    """Create a path for temporary user database."""
    return temp_dir / "user-config.db"


@pytest.fixture
def initialized_user_db(user_db_path: Path) -> Path:
    """Create and initialize a user database with schema."""
    from init_user_db import USER_DB_SCHEMA

    conn = sqlite3.connect(str(user_db_path))
    conn.executescript(USER_DB_SCHEMA)
    conn.commit()
    conn.close()
    return user_db_path


@pytest.fixture
def user_db(initialized_user_db: Path):
    """UserDatabase bound to the temporary database."""
    from db_helper import UserDatabase

    db = UserDatabase(str(initialized_user_db))
    yield db
    db.close_connection()


@pytest.fixture
def config_dir(temp_dir: Path) -> Path:
    path = temp_dir / "sing-box"
    path.mkdir()
    return path


@pytest.fixture
def config_repo(config_dir: Path):
    from config_repository import ConfigRepository

    return ConfigRepository(config_dir)


@pytest.fixture
def rules_store(config_dir: Path):
    from shared_rules_store import SharedRulesStore

    return SharedRulesStore(config_dir / "shared-rules.json")


@pytest.fixture
def proxy_settings():
    from db_helper import ProxySettings

    return ProxySettings()


def make_vmess_uri(payload: dict) -> str:
    raw = json.dumps(payload).encode("utf-8")
    return "vmess://" + base64.b64encode(raw).decode("ascii")


@pytest.fixture
def vmess_uri_factory():
    """Build vmess:// links from a JSON payload."""
    return make_vmess_uri


@pytest.fixture
def sample_vmess_uri() -> str:
    """Minimal vmess link: n1 @ 1.2.3.4:443."""
    return make_vmess_uri({
        "v": "2", "ps": "n1", "add": "1.2.3.4", "port": "443", "id": "uuid", "aid": "0",
    })


@pytest.fixture
def sample_vless_uri() -> str:
    """vless link with reality + grpc transport."""
    return (
        "vless://0b9a3c4e-1111-2222-3333-444455556666@example.com:8443"
        "?security=reality&sni=www.microsoft.com&fp=firefox&pbk=PUBKEY&sid=abcd"
        "&type=grpc&serviceName=svc&flow=xtls-rprx-vision#vless-node"
    )


@pytest.fixture
def sample_route_rules() -> list:
    """Route rules with both clash_mode anchors."""
    return [
        {"action": "sniff"},
        {"clash_mode": "direct", "outbound": "direct"},
        {"clash_mode": "global", "outbound": "manual"},
        {"domain_suffix": ["example.com", "example.org"], "action": "route", "outbound": "manual"},
        {"rule_set": ["geosite-cn"], "action": "route", "outbound": "direct"},
    ]


@pytest.fixture
def active_config(config_repo, config_dir: Path, sample_route_rules) -> Path:
    """Write an active config document and register it with the repository."""
    path = config_dir / "config.json"
    config = {
        "outbounds": [
            {"type": "selector", "tag": "manual", "outbounds": ["hk-01"]},
            {"type": "vmess", "tag": "hk-01", "server": "1.2.3.4", "server_port": 443, "uuid": "u"},
            {"type": "direct", "tag": "direct"},
        ],
        "route": {"rules": sample_route_rules, "final": "manual"},
    }
    path.write_text(json.dumps(config, indent=2), encoding="utf-8")
    config_repo.set_active_config_path(path)
    return path


@pytest.fixture
def sample_rule_sets(rules_store) -> dict:
    """Seed the rule-set store with two sets."""
    doc = {
        "sets": [
            {"name": "default", "rules": [
                {"domain_suffix": ["example.com", "example.org"], "action": "route", "outbound": "manual"},
            ]},
            {"name": "streaming", "rules": [
                {"domain_suffix": ["netflix.com", "nflxvideo.net"], "action": "route", "outbound": "hk-01"},
                {"port": 443, "action": "route", "outbound": "direct"},
            ]},
        ]
    }
    rules_store.path.write_text(json.dumps(doc), encoding="utf-8")
    return doc


SUBSCRIPTION_URL = "https://sub.example.com/api/v1/client?token=abc"


class FakeFetcher:
    """Stand-in for SubscriptionFetcher: url -> content or FetchResult."""

    def __init__(self, responses: dict = None):
        self.responses = dict(responses or {})
        self.calls = []

    def __call__(self, url: str):
        from subscription_service import FetchResult, SubscriptionFetchError

        self.calls.append(url)
        value = self.responses.get(url)
        if value is None:
            raise SubscriptionFetchError("Failed to fetch subscription: HTTP 404", status_code=404)
        if isinstance(value, FetchResult):
            return value
        return FetchResult(content=value)


@pytest.fixture
def subscription_url() -> str:
    return SUBSCRIPTION_URL


@pytest.fixture
def fetcher_factory():
    """Build a FakeFetcher from a url -> content mapping."""
    return FakeFetcher


@pytest.fixture
def fake_fetcher(sample_vmess_uri) -> FakeFetcher:
    """Fetcher serving one vmess node at SUBSCRIPTION_URL."""
    return FakeFetcher({SUBSCRIPTION_URL: sample_vmess_uri})


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def subscription_service(user_db, config_repo, rules_store, fake_fetcher, events):
    from subscription_service import SubscriptionService

    return SubscriptionService(
        user_db,
        config_repo,
        rules_store,
        fetcher=fake_fetcher,
        notify=lambda event, payload: events.append((event, payload)),
    )
