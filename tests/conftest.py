"""Shared fixtures: in-memory keychain, temp registry, simulated sites."""

import httpx
import keyring
import keyring.errors
import pytest
from keyring.backend import KeyringBackend
from sitedata import SITE_DATA, SiteSimulator

from fedstats import federations
from fedstats.collector import AggregateCollector
from fedstats.config import CollectorConfig, QueryConfig
from fedstats.errors import UnknownFederation
from fedstats.federations import Member, MembershipSnapshot
from fedstats.queries import QueryManager
from fedstats.store import InMemoryQueryStore


class MemoryKeyring(KeyringBackend):
    priority = 1

    def __init__(self):
        super().__init__()
        self.passwords = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        if (service, username) not in self.passwords:
            raise keyring.errors.PasswordDeleteError(username)
        del self.passwords[(service, username)]


@pytest.fixture(autouse=True)
def memory_keyring():
    """Keep member tokens out of the real OS keychain."""
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture(autouse=True)
def registry_path(tmp_path, monkeypatch):
    path = tmp_path / "federations.json"
    monkeypatch.setattr(federations, "_CONFIG_PATH", path)
    return path


@pytest.fixture
def members():
    return (
        Member(id="site-a", name="Site A", url="http://site-a.test", device_groups=["g1", "g2"]),
        Member(id="site-b", name="Site B", url="http://site-b.test", device_groups=["g2", "g3"]),
        Member(id="site-c", name="Site C", url="http://site-c.test", device_groups=["g3"]),
    )


@pytest.fixture
def snapshot(members):
    return MembershipSnapshot(federation_id="fed-1", members=members)


@pytest.fixture
def snapshot_lookup(snapshot):
    """Stands in for federations.snapshot with a fixed membership."""

    def _lookup(federation_id):
        if federation_id != snapshot.federation_id:
            raise UnknownFederation(f"Federation not found: {federation_id}")
        return snapshot

    return _lookup


@pytest.fixture
def sites():
    return SiteSimulator()


@pytest.fixture
def healthy(sites):
    for site_id, data in SITE_DATA.items():
        sites.serve(f"{site_id}.test", data)
    return sites


@pytest.fixture
def make_collector(sites):
    """Build a collector whose HTTP traffic goes to the site simulator."""

    def _make(**overrides):
        config = CollectorConfig(**{"site_timeout_s": 1.0, "retries": 1, **overrides})
        client = httpx.AsyncClient(transport=sites.transport())
        return AggregateCollector(client=client, config=config)

    return _make


@pytest.fixture
def make_manager(snapshot_lookup, make_collector):
    """Build a QueryManager over an in-memory store and the site simulator."""

    def _make(query_config: QueryConfig | None = None, **collector_overrides):
        return QueryManager(
            InMemoryQueryStore(),
            make_collector(**collector_overrides),
            snapshot=snapshot_lookup,
            config=query_config or QueryConfig(timeout_s=5.0),
        )

    return _make
