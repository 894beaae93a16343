"""
Pytest fixtures for the wager resolver tests.
"""
import time

import pytest
from web3.providers.rpc import HTTPProvider

from wager_resolver._rate_limited_log import reset_rate_limits
from wager_resolver.config import ChainRegistry, NetworkCatalog
from test_helpers.factories import CHAIN_ENV, FakeChain, make_signer


# Make time.sleep instantaneous so retries don't slow the suite down
@pytest.fixture(autouse=True)
def _fast_sleep(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda *_a, **_kw: None)


@pytest.fixture(autouse=True)
def _reset_caches():
    reset_rate_limits()
    NetworkCatalog._networks_cache = None
    yield
    reset_rate_limits()
    NetworkCatalog._networks_cache = None


@pytest.fixture(autouse=True)
def _patch_http_provider(monkeypatch):
    """
    Stub every Web3 HTTP call so no DNS / network traffic is triggered.
    """
    def _dummy(self, method, params=None, _=None):
        return {"jsonrpc": "2.0", "id": 1, "result": "0x0"}

    monkeypatch.setattr(HTTPProvider, "make_request", _dummy, raising=True)


@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def signer():
    return make_signer()


@pytest.fixture
def registry(fake_chain, signer):
    return ChainRegistry(environ=CHAIN_ENV, signer=signer, web3_factory=lambda chain: fake_chain.w3)
