"""Shared pytest fixtures for BorrowMyBike tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from .fakes import FakeGateway, InMemoryLedgerStore  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_oidc_jwks_cache():
    """Reset global JWKS cache to avoid cross-test contamination.

    The OIDC JWKS cache is a module-level global that persists between tests;
    a cached JWKS from a previous test would not match the current test's keys.
    """
    import borrowmybike.api.auth as auth_module

    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0
    yield
    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0


@pytest.fixture
def ledger():
    return InMemoryLedgerStore()


@pytest.fixture
def gateway():
    return FakeGateway()
