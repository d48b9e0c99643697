"""
conftest.py - Shared pytest fixtures for marketplace tests

Provides common fixtures used across unit, functional and conformance tests:
- A registry with a few minted assets
- A marketplace with funded parties
- A marketplace with one item already listed
"""

import pytest
from decimal import Decimal

from marketplace import InMemoryAssetRegistry

from tests.helpers import FEE, make_market, fund_parties


@pytest.fixture
def registry():
    """Registry with alice holding three assets and bob one."""
    reg = InMemoryAssetRegistry()
    reg.mint("punks", "1", "alice")
    reg.mint("punks", "2", "alice")
    reg.mint("apes", "9", "alice")
    reg.mint("apes", "10", "bob")
    return reg


@pytest.fixture
def market(registry):
    """Marketplace with alice, bob and carol funded."""
    m = make_market(registry)
    fund_parties(
        m,
        alice=Decimal("10"),
        bob=Decimal("500"),
        carol=Decimal("500"),
    )
    return m


@pytest.fixture
def listed(market):
    """(market, item_id) with alice's punks/1 listed at 100."""
    item_id = market.list_item("alice", "punks", "1", Decimal("100"), FEE)
    return market, item_id
