"""
helpers.py - Shared builders and invariant checks for marketplace tests
"""

from datetime import datetime
from decimal import Decimal

from marketplace import Marketplace, MarketConfig, InMemoryAssetRegistry, ItemState


FEE = Decimal("1")
START = datetime(2025, 1, 1)


def make_market(registry=None, fee: Decimal = FEE, **config_overrides) -> Marketplace:
    """Quiet marketplace settling in USD with 2 decimal places."""
    registry = registry or InMemoryAssetRegistry()
    config = MarketConfig(listing_fee=fee, currency="USD", decimal_places=2, **config_overrides)
    return Marketplace(registry, config, initial_time=START, verbose=False)


def fund_parties(market: Marketplace, **deposits) -> None:
    """open_account for each keyword: fund_parties(market, alice=Decimal("10"))."""
    for wallet, amount in deposits.items():
        market.open_account(wallet, deposit=amount)


def assert_market_invariants(market: Marketplace) -> None:
    """
    Checks that must hold after any sequence of operations, failed or not.

    - cash is conserved in the funds book
    - escrow holds exactly the fees of LISTED items
    - owner is unset iff LISTED
    - at most one LISTED record per asset, and the market holds its title
    """
    result = market.ledger.verify_double_entry()
    assert result['valid'], result['discrepancies']

    listed = [r for r in market.items if r.state is ItemState.LISTED]
    escrowed = sum((r.escrowed_fees for r in listed), Decimal("0"))
    assert market.balance_of(market.config.escrow_wallet) == escrowed

    keys = [r.asset_key for r in listed]
    assert len(keys) == len(set(keys))
    for r in market.items:
        assert (r.current_owner is None) == (r.state is ItemState.LISTED)
        if r.state is ItemState.LISTED:
            assert market.registry.owner_of(*r.asset_key) == market.config.market_wallet
