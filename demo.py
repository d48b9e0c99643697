#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Learn the Marketplace Step by Step

A walk through one marketplace, from an empty funds book to a resale.
Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:  Foundation   - Registry, funds book, accounts
  4-6:  Trading      - Listing, rejected buys, a settled sale
  7-8:  Seller tools - Repricing, canceling
  9-10: Guarantees   - Atomic settlement, conservation proof

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import sys

from marketplace import (
    Marketplace, MarketConfig, InMemoryAssetRegistry,
    MarketError, AssetTransferFailed, SYSTEM_WALLET, event_to_dict,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)
    currency: str = "USD"
    listing_fee: Decimal = Decimal("2.50")

    alice_deposit: Decimal = Decimal("50.00")
    bob_deposit: Decimal = Decimal("1000.00")
    carol_deposit: Decimal = Decimal("1000.00")

    first_price: Decimal = Decimal("300.00")
    reprice_to: Decimal = Decimal("250.00")


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    print(f"\n--- {text} ---\n")


def show_balances(market: Marketplace, *wallets: str):
    for w in wallets:
        print(f"  {w:<14} {market.balance_of(w):>10} {market.config.currency}")


# ============================================================================
# PHASE 1: FOUNDATION (Steps 1-3)
# ============================================================================

def step_01_registry():
    step_header(1, "The Asset Registry",
        "Titles to unique assets live outside the marketplace.")

    print("""
    Each asset is a (collection_ref, token_ref) pair with exactly one holder.
    The marketplace never owns a title outright: it asks the registry to move
    it into custody on listing and out again on sale or cancel.
    """)

    registry = InMemoryAssetRegistry()
    registry.mint("genesis", "1", "alice")
    registry.mint("genesis", "2", "alice")
    registry.mint("portraits", "7", "carol")

    section_header("Registry")
    for holder in ("alice", "carol"):
        print(f"  {holder:<8} holds {registry.assets_of(holder)}")
    return registry


def step_02_marketplace(registry: InMemoryAssetRegistry):
    step_header(2, "The Marketplace",
        "A marketplace pairs the registry with a double-entry funds book.")

    print(f">>> Marketplace(registry, MarketConfig(listing_fee={CONFIG.listing_fee}, currency='{CONFIG.currency}', decimal_places=2))")
    market = Marketplace(
        registry,
        MarketConfig(listing_fee=CONFIG.listing_fee, currency=CONFIG.currency, decimal_places=2),
        initial_time=CONFIG.start_time,
        verbose=True,
    )

    section_header("Funds Book")
    print(f"Ledger name:        {market.ledger.name}")
    print(f"Units:              {market.ledger.list_units()}")
    print(f"Wallets:            {market.ledger.list_wallets()}")
    print(f"Listing fee:        {market.listing_fee}")
    print("""
    Fees are held in the escrow wallet while an item is listed and released to
    the operator wallet when it is sold or canceled.
    """)
    return market


def step_03_accounts(market: Marketplace):
    step_header(3, "Opening Accounts",
        "Cash enters through the system wallet, so the book always sums to zero.")

    market.open_account("alice", deposit=CONFIG.alice_deposit)
    market.open_account("bob", deposit=CONFIG.bob_deposit)
    market.open_account("carol", deposit=CONFIG.carol_deposit)

    section_header("Balances")
    show_balances(market, "alice", "bob", "carol", SYSTEM_WALLET)
    return market


# ============================================================================
# PHASE 2: TRADING (Steps 4-6)
# ============================================================================

def step_04_list(market: Marketplace):
    step_header(4, "Listing an Asset",
        "Listing takes custody of the asset and escrows one listing fee.")

    item_id = market.list_item("alice", "genesis", "1", CONFIG.first_price, CONFIG.listing_fee)

    section_header("After Listing")
    print(f"  record:   {market.get_item(item_id)!r}")
    print(f"  holder:   {market.registry.owner_of('genesis', '1')}")
    show_balances(market, "alice", "market_escrow")
    return item_id


def step_05_rejections(market: Marketplace, item_id: int):
    step_header(5, "Rejected Operations",
        "Every failure names its cause and changes nothing.")

    attempts = [
        ("bob underpays", lambda: market.buy("bob", item_id, Decimal("1.00"))),
        ("alice buys her own item", lambda: market.buy("alice", item_id, CONFIG.first_price)),
        ("bob reprices alice's item", lambda: market.reprice("bob", item_id, Decimal("1.00"), CONFIG.listing_fee)),
        ("alice lists it twice", lambda: market.list_item("alice", "genesis", "1", Decimal("1.00"), CONFIG.listing_fee)),
        ("bob lists carol's asset", lambda: market.list_item("bob", "portraits", "7", Decimal("1.00"), CONFIG.listing_fee)),
    ]
    for label, attempt in attempts:
        section_header(label)
        try:
            attempt()
        except MarketError as e:
            print(f"  caught {type(e).__name__}")


def step_06_buy(market: Marketplace, item_id: int):
    step_header(6, "A Settled Sale",
        "Payment, fee release and custody all happen in one step.")

    market.buy("bob", item_id, CONFIG.first_price)

    section_header("After Sale")
    print(f"  holder:        {market.registry.owner_of('genesis', '1')}")
    print(f"  owned by bob:  {market.fetch_owned('bob')}")
    show_balances(market, "alice", "bob", "market_escrow", "operator")


# ============================================================================
# PHASE 3: SELLER TOOLS (Steps 7-8)
# ============================================================================

def step_07_reprice(market: Marketplace):
    step_header(7, "Repricing",
        "Each price change costs one more listing fee.")

    item_id = market.list_item("alice", "genesis", "2", CONFIG.first_price, CONFIG.listing_fee)
    market.reprice("alice", item_id, CONFIG.reprice_to, CONFIG.listing_fee)

    section_header("Unsold")
    for record in market.fetch_unsold():
        print(f"  {record!r}  fees escrowed={record.escrowed_fees}")
    return item_id


def step_08_cancel(market: Marketplace, item_id: int):
    step_header(8, "Canceling",
        "Cancel returns the asset to the seller; fees are not refunded.")

    market.cancel("alice", item_id)

    section_header("After Cancel")
    print(f"  holder:   {market.registry.owner_of('genesis', '2')}")
    print(f"  alice's listings: {market.fetch_listed_by('alice')}")
    show_balances(market, "alice", "market_escrow", "operator")


# ============================================================================
# PHASE 4: GUARANTEES (Steps 9-10)
# ============================================================================

class OfflineRegistry(InMemoryAssetRegistry):
    """A registry that refuses every transfer while offline."""

    def __init__(self):
        super().__init__()
        self.offline = False

    def transfer(self, source, dest, collection_ref, token_ref) -> bool:
        if self.offline:
            return False
        return super().transfer(source, dest, collection_ref, token_ref)


def step_09_atomicity():
    step_header(9, "Atomic Settlement",
        "If custody cannot move, no money moves either.")

    registry = OfflineRegistry()
    registry.mint("portraits", "1", "dana")
    market = Marketplace(
        registry,
        MarketConfig(listing_fee=CONFIG.listing_fee, currency=CONFIG.currency, decimal_places=2),
        initial_time=CONFIG.start_time,
        verbose=False,
    )
    market.open_account("dana", deposit=Decimal("10.00"))
    market.open_account("erin", deposit=Decimal("500.00"))
    item_id = market.list_item("dana", "portraits", "1", Decimal("200.00"), CONFIG.listing_fee)

    registry.offline = True
    try:
        market.buy("erin", item_id, Decimal("200.00"))
    except AssetTransferFailed as e:
        print(f"  caught AssetTransferFailed: {e}")

    section_header("Nothing Moved")
    print(f"  state:  {market.get_item(item_id).state.value}")
    print(f"  holder: {registry.owner_of('portraits', '1')}")
    show_balances(market, "dana", "erin")


def step_10_conservation(market: Marketplace):
    step_header(10, "Conservation Proof",
        "Every wallet sums to zero; the notifications tell the whole story.")

    result = market.ledger.verify_double_entry()
    print(f"  valid:    {result['valid']}")
    print(f"  supplies: {result['supplies']}")

    section_header("Notifications")
    for event in market.history:
        print(f"  {event_to_dict(event)}")


def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       MARKETPLACE - INTERACTIVE TUTORIAL")
    print("=" * 70)
    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")
    wait_for_enter()

    registry = step_01_registry()
    wait_for_enter()

    market = step_02_marketplace(registry)
    wait_for_enter()

    step_03_accounts(market)
    wait_for_enter()

    item_id = step_04_list(market)
    wait_for_enter()

    step_05_rejections(market, item_id)
    wait_for_enter()

    step_06_buy(market, item_id)
    wait_for_enter()

    second = step_07_reprice(market)
    wait_for_enter()

    step_08_cancel(market, second)
    wait_for_enter()

    step_09_atomicity()
    wait_for_enter()

    step_10_conservation(market)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - See marketplace/settlement.py for how each operation becomes moves
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
