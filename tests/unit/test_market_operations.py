"""
test_market_operations.py - Unit tests for Marketplace operations

Tests:
- Construction and accounts
- list_item: validation, custody, fee escrow, events
- buy: payment, custody, fee release, every failure mode
- reprice: fee on every change, seller-only, same price
- cancel: custody returned, fees kept by operator
- Queries and notifications
"""

import pytest
from datetime import datetime
from decimal import Decimal

from marketplace import (
    Marketplace, MarketConfig, Ledger, InMemoryAssetRegistry, ItemState,
    Listed, Sold, PriceChanged, Canceled, SYSTEM_WALLET,
    InvalidPrice, FeeMismatch, WrongPayment, SelfPurchase, NotSeller,
    NotAssetOwner, AlreadySold, AlreadyCanceled, SamePrice, AssetAlreadyListed,
    ItemNotFound, PaymentFailed, ValidationError, ReservedIdentity, cash,
)

from tests.helpers import FEE, make_market, fund_parties, assert_market_invariants


# ============================================================================
# CONSTRUCTION AND ACCOUNTS
# ============================================================================

class TestMarketplaceCreation:

    def test_defaults(self):
        m = Marketplace(InMemoryAssetRegistry(), verbose=False)
        assert m.listing_fee == Decimal("0.025")
        assert m.ledger.list_units() == ["ETH"]
        assert m.ledger.is_registered("market_escrow")
        assert m.ledger.is_registered("operator")
        assert m.items == []

    def test_reuses_existing_ledger(self):
        ledger = Ledger("shared", verbose=False)
        ledger.register_unit(cash("USD", "US Dollar"))
        m = Marketplace(
            InMemoryAssetRegistry(),
            MarketConfig(listing_fee=Decimal("1"), currency="USD", decimal_places=2),
            ledger=ledger,
            verbose=False,
        )
        assert m.ledger is ledger
        assert ledger.list_units() == ["USD"]

    def test_existing_unit_precision_must_match_config(self):
        ledger = Ledger("shared", verbose=False)
        ledger.register_unit(cash("USD", "US Dollar", decimal_places=2))
        with pytest.raises(ValueError, match="decimal places"):
            Marketplace(
                InMemoryAssetRegistry(),
                MarketConfig(listing_fee=Decimal("1"), currency="USD", decimal_places=6),
                ledger=ledger,
                verbose=False,
            )

    def test_markets_sharing_a_ledger_settle_independently(self):
        ledger = Ledger("shared", verbose=False)
        registry = InMemoryAssetRegistry()
        registry.mint("east_art", "1", "alice")
        registry.mint("west_art", "1", "alice")
        config = MarketConfig(listing_fee=Decimal("1"), currency="USD", decimal_places=2)
        east = Marketplace(registry, config, ledger=ledger, name="east", verbose=False)
        west = Marketplace(registry, config, ledger=ledger, name="west", verbose=False)

        east.open_account("alice", deposit=Decimal("10"))
        west.deposit("alice", Decimal("10"))
        east_id = east.list_item("alice", "east_art", "1", Decimal("5"), Decimal("1"))
        west_id = west.list_item("alice", "west_art", "1", Decimal("5"), Decimal("1"))

        assert east_id == west_id == 1
        assert ledger.get_balance("alice", "USD") == Decimal("18")
        assert ledger.get_balance("market_escrow", "USD") == Decimal("2")
        assert ledger.verify_double_entry()['valid']

    def test_fee_finer_than_currency_rejected(self):
        with pytest.raises(ValueError, match="precision"):
            make_market(fee=Decimal("0.001"))

    def test_initial_time(self):
        m = Marketplace(InMemoryAssetRegistry(), initial_time=datetime(2030, 5, 1), verbose=False)
        assert m.current_time == datetime(2030, 5, 1)


class TestAccounts:

    def test_open_account_with_deposit(self):
        m = make_market()
        m.open_account("alice", deposit=Decimal("25"))
        assert m.balance_of("alice") == Decimal("25")
        assert m.balance_of(SYSTEM_WALLET) == Decimal("-25")

    def test_open_account_without_deposit(self):
        m = make_market()
        m.open_account("alice")
        assert m.balance_of("alice") == Decimal("0")

    @pytest.mark.parametrize("wallet", ["system", "market", "market_escrow", "operator"])
    def test_reserved_wallets_rejected(self, wallet):
        with pytest.raises(ValueError, match="reserved"):
            make_market().open_account(wallet)

    def test_duplicate_account_rejected(self):
        m = make_market()
        m.open_account("alice")
        with pytest.raises(ValueError, match="already registered"):
            m.open_account("alice")

    def test_repeated_deposits_accumulate(self):
        m = make_market()
        m.open_account("alice")
        m.deposit("alice", Decimal("5"))
        m.deposit("alice", Decimal("5"))
        assert m.balance_of("alice") == Decimal("10")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), Decimal("0.001"), "abc"])
    def test_bad_deposit_rejected(self, amount):
        m = make_market()
        m.open_account("alice")
        with pytest.raises(ValidationError):
            m.deposit("alice", amount)

    def test_deposit_to_unknown_wallet_fails(self):
        with pytest.raises(PaymentFailed):
            make_market().deposit("ghost", Decimal("5"))


# ============================================================================
# LIST
# ============================================================================

class TestListItem:

    def test_list_creates_listed_record(self, market, registry):
        item_id = market.list_item("alice", "punks", "1", Decimal("100"), FEE)
        assert item_id == 1
        record = market.get_item(item_id)
        assert record.state is ItemState.LISTED
        assert record.current_owner is None
        assert record.seller == "alice"
        assert record.price == Decimal("100")
        assert record.escrowed_fees == FEE
        assert record.revision == 0
        assert record.listed_at == market.current_time

    def test_custody_moves_to_market(self, market, registry):
        market.list_item("alice", "punks", "1", Decimal("100"), FEE)
        assert registry.owner_of("punks", "1") == "market"

    def test_fee_escrowed(self, market):
        market.list_item("alice", "punks", "1", Decimal("100"), FEE)
        assert market.balance_of("alice") == Decimal("9")
        assert market.balance_of("market_escrow") == FEE
        assert market.balance_of("operator") == Decimal("0")

    def test_ids_strictly_increase(self, market):
        a = market.list_item("alice", "punks", "1", Decimal("1"), FEE)
        b = market.list_item("alice", "punks", "2", Decimal("1"), FEE)
        c = market.list_item("bob", "apes", "10", Decimal("1"), FEE)
        assert (a, b, c) == (1, 2, 3)

    def test_amounts_coerced(self, market):
        item_id = market.list_item("alice", "punks", "1", "12.50", 1)
        assert market.get_item(item_id).price == Decimal("12.5")

    def test_emits_listed(self, market):
        item_id = market.list_item("alice", "punks", "1", Decimal("100"), FEE)
        assert market.history == [
            Listed(item_id, "punks", "1", "alice", Decimal("100"), market.current_time)
        ]

    @pytest.mark.parametrize("price", [Decimal("0"), Decimal("-5"), Decimal("0.001"),
                                       Decimal("Infinity"), "not-a-number"])
    def test_invalid_price(self, market, price):
        with pytest.raises(InvalidPrice):
            market.list_item("alice", "punks", "1", price, FEE)

    @pytest.mark.parametrize("fee", [Decimal("0"), Decimal("0.99"), Decimal("2")])
    def test_fee_mismatch(self, market, fee):
        with pytest.raises(FeeMismatch):
            market.list_item("alice", "punks", "1", Decimal("100"), fee)

    def test_not_asset_owner(self, market):
        with pytest.raises(NotAssetOwner):
            market.list_item("bob", "punks", "1", Decimal("100"), FEE)

    def test_unknown_asset(self, market):
        with pytest.raises(NotAssetOwner):
            market.list_item("alice", "punks", "404", Decimal("100"), FEE)

    def test_already_listed(self, listed):
        market, item_id = listed
        with pytest.raises(AssetAlreadyListed, match=f"item {item_id}"):
            market.list_item("alice", "punks", "1", Decimal("100"), FEE)

    def test_price_checked_before_fee(self, market):
        with pytest.raises(InvalidPrice):
            market.list_item("alice", "punks", "1", Decimal("0"), Decimal("0"))

    def test_failed_list_changes_nothing(self, market, registry):
        with pytest.raises(FeeMismatch):
            market.list_item("alice", "punks", "1", Decimal("100"), Decimal("2"))
        assert market.items == []
        assert market.history == []
        assert registry.owner_of("punks", "1") == "alice"
        assert market.balance_of("alice") == Decimal("10")

    def test_cannot_afford_fee(self, registry):
        m = make_market(registry)
        m.open_account("alice", deposit=Decimal("0.5"))
        with pytest.raises(PaymentFailed):
            m.list_item("alice", "punks", "1", Decimal("100"), FEE)
        assert registry.owner_of("punks", "1") == "alice"
        assert m.items == []

    def test_failed_list_does_not_consume_id(self, market):
        with pytest.raises(NotAssetOwner):
            market.list_item("bob", "punks", "1", Decimal("100"), FEE)
        assert market.list_item("alice", "punks", "1", Decimal("100"), FEE) == 1

    def test_zero_fee_market_registers_seller(self, registry):
        m = make_market(registry, fee=Decimal("0"))
        item_id = m.list_item("alice", "punks", "1", Decimal("5"), Decimal("0"))
        assert m.ledger.is_registered("alice")
        assert m.get_item(item_id).escrowed_fees == Decimal("0")


# ============================================================================
# BUY
# ============================================================================

class TestBuy:

    def test_buy_settles(self, listed, registry):
        market, item_id = listed
        record = market.buy("bob", item_id, Decimal("100"))
        assert record.state is ItemState.SOLD
        assert record.current_owner == "bob"
        assert record.escrowed_fees == Decimal("0")
        assert market.balance_of("alice") == Decimal("109")
        assert market.balance_of("bob") == Decimal("400")
        assert market.balance_of("operator") == FEE
        assert market.balance_of("market_escrow") == Decimal("0")
        assert registry.owner_of("punks", "1") == "bob"

    def test_buy_returns_committed_record(self, listed):
        market, item_id = listed
        assert market.buy("bob", item_id, Decimal("100")) == market.get_item(item_id)

    def test_emits_sold(self, listed):
        market, item_id = listed
        market.buy("bob", item_id, Decimal("100"))
        assert market.history[-1] == Sold(item_id, "bob", Decimal("100"), market.current_time)

    def test_equal_decimal_forms_accepted(self, listed):
        market, item_id = listed
        market.buy("bob", item_id, "100.00")
        assert market.get_item(item_id).state is ItemState.SOLD

    def test_item_not_found(self, market):
        with pytest.raises(ItemNotFound):
            market.buy("bob", 99, Decimal("100"))

    @pytest.mark.parametrize("amount", [Decimal("50"), Decimal("100.01"), Decimal("0")])
    def test_wrong_payment(self, listed, amount):
        market, item_id = listed
        with pytest.raises(WrongPayment):
            market.buy("bob", item_id, amount)
        assert market.get_item(item_id).state is ItemState.LISTED

    def test_self_purchase(self, listed):
        market, item_id = listed
        with pytest.raises(SelfPurchase):
            market.buy("alice", item_id, Decimal("100"))

    def test_already_sold(self, listed):
        market, item_id = listed
        market.buy("bob", item_id, Decimal("100"))
        with pytest.raises(AlreadySold):
            market.buy("carol", item_id, Decimal("100"))

    def test_already_canceled(self, listed):
        market, item_id = listed
        market.cancel("alice", item_id)
        with pytest.raises(AlreadyCanceled):
            market.buy("bob", item_id, Decimal("100"))

    def test_state_checked_before_payment(self, listed):
        market, item_id = listed
        market.buy("bob", item_id, Decimal("100"))
        with pytest.raises(AlreadySold):
            market.buy("carol", item_id, Decimal("1"))

    def test_insufficient_funds(self, listed, registry):
        market, item_id = listed
        market.open_account("dave", deposit=Decimal("99"))
        with pytest.raises(PaymentFailed):
            market.buy("dave", item_id, Decimal("100"))
        assert market.get_item(item_id).state is ItemState.LISTED
        assert market.balance_of("dave") == Decimal("99")
        assert registry.owner_of("punks", "1") == "market"

    def test_buyer_without_account(self, listed, registry):
        market, item_id = listed
        with pytest.raises(PaymentFailed):
            market.buy("ghost", item_id, Decimal("100"))
        assert registry.owner_of("punks", "1") == "market"

    def test_buyer_can_relist(self, listed, registry):
        market, item_id = listed
        market.buy("bob", item_id, Decimal("100"))
        new_id = market.list_item("bob", "punks", "1", Decimal("150"), FEE)
        assert new_id == item_id + 1
        assert market.get_item(new_id).seller == "bob"
        assert_market_invariants(market)


# ============================================================================
# REPRICE
# ============================================================================

class TestReprice:

    def test_reprice_updates_price_and_charges_fee(self, listed):
        market, item_id = listed
        record = market.reprice("alice", item_id, Decimal("80"), FEE)
        assert record.price == Decimal("80")
        assert record.revision == 1
        assert record.escrowed_fees == Decimal("2")
        assert market.balance_of("alice") == Decimal("8")
        assert market.balance_of("market_escrow") == Decimal("2")

    def test_every_reprice_charges_again(self, listed):
        market, item_id = listed
        market.reprice("alice", item_id, Decimal("80"), FEE)
        market.reprice("alice", item_id, Decimal("100"), FEE)
        market.reprice("alice", item_id, Decimal("80"), FEE)
        assert market.get_item(item_id).escrowed_fees == Decimal("4")
        assert market.balance_of("alice") == Decimal("6")

    def test_sale_releases_all_escrowed_fees(self, listed):
        market, item_id = listed
        market.reprice("alice", item_id, Decimal("80"), FEE)
        market.buy("bob", item_id, Decimal("80"))
        assert market.balance_of("operator") == Decimal("2")
        assert market.balance_of("alice") == Decimal("88")

    def test_emits_price_changed(self, listed):
        market, item_id = listed
        market.reprice("alice", item_id, Decimal("80"), FEE)
        assert market.history[-1] == PriceChanged(item_id, Decimal("80"), market.current_time)

    def test_visible_in_unsold(self, listed):
        market, item_id = listed
        market.reprice("alice", item_id, Decimal("80"), FEE)
        assert market.fetch_unsold()[0].price == Decimal("80")

    def test_same_price(self, listed):
        market, item_id = listed
        with pytest.raises(SamePrice):
            market.reprice("alice", item_id, Decimal("100.0"), FEE)
        assert market.balance_of("alice") == Decimal("9")

    def test_not_seller(self, listed):
        market, item_id = listed
        with pytest.raises(NotSeller):
            market.reprice("bob", item_id, Decimal("80"), FEE)

    def test_invalid_price(self, listed):
        market, item_id = listed
        with pytest.raises(InvalidPrice):
            market.reprice("alice", item_id, Decimal("0"), FEE)

    def test_fee_mismatch(self, listed):
        market, item_id = listed
        with pytest.raises(FeeMismatch):
            market.reprice("alice", item_id, Decimal("80"), Decimal("0"))
        assert market.get_item(item_id).price == Decimal("100")

    def test_item_not_found(self, market):
        with pytest.raises(ItemNotFound):
            market.reprice("alice", 42, Decimal("80"), FEE)

    def test_after_sale(self, listed):
        market, item_id = listed
        market.buy("bob", item_id, Decimal("100"))
        with pytest.raises(AlreadySold):
            market.reprice("alice", item_id, Decimal("80"), FEE)

    def test_after_cancel(self, listed):
        market, item_id = listed
        market.cancel("alice", item_id)
        with pytest.raises(AlreadyCanceled):
            market.reprice("alice", item_id, Decimal("80"), FEE)

    def test_cannot_afford_fee(self, registry):
        m = make_market(registry)
        m.open_account("alice", deposit=Decimal("1"))
        item_id = m.list_item("alice", "punks", "1", Decimal("100"), FEE)
        with pytest.raises(PaymentFailed):
            m.reprice("alice", item_id, Decimal("80"), FEE)
        record = m.get_item(item_id)
        assert record.price == Decimal("100")
        assert record.revision == 0


# ============================================================================
# CANCEL
# ============================================================================

class TestCancel:

    def test_cancel_returns_custody(self, listed, registry):
        market, item_id = listed
        record = market.cancel("alice", item_id)
        assert record.state is ItemState.CANCELED
        assert record.current_owner == "alice"
        assert registry.owner_of("punks", "1") == "alice"

    def test_fee_not_refunded(self, listed):
        market, item_id = listed
        market.cancel("alice", item_id)
        assert market.balance_of("alice") == Decimal("9")
        assert market.balance_of("operator") == FEE
        assert market.balance_of("market_escrow") == Decimal("0")

    def test_emits_canceled(self, listed):
        market, item_id = listed
        market.cancel("alice", item_id)
        assert market.history[-1] == Canceled(item_id, market.current_time)

    def test_not_seller(self, listed):
        market, item_id = listed
        with pytest.raises(NotSeller):
            market.cancel("bob", item_id)

    def test_item_not_found(self, market):
        with pytest.raises(ItemNotFound):
            market.cancel("alice", 1)

    def test_twice(self, listed):
        market, item_id = listed
        market.cancel("alice", item_id)
        with pytest.raises(AlreadyCanceled):
            market.cancel("alice", item_id)

    def test_after_sale(self, listed):
        market, item_id = listed
        market.buy("bob", item_id, Decimal("100"))
        with pytest.raises(AlreadySold):
            market.cancel("alice", item_id)

    def test_relist_after_cancel(self, listed):
        market, item_id = listed
        market.cancel("alice", item_id)
        new_id = market.list_item("alice", "punks", "1", Decimal("70"), FEE)
        assert new_id != item_id
        assert market.get_item(item_id).state is ItemState.CANCELED
        assert [r.item_id for r in market.fetch_unsold()] == [new_id]


# ============================================================================
# MARKETPLACE WALLETS AS CALLERS
# ============================================================================

RESERVED = ["system", "market", "market_escrow", "operator"]


class TestReservedCallers:

    @pytest.mark.parametrize("wallet", RESERVED)
    def test_list_rejected(self, market, registry, wallet):
        registry.mint("gems", "1", wallet)
        with pytest.raises(ReservedIdentity):
            market.list_item(wallet, "gems", "1", Decimal("5"), FEE)
        assert market.items == []
        assert registry.owner_of("gems", "1") == wallet

    @pytest.mark.parametrize("wallet", RESERVED)
    def test_buy_rejected(self, listed, wallet):
        market, item_id = listed
        with pytest.raises(ReservedIdentity):
            market.buy(wallet, item_id, Decimal("100"))
        assert market.get_item(item_id).state is ItemState.LISTED
        assert market.balance_of("market_escrow") == FEE
        assert_market_invariants(market)

    @pytest.mark.parametrize("wallet", RESERVED)
    def test_reprice_rejected(self, listed, wallet):
        market, item_id = listed
        with pytest.raises(ReservedIdentity):
            market.reprice(wallet, item_id, Decimal("50"), FEE)
        assert market.get_item(item_id).price == Decimal("100")

    @pytest.mark.parametrize("wallet", RESERVED)
    def test_cancel_rejected(self, listed, wallet):
        market, item_id = listed
        with pytest.raises(ReservedIdentity):
            market.cancel(wallet, item_id)
        assert market.get_item(item_id).state is ItemState.LISTED

    @pytest.mark.parametrize("wallet", RESERVED)
    def test_deposit_rejected(self, market, wallet):
        with pytest.raises(ReservedIdentity):
            market.deposit(wallet, Decimal("5"))

    def test_escrow_cannot_spend_other_items_fees(self, market):
        ids = [
            market.list_item("alice", collection, token, Decimal("1"), FEE)
            for collection, token in [("punks", "1"), ("punks", "2"), ("apes", "9")]
        ]
        with pytest.raises(ReservedIdentity):
            market.buy("market_escrow", ids[0], Decimal("1"))
        market.buy("bob", ids[1], Decimal("1"))
        market.buy("bob", ids[2], Decimal("1"))
        assert market.balance_of("operator") == FEE * 2
        assert_market_invariants(market)

    def test_state_checked_before_caller(self, listed):
        market, item_id = listed
        market.buy("bob", item_id, Decimal("100"))
        with pytest.raises(AlreadySold):
            market.buy("market_escrow", item_id, Decimal("100"))


# ============================================================================
# QUERIES AND NOTIFICATIONS
# ============================================================================

class TestQueries:

    def test_fetches(self, market):
        a = market.list_item("alice", "punks", "1", Decimal("10"), FEE)
        b = market.list_item("alice", "punks", "2", Decimal("20"), FEE)
        c = market.list_item("bob", "apes", "10", Decimal("30"), FEE)
        market.buy("carol", b, Decimal("20"))
        market.cancel("bob", c)

        assert [r.item_id for r in market.fetch_unsold()] == [a]
        assert [r.item_id for r in market.fetch_owned("carol")] == [b]
        assert [r.item_id for r in market.fetch_owned("bob")] == [c]
        assert [r.item_id for r in market.fetch_listed_by("alice")] == [a, b]
        assert [r.item_id for r in market.fetch_listed_by("bob")] == [c]

    def test_get_item_not_found(self, market):
        with pytest.raises(ItemNotFound):
            market.get_item(1)

    def test_items_keeps_terminal_records(self, listed):
        market, item_id = listed
        market.cancel("alice", item_id)
        assert [r.item_id for r in market.items] == [item_id]


class TestNotifications:

    def test_subscriber_receives_committed_events(self, market):
        seen = []
        market.subscribe(lambda e: seen.append((e.action, market.get_item(e.item_id).state)))
        item_id = market.list_item("alice", "punks", "1", Decimal("10"), FEE)
        market.buy("bob", item_id, Decimal("10"))
        assert seen == [("listed", ItemState.LISTED), ("sold", ItemState.SOLD)]

    def test_failed_operations_emit_nothing(self, listed):
        market, item_id = listed
        with pytest.raises(WrongPayment):
            market.buy("bob", item_id, Decimal("1"))
        assert [e.action for e in market.history] == ["listed"]

    def test_subscriber_may_call_back_into_market(self, market):
        # Relist automatically whenever an item is canceled
        def relist(event):
            if isinstance(event, Canceled):
                record = market.get_item(event.item_id)
                market.list_item(record.seller, record.collection_ref, record.token_ref,
                                 record.price, market.listing_fee)

        market.subscribe(relist)
        item_id = market.list_item("alice", "punks", "1", Decimal("10"), FEE)
        market.cancel("alice", item_id)
        assert [r.item_id for r in market.fetch_unsold()] == [item_id + 1]

    def test_failing_subscriber_does_not_fail_committed_buy(self, listed):
        market, item_id = listed
        seen = []

        def buy_again(event):
            if isinstance(event, Sold):
                market.buy("carol", event.item_id, Decimal("100"))

        market.subscribe(buy_again)
        market.subscribe(seen.append)
        record = market.buy("bob", item_id, Decimal("100"))

        assert record.state is ItemState.SOLD
        assert record.current_owner == "bob"
        assert market.balance_of("bob") == Decimal("400")
        assert [e.action for e in seen] == ["sold"]
        failures = market.notification_failures
        assert len(failures) == 1
        assert isinstance(failures[0].error, AlreadySold)
        assert failures[0].event == seen[0]
        assert_market_invariants(market)


class TestVerbose:

    def test_prints_outcomes(self, registry, capsys):
        m = Marketplace(
            registry,
            MarketConfig(listing_fee=Decimal("1"), currency="USD", decimal_places=2),
            verbose=True,
        )
        m.open_account("alice", deposit=Decimal("10"))
        item_id = m.list_item("alice", "punks", "1", Decimal("5"), Decimal("1"))
        with pytest.raises(SelfPurchase):
            m.buy("alice", item_id, Decimal("5"))
        out = capsys.readouterr().out
        assert "✓ LISTED: Item#1" in out
        assert "✗ BUY REJECTED: SelfPurchase" in out
