"""
market.py - Item Ledger

The Marketplace class is the authoritative mapping from item_id to ItemRecord
and the only place item state changes. Each mutating operation follows the
same shape:

    acquire guard -> validate -> settle (funds + custody) -> commit record
    -> release guard -> publish notification

Key responsibilities:
    - Enforces the LISTED -> SOLD / LISTED -> CANCELED state machine
    - Keeps at most one active listing per asset
    - Rejects reentrant calls made while an operation is in flight
    - Refuses its own escrow, operator, custody and system wallets as callers
    - Serves the three read-only listing queries
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from .core import (
    AssetRegistry, AssetKey, ItemRecord, ItemState, MarketConfig, Move,
    TransactionOrigin, OriginType, SYSTEM_WALLET, ExecuteResult,
    MarketError, ValidationError, InvalidPrice, FeeMismatch, WrongPayment,
    SelfPurchase, NotSeller, NotAssetOwner, AlreadySold, AlreadyCanceled,
    SamePrice, AssetAlreadyListed, ReentrantCall, ReservedIdentity, ItemNotFound, PaymentFailed,
    build_transaction, cash, to_decimal,
)
from .events import (
    EventBus, EventHandler, HandlerFailure, MarketEvent,
    Listed, Sold, PriceChanged, Canceled,
)
from .ledger import Ledger
from .sequence import ItemIdSequence
from .settlement import (
    SettlementEngine, CustodyTransfer,
    compute_listing_fee, compute_sale_settlement, compute_cancel_settlement,
)
from . import views


class ReentrancyGuard:
    """
    Exclusive lock held for one top-level operation.

    Another thread blocks until the holder finishes. The holding thread
    calling in again gets ReentrantCall rather than a deadlock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._owner: Optional[int] = None
        self._operation: Optional[str] = None

    @contextmanager
    def hold(self, operation: str):
        me = threading.get_ident()
        if self._owner == me:
            raise ReentrantCall(
                f"{operation} called while {self._operation} is in flight"
            )
        with self._lock:
            self._owner = me
            self._operation = operation
            try:
                yield
            finally:
                self._owner = None
                self._operation = None

    @property
    def held(self) -> bool:
        return self._lock.locked()


class Marketplace:
    """
    Fixed-fee marketplace for unique assets with escrowed custody.

    Funds live in a double-entry Ledger (the funds book); asset titles live in
    an external AssetRegistry. Parties are wallet ids in both.

    Thread Safety:
        All mutating operations share one global ReentrancyGuard. Queries take
        a snapshot of the records and may run from any thread, including from
        inside a registry or event handler callback.

    Example:
        registry = InMemoryAssetRegistry()
        registry.mint("punks", "7", "alice")
        market = Marketplace(registry, MarketConfig(listing_fee=Decimal("1")))
        market.open_account("alice", deposit=Decimal("10"))
        market.open_account("bob", deposit=Decimal("500"))

        item_id = market.list_item("alice", "punks", "7", Decimal("100"), Decimal("1"))
        market.buy("bob", item_id, Decimal("100"))
        market.fetch_owned("bob")   # [Item#1(punks/7 sold ...)]
    """

    def __init__(
        self,
        registry: AssetRegistry,
        config: Optional[MarketConfig] = None,
        ledger: Optional[Ledger] = None,
        name: str = "market",
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
    ):
        """
        Create a marketplace.

        Args:
            registry: Asset Registry holding the titles being traded
            config: Fee, currency and wallet names (default: MarketConfig())
            ledger: Existing funds book to settle against (default: a new one)
            name: Marketplace identifier, used to name a new funds book and
                to scope contract ids; markets sharing a funds book need
                distinct names
            initial_time: Starting time for a new funds book
            verbose: Print one line per operation outcome (default: True)

        Raises:
            ValueError: If ledger already holds the currency at a different
                precision, or listing_fee is finer than that precision
        """
        self.name = name
        self.config = config or MarketConfig()
        self.registry = registry
        self.verbose = verbose
        self.ledger = ledger or Ledger(f"{name}_funds", initial_time, verbose=verbose)

        if self.config.currency not in self.ledger.list_units():
            self.ledger.register_unit(
                cash(self.config.currency, self.config.currency, self.config.decimal_places)
            )
        self._unit = self.ledger.get_unit(self.config.currency)
        if self._unit.decimal_places != self.config.decimal_places:
            raise ValueError(
                f"{self.config.currency} is registered with {self._unit.decimal_places} "
                f"decimal places, config says {self.config.decimal_places}"
            )
        if self._unit.round(self.config.listing_fee) != self.config.listing_fee:
            raise ValueError(
                f"listing_fee {self.config.listing_fee} exceeds {self.config.currency} precision"
            )
        for wallet in (self.config.escrow_wallet, self.config.operator_wallet):
            if not self.ledger.is_registered(wallet):
                self.ledger.register_wallet(wallet)

        self.settlement = SettlementEngine(self.ledger, registry, verbose=verbose)
        self._items: Dict[int, ItemRecord] = {}
        self._active_listings: Dict[AssetKey, int] = {}
        self._records_lock = threading.Lock()
        self._sequence = ItemIdSequence()
        self._guard = ReentrancyGuard()
        self._bus = EventBus(verbose=verbose)
        self._deposit_count = 0
        self._reserved = frozenset({
            SYSTEM_WALLET, self.config.market_wallet,
            self.config.escrow_wallet, self.config.operator_wallet,
        })

    # ========================================================================
    # ACCOUNTS
    # ========================================================================

    def open_account(self, wallet_id: str, deposit: Optional[Decimal] = None) -> str:
        """
        Register a party's funds wallet, optionally funding it.

        Raises:
            ValueError: If wallet_id is reserved or already registered
        """
        if wallet_id in self._reserved:
            raise ValueError(f"Wallet {wallet_id} is reserved")
        with self._guard.hold("open_account"):
            self.ledger.register_wallet(wallet_id)
        if deposit is not None:
            self.deposit(wallet_id, deposit)
        return wallet_id

    def deposit(self, wallet_id: str, amount: Decimal) -> None:
        """
        Issue cash into a wallet from the system wallet.

        Raises:
            ReservedIdentity: If wallet_id is one of the market's own wallets
            ValidationError: If amount is not a positive, representable amount
            PaymentFailed: If the funds book rejects the issuance
        """
        self._check_caller(wallet_id)
        amount = self._amount(amount, ValidationError, "deposit")
        if amount <= 0:
            raise ValidationError(f"Deposit must be positive, got {amount}")
        with self._guard.hold("deposit"):
            self._deposit_count += 1
            tx = build_transaction(
                self.ledger,
                [Move(amount, self.config.currency, SYSTEM_WALLET, wallet_id,
                      f"{self.name}:deposit:{wallet_id}:{self._deposit_count}")],
                TransactionOrigin(OriginType.USER_ACTION, wallet_id, event_type="DEPOSIT"),
            )
            if self.ledger.execute(tx) != ExecuteResult.APPLIED:
                raise PaymentFailed(f"Deposit of {amount} to {wallet_id} rejected")

    def balance_of(self, wallet_id: str) -> Decimal:
        return self.ledger.get_balance(wallet_id, self.config.currency)

    # ========================================================================
    # CONFIGURATION AND READS
    # ========================================================================

    @property
    def listing_fee(self) -> Decimal:
        """Fee that must be attached to every list and reprice call."""
        return self.config.listing_fee

    @property
    def current_time(self) -> datetime:
        return self.ledger.current_time

    def get_item(self, item_id: int) -> ItemRecord:
        """
        Raises:
            ItemNotFound: If no item has this id
        """
        with self._records_lock:
            record = self._items.get(item_id)
        if record is None:
            raise ItemNotFound(f"Item {item_id} not found")
        return record

    @property
    def items(self) -> List[ItemRecord]:
        """Every record ever created, ascending item_id."""
        return sorted(self._snapshot(), key=lambda r: r.item_id)

    @property
    def history(self) -> List[MarketEvent]:
        """Every notification published, in order."""
        return self._bus.history

    def subscribe(self, handler: EventHandler) -> None:
        """
        Call handler with each notification after its operation commits.

        A handler that raises does not fail the operation; see
        notification_failures.
        """
        self._bus.subscribe(handler)

    @property
    def notification_failures(self) -> List[HandlerFailure]:
        """Errors raised by subscribers, in delivery order."""
        return self._bus.failures

    def fetch_unsold(self) -> List[ItemRecord]:
        return views.unsold_items(self._snapshot())

    def fetch_owned(self, identity: str) -> List[ItemRecord]:
        return views.owned_by(self._snapshot(), identity)

    def fetch_listed_by(self, identity: str) -> List[ItemRecord]:
        return views.listed_by(self._snapshot(), identity)

    def _snapshot(self) -> List[ItemRecord]:
        with self._records_lock:
            return list(self._items.values())

    # ========================================================================
    # MUTATING OPERATIONS
    # ========================================================================

    def list_item(
        self,
        caller: str,
        collection_ref: str,
        token_ref: str,
        price: Decimal,
        fee_paid: Decimal,
    ) -> int:
        """
        List an asset for sale, moving custody to the market.

        Returns:
            The new item_id

        Raises:
            InvalidPrice: price <= 0 or finer than the currency precision
            FeeMismatch: fee_paid != listing_fee
            AssetAlreadyListed: the asset already has an active listing
            NotAssetOwner: the registry does not show caller as title-holder
            PaymentFailed / AssetTransferFailed: settlement failed
        """
        record = self._run(
            "list", self._list_item, caller, collection_ref, token_ref, price, fee_paid
        )
        return record.item_id

    def buy(self, caller: str, item_id: int, amount_paid: Decimal) -> ItemRecord:
        """
        Buy a listed item at its exact price.

        Raises:
            ItemNotFound, AlreadySold, AlreadyCanceled, WrongPayment,
            SelfPurchase, PaymentFailed, AssetTransferFailed
        """
        return self._run("buy", self._buy, caller, item_id, amount_paid)

    def reprice(
        self,
        caller: str,
        item_id: int,
        new_price: Decimal,
        fee_paid: Decimal,
    ) -> ItemRecord:
        """
        Change the price of a listed item. Costs one listing fee.

        Raises:
            ItemNotFound, AlreadySold, AlreadyCanceled, NotSeller,
            InvalidPrice, SamePrice, FeeMismatch, PaymentFailed
        """
        return self._run("reprice", self._reprice, caller, item_id, new_price, fee_paid)

    def cancel(self, caller: str, item_id: int) -> ItemRecord:
        """
        Withdraw a listed item, returning custody to the seller.

        Escrowed listing fees go to the operator; they are not refunded.

        Raises:
            ItemNotFound, AlreadySold, AlreadyCanceled, NotSeller,
            AssetTransferFailed, PaymentFailed
        """
        return self._run("cancel", self._cancel, caller, item_id)

    # ------------------------------------------------------------------------

    def _run(
        self,
        operation: str,
        fn: Callable[..., Tuple[ItemRecord, MarketEvent]],
        *args: Any,
    ) -> ItemRecord:
        with self._guard.hold(operation):
            try:
                record, event = fn(*args)
            except MarketError as e:
                if self.verbose:
                    print(f"✗ {operation.upper()} REJECTED: {type(e).__name__}: {e}")
                raise
        if self.verbose:
            print(f"✓ {event.action.upper()}: {record!r}")
        self._bus.publish(event)
        return record

    def _list_item(self, caller, collection_ref, token_ref, price, fee_paid):
        price = self._price(price)
        self._check_fee(fee_paid)

        key = (collection_ref, token_ref)
        if key in self._active_listings:
            raise AssetAlreadyListed(
                f"Asset {collection_ref}/{token_ref} is already listed as item "
                f"{self._active_listings[key]}"
            )
        self._check_caller(caller)
        if self.registry.owner_of(collection_ref, token_ref) != caller:
            raise NotAssetOwner(f"{caller} does not hold {collection_ref}/{token_ref}")

        item_id = self._sequence.peek()
        pending = compute_listing_fee(self.ledger, self.config, caller, item_id, market=self.name)
        self.settlement.settle(
            pending,
            CustodyTransfer(caller, self.config.market_wallet, collection_ref, token_ref),
        )

        # Settled; from here on nothing can fail
        if not self.ledger.is_registered(caller):
            self.ledger.register_wallet(caller)
        record = ItemRecord(
            item_id=self._sequence.next(),
            collection_ref=collection_ref,
            token_ref=token_ref,
            seller=caller,
            price=price,
            escrowed_fees=self.config.listing_fee,
            listed_at=self.current_time,
        )
        self._commit(record)
        event = Listed(record.item_id, collection_ref, token_ref, caller, price, self.current_time)
        return record, event

    def _buy(self, caller, item_id, amount_paid):
        record = self._listed_record(item_id)
        self._check_caller(caller)
        amount = self._amount(amount_paid, WrongPayment, "amount_paid")
        if amount != record.price:
            raise WrongPayment(f"Item {item_id} costs {record.price}, got {amount}")
        if caller == record.seller:
            raise SelfPurchase(f"{caller} cannot buy their own item {item_id}")

        pending = compute_sale_settlement(
            self.ledger, self.config, record, caller, record.price, market=self.name
        )
        self.settlement.settle(
            pending,
            CustodyTransfer(self.config.market_wallet, caller,
                            record.collection_ref, record.token_ref),
        )

        updated = replace(record, state=ItemState.SOLD, current_owner=caller,
                          escrowed_fees=Decimal("0"))
        self._commit(updated)
        return updated, Sold(item_id, caller, record.price, self.current_time)

    def _reprice(self, caller, item_id, new_price, fee_paid):
        record = self._listed_record(item_id)
        self._check_caller(caller)
        if caller != record.seller:
            raise NotSeller(f"{caller} is not the seller of item {item_id}")
        new_price = self._price(new_price)
        if new_price == record.price:
            raise SamePrice(f"Item {item_id} is already priced at {record.price}")
        self._check_fee(fee_paid)

        revision = record.revision + 1
        pending = compute_listing_fee(
            self.ledger, self.config, caller, item_id, revision, market=self.name
        )
        self.settlement.settle(pending)

        updated = replace(
            record,
            price=new_price,
            revision=revision,
            escrowed_fees=record.escrowed_fees + self.config.listing_fee,
        )
        self._commit(updated)
        return updated, PriceChanged(item_id, new_price, self.current_time)

    def _cancel(self, caller, item_id):
        record = self._listed_record(item_id)
        self._check_caller(caller)
        if caller != record.seller:
            raise NotSeller(f"{caller} is not the seller of item {item_id}")

        pending = compute_cancel_settlement(self.ledger, self.config, record, market=self.name)
        self.settlement.settle(
            pending,
            CustodyTransfer(self.config.market_wallet, record.seller,
                            record.collection_ref, record.token_ref),
        )

        updated = replace(record, state=ItemState.CANCELED, current_owner=record.seller,
                          escrowed_fees=Decimal("0"))
        self._commit(updated)
        return updated, Canceled(item_id, self.current_time)

    # ------------------------------------------------------------------------

    def _listed_record(self, item_id: int) -> ItemRecord:
        """Fetch a record that must still be LISTED."""
        record = self.get_item(item_id)
        if record.state is ItemState.SOLD:
            raise AlreadySold(f"Item {item_id} was sold to {record.current_owner}")
        if record.state is ItemState.CANCELED:
            raise AlreadyCanceled(f"Item {item_id} was canceled")
        return record

    def _commit(self, record: ItemRecord) -> None:
        with self._records_lock:
            self._items[record.item_id] = record
            if record.is_listed:
                self._active_listings[record.asset_key] = record.item_id
            else:
                self._active_listings.pop(record.asset_key, None)

    def _check_caller(self, caller: str) -> None:
        if caller in self._reserved:
            raise ReservedIdentity(f"{caller} is a marketplace wallet and cannot act as a party")

    def _price(self, value: Any) -> Decimal:
        price = self._amount(value, InvalidPrice, "price")
        if price <= 0:
            raise InvalidPrice(f"Price must be positive, got {price}")
        return price

    def _check_fee(self, fee_paid: Any) -> None:
        fee = self._amount(fee_paid, FeeMismatch, "fee_paid")
        if fee != self.config.listing_fee:
            raise FeeMismatch(f"Listing fee is {self.config.listing_fee}, got {fee}")

    def _amount(self, value: Any, error: Type[MarketError], what: str) -> Decimal:
        """Coerce to a finite Decimal within currency precision, or raise error."""
        try:
            amount = to_decimal(value)
            if not amount.is_finite():
                raise error(f"{what} must be finite, got {amount}")
            representable = self._unit.round(amount) == amount
        except (InvalidOperation, TypeError, ValueError) as e:
            raise error(f"{what} is not a valid amount: {value!r}") from e
        if not representable:
            raise error(
                f"{what} {amount} is finer than {self.config.currency} precision "
                f"({self.config.decimal_places} places)"
            )
        return amount
