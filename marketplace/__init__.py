"""
marketplace - Unique-Asset Marketplace Ledger

Lists, sells, reprices and cancels unique assets held in an external registry,
settling prices and a flat listing fee through a double-entry funds book.

Usage:
    from decimal import Decimal
    from marketplace import Marketplace, MarketConfig, InMemoryAssetRegistry

    registry = InMemoryAssetRegistry()
    registry.mint("punks", "7", "alice")

    market = Marketplace(registry, MarketConfig(listing_fee=Decimal("1")), verbose=False)
    market.open_account("alice", deposit=Decimal("10"))
    market.open_account("bob", deposit=Decimal("500"))

    item_id = market.list_item("alice", "punks", "7", Decimal("100"), market.listing_fee)
    market.buy("bob", item_id, Decimal("100"))

    market.fetch_owned("bob")        # [Item#1(punks/7 sold ...)]
    market.balance_of("alice")       # Decimal("109")
"""

# Core types
from .core import (
    LedgerView,
    AssetRegistry,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Unit,
    Positions,
    render_box,
    ExecuteResult,
    ItemState,
    ItemRecord,
    MarketConfig,
    cash,
    to_decimal,
    SYSTEM_WALLET,
    UNIT_TYPE_CASH,
    DEFAULT_LISTING_FEE,
    # Funds book errors
    LedgerError,
    UnitNotRegistered,
    WalletNotRegistered,
    # Marketplace errors
    MarketError,
    ValidationError,
    AuthorizationError,
    StateError,
    NotFoundError,
    TransferError,
    InvalidPrice,
    FeeMismatch,
    WrongPayment,
    SelfPurchase,
    NotSeller,
    NotAssetOwner,
    ReservedIdentity,
    AlreadySold,
    AlreadyCanceled,
    SamePrice,
    AssetAlreadyListed,
    ReentrantCall,
    ItemNotFound,
    AssetTransferFailed,
    PaymentFailed,
)

# Funds book
from .ledger import Ledger

# Sequence generator
from .sequence import ItemIdSequence

# Notifications
from .events import (
    Listed,
    Sold,
    PriceChanged,
    Canceled,
    MarketEvent,
    EventBus,
    HandlerFailure,
    event_to_dict,
)

# Settlement
from .settlement import (
    CustodyTransfer,
    SettlementEngine,
    compute_listing_fee,
    compute_sale_settlement,
    compute_cancel_settlement,
)

# Query views
from .views import unsold_items, owned_by, listed_by

# Registry
from .registry import InMemoryAssetRegistry

# Item ledger
from .market import Marketplace, ReentrancyGuard


__all__ = [
    # Core
    'LedgerView', 'AssetRegistry', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'build_transaction', 'empty_pending_transaction',
    'Unit', 'Positions', 'render_box', 'ExecuteResult', 'ItemState', 'ItemRecord', 'MarketConfig',
    'cash', 'to_decimal', 'SYSTEM_WALLET', 'UNIT_TYPE_CASH', 'DEFAULT_LISTING_FEE',
    # Errors
    'LedgerError', 'UnitNotRegistered', 'WalletNotRegistered',
    'MarketError', 'ValidationError', 'AuthorizationError', 'StateError',
    'NotFoundError', 'TransferError', 'InvalidPrice', 'FeeMismatch', 'WrongPayment',
    'SelfPurchase', 'NotSeller', 'NotAssetOwner', 'ReservedIdentity', 'AlreadySold', 'AlreadyCanceled',
    'SamePrice', 'AssetAlreadyListed', 'ReentrantCall', 'ItemNotFound',
    'AssetTransferFailed', 'PaymentFailed',
    # Funds book
    'Ledger',
    # Sequence
    'ItemIdSequence',
    # Events
    'Listed', 'Sold', 'PriceChanged', 'Canceled', 'MarketEvent', 'EventBus', 'HandlerFailure', 'event_to_dict',
    # Settlement
    'CustodyTransfer', 'SettlementEngine',
    'compute_listing_fee', 'compute_sale_settlement', 'compute_cancel_settlement',
    # Views
    'unsold_items', 'owned_by', 'listed_by',
    # Registry
    'InMemoryAssetRegistry',
    # Market
    'Marketplace', 'ReentrancyGuard',
]

__version__ = '1.0.0'
