"""
core.py - Shared types for the funds book and the item ledger

Nothing here holds mutable state. The module defines:
    - LedgerView and AssetRegistry, the two read/write seams the marketplace
      depends on
    - Move, PendingTransaction and Transaction, the funds book's vocabulary
    - ItemRecord and ItemState, the item ledger's vocabulary
    - MarketConfig
    - the LedgerError and MarketError hierarchies
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, getcontext
from enum import Enum
import hashlib
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, Iterable, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT
# ============================================================================
#
# Set once at import. 50 significant digits covers 18-place token amounts
# up to 10^32 units; other code must not change the global context.
#
_MARKET_DECIMAL_CONTEXT = getcontext()
_MARKET_DECIMAL_CONTEXT.prec = 50
_MARKET_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Counterparty of every deposit. Balance checks skip it.
SYSTEM_WALLET = "system"

DEFAULT_MARKET_WALLET = "market"
DEFAULT_ESCROW_WALLET = "market_escrow"
DEFAULT_OPERATOR_WALLET = "operator"

UNIT_TYPE_CASH = "CASH"

# Anything smaller is zero.
QUANTITY_EPSILON = Decimal("1e-24")

# Cash truncates: a wallet is never credited a fraction it was not sent.
DECIMAL_ROUNDING = {
    UNIT_TYPE_CASH: ROUND_DOWN,
}

DEFAULT_LISTING_FEE = Decimal("0.025")


# ============================================================================
# TYPE ALIASES
# ============================================================================

Positions = Dict[str, Decimal]       # wallet -> quantity, one unit
BalanceMap = Dict[str, Decimal]      # unit -> quantity, one wallet
AssetKey = Tuple[str, str]           # (collection_ref, token_ref)


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """What a settlement builder may read from the funds book. No writes."""

    @property
    def current_time(self) -> datetime: ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal: ...

    def get_positions(self, unit_symbol: str) -> Positions: ...

    def list_wallets(self) -> Set[str]: ...

    def get_unit(self, symbol: str) -> 'Unit': ...


@runtime_checkable
class AssetRegistry(Protocol):
    """
    System of record for who holds each unique asset.

    The marketplace keeps no ownership table of its own. It reads the holder
    before listing and asks the registry to move titles on list, sale and
    cancel. A transfer may return False or raise; either aborts settlement.
    """

    def owner_of(self, collection_ref: str, token_ref: str) -> Optional[str]:
        """Current holder, or None for an unknown asset."""
        ...

    def transfer(self, source: str, dest: str, collection_ref: str, token_ref: str) -> bool:
        """Move the title from source to dest; False if refused."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """Outcome of Ledger.execute()."""
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"     # same intent_id seen before
    REJECTED = "rejected"                   # failed a check; nothing moved


class OriginType(Enum):
    USER_ACTION = "user_action"           # deposit by a party
    SETTLEMENT = "settlement"             # list / buy / reprice / cancel


class ItemState(Enum):
    """LISTED -> SOLD or LISTED -> CANCELED. Nothing leaves SOLD or CANCELED."""
    LISTED = "listed"
    SOLD = "sold"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not ItemState.LISTED


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Funds book misuse: unknown wallet or unit, test-only call, rule violation."""


class UnitNotRegistered(LedgerError):
    pass


class WalletNotRegistered(LedgerError):
    pass


class MarketError(Exception):
    """
    Base of every error a marketplace operation raises.

    A MarketError from list_item, buy, reprice or cancel guarantees the
    operation changed nothing: no funds, no custody, no record, no event.
    """


class ValidationError(MarketError):
    """Malformed request: bad price, wrong fee or payment attached."""


class AuthorizationError(MarketError):
    """Caller lacks the right to act on this item or asset."""


class StateError(MarketError):
    """Item or marketplace is in the wrong state for the operation."""


class NotFoundError(MarketError):
    pass


class TransferError(MarketError):
    """The funds leg or the custody leg of a settlement failed."""


class InvalidPrice(ValidationError):
    pass


class FeeMismatch(ValidationError):
    pass


class WrongPayment(ValidationError):
    pass


class SelfPurchase(ValidationError):
    pass


class NotSeller(AuthorizationError):
    pass


class NotAssetOwner(AuthorizationError):
    pass


class ReservedIdentity(AuthorizationError):
    """Caller is one of the marketplace's own funds or custody wallets."""


class AlreadySold(StateError):
    pass


class AlreadyCanceled(StateError):
    pass


class SamePrice(StateError):
    pass


class AssetAlreadyListed(StateError):
    pass


class ReentrantCall(StateError):
    """A mutating call arrived on the thread already running one."""


class ItemNotFound(NotFoundError):
    pass


class AssetTransferFailed(TransferError):
    pass


class PaymentFailed(TransferError):
    pass


# ============================================================================
# CONFIGURATION
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """Convert int/str/Decimal to Decimal. Floats go through str() to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a valid amount")
    return Decimal(str(value))


@dataclass(frozen=True, slots=True)
class MarketConfig:
    """
    Operator-set configuration of a marketplace instance.

    Attributes:
        listing_fee: Fee charged on every list and reprice call.
        currency: Symbol of the cash unit that prices and fees are paid in.
        decimal_places: Precision of the cash unit.
        market_wallet: Identity that holds asset custody while items are listed.
        escrow_wallet: Funds wallet holding listing fees until an item terminates.
        operator_wallet: Funds wallet that receives released fees.
    """
    listing_fee: Decimal = DEFAULT_LISTING_FEE
    currency: str = "ETH"
    decimal_places: int = 18
    market_wallet: str = DEFAULT_MARKET_WALLET
    escrow_wallet: str = DEFAULT_ESCROW_WALLET
    operator_wallet: str = DEFAULT_OPERATOR_WALLET

    def __post_init__(self):
        object.__setattr__(self, 'listing_fee', to_decimal(self.listing_fee))
        if not self.listing_fee.is_finite() or self.listing_fee < 0:
            raise ValueError(f"listing_fee must be a finite non-negative amount, got {self.listing_fee}")
        if not self.currency or not self.currency.strip():
            raise ValueError("currency cannot be empty")
        if self.decimal_places < 0:
            raise ValueError(f"decimal_places must be >= 0, got {self.decimal_places}")
        wallets = (self.market_wallet, self.escrow_wallet, self.operator_wallet)
        if any(not w or not w.strip() for w in wallets):
            raise ValueError("market, escrow and operator wallets cannot be empty")
        if len(set(wallets)) != 3 or SYSTEM_WALLET in wallets:
            raise ValueError("market, escrow and operator wallets must be distinct and not 'system'")


# ============================================================================
# ITEM RECORD
# ============================================================================

@dataclass(frozen=True, slots=True)
class ItemRecord:
    """
    One listed instance of a unique asset.

    Records are immutable values; the marketplace replaces a record with an
    updated copy on each committed operation and never deletes one.

    Attributes:
        item_id: Unique, monotonically assigned identifier.
        collection_ref: Registry collection holding the asset's title.
        token_ref: Asset identifier within that collection.
        seller: Wallet that listed the item.
        price: Amount required to buy. Changes only while LISTED.
        state: Lifecycle state.
        current_owner: None while LISTED; the buyer once SOLD; the seller once CANCELED.
        escrowed_fees: Listing fees paid for this item still held in escrow.
        revision: Number of reprices applied.
        listed_at: Ledger time at which the item was listed.
    """
    item_id: int
    collection_ref: str
    token_ref: str
    seller: str
    price: Decimal
    state: ItemState = ItemState.LISTED
    current_owner: Optional[str] = None
    escrowed_fees: Decimal = Decimal("0")
    revision: int = 0
    listed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.item_id <= 0:
            raise ValueError(f"item_id must be positive, got {self.item_id}")
        if (self.current_owner is None) != (self.state is ItemState.LISTED):
            raise ValueError(
                f"Item {self.item_id}: current_owner must be unset iff state is LISTED "
                f"(state={self.state.value}, owner={self.current_owner!r})"
            )

    @property
    def asset_key(self) -> AssetKey:
        return (self.collection_ref, self.token_ref)

    @property
    def is_listed(self) -> bool:
        return self.state is ItemState.LISTED

    def __repr__(self) -> str:
        owner = self.current_owner or "-"
        return (f"Item#{self.item_id}({self.collection_ref}/{self.token_ref} "
                f"{self.state.value} price={self.price} seller={self.seller} owner={owner})")


# ============================================================================
# FUNDS TRANSACTIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Who asked for a funds transaction, and for which item operation.

    Part of the intent hash: the same moves under a different origin are a
    different intent.
    """
    origin_type: OriginType
    source_id: str
    item_id: Optional[int] = None
    event_type: Optional[str] = None        # LIST, REPRICE, BUY, CANCEL, DEPOSIT

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.item_id is not None:
            parts.append(f"item={self.item_id}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


@dataclass(frozen=True, slots=True)
class Move:
    """
    quantity of unit_symbol from source to dest.

    contract_id names the settlement leg ("market:item:7:sale", "market:item:7:fee", ...)
    and keeps otherwise identical moves of different legs apart.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str

    def __post_init__(self):
        for name in ("source", "dest", "unit_symbol", "contract_id"):
            value = getattr(self, name)
            if not value or not value.strip():
                raise ValueError(f"Move {name} cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity).__name__}")
        if not self.quantity.is_finite():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if abs(self.quantity) < QUANTITY_EPSILON:
            raise ValueError(f"Move quantity {self.quantity} is effectively zero")
        if self.source == self.dest:
            raise ValueError(f"Move source and dest must be different, both are {self.source}")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


def _canonical_amount(d: Decimal) -> str:
    """Plain notation without trailing zeros, so 1, 1.0 and 1.00 agree."""
    text = format(d.normalize(), 'f')
    return text.rstrip('0').rstrip('.') if '.' in text else text


def _intent_id(moves: Iterable[Move], origin: TransactionOrigin) -> str:
    """
    16 hex digits of SHA-256 over the origin and the sorted moves.

    Timestamps are left out, so rebuilding a settlement for the same item,
    leg and revision at a later time yields the same id.
    """
    rows = [
        "\t".join((_canonical_amount(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id))
        for m in moves
    ]
    header = "\t".join((
        origin.origin_type.value,
        origin.source_id,
        "" if origin.item_id is None else str(origin.item_id),
        origin.event_type or "",
    ))
    content = "\n".join([header] + sorted(rows))
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    Moves proposed together, not yet applied.

    intent_id is derived from moves and origin when not supplied.
    """
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            object.__setattr__(self, 'intent_id', _intent_id(self.moves, self.origin))

    def is_empty(self) -> bool:
        return not self.moves

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Stamp moves with the book's current time.

    Example:
        tx = build_transaction(ledger, [
            Move(Decimal("1.5"), "ETH", "bob", "alice", "item:7:sale")
        ])
        ledger.execute(tx)
    """
    return PendingTransaction(
        moves=tuple(moves),
        origin=origin or TransactionOrigin(OriginType.SETTLEMENT, DEFAULT_MARKET_WALLET),
        timestamp=view.current_time,
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """Settlement with nothing to pay, e.g. a cancel with no escrowed fees."""
    return PendingTransaction((), TransactionOrigin(OriginType.SETTLEMENT, "noop"), view.current_time)


BOX_WIDTH = 100


def render_box(sections: List[List[str]], width: int = BOX_WIDTH) -> str:
    """Draw rows in a box, one divider between sections. Long rows are cut."""
    bar = "─" * width

    def row(text: str) -> str:
        if len(text) > width:
            text = text[:width - 3] + "..."
        return f"│{text.ljust(width)}│"

    lines = [f"┌{bar}┐"]
    for i, section in enumerate(sections):
        if i:
            lines.append(f"├{bar}┤")
        lines.extend(row(text) for text in section)
    lines.append(f"└{bar}┘")
    return "\n".join(lines)


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    A PendingTransaction after the funds book applied it.

    Adds where and when it ran: exec_id is "exec:{ledger}:{sequence}:{micros}"
    and sequence_number is its index in the transaction log.
    """
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves:
            raise ValueError("Transaction must have moves")
        if self.contract_ids is None:
            object.__setattr__(self, 'contract_ids', frozenset(m.contract_id for m in self.moves))

    def sections(self) -> List[List[str]]:
        """Rows for render_box: header, metadata, moves."""
        return [
            [f" Transaction: {self.exec_id}"],
            [
                f"   intent_id      : {self.intent_id}",
                f"   execution_time : {self.execution_time}",
                f"   sequence       : {self.sequence_number}",
                f"   origin         : {self.origin}",
            ],
            [f" Moves ({len(self.moves)}):"] + [
                f"   [{i}] {m.quantity} {m.unit_symbol}: {m.source} → {m.dest}  ({m.contract_id})"
                for i, m in enumerate(self.moves)
            ],
        ]

    def __repr__(self) -> str:
        return "\n" + render_box(self.sections())


# Called with (view, move) during validation; raises LedgerError to reject.
TransferRule = Callable[[LedgerView, Move], None]


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Something the funds book can hold, with its balance limits and precision.

    min_balance binds every wallet except SYSTEM_WALLET. decimal_places of
    None disables rounding.
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    transfer_rule: Optional[TransferRule] = None

    def round(self, value: Decimal) -> Decimal:
        if self.decimal_places is None:
            return value
        mode = DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN)
        return to_decimal(value).quantize(Decimal(1).scaleb(-self.decimal_places), rounding=mode)


def cash(
    symbol: str,
    name: str,
    decimal_places: int = 2,
    min_balance: Decimal = Decimal("0"),
) -> Unit:
    """A currency unit; no overdraft unless min_balance says otherwise."""
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_CASH,
        decimal_places=decimal_places,
        min_balance=min_balance,
    )
