"""
settlement.py - Coupled funds and custody settlement

This module provides:
1. compute_listing_fee() - Fee escrow for list and reprice
2. compute_sale_settlement() - Price to seller, escrowed fees to operator
3. compute_cancel_settlement() - Escrowed fees to operator
4. SettlementEngine - Runs a funds transaction together with a custody transfer

The compute_* functions are pure: they take a LedgerView (read-only) and
return a PendingTransaction. SettlementEngine is the only place that touches
both the funds book and the Asset Registry, in this order:

    validate funds (dry run) -> transfer custody -> execute funds

If execution is still rejected after custody moved, custody is transferred
back before the error is raised, so no partial effect remains.

Pattern (sale of item 7 at 100 with 1 escrowed fee):
    Move(buyer  -> seller,   100, "market:item:7:sale")
    Move(escrow -> operator,   1, "market:item:7:fee")
    Registry: market -> buyer
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from .core import (
    LedgerView, AssetRegistry, Move, PendingTransaction, Transaction,
    TransactionOrigin, OriginType, ItemRecord, MarketConfig, ExecuteResult,
    AssetTransferFailed, PaymentFailed, MarketError,
    build_transaction, empty_pending_transaction,
)
from .ledger import Ledger


# ============================================================================
# PURE SETTLEMENT BUILDERS
# ============================================================================

def compute_listing_fee(
    view: LedgerView,
    config: MarketConfig,
    payer: str,
    item_id: int,
    revision: int = 0,
    market: str = "market",
) -> PendingTransaction:
    """
    Escrow one listing fee from payer.

    revision 0 is the initial listing; each reprice uses the item's next
    revision so every fee payment has its own intent. Contract ids carry
    the market name, so markets sharing one funds book never collide.

    Returns an empty PendingTransaction when the configured fee is zero.
    """
    fee = config.listing_fee
    if fee == 0:
        return empty_pending_transaction(view)

    if revision == 0:
        contract_id, event_type = f"{market}:item:{item_id}:list", "LIST"
    else:
        contract_id, event_type = f"{market}:item:{item_id}:reprice:{revision}", "REPRICE"

    moves = [Move(fee, config.currency, payer, config.escrow_wallet, contract_id)]
    origin = TransactionOrigin(OriginType.SETTLEMENT, payer, item_id, event_type)
    return build_transaction(view, moves, origin)


def _release_fees(config: MarketConfig, record: ItemRecord, market: str) -> List[Move]:
    if record.escrowed_fees == 0:
        return []
    return [Move(
        record.escrowed_fees, config.currency,
        config.escrow_wallet, config.operator_wallet,
        f"{market}:item:{record.item_id}:fee",
    )]


def compute_sale_settlement(
    view: LedgerView,
    config: MarketConfig,
    record: ItemRecord,
    buyer: str,
    amount: Decimal,
    market: str = "market",
) -> PendingTransaction:
    """
    Pay the seller and release the item's escrowed fees to the operator.

    Args:
        view: Read-only funds access
        config: Market configuration (currency and wallets)
        record: The LISTED item being bought
        buyer: Paying wallet
        amount: Amount attached by the buyer (already checked against price)
        market: Name of the marketplace, prefixed to each contract id
    """
    moves = [Move(amount, config.currency, buyer, record.seller,
                  f"{market}:item:{record.item_id}:sale")]
    moves.extend(_release_fees(config, record, market))
    origin = TransactionOrigin(OriginType.SETTLEMENT, buyer, record.item_id, "BUY")
    return build_transaction(view, moves, origin)


def compute_cancel_settlement(
    view: LedgerView,
    config: MarketConfig,
    record: ItemRecord,
    market: str = "market",
) -> PendingTransaction:
    """
    Release escrowed fees to the operator. Listing fees are not refunded.

    Returns an empty PendingTransaction if nothing is escrowed.
    """
    moves = _release_fees(config, record, market)
    if not moves:
        return empty_pending_transaction(view)
    origin = TransactionOrigin(OriginType.SETTLEMENT, record.seller, record.item_id, "CANCEL")
    return build_transaction(view, moves, origin)


# ============================================================================
# SETTLEMENT ENGINE
# ============================================================================

@dataclass(frozen=True, slots=True)
class CustodyTransfer:
    """Instruction to move one asset title between two identities."""
    source: str
    dest: str
    collection_ref: str
    token_ref: str

    def reversed(self) -> 'CustodyTransfer':
        return CustodyTransfer(self.dest, self.source, self.collection_ref, self.token_ref)

    def __repr__(self) -> str:
        return f"Custody({self.collection_ref}/{self.token_ref}: {self.source}→{self.dest})"


class SettlementEngine:
    """
    Executes one funds transaction and at most one custody transfer as a unit.

    Not reentrant and not thread-safe on its own; the Marketplace guard
    serializes every call.
    """

    def __init__(
        self,
        ledger: Ledger,
        registry: AssetRegistry,
        verbose: bool = False,
    ):
        self.ledger = ledger
        self.registry = registry
        self.verbose = verbose

    def settle(
        self,
        pending: PendingTransaction,
        custody: Optional[CustodyTransfer] = None,
    ) -> Optional[Transaction]:
        """
        Apply funds and custody together, or neither.

        Returns:
            The executed Transaction, or None if pending was empty.

        Raises:
            PaymentFailed: Funds would not settle (nothing moved)
            AssetTransferFailed: The registry refused or failed the transfer
                (nothing moved), or compensation after a funds failure failed
        """
        valid, reason = self.ledger.validate(pending)
        if not valid:
            raise PaymentFailed(f"Funds rejected: {reason}")

        if custody is not None:
            self._transfer(custody)

        result = self.ledger.execute(pending)
        if result != ExecuteResult.APPLIED:
            if custody is not None:
                self._compensate(custody)
            raise PaymentFailed(f"Funds execution {result.value} after validation")

        if pending.is_empty():
            return None
        return self.ledger.transaction_log[-1]

    def _transfer(self, custody: CustodyTransfer) -> None:
        try:
            ok = self.registry.transfer(
                custody.source, custody.dest, custody.collection_ref, custody.token_ref
            )
        except MarketError:
            raise
        except Exception as e:
            raise AssetTransferFailed(f"{custody!r} raised {type(e).__name__}: {e}") from e
        if not ok:
            raise AssetTransferFailed(f"{custody!r} refused by registry")
        if self.verbose:
            print(f"✓ CUSTODY: {custody!r}")

    def _compensate(self, custody: CustodyTransfer) -> None:
        back = custody.reversed()
        try:
            self._transfer(back)
        except MarketError as e:
            raise AssetTransferFailed(
                f"Compensation failed, asset left at {custody.dest}: {e}"
            ) from e
