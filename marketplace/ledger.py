"""
ledger.py - Double-Entry Funds Book

Cash balances for every party, plus the marketplace escrow and operator fee
wallets. Nothing outside this module writes a balance.

A balance is keyed by (wallet, unit). Every applied transaction moves value
between two keys, so the sum over all keys of one unit never changes. The
system wallet sits on the other side of each deposit and goes negative by
exactly the amount issued.

Settlement builders only ever see this class through the LedgerView protocol.
Before touching the asset registry, the settlement engine dry-runs each
transaction with validate(); execute() then reaches the same verdict unless
balances changed in between.
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from decimal import Decimal

from .core import (
    Transaction, Unit, Move, PendingTransaction, ExecuteResult,
    Positions, BalanceMap, QUANTITY_EPSILON, SYSTEM_WALLET,
    LedgerError, UnitNotRegistered, WalletNotRegistered,
    to_decimal, render_box,
)

ZERO = Decimal("0")
EPOCH = datetime(1970, 1, 1)

# (wallet_id, unit_symbol)
BalanceKey = Tuple[str, str]


class Ledger:
    """
    Funds book: validated, logged, idempotent cash transfers.

    Each PendingTransaction carries a content-derived intent_id. The book
    remembers every intent it has applied, so handing it the same
    settlement twice charges once.

    Thread Safety:
        Not thread-safe. The Marketplace serializes writers behind its guard.

    Example:
        funds = Ledger("funds")
        funds.register_unit(cash("ETH", "Ether", decimal_places=18))
        funds.register_wallet("alice")

        deposit = build_transaction(funds, [
            Move(Decimal("1"), "ETH", SYSTEM_WALLET, "alice", "deposit:alice:1")
        ])
        funds.execute(deposit)          # ExecuteResult.APPLIED
        funds.execute(deposit)          # ExecuteResult.ALREADY_APPLIED
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Args:
            name: Book identifier, embedded in every exec_id
            initial_time: Logical clock start (default: 1970-01-01)
            verbose: Print each applied or rejected transaction (default: True)
            test_mode: Permit set_balance(), which bypasses double entry
        """
        self.name = name
        self.verbose = verbose
        self.transaction_log: List[Transaction] = []
        self._units: Dict[str, Unit] = {}
        self._wallets: Set[str] = {SYSTEM_WALLET}
        self._balances: Dict[BalanceKey, Decimal] = {}
        self._applied: Set[str] = set()
        self._clock = initial_time or EPOCH
        self._test_mode = test_mode

    # ========================================================================
    # READS (LedgerView)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        return self._clock

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Raises:
            WalletNotRegistered: If wallet_id was never registered
            UnitNotRegistered: If unit_symbol was never registered
        """
        self._require(wallet_id, unit_symbol)
        return self._balances.get((wallet_id, unit_symbol), ZERO)

    def get_positions(self, unit_symbol: str) -> Positions:
        """Every wallet holding a non-dust amount of unit_symbol."""
        return {
            wallet: qty
            for (wallet, unit), qty in self._balances.items()
            if unit == unit_symbol and abs(qty) > QUANTITY_EPSILON
        }

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        if wallet_id not in self._wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return {unit: qty for (wallet, unit), qty in self._balances.items() if wallet == wallet_id}

    def list_wallets(self) -> Set[str]:
        return set(self._wallets)

    def list_units(self) -> List[str]:
        return sorted(self._units)

    def get_unit(self, symbol: str) -> Unit:
        if symbol not in self._units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self._units[symbol]

    def is_registered(self, wallet_id: str) -> bool:
        return wallet_id in self._wallets

    def total_supply(self, unit_symbol: str) -> Decimal:
        """Sum of unit_symbol over all wallets. Zero unless set_balance() was used."""
        self.get_unit(unit_symbol)
        return sum(
            (qty for (_, unit), qty in sorted(self._balances.items()) if unit == unit_symbol),
            ZERO,
        )

    def verify_double_entry(
        self,
        expected_supplies: Optional[Dict[str, Decimal]] = None,
        tolerance: Decimal = Decimal("1e-18")
    ) -> Dict[str, Any]:
        """
        Check every unit's total supply against its expected value (default 0).

        Returns:
            {'valid': bool, 'supplies': {unit: supply},
             'discrepancies': [{'unit', 'expected', 'actual', 'difference'}, ...]}
        """
        expected_supplies = expected_supplies or {}
        supplies = {symbol: self.total_supply(symbol) for symbol in self.list_units()}
        discrepancies = []
        for symbol, actual in supplies.items():
            expected = expected_supplies.get(symbol, ZERO)
            if abs(actual - expected) > tolerance:
                discrepancies.append({
                    'unit': symbol,
                    'expected': expected,
                    'actual': actual,
                    'difference': abs(actual - expected),
                })
        return {
            'valid': not discrepancies,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def _require(self, wallet_id: str, unit_symbol: str) -> None:
        if wallet_id not in self._wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self._units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")

    # ========================================================================
    # CLOCK AND REGISTRATION
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Raises:
            ValueError: If new_time is earlier than current_time
        """
        if new_time < self._clock:
            raise ValueError(f"Cannot move time backwards: {new_time} < {self._clock}")
        self._clock = new_time

    def register_wallet(self, wallet_id: str) -> str:
        if wallet_id in self._wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self._wallets.add(wallet_id)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        if unit.symbol in self._units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self._units[unit.symbol] = unit
        if self.verbose:
            rule = f", rule={unit.transfer_rule.__name__}" if unit.transfer_rule else ""
            print(f"📝 Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]{rule}")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Overwrite a balance directly, breaking conservation. Test fixtures only.

        Raises:
            LedgerError: Unless the book was created with test_mode=True
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() requires test_mode=True; "
                "move funds with build_transaction() and execute()"
            )
        self._require(wallet_id, unit_symbol)
        self._balances[(wallet_id, unit_symbol)] = to_decimal(quantity)

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def validate(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Dry run: the verdict execute() would reach now, without applying.

        Returns:
            (True, "") or (False, reason)
        """
        if pending.is_empty():
            return True, ""
        if pending.intent_id in self._applied:
            return False, f"intent {pending.intent_id} already applied"
        return self._check(pending)

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Apply every move of pending, or none of them.

        Returns:
            APPLIED, ALREADY_APPLIED (intent seen before; nothing moves),
            or REJECTED (a check failed; nothing moves)
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self._applied:
            if self.verbose:
                print(f"⚠️  ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED

        ok, reason = self._check(pending)
        if not ok:
            if self.verbose:
                print(f"✗ REJECTED: {reason}")
            return ExecuteResult.REJECTED

        tx = self._record(pending)
        for key, qty in self._net(pending.moves).items():
            self._balances[key] = self._units[key[1]].round(self._balances.get(key, ZERO) + qty)

        if self.verbose:
            self._print_applied(tx)
        return ExecuteResult.APPLIED

    def _record(self, pending: PendingTransaction) -> Transaction:
        """Append pending to the log as the next Transaction."""
        sequence = len(self.transaction_log)
        micros = int(self._clock.timestamp() * 1_000_000)
        tx = Transaction(
            moves=pending.moves,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=f"exec:{self.name}:{sequence:012d}:{micros}",
            ledger_name=self.name,
            execution_time=self._clock,
            sequence_number=sequence,
        )
        self.transaction_log.append(tx)
        self._applied.add(pending.intent_id)
        return tx

    def _net(self, moves: Iterable[Move]) -> Dict[BalanceKey, Decimal]:
        """Combined balance change per (wallet, unit) across all moves."""
        net: Dict[BalanceKey, Decimal] = {}
        for move in moves:
            unit = self._units[move.unit_symbol]
            src = (move.source, move.unit_symbol)
            dst = (move.dest, move.unit_symbol)
            net[src] = unit.round(net.get(src, ZERO) - move.quantity)
            net[dst] = unit.round(net.get(dst, ZERO) + move.quantity)
        return net

    def _check(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Reasons a pending transaction cannot apply, in order:
        future timestamp, unknown unit or wallet, transfer rule, balance limits.

        Limits are checked on the net effect, so a wallet may dip below its
        minimum partway through a transaction as long as it ends within it.
        """
        if pending.timestamp > self._clock:
            return False, "future timestamp"

        for move in pending.moves:
            unit = self._units.get(move.unit_symbol)
            if unit is None:
                return False, f"unit not registered: {move.unit_symbol}"
            for wallet in (move.source, move.dest):
                if wallet not in self._wallets:
                    return False, f"wallet not registered: {wallet}"
            if unit.transfer_rule:
                try:
                    unit.transfer_rule(self, move)
                except LedgerError as e:
                    return False, str(e)

        for (wallet, symbol), delta in self._net(pending.moves).items():
            # The system wallet issues deposits and has no limits
            if wallet == SYSTEM_WALLET:
                continue
            unit = self._units[symbol]
            proposed = unit.round(self._balances.get((wallet, symbol), ZERO) + delta)
            if proposed < unit.min_balance:
                return False, f"{wallet} {symbol}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"{wallet} {symbol}: {proposed} > max {unit.max_balance}"

        return True, ""

    def _print_applied(self, tx: Transaction) -> None:
        print(render_box(tx.sections() + [[" ✓ APPLIED"]]))
