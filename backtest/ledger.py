"""
Position/Trade Ledger
Owns cash, open positions and closed trades for a single backtest run.

All mutation goes through ``open``, ``close``, ``settle_expired`` and
``liquidate``; callers only get read-only views of the state.
"""

import logging
import math
from datetime import date
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from backtest.models import ContractKey, ExitReason, Position, SignalClass, Trade
from backtest.pricing import PriceResult, is_valid_price
from shared.constants import (
    DEFAULT_ALLOW_PARTIAL_FILL,
    DEFAULT_INITIAL_CAPITAL,
    DEFAULT_MAX_POSITIONS,
    DEFAULT_POSITION_SIZE,
    DEFAULT_TRANSACTION_COST,
    MIN_CASH_TO_OPEN,
)
from shared.exceptions import LedgerError

logger = logging.getLogger(__name__)

PriceLookup = Callable[[ContractKey, date], Optional[float]]
IntrinsicFallback = Callable[[Position], PriceResult]


class Ledger:
    """
    Cash and inventory for one backtest run.

    A contract key maps to at most one open Position. Every Position leaves
    the ledger as exactly one Trade.
    """

    def __init__(
        self,
        initial_capital: float = DEFAULT_INITIAL_CAPITAL,
        position_size: float = DEFAULT_POSITION_SIZE,
        transaction_cost: float = DEFAULT_TRANSACTION_COST,
        max_positions: int = DEFAULT_MAX_POSITIONS,
        allow_partial_fill: bool = DEFAULT_ALLOW_PARTIAL_FILL,
        min_cash: float = MIN_CASH_TO_OPEN,
    ):
        self.initial_capital = float(initial_capital)
        self.position_size = float(position_size)
        self.transaction_cost = float(transaction_cost)
        self.max_positions = int(max_positions)
        self.allow_partial_fill = allow_partial_fill
        self.min_cash = float(min_cash)

        self._cash = self.initial_capital
        self._positions: Dict[ContractKey, Position] = {}
        self._trades: List[Trade] = []
        self._positions_opened = 0

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def cash(self) -> float:
        return self._cash

    @property
    def open_positions(self) -> Mapping[ContractKey, Position]:
        return MappingProxyType(self._positions)

    @property
    def trades(self) -> Tuple[Trade, ...]:
        return tuple(self._trades)

    @property
    def positions_opened(self) -> int:
        """Number of positions ever opened on this ledger."""
        return self._positions_opened

    def has_position(self, key: ContractKey) -> bool:
        return key in self._positions

    def can_open(self) -> bool:
        """True while below the position cap and holding at least ``min_cash``."""
        return len(self._positions) < self.max_positions and self._cash >= self.min_cash

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def size_order(self, price: float) -> int:
        """Number of contracts to buy at *price*, or 0 to skip.

        Two stages: size to the per-position budget (forcing one contract
        when partial fills are allowed), then shrink to available cash.
        """
        unit_cost = price + self.transaction_cost
        if not is_valid_price(unit_cost) or unit_cost <= 0:
            return 0

        quantity = math.floor(self.position_size / unit_cost)
        if quantity == 0:
            if not self.allow_partial_fill:
                return 0
            quantity = 1

        if quantity * unit_cost > self._cash:
            quantity = math.floor(self._cash / unit_cost)
        return max(quantity, 0)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def open(
        self,
        entry_date: date,
        key: ContractKey,
        price: float,
        signal_class: SignalClass,
        quantity: Optional[int] = None,
    ) -> bool:
        """Open a position on *key* at *price*.

        Returns False, leaving state untouched, when the key is already open,
        the position cap is reached, the price is not finite or the unit
        cost (price plus transaction cost) is not positive, or cash cannot
        cover at least one contract. *quantity* defaults to
        ``size_order(price)``; an explicit quantity is still shrunk to what
        cash can cover.
        """
        if key in self._positions:
            logger.debug("%s: %s already open, ignoring entry", entry_date, key)
            return False
        if len(self._positions) >= self.max_positions:
            logger.debug("%s: position cap (%d) reached, skipping %s", entry_date, self.max_positions, key)
            return False

        unit_cost = price + self.transaction_cost if is_valid_price(price) else math.nan
        if not is_valid_price(unit_cost) or unit_cost <= 0:
            logger.debug("%s: unusable entry price %r for %s", entry_date, price, key)
            return False

        if quantity is None:
            quantity = self.size_order(price)
        elif quantity * unit_cost > self._cash:
            quantity = math.floor(self._cash / unit_cost)

        if quantity <= 0:
            logger.debug("%s: no affordable quantity for %s at %.2f", entry_date, key, price)
            return False

        cost = quantity * unit_cost
        if cost > self._cash:
            return False

        self._positions[key] = Position(
            entry_date=entry_date,
            strike=key.strike,
            expiry=key.expiry,
            entry_price=price,
            quantity=quantity,
            contract_key=key,
            signal_class=signal_class,
        )
        self._cash -= cost
        self._positions_opened += 1

        logger.debug(
            "%s: opened %s x%d @ %.2f (cost $%.2f, cash $%.2f)",
            entry_date, key, quantity, price, cost, self._cash,
        )
        return True

    def close(
        self,
        key: ContractKey,
        exit_date: date,
        exit_price: float,
        reason: ExitReason = ExitReason.SIGNAL,
    ) -> Trade:
        """Close the open position on *key* and record the trade.

        Raises:
            LedgerError: if *key* has no open position or *exit_price* is
                not a finite number.
        """
        position = self._positions.get(key)
        if position is None:
            raise LedgerError(f"No open position for {key}")
        if not is_valid_price(exit_price):
            raise LedgerError(f"Invalid exit price {exit_price!r} for {key}")

        tc = self.transaction_cost
        q = position.quantity
        proceeds = q * (exit_price - tc)
        entry_cost = q * (position.entry_price + tc)
        pnl = proceeds - entry_cost
        basis = q * position.entry_price

        trade = Trade(
            entry_date=position.entry_date,
            exit_date=exit_date,
            strike=position.strike,
            expiry=position.expiry,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=q,
            pnl=pnl,
            pnl_pct=100 * pnl / basis if basis != 0 else 0.0,
            holding_period_days=(exit_date - position.entry_date).days,
            signal_class=position.signal_class,
            exit_reason=reason,
        )

        self._trades.append(trade)
        del self._positions[key]
        self._cash += proceeds

        logger.debug("Closed %s (%s): P&L $%.2f", key, reason.value, pnl)
        return trade

    def settle_expired(
        self,
        as_of: date,
        price_lookup: PriceLookup,
        intrinsic_fallback: IntrinsicFallback,
    ) -> List[Trade]:
        """Close every open position whose expiry is on or before *as_of*.

        The trade is dated at the contract's expiry. Exit price is the latest
        quote at or before expiry, else the intrinsic-value fallback, else 0.0.
        """
        expired = [key for key, pos in self._positions.items() if pos.expiry <= as_of]
        settled = []
        for key in expired:
            position = self._positions[key]
            price = price_lookup(key, position.expiry)
            if price is None:
                result = intrinsic_fallback(position)
                if not result.ok:
                    logger.debug("%s: no exit price for %s (%s), settling at 0.0", as_of, key, result.error)
                price = result.unwrap_or(0.0)
            settled.append(self.close(key, position.expiry, price, ExitReason.EXPIRY))
        return settled

    def liquidate(self, as_of: date, price_lookup: PriceLookup) -> List[Trade]:
        """Force-close every open position at the latest quote, else entry price."""
        closed = []
        for key in list(self._positions):
            position = self._positions[key]
            price = price_lookup(key, as_of)
            if price is None:
                price = position.entry_price
            closed.append(self.close(key, as_of, price, ExitReason.LIQUIDATION))
        return closed

    def mark_to_market(self, as_of: date, price_lookup: PriceLookup) -> float:
        """Total equity: cash plus open positions at their latest quote.

        Positions with no usable quote are valued at their entry price.
        """
        open_value = 0.0
        for key, position in self._positions.items():
            price = price_lookup(key, as_of)
            if price is None:
                price = position.entry_price
            open_value += position.quantity * price
        return self._cash + open_value
