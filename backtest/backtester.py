"""
Backtesting Engine
Replays externally generated trading signals against historical option quotes.

End-of-day model: for each quote date, expired positions are settled, the
day's signals are applied to the ledger in source order, and the portfolio
is marked to market.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

from backtest.ledger import Ledger
from backtest.market_data import QuoteStore, SignalStream, TableSource
from backtest.models import ContractKey, EquityPoint, Position, SignalEvent, Trade
from backtest.pricing import PriceResult, intrinsic_value, is_valid_price
from shared.constants import (
    DEFAULT_ALLOW_PARTIAL_FILL,
    DEFAULT_CLOSE_ON_EXPIRY,
    DEFAULT_INITIAL_CAPITAL,
    DEFAULT_MAX_POSITIONS,
    DEFAULT_POSITION_SIZE,
    DEFAULT_TRANSACTION_COST,
)
from shared.exceptions import EmptyQuoteTableError

logger = logging.getLogger(__name__)

# Reasons a signal row is dropped without touching the ledger
SKIP_INVALID_PRICE = 'invalid_price'
SKIP_UNKNOWN_CLASS = 'unknown_class'
SKIP_REJECTED_ENTRY = 'rejected_entry'
SKIP_NO_POSITION = 'no_position'


@dataclass
class BacktestResult:
    """Output of one backtest run."""
    trades: List[Trade]
    equity_curve: List[float]
    dates: List[date]
    final_cash: float
    open_positions: Dict[ContractKey, Position]
    initial_capital: float
    transaction_cost: float
    positions_opened: int = 0
    skipped_signals: Dict[str, int] = field(default_factory=dict)

    @property
    def equity_points(self) -> List[EquityPoint]:
        return [EquityPoint(d, v) for d, v in zip(self.dates, self.equity_curve)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trades': [t.to_dict() for t in self.trades],
            'equity_curve': [
                {'date': d.isoformat(), 'equity': v}
                for d, v in zip(self.dates, self.equity_curve)
            ],
            'final_cash': self.final_cash,
            'initial_capital': self.initial_capital,
            'open_positions': len(self.open_positions),
            'positions_opened': self.positions_opened,
            'skipped_signals': dict(self.skipped_signals),
        }


def trades_to_frame(trades: Sequence[Trade]) -> pd.DataFrame:
    """Trade ledger as a DataFrame (one row per trade)."""
    return pd.DataFrame([t.to_dict() for t in trades])


class Backtester:
    """
    Run a signal-driven backtest over a quote table.

    Each call to ``run`` builds a fresh Ledger, so one Backtester can be
    reused for several runs, but a single run is strictly sequential.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize backtester.

        Args:
            config: Configuration dictionary; settings are read from its
                    ``backtest`` section, missing keys take the defaults.
        """
        self.config = config or {}
        bt = self.config.get('backtest', {})

        self.initial_capital = float(bt.get('initial_capital', DEFAULT_INITIAL_CAPITAL))
        self.position_size = float(bt.get('position_size', DEFAULT_POSITION_SIZE))
        self.transaction_cost = float(bt.get('transaction_cost', DEFAULT_TRANSACTION_COST))
        self.max_positions = int(bt.get('max_positions', DEFAULT_MAX_POSITIONS))
        self.close_on_expiry = bool(bt.get('close_on_expiry', DEFAULT_CLOSE_ON_EXPIRY))
        self.allow_partial_fill = bool(bt.get('allow_partial_fill', DEFAULT_ALLOW_PARTIAL_FILL))

        logger.debug(
            "Backtester initialized (capital=%.2f, position_size=%.2f, tc=%.2f, "
            "max_positions=%d, close_on_expiry=%s, partial_fill=%s)",
            self.initial_capital, self.position_size, self.transaction_cost,
            self.max_positions, self.close_on_expiry, self.allow_partial_fill,
        )

    def _new_ledger(self) -> Ledger:
        return Ledger(
            initial_capital=self.initial_capital,
            position_size=self.position_size,
            transaction_cost=self.transaction_cost,
            max_positions=self.max_positions,
            allow_partial_fill=self.allow_partial_fill,
        )

    def run(
        self,
        quotes: Union[QuoteStore, TableSource],
        signals: Union[SignalStream, TableSource],
    ) -> BacktestResult:
        """
        Run the backtest.

        Args:
            quotes: QuoteStore, quote DataFrame or CSV path
            signals: SignalStream, signal DataFrame or CSV path

        Returns:
            BacktestResult with trades, equity curve and final cash

        Raises:
            EmptyQuoteTableError: if the quote table has no dates.
        """
        store = quotes if isinstance(quotes, QuoteStore) else QuoteStore.from_frame(quotes)
        stream = signals if isinstance(signals, SignalStream) else SignalStream.from_frame(signals)

        dates = store.dates
        if not dates:
            raise EmptyQuoteTableError("Quote table is empty: no dates to simulate")

        logger.info(
            "Starting backtest: %d dates (%s to %s), %d signals",
            len(dates), dates[0], dates[-1], len(stream),
        )

        ledger = self._new_ledger()
        skipped: Dict[str, int] = {}

        def intrinsic_fallback(position: Position) -> PriceResult:
            return intrinsic_value(store.underlying_on(position.entry_date), position.strike)

        equity_curve: List[float] = []
        for current_date in dates:
            # 1) Expiry settlement at start of day
            if self.close_on_expiry:
                ledger.settle_expired(current_date, store.price_at, intrinsic_fallback)

            # 2) Apply today's signals
            for event in stream.on(current_date):
                reason = self._apply_signal(ledger, event)
                if reason is not None:
                    skipped[reason] = skipped.get(reason, 0) + 1

            # 3) Mark to market
            equity = ledger.mark_to_market(current_date, store.price_at)
            equity_curve.append(equity)

            logger.debug(
                "%s  cash=%.2f  open_positions=%d  equity=%.2f",
                current_date, ledger.cash, len(ledger.open_positions), equity,
            )

        # Close any remaining positions
        final_date = dates[-1]
        ledger.settle_expired(final_date, store.price_at, intrinsic_fallback)
        ledger.liquidate(final_date, store.price_at)

        trades = list(ledger.trades)
        logger.info(
            "Backtest complete. Total trades: %d, final cash: $%.2f",
            len(trades), ledger.cash,
        )
        if skipped:
            logger.info("Skipped signals: %s", skipped)

        return BacktestResult(
            trades=trades,
            equity_curve=equity_curve,
            dates=dates,
            final_cash=ledger.cash,
            open_positions=dict(ledger.open_positions),
            initial_capital=self.initial_capital,
            transaction_cost=self.transaction_cost,
            positions_opened=ledger.positions_opened,
            skipped_signals=skipped,
        )

    def _apply_signal(self, ledger: Ledger, event: SignalEvent) -> Optional[str]:
        """Apply one signal to the ledger. Returns a skip reason, or None if acted on."""
        if not is_valid_price(event.trade_price):
            logger.debug("%s: skipping %s signal with no price", event.quote_date, event.key)
            return SKIP_INVALID_PRICE

        signal_class = event.signal_class
        if signal_class is None:
            return SKIP_UNKNOWN_CLASS

        key = event.key
        if signal_class.is_entry:
            if ledger.has_position(key) or not ledger.can_open():
                return SKIP_REJECTED_ENTRY
            if not ledger.open(event.quote_date, key, event.trade_price, signal_class):
                return SKIP_REJECTED_ENTRY
            return None

        if signal_class.is_exit:
            if not ledger.has_position(key):
                return SKIP_NO_POSITION
            ledger.close(key, event.quote_date, event.trade_price)
            return None

        # Hold
        return None


def backtest_strategy(
    quotes: Union[QuoteStore, TableSource],
    signals: Union[SignalStream, TableSource],
    **settings,
) -> BacktestResult:
    """Convenience wrapper: ``backtest_strategy(q, s, position_size=500)``."""
    return Backtester({'backtest': settings}).run(quotes, signals)


def run_parameter_sweep(
    quotes: Union[QuoteStore, TableSource],
    signals: Union[SignalStream, TableSource],
    base_config: Optional[Dict],
    grid: Sequence[Mapping[str, Any]],
    max_workers: int = 4,
) -> List[BacktestResult]:
    """Run independent backtests, one per override set in *grid*.

    Inputs are loaded once and shared read-only; every run gets its own
    Backtester and Ledger. Results are returned in grid order.
    """
    store = quotes if isinstance(quotes, QuoteStore) else QuoteStore.from_frame(quotes)
    stream = signals if isinstance(signals, SignalStream) else SignalStream.from_frame(signals)

    def _run(overrides: Mapping[str, Any]) -> BacktestResult:
        config = deepcopy(base_config) if base_config else {}
        config.setdefault('backtest', {}).update(overrides)
        return Backtester(config).run(store, stream)

    logger.info("Running parameter sweep: %d configurations", len(grid))
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(_run, grid))
