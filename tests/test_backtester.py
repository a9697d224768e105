"""Tests for the Backtester simulation loop."""
import math
from datetime import date, timedelta

import numpy as np
import pandas as pd
import pytest

from backtest.backtester import Backtester, backtest_strategy, run_parameter_sweep, trades_to_frame
from backtest.market_data import QuoteStore, SignalStream
from backtest.models import ExitReason, SignalClass
from shared.exceptions import EmptyQuoteTableError

D0 = date(2024, 1, 2)
EXPIRY = D0 + timedelta(days=30)


def _day(n):
    return D0 + timedelta(days=n)


# ---------------------------------------------------------------------------
# Round trip through a Buy and a Sell signal
# ---------------------------------------------------------------------------

class TestBuyThenSell:

    def setup_method(self):
        self.bt = Backtester({'backtest': {'position_size': 1000, 'transaction_cost': 0.5}})

    def test_scenario_pnl(self, make_quotes, make_signals):
        """Buy 95 @ 10, sell @ 12 -> pnl 95*11.5 - 95*10.5 = 95."""
        signals = make_signals([
            (D0, 400.0, EXPIRY, 'Buy', 10.0),
            (_day(10), 400.0, EXPIRY, 'Sell', 12.0),
        ])
        result = self.bt.run(make_quotes(), signals)

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.quantity == 95
        assert trade.pnl == pytest.approx(95.0)
        assert trade.pnl_pct == pytest.approx(100 * 95.0 / (95 * 10.0))
        assert trade.exit_date == _day(10)
        assert trade.holding_period_days == 10
        assert trade.exit_reason == ExitReason.SIGNAL
        assert trade.signal_class == SignalClass.BUY
        assert result.final_cash == pytest.approx(10000 + 95.0)

    def test_equity_curve(self, make_quotes, make_signals):
        """Equity is cash plus marked positions, one point per quote date."""
        signals = make_signals([
            (D0, 400.0, EXPIRY, 'Buy', 10.0),
            (_day(10), 400.0, EXPIRY, 'Sell', 12.0),
        ])
        result = self.bt.run(make_quotes(), signals)

        assert len(result.equity_curve) == 31
        assert result.dates == [_day(i) for i in range(31)]
        # cash 10000 - 997.5 plus 95 contracts marked at 10.0
        assert result.equity_curve[0] == pytest.approx(9002.5 + 950.0)
        assert result.equity_curve[10] == pytest.approx(10095.0)
        assert result.equity_curve[-1] == pytest.approx(10095.0)

    def test_strong_classes_behave_like_plain(self, make_quotes, make_signals):
        signals = make_signals([
            (D0, 400.0, EXPIRY, 'StrongBuy', 10.0),
            (_day(5), 400.0, EXPIRY, 'StrongSell', 11.0),
        ])
        result = self.bt.run(make_quotes(), signals)
        assert len(result.trades) == 1
        assert result.trades[0].signal_class == SignalClass.STRONG_BUY
        assert result.trades[0].exit_date == _day(5)


# ---------------------------------------------------------------------------
# Expiry settlement
# ---------------------------------------------------------------------------

class TestExpirySettlement:

    def test_closed_on_expiry_at_quote(self, make_quotes, make_signals):
        """Without a Sell, the position closes on its expiry at the expiry quote."""
        signals = make_signals([(D0, 400.0, EXPIRY, 'Buy', 10.0)])
        result = backtest_strategy(make_quotes(), signals)

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.exit_date == EXPIRY
        assert trade.exit_price == pytest.approx(10.0)
        assert trade.exit_reason == ExitReason.EXPIRY
        assert trade.pnl == pytest.approx(95 * 9.5 - 95 * 10.5)

    def test_expiry_uses_latest_quote_before_expiry(self, make_quotes, make_signals):
        """Quotes stop before expiry: the last one at or before expiry is used."""
        quotes = make_quotes(days=20, mid=list(np.linspace(10.0, 14.75, 20)))
        # Keep the calendar running past expiry with another contract
        later = make_quotes(strike=410.0, expiry=_day(60), start=_day(20), days=20)
        signals = make_signals([(D0, 400.0, EXPIRY, 'Buy', 10.0)])

        result = backtest_strategy(pd.concat([quotes, later]), signals)
        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.EXPIRY
        assert trade.exit_date == EXPIRY
        assert trade.exit_price == pytest.approx(14.75)

    def test_intrinsic_fallback(self, make_quotes, make_signals):
        """No quote for the contract: exit at max(S_entry - K, 0)."""
        quotes = make_quotes(days=10, underlying=405.0)
        signals = make_signals([(D0, 390.0, _day(5), 'Buy', 5.0)])

        result = backtest_strategy(quotes, signals)
        trade = result.trades[0]
        assert trade.exit_date == _day(5)
        assert trade.exit_price == pytest.approx(15.0)
        assert trade.quantity == 181  # floor(1000 / 5.5)
        assert trade.pnl == pytest.approx(181 * 14.5 - 181 * 5.5)

    def test_intrinsic_fallback_out_of_the_money(self, make_quotes, make_signals):
        quotes = make_quotes(days=10, underlying=380.0)
        signals = make_signals([(D0, 390.0, _day(5), 'Buy', 5.0)])

        trade = backtest_strategy(quotes, signals).trades[0]
        assert trade.exit_price == 0.0

    def test_zero_when_underlying_missing(self, make_quotes, make_signals):
        quotes = make_quotes(days=10, underlying=np.nan)
        signals = make_signals([(D0, 390.0, _day(5), 'Buy', 5.0)])

        trade = backtest_strategy(quotes, signals).trades[0]
        assert trade.exit_price == 0.0
        assert trade.exit_reason == ExitReason.EXPIRY

    def test_close_on_expiry_disabled(self, make_quotes, make_signals):
        """Expired positions stay open during the run when the policy is off."""
        quotes = make_quotes(expiry=_day(5), days=31, mid=list(np.arange(31, dtype=float) + 10.0))
        signals = make_signals([(D0, 400.0, _day(5), 'Buy', 10.0)])
        # The contract stops quoting after its expiry; another strike keeps the calendar going
        quotes.loc[quotes['QUOTE_DATE'] > _day(5), 'STRIKE'] = 401.0

        result = backtest_strategy(quotes, signals, close_on_expiry=False)
        # Still closed once at the end, dated at expiry
        assert len(result.trades) == 1
        assert result.trades[0].exit_date == _day(5)
        # Marked at the last available quote (day 5) while still open
        assert result.equity_curve[-1] == pytest.approx(
            10000 - 95 * 10.5 + 95 * 15.0
        )


# ---------------------------------------------------------------------------
# End-of-run liquidation
# ---------------------------------------------------------------------------

class TestLiquidation:

    def test_open_position_liquidated_at_last_quote(self, make_quotes, make_signals):
        quotes = make_quotes(days=10, mid=list(np.arange(10, dtype=float) + 10.0))
        signals = make_signals([(D0, 400.0, EXPIRY, 'Buy', 10.0)])

        result = backtest_strategy(quotes, signals)
        assert result.open_positions == {}
        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.LIQUIDATION
        assert trade.exit_date == _day(9)
        assert trade.exit_price == pytest.approx(19.0)

    def test_liquidated_at_entry_price_without_quotes(self, make_quotes, make_signals):
        quotes = make_quotes(days=10)
        signals = make_signals([(_day(2), 420.0, EXPIRY, 'Buy', 3.0)])

        result = backtest_strategy(quotes, signals)
        trade = result.trades[0]
        assert trade.exit_price == pytest.approx(3.0)
        assert trade.pnl == pytest.approx(-2 * 0.5 * trade.quantity)


# ---------------------------------------------------------------------------
# Signal filtering and resource limits
# ---------------------------------------------------------------------------

class TestSignalHandling:

    def test_sell_without_position_is_noop(self, make_quotes, make_signals):
        signals = make_signals([(_day(3), 400.0, EXPIRY, 'Sell', 12.0)])
        result = backtest_strategy(make_quotes(), signals)
        assert result.trades == []
        assert result.final_cash == 10000
        assert all(v == 10000 for v in result.equity_curve)
        assert result.skipped_signals == {'no_position': 1}

    def test_hold_is_noop(self, make_quotes, make_signals):
        signals = make_signals([(D0, 400.0, EXPIRY, 'Hold', 10.0)])
        result = backtest_strategy(make_quotes(), signals)
        assert result.trades == []
        assert result.skipped_signals == {}

    def test_nan_price_skipped(self, make_quotes, make_signals):
        signals = make_signals([(D0, 400.0, EXPIRY, 'Buy', float('nan'))])
        result = backtest_strategy(make_quotes(), signals)
        assert result.trades == []
        assert result.skipped_signals == {'invalid_price': 1}

    def test_unknown_class_skipped(self, make_quotes, make_signals):
        signals = make_signals([(D0, 400.0, EXPIRY, 'Maybe', 10.0)])
        result = backtest_strategy(make_quotes(), signals)
        assert result.trades == []
        assert result.skipped_signals == {'unknown_class': 1}

    def test_no_pyramiding(self, make_quotes, make_signals):
        """A second Buy on an open key is ignored."""
        signals = make_signals([
            (D0, 400.0, EXPIRY, 'Buy', 10.0),
            (_day(1), 400.0, EXPIRY, 'Buy', 8.0),
            (_day(2), 400.0, EXPIRY, 'Sell', 10.0),
        ])
        result = backtest_strategy(make_quotes(), signals)
        assert len(result.trades) == 1
        assert result.trades[0].entry_price == 10.0
        assert result.trades[0].quantity == 95

    def test_position_cap(self, make_quotes, make_signals):
        signals = make_signals([
            (D0, 400.0, EXPIRY, 'Buy', 10.0),
            (D0, 405.0, EXPIRY, 'Buy', 10.0),
        ])
        result = backtest_strategy(make_quotes(), signals, max_positions=1)
        assert result.positions_opened == 1
        assert len(result.trades) == 1
        assert result.trades[0].strike == 400.0

    def test_cash_downsizing(self, make_quotes, make_signals):
        signals = make_signals([(D0, 400.0, EXPIRY, 'Buy', 10.0)])
        result = backtest_strategy(make_quotes(), signals, initial_capital=500)
        assert result.trades[0].quantity == 47  # floor(500 / 10.5)

    def test_budget_too_small_without_partial_fill(self, make_quotes, make_signals):
        signals = make_signals([(D0, 400.0, EXPIRY, 'Buy', 10.0)])
        result = backtest_strategy(make_quotes(), signals, position_size=5)
        assert result.trades == []
        assert result.skipped_signals == {'rejected_entry': 1}

    def test_budget_too_small_with_partial_fill(self, make_quotes, make_signals):
        signals = make_signals([(D0, 400.0, EXPIRY, 'Buy', 10.0)])
        result = backtest_strategy(make_quotes(), signals, position_size=5, allow_partial_fill=True)
        assert result.trades[0].quantity == 1

    def test_source_order_within_date(self, make_quotes, make_signals):
        """Sell listed before Buy on the same date does not close the new position."""
        signals = make_signals([
            (D0, 400.0, EXPIRY, 'Sell', 10.0),
            (D0, 400.0, EXPIRY, 'Buy', 10.0),
        ])
        result = backtest_strategy(make_quotes(), signals)
        assert result.trades[0].exit_reason == ExitReason.EXPIRY

    def test_signals_on_non_quote_dates_ignored(self, make_quotes, make_signals):
        quotes = make_quotes(days=5)
        signals = make_signals([(_day(20), 400.0, EXPIRY, 'Buy', 10.0)])
        result = backtest_strategy(quotes, signals)
        assert result.trades == []


# ---------------------------------------------------------------------------
# Run-level behaviour
# ---------------------------------------------------------------------------

class TestRun:

    def test_empty_quote_table_fails_fast(self, make_signals):
        empty = pd.DataFrame(columns=['QUOTE_DATE', 'STRIKE', 'EXPIRE_DATE', 'C_MID', 'UNDERLYING_LAST'])
        with pytest.raises(EmptyQuoteTableError):
            Backtester().run(empty, make_signals([]))

    def test_idempotent(self, make_quotes, make_signals):
        quotes = make_quotes(mid=list(np.linspace(8.0, 14.0, 31)))
        signals = make_signals([
            (D0, 400.0, EXPIRY, 'Buy', 8.0),
            (_day(12), 400.0, EXPIRY, 'Sell', 10.5),
            (_day(15), 400.0, EXPIRY, 'Buy', 11.0),
        ])
        bt = Backtester()
        first = bt.run(quotes, signals)
        second = bt.run(quotes, signals)
        assert first.trades == second.trades
        assert first.equity_curve == second.equity_curve
        assert first.final_cash == second.final_cash

    def test_accepts_prebuilt_stores(self, make_quotes, make_signals):
        store = QuoteStore.from_frame(make_quotes())
        stream = SignalStream.from_frame(make_signals([(D0, 400.0, EXPIRY, 'Buy', 10.0)]))
        result = Backtester().run(store, stream)
        assert len(result.trades) == 1

    def test_reads_csv_paths(self, tmp_path, make_quotes, make_signals):
        quotes_file = tmp_path / 'quotes.csv'
        signals_file = tmp_path / 'signals.csv'
        make_quotes().to_csv(quotes_file, index=False)
        make_signals([
            (D0, 400.0, EXPIRY, 'Buy', 10.0),
            (_day(10), 400.0, EXPIRY, 'Sell', 12.0),
        ]).to_csv(signals_file, index=False)

        result = Backtester().run(str(quotes_file), str(signals_file))
        assert result.trades[0].pnl == pytest.approx(95.0)

    def test_to_dict_and_frame(self, make_quotes, make_signals):
        result = backtest_strategy(make_quotes(), make_signals([(D0, 400.0, EXPIRY, 'Buy', 10.0)]))
        d = result.to_dict()
        assert d['open_positions'] == 0
        assert d['positions_opened'] == 1
        assert d['trades'][0]['exit_reason'] == 'expiry'
        assert len(d['equity_curve']) == 31

        df = trades_to_frame(result.trades)
        assert list(df['quantity']) == [95]

    def test_equity_points(self, make_quotes, make_signals):
        result = backtest_strategy(make_quotes(days=3), make_signals([]))
        points = result.equity_points
        assert [p.date for p in points] == [_day(0), _day(1), _day(2)]
        assert all(p.total_equity == 10000 for p in points)


class TestParameterSweep:

    def test_results_in_grid_order(self, make_quotes, make_signals, sample_config):
        signals = make_signals([
            (D0, 400.0, EXPIRY, 'Buy', 10.0),
            (_day(10), 400.0, EXPIRY, 'Sell', 12.0),
        ])
        grid = [{'position_size': 500}, {'position_size': 1000}, {'position_size': 2000}]
        results = run_parameter_sweep(make_quotes(), signals, sample_config, grid, max_workers=3)

        quantities = [r.trades[0].quantity for r in results]
        assert quantities == [47, 95, 190]
        # Base config untouched
        assert sample_config['backtest']['position_size'] == 1000

    def test_runs_do_not_share_state(self, make_quotes, make_signals):
        signals = make_signals([(D0, 400.0, EXPIRY, 'Buy', 10.0)])
        results = run_parameter_sweep(make_quotes(), signals, None, [{}, {}])
        assert results[0].trades == results[1].trades
        assert results[0] is not results[1]
        assert math.isclose(results[0].final_cash, results[1].final_cash)
