"""Shared test fixtures."""
from datetime import date, timedelta

import numpy as np
import pandas as pd
import pytest

D0 = date(2024, 1, 2)


@pytest.fixture
def sample_config():
    return {
        'backtest': {
            'initial_capital': 10000,
            'position_size': 1000,
            'transaction_cost': 0.50,
            'max_positions': 10,
            'close_on_expiry': True,
            'allow_partial_fill': False,
            'risk_free_rate': 0.02,
            'generate_reports': False,
            'report_dir': '/tmp/backtest_reports',
        },
        'data': {
            'quotes_file': 'data/quotes.csv',
            'signals_file': 'data/signals.csv',
        },
        'logging': {'level': 'WARNING', 'file': '/tmp/test_backtest.log', 'console': False},
    }


@pytest.fixture
def make_quotes():
    """Factory: daily quotes for one contract with a constant (or given) mid."""
    def _make(strike=400.0, expiry=D0 + timedelta(days=30), start=D0, days=31,
              mid=10.0, underlying=405.0):
        dates = [start + timedelta(days=i) for i in range(days)]
        mids = mid if isinstance(mid, (list, np.ndarray)) else [mid] * days
        return pd.DataFrame({
            'QUOTE_DATE': dates,
            'STRIKE': strike,
            'EXPIRE_DATE': expiry,
            'C_MID': mids,
            'UNDERLYING_LAST': underlying,
            'DTE': [(expiry - d).days for d in dates],
        })
    return _make


@pytest.fixture
def make_signals():
    """Factory: signal table from (date, strike, expiry, signal, price) tuples."""
    def _make(rows):
        return pd.DataFrame(
            rows, columns=['QUOTE_DATE', 'STRIKE', 'EXPIRE_DATE', 'signal', 'price'],
        )
    return _make
