"""
Backtesting module for signal-driven option strategies.
"""

from .backtester import BacktestResult, Backtester, backtest_strategy, run_parameter_sweep
from .ledger import Ledger
from .market_data import QuoteStore, SignalStream
from .performance_metrics import PerformanceMetrics

__all__ = [
    'BacktestResult',
    'Backtester',
    'Ledger',
    'PerformanceMetrics',
    'QuoteStore',
    'SignalStream',
    'backtest_strategy',
    'run_parameter_sweep',
]
