"""TypedDict definitions for configuration and result shapes used across the system."""

from typing import Dict, List, TypedDict


class BacktestConfig(TypedDict, total=False):
    """Backtesting configuration (the ``backtest:`` section)."""
    initial_capital: float
    position_size: float
    transaction_cost: float
    max_positions: int
    close_on_expiry: bool
    allow_partial_fill: bool
    risk_free_rate: float
    generate_reports: bool
    report_dir: str


class DataConfig(TypedDict, total=False):
    """Input table locations."""
    quotes_file: str
    signals_file: str


class LoggingConfig(TypedDict, total=False):
    """Logging configuration."""
    level: str
    file: str
    console: bool
    max_bytes: int
    backup_count: int
    levels: Dict[str, str]


class AppConfig(TypedDict, total=False):
    """Top-level application configuration."""
    backtest: BacktestConfig
    data: DataConfig
    logging: LoggingConfig


class ResultsSummary(TypedDict):
    """Return type of ``backtest.metrics.summarize_results``."""
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    total_pnl: float
    avg_win: float
    avg_loss: float
    profit_factor: float
    max_drawdown: float
    sharpe_ratio: float
    sortino_ratio: float
    starting_capital: float
    ending_capital: float
    return_pct: float
    exit_reasons: Dict[str, int]
    skipped_signals: Dict[str, int]
    trades: List[dict]
    equity_curve: List[dict]
