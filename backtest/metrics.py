"""
Performance metrics and fuzzy-interval calibration helpers.

Pure functions over a finished trade list and equity curve. Returns are
daily simple returns annualised with 252 trading days; standard deviations
are sample (ddof=1) deviations.
"""

import math
from collections import Counter
from typing import Dict, Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from backtest.pricing import is_valid_price
from shared.constants import DEFAULT_RISK_FREE_RATE, PROFIT_FACTOR_CAP, TRADING_DAYS_PER_YEAR
from shared.types import ResultsSummary


# ---------------------------------------------------------------------------
# Trade metrics
# ---------------------------------------------------------------------------

def total_pnl(trades) -> float:
    return float(sum(t.pnl for t in trades))


def win_rate(trades) -> float:
    """Percentage of trades with positive P&L (0 when there are no trades)."""
    trades = list(trades)
    if not trades:
        return 0.0
    return 100 * sum(1 for t in trades if t.pnl > 0) / len(trades)


def average_win(trades) -> float:
    wins = [t.pnl for t in trades if t.pnl > 0]
    return float(np.mean(wins)) if wins else 0.0


def average_loss(trades) -> float:
    """Mean P&L of losing trades (a negative number, 0 when none)."""
    losses = [t.pnl for t in trades if t.pnl < 0]
    return float(np.mean(losses)) if losses else 0.0


def profit_factor(trades) -> float:
    """Gross profit / gross loss, capped so the value stays JSON-friendly."""
    gross_win = sum(t.pnl for t in trades if t.pnl > 0)
    gross_loss = sum(t.pnl for t in trades if t.pnl < 0)
    if gross_loss != 0:
        return abs(gross_win / gross_loss)
    return PROFIT_FACTOR_CAP if gross_win > 0 else 0.0


def total_return_pct(final_value: float, initial_capital: float) -> float:
    if initial_capital == 0:
        return 0.0
    return 100 * (final_value - initial_capital) / initial_capital


# ---------------------------------------------------------------------------
# Risk-adjusted metrics
# ---------------------------------------------------------------------------

def _daily_returns(equity_curve: Sequence[float]) -> np.ndarray:
    equity = np.asarray(equity_curve, dtype=float)
    return np.diff(equity) / equity[:-1]


def sharpe_ratio(equity_curve: Sequence[float], risk_free_rate: float = DEFAULT_RISK_FREE_RATE) -> float:
    """Annualised Sharpe ratio of an equity curve.

    Args:
        equity_curve: Daily portfolio values.
        risk_free_rate: Annual risk-free rate in decimal.

    Returns:
        ``(252 * mean - rf) / (sqrt(252) * std)``; 0 with fewer than two
        points or when the deviation is zero or undefined.
    """
    if len(equity_curve) < 2:
        return 0.0
    rets = _daily_returns(equity_curve)
    mean_ann = rets.mean() * TRADING_DAYS_PER_YEAR
    std_ann = _sample_std(rets) * math.sqrt(TRADING_DAYS_PER_YEAR)
    if not math.isfinite(std_ann) or std_ann == 0.0:
        return 0.0
    return float((mean_ann - risk_free_rate) / std_ann)


def sortino_ratio(equity_curve: Sequence[float], risk_free_rate: float = DEFAULT_RISK_FREE_RATE) -> float:
    """Annualised Sortino ratio (deviation of negative returns only).

    Returns +inf when no return is negative and 0 with fewer than two
    points or a zero downside deviation. A single negative return has no
    sample deviation; that case returns 0.0, not NaN.
    """
    if len(equity_curve) < 2:
        return 0.0
    rets = _daily_returns(equity_curve)
    downside = rets[rets < 0]
    if downside.size == 0:
        return math.inf
    downside_std = _sample_std(downside) * math.sqrt(TRADING_DAYS_PER_YEAR)
    if not math.isfinite(downside_std) or downside_std == 0.0:
        return 0.0
    mean_ann = rets.mean() * TRADING_DAYS_PER_YEAR
    return float((mean_ann - risk_free_rate) / downside_std)


def _sample_std(values: np.ndarray) -> float:
    if values.size < 2:
        return math.nan
    return float(np.std(values, ddof=1))


def calculate_drawdown_series(equity_curve: Sequence[float]) -> list:
    """Percentage drawdown from the running peak at every point."""
    drawdowns = []
    peak = -math.inf
    for value in equity_curve:
        peak = max(peak, value)
        drawdowns.append(100 * (peak - value) / peak if peak > 0 else 0.0)
    return drawdowns


def max_drawdown(equity_curve: Sequence[float]) -> float:
    """Largest percentage decline from a running peak (0 for an empty curve)."""
    return max(calculate_drawdown_series(equity_curve), default=0.0)


# ---------------------------------------------------------------------------
# Fuzzy-specific coverage helpers
# ---------------------------------------------------------------------------

def interval_coverage(records: Iterable[Mapping], alpha_levels: Sequence[float]) -> Dict[float, float]:
    """Share of records whose market price lies inside their α-cut bounds.

    Each record is a mapping (or DataFrame row) with ``market_price``,
    ``fuzzy_lower`` and ``fuzzy_upper``; the bounds map α to the interval
    edge at that α. A
    record counts towards α only when it has a finite market price and both
    bounds at α.

    Returns:
        ``{α: coverage percent}``, NaN for an α with no eligible records.
    """
    if isinstance(records, pd.DataFrame):
        records = records.to_dict('records')
    records = list(records)
    coverage = {}
    for alpha in alpha_levels:
        inside = 0
        n = 0
        for record in records:
            bounds = _bounds_at(record, alpha)
            if bounds is None:
                continue
            n += 1
            low, high, price = bounds
            if low <= price <= high:
                inside += 1
        coverage[alpha] = 100 * inside / n if n else math.nan
    return coverage


def _bounds_at(record: Mapping, alpha: float) -> Optional[tuple]:
    price = record.get('market_price')
    lower = record.get('fuzzy_lower')
    upper = record.get('fuzzy_upper')
    if not isinstance(lower, Mapping) or not isinstance(upper, Mapping):
        return None
    if not is_valid_price(price) or alpha not in lower or alpha not in upper:
        return None
    return lower[alpha], upper[alpha], price


def calibration_error(coverage: Mapping[float, float]) -> float:
    """Mean |observed coverage - 100(1-α)| over the non-NaN entries (NaN if none)."""
    errors = [
        abs(actual - (1 - alpha) * 100)
        for alpha, actual in coverage.items()
        if not math.isnan(actual)
    ]
    return float(np.mean(errors)) if errors else math.nan


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

def summarize_results(result, risk_free_rate: float = DEFAULT_RISK_FREE_RATE) -> ResultsSummary:
    """Headline statistics for a BacktestResult."""
    trades = result.trades
    return {
        'total_trades': len(trades),
        'winning_trades': sum(1 for t in trades if t.pnl > 0),
        'losing_trades': sum(1 for t in trades if t.pnl < 0),
        'win_rate': round(win_rate(trades), 2),
        'total_pnl': round(total_pnl(trades), 2),
        'avg_win': round(average_win(trades), 2),
        'avg_loss': round(average_loss(trades), 2),
        'profit_factor': round(profit_factor(trades), 2),
        'max_drawdown': round(max_drawdown(result.equity_curve), 2),
        'sharpe_ratio': round(sharpe_ratio(result.equity_curve, risk_free_rate), 2),
        'sortino_ratio': round(sortino_ratio(result.equity_curve, risk_free_rate), 2),
        'starting_capital': result.initial_capital,
        'ending_capital': round(result.final_cash, 2),
        'return_pct': round(total_return_pct(result.final_cash, result.initial_capital), 2),
        'exit_reasons': dict(Counter(t.exit_reason.value for t in trades)),
        'skipped_signals': dict(result.skipped_signals),
        'trades': [t.to_dict() for t in trades],
        'equity_curve': [
            {'date': d.isoformat(), 'equity': v}
            for d, v in zip(result.dates, result.equity_curve)
        ],
    }
