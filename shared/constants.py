"""Shared constants used across the backtester.

This is the single canonical location for all named constants.
"""

import os

# ---------------------------------------------------------------------------
# Standardized project paths
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
OUTPUT_DIR = os.environ.get('FUZZYBT_OUTPUT_DIR', os.path.join(PROJECT_ROOT, 'output'))

# ---------------------------------------------------------------------------
# Backtest defaults
# ---------------------------------------------------------------------------
DEFAULT_INITIAL_CAPITAL = 10_000.0
DEFAULT_POSITION_SIZE = 1_000.0
DEFAULT_TRANSACTION_COST = 0.50   # per contract, charged on both legs
DEFAULT_MAX_POSITIONS = 10
DEFAULT_CLOSE_ON_EXPIRY = True
DEFAULT_ALLOW_PARTIAL_FILL = False

# New positions are only considered while cash is at least this much
MIN_CASH_TO_OPEN = 1.0

# ---------------------------------------------------------------------------
# Performance metrics
# ---------------------------------------------------------------------------
TRADING_DAYS_PER_YEAR = 252
DEFAULT_RISK_FREE_RATE = float(os.environ.get('FUZZYBT_RISK_FREE_RATE', '0.02'))

# Cap for JSON output when there are no losing trades
PROFIT_FACTOR_CAP = 999.99

# ---------------------------------------------------------------------------
# Input table columns
# ---------------------------------------------------------------------------
QUOTE_DATE_COL = 'QUOTE_DATE'
STRIKE_COL = 'STRIKE'
EXPIRY_COL = 'EXPIRE_DATE'
MID_PRICE_COL = 'C_MID'
UNDERLYING_COL = 'UNDERLYING_LAST'
DTE_COL = 'DTE'
SIGNAL_COL = 'signal'
PRICE_COL = 'price'
CONFIDENCE_COL = 'confidence'

QUOTE_REQUIRED_COLUMNS = (QUOTE_DATE_COL, STRIKE_COL, EXPIRY_COL, MID_PRICE_COL, UNDERLYING_COL)
SIGNAL_REQUIRED_COLUMNS = (QUOTE_DATE_COL, STRIKE_COL, EXPIRY_COL, SIGNAL_COL)
