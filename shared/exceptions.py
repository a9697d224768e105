"""Custom exception hierarchy for the signal backtester."""


class BacktestError(Exception):
    """Base exception for all backtester errors."""


class DataError(BacktestError):
    """Raised when an input table is unusable (missing columns, unreadable file)."""


class EmptyQuoteTableError(DataError):
    """Raised when the quote table has no dates to simulate."""


class ConfigError(BacktestError, ValueError):
    """Raised on configuration errors."""


class LedgerError(BacktestError):
    """Raised on an invalid ledger mutation (e.g. closing a key with no position)."""
