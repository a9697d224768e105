"""
Market Data Inputs
Loads the quote table and the signal table into typed, indexed stores.

Both tables are read once, validated, and converted to records before the
simulation starts. Quotes are indexed per contract so that "latest quote
at or before a date" is a binary search instead of a table scan.
"""

import logging
from bisect import bisect_right
from collections import defaultdict
from datetime import date
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from backtest.models import ContractKey, Quote, SignalClass, SignalEvent
from backtest.pricing import is_valid_price
from shared.constants import (
    CONFIDENCE_COL,
    DTE_COL,
    EXPIRY_COL,
    MID_PRICE_COL,
    PRICE_COL,
    QUOTE_DATE_COL,
    QUOTE_REQUIRED_COLUMNS,
    SIGNAL_COL,
    SIGNAL_REQUIRED_COLUMNS,
    STRIKE_COL,
    UNDERLYING_COL,
)
from shared.exceptions import DataError

logger = logging.getLogger(__name__)

TableSource = Union[pd.DataFrame, str, Path]


# ------------------------------------------------------------------
# Table loading helpers
# ------------------------------------------------------------------

def read_table(source: TableSource) -> pd.DataFrame:
    """Return a DataFrame from a DataFrame (copied) or a CSV path."""
    if isinstance(source, pd.DataFrame):
        return source.copy()

    path = Path(source)
    if not path.exists():
        raise DataError(f"Input file not found: {path}")
    try:
        return pd.read_csv(path)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise DataError(f"Could not read {path}: {e}") from e


def _require_columns(df: pd.DataFrame, required: Sequence[str], table: str):
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise DataError(f"{table} table is missing required columns: {', '.join(missing)}")


def _to_dates(series: pd.Series) -> pd.Series:
    return pd.to_datetime(series, errors='coerce').dt.date


def _to_floats(series: pd.Series) -> np.ndarray:
    return pd.to_numeric(series, errors='coerce').to_numpy(dtype=float)


def _drop_unkeyed_rows(df: pd.DataFrame, table: str) -> pd.DataFrame:
    """Drop rows whose date, strike or expiry could not be parsed."""
    df[QUOTE_DATE_COL] = _to_dates(df[QUOTE_DATE_COL])
    df[EXPIRY_COL] = _to_dates(df[EXPIRY_COL])
    df[STRIKE_COL] = pd.to_numeric(df[STRIKE_COL], errors='coerce')

    mask = df[[QUOTE_DATE_COL, EXPIRY_COL, STRIKE_COL]].notna().all(axis=1)
    dropped = int((~mask).sum())
    if dropped:
        logger.warning("Dropping %d %s rows with unparseable date/strike/expiry", dropped, table)
    return df[mask]


# ------------------------------------------------------------------
# Quote store
# ------------------------------------------------------------------

class QuoteStore:
    """Read-only quote table with a per-contract time index."""

    def __init__(self, quotes: Sequence[Quote]):
        # Stable sort keeps source order among quotes on the same date
        self._quotes: List[Quote] = sorted(quotes, key=lambda q: q.quote_date)
        self._dates: List[date] = sorted({q.quote_date for q in self._quotes})

        series: Dict[ContractKey, Dict[date, float]] = {}
        self._underlying_by_date: Dict[date, float] = {}
        for q in self._quotes:
            series.setdefault(q.key, {}).setdefault(q.quote_date, q.contract_mid_price)
            self._underlying_by_date.setdefault(q.quote_date, q.underlying_price)

        self._index: Dict[ContractKey, Tuple[List[date], List[float]]] = {}
        for key, by_date in series.items():
            days = sorted(by_date)
            self._index[key] = (days, [by_date[d] for d in days])

        logger.debug(
            "QuoteStore built: %d quotes, %d dates, %d contracts",
            len(self._quotes), len(self._dates), len(self._index),
        )

    @classmethod
    def from_frame(cls, source: TableSource) -> "QuoteStore":
        """Build a store from a quote DataFrame or CSV path."""
        df = read_table(source)
        _require_columns(df, QUOTE_REQUIRED_COLUMNS, "Quote")
        df = _drop_unkeyed_rows(df, "quote")

        mids = _to_floats(df[MID_PRICE_COL])
        underlyings = _to_floats(df[UNDERLYING_COL])
        dtes = _to_floats(df[DTE_COL]) if DTE_COL in df.columns else np.full(len(df), np.nan)

        quotes = [
            Quote(
                quote_date=qd,
                strike=float(strike),
                expiry=exp,
                underlying_price=float(s),
                contract_mid_price=float(mid),
                dte=None if np.isnan(dte) else float(dte),
            )
            for qd, strike, exp, s, mid, dte in zip(
                df[QUOTE_DATE_COL], df[STRIKE_COL], df[EXPIRY_COL], underlyings, mids, dtes,
            )
        ]
        return cls(quotes)

    def __len__(self) -> int:
        return len(self._quotes)

    def __iter__(self) -> Iterator[Quote]:
        return iter(self._quotes)

    @property
    def dates(self) -> List[date]:
        """Sorted unique quote dates."""
        return list(self._dates)

    def price_at(self, key: ContractKey, as_of: date) -> Optional[float]:
        """Mid price of the latest quote for *key* at or before *as_of*.

        Returns None when the contract has no quote by that date or when
        the latest quote's mid price is missing / non-finite.
        """
        entry = self._index.get(key)
        if entry is None:
            return None
        days, prices = entry
        i = bisect_right(days, as_of)
        if i == 0:
            return None
        price = prices[i - 1]
        return price if is_valid_price(price) else None

    def underlying_on(self, day: date) -> Optional[float]:
        """Underlying price from the first quote recorded on *day*."""
        price = self._underlying_by_date.get(day)
        return price if is_valid_price(price) else None


# ------------------------------------------------------------------
# Signal stream
# ------------------------------------------------------------------

class SignalStream:
    """Read-only signal table grouped by quote date, source order preserved."""

    def __init__(self, events: Sequence[SignalEvent]):
        self._events: List[SignalEvent] = list(events)
        self._by_date: Dict[date, List[SignalEvent]] = defaultdict(list)
        for event in self._events:
            self._by_date[event.quote_date].append(event)

    @classmethod
    def from_frame(cls, source: TableSource) -> "SignalStream":
        """Build a stream from a signal DataFrame or CSV path.

        The tradeable price comes from the ``price`` column, or from
        ``C_MID`` when the table has no ``price`` column.
        """
        df = read_table(source)
        _require_columns(df, SIGNAL_REQUIRED_COLUMNS, "Signal")
        df = _drop_unkeyed_rows(df, "signal")

        if PRICE_COL in df.columns:
            prices = _to_floats(df[PRICE_COL])
        elif MID_PRICE_COL in df.columns:
            logger.info("Signal table has no '%s' column; using '%s'", PRICE_COL, MID_PRICE_COL)
            prices = _to_floats(df[MID_PRICE_COL])
        else:
            logger.warning("Signal table has no price column; every signal will be skipped")
            prices = np.full(len(df), np.nan)

        if CONFIDENCE_COL in df.columns:
            confidences = _to_floats(df[CONFIDENCE_COL])
        else:
            confidences = np.full(len(df), np.nan)

        events = []
        unknown = 0
        for qd, strike, exp, label, price, conf in zip(
            df[QUOTE_DATE_COL], df[STRIKE_COL], df[EXPIRY_COL], df[SIGNAL_COL], prices, confidences,
        ):
            signal_class = SignalClass.parse(label)
            if signal_class is None:
                unknown += 1
            events.append(SignalEvent(
                quote_date=qd,
                strike=float(strike),
                expiry=exp,
                signal_class=signal_class,
                trade_price=float(price),
                confidence=None if np.isnan(conf) else float(conf),
            ))

        if unknown:
            logger.warning("%d signal rows have an unrecognised signal class", unknown)
        return cls(events)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[SignalEvent]:
        return iter(self._events)

    def on(self, day: date) -> List[SignalEvent]:
        """Signals for *day*, in source order."""
        return list(self._by_date.get(day, ()))
