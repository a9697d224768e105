"""
Typed records for the backtest engine.

Input rows (quotes, signals) are converted to these records once at
ingestion; the simulation loop never touches raw DataFrame rows.
"""

from dataclasses import asdict, dataclass
from datetime import date
from enum import Enum
from typing import NamedTuple, Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SignalClass(str, Enum):
    STRONG_BUY = "StrongBuy"
    BUY = "Buy"
    HOLD = "Hold"
    SELL = "Sell"
    STRONG_SELL = "StrongSell"

    @property
    def is_entry(self) -> bool:
        return self in (SignalClass.BUY, SignalClass.STRONG_BUY)

    @property
    def is_exit(self) -> bool:
        return self in (SignalClass.SELL, SignalClass.STRONG_SELL)

    @classmethod
    def parse(cls, value) -> Optional["SignalClass"]:
        """Map a raw signal label to a SignalClass, or None if unrecognised.

        Matching ignores case, spaces, underscores and hyphens, so
        ``"StrongBuy"``, ``"strong_buy"`` and ``"STRONG BUY"`` are equivalent.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        normalized = value.replace(" ", "").replace("_", "").replace("-", "").lower()
        return _SIGNAL_LOOKUP.get(normalized)


_SIGNAL_LOOKUP = {member.value.lower(): member for member in SignalClass}


class ExitReason(str, Enum):
    SIGNAL = "signal"
    EXPIRY = "expiry"
    LIQUIDATION = "liquidation"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

class ContractKey(NamedTuple):
    """Identity used to match positions, quotes and signals.

    Calls and puts share one namespace: the input tables carry no option
    type, so two contracts with the same strike and expiry collide.
    """
    strike: float
    expiry: date

    def __str__(self) -> str:
        return f"{self.strike}_{self.expiry.isoformat()}"


@dataclass(frozen=True)
class Quote:
    """One market observation for a contract on a quote date."""
    quote_date: date
    strike: float
    expiry: date
    underlying_price: float
    contract_mid_price: float
    dte: Optional[float] = None

    @property
    def key(self) -> ContractKey:
        return ContractKey(self.strike, self.expiry)


@dataclass(frozen=True)
class SignalEvent:
    """One trading decision from the external signal generator.

    ``signal_class`` is None when the raw label was not recognised;
    ``trade_price`` is NaN when the row carried no usable price.
    """
    quote_date: date
    strike: float
    expiry: date
    signal_class: Optional[SignalClass]
    trade_price: float
    confidence: Optional[float] = None

    @property
    def key(self) -> ContractKey:
        return ContractKey(self.strike, self.expiry)


@dataclass(frozen=True)
class Position:
    """An open long option position owned by the ledger."""
    entry_date: date
    strike: float
    expiry: date
    entry_price: float
    quantity: int
    contract_key: ContractKey
    signal_class: SignalClass


@dataclass(frozen=True)
class Trade:
    """A closed position. Produced exactly once per Position."""
    entry_date: date
    exit_date: date
    strike: float
    expiry: date
    entry_price: float
    exit_price: float
    quantity: int
    pnl: float
    pnl_pct: float
    holding_period_days: int
    signal_class: SignalClass
    exit_reason: ExitReason

    def to_dict(self) -> dict:
        record = asdict(self)
        record['signal_class'] = self.signal_class.value
        record['exit_reason'] = self.exit_reason.value
        return record


@dataclass(frozen=True)
class EquityPoint:
    date: date
    total_equity: float
