"""
Price-oracle helpers used when no market quote is available.

Oracles return a ``PriceResult`` instead of raising, so the ledger's
fallback chain can branch on failure without exception handling.
"""

import math
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PriceResult:
    """Outcome of a price-oracle call: either a value or an error message."""
    value: Optional[float] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: float) -> "PriceResult":
        return cls(value=float(value))

    @classmethod
    def failure(cls, error: str) -> "PriceResult":
        return cls(error=error)

    def unwrap_or(self, default: float) -> float:
        return self.value if self.ok else default


def is_valid_price(value) -> bool:
    """True for a finite, non-None number."""
    if value is None:
        return False
    try:
        return math.isfinite(value)
    except TypeError:
        return False


def intrinsic_value(underlying_price: Optional[float], strike: float) -> PriceResult:
    """Call-payoff intrinsic value ``max(S - K, 0)``.

    The quote tables carry no option type, so the call payoff is assumed
    for every contract, puts included.

    Args:
        underlying_price: Underlying price S (None / NaN when unavailable).
        strike: Strike price K.

    Returns:
        PriceResult with the payoff, or an error when S or K is unusable.
    """
    if not is_valid_price(underlying_price):
        return PriceResult.failure("underlying price unavailable")
    if not is_valid_price(strike) or strike < 0:
        return PriceResult.failure(f"invalid strike {strike!r}")
    return PriceResult.success(max(underlying_price - strike, 0.0))
