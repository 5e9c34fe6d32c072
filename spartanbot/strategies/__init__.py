"""Rental strategies."""
from .spot_rental import (
    ProfitabilityResult,
    SpotRentalStrategy,
    calculate_spot_profitability,
    difficulty_to_hashrate,
)

__all__ = [
    "ProfitabilityResult",
    "SpotRentalStrategy",
    "calculate_spot_profitability",
    "difficulty_to_hashrate",
]
