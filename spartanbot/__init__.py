"""
SpartanBot: profitability-driven hashrate rental.

Watches rental-market prices against block rewards and rents hashrate from
configured marketplaces when it pays, while keeping the marketplace
credentials it manages persisted across restarts.
"""
__version__ = "0.1.0"
