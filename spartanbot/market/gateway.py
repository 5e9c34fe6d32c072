"""
Market Data Gateway: the two numbers the spot strategy needs.

1. Weighted rental cost: hashrate-weighted average price across
   MiningRigRentals rig listings and the NiceHash order book.
2. Asset price: product of a chain of spot tickers (e.g. FLO/BTC x BTC/USD)
   fetched through ccxt.

Both credential pairs are checked before any request goes out.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import aiohttp
import ccxt.async_support as ccxt_async

from ..errors import ConfigurationError, MarketDataError
from ..providers.base import ProviderKind
from ..providers.mrr_provider import MRRProvider, unit_to_mh

logger = logging.getLogger("spartan.market")

NICEHASH_REST = "https://api2.nicehash.com"

_ENV_VARS = {
    "mrr_key": "API_KEY",
    "mrr_secret": "API_SECRET",
    "nicehash_key": "NICEHASH_API_KEY",
    "nicehash_id": "NICEHASH_API_ID",
}

DEFAULT_PRICE_CHAIN = [
    {"exchange": "kraken", "symbol": "FLO/BTC"},
    {"exchange": "kraken", "symbol": "BTC/USD"},
]


@dataclass(frozen=True)
class MarketCredentials:
    mrr_key: str = ""
    mrr_secret: str = ""
    nicehash_key: str = ""
    nicehash_id: str = ""

    @classmethod
    def from_env(cls) -> "MarketCredentials":
        return cls(**{field: os.getenv(var, "") for field, var in _ENV_VARS.items()})

    def missing(self) -> List[str]:
        return [var for field, var in _ENV_VARS.items() if not getattr(self, field)]

    def require(self) -> None:
        missing = self.missing()
        if missing:
            raise ConfigurationError(
                f"Must provide MRR and NiceHash API keys (missing: {', '.join(missing)})"
            )


@dataclass(frozen=True)
class MarketSnapshot:
    weighted_rental_cost: float     # reference currency per H/s per hour
    asset_price: float              # reference currency per coin
    rental_cost_btc_mh_day: float   # BTC per MH/s per day, as quoted by the markets
    btc_price: float                # reference currency per BTC


def weighted_average(entries: List[Tuple[Decimal, Decimal]]) -> Decimal:
    """Hashrate-weighted price from ``(price, hashrate)`` pairs."""
    total = sum((h for _, h in entries), Decimal('0'))
    if total <= 0:
        raise MarketDataError("No rental listings with hashrate to weight")
    return sum((p * h for p, h in entries), Decimal('0')) / total


def parse_nicehash_order_book(data: dict) -> List[Tuple[Decimal, Decimal]]:
    """``(BTC per MH/day, MH/s)`` for every order that is actually hashing."""
    entries = []
    for market in (data.get("stats") or {}).values():
        factor = unit_to_mh(market.get("displayMarketFactor", "TH"))
        for order in market.get("orders", []):
            speed = Decimal(str(order.get("acceptedSpeed", 0))) * factor
            if speed <= 0:
                continue
            entries.append((Decimal(str(order["price"])) / factor, speed))
    return entries


class MarketDataGateway:

    def __init__(self, credentials: MarketCredentials, config: Optional[dict] = None):
        cfg = config or {}
        self.credentials = credentials
        self.algorithm = cfg.get('algorithm', 'scrypt')
        self.price_chain: List[dict] = cfg.get('price_chain', DEFAULT_PRICE_CHAIN)
        # Leg that prices BTC in the reference currency; defaults to the last chain leg
        self.btc_price_leg: dict = cfg.get('btc_price_leg', self.price_chain[-1])

    def require_credentials(self) -> None:
        """Raise ConfigurationError when any market credential is missing."""
        self.credentials.require()

    # --- Rental cost ---

    async def _fetch_mrr_entries(self) -> List[Tuple[Decimal, Decimal]]:
        provider = MRRProvider({
            "type": ProviderKind.MINING_RIG_RENTALS.value,
            "api_key": self.credentials.mrr_key,
            "api_secret": self.credentials.mrr_secret,
            "algorithm": self.algorithm,
        })
        try:
            listings = await provider.get_listings(refresh=True)
        finally:
            await provider.close()
        return [(l.price_per_mh_day, l.hashrate_mh) for l in listings]

    async def _fetch_nicehash_entries(self) -> List[Tuple[Decimal, Decimal]]:
        url = f"{NICEHASH_REST}/main/api/v2/hashpower/orderBook"
        params = {"algorithm": self.algorithm.upper(), "size": 100}
        headers = {
            "X-Organization-Id": self.credentials.nicehash_id,
            "X-Auth": self.credentials.nicehash_key,
        }
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15)) as session:
            async with session.get(url, params=params, headers=headers) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise MarketDataError(f"NiceHash API {resp.status}: {text[:200]}")
                data = await resp.json(content_type=None)
        return parse_nicehash_order_book(data)

    async def get_weighted_rental_cost(self) -> Decimal:
        """BTC per MH/s per day, weighted across both rental markets."""
        self.require_credentials()
        mrr, nicehash = await asyncio.gather(
            self._fetch_mrr_entries(), self._fetch_nicehash_entries(),
        )
        logger.debug(f"Rental listings: {len(mrr)} MRR, {len(nicehash)} NiceHash")
        return weighted_average(mrr + nicehash)

    # --- Prices ---

    async def _fetch_ticker_last(self, exchange_id: str, symbol: str) -> Decimal:
        exchange_cls = getattr(ccxt_async, exchange_id, None)
        if exchange_cls is None:
            raise ConfigurationError(f"Unknown ccxt exchange: {exchange_id!r}")
        exchange = exchange_cls({'enableRateLimit': True})
        try:
            ticker = await exchange.fetch_ticker(symbol)
        finally:
            await exchange.close()
        last = ticker.get('last')
        if last is None:
            raise MarketDataError(f"{exchange_id} {symbol} ticker has no last price")
        return Decimal(str(last))

    async def _fetch_prices(self, legs: List[dict]) -> Dict[Tuple[str, str], Decimal]:
        keys = list(dict.fromkeys((leg['exchange'], leg['symbol']) for leg in legs))
        prices = await asyncio.gather(*(self._fetch_ticker_last(ex, sym) for ex, sym in keys))
        return dict(zip(keys, prices))

    # --- Combined ---

    async def snapshot(self) -> MarketSnapshot:
        """Everything the strategy needs, with rental cost in reference currency per H/s per hour."""
        self.require_credentials()
        try:
            cost_btc, prices = await asyncio.gather(
                self.get_weighted_rental_cost(),
                self._fetch_prices(self.price_chain + [self.btc_price_leg]),
            )
        except (ConfigurationError, MarketDataError):
            raise
        except Exception as e:
            raise MarketDataError(f"Market data unavailable: {e}") from e

        asset_price = Decimal('1')
        for leg in self.price_chain:
            asset_price *= prices[(leg['exchange'], leg['symbol'])]
        btc_price = prices[(self.btc_price_leg['exchange'], self.btc_price_leg['symbol'])]

        per_hs_hour = cost_btc * btc_price / Decimal(1_000_000) / Decimal(24)
        snapshot = MarketSnapshot(
            weighted_rental_cost=float(per_hs_hour),
            asset_price=float(asset_price),
            rental_cost_btc_mh_day=float(cost_btc),
            btc_price=float(btc_price),
        )
        logger.info(
            f"Market: rental {snapshot.rental_cost_btc_mh_day:.8f} BTC/MH/day, "
            f"asset {snapshot.asset_price:.6f}, BTC {snapshot.btc_price:.2f}"
        )
        return snapshot
