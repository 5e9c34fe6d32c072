"""
MiningRigRentals provider: rents whole rigs through the MRR v2 REST API.

Requests are signed with HMAC-SHA1 over ``api_key + nonce + endpoint``
(endpoint without query string), sent as x-api-key / x-api-sign / x-api-nonce.
Rigs are rented whole, cheapest first, until the requested hashrate is covered.
"""
import hashlib
import hmac
import json
import logging
import math
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from .base import ProviderKind, RentalProvider, RentalReceipt, RentalRequest

logger = logging.getLogger("spartan.mrr")

MRR_REST = "https://www.miningrigrentals.com/api/v2"

# Rig hashrate / price units -> MH/s
_UNIT_TO_MH = {
    "h": Decimal('0.000001'),
    "hash": Decimal('0.000001'),
    "kh": Decimal('0.001'),
    "mh": Decimal('1'),
    "gh": Decimal('1000'),
    "th": Decimal('1000000'),
    "ph": Decimal('1000000000'),
    "eh": Decimal('1000000000000'),
}


class MRRAPIError(Exception):
    """Non-success response from the MiningRigRentals API."""

    def __init__(self, message: str, status: int = 0, receipt: Optional[RentalReceipt] = None):
        super().__init__(message)
        self.status = status
        # Rigs rented before the failing call
        self.receipt = receipt


@dataclass
class RigListing:
    rig_id: str
    hashrate_mh: Decimal
    price_per_mh_day: Decimal   # BTC
    min_hours: int
    max_hours: int

    def hours_for(self, duration: int) -> Optional[int]:
        """Billable hours for *duration* seconds, None if the rig can't take it."""
        hours = max(math.ceil(duration / 3600), self.min_hours)
        if self.max_hours and hours > self.max_hours:
            return None
        return hours

    def cost(self, hours: int) -> Decimal:
        return self.hashrate_mh * self.price_per_mh_day * Decimal(hours) / Decimal(24)


def unit_to_mh(unit: str) -> Decimal:
    try:
        return _UNIT_TO_MH[unit.lower()]
    except KeyError:
        raise ValueError(f"Unknown hashrate unit: {unit!r}")


def parse_rig(record: dict) -> Optional[RigListing]:
    """Normalize one ``/rig`` record, None for rigs that aren't rentable now."""
    status = (record.get("status") or {}).get("status", "available")
    if status != "available":
        return None
    try:
        advertised = record["hashrate"]["advertised"]
        hashrate = Decimal(str(advertised["hash"])) * unit_to_mh(advertised["type"])
        price_info = record["price"]
        price = Decimal(str(price_info["BTC"]["price"])) / unit_to_mh(price_info.get("type", "mh"))
    except (KeyError, TypeError, ValueError) as e:
        logger.debug(f"Skipping malformed rig record {record.get('id')}: {e}")
        return None
    return RigListing(
        rig_id=str(record["id"]),
        hashrate_mh=hashrate,
        price_per_mh_day=price,
        min_hours=int(record.get("minhours") or 0),
        max_hours=int(record.get("maxhours") or 0),
    )


class MRRProvider(RentalProvider):
    """MiningRigRentals account.

    Extra settings: ``profile_id`` (pool profile the rigs point at) and
    ``algorithm`` (rig type filter, default ``scrypt``).
    """

    KIND = ProviderKind.MINING_RIG_RENTALS
    LISTING_TTL_SECONDS = 30
    LISTING_PAGE_SIZE = 100

    def __init__(self, settings: Dict[str, Any]):
        super().__init__(settings)
        self.profile_id = settings.get("profile_id")
        self.algorithm = settings.get("algorithm", "scrypt")
        self._session: Optional[aiohttp.ClientSession] = None
        self._listings: List[RigListing] = []
        self._listings_at = 0.0

    def serialize(self) -> Dict[str, Any]:
        data = super().serialize()
        data["profile_id"] = self.profile_id
        data["algorithm"] = self.algorithm
        return data

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    # --- Account ---

    async def test_authorization(self) -> bool:
        try:
            data = await self._request("GET", "/whoami")
        except MRRAPIError as e:
            if e.status in (401, 403):
                logger.info(f"MRR authorization rejected for {self.uid}: {e}")
                return False
            raise
        return bool(data.get("authed"))

    # --- Capacity ---

    async def get_listings(self, refresh: bool = False) -> List[RigListing]:
        if not refresh and self._listings and time.monotonic() - self._listings_at < self.LISTING_TTL_SECONDS:
            return self._listings
        data = await self._request("GET", "/rig", {
            "type": self.algorithm,
            "count": self.LISTING_PAGE_SIZE,
            "orderby": "price",
            "orderdir": "asc",
        })
        records = data.get("records", []) if isinstance(data, dict) else data
        listings = [l for l in (parse_rig(r) for r in records) if l is not None]
        listings.sort(key=lambda l: l.price_per_mh_day)
        self._listings = listings
        self._listings_at = time.monotonic()
        logger.debug(f"MRR {self.algorithm}: {len(listings)} rentable rigs")
        return listings

    async def get_available_hashrate(self) -> float:
        listings = await self.get_listings()
        return float(sum((l.hashrate_mh for l in listings), Decimal('0')))

    def select_rigs(self, listings: List[RigListing], hashrate: float, duration: int) -> List[tuple]:
        """Cheapest-first rigs covering *hashrate*; empty if it can't be covered."""
        target = Decimal(str(hashrate))
        chosen = []
        covered = Decimal('0')
        for listing in listings:
            if covered >= target:
                break
            hours = listing.hours_for(duration)
            if hours is None:
                continue
            chosen.append((listing, hours))
            covered += listing.hashrate_mh
        return chosen if covered >= target else []

    async def quote(self, hashrate: float, duration: int) -> Decimal:
        chosen = self.select_rigs(await self.get_listings(), hashrate, duration)
        if not chosen:
            raise MRRAPIError(f"Not enough rentable {self.algorithm} rigs for {hashrate} MH/s")
        return sum((listing.cost(hours) for listing, hours in chosen), Decimal('0'))

    # --- Rental ---

    async def rent(self, request: RentalRequest) -> RentalReceipt:
        if not self.profile_id:
            raise MRRAPIError("settings.profile_id is required to rent rigs")
        chosen = self.select_rigs(
            await self.get_listings(refresh=True), request.hashrate, request.duration,
        )
        if not chosen:
            raise MRRAPIError(f"Not enough rentable {self.algorithm} rigs for {request.hashrate} MH/s")

        receipt = RentalReceipt(
            provider_uid=self.uid,
            provider_type=self.get_type(),
            hashrate=0.0,
            duration=request.duration,
            cost=Decimal('0'),
        )
        for listing, hours in chosen:
            try:
                rental = await self._request("PUT", "/rental", {
                    "rig": listing.rig_id,
                    "length": hours,
                    "profile": self.profile_id,
                    "currency": "BTC",
                })
            except Exception as e:
                if not receipt.rental_ids:
                    raise
                self._listings_at = 0.0
                logger.error(
                    f"MRR rental of rig {listing.rig_id} failed after {len(receipt.rental_ids)} "
                    f"rig(s) were rented ({receipt.hashrate:.2f} MH/s): {e}"
                )
                raise MRRAPIError(
                    f"Rented {len(receipt.rental_ids)} of {len(chosen)} rigs, rig {listing.rig_id} failed: {e}",
                    status=getattr(e, "status", 0), receipt=receipt,
                ) from e
            receipt.rental_ids.append(str(rental.get("id", "")))
            receipt.raw.append(rental)
            receipt.hashrate += float(listing.hashrate_mh)
            receipt.cost += listing.cost(hours)
            logger.info(
                f"MRR rented rig {listing.rig_id}: {float(listing.hashrate_mh):.2f} MH/s "
                f"for {hours}h (rental {rental.get('id')})"
            )

        # Rented rigs are gone from the market
        self._listings_at = 0.0
        return receipt

    # --- HTTP ---

    def _sign(self, nonce: str, endpoint: str) -> str:
        message = f"{self.api_key}{nonce}{endpoint}"
        return hmac.new(self.api_secret.encode(), message.encode(), hashlib.sha1).hexdigest()

    def _headers(self, endpoint: str) -> Dict[str, str]:
        nonce = str(int(time.time() * 1000))
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "x-api-sign": self._sign(nonce, endpoint),
            "x-api-nonce": nonce,
        }

    async def _request(self, method: str, endpoint: str, params: Optional[dict] = None) -> Any:
        if not self._session:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15))

        url = f"{MRR_REST}{endpoint}"
        kwargs: Dict[str, Any] = {"headers": self._headers(endpoint)}
        if method == "GET":
            kwargs["params"] = params
        elif params is not None:
            kwargs["data"] = json.dumps(params)

        async with self._session.request(method, url, **kwargs) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise MRRAPIError(f"MRR API {resp.status}: {text[:200]}", status=resp.status)
            payload = await resp.json(content_type=None)

        if not payload.get("success", False):
            data = payload.get("data")
            message = data.get("message", "unknown") if isinstance(data, dict) else data
            raise MRRAPIError(f"MRR API error on {endpoint}: {message}")
        return payload.get("data", {})
