"""
AutoRenter: turns a RentalRequest into one provider rental.

Selection: every provider that is authorized and reports enough available
hashrate is quoted; the cheapest wins. An optional confirmation callback sees
the plan before anything is committed. Rentals on one provider are serialized
through a per-provider asyncio.Lock shared with the registry.
"""
import asyncio
import inspect
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import NoEligibleProvider, RentalExecutionError, UserCancelled
from .providers.base import RentalPlan, RentalProvider, RentalReceipt, RentalRequest

logger = logging.getLogger("spartan.autorenter")


class AutoRenter:

    def __init__(self, rental_providers: Sequence[RentalProvider],
                 locks: Optional[Dict[str, asyncio.Lock]] = None):
        self.rental_providers = list(rental_providers)
        self._locks = locks if locks is not None else {}

    def _lock_for(self, provider: RentalProvider) -> asyncio.Lock:
        return self._locks.setdefault(provider.get_uid(), asyncio.Lock())

    @staticmethod
    def _matches(provider: RentalProvider, selector: Optional[str]) -> bool:
        if not selector:
            return True
        return selector in (provider.get_uid(), provider.get_type())

    async def _quote_provider(self, provider: RentalProvider,
                              request: RentalRequest) -> Optional[Decimal]:
        """Price for *request* on *provider*, None when it is not eligible."""
        try:
            if not await provider.test_authorization():
                logger.info(f"Skipping {provider.get_uid()}: authorization inactive")
                return None
            available = await provider.get_available_hashrate()
            if available < request.hashrate:
                logger.info(
                    f"Skipping {provider.get_uid()}: {available:.2f} MH/s available, "
                    f"{request.hashrate:.2f} MH/s requested"
                )
                return None
            return await provider.quote(request.hashrate, request.duration)
        except Exception as e:
            logger.warning(f"Skipping {provider.get_uid()}: eligibility check failed: {e}")
            return None

    async def find_eligible(self, request: RentalRequest,
                            provider_selector: Optional[str] = None) -> List[Tuple[RentalProvider, Decimal]]:
        """Eligible providers with their quotes, cheapest first."""
        candidates = [p for p in self.rental_providers if self._matches(p, provider_selector)]
        quotes = await asyncio.gather(*(self._quote_provider(p, request) for p in candidates))
        eligible = [(p, q) for p, q in zip(candidates, quotes) if q is not None]
        eligible.sort(key=lambda pq: pq[1])
        return eligible

    async def plan(self, request: RentalRequest,
                   provider_selector: Optional[str] = None) -> Tuple[RentalProvider, RentalPlan]:
        if request.hashrate <= 0 or request.duration <= 0:
            raise NoEligibleProvider(
                f"Nothing to rent for hashrate={request.hashrate} duration={request.duration}"
            )
        eligible = await self.find_eligible(request, provider_selector)
        if not eligible:
            raise NoEligibleProvider(
                f"No provider can supply {request.hashrate:.2f} MH/s for {request.duration}s "
                f"({len(self.rental_providers)} configured)"
            )
        provider, price = eligible[0]
        return provider, RentalPlan(
            provider_uid=provider.get_uid(),
            provider_type=provider.get_type(),
            hashrate=request.hashrate,
            duration=request.duration,
            price=price,
        )

    async def rent(self, request: RentalRequest,
                   provider_selector: Optional[str] = None) -> RentalReceipt:
        provider, plan = await self.plan(request, provider_selector)

        if request.confirm is not None:
            answer = request.confirm(plan)
            if inspect.isawaitable(answer):
                answer = await answer
            if not answer:
                logger.info(f"Rental on {plan.provider_uid} declined by confirmation")
                raise UserCancelled("Rental cancelled by user")

        logger.info(
            f"Renting {plan.hashrate:.2f} MH/s for {plan.duration}s on "
            f"{plan.provider_type} {plan.provider_uid} (quote {plan.price} BTC)"
        )
        async with self._lock_for(provider):
            try:
                return await provider.rent(request)
            except Exception as e:
                raise RentalExecutionError(
                    f"{plan.provider_type} {plan.provider_uid} failed to rent: {e}",
                    receipt=getattr(e, "receipt", None),
                ) from e
