"""
Spot Rental Strategy: decides when renting hashrate pays for itself.

Compares the cost of renting a weighted share of network hashrate for a
window against the block rewards that share is expected to earn. Produces a
``rental.trigger`` event for the registry when profitable; never rents itself.

Runs as a cancellable asyncio task: unprofitable or failed checks back off for
``check_interval`` seconds. A completed rental waits out its rental window so
one opportunity rents once; a trigger that did not end in a rental is retried
after ``check_interval``.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ..events import RENTAL_COMPLETED, RENTAL_FAILED, RENTAL_TRIGGER, SPOT_RENT, EventBus, RentalTrigger
from ..market.chain import MH, ChainState

logger = logging.getLogger("spartan.strategy")

SPOT_RENT_TYPE = "SpotRent"


@dataclass(frozen=True)
class ProfitabilityResult:
    is_profitable: bool
    amount: float             # H/s to rent on top of what we already own
    cost: float = 0.0
    expected_return: float = 0.0
    network_hashrate: float = 0.0

    @property
    def profit(self) -> float:
        return self.expected_return - self.cost


def difficulty_to_hashrate(difficulty: float, target_block_time: float) -> float:
    """Network H/s implied by *difficulty* at one block per *target_block_time* seconds."""
    return difficulty * 2 ** 32 / target_block_time


def calculate_spot_profitability(chain: ChainState, weighted_rental_cost: float, asset_price: float,
                                 rental_time_hours: float = 3, profit_weight_threshold: float = 0.3,
                                 reward_per_block: float = 12.5) -> ProfitabilityResult:
    """
    Parameters
    ----------
    chain : ChainState
        Difficulty, target difficulty, owned hashrate (H/s) and block interval (s).
    weighted_rental_cost : float
        Reference currency per H/s per hour.
    asset_price : float
        Reference currency per coin.
    """
    network_hashrate = difficulty_to_hashrate(chain.difficulty, chain.target_block_time)
    blocks_per_hour = 3600 / chain.target_block_time

    cost = network_hashrate * weighted_rental_cost * rental_time_hours * profit_weight_threshold
    expected_return = (reward_per_block * blocks_per_hour * rental_time_hours) \
        * asset_price * profit_weight_threshold

    required_hashrate = chain.target_difficulty * 2 ** 32 / (chain.target_block_time / profit_weight_threshold)
    amount = required_hashrate - chain.current_owned_hashrate

    return ProfitabilityResult(
        is_profitable=(expected_return - cost) > 0,
        amount=amount,
        cost=cost,
        expected_return=expected_return,
        network_hashrate=network_hashrate,
    )


class SpotRentalStrategy:
    """Periodic spot-rental profitability check.

    ``sink`` receives the RentalTrigger: an EventBus (published on
    ``rental.trigger``, outcome read from ``rental.completed`` /
    ``rental.failed``) or any callable, whose truthy return value means the
    rental went through. When the sink is an EventBus the strategy also
    answers ``spot.rent`` events with a check.
    """

    CHECK_INTERVAL_SECONDS = 40
    RENTAL_TIME_HOURS = 3
    PROFIT_WEIGHT_THRESHOLD = 0.3
    REWARD_PER_BLOCK = 12.5

    def __init__(self, gateway, chain_source, sink=None, config: Optional[dict] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.gateway = gateway
        self.chain_source = chain_source
        self.sink = sink
        self.provider_selector: Optional[str] = None

        if config:
            if 'check_interval_seconds' in config:
                self.CHECK_INTERVAL_SECONDS = float(config['check_interval_seconds'])
            if 'rental_time_hours' in config:
                self.RENTAL_TIME_HOURS = float(config['rental_time_hours'])
            if 'profit_weight_threshold' in config:
                self.PROFIT_WEIGHT_THRESHOLD = float(config['profit_weight_threshold'])
            if 'reward_per_block' in config:
                self.REWARD_PER_BLOCK = float(config['reward_per_block'])
            self.provider_selector = config.get('provider_selector')

        self._sleep = sleep
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.next_check_in: Optional[float] = None
        self.last_result: Optional[ProfitabilityResult] = None
        self._checks = 0
        self._profitable = 0
        self._triggers = 0
        self._rentals = 0
        self._rental_outcome: Optional[bool] = None
        self._errors = 0

        if isinstance(self.sink, EventBus):
            self.sink.subscribe(SPOT_RENT, self._on_spot_rent, subscriber="spot_rental")
            self.sink.subscribe(RENTAL_COMPLETED, self._on_rental_outcome, subscriber="spot_rental")
            self.sink.subscribe(RENTAL_FAILED, self._on_rental_outcome, subscriber="spot_rental")

    @staticmethod
    def get_type() -> str:
        return SPOT_RENT_TYPE

    @property
    def rental_duration_seconds(self) -> int:
        return int(self.RENTAL_TIME_HOURS * 3600)

    # --- Evaluation ---

    async def evaluate(self, chain_state: Optional[ChainState] = None) -> ProfitabilityResult:
        """Fetch market data and compute profitability. Errors propagate.

        Missing market credentials fail before any chain or market request.
        """
        self.gateway.require_credentials()
        if chain_state is None:
            chain_state = await self.chain_source.get_state()
        market = await self.gateway.snapshot()
        return calculate_spot_profitability(
            chain_state,
            weighted_rental_cost=market.weighted_rental_cost,
            asset_price=market.asset_price,
            rental_time_hours=self.RENTAL_TIME_HOURS,
            profit_weight_threshold=self.PROFIT_WEIGHT_THRESHOLD,
            reward_per_block=self.REWARD_PER_BLOCK,
        )

    async def check_profitability(self, chain_state: Optional[ChainState] = None) -> ProfitabilityResult:
        """Evaluate once, trigger a rental if profitable, and set ``next_check_in``."""
        self._checks += 1
        self.next_check_in = self.CHECK_INTERVAL_SECONDS
        result = await self.evaluate(chain_state)
        self.last_result = result

        if not result.is_profitable:
            logger.info(
                f"Not profitable (return {result.expected_return:.4f} vs cost {result.cost:.4f}), "
                f"re-checking in {self.CHECK_INTERVAL_SECONDS:.0f}s"
            )
            return result

        self._profitable += 1
        if result.amount <= 0:
            logger.info(
                f"Profitable by {result.profit:.4f} but already own the target share "
                f"({-result.amount:.0f} H/s over)"
            )
            return result

        if await self._trigger(result):
            self._rentals += 1
            self.next_check_in = self.rental_duration_seconds
        else:
            logger.warning(
                f"Rental trigger did not complete, re-checking in {self.CHECK_INTERVAL_SECONDS:.0f}s"
            )
        return result

    async def _trigger(self, result: ProfitabilityResult) -> bool:
        """Hand the rental to the sink. True when it reports a completed rental."""
        trigger = RentalTrigger(
            hashrate=result.amount / MH,
            duration=self.rental_duration_seconds,
            provider_selector=self.provider_selector,
        )
        self._triggers += 1
        logger.info(
            f"Profitable by {result.profit:.4f}: triggering rental of "
            f"{trigger.hashrate:.2f} MH/s for {trigger.duration}s"
        )
        if self.sink is None:
            logger.warning("No rental sink configured, trigger dropped")
            return False
        if isinstance(self.sink, EventBus):
            # The registry answers on rental.completed / rental.failed before publish returns
            self._rental_outcome = None
            await self.sink.publish(RENTAL_TRIGGER, trigger)
            return bool(self._rental_outcome)
        outcome = self.sink(trigger)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return bool(outcome)

    def _on_rental_outcome(self, channel: str, payload: Dict[str, Any]) -> None:
        self._rental_outcome = channel == RENTAL_COMPLETED

    async def _on_spot_rent(self, channel: str, payload: Dict[str, Any]) -> None:
        try:
            await self.check_profitability()
        except Exception as e:
            self._errors += 1
            logger.warning(f"Spot rent check failed: {e}")

    # --- Loop ---

    async def run(self) -> None:
        self._running = True
        logger.info(f"SpotRentalStrategy started (interval {self.CHECK_INTERVAL_SECONDS:.0f}s)")
        while self._running:
            try:
                await self.check_profitability()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._errors += 1
                self.next_check_in = self.CHECK_INTERVAL_SECONDS
                logger.warning(
                    f"Profitability check failed ({self._errors} total), "
                    f"retrying in {self.CHECK_INTERVAL_SECONDS:.0f}s: {e}"
                )
            if not self._running:
                break
            await self._sleep(self.next_check_in)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="spot_rental")
        return self._task

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info("SpotRentalStrategy stopped")

    def request_stop(self) -> None:
        """Synchronous stop for signal handlers: end the loop and cancel the task."""
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_stats(self) -> dict:
        return {
            "checks": self._checks,
            "profitable": self._profitable,
            "triggers": self._triggers,
            "rentals": self._rentals,
            "errors": self._errors,
            "next_check_in": self.next_check_in,
            "last_profit": self.last_result.profit if self.last_result else None,
        }
