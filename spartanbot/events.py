"""In-process EventBus connecting the profitability strategy to the rental path.

Channels use dot-notation (``spot.rent``, ``rental.trigger``).  Subscribers
can use wildcards (``rental.*``).  Handlers may be plain functions or
coroutine functions; :meth:`EventBus.publish` awaits coroutine handlers in
subscription order, so a publisher sees every follow-up event its handlers
publish before ``publish`` returns.
A ring buffer keeps the last *max_history* events for diagnostics.
"""

from __future__ import annotations

import fnmatch
import inspect
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

logger = logging.getLogger("spartan.events")

# Request a profitability evaluation
SPOT_RENT = "spot.rent"
# Strategy -> registry: rent this much hashrate
RENTAL_TRIGGER = "rental.trigger"
RENTAL_COMPLETED = "rental.completed"
RENTAL_FAILED = "rental.failed"

Handler = Callable[[str, Dict[str, Any]], Any]


@dataclass(frozen=True)
class RentalTrigger:
    """Message schema of the ``rental.trigger`` channel."""
    hashrate: float                          # MH/s
    duration: int                            # seconds
    provider_selector: Optional[str] = None  # provider uid or type tag, None = any

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RentalTrigger":
        return cls(
            hashrate=float(payload["hashrate"]),
            duration=int(payload["duration"]),
            provider_selector=payload.get("provider_selector"),
        )


class EventBus:
    """Publish/subscribe channel with awaitable dispatch.

    Parameters
    ----------
    max_history : int
        Number of events to keep in the ring buffer (default 200).
    """

    def __init__(self, max_history: int = 200) -> None:
        # channel_pattern -> list of (handler, subscriber_name)
        self._handlers: Dict[str, List[Tuple[Handler, str]]] = {}
        self._history: deque[Dict[str, Any]] = deque(maxlen=max_history)

    # ── Subscribe / Unsubscribe ──

    def subscribe(self, channel_pattern: str, handler: Handler, subscriber: str = "") -> None:
        """Register *handler* for events matching *channel_pattern* (``fnmatch`` semantics)."""
        self._handlers.setdefault(channel_pattern, []).append((handler, subscriber))

    def unsubscribe(self, channel_pattern: str, handler: Handler) -> None:
        entries = self._handlers.get(channel_pattern, [])
        self._handlers[channel_pattern] = [(h, s) for h, s in entries if h is not handler]

    # ── Publish ──

    async def publish(self, channel: str, payload: Union[Dict[str, Any], RentalTrigger]) -> None:
        """Dispatch and await every handler in subscription order.

        Exceptions in handlers are logged so one bad handler cannot break
        the others.
        """
        payload = self._record(channel, payload)
        for handler, subscriber in self._matching(channel):
            try:
                result = handler(channel, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self._log_handler_error(subscriber or handler, channel, exc)

    # ── Query ──

    def get_history(self, channel_pattern: str = "*", limit: int = 100) -> List[Dict[str, Any]]:
        """Return recent events matching *channel_pattern* (newest first)."""
        events = list(self._history)
        events.reverse()
        if channel_pattern != "*":
            events = [e for e in events if fnmatch.fnmatch(e["channel"], channel_pattern)]
        return events[:limit]

    # ── Internals ──

    def _record(self, channel: str, payload) -> Dict[str, Any]:
        if isinstance(payload, RentalTrigger):
            payload = payload.to_payload()
        self._history.append({
            "channel": channel,
            "data": payload,
            "ts": datetime.now(timezone.utc).isoformat(),
            "ts_epoch": time.time(),
        })
        return payload

    def _matching(self, channel: str) -> List[Tuple[Handler, str]]:
        # Snapshot so handlers may (un)subscribe during dispatch
        matching: List[Tuple[Handler, str]] = []
        for pattern, entries in list(self._handlers.items()):
            if fnmatch.fnmatch(channel, pattern):
                matching.extend(entries)
        return matching

    @staticmethod
    def _log_handler_error(who, channel: str, exc: BaseException) -> None:
        name = who if isinstance(who, str) else getattr(who, "__name__", repr(who))
        logger.error(f"EventBus handler error [{name}] on channel {channel}: {exc}")
