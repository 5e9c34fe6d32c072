"""
Abstract base class for rental marketplace connectivity.
Every rental provider MUST implement this interface.

Hashrate is expressed in MH/s throughout, durations in seconds and prices
in BTC unless a provider says otherwise.
"""
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderKind(Enum):
    """Supported rental marketplaces. The value is the persisted ``type`` tag."""
    MINING_RIG_RENTALS = "MiningRigRentals"


@dataclass
class RentalPlan:
    """Proposed rental handed to the confirmation callback before execution."""
    provider_uid: str
    provider_type: str
    hashrate: float
    duration: int
    price: Decimal


Confirmation = Callable[[RentalPlan], Union[bool, Awaitable[bool]]]


@dataclass
class RentalRequest:
    hashrate: float                          # MH/s
    duration: int                            # seconds
    confirm: Optional[Confirmation] = None

    @property
    def duration_hours(self) -> float:
        return self.duration / 3600


@dataclass
class RentalReceipt:
    provider_uid: str
    provider_type: str
    hashrate: float
    duration: int
    cost: Decimal
    rental_ids: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    raw: List[dict] = field(default_factory=list)

    @property
    def expires_at(self) -> datetime:
        return self.started_at + timedelta(seconds=self.duration)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) < self.expires_at


class RentalProvider(ABC):
    """Base for one configured marketplace account.

    Subclasses declare their :class:`ProviderKind` in ``KIND``.  The uid is
    generated on first construction and restored from ``settings['uid']``
    when a persisted config is replayed.
    """

    KIND: ProviderKind

    def __init__(self, settings: Dict[str, Any]):
        self.api_key = settings["api_key"]
        self.api_secret = settings["api_secret"]
        self.name = settings.get("name", "")
        self._uid = settings.get("uid") or uuid.uuid4().hex

    @classmethod
    def get_type(cls) -> str:
        return cls.KIND.value

    def get_uid(self) -> str:
        return self._uid

    @property
    def uid(self) -> str:
        return self._uid

    def serialize(self) -> Dict[str, Any]:
        """Persistable config that rebuilds this provider through setup."""
        return {
            "type": self.get_type(),
            "api_key": self.api_key,
            "api_secret": self.api_secret,
            "name": self.name,
            "uid": self._uid,
        }

    # --- Account ---
    @abstractmethod
    async def test_authorization(self) -> bool:
        pass

    # --- Capacity ---
    @abstractmethod
    async def get_available_hashrate(self) -> float:
        """Hashrate (MH/s) currently available for rent."""
        pass

    @abstractmethod
    async def quote(self, hashrate: float, duration: int) -> Decimal:
        """Price of renting *hashrate* MH/s for *duration* seconds."""
        pass

    # --- Rental ---
    @abstractmethod
    async def rent(self, request: RentalRequest) -> RentalReceipt:
        pass

    async def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} uid={self._uid} name={self.name!r}>"
