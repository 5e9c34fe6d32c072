"""
SpartanBot: owns the configured rental providers and routes rentals to them.

The provider list and settings are persisted as one snapshot under the
``spartanbot-storage`` key after every mutation, unless the bot runs with
``settings['memory'] = True``. On startup the snapshot is replayed through
``setup_rental_provider`` so every provider's credentials are re-checked.
"""
import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from .autorenter import AutoRenter
from .errors import (
    ProviderAuthorizationCheckFailed, RentalDelegationError, SpartanBotError,
    UnsupportedProviderType, ValidationError, describe,
)
from .events import RENTAL_COMPLETED, RENTAL_FAILED, RENTAL_TRIGGER, EventBus, RentalTrigger
from .providers.base import Confirmation, ProviderKind, RentalProvider, RentalReceipt, RentalRequest
from .providers.registry import PROVIDER_FACTORIES, ProviderFactory, resolve_kind, supported_types
from .storage import STORAGE_KEY, JsonFileStorage

logger = logging.getLogger("spartan.bot")

REQUIRED_PROVIDER_FIELDS = ("type", "api_key", "api_secret")


@dataclass
class SetupResult:
    success: bool
    message: str
    type: Optional[str] = None
    uid: Optional[str] = None
    error: Optional[SpartanBotError] = None


@dataclass
class RestoreReport:
    restored: List[SetupResult] = field(default_factory=list)
    failed: List[SetupResult] = field(default_factory=list)
    nothing_persisted: bool = False


class SpartanBot:
    """
    Rent hashrate based on a set of circumstances.

    Parameters
    ----------
    settings : dict
        Free-form settings. ``memory`` disables all storage reads and writes;
        ``storage_dir`` picks the snapshot directory.
    storage : JsonFileStorage, optional
        Overrides the storage built from ``storage_dir``.
    provider_factories : mapping, optional
        ProviderKind -> factory table, defaults to the process-wide one.
    event_bus : EventBus, optional
        When given, ``rental.trigger`` events start automatic rentals.
    """

    def __init__(self, settings: Optional[Dict[str, Any]] = None, storage=None,
                 provider_factories: Optional[Mapping[ProviderKind, ProviderFactory]] = None,
                 event_bus: Optional[EventBus] = None):
        self.settings: Dict[str, Any] = dict(settings or {})
        self.rental_providers: List[RentalProvider] = []
        self.autorenter: Optional[AutoRenter] = None

        self._factories = provider_factories if provider_factories is not None else PROVIDER_FACTORIES
        self._storage = None
        if not self.memory:
            self._storage = storage or JsonFileStorage(self.settings.get("storage_dir", "localStorage"))
        self._locks: Dict[str, asyncio.Lock] = {}
        self._rentals: List[RentalReceipt] = []
        # Persisted configs whose restore failed; kept so credentials aren't lost
        self._unrestored: List[Dict[str, Any]] = []
        self._restoring = False

        self._bus = event_bus
        if self._bus is not None:
            self._bus.subscribe(RENTAL_TRIGGER, self._on_rental_trigger, subscriber="spartanbot")

    @classmethod
    async def create(cls, settings: Optional[Dict[str, Any]] = None, **kwargs) -> "SpartanBot":
        """Build a bot and restore its persisted state."""
        bot = cls(settings, **kwargs)
        await bot.load()
        return bot

    @property
    def memory(self) -> bool:
        return bool(self.settings.get("memory", False))

    async def load(self) -> RestoreReport:
        """Restore persisted state (no-op in memory mode)."""
        report = await self.deserialize()
        if report.failed:
            logger.warning(
                f"{len(report.failed)} rental provider(s) failed to restore: "
                + "; ".join(f"{r.type} {r.uid}: {r.message}" for r in report.failed)
            )
        logger.info(f"SpartanBot loaded with {len(self.rental_providers)} rental provider(s)")
        return report

    # --- Settings ---

    def get_settings(self) -> Dict[str, Any]:
        return copy.deepcopy(self.settings)

    def get_setting(self, key: str) -> Any:
        return self.settings.get(key)

    def set_setting(self, key: str, value: Any) -> None:
        if key is not None and value is not None:
            self.settings[key] = value
        self.serialize()

    # --- Rental providers ---

    async def setup_rental_provider(self, settings: Dict[str, Any]) -> SetupResult:
        """Validate, authorize and register a rental provider.

        Bad input and refused credentials come back as ``success=False``
        results; only an authorization check that raises is an exception.
        """
        settings = settings or {}
        for name in REQUIRED_PROVIDER_FIELDS:
            if not settings.get(name):
                message = f"settings.{name} is required!"
                return SetupResult(False, message, error=ValidationError(message, field=name))

        kind = resolve_kind(settings["type"])
        factory = self._factories.get(kind) if kind is not None else None
        if factory is None:
            message = "No Provider found that matches settings.type"
            return SetupResult(
                False, message, type=settings["type"],
                error=UnsupportedProviderType(f"{message}: {settings['type']!r}"),
            )

        provider = factory(dict(settings))

        try:
            authorized = await provider.test_authorization()
        except Exception as e:
            await provider.close()
            raise ProviderAuthorizationCheckFailed(f"Unable to check Provider Authorization!\n{e}") from e

        if not authorized:
            await provider.close()
            return SetupResult(False, "Provider Authorization Failed",
                               type=settings["type"], uid=provider.get_uid())

        await self._add_provider(provider)
        logger.info(f"Rental provider {provider.get_type()} {provider.get_uid()} set up")

        if not self._restoring:
            self.serialize()

        return SetupResult(True, "Successfully Setup Rental Provider",
                           type=settings["type"], uid=provider.get_uid())

    async def _add_provider(self, provider: RentalProvider) -> None:
        uid = provider.get_uid()
        self._unrestored = [c for c in self._unrestored if c.get("uid") != uid]
        for i, existing in enumerate(self.rental_providers):
            if existing.get_uid() == uid:
                self.rental_providers[i] = provider
                if existing is not provider:
                    await existing.close()
                return
        self.rental_providers.append(provider)

    def get_supported_rental_providers(self) -> List[str]:
        return supported_types(self._factories)

    def get_rental_providers(self) -> List[RentalProvider]:
        return list(self.rental_providers)

    def delete_rental_provider(self, uid: str) -> SetupResult:
        """Remove the provider with *uid*. Unknown uids are a successful no-op."""
        if not uid:
            raise ValidationError("You must include the UID of the Provider you want to remove", field="uid")

        before = len(self.rental_providers) + len(self._unrestored)
        self.rental_providers = [p for p in self.rental_providers if p.get_uid() != uid]
        self._unrestored = [c for c in self._unrestored if c.get("uid") != uid]
        self._locks.pop(uid, None)
        removed = before - len(self.rental_providers) - len(self._unrestored)

        self.serialize()

        if removed:
            logger.info(f"Rental provider {uid} removed")
            return SetupResult(True, "Successfully Removed Rental Provider", uid=uid)
        logger.debug(f"delete_rental_provider: no provider with uid {uid}")
        return SetupResult(True, "No Rental Provider matched uid, nothing removed", uid=uid)

    # --- Rentals ---

    async def manual_rental(self, hashrate: float, duration: int,
                            confirmation: Optional[Confirmation] = None,
                            provider_selector: Optional[str] = None) -> RentalReceipt:
        """Rent *hashrate* MH/s for *duration* seconds on the best configured provider."""
        self.autorenter = AutoRenter(self.rental_providers, locks=self._locks)

        try:
            receipt = await self.autorenter.rent(
                RentalRequest(hashrate=hashrate, duration=duration, confirm=confirmation),
                provider_selector=provider_selector,
            )
        except Exception as e:
            partial = getattr(e, "receipt", None)
            if partial is not None and partial.rental_ids:
                self._rentals.append(partial)
                logger.warning(
                    f"Rental on {partial.provider_uid} failed partway, recorded "
                    f"{partial.hashrate:.2f} MH/s already rented ({', '.join(partial.rental_ids)})"
                )
            raise RentalDelegationError(f"Unable to rent using AutoRenter!\n{e}", receipt=partial) from e

        self._rentals.append(receipt)
        return receipt

    def get_rentals(self) -> List[RentalReceipt]:
        return list(self._rentals)

    def get_active_hashrate(self, now: Optional[datetime] = None) -> float:
        """MH/s currently rented through this bot."""
        return sum(r.hashrate for r in self._rentals if r.is_active(now))

    async def _on_rental_trigger(self, channel: str, payload: Dict[str, Any]) -> None:
        trigger = RentalTrigger.from_payload(payload)
        logger.info(
            f"Rental trigger: {trigger.hashrate:.2f} MH/s for {trigger.duration}s "
            f"(selector={trigger.provider_selector or 'any'})"
        )
        try:
            receipt = await self.manual_rental(
                trigger.hashrate, trigger.duration, provider_selector=trigger.provider_selector,
            )
        except RentalDelegationError as e:
            logger.error(f"Automatic rental failed: {describe(e)}")
            await self._bus.publish(RENTAL_FAILED, {
                **trigger.to_payload(),
                "error": describe(e),
                "rented_hashrate": e.receipt.hashrate if e.receipt is not None else 0.0,
            })
            return

        await self._bus.publish(RENTAL_COMPLETED, {
            **trigger.to_payload(),
            "provider_uid": receipt.provider_uid,
            "rented_hashrate": receipt.hashrate,
            "cost": str(receipt.cost),
            "rental_ids": list(receipt.rental_ids),
        })

    # --- Persistence ---

    def serialize(self) -> Dict[str, Any]:
        """Write the full snapshot (settings + providers) to storage."""
        serialized = {
            "settings": copy.deepcopy(self.settings),
            "rental_providers": [p.serialize() for p in self.rental_providers]
                                + copy.deepcopy(self._unrestored),
        }
        if not self.memory and self._storage is not None:
            self._storage.set_item(STORAGE_KEY, serialized)
        return serialized

    async def deserialize(self) -> RestoreReport:
        """Load the snapshot and rebuild live providers from it.

        Caller-supplied settings win over persisted ones.
        """
        report = RestoreReport()
        if self.memory or self._storage is None:
            report.nothing_persisted = True
            return report

        data = self._storage.get_item(STORAGE_KEY) or {}
        if not data:
            report.nothing_persisted = True
            return report

        if data.get("settings"):
            self.settings = {**data["settings"], **self.settings}

        self._restoring = True
        try:
            for config in data.get("rental_providers", []):
                try:
                    result = await self.setup_rental_provider(config)
                except ProviderAuthorizationCheckFailed as e:
                    result = SetupResult(False, describe(e), type=config.get("type"),
                                         uid=config.get("uid"), error=e)
                if result.success:
                    report.restored.append(result)
                else:
                    report.failed.append(result)
                    if config.get("uid"):
                        self._unrestored.append(copy.deepcopy(config))
        finally:
            self._restoring = False

        self.serialize()
        return report

    async def close(self) -> None:
        await asyncio.gather(*(p.close() for p in self.rental_providers), return_exceptions=True)
