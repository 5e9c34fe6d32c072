"""Shared fakes for SpartanBot tests. No network access anywhere."""
from decimal import Decimal

import pytest

from spartanbot.bot import SpartanBot
from spartanbot.providers.base import ProviderKind, RentalProvider, RentalReceipt
from spartanbot.storage import JsonFileStorage


class FakeProvider(RentalProvider):
    """In-memory provider; behaviour comes from its settings so it survives a snapshot."""

    KIND = ProviderKind.MINING_RIG_RENTALS

    def __init__(self, settings):
        super().__init__(settings)
        self.authorized = settings.get("authorized", True)
        self.auth_error = settings.get("auth_error")
        self.available = float(settings.get("available", 1000))
        self.price = Decimal(str(settings.get("price", "0.01")))
        self.rent_error = None
        self.rent_calls = []
        self.closed = False

    def serialize(self):
        data = super().serialize()
        data.update({
            "authorized": self.authorized,
            "available": self.available,
            "price": str(self.price),
        })
        return data

    async def test_authorization(self):
        if self.auth_error:
            raise RuntimeError(self.auth_error)
        return self.authorized

    async def get_available_hashrate(self):
        return self.available

    async def quote(self, hashrate, duration):
        return self.price * Decimal(str(hashrate))

    async def rent(self, request):
        self.rent_calls.append(request)
        if self.rent_error:
            raise self.rent_error
        return RentalReceipt(
            provider_uid=self.uid,
            provider_type=self.get_type(),
            hashrate=request.hashrate,
            duration=request.duration,
            cost=self.price * Decimal(str(request.hashrate)),
            rental_ids=[f"rental-{len(self.rent_calls)}"],
        )

    async def close(self):
        self.closed = True


FAKE_FACTORIES = {ProviderKind.MINING_RIG_RENTALS: FakeProvider}


def provider_config(**overrides):
    config = {"type": "MiningRigRentals", "api_key": "key", "api_secret": "secret"}
    config.update(overrides)
    return config


@pytest.fixture
def storage(tmp_path):
    return JsonFileStorage(tmp_path / "localStorage")


@pytest.fixture
def make_bot(storage):
    def _make(settings=None, **kwargs):
        kwargs.setdefault("storage", storage)
        kwargs.setdefault("provider_factories", FAKE_FACTORIES)
        return SpartanBot(settings, **kwargs)
    return _make
