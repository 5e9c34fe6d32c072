"""
Tests for spartanbot/providers/mrr_provider.py

Covers:
  - Request signing (HMAC-SHA1 over key + nonce + endpoint)
  - Rig record parsing and unit conversion
  - Cheapest-first rig selection, quotes and rentals (including partial failures)
  - Authorization outcomes
  - Serialization round trip of provider settings
All HTTP calls mocked at MRRProvider._request.
"""
import hashlib
import hmac
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from spartanbot.providers.base import RentalRequest
from spartanbot.providers.mrr_provider import MRRAPIError, MRRProvider, parse_rig, unit_to_mh


def rig(rig_id, hashrate, unit="mh", price="0.0001", price_type="mh", status="available",
        minhours=3, maxhours=24):
    return {
        "id": rig_id,
        "status": {"status": status},
        "hashrate": {"advertised": {"hash": hashrate, "type": unit}},
        "price": {"type": price_type, "BTC": {"price": price}},
        "minhours": minhours,
        "maxhours": maxhours,
    }


def make_provider(**extra):
    settings = {"type": "MiningRigRentals", "api_key": "k", "api_secret": "s", "profile_id": "77"}
    settings.update(extra)
    return MRRProvider(settings)


class TestSigning:
    def test_signature_matches_hmac_sha1(self):
        provider = make_provider()
        expected = hmac.new(b"s", b"k123/rig", hashlib.sha1).hexdigest()
        assert provider._sign("123", "/rig") == expected

    def test_headers_carry_key_and_nonce(self):
        provider = make_provider()
        with patch("spartanbot.providers.mrr_provider.time.time", return_value=1.5):
            headers = provider._headers("/whoami")
        assert headers["x-api-key"] == "k"
        assert headers["x-api-nonce"] == "1500"
        assert headers["x-api-sign"] == provider._sign("1500", "/whoami")


class TestParsing:
    def test_unit_conversion(self):
        assert unit_to_mh("GH") == Decimal("1000")
        assert unit_to_mh("kh") == Decimal("0.001")
        with pytest.raises(ValueError):
            unit_to_mh("zh")

    def test_parse_normalizes_to_mh(self):
        listing = parse_rig(rig(1, 2, unit="gh", price="0.5", price_type="th"))
        assert listing.rig_id == "1"
        assert listing.hashrate_mh == Decimal("2000")
        assert listing.price_per_mh_day == Decimal("0.5") / Decimal("1000000")

    def test_rented_rigs_are_skipped(self):
        assert parse_rig(rig(1, 100, status="rented")) is None

    def test_malformed_rig_is_skipped(self):
        assert parse_rig({"id": 9, "hashrate": {}}) is None

    def test_hours_for_respects_limits(self):
        listing = parse_rig(rig(1, 100, minhours=3, maxhours=6))
        assert listing.hours_for(3600) == 3
        assert listing.hours_for(4 * 3600 + 1) == 5
        assert listing.hours_for(7 * 3600) is None


class TestCapacity:
    @pytest.mark.asyncio
    async def test_available_hashrate_sums_rentable_rigs(self):
        provider = make_provider()
        provider._request = AsyncMock(return_value={"records": [
            rig(1, 100), rig(2, 50), rig(3, 1000, status="rented"),
        ]})
        assert await provider.get_available_hashrate() == 150.0

    @pytest.mark.asyncio
    async def test_listings_are_cached(self):
        provider = make_provider()
        provider._request = AsyncMock(return_value={"records": [rig(1, 100)]})
        await provider.get_listings()
        await provider.get_listings()
        assert provider._request.await_count == 1

    @pytest.mark.asyncio
    async def test_quote_uses_cheapest_rigs(self):
        provider = make_provider()
        provider._request = AsyncMock(return_value={"records": [
            rig(1, 100, price="0.0002"), rig(2, 100, price="0.0001"),
        ]})
        price = await provider.quote(80, 3 * 3600)
        # rig 2 alone covers 80 MH/s: 100 MH * 0.0001 BTC/MH/day * 3h / 24
        assert price == Decimal("100") * Decimal("0.0001") * Decimal(3) / Decimal(24)

    @pytest.mark.asyncio
    async def test_quote_without_capacity_raises(self):
        provider = make_provider()
        provider._request = AsyncMock(return_value={"records": [rig(1, 10)]})
        with pytest.raises(MRRAPIError):
            await provider.quote(80, 3600)


class TestRent:
    @pytest.mark.asyncio
    async def test_rent_puts_one_rental_per_rig(self):
        provider = make_provider()
        provider._request = AsyncMock(side_effect=[
            {"records": [rig(1, 60), rig(2, 60), rig(3, 60)]},
            {"id": 501},
            {"id": 502},
        ])
        receipt = await provider.rent(RentalRequest(hashrate=100, duration=3 * 3600))

        assert receipt.rental_ids == ["501", "502"]
        assert receipt.hashrate == 120.0
        assert receipt.provider_uid == provider.uid
        put_call = provider._request.await_args_list[1]
        assert put_call.args[:2] == ("PUT", "/rental")
        assert put_call.args[2] == {"rig": "1", "length": 3, "profile": "77", "currency": "BTC"}

    @pytest.mark.asyncio
    async def test_failure_after_first_rig_carries_partial_receipt(self):
        provider = make_provider()
        provider._request = AsyncMock(side_effect=[
            {"records": [rig(1, 60), rig(2, 60)]},
            {"id": 501},
            MRRAPIError("rig 2 went offline", status=400),
        ])
        with pytest.raises(MRRAPIError) as excinfo:
            await provider.rent(RentalRequest(hashrate=100, duration=3 * 3600))

        partial = excinfo.value.receipt
        assert partial.rental_ids == ["501"]
        assert partial.hashrate == 60.0
        assert partial.provider_uid == provider.uid
        assert excinfo.value.status == 400
        assert "rig 2 went offline" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_failure_on_first_rig_is_raised_unchanged(self):
        provider = make_provider()
        error = MRRAPIError("insufficient balance", status=400)
        provider._request = AsyncMock(side_effect=[{"records": [rig(1, 60), rig(2, 60)]}, error])
        with pytest.raises(MRRAPIError) as excinfo:
            await provider.rent(RentalRequest(hashrate=100, duration=3600))
        assert excinfo.value is error
        assert excinfo.value.receipt is None

    @pytest.mark.asyncio
    async def test_rent_requires_profile(self):
        provider = make_provider(profile_id=None)
        with pytest.raises(MRRAPIError):
            await provider.rent(RentalRequest(hashrate=1, duration=3600))


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_authed(self):
        provider = make_provider()
        provider._request = AsyncMock(return_value={"authed": True})
        assert await provider.test_authorization() is True

    @pytest.mark.asyncio
    async def test_rejected_key_is_false(self):
        provider = make_provider()
        provider._request = AsyncMock(side_effect=MRRAPIError("denied", status=403))
        assert await provider.test_authorization() is False

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        provider = make_provider()
        provider._request = AsyncMock(side_effect=MRRAPIError("down", status=500))
        with pytest.raises(MRRAPIError):
            await provider.test_authorization()


class TestSerialization:
    def test_serialize_rebuilds_same_provider(self):
        provider = make_provider(name="main", algorithm="sha256")
        data = provider.serialize()
        clone = MRRProvider(data)
        assert clone.get_uid() == provider.get_uid()
        assert clone.profile_id == "77"
        assert clone.algorithm == "sha256"
        assert data["type"] == MRRProvider.get_type() == "MiningRigRentals"

    def test_new_providers_get_distinct_uids(self):
        assert make_provider().get_uid() != make_provider().get_uid()
