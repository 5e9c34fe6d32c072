"""Rental marketplace providers."""
from .base import ProviderKind, RentalPlan, RentalProvider, RentalReceipt, RentalRequest
from .mrr_provider import MRRProvider
from .registry import PROVIDER_FACTORIES, resolve_kind, supported_types

__all__ = [
    "ProviderKind",
    "RentalPlan",
    "RentalProvider",
    "RentalReceipt",
    "RentalRequest",
    "MRRProvider",
    "PROVIDER_FACTORIES",
    "resolve_kind",
    "supported_types",
]
