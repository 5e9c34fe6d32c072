"""Provider kind -> factory table.

Built once at import and read-only afterwards.  Adding a marketplace means
adding a ``ProviderKind`` member and a row here.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from .base import ProviderKind, RentalProvider
from .mrr_provider import MRRProvider

ProviderFactory = Callable[[Dict[str, Any]], RentalProvider]


PROVIDER_FACTORIES: Mapping[ProviderKind, ProviderFactory] = MappingProxyType({
    ProviderKind.MINING_RIG_RENTALS: MRRProvider,
})


def resolve_kind(type_tag: str) -> Optional[ProviderKind]:
    """Return the ProviderKind whose tag is *type_tag*, if any."""
    try:
        return ProviderKind(type_tag)
    except ValueError:
        return None


def supported_types(factories: Mapping[ProviderKind, ProviderFactory] = PROVIDER_FACTORIES) -> List[str]:
    """De-duplicated type tags in registration order."""
    seen: List[str] = []
    for kind in factories:
        if kind.value not in seen:
            seen.append(kind.value)
    return seen


__all__ = ["PROVIDER_FACTORIES", "ProviderFactory", "resolve_kind", "supported_types"]
