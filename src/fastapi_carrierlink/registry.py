"""Provider registry keyed by lowercased id and aliases."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from fastapi_carrierlink.protocols import ShippingProvider


def _normalize(provider_id: str) -> str:
    return provider_id.strip().lower()


class ProviderRegistry:
    """Maps provider ids (and aliases) to adapter instances."""

    def __init__(
        self, providers: Mapping[str, ShippingProvider] | None = None
    ) -> None:
        self._providers: dict[str, ShippingProvider] = {}
        for key, provider in (providers or {}).items():
            self.register(provider, aliases=[key])

    def register(
        self,
        provider: ShippingProvider,
        aliases: Iterable[str] = (),
    ) -> None:
        self._providers[_normalize(provider.provider)] = provider
        for alias in aliases:
            if alias and alias.strip():
                self._providers[_normalize(alias)] = provider

    def get(self, provider_id: str) -> ShippingProvider:
        return self._providers[_normalize(provider_id)]

    def __contains__(self, provider_id: object) -> bool:
        return (
            isinstance(provider_id, str)
            and _normalize(provider_id) in self._providers
        )

    def provider_ids(self) -> list[str]:
        """Canonical ids of the distinct registered adapters."""
        seen: dict[int, str] = {}
        for provider in self._providers.values():
            seen.setdefault(id(provider), _normalize(provider.provider))
        return sorted(seen.values())

    def providers(self) -> list[ShippingProvider]:
        distinct: dict[int, ShippingProvider] = {}
        for provider in self._providers.values():
            distinct.setdefault(id(provider), provider)
        return list(distinct.values())
