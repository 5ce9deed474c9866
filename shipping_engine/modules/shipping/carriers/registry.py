"""
Carrier Registry

- Built once at process start from Settings (build_registry)
- Immutable afterwards: register() returns a new registry, lookups go
  through a read-only mapping proxy
- Carriers without configured credentials are simply absent
"""
import logging
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import httpx

from shipping_engine.core.config import Settings
from shipping_engine.core.exceptions import CarrierUnavailableError
from shipping_engine.modules.shipping.carriers.base import CarrierAdapter
from shipping_engine.modules.shipping.carriers.dhl import DHLCarrier
from shipping_engine.modules.shipping.carriers.fedex import FedExCarrier
from shipping_engine.modules.shipping.carriers.ups import UPSCarrier

logger = logging.getLogger(__name__)

# Order here is the default fan-out order
CARRIER_IMPLEMENTATIONS = (FedExCarrier, UPSCarrier, DHLCarrier)


class CarrierRegistry:
    """
    Name -> adapter lookup.

    Usage:
        registry = CarrierRegistry().register("ups", ups_adapter)
        adapter = registry.get("UPS")  # None when unavailable
    """

    def __init__(
        self,
        adapters: Union[Mapping[str, CarrierAdapter], Iterable[Tuple[str, CarrierAdapter]], None] = None,
    ):
        if isinstance(adapters, Mapping):
            adapters = adapters.items()
        entries: Dict[str, CarrierAdapter] = {}
        for name, adapter in adapters or ():
            key = _normalize(name)
            if key in entries:
                raise ValueError(f"Carrier already registered: {key}")
            entries[key] = adapter
        self._adapters: Mapping[str, CarrierAdapter] = MappingProxyType(entries)

    def register(self, name: str, adapter: CarrierAdapter) -> "CarrierRegistry":
        """Return a new registry with the adapter added; this one is unchanged."""
        return CarrierRegistry(list(self._adapters.items()) + [(name, adapter)])

    def get(self, name: str) -> Optional[CarrierAdapter]:
        return self._adapters.get(_normalize(name))

    def require(self, name: str) -> CarrierAdapter:
        adapter = self.get(name)
        if adapter is None:
            raise CarrierUnavailableError(f"Carrier not available: {name}", carrier=_normalize(name))
        return adapter

    def list_carriers(self) -> List[str]:
        return list(self._adapters.keys())

    def list_services(self, name: Optional[str] = None):
        """Services for one carrier, or a carrier -> services mapping for all."""
        if name is not None:
            return self.require(name).list_services()
        return {key: adapter.list_services() for key, adapter in self._adapters.items()}

    def items(self) -> List[Tuple[str, CarrierAdapter]]:
        return list(self._adapters.items())

    async def aclose(self) -> None:
        for name, adapter in self._adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Failed to close carrier {name}: {e}")

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and _normalize(name) in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    def __iter__(self):
        return iter(self._adapters)

    def __repr__(self):
        return f"<CarrierRegistry({', '.join(self._adapters) or 'empty'})>"


def _normalize(name: str) -> str:
    return (name or "").strip().lower()


def build_registry(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CarrierRegistry:
    """Instantiate every carrier that has credentials configured."""
    registry = CarrierRegistry()
    for carrier_cls in CARRIER_IMPLEMENTATIONS:
        adapter = carrier_cls.from_settings(settings, transport=transport)
        if adapter is None:
            logger.info(f"Carrier {carrier_cls.__name__} not configured, skipping")
            continue
        registry = registry.register(adapter.name, adapter)
        logger.info(
            f"Registered carrier: {adapter.name} -> {carrier_cls.__name__} "
            f"({'sandbox' if adapter.use_sandbox else 'production'})"
        )
    return registry
