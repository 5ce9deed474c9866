"""
Shipping Module

- CarrierAdapter interface for all carrier implementations
- CarrierRegistry, built from Settings at startup
"""
from shipping_engine.modules.shipping.carriers import CarrierAdapter, CarrierRegistry, build_registry

__all__ = [
    "CarrierAdapter",
    "CarrierRegistry",
    "build_registry",
]
