"""
Carrier adapters and registry.

Usage:
    from shipping_engine.modules.shipping.carriers import build_registry
    registry = build_registry(settings)
    ups = registry.require("ups")
"""
from shipping_engine.modules.shipping.carriers.base import (
    Address,
    CarrierAdapter,
    LabelResult,
    PackageSpec,
    RateQuote,
    ServiceOption,
    ShipmentOptions,
    ShipmentRequest,
    TrackingEvent,
    validate_shipment_request,
)
from shipping_engine.modules.shipping.carriers.dhl import DHLCarrier
from shipping_engine.modules.shipping.carriers.fedex import FedExCarrier
from shipping_engine.modules.shipping.carriers.ups import UPSCarrier
from shipping_engine.modules.shipping.carriers.registry import (
    CARRIER_IMPLEMENTATIONS,
    CarrierRegistry,
    build_registry,
)

__all__ = [
    "Address",
    "CarrierAdapter",
    "LabelResult",
    "PackageSpec",
    "RateQuote",
    "ServiceOption",
    "ShipmentOptions",
    "ShipmentRequest",
    "TrackingEvent",
    "validate_shipment_request",
    "DHLCarrier",
    "FedExCarrier",
    "UPSCarrier",
    "CARRIER_IMPLEMENTATIONS",
    "CarrierRegistry",
    "build_registry",
]
