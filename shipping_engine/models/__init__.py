from shipping_engine.models.shipment import (
    Shipment,
    ShipmentStatus,
    TERMINAL_STATUSES,
    ALLOWED_TRANSITIONS,
    can_transition,
)
from shipping_engine.models.rate_request import RateRequestRecord, StoredRateQuote
from shipping_engine.models.carrier_log import CarrierLog

__all__ = [
    "Shipment",
    "ShipmentStatus",
    "TERMINAL_STATUSES",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "RateRequestRecord",
    "StoredRateQuote",
    "CarrierLog",
]
