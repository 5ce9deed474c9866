from shipping_engine.schemas.shipping import (
    AddressIn,
    PackageIn,
    ShipmentOptionsIn,
    ShipmentRequestIn,
    RateQuoteRequest,
    CompareRatesRequest,
    BookShipmentRequest,
    DraftShipmentRequest,
    CancelShipmentRequest,
    RateQuoteResponse,
    RateRequestResponse,
    ShipmentResponse,
)

__all__ = [
    "AddressIn",
    "PackageIn",
    "ShipmentOptionsIn",
    "ShipmentRequestIn",
    "RateQuoteRequest",
    "CompareRatesRequest",
    "BookShipmentRequest",
    "DraftShipmentRequest",
    "CancelShipmentRequest",
    "RateQuoteResponse",
    "RateRequestResponse",
    "ShipmentResponse",
]
