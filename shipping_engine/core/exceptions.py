"""
Shipping Engine Exception Hierarchy

All exceptions include code, message, and details for audit trail and
debugging. Fan-out (rate shopping) errors are collected as strings and never
raised past the aggregator; single operations (book, cancel, track) raise
these typed errors directly.

Exception Hierarchy:
    ShippingEngineError
    ├── ShipmentValidationError
    ├── PermissionDeniedError
    ├── CarrierError
    │   ├── CarrierUnavailableError
    │   ├── CarrierCallError
    │   ├── CarrierBookingError
    │   └── CarrierCancelError
    ├── RateError
    │   ├── RateMismatchError
    │   └── RateRequestNotFoundError
    └── ShipmentError
        ├── ShipmentNotFoundError
        ├── ShipmentStateError
        └── NotCancellableError
"""
from typing import Optional, Dict, Any


class ShippingEngineError(Exception):
    """
    Base exception for all engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "SHIPPING_ENGINE_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ShipmentValidationError(ShippingEngineError):
    """Malformed shipment request. Raised before any carrier call."""
    default_code = "VALIDATION_FAILED"
    default_severity = "P3"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)


class PermissionDeniedError(ShippingEngineError):
    default_code = "PERMISSION_DENIED"
    default_severity = "P2"


# =============================================================================
# CARRIER ERRORS
# =============================================================================

class CarrierError(ShippingEngineError):
    """Base exception for carrier integration errors."""
    default_code = "CARRIER_ERROR"
    default_severity = "P1"

    def __init__(self, message: str, carrier: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if carrier:
            details["carrier"] = carrier
        self.carrier = carrier
        super().__init__(message, details=details, **kwargs)


class CarrierUnavailableError(CarrierError):
    """Requested carrier is not registered (no credentials configured)."""
    default_code = "CARRIER_UNAVAILABLE"
    default_severity = "P2"


class CarrierCallError(CarrierError):
    """Network, timeout or remote error from a single carrier call."""
    default_code = "CARRIER_CALL_FAILED"
    default_severity = "P2"


class CarrierBookingError(CarrierError):
    """Carrier rejected or failed the label purchase. Nothing was persisted."""
    default_code = "CARRIER_BOOKING_FAILED"
    default_severity = "P1"


class CarrierCancelError(CarrierError):
    """Carrier did not confirm the cancellation. Local status is unchanged."""
    default_code = "CARRIER_CANCEL_FAILED"
    default_severity = "P1"


# =============================================================================
# RATE ERRORS
# =============================================================================

class RateError(ShippingEngineError):
    default_code = "RATE_ERROR"


class RateMismatchError(RateError):
    """Quoted rate is unknown or was offered for a different carrier/service."""
    default_code = "RATE_MISMATCH"

    def __init__(
        self,
        message: str,
        rate_id: Optional[str] = None,
        expected: Optional[Dict[str, Any]] = None,
        actual: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "rate_id": rate_id,
            "expected": expected,
            "actual": actual,
        })
        super().__init__(message, details=details, **kwargs)


class RateRequestNotFoundError(RateError):
    default_code = "RATE_REQUEST_NOT_FOUND"
    default_severity = "P3"


# =============================================================================
# SHIPMENT ERRORS
# =============================================================================

class ShipmentError(ShippingEngineError):
    default_code = "SHIPMENT_ERROR"


class ShipmentNotFoundError(ShipmentError):
    """Shipment does not exist or is not owned by the caller."""
    default_code = "SHIPMENT_NOT_FOUND"
    default_severity = "P3"


class ShipmentStateError(ShipmentError):
    """Requested status change is not a legal forward transition."""
    default_code = "INVALID_STATUS_TRANSITION"

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "current_status": current_status,
            "requested_status": requested_status,
        })
        super().__init__(message, details=details, **kwargs)


class NotCancellableError(ShipmentError):
    """Shipment is already terminal. No carrier call was made."""
    default_code = "NOT_CANCELLABLE"
    default_severity = "P3"


EXCEPTION_CATALOG = {
    "VALIDATION_FAILED": {"class": ShipmentValidationError, "severity": "P3"},
    "PERMISSION_DENIED": {"class": PermissionDeniedError, "severity": "P2"},
    "CARRIER_UNAVAILABLE": {"class": CarrierUnavailableError, "severity": "P2"},
    "CARRIER_CALL_FAILED": {"class": CarrierCallError, "severity": "P2"},
    "CARRIER_BOOKING_FAILED": {"class": CarrierBookingError, "severity": "P1"},
    "CARRIER_CANCEL_FAILED": {"class": CarrierCancelError, "severity": "P1"},
    "RATE_MISMATCH": {"class": RateMismatchError, "severity": "P2"},
    "RATE_NOT_FOUND": {"class": RateMismatchError, "severity": "P2"},
    "RATE_REQUEST_NOT_FOUND": {"class": RateRequestNotFoundError, "severity": "P3"},
    "SHIPMENT_NOT_FOUND": {"class": ShipmentNotFoundError, "severity": "P3"},
    "INVALID_STATUS_TRANSITION": {"class": ShipmentStateError, "severity": "P2"},
    "NOT_CANCELLABLE": {"class": NotCancellableError, "severity": "P3"},
}
