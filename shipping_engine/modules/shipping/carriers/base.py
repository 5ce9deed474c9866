"""
Carrier Adapter Interface

- All carriers implement CarrierAdapter
- Shared HTTP plumbing is composed in (CarrierHTTPClient), not inherited
- Each carrier privately owns:
  - Endpoint selection (sandbox vs production)
  - Request/response translation
  - Authentication headers
  - Unit conversion (callers always use pounds and inches)
  - Status mapping
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from shipping_engine.core.exceptions import CarrierCallError, ShipmentValidationError
from shipping_engine.models.shipment import ShipmentStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass
class Address:
    name: str
    street1: str
    city: str
    state: str
    postal_code: str
    country: str = "US"
    street2: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @property
    def street_lines(self) -> List[str]:
        return [line for line in (self.street1, self.street2) if line]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PackageSpec:
    """Package weight and dimensions, always in pounds and inches."""
    weight: float
    length: float
    width: float
    height: float
    value: Optional[float] = None  # declared value
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ShipmentOptions:
    signature_required: bool = False
    saturday_delivery: bool = False
    insurance: Optional[float] = None
    cod_amount: Optional[float] = None
    dry_ice: bool = False
    hazmat: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ShipmentRequest:
    from_address: Address
    to_address: Address
    packages: List[PackageSpec]
    service_type: str = ""
    options: Optional[ShipmentOptions] = None

    def for_service(self, service_code: str) -> "ShipmentRequest":
        """Same shipment, different requested service."""
        return ShipmentRequest(
            from_address=self.from_address,
            to_address=self.to_address,
            packages=self.packages,
            service_type=service_code,
            options=self.options,
        )

    @property
    def total_weight(self) -> float:
        return sum(p.weight for p in self.packages)

    @property
    def total_value(self) -> float:
        return sum(p.value or 0.0 for p in self.packages)


@dataclass
class ServiceOption:
    code: str
    name: str
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RateQuote:
    """
    One carrier/service price offer.

    Adapters fill in the carrier fields; rank/savings/percentage_savings and
    quote_id are assigned by the rate aggregator.
    """
    carrier: str
    service_code: str
    cost: float
    currency: str = "USD"
    service_name: Optional[str] = None
    transit_time: Optional[str] = None
    delivery_date: Optional[datetime] = None
    guaranteed_delivery: bool = False
    requested_service: Optional[str] = None
    rank: int = 0
    savings: float = 0.0
    percentage_savings: float = 0.0
    quote_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quote_id": self.quote_id,
            "carrier": self.carrier,
            "service_code": self.service_code,
            "service_name": self.service_name,
            "requested_service": self.requested_service,
            "cost": self.cost,
            "currency": self.currency,
            "transit_time": self.transit_time,
            "delivery_date": self.delivery_date.isoformat() if self.delivery_date else None,
            "guaranteed_delivery": self.guaranteed_delivery,
            "rank": self.rank,
            "savings": self.savings,
            "percentage_savings": self.percentage_savings,
        }


@dataclass
class LabelResult:
    tracking_number: str
    label_url: str  # URL or base64 payload, carrier dependent
    label_format: str = "PDF"  # PDF, PNG, ZPL
    cost: float = 0.0
    currency: str = "USD"
    carrier_response: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tracking_number": self.tracking_number,
            "label_url": self.label_url,
            "label_format": self.label_format,
            "cost": self.cost,
            "currency": self.currency,
        }


@dataclass
class TrackingEvent:
    tracking_number: str
    status: str  # carrier-specific status text
    description: str
    timestamp: Optional[datetime] = None
    location: Optional[str] = None
    signed_by: Optional[str] = None
    normalized_status: Optional[ShipmentStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tracking_number": self.tracking_number,
            "status": self.status,
            "normalized_status": self.normalized_status.value if self.normalized_status else None,
            "description": self.description,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "location": self.location,
            "signed_by": self.signed_by,
        }


# =============================================================================
# Request validation
# =============================================================================

_REQUIRED_ADDRESS_FIELDS = ("name", "street1", "city", "state", "postal_code", "country")


def validate_shipment_request(request: ShipmentRequest, require_service: bool = True) -> None:
    """
    Check request shape before any carrier call.

    Raises:
        ShipmentValidationError on the first problem found
    """
    for label, address in (("from", request.from_address), ("to", request.to_address)):
        if address is None:
            raise ShipmentValidationError(f"{label} address is required", field=label)
        for attr in _REQUIRED_ADDRESS_FIELDS:
            value = getattr(address, attr, None)
            if not value or not str(value).strip():
                raise ShipmentValidationError(f"{label} address {attr} is required", field=f"{label}.{attr}")
        if len(address.state.strip()) < 2 or len(address.country.strip()) < 2:
            raise ShipmentValidationError(f"{label} address state/country must be at least 2 characters", field=label)

    if not request.packages:
        raise ShipmentValidationError("At least one package is required", field="packages")

    for index, package in enumerate(request.packages):
        for attr in ("weight", "length", "width", "height"):
            value = getattr(package, attr, None)
            if value is None or value <= 0:
                raise ShipmentValidationError(
                    f"Package {index + 1} {attr} must be positive",
                    field=f"packages[{index}].{attr}",
                )
        if package.value is not None and package.value < 0:
            raise ShipmentValidationError(
                f"Package {index + 1} declared value cannot be negative",
                field=f"packages[{index}].value",
            )

    if require_service and not (request.service_type or "").strip():
        raise ShipmentValidationError("service_type is required", field="service_type")


# =============================================================================
# Carrier Adapter Interface
# =============================================================================

class CarrierAdapter(ABC):
    """
    Uniform contract every carrier integration implements.

    Errors:
        quote_service / create_shipment / track_shipment raise CarrierCallError
        (create_shipment raises ShipmentValidationError first for bad input).
        quote_rates returns partial results instead of raising.
        cancel_shipment returns False instead of raising.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry key, lower case (e.g. 'ups')."""

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable carrier name."""

    @abstractmethod
    def list_services(self) -> List[ServiceOption]:
        """Services this carrier offers, most common first."""

    @abstractmethod
    async def quote_service(self, request: ShipmentRequest, service_code: str) -> List[RateQuote]:
        """One external rate call for a single service."""

    @abstractmethod
    async def quote_rates(
        self,
        request: ShipmentRequest,
        service_codes: Optional[Sequence[str]] = None,
    ) -> List[RateQuote]:
        """Quotes for several services; failed services are logged and skipped."""

    @abstractmethod
    async def create_shipment(self, request: ShipmentRequest) -> LabelResult:
        """Purchase a label."""

    @abstractmethod
    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:
        """Tracking events in chronological order."""

    @abstractmethod
    async def cancel_shipment(self, tracking_number: str) -> bool:
        """Void a label. Never raises."""

    @abstractmethod
    def map_status(self, carrier_status: str) -> Optional[ShipmentStatus]:
        """Normalize a carrier status; None when it has no lifecycle meaning."""

    @abstractmethod
    def get_tracking_url(self, tracking_number: str) -> str:
        """Public tracking page."""

    async def close(self) -> None:
        """Release network resources. Adapters with clients override this."""
        return None


# =============================================================================
# Shared helpers (composed into adapters, not inherited)
# =============================================================================

DEFAULT_SERVICE_LIMIT = 5


def default_service_codes(adapter: CarrierAdapter, limit: int = DEFAULT_SERVICE_LIMIT) -> List[str]:
    return [service.code for service in adapter.list_services()[:limit]]


async def gather_service_quotes(
    adapter: CarrierAdapter,
    request: ShipmentRequest,
    service_codes: Optional[Sequence[str]] = None,
) -> List[RateQuote]:
    """
    Query each service concurrently and keep whatever succeeded.

    Without explicit codes the request's own service type is used, or the
    carrier's default service set when the request names none. Returned
    quotes follow service order regardless of completion order.
    """
    if service_codes:
        codes = list(dict.fromkeys(service_codes))
    elif request.service_type:
        codes = [request.service_type]
    else:
        codes = default_service_codes(adapter)

    async def _one(code: str):
        try:
            return await adapter.quote_service(request.for_service(code), code)
        except CarrierCallError as e:
            logger.warning(f"{adapter.display_name} rate for service {code} failed: {e.message}")
            return []

    results = await asyncio.gather(*(_one(code) for code in codes))

    quotes: List[RateQuote] = []
    for service_quotes in results:
        quotes.extend(service_quotes)
    return quotes


def map_status_from_table(carrier_name: str, table: Dict[str, ShipmentStatus], carrier_status: str) -> Optional[ShipmentStatus]:
    """Exact match first, then substring match against the carrier's status table."""
    status_upper = (carrier_status or "").upper().strip()
    if not status_upper:
        return None

    if status_upper in table:
        return table[status_upper]

    for key, value in table.items():
        if len(key) > 2 and key in status_upper:
            return value

    logger.debug(f"Unmapped {carrier_name} status: {carrier_status}")
    return None


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse carrier ISO-8601 timestamps; unparseable values become None."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable carrier timestamp: {value}")
        return None


def sort_chronologically(events: List[TrackingEvent], newest_first: bool = False) -> List[TrackingEvent]:
    """Oldest event first. Events without timestamps keep the carrier's order."""
    events = list(reversed(events)) if newest_first else list(events)
    stamps = [e.timestamp for e in events]
    if all(stamps) and len({s.tzinfo is None for s in stamps}) <= 1:
        events.sort(key=lambda e: e.timestamp)
    return events
