"""
UPS Carrier Implementation

- Implements CarrierAdapter over the UPS JSON APIs (Rating, Shipping,
  Tracking, Void)
- Basic auth + AccessLicenseNumber header
- UPS works in LBS/IN natively, so package values pass through unconverted
"""
import base64
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

from shipping_engine.core.config import Settings
from shipping_engine.core.exceptions import CarrierCallError
from shipping_engine.models.shipment import ShipmentStatus
from shipping_engine.modules.shipping.carriers.base import (
    CarrierAdapter,
    Address,
    LabelResult,
    PackageSpec,
    RateQuote,
    ServiceOption,
    ShipmentRequest,
    TrackingEvent,
    gather_service_quotes,
    map_status_from_table,
    sort_chronologically,
    validate_shipment_request,
)
from shipping_engine.modules.shipping.carriers.http import CarrierHTTPClient, translation_error

logger = logging.getLogger(__name__)

UPS_PRODUCTION_URL = "https://onlinetools.ups.com"
UPS_SANDBOX_URL = "https://wwwcie.ups.com"

RATING_PATH = "/api/rating/v2403/Rate"
SHIPPING_PATH = "/api/shipments/v2403/ship"
TRACKING_PATH = "/api/track/v1/details"
VOID_PATH = "/api/shipments/v2403/void/cancel"

# Order matters: the first five are the default rate-shopping set
UPS_SERVICES = [
    ServiceOption("03", "UPS Ground", "Ground delivery service"),
    ServiceOption("12", "UPS 3 Day Select", "3 business days"),
    ServiceOption("02", "UPS 2nd Day Air", "2 business days"),
    ServiceOption("59", "UPS 2nd Day Air A.M.", "2 business days by 12:00 PM"),
    ServiceOption("01", "UPS Next Day Air", "Next business day"),
    ServiceOption("14", "UPS Next Day Air Early", "Next business day by 8:00 AM"),
]
UPS_SERVICE_NAMES = {s.code: s.name for s in UPS_SERVICES}

# UPS activity status type / description -> ShipmentStatus
UPS_STATUS_MAP = {
    "D": ShipmentStatus.DELIVERED,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "I": ShipmentStatus.IN_TRANSIT,
    "IN TRANSIT": ShipmentStatus.IN_TRANSIT,
    "O": ShipmentStatus.IN_TRANSIT,
    "OUT FOR DELIVERY": ShipmentStatus.IN_TRANSIT,
    "P": ShipmentStatus.PICKED_UP,
    "PICKED UP": ShipmentStatus.PICKED_UP,
    "PICKUP": ShipmentStatus.PICKED_UP,
    "RS": ShipmentStatus.RETURNED,
    "RETURNED": ShipmentStatus.RETURNED,
    "M": ShipmentStatus.LABEL_CREATED,
    "MV": ShipmentStatus.LABEL_CREATED,
    "LABEL CREATED": ShipmentStatus.LABEL_CREATED,
    "BILLING INFORMATION RECEIVED": ShipmentStatus.LABEL_CREATED,
}

LABEL_IMAGE_FORMATS = {
    "ZPL": {"Code": "ZPL", "Description": "ZPL"},
    "GIF": {"Code": "GIF", "Description": "GIF"},
    "PNG": {"Code": "PNG", "Description": "PNG"},
}


class UPSCarrier(CarrierAdapter):
    """UPS shipping carrier implementation."""

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        account_number: str,
        access_key: str = "",
        use_sandbox: bool = False,
        label_format: str = "ZPL",
        timeout: float = 30.0,
        user_agent: str = "Shipping-Engine/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self._secret_key = secret_key
        self._account_number = account_number
        self._access_key = access_key
        self.use_sandbox = use_sandbox
        self.label_format = label_format.upper() if label_format.upper() in LABEL_IMAGE_FORMATS else "ZPL"
        self._http = CarrierHTTPClient(
            carrier=self.name,
            display_name=self.display_name,
            base_url=UPS_SANDBOX_URL if use_sandbox else UPS_PRODUCTION_URL,
            auth_headers=self._auth_headers,
            timeout=timeout,
            user_agent=user_agent,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional["UPSCarrier"]:
        if not (settings.UPS_API_KEY and settings.UPS_SECRET_KEY):
            return None
        return cls(
            api_key=settings.UPS_API_KEY,
            secret_key=settings.UPS_SECRET_KEY,
            account_number=settings.UPS_ACCOUNT_NUMBER,
            access_key=settings.UPS_ACCESS_KEY,
            use_sandbox=bool(settings.CARRIER_USE_SANDBOX),
            timeout=settings.CARRIER_HTTP_TIMEOUT_SECONDS,
            user_agent=settings.HTTP_USER_AGENT,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "ups"

    @property
    def display_name(self) -> str:
        return "UPS"

    def list_services(self) -> List[ServiceOption]:
        return list(UPS_SERVICES)

    def _auth_headers(self) -> Dict[str, str]:
        credentials = base64.b64encode(f"{self._api_key}:{self._secret_key}".encode()).decode()
        return {
            "Authorization": f"Basic {credentials}",
            "AccessLicenseNumber": self._access_key,
        }

    async def close(self) -> None:
        await self._http.close()

    # ==================== Translation ====================

    def _format_address(self, address: Address) -> Dict[str, Any]:
        formatted = {
            "Name": (address.company or address.name)[:35],
            "AttentionName": address.name[:35],
            "Address": {
                "AddressLine": address.street_lines,
                "City": address.city,
                "StateProvinceCode": address.state[:5],
                "PostalCode": address.postal_code,
                "CountryCode": address.country,
            },
        }
        if address.phone:
            formatted["Phone"] = {"Number": address.phone[:15]}
        if address.email:
            formatted["EMailAddress"] = address.email[:50]
        return formatted

    def _format_package(self, package: PackageSpec, packaging_key: str = "PackagingType") -> Dict[str, Any]:
        formatted = {
            packaging_key: {"Code": "02"},  # Customer Supplied Package
            "Dimensions": {
                "UnitOfMeasurement": {"Code": "IN"},
                "Length": str(round(package.length, 1)),
                "Width": str(round(package.width, 1)),
                "Height": str(round(package.height, 1)),
            },
            "PackageWeight": {
                "UnitOfMeasurement": {"Code": "LBS"},
                "Weight": str(round(package.weight, 1)),
            },
        }
        if package.value:
            formatted["PackageServiceOptions"] = {
                "DeclaredValue": {
                    "CurrencyCode": "USD",
                    "MonetaryValue": str(round(package.value, 2)),
                }
            }
        return formatted

    def _shipment_block(self, request: ShipmentRequest, packaging_key: str) -> Dict[str, Any]:
        shipper = self._format_address(request.from_address)
        shipper["ShipperNumber"] = self._account_number
        packages = [self._format_package(p, packaging_key) for p in request.packages]
        return {
            "Shipper": shipper,
            "ShipTo": self._format_address(request.to_address),
            "ShipFrom": self._format_address(request.from_address),
            "Service": {"Code": request.service_type},
            "Package": packages if len(packages) > 1 else packages[0],
        }

    # ==================== Rating ====================

    async def quote_service(self, request: ShipmentRequest, service_code: str) -> List[RateQuote]:
        validate_shipment_request(request, require_service=False)
        request = request.for_service(service_code)

        payload = {
            "RateRequest": {
                "Request": {
                    "RequestOption": "Rate",
                    "TransactionReference": {"CustomerContext": "Rate Request"},
                },
                "Shipment": self._shipment_block(request, "PackagingType"),
            }
        }

        response = await self._http.request("POST", RATING_PATH, json=payload)

        try:
            rated_shipments = response["RateResponse"]["RatedShipment"]
            if isinstance(rated_shipments, dict):
                rated_shipments = [rated_shipments]

            quotes = []
            for rs in rated_shipments:
                code = rs.get("Service", {}).get("Code", service_code)
                total = rs["TotalCharges"]
                guaranteed = rs.get("GuaranteedDelivery")
                transit_time = None
                if guaranteed and guaranteed.get("BusinessDaysInTransit"):
                    transit_time = f"{guaranteed['BusinessDaysInTransit']} business days"
                quotes.append(RateQuote(
                    carrier=self.name,
                    service_code=code,
                    service_name=UPS_SERVICE_NAMES.get(code, f"UPS Service {code}"),
                    cost=float(total["MonetaryValue"]),
                    currency=total.get("CurrencyCode", "USD"),
                    transit_time=transit_time,
                    delivery_date=_parse_arrival(rs.get("TimeInTransit", {})),
                    guaranteed_delivery=guaranteed is not None,
                    requested_service=service_code,
                ))
            return quotes
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise translation_error(self.name, self.display_name, "rate", e)

    async def quote_rates(
        self,
        request: ShipmentRequest,
        service_codes: Optional[Sequence[str]] = None,
    ) -> List[RateQuote]:
        return await gather_service_quotes(self, request, service_codes)

    # ==================== Shipping ====================

    async def create_shipment(self, request: ShipmentRequest) -> LabelResult:
        validate_shipment_request(request)

        shipment = self._shipment_block(request, "Packaging")
        shipment["Description"] = (request.packages[0].description or "Package")[:50]
        shipment["PaymentInformation"] = {
            "ShipmentCharge": {
                "Type": "01",  # Transportation
                "BillShipper": {"AccountNumber": self._account_number},
            },
        }

        options = request.options
        if options:
            packages = shipment["Package"] if isinstance(shipment["Package"], list) else [shipment["Package"]]
            if options.signature_required:
                for pkg in packages:
                    pkg.setdefault("PackageServiceOptions", {})["DeliveryConfirmation"] = {"DCISType": "2"}
            if options.saturday_delivery:
                shipment.setdefault("ShipmentServiceOptions", {})["SaturdayDeliveryIndicator"] = ""
            if options.cod_amount:
                shipment.setdefault("ShipmentServiceOptions", {})["COD"] = {
                    "CODFundsCode": "1",
                    "CODAmount": {"CurrencyCode": "USD", "MonetaryValue": str(round(options.cod_amount, 2))},
                }

        payload = {
            "ShipmentRequest": {
                "Request": {
                    "RequestOption": "nonvalidate",
                    "TransactionReference": {"CustomerContext": "Ship Request"},
                },
                "Shipment": shipment,
                "LabelSpecification": {
                    "LabelImageFormat": LABEL_IMAGE_FORMATS[self.label_format],
                    "LabelStockSize": {"Height": "6", "Width": "4"},
                },
            }
        }

        response = await self._http.request("POST", SHIPPING_PATH, json=payload)

        try:
            results = response["ShipmentResponse"]["ShipmentResults"]
            package_results = results["PackageResults"]
            if isinstance(package_results, list):
                package_results = package_results[0]
            charges = results["ShipmentCharges"]["TotalCharges"]

            return LabelResult(
                tracking_number=package_results["TrackingNumber"],
                label_url=package_results.get("ShippingLabel", {}).get("GraphicImage", ""),
                label_format=self.label_format,
                cost=float(charges["MonetaryValue"]),
                currency=charges.get("CurrencyCode", "USD"),
                carrier_response=results,
            )
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise translation_error(self.name, self.display_name, "shipment", e)

    # ==================== Tracking ====================

    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:
        response = await self._http.request("GET", f"{TRACKING_PATH}/{tracking_number}")

        try:
            package = response["trackResponse"]["shipment"][0]["package"][0]
            activities = package.get("activity") or []

            events = []
            for activity in activities:
                status = activity.get("status", {})
                address = activity.get("location", {}).get("address", {})
                city = address.get("city")
                state = address.get("stateProvince")
                events.append(TrackingEvent(
                    tracking_number=tracking_number,
                    status=status.get("description", ""),
                    description=status.get("description", ""),
                    timestamp=_parse_activity_time(activity.get("date"), activity.get("time")),
                    location=f"{city}, {state}" if city else None,
                    normalized_status=self.map_status(status.get("type") or status.get("description", "")),
                ))
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise translation_error(self.name, self.display_name, "tracking", e)

        # UPS lists newest first
        return sort_chronologically(events, newest_first=True)

    # ==================== Void ====================

    async def cancel_shipment(self, tracking_number: str) -> bool:
        """
        Void a UPS shipment.

        The tracking number doubles as the shipment identification number for
        single-package shipments.
        """
        try:
            response = await self._http.request("DELETE", f"{VOID_PATH}/{tracking_number}")
            code = response["VoidShipmentResponse"]["SummaryResult"]["Status"]["Code"]
        except CarrierCallError as e:
            logger.error(f"UPS void shipment error for {tracking_number}: {e.message}")
            return False
        except (KeyError, TypeError, AttributeError) as e:
            logger.error(f"UPS void response for {tracking_number} could not be parsed: {e!r}")
            return False

        if str(code) != "1":
            logger.warning(f"UPS void for {tracking_number} returned status code {code}")
            return False
        return True

    def get_tracking_url(self, tracking_number: str) -> str:
        return f"https://www.ups.com/track?tracknum={tracking_number}"

    def map_status(self, carrier_status: str) -> Optional[ShipmentStatus]:
        return map_status_from_table(self.display_name, UPS_STATUS_MAP, carrier_status)


def _parse_arrival(time_in_transit: Dict[str, Any]) -> Optional[datetime]:
    arrival = (time_in_transit or {}).get("ServiceSummary", {}).get("EstimatedArrival", {}).get("Arrival", {})
    date_str = arrival.get("Date")
    if not date_str:
        return None
    try:
        return datetime.strptime(
            f"{date_str} {(arrival.get('Time') or '180000')[:4]}",
            "%Y%m%d %H%M",
        ).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_activity_time(date_str: Optional[str], time_str: Optional[str]) -> Optional[datetime]:
    if not date_str:
        return None
    try:
        return datetime.strptime(f"{date_str}{(time_str or '000000')[:6]}", "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None

