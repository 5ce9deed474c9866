"""
FedEx Carrier Implementation

Implements CarrierAdapter over the FedEx REST APIs (Rate, Ship, Track).
Static bearer credential; FedEx accepts LB/IN so packages pass through.
"""
import logging
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
    ShipmentOptions,
    ShipmentRequest,
    TrackingEvent,
    gather_service_quotes,
    map_status_from_table,
    parse_iso_datetime,
    sort_chronologically,
    validate_shipment_request,
)
from shipping_engine.modules.shipping.carriers.http import CarrierHTTPClient, translation_error

logger = logging.getLogger(__name__)

FEDEX_PRODUCTION_URL = "https://apis.fedex.com"
FEDEX_SANDBOX_URL = "https://apis-sandbox.fedex.com"

RATE_PATH = "/rate/v1/rates/quotes"
SHIP_PATH = "/ship/v1/shipments"
CANCEL_PATH = "/ship/v1/shipments/cancel"
TRACK_PATH = "/track/v1/trackingnumbers"

FEDEX_SERVICES = [
    ServiceOption("FEDEX_GROUND", "FedEx Ground", "Ground delivery service"),
    ServiceOption("FEDEX_EXPRESS_SAVER", "FedEx Express Saver", "3 business days"),
    ServiceOption("FEDEX_2_DAY", "FedEx 2Day", "2 business days"),
    ServiceOption("STANDARD_OVERNIGHT", "FedEx Standard Overnight", "Next business day"),
    ServiceOption("PRIORITY_OVERNIGHT", "FedEx Priority Overnight", "Next business day by 10:30 AM"),
    ServiceOption("FIRST_OVERNIGHT", "FedEx First Overnight", "Next business day by 8:00 AM"),
]
FEDEX_SERVICE_NAMES = {s.code: s.name for s in FEDEX_SERVICES}

# Scan event type codes and descriptions -> ShipmentStatus
FEDEX_STATUS_MAP = {
    "OC": ShipmentStatus.LABEL_CREATED,
    "SHIPMENT INFORMATION SENT TO FEDEX": ShipmentStatus.LABEL_CREATED,
    "LABEL CREATED": ShipmentStatus.LABEL_CREATED,
    "PU": ShipmentStatus.PICKED_UP,
    "PICKED UP": ShipmentStatus.PICKED_UP,
    "IT": ShipmentStatus.IN_TRANSIT,
    "AR": ShipmentStatus.IN_TRANSIT,
    "DP": ShipmentStatus.IN_TRANSIT,
    "OD": ShipmentStatus.IN_TRANSIT,
    "IN TRANSIT": ShipmentStatus.IN_TRANSIT,
    "ON FEDEX VEHICLE FOR DELIVERY": ShipmentStatus.IN_TRANSIT,
    "DL": ShipmentStatus.DELIVERED,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "RS": ShipmentStatus.RETURNED,
    "RETURNED TO SHIPPER": ShipmentStatus.RETURNED,
    "CA": ShipmentStatus.CANCELLED,
    "SHIPMENT CANCELLED": ShipmentStatus.CANCELLED,
}


class FedExCarrier(CarrierAdapter):
    """FedEx shipping carrier implementation."""

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        account_number: str,
        meter_number: str = "",
        use_sandbox: bool = False,
        timeout: float = 30.0,
        user_agent: str = "Shipping-Engine/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self._secret_key = secret_key
        self._account_number = account_number
        self._meter_number = meter_number
        self.use_sandbox = use_sandbox
        self._http = CarrierHTTPClient(
            carrier=self.name,
            display_name=self.display_name,
            base_url=FEDEX_SANDBOX_URL if use_sandbox else FEDEX_PRODUCTION_URL,
            auth_headers=self._auth_headers,
            timeout=timeout,
            user_agent=user_agent,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional["FedExCarrier"]:
        if not (settings.FEDEX_API_KEY and settings.FEDEX_SECRET_KEY):
            return None
        return cls(
            api_key=settings.FEDEX_API_KEY,
            secret_key=settings.FEDEX_SECRET_KEY,
            account_number=settings.FEDEX_ACCOUNT_NUMBER,
            meter_number=settings.FEDEX_METER_NUMBER,
            use_sandbox=bool(settings.CARRIER_USE_SANDBOX),
            timeout=settings.CARRIER_HTTP_TIMEOUT_SECONDS,
            user_agent=settings.HTTP_USER_AGENT,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "fedex"

    @property
    def display_name(self) -> str:
        return "FedEx"

    def list_services(self) -> List[ServiceOption]:
        return list(FEDEX_SERVICES)

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "X-locale": "en_US",
        }

    async def close(self) -> None:
        await self._http.close()

    def _format_party(self, address: Address) -> Dict[str, Any]:
        contact = {"personName": address.name}
        if address.company:
            contact["companyName"] = address.company
        if address.phone:
            contact["phoneNumber"] = address.phone
        if address.email:
            contact["emailAddress"] = address.email
        return {
            "contact": contact,
            "address": {
                "streetLines": address.street_lines,
                "city": address.city,
                "stateOrProvinceCode": address.state,
                "postalCode": address.postal_code,
                "countryCode": address.country,
            },
        }

    def _format_package(self, index: int, package: PackageSpec) -> Dict[str, Any]:
        item = {
            "sequenceNumber": index + 1,
            "groupPackageCount": 1,
            "weight": {"units": "LB", "value": package.weight},
            "dimensions": {
                "length": package.length,
                "width": package.width,
                "height": package.height,
                "units": "IN",
            },
        }
        if package.value:
            item["declaredValue"] = {"amount": package.value, "currency": "USD"}
        return item

    def _special_services(self, options: Optional[ShipmentOptions]) -> Dict[str, Any]:
        if not options:
            return {}
        types = []
        detail: Dict[str, Any] = {}
        if options.saturday_delivery:
            types.append("SATURDAY_DELIVERY")
        if options.dry_ice:
            types.append("DRY_ICE")
        if options.hazmat:
            types.append("DANGEROUS_GOODS")
        if options.cod_amount:
            types.append("COD")
            detail["codDetail"] = {"codCollectionAmount": {"amount": options.cod_amount, "currency": "USD"}}
        if not types:
            return {}
        return {"shipmentSpecialServices": {"specialServiceTypes": types, **detail}}

    # ==================== Rates ====================

    async def quote_service(self, request: ShipmentRequest, service_code: str) -> List[RateQuote]:
        validate_shipment_request(request, require_service=False)

        payload = {
            "accountNumber": {"value": self._account_number},
            "requestedShipment": {
                "shipper": self._format_party(request.from_address),
                "recipient": self._format_party(request.to_address),
                "serviceType": service_code,
                "packagingType": "YOUR_PACKAGING",
                "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
                "rateRequestType": ["ACCOUNT"],
                "requestedPackageLineItems": [
                    self._format_package(i, p) for i, p in enumerate(request.packages)
                ],
            },
        }

        response = await self._http.request("POST", RATE_PATH, json=payload)

        try:
            quotes = []
            for detail in response["output"]["rateReplyDetails"]:
                code = detail.get("serviceType", service_code)
                rated = detail["ratedShipmentDetails"][0]
                operational = detail.get("operationalDetail") or {}
                quotes.append(RateQuote(
                    carrier=self.name,
                    service_code=code,
                    service_name=(detail.get("serviceName")
                                  or FEDEX_SERVICE_NAMES.get(code, code)),
                    cost=float(rated["totalNetCharge"]),
                    currency=rated.get("currency", "USD"),
                    transit_time=operational.get("transitTime"),
                    delivery_date=parse_iso_datetime(operational.get("deliveryDate")),
                    guaranteed_delivery=operational.get("deliveryDay") is not None,
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

    # ==================== Ship ====================

    async def create_shipment(self, request: ShipmentRequest) -> LabelResult:
        validate_shipment_request(request)

        packages = [self._format_package(i, p) for i, p in enumerate(request.packages)]
        if request.options and request.options.signature_required:
            for item in packages:
                item["packageSpecialServices"] = {
                    "specialServiceTypes": ["SIGNATURE_OPTION"],
                    "signatureOptionType": "DIRECT",
                }

        payload = {
            "labelResponseOptions": "URL_ONLY",
            "accountNumber": {"value": self._account_number},
            "requestedShipment": {
                "shipper": self._format_party(request.from_address),
                "recipients": [self._format_party(request.to_address)],
                "serviceType": request.service_type,
                "packagingType": "YOUR_PACKAGING",
                "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
                "shippingChargesPayment": {"paymentType": "SENDER"},
                "labelSpecification": {
                    "imageType": "PDF",
                    "labelStockType": "PAPER_85X11_TOP_HALF_LABEL",
                },
                "requestedPackageLineItems": packages,
                **self._special_services(request.options),
            },
        }

        response = await self._http.request("POST", SHIP_PATH, json=payload)

        try:
            shipment = response["output"]["transactionShipments"][0]
            piece = shipment["pieceResponses"][0]
            rating = shipment.get("shipmentRating") or {}
            cost = rating.get("totalNetCharge", piece.get("netChargeAmount", 0))
            return LabelResult(
                tracking_number=piece["trackingNumber"],
                label_url=piece["packageDocuments"][0]["url"],
                label_format="PDF",
                cost=float(cost),
                currency=rating.get("currency", "USD"),
                carrier_response=shipment,
            )
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise translation_error(self.name, self.display_name, "shipment", e)

    # ==================== Track ====================

    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:
        payload = {
            "includeDetailedScans": True,
            "trackingInfo": [{"trackingNumberInfo": {"trackingNumber": tracking_number}}],
        }

        response = await self._http.request("POST", TRACK_PATH, json=payload)

        try:
            result = response["output"]["completeTrackResults"][0]["trackResults"][0]
            events = []
            for scan in result.get("scanEvents") or []:
                location = scan.get("scanLocation") or {}
                city = location.get("city")
                description = scan.get("eventDescription", "")
                events.append(TrackingEvent(
                    tracking_number=tracking_number,
                    status=description,
                    description=description,
                    timestamp=parse_iso_datetime(scan.get("date")),
                    location=f"{city}, {location.get('stateOrProvinceCode', '')}".rstrip(", ") if city else None,
                    signed_by=scan.get("signedByName"),
                    normalized_status=self.map_status(scan.get("eventType") or description),
                ))
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise translation_error(self.name, self.display_name, "tracking", e)

        # scanEvents are newest first
        return sort_chronologically(events, newest_first=True)

    # ==================== Cancel ====================

    async def cancel_shipment(self, tracking_number: str) -> bool:
        payload = {
            "accountNumber": {"value": self._account_number},
            "trackingNumber": tracking_number,
            "deletionControl": "DELETE_ALL_PACKAGES",
        }

        try:
            response = await self._http.request("PUT", CANCEL_PATH, json=payload)
        except CarrierCallError as e:
            logger.error(f"FedEx shipment cancellation failed for {tracking_number}: {e.message}")
            return False

        output = response.get("output") if isinstance(response, dict) else None
        if not isinstance(output, dict):
            logger.error(f"FedEx cancellation reply for {tracking_number} had no output")
            return False
        if output.get("cancelledShipment") is not True:
            logger.warning(f"FedEx did not confirm cancellation for {tracking_number}: {output.get('message')}")
            return False
        return True

    def get_tracking_url(self, tracking_number: str) -> str:
        return f"https://www.fedex.com/fedextrack/?trknbr={tracking_number}"

    def map_status(self, carrier_status: str) -> Optional[ShipmentStatus]:
        return map_status_from_table(self.display_name, FEDEX_STATUS_MAP, carrier_status)
