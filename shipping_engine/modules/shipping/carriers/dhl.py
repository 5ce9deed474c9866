"""
DHL Express Carrier Implementation

MyDHL API (rates, shipments, tracking). DHL works in metric units, so package
weight/dimensions are converted here and nowhere else.
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
    parse_iso_datetime,
    sort_chronologically,
    validate_shipment_request,
)
from shipping_engine.modules.shipping.carriers.http import CarrierHTTPClient, translation_error

logger = logging.getLogger(__name__)

DHL_PRODUCTION_URL = "https://express.api.dhl.com/mydhlapi"
DHL_SANDBOX_URL = "https://express.api.dhl.com/mydhlapi/test"

KG_PER_LB = 0.453592
CM_PER_IN = 2.54

DHL_SERVICES = [
    ServiceOption("N", "DHL Domestic Express", "Next working day"),
    ServiceOption("S", "DHL Same Day", "Same day delivery"),
    ServiceOption("G", "DHL Domestic Economy Select", "Day-definite economy"),
    ServiceOption("Y", "DHL Express 12:00", "Next working day by 12:00"),
    ServiceOption("T", "DHL Express 12:00 Doc", "Next working day by 12:00, documents"),
]
DHL_SERVICE_NAMES = {s.code: s.name for s in DHL_SERVICES}

DHL_STATUS_MAP = {
    "PU": ShipmentStatus.PICKED_UP,
    "SHIPMENT PICKED UP": ShipmentStatus.PICKED_UP,
    "PL": ShipmentStatus.IN_TRANSIT,
    "DF": ShipmentStatus.IN_TRANSIT,
    "AF": ShipmentStatus.IN_TRANSIT,
    "AR": ShipmentStatus.IN_TRANSIT,
    "WC": ShipmentStatus.IN_TRANSIT,
    "TRANSIT": ShipmentStatus.IN_TRANSIT,
    "WITH DELIVERY COURIER": ShipmentStatus.IN_TRANSIT,
    "OK": ShipmentStatus.DELIVERED,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "RT": ShipmentStatus.RETURNED,
    "RETURNED TO SHIPPER": ShipmentStatus.RETURNED,
    "SD": ShipmentStatus.LABEL_CREATED,
    "SHIPMENT INFORMATION RECEIVED": ShipmentStatus.LABEL_CREATED,
}


def _kg(pounds: float) -> float:
    return round(pounds * KG_PER_LB, 3)


def _cm(inches: float) -> float:
    return round(inches * CM_PER_IN, 2)


class DHLCarrier(CarrierAdapter):
    """DHL Express carrier implementation."""

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        account_number: str,
        use_sandbox: bool = False,
        timeout: float = 30.0,
        user_agent: str = "Shipping-Engine/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self._secret_key = secret_key
        self._account_number = account_number
        self.use_sandbox = use_sandbox
        self._http = CarrierHTTPClient(
            carrier=self.name,
            display_name=self.display_name,
            base_url=DHL_SANDBOX_URL if use_sandbox else DHL_PRODUCTION_URL,
            auth_headers=self._auth_headers,
            timeout=timeout,
            user_agent=user_agent,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional["DHLCarrier"]:
        if not (settings.DHL_API_KEY and settings.DHL_SECRET_KEY):
            return None
        return cls(
            api_key=settings.DHL_API_KEY,
            secret_key=settings.DHL_SECRET_KEY,
            account_number=settings.DHL_ACCOUNT_NUMBER,
            use_sandbox=bool(settings.CARRIER_USE_SANDBOX),
            timeout=settings.CARRIER_HTTP_TIMEOUT_SECONDS,
            user_agent=settings.HTTP_USER_AGENT,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "dhl"

    @property
    def display_name(self) -> str:
        return "DHL"

    def list_services(self) -> List[ServiceOption]:
        return list(DHL_SERVICES)

    def _auth_headers(self) -> Dict[str, str]:
        credentials = base64.b64encode(f"{self._api_key}:{self._secret_key}".encode()).decode()
        return {"Authorization": f"Basic {credentials}"}

    async def close(self) -> None:
        await self._http.close()

    def _format_party(self, address: Address) -> Dict[str, Any]:
        postal = {
            "cityName": address.city,
            "countryCode": address.country,
            "postalCode": address.postal_code,
            "provinceCode": address.state,
            "addressLine1": address.street1,
        }
        if address.street2:
            postal["addressLine2"] = address.street2
        contact = {"fullName": address.name, "companyName": address.company or address.name}
        if address.phone:
            contact["phone"] = address.phone
        if address.email:
            contact["email"] = address.email
        return {"postalAddress": postal, "contactInformation": contact}

    def _format_package(self, package: PackageSpec) -> Dict[str, Any]:
        return {
            "weight": _kg(package.weight),
            "dimensions": {
                "length": _cm(package.length),
                "width": _cm(package.width),
                "height": _cm(package.height),
            },
        }

    def _planned_time(self) -> str:
        # MyDHL wants local time with a GMT offset suffix
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S GMT+00:00")

    async def quote_service(self, request: ShipmentRequest, service_code: str) -> List[RateQuote]:
        validate_shipment_request(request, require_service=False)

        payload = {
            "customerDetails": {
                "shipperDetails": self._format_party(request.from_address)["postalAddress"],
                "receiverDetails": self._format_party(request.to_address)["postalAddress"],
            },
            "accounts": [{"typeCode": "shipper", "number": self._account_number}],
            "productCode": service_code,
            "plannedShippingDateAndTime": self._planned_time(),
            "unitOfMeasurement": "metric",
            "isCustomsDeclarable": request.from_address.country != request.to_address.country,
            "packages": [self._format_package(p) for p in request.packages],
        }

        response = await self._http.request("POST", "/rates", json=payload)

        try:
            quotes = []
            for product in response["products"]:
                code = product.get("productCode", service_code)
                price = product["totalPrice"][0]
                capabilities = product.get("deliveryCapabilities") or {}
                days = capabilities.get("totalTransitDays")
                quotes.append(RateQuote(
                    carrier=self.name,
                    service_code=code,
                    service_name=product.get("productName") or DHL_SERVICE_NAMES.get(code, code),
                    cost=float(price["price"]),
                    currency=price.get("priceCurrency") or price.get("currency") or "USD",
                    transit_time=f"{days} days" if days is not None else capabilities.get("deliveryTypeCode"),
                    delivery_date=parse_iso_datetime(capabilities.get("estimatedDeliveryDateAndTime")),
                    guaranteed_delivery=False,
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

    async def create_shipment(self, request: ShipmentRequest) -> LabelResult:
        validate_shipment_request(request)

        packages = []
        for index, package in enumerate(request.packages):
            item = self._format_package(package)
            item["typeCode"] = "3BX"
            item["customerReferences"] = [{"value": f"PKG{index + 1}", "typeCode": "CU"}]
            packages.append(item)

        payload: Dict[str, Any] = {
            "plannedShippingDateAndTime": self._planned_time(),
            "pickup": {"isRequested": False},
            "productCode": request.service_type,
            "accounts": [{"typeCode": "shipper", "number": self._account_number}],
            "customerDetails": {
                "shipperDetails": self._format_party(request.from_address),
                "receiverDetails": self._format_party(request.to_address),
            },
            "content": {
                "packages": packages,
                "isCustomsDeclarable": request.from_address.country != request.to_address.country,
                "description": (request.packages[0].description or "Shipment")[:70],
                "unitOfMeasurement": "metric",
            },
            "outputImageProperties": {
                "imageOptions": [{"typeCode": "label", "templateName": "ECOM26_84_001", "isRequested": True}],
            },
        }

        options = request.options
        if options:
            services = []
            if options.saturday_delivery:
                services.append({"serviceCode": "AA"})
            if options.insurance:
                services.append({"serviceCode": "II", "value": options.insurance, "currency": "USD"})
            if options.signature_required:
                services.append({"serviceCode": "SF"})
            if services:
                payload["valueAddedServices"] = services

        response = await self._http.request("POST", "/shipments", json=payload)

        try:
            charges = (response.get("shipmentCharges") or [{}])[0]
            return LabelResult(
                tracking_number=response["shipmentTrackingNumber"],
                label_url=response["documents"][0]["content"],
                label_format=response["documents"][0].get("imageFormat", "PDF"),
                cost=float(charges.get("price", 0)),
                currency=charges.get("currency") or charges.get("priceCurrency") or "USD",
                carrier_response={k: v for k, v in response.items() if k != "documents"},
            )
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise translation_error(self.name, self.display_name, "shipment", e)

    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:
        response = await self._http.request(
            "GET",
            "/tracking",
            params={"shipmentTrackingNumber": tracking_number, "trackingView": "all-checkpoints"},
        )

        try:
            shipment = response["shipments"][0]
            events = []
            for event in shipment.get("events") or []:
                description = event.get("description", "")
                locality = ((event.get("serviceArea") or [{}])[0]).get("description")
                stamp = event.get("timestamp")
                if not stamp and event.get("date"):
                    stamp = f"{event['date']}T{event.get('time', '00:00:00')}"
                events.append(TrackingEvent(
                    tracking_number=tracking_number,
                    status=event.get("typeCode") or description,
                    description=description,
                    timestamp=parse_iso_datetime(stamp),
                    location=locality,
                    signed_by=event.get("signedBy"),
                    normalized_status=self.map_status(event.get("typeCode") or description),
                ))
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise translation_error(self.name, self.display_name, "tracking", e)

        return sort_chronologically(events)

    async def cancel_shipment(self, tracking_number: str) -> bool:
        try:
            await self._http.request("DELETE", f"/shipments/{tracking_number}")
        except CarrierCallError as e:
            logger.error(f"DHL shipment cancellation failed for {tracking_number}: {e.message}")
            return False
        return True

    def get_tracking_url(self, tracking_number: str) -> str:
        return f"https://www.dhl.com/us-en/home/tracking/tracking-express.html?tracking-id={tracking_number}"

    def map_status(self, carrier_status: str) -> Optional[ShipmentStatus]:
        return map_status_from_table(self.display_name, DHL_STATUS_MAP, carrier_status)
