"""
Shipping Engine facade

The surface an HTTP layer (or job, or CLI) talks to. Every call:
1. checks the actor's Permission
2. converts pydantic payloads / dicts into domain objects
3. delegates to RateAggregator or ShipmentOrchestrator

Usage:
    async with get_db_session() as db:
        engine = ShippingEngine(db, registry, audit=DatabaseAuditSink())
        result = await engine.quote_rates(payload, actor)
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_engine.core.config import Settings, settings as default_settings
from shipping_engine.core.exceptions import ShipmentValidationError
from shipping_engine.core.permissions import Actor, Permission
from shipping_engine.models.rate_request import RateRequestRecord
from shipping_engine.models.shipment import Shipment
from shipping_engine.modules.shipping.carriers.base import ServiceOption, ShipmentRequest
from shipping_engine.modules.shipping.carriers.registry import CarrierRegistry
from shipping_engine.schemas.shipping import (
    BookShipmentRequest,
    CancelShipmentRequest,
    CompareRatesRequest,
    DraftShipmentRequest,
    RateQuoteRequest,
    ShipmentRequestIn,
)
from shipping_engine.services.audit import AuditSink
from shipping_engine.services.common import BulkItemResult, check_batch_size
from shipping_engine.services.notifications import NotificationSender
from shipping_engine.services.rate_aggregator import RateAggregator, RateHistoryPage, RateShopResult
from shipping_engine.services.shipment_orchestrator import (
    BookingItem,
    BookingResult,
    CancelItem,
    ShipmentOrchestrator,
    TrackingResult,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

ShipmentInput = Union[ShipmentRequest, ShipmentRequestIn, Mapping[str, Any]]


def parse_payload(model: Type[M], payload: Union[M, Mapping[str, Any]]) -> M:
    """Validate a dict into `model`; pydantic errors become ShipmentValidationError."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ShipmentValidationError(
            f"Invalid {model.__name__}: {location} {first.get('msg', 'invalid value')}".strip(),
            field=location or None,
            details={"errors": e.errors(include_url=False, include_context=False)},
        )


def to_shipment_request(shipment: ShipmentInput) -> ShipmentRequest:
    if isinstance(shipment, ShipmentRequest):
        return shipment
    return parse_payload(ShipmentRequestIn, shipment).to_domain()


class ShippingEngine:
    """Permission-checked entry point over the aggregator and orchestrator."""

    def __init__(
        self,
        db: AsyncSession,
        registry: CarrierRegistry,
        audit: Optional[AuditSink] = None,
        notifier: Optional[NotificationSender] = None,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.settings = settings or default_settings
        self.rates = RateAggregator(db, registry, audit=audit, settings=self.settings)
        self.shipments = ShipmentOrchestrator(
            db, registry, audit=audit, notifier=notifier, settings=self.settings
        )

    # ==================== Carriers ====================

    def list_carriers(self, actor: Actor) -> List[str]:
        actor.require(Permission.CARRIERS_READ)
        return self.registry.list_carriers()

    def list_services(self, actor: Actor, carrier: Optional[str] = None) -> Union[List[ServiceOption], Dict[str, List[ServiceOption]]]:
        actor.require(Permission.CARRIERS_READ)
        return self.registry.list_services(carrier)

    # ==================== Rates ====================

    async def quote_rates(
        self,
        payload: Union[RateQuoteRequest, ShipmentInput],
        actor: Actor,
        carriers: Optional[Sequence[str]] = None,
        services=None,
    ) -> RateShopResult:
        actor.require(Permission.RATES_QUOTE)
        if isinstance(payload, RateQuoteRequest) or (isinstance(payload, Mapping) and "shipment" in payload):
            body = parse_payload(RateQuoteRequest, payload)
            request = body.shipment.to_domain()
            carriers = carriers if carriers is not None else body.carriers
            services = services if services is not None else body.services
        else:
            request = to_shipment_request(payload)
        return await self.rates.get_rates(request, actor, target_carriers=carriers, target_services=services)

    async def compare_rates(
        self,
        payload: Union[CompareRatesRequest, Mapping[str, Any], Sequence[ShipmentInput]],
        actor: Actor,
    ) -> List[BulkItemResult]:
        actor.require(Permission.RATES_QUOTE)
        if isinstance(payload, (CompareRatesRequest, Mapping)):
            body = parse_payload(CompareRatesRequest, payload)
            requests = [s.to_domain() for s in body.shipments]
            return await self.rates.compare_rates(requests, actor, body.carriers, body.services)
        return await self.rates.compare_rates([to_shipment_request(s) for s in payload], actor)

    async def get_request_by_id(self, request_id: str, actor: Actor) -> RateRequestRecord:
        actor.require(Permission.RATES_READ)
        return await self.rates.get_request_by_id(request_id, actor)

    async def get_rate_history(self, actor: Actor, limit: int = 20, offset: int = 0) -> RateHistoryPage:
        actor.require(Permission.RATES_READ)
        return await self.rates.get_rate_history(actor, limit=limit, offset=offset)

    # ==================== Shipments ====================

    def _booking_item(self, payload: Union[BookingItem, BookShipmentRequest, Mapping[str, Any]]) -> BookingItem:
        if isinstance(payload, BookingItem):
            return payload
        body = parse_payload(BookShipmentRequest, payload)
        return BookingItem(
            request=body.shipment.to_domain(),
            carrier=body.carrier,
            existing_shipment_id=body.existing_shipment_id,
            rate_id=body.rate_id,
            reference=body.reference,
            description=body.description,
        )

    def _cancel_item(self, payload: Union[CancelItem, CancelShipmentRequest, Mapping[str, Any]]) -> CancelItem:
        if isinstance(payload, CancelItem):
            return payload
        body = parse_payload(CancelShipmentRequest, payload)
        return CancelItem(tracking_number=body.tracking_number, carrier=body.carrier, reason=body.reason)

    async def book(
        self,
        payload: Union[BookingItem, BookShipmentRequest, Mapping[str, Any]],
        actor: Actor,
    ) -> BookingResult:
        actor.require(Permission.SHIPMENTS_CREATE)
        item = self._booking_item(payload)
        return await self.shipments.book(
            item.request,
            item.carrier,
            actor,
            existing_shipment_id=item.existing_shipment_id,
            rate_id=item.rate_id,
            reference=item.reference,
            description=item.description,
        )

    async def book_many(self, items: Sequence[Any], actor: Actor) -> List[BulkItemResult]:
        """
        Items that fail payload validation are reported in place rather than
        failing the whole batch.
        """
        actor.require(Permission.SHIPMENTS_CREATE)
        check_batch_size(items, self.settings.BULK_BOOKING_LIMIT, "booking")
        return await self._bulk(items, self._booking_item, self.shipments.book_many, actor)

    async def create_draft(
        self,
        payload: Union[DraftShipmentRequest, Mapping[str, Any]],
        actor: Actor,
    ) -> Shipment:
        actor.require(Permission.SHIPMENTS_CREATE)
        body = parse_payload(DraftShipmentRequest, payload)
        return await self.shipments.create_draft(
            body.shipment.to_domain(),
            body.carrier,
            actor,
            reference=body.reference,
            description=body.description,
        )

    async def cancel(
        self,
        payload: Union[CancelItem, CancelShipmentRequest, Mapping[str, Any]],
        actor: Actor,
    ) -> Shipment:
        actor.require(Permission.SHIPMENTS_CANCEL)
        item = self._cancel_item(payload)
        return await self.shipments.cancel(item.tracking_number, item.carrier, actor, reason=item.reason)

    async def cancel_draft(self, shipment_id: str, actor: Actor, reason: Optional[str] = None) -> Shipment:
        actor.require(Permission.SHIPMENTS_CANCEL)
        if not shipment_id:
            raise ShipmentValidationError("shipment_id is required", field="shipment_id")
        return await self.shipments.cancel_draft(shipment_id, actor, reason=reason)

    async def cancel_many(self, items: Sequence[Any], actor: Actor) -> List[BulkItemResult]:
        actor.require(Permission.SHIPMENTS_CANCEL)
        check_batch_size(items, self.settings.BULK_CANCEL_LIMIT, "cancellation")
        return await self._bulk(items, self._cancel_item, self.shipments.cancel_many, actor)

    async def track(self, tracking_number: str, carrier: str, actor: Actor) -> TrackingResult:
        actor.require(Permission.SHIPMENTS_TRACK)
        return await self.shipments.track(tracking_number, carrier, actor)

    async def _bulk(self, items, convert, run, actor: Actor) -> List[BulkItemResult]:
        converted = []
        invalid: Dict[int, ShipmentValidationError] = {}
        for index, raw in enumerate(items):
            try:
                converted.append((index, convert(raw)))
            except ShipmentValidationError as e:
                invalid[index] = e

        results: List[BulkItemResult] = []
        if converted:
            batch = await run([item for _, item in converted], actor)
            for (index, _), outcome in zip(converted, batch):
                outcome.index = index
                results.append(outcome)

        for index, error in invalid.items():
            results.append(BulkItemResult(index=index, success=False, error=error.message, code=error.code))
        return sorted(results, key=lambda r: r.index)
