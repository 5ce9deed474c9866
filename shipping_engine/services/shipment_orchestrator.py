"""
Shipment Orchestrator

Books, cancels and tracks shipments through a chosen carrier adapter while
keeping the Shipment row consistent with what the carrier confirmed:
- Nothing is persisted unless the carrier call succeeded
- Shipment rows are loaded FOR UPDATE so concurrent cancel/track/book on one
  shipment serialize in the database
- Audit and notification are best-effort and never undo a booking

The caller owns the transaction; this service only adds and flushes.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_engine.core.config import Settings, settings as default_settings
from shipping_engine.core.exceptions import (
    CarrierBookingError,
    CarrierCallError,
    CarrierCancelError,
    NotCancellableError,
    RateMismatchError,
    ShipmentNotFoundError,
    ShipmentStateError,
    ShipmentValidationError,
)
from shipping_engine.core.permissions import Actor
from shipping_engine.models.rate_request import RateRequestRecord, StoredRateQuote
from shipping_engine.models.shipment import (
    Shipment,
    ShipmentStatus,
    can_transition,
    generate_shipment_id,
)
from shipping_engine.modules.shipping.carriers.base import (
    LabelResult,
    ShipmentRequest,
    TrackingEvent,
    validate_shipment_request,
)
from shipping_engine.modules.shipping.carriers.registry import CarrierRegistry
from shipping_engine.services.audit import AuditSink, record_carrier_activity
from shipping_engine.services.common import BulkItemResult, check_batch_size, owned, run_each
from shipping_engine.services.notifications import NotificationSender, notify_shipment_event

logger = logging.getLogger(__name__)


@dataclass
class BookingResult:
    shipment: Shipment
    label: LabelResult
    estimated_cost: float
    savings: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shipment": self.shipment.to_dict(),
            "label": self.label.to_dict(),
            "estimated_cost": self.estimated_cost,
            "savings": self.savings,
        }


@dataclass
class TrackingResult:
    shipment: Shipment
    events: List[TrackingEvent]
    tracking_url: str
    status_changed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shipment": self.shipment.to_dict(),
            "events": [e.to_dict() for e in self.events],
            "tracking_url": self.tracking_url,
            "status_changed": self.status_changed,
        }


@dataclass
class BookingItem:
    """One element of a bulk booking."""
    request: ShipmentRequest
    carrier: str
    existing_shipment_id: Optional[str] = None
    rate_id: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None


@dataclass
class CancelItem:
    """One element of a bulk cancellation."""
    tracking_number: str
    carrier: str
    reason: Optional[str] = None


@dataclass
class _VerifiedRate:
    id: str
    cost: float
    service_code: str


class ShipmentOrchestrator:
    """Shipment lifecycle against the carriers in an injected CarrierRegistry."""

    def __init__(
        self,
        db: AsyncSession,
        registry: CarrierRegistry,
        audit: Optional[AuditSink] = None,
        notifier: Optional[NotificationSender] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.registry = registry
        self.audit = audit
        self.notifier = notifier
        self.settings = settings or default_settings

    # ==================== Loading ====================

    async def _load_shipment(self, actor: Actor, *criteria) -> Optional[Shipment]:
        stmt = owned(select(Shipment).where(*criteria), Shipment.owner_id, actor).with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _verify_rate(self, rate_id: str, carrier: str, service_type: str, actor: Actor) -> _VerifiedRate:
        stmt = owned(
            select(StoredRateQuote)
            .join(RateRequestRecord, StoredRateQuote.rate_request_id == RateRequestRecord.id)
            .where(StoredRateQuote.id == rate_id),
            RateRequestRecord.owner_id,
            actor,
        )
        result = await self.db.execute(stmt)
        quote = result.scalar_one_or_none()

        if quote is None:
            raise RateMismatchError(
                f"Rate quote not found: {rate_id}",
                rate_id=rate_id,
                code="RATE_NOT_FOUND",
            )

        services = {quote.service_code, quote.requested_service} - {None}
        if quote.carrier.lower() != carrier or (service_type and service_type not in services):
            raise RateMismatchError(
                f"Rate {rate_id} was quoted for {quote.carrier} {quote.service_code}, "
                f"not {carrier} {service_type}",
                rate_id=rate_id,
                expected={"carrier": quote.carrier, "service": quote.service_code},
                actual={"carrier": carrier, "service": service_type},
            )

        return _VerifiedRate(id=quote.id, cost=quote.cost, service_code=quote.service_code)

    # ==================== Booking ====================

    async def book(
        self,
        request: ShipmentRequest,
        carrier_name: str,
        actor: Actor,
        existing_shipment_id: Optional[str] = None,
        rate_id: Optional[str] = None,
        reference: Optional[str] = None,
        description: Optional[str] = None,
    ) -> BookingResult:
        """
        Purchase a label and record it.

        Raises:
            CarrierUnavailableError: carrier not registered
            RateMismatchError: rate_id unknown or quoted for another carrier/service
            ShipmentNotFoundError / ShipmentStateError: existing shipment missing or not a draft
            ShipmentValidationError: malformed request
            CarrierBookingError: carrier call failed; nothing was persisted
        """
        carrier = carrier_name.strip().lower()
        adapter = self.registry.require(carrier)

        rate: Optional[_VerifiedRate] = None
        if rate_id:
            rate = await self._verify_rate(rate_id, carrier, request.service_type, actor)
            if not request.service_type:
                request = request.for_service(rate.service_code)

        validate_shipment_request(request)

        shipment: Optional[Shipment] = None
        if existing_shipment_id:
            shipment = await self._load_shipment(actor, Shipment.id == existing_shipment_id)
            if shipment is None:
                raise ShipmentNotFoundError(
                    f"Shipment not found: {existing_shipment_id}",
                    details={"shipment_id": existing_shipment_id},
                )
            if ShipmentStatus(shipment.status) != ShipmentStatus.CREATED:
                raise ShipmentStateError(
                    f"Shipment {shipment.id} is {ShipmentStatus(shipment.status).value}; only drafts can be booked",
                    current_status=ShipmentStatus(shipment.status).value,
                    requested_status=ShipmentStatus.LABEL_CREATED.value,
                )

        try:
            label = await adapter.create_shipment(request)
        except CarrierCallError as e:
            logger.error(f"Booking with {carrier} failed: {e.message}")
            raise CarrierBookingError(
                f"Failed to create shipment: {e.message}",
                carrier=carrier,
                details={"carrier_code": e.code, **e.details},
            )

        if shipment is None:
            shipment = Shipment(
                id=generate_shipment_id(),
                owner_id=actor.user_id,
                status=ShipmentStatus.CREATED,
            )
            self.db.add(shipment)

        self._apply_request(shipment, request, carrier, reference, description)
        shipment.tracking_number = label.tracking_number
        shipment.shipping_cost = label.cost
        shipment.currency = label.currency
        shipment.label_url = label.label_url
        shipment.label_format = label.label_format
        shipment.label_created_at = datetime.now(timezone.utc)
        shipment.rate_id = rate.id if rate else None
        shipment.transition_to(ShipmentStatus.LABEL_CREATED, detail="Label created")

        await self.db.flush()

        logger.info(f"Shipment created: {shipment.id} carrier: {carrier} tracking: {label.tracking_number}")

        await self._audit(carrier, "shipment_created", label.tracking_number, {
            "shipment_id": shipment.id,
            "service_type": request.service_type,
            "cost": label.cost,
            "rate_id": shipment.rate_id,
        })
        await self._notify(shipment, "created")

        if rate:
            estimated_cost = rate.cost
            savings = abs(rate.cost - label.cost)
        else:
            estimated_cost = label.cost
            savings = 0.0

        return BookingResult(shipment=shipment, label=label, estimated_cost=estimated_cost, savings=savings)

    async def create_draft(
        self,
        request: ShipmentRequest,
        carrier_name: str,
        actor: Actor,
        reference: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Shipment:
        """Persist a `created` shipment without calling the carrier."""
        carrier = carrier_name.strip().lower()
        self.registry.require(carrier)
        validate_shipment_request(request, require_service=False)

        shipment = Shipment(
            id=generate_shipment_id(),
            owner_id=actor.user_id,
            status=ShipmentStatus.CREATED,
        )
        self._apply_request(shipment, request, carrier, reference, description)
        self.db.add(shipment)
        await self.db.flush()

        logger.info(f"Draft shipment created: {shipment.id} carrier: {carrier}")
        return shipment

    def _apply_request(
        self,
        shipment: Shipment,
        request: ShipmentRequest,
        carrier: str,
        reference: Optional[str],
        description: Optional[str],
    ) -> None:
        shipment.carrier = carrier
        shipment.service_type = request.service_type or ""
        shipment.from_address = request.from_address.to_dict()
        shipment.to_address = request.to_address.to_dict()
        shipment.packages = [p.to_dict() for p in request.packages]
        shipment.package_count = len(request.packages)
        shipment.total_weight = request.total_weight
        shipment.total_value = request.total_value
        if reference is not None:
            shipment.reference = reference
        if description is not None:
            shipment.description = description

    # ==================== Cancellation ====================

    async def cancel(
        self,
        tracking_number: str,
        carrier_name: str,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Shipment:
        """
        Void a label with the carrier, then mark the shipment cancelled.

        The local status only changes after the carrier confirms.
        """
        shipment = await self._load_shipment(actor, Shipment.tracking_number == tracking_number)
        if shipment is None:
            raise ShipmentNotFoundError(
                f"Shipment not found: {tracking_number}",
                details={"tracking_number": tracking_number},
            )

        if shipment.is_terminal:
            raise NotCancellableError(
                f"Shipment {shipment.id} is already {ShipmentStatus(shipment.status).value}",
                details={"shipment_id": shipment.id, "status": ShipmentStatus(shipment.status).value},
            )

        carrier = carrier_name.strip().lower()
        if shipment.carrier and carrier != shipment.carrier:
            raise ShipmentValidationError(
                f"Shipment {shipment.id} was booked with {shipment.carrier}, not {carrier}",
                field="carrier",
            )

        adapter = self.registry.require(carrier)

        if not await adapter.cancel_shipment(tracking_number):
            raise CarrierCancelError(
                f"{adapter.display_name} did not confirm cancellation of {tracking_number}",
                carrier=carrier,
                details={"tracking_number": tracking_number},
            )

        shipment.transition_to(ShipmentStatus.CANCELLED, detail=reason or "Cancelled")
        shipment.cancellation_reason = reason
        await self.db.flush()

        logger.info(f"Shipment cancelled: {shipment.id} tracking: {tracking_number}")

        await self._audit(carrier, "shipment_cancelled", tracking_number, {
            "shipment_id": shipment.id,
            "reason": reason,
        })
        await self._notify(shipment, "cancelled")
        return shipment

    async def cancel_draft(self, shipment_id: str, actor: Actor, reason: Optional[str] = None) -> Shipment:
        """Cancel a `created` shipment. No label exists, so the carrier is not called."""
        shipment = await self._load_shipment(actor, Shipment.id == shipment_id)
        if shipment is None:
            raise ShipmentNotFoundError(
                f"Shipment not found: {shipment_id}",
                details={"shipment_id": shipment_id},
            )

        status = ShipmentStatus(shipment.status)
        if status != ShipmentStatus.CREATED:
            raise NotCancellableError(
                f"Shipment {shipment.id} is {status.value}; only drafts can be cancelled without a tracking number",
                details={"shipment_id": shipment.id, "status": status.value},
            )

        shipment.transition_to(ShipmentStatus.CANCELLED, detail=reason or "Draft cancelled")
        shipment.cancellation_reason = reason
        await self.db.flush()

        logger.info(f"Draft shipment cancelled: {shipment.id}")
        await self._notify(shipment, "cancelled")
        return shipment

    # ==================== Tracking ====================

    async def track(self, tracking_number: str, carrier_name: str, actor: Actor) -> TrackingResult:
        """
        Fetch carrier events and move the shipment status forward.

        Only the newest event with a recognised status is considered; a status
        that would move the shipment backwards is ignored.
        """
        shipment = await self._load_shipment(actor, Shipment.tracking_number == tracking_number)
        if shipment is None:
            raise ShipmentNotFoundError(
                f"Shipment not found: {tracking_number}",
                details={"tracking_number": tracking_number},
            )

        carrier = carrier_name.strip().lower()
        if shipment.carrier and carrier != shipment.carrier:
            raise ShipmentValidationError(
                f"Shipment {shipment.id} was booked with {shipment.carrier}, not {carrier}",
                field="carrier",
            )
        adapter = self.registry.require(carrier)

        events = await adapter.track_shipment(tracking_number)

        status_changed = False
        latest = next((e for e in reversed(events) if e.normalized_status is not None), None)
        if latest is not None:
            current = ShipmentStatus(shipment.status)
            new_status = latest.normalized_status
            if new_status != current and can_transition(current, new_status):
                shipment.transition_to(new_status, detail=latest.description)
                status_changed = True
            elif new_status != current:
                logger.debug(
                    f"Ignoring {carrier} status {new_status.value} for shipment {shipment.id} "
                    f"(currently {current.value})"
                )

        shipment.last_tracking_update = datetime.now(timezone.utc)
        await self.db.flush()

        if status_changed:
            logger.info(f"Shipment {shipment.id} status -> {ShipmentStatus(shipment.status).value}")
            await self._audit(carrier, "status_updated", tracking_number, {
                "shipment_id": shipment.id,
                "status": ShipmentStatus(shipment.status).value,
            })
            await self._notify(shipment, "status_changed")

        return TrackingResult(
            shipment=shipment,
            events=events,
            tracking_url=adapter.get_tracking_url(tracking_number),
            status_changed=status_changed,
        )

    # ==================== Bulk ====================

    async def book_many(self, items: Sequence[BookingItem], actor: Actor) -> List[BulkItemResult]:
        """Book each item independently. Items booked before a failure stay booked."""
        check_batch_size(items, self.settings.BULK_BOOKING_LIMIT, "booking")

        async def _one(item: BookingItem) -> BookingResult:
            return await self.book(
                item.request,
                item.carrier,
                actor,
                existing_shipment_id=item.existing_shipment_id,
                rate_id=item.rate_id,
                reference=item.reference,
                description=item.description,
            )

        return await run_each(items, _one, "booking")

    async def cancel_many(self, items: Sequence[CancelItem], actor: Actor) -> List[BulkItemResult]:
        check_batch_size(items, self.settings.BULK_CANCEL_LIMIT, "cancellation")

        async def _one(item: CancelItem) -> Shipment:
            return await self.cancel(item.tracking_number, item.carrier, actor, reason=item.reason)

        return await run_each(items, _one, "cancellation")

    # ==================== Best-effort side effects ====================

    async def _audit(self, carrier: str, action: str, tracking_number: Optional[str], details: Dict[str, Any]) -> None:
        if self.audit is not None:
            await record_carrier_activity(self.audit, carrier, action, tracking_number=tracking_number, details=details)

    async def _notify(self, shipment: Shipment, event_type: str) -> None:
        if self.notifier is None:
            return
        sent = await notify_shipment_event(
            self.notifier,
            shipment.id,
            event_type,
            {"carrier": shipment.carrier, "tracking_number": shipment.tracking_number},
        )
        if not sent:
            logger.warning(f"Notification '{event_type}' not delivered for shipment {shipment.id}")
