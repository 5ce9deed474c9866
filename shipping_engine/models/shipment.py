"""
Shipment model

Tracks a shipment from draft through label purchase to delivery or
cancellation. Status only ever moves forward; see ALLOWED_TRANSITIONS.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, DateTime,
    Float, Text, JSON, Index, Enum as SQLEnum
)

from shipping_engine.core.database import Base
from shipping_engine.core.exceptions import ShipmentStateError


class ShipmentStatus(str, enum.Enum):
    """Shipment lifecycle status"""
    CREATED = "created"  # Draft, no carrier label yet
    LABEL_CREATED = "label_created"  # Label purchased, carrier + tracking number fixed
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    RETURNED = "returned"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ShipmentStatus.DELIVERED,
    ShipmentStatus.CANCELLED,
    ShipmentStatus.RETURNED,
})

ALLOWED_TRANSITIONS = {
    ShipmentStatus.CREATED: {
        ShipmentStatus.LABEL_CREATED,
        ShipmentStatus.CANCELLED,
    },
    ShipmentStatus.LABEL_CREATED: {
        ShipmentStatus.PICKED_UP,
        ShipmentStatus.IN_TRANSIT,
        ShipmentStatus.DELIVERED,
        ShipmentStatus.CANCELLED,
    },
    ShipmentStatus.PICKED_UP: {
        ShipmentStatus.IN_TRANSIT,
        ShipmentStatus.DELIVERED,
        ShipmentStatus.RETURNED,
        ShipmentStatus.CANCELLED,
    },
    ShipmentStatus.IN_TRANSIT: {
        ShipmentStatus.DELIVERED,
        ShipmentStatus.RETURNED,
        ShipmentStatus.CANCELLED,
    },
    ShipmentStatus.DELIVERED: set(),
    ShipmentStatus.RETURNED: set(),
    ShipmentStatus.CANCELLED: set(),
}


def can_transition(current: ShipmentStatus, new: ShipmentStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def generate_shipment_id() -> str:
    return f"shp_{uuid.uuid4().hex}"


class Shipment(Base):
    """
    The internal record of a booked package movement.

    Addresses and packages are stored as JSON snapshots of what was sent to
    the carrier. Rows are always loaded with SELECT ... FOR UPDATE before a
    status change so concurrent cancel/track calls are serialized.
    """
    __tablename__ = "shipments"
    __table_args__ = (
        Index("ix_shipments_owner_id", "owner_id"),
        Index("ix_shipments_tracking_number", "tracking_number"),
        Index("ix_shipments_status", "status"),
    )

    id = Column(String(50), primary_key=True, default=generate_shipment_id)
    owner_id = Column(String(64), nullable=False)

    # Carrier
    carrier = Column(String(50), nullable=True)
    service_type = Column(String(50), nullable=False)

    # Tracking
    tracking_number = Column(String(100), unique=True, nullable=True)

    # Status
    status = Column(
        SQLEnum(ShipmentStatus, values_callable=lambda e: [m.value for m in e]),
        default=ShipmentStatus.CREATED,
        nullable=False,
    )
    status_detail = Column(String(255), nullable=True)

    # Addresses / packages (snapshots)
    from_address = Column(JSON, nullable=False)
    to_address = Column(JSON, nullable=False)
    packages = Column(JSON, nullable=False, default=list)
    package_count = Column(Integer, default=1)
    total_weight = Column(Float, nullable=False, default=0.0)  # LBS
    total_value = Column(Float, nullable=False, default=0.0)

    # Costs
    shipping_cost = Column(Float, nullable=True)
    currency = Column(String(3), default="USD")

    # Label
    label_url = Column(Text, nullable=True)
    label_format = Column(String(10), nullable=True)
    label_created_at = Column(DateTime(timezone=True), nullable=True)

    reference = Column(String(100), nullable=True)
    description = Column(String(255), nullable=True)

    # RateQuote this booking was priced from, if any
    rate_id = Column(String(50), nullable=True)

    # Cancellation / delivery
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    last_tracking_update = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_terminal(self) -> bool:
        return ShipmentStatus(self.status) in TERMINAL_STATUSES

    def transition_to(self, new_status: ShipmentStatus, detail: Optional[str] = None) -> None:
        """Move to new_status or raise ShipmentStateError."""
        current = ShipmentStatus(self.status)
        if not can_transition(current, new_status):
            raise ShipmentStateError(
                message=f"Cannot move shipment {self.id} from {current.value} to {new_status.value}",
                current_status=current.value,
                requested_status=new_status.value,
            )
        now = datetime.now(timezone.utc)
        self.status = new_status
        if detail is not None:
            self.status_detail = detail
        if new_status == ShipmentStatus.DELIVERED:
            self.delivered_at = now
        elif new_status == ShipmentStatus.CANCELLED:
            self.cancelled_at = now
        self.updated_at = now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "carrier": self.carrier,
            "service_type": self.service_type,
            "tracking_number": self.tracking_number,
            "status": ShipmentStatus(self.status).value if self.status else None,
            "status_detail": self.status_detail,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "packages": self.packages,
            "package_count": self.package_count,
            "total_weight": self.total_weight,
            "total_value": self.total_value,
            "shipping_cost": self.shipping_cost,
            "currency": self.currency,
            "label_url": self.label_url,
            "label_format": self.label_format,
            "reference": self.reference,
            "description": self.description,
            "rate_id": self.rate_id,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Shipment(id={self.id}, carrier={self.carrier}, tracking={self.tracking_number}, status={self.status})>"
