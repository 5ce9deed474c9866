"""
RateRequestRecord and StoredRateQuote models

One RateRequestRecord per rate-shopping call, written once by the rate
aggregator together with its ranked quotes and per-carrier errors. Nothing
updates these rows afterwards.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    Float, JSON, ForeignKey, Index
)
from sqlalchemy.orm import relationship

from shipping_engine.core.database import Base


def generate_rate_request_id() -> str:
    return f"rate_{uuid.uuid4().hex}"


def generate_quote_id() -> str:
    return f"QT-{uuid.uuid4().hex[:16].upper()}"


class RateRequestRecord(Base):
    """Immutable snapshot of one rate-shopping query and its results."""
    __tablename__ = "rate_requests"
    __table_args__ = (
        Index("ix_rate_requests_owner_created", "owner_id", "created_at"),
    )

    id = Column(String(50), primary_key=True, default=generate_rate_request_id)
    owner_id = Column(String(64), nullable=False)

    # Input request
    from_address = Column(JSON, nullable=False)
    to_address = Column(JSON, nullable=False)
    packages = Column(JSON, nullable=False)
    options = Column(JSON, default=dict)

    # What was asked for vs. what was actually queried
    requested_carriers = Column(JSON, default=list)
    resolved_carriers = Column(JSON, default=list)
    requested_services = Column(JSON, default=list)

    errors = Column(JSON, default=list)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    quotes = relationship(
        "StoredRateQuote",
        back_populates="rate_request",
        order_by="StoredRateQuote.rank",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "packages": self.packages,
            "options": self.options,
            "requested_carriers": self.requested_carriers,
            "resolved_carriers": self.resolved_carriers,
            "requested_services": self.requested_services,
            "errors": self.errors or [],
            "quotes": [q.to_dict() for q in self.quotes],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<RateRequestRecord(id={self.id}, quotes={len(self.quotes)}, errors={len(self.errors or [])})>"


class StoredRateQuote(Base):
    """A ranked quote belonging to one RateRequestRecord."""
    __tablename__ = "rate_quotes"
    __table_args__ = (
        Index("ix_rate_quotes_rate_request_id", "rate_request_id"),
    )

    id = Column(String(50), primary_key=True, default=generate_quote_id)
    rate_request_id = Column(String(50), ForeignKey("rate_requests.id"), nullable=False)

    carrier = Column(String(50), nullable=False)
    service_code = Column(String(50), nullable=False)
    service_name = Column(String(100), nullable=True)
    requested_service = Column(String(50), nullable=True)

    cost = Column(Float, nullable=False)
    currency = Column(String(3), default="USD")
    transit_time = Column(String(50), nullable=True)
    delivery_date = Column(DateTime(timezone=True), nullable=True)
    guaranteed_delivery = Column(Boolean, default=False)

    rank = Column(Integer, nullable=False)
    savings = Column(Float, default=0.0)
    percentage_savings = Column(Float, default=0.0)

    rate_request = relationship("RateRequestRecord", back_populates="quotes")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "carrier": self.carrier,
            "service_code": self.service_code,
            "service_name": self.service_name,
            "requested_service": self.requested_service,
            "cost": self.cost,
            "currency": self.currency,
            "transit_time": self.transit_time,
            "delivery_date": self.delivery_date.isoformat() if self.delivery_date else None,
            "guaranteed_delivery": bool(self.guaranteed_delivery),
            "rank": self.rank,
            "savings": self.savings,
            "percentage_savings": self.percentage_savings,
        }

    def __repr__(self):
        return f"<StoredRateQuote(id={self.id}, carrier={self.carrier}, service={self.service_code}, cost={self.cost}, rank={self.rank})>"
