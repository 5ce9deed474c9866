"""
Carrier activity log

Append-only record of every carrier interaction the engine performs
(rate requests, label purchases, cancellations, tracking refreshes).
"""
from datetime import datetime, timezone

from sqlalchemy import Column, BigInteger, String, DateTime, JSON, Index

from shipping_engine.core.database import Base


class CarrierLog(Base):
    __tablename__ = "carrier_logs"
    __table_args__ = (
        Index("ix_carrier_logs_carrier_ts", "carrier", "timestamp"),
        Index("ix_carrier_logs_tracking_number", "tracking_number"),
    )

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    carrier = Column(String(50), nullable=False)
    action = Column(String(50), nullable=False)  # e.g. 'rate_request', 'shipment_created'
    tracking_number = Column(String(100), nullable=True)
    details = Column(JSON, default=dict)
    timestamp = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<CarrierLog(carrier={self.carrier}, action={self.action}, tracking={self.tracking_number})>"
