"""
Pydantic Schemas for the Shipping Engine

Input payloads for the public surface (rate shopping, booking, cancellation,
tracking) and response shapes for persisted records.

- All input validated with schema-first approach
- to_domain() converts a payload into the carrier-agnostic dataclasses
"""
from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from shipping_engine.modules.shipping.carriers.base import (
    Address,
    PackageSpec,
    ShipmentOptions,
    ShipmentRequest,
)


# ==================== Shipment input ====================

class AddressIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    company: Optional[str] = Field(None, max_length=100)
    street1: str = Field(..., min_length=1, max_length=100)
    street2: Optional[str] = Field(None, max_length=100)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=2, max_length=50)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(default="US", min_length=2, max_length=2, description="ISO 3166-1 alpha-2")
    phone: Optional[str] = Field(None, max_length=30)
    email: Optional[str] = Field(None, max_length=255)

    @field_validator("country", "state")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.strip().upper()

    def to_domain(self) -> Address:
        return Address(**self.model_dump())


class PackageIn(BaseModel):
    """Weight in pounds, dimensions in inches."""
    weight: float = Field(..., gt=0, le=150)
    length: float = Field(..., gt=0, le=108)
    width: float = Field(..., gt=0, le=108)
    height: float = Field(..., gt=0, le=108)
    value: Optional[float] = Field(None, ge=0, description="Declared value")
    description: Optional[str] = Field(None, max_length=255)

    def to_domain(self) -> PackageSpec:
        return PackageSpec(**self.model_dump())


class ShipmentOptionsIn(BaseModel):
    signature_required: bool = False
    saturday_delivery: bool = False
    insurance: Optional[float] = Field(None, ge=0)
    cod_amount: Optional[float] = Field(None, ge=0)
    dry_ice: bool = False
    hazmat: bool = False

    def to_domain(self) -> ShipmentOptions:
        return ShipmentOptions(**self.model_dump())


class ShipmentRequestIn(BaseModel):
    from_address: AddressIn
    to_address: AddressIn
    packages: List[PackageIn] = Field(..., min_length=1, max_length=50)
    service_type: str = Field(default="", max_length=50)
    options: Optional[ShipmentOptionsIn] = None

    def to_domain(self) -> ShipmentRequest:
        return ShipmentRequest(
            from_address=self.from_address.to_domain(),
            to_address=self.to_address.to_domain(),
            packages=[p.to_domain() for p in self.packages],
            service_type=self.service_type.strip(),
            options=self.options.to_domain() if self.options else None,
        )


# ==================== Operation payloads ====================

class RateQuoteRequest(BaseModel):
    shipment: ShipmentRequestIn
    carriers: Optional[List[str]] = Field(None, description="Carrier names; all registered when omitted")
    services: Optional[Union[List[str], Dict[str, List[str]]]] = Field(
        None, description="Service codes for every carrier, or per carrier"
    )


class CompareRatesRequest(BaseModel):
    shipments: List[ShipmentRequestIn] = Field(..., min_length=1)
    carriers: Optional[List[str]] = None
    services: Optional[Union[List[str], Dict[str, List[str]]]] = None


class BookShipmentRequest(BaseModel):
    shipment: ShipmentRequestIn
    carrier: str = Field(..., min_length=1, max_length=50)
    existing_shipment_id: Optional[str] = Field(None, max_length=50)
    rate_id: Optional[str] = Field(None, max_length=50, description="Quote id from a prior rate request")
    reference: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=255)


class DraftShipmentRequest(BaseModel):
    shipment: ShipmentRequestIn
    carrier: str = Field(..., min_length=1, max_length=50)
    reference: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=255)


class CancelShipmentRequest(BaseModel):
    tracking_number: str = Field(..., min_length=1, max_length=100)
    carrier: str = Field(..., min_length=1, max_length=50)
    reason: Optional[str] = Field(None, max_length=255)


# ==================== Responses ====================

class RateQuoteResponse(BaseModel):
    id: str
    carrier: str
    service_code: str
    service_name: Optional[str] = None
    requested_service: Optional[str] = None
    cost: float
    currency: str = "USD"
    transit_time: Optional[str] = None
    delivery_date: Optional[datetime] = None
    guaranteed_delivery: bool = False
    rank: int
    savings: float = 0.0
    percentage_savings: float = 0.0

    model_config = {"from_attributes": True}


class RateRequestResponse(BaseModel):
    id: str
    owner_id: str
    resolved_carriers: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    quotes: List[RateQuoteResponse] = Field(default_factory=list)
    created_at: datetime

    model_config = {"from_attributes": True}


class ShipmentResponse(BaseModel):
    id: str
    owner_id: str
    carrier: Optional[str] = None
    service_type: str
    tracking_number: Optional[str] = None
    status: str
    status_detail: Optional[str] = None
    package_count: int = 1
    total_weight: float = 0.0
    total_value: float = 0.0
    shipping_cost: Optional[float] = None
    currency: str = "USD"
    label_url: Optional[str] = None
    label_format: Optional[str] = None
    reference: Optional[str] = None
    rate_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return getattr(v, "value", v)
