"""
Tests for the carrier-agnostic types and shared adapter helpers.
"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from shipping_engine.core.exceptions import ShipmentValidationError
from shipping_engine.models.shipment import ShipmentStatus
from shipping_engine.modules.shipping.carriers.base import (
    PackageSpec,
    ShipmentRequest,
    TrackingEvent,
    default_service_codes,
    gather_service_quotes,
    map_status_from_table,
    parse_iso_datetime,
    sort_chronologically,
    validate_shipment_request,
)


class TestValidateShipmentRequest:

    def test_valid_request_passes(self, shipment_request):
        validate_shipment_request(shipment_request.for_service("ground"))

    def test_service_optional_when_not_required(self, shipment_request):
        validate_shipment_request(shipment_request, require_service=False)

    def test_missing_service_rejected(self, shipment_request):
        with pytest.raises(ShipmentValidationError) as exc_info:
            validate_shipment_request(shipment_request)
        assert exc_info.value.details["field"] == "service_type"

    def test_blank_address_field_rejected(self, shipment_request):
        request = replace(shipment_request, to_address=replace(shipment_request.to_address, city="  "))
        with pytest.raises(ShipmentValidationError) as exc_info:
            validate_shipment_request(request, require_service=False)
        assert exc_info.value.details["field"] == "to.city"

    def test_short_state_rejected(self, shipment_request):
        request = replace(shipment_request, from_address=replace(shipment_request.from_address, state="C"))
        with pytest.raises(ShipmentValidationError):
            validate_shipment_request(request, require_service=False)

    def test_no_packages_rejected(self, shipment_request):
        request = replace(shipment_request, packages=[])
        with pytest.raises(ShipmentValidationError) as exc_info:
            validate_shipment_request(request, require_service=False)
        assert exc_info.value.code == "VALIDATION_FAILED"

    @pytest.mark.parametrize("attr", ["weight", "length", "width", "height"])
    def test_non_positive_dimension_rejected(self, shipment_request, attr):
        bad = replace(shipment_request.packages[0], **{attr: 0})
        request = replace(shipment_request, packages=[bad])
        with pytest.raises(ShipmentValidationError) as exc_info:
            validate_shipment_request(request, require_service=False)
        assert exc_info.value.details["field"] == f"packages[0].{attr}"

    def test_negative_declared_value_rejected(self, shipment_request):
        bad = replace(shipment_request.packages[0], value=-1.0)
        with pytest.raises(ShipmentValidationError):
            validate_shipment_request(replace(shipment_request, packages=[bad]), require_service=False)


class TestShipmentRequest:

    def test_for_service_keeps_everything_else(self, shipment_request):
        ground = shipment_request.for_service("ground")
        assert ground.service_type == "ground"
        assert ground.packages is shipment_request.packages
        assert shipment_request.service_type == ""

    def test_totals(self, origin, destination):
        request = ShipmentRequest(
            from_address=origin,
            to_address=destination,
            packages=[
                PackageSpec(weight=2.5, length=1, width=1, height=1, value=10.0),
                PackageSpec(weight=4.0, length=1, width=1, height=1),
            ],
        )
        assert request.total_weight == 6.5
        assert request.total_value == 10.0


class TestGatherServiceQuotes:

    @pytest.mark.asyncio
    async def test_failed_service_does_not_block_others(self, fake_carrier, shipment_request):
        carrier = fake_carrier("acme", prices={"ground": 20.0, "air": 50.0}, failures={"overnight": "boom"})

        quotes = await carrier.quote_rates(shipment_request, ["air", "overnight", "ground"])

        assert [(q.service_code, q.cost) for q in quotes] == [("air", 50.0), ("ground", 20.0)]

    @pytest.mark.asyncio
    async def test_duplicate_codes_queried_once(self, fake_carrier, shipment_request):
        carrier = fake_carrier("acme", prices={"ground": 20.0})

        await gather_service_quotes(carrier, shipment_request, ["ground", "ground"])

        assert carrier.quote_calls == ["ground"]

    @pytest.mark.asyncio
    async def test_request_service_used_when_no_codes(self, fake_carrier, shipment_request):
        carrier = fake_carrier("acme", prices={"ground": 20.0, "air": 50.0})

        await gather_service_quotes(carrier, shipment_request.for_service("air"))

        assert carrier.quote_calls == ["air"]

    @pytest.mark.asyncio
    async def test_default_set_capped(self, fake_carrier, shipment_request):
        prices = {f"svc{i}": float(i) for i in range(8)}
        carrier = fake_carrier("acme", prices=prices)

        await gather_service_quotes(carrier, shipment_request)

        assert sorted(carrier.quote_calls) == sorted(default_service_codes(carrier))
        assert len(carrier.quote_calls) == 5


class TestStatusMapping:
    TABLE = {
        "D": ShipmentStatus.DELIVERED,
        "IN TRANSIT": ShipmentStatus.IN_TRANSIT,
    }

    def test_exact_match(self):
        assert map_status_from_table("Test", self.TABLE, "d") == ShipmentStatus.DELIVERED

    def test_substring_match_for_long_keys(self):
        assert map_status_from_table("Test", self.TABLE, "Package in transit to hub") == ShipmentStatus.IN_TRANSIT

    def test_short_keys_need_exact_match(self):
        assert map_status_from_table("Test", self.TABLE, "DELAYED") is None

    def test_empty_status(self):
        assert map_status_from_table("Test", self.TABLE, "") is None


class TestTrackingHelpers:

    def test_parse_iso_datetime_handles_z_suffix(self):
        parsed = parse_iso_datetime("2024-03-01T10:00:00Z")
        assert parsed == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_parse_iso_datetime_bad_value(self):
        assert parse_iso_datetime("not a date") is None
        assert parse_iso_datetime(None) is None

    def test_sort_newest_first_feed(self):
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        feed = [
            TrackingEvent("T1", "delivered", "Delivered", timestamp=now + timedelta(hours=2)),
            TrackingEvent("T1", "transit", "In transit", timestamp=now + timedelta(hours=1)),
            TrackingEvent("T1", "pickup", "Picked up", timestamp=now),
        ]

        ordered = sort_chronologically(feed, newest_first=True)

        assert [e.status for e in ordered] == ["pickup", "transit", "delivered"]

    def test_events_without_timestamps_keep_feed_order(self):
        feed = [
            TrackingEvent("T1", "b", "b"),
            TrackingEvent("T1", "a", "a", timestamp=datetime(2024, 1, 1)),
        ]
        assert [e.status for e in sort_chronologically(feed)] == ["b", "a"]
