"""
Tests for the permission-checked ShippingEngine facade and its payload schemas.
"""
from datetime import datetime, timezone

import pytest

from shipping_engine.core.exceptions import PermissionDeniedError, ShipmentValidationError
from shipping_engine.core.permissions import Actor, Role
from shipping_engine.models.rate_request import RateRequestRecord, StoredRateQuote
from shipping_engine.models.shipment import Shipment, ShipmentStatus
from shipping_engine.schemas.shipping import (
    RateQuoteRequest,
    RateRequestResponse,
    ShipmentRequestIn,
    ShipmentResponse,
)
from shipping_engine.services.engine import ShippingEngine, parse_payload, to_shipment_request


@pytest.fixture
def engine(mock_db, registry, test_settings):
    return ShippingEngine(mock_db, registry, settings=test_settings)


class TestPayloads:

    def test_shipment_payload_normalizes_codes(self, shipment_payload):
        request = to_shipment_request(shipment_payload)

        assert request.from_address.state == "CA"
        assert request.from_address.country == "US"
        assert request.service_type == "ground"
        assert request.packages[0].weight == 10.0

    def test_invalid_payload_becomes_validation_error(self, shipment_payload):
        shipment_payload["packages"][0]["weight"] = -1

        with pytest.raises(ShipmentValidationError) as exc_info:
            parse_payload(ShipmentRequestIn, shipment_payload)

        assert exc_info.value.details["field"] == "packages.0.weight"
        assert exc_info.value.details["errors"]

    def test_empty_packages_rejected(self, shipment_payload):
        shipment_payload["packages"] = []

        with pytest.raises(ShipmentValidationError):
            to_shipment_request(shipment_payload)

    def test_services_accept_list_or_mapping(self, shipment_payload):
        flat = RateQuoteRequest(shipment=shipment_payload, services=["03"])
        per_carrier = RateQuoteRequest(shipment=shipment_payload, services={"ups": ["03"]})

        assert flat.services == ["03"]
        assert per_carrier.services == {"ups": ["03"]}

    def test_shipment_response_from_model(self):
        shipment = Shipment(
            id="shp_1", owner_id="u1", carrier="ups", service_type="03",
            status=ShipmentStatus.LABEL_CREATED, package_count=1, total_weight=2.0,
            total_value=0.0, currency="USD",
        )

        response = ShipmentResponse.model_validate(shipment)

        assert response.status == "label_created"
        assert response.carrier == "ups"

    def test_rate_request_response_from_record(self):
        record = RateRequestRecord(
            id="rate_1",
            owner_id="u1",
            resolved_carriers=["ups"],
            errors=["dhl: timeout"],
            created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
            quotes=[StoredRateQuote(
                id="QT-1", carrier="ups", service_code="03", cost=14.1, currency="USD",
                guaranteed_delivery=False, rank=1, savings=0.0, percentage_savings=0.0,
            )],
        )

        response = RateRequestResponse.model_validate(record)

        assert response.errors == ["dhl: timeout"]
        assert response.quotes[0].id == "QT-1"
        assert response.quotes[0].rank == 1


class TestPermissions:

    @pytest.mark.asyncio
    async def test_support_cannot_quote(self, engine, acme, shipment_payload):
        support = Actor(user_id="agent", role=Role.SUPPORT)

        with pytest.raises(PermissionDeniedError):
            await engine.quote_rates(shipment_payload, support)

        assert acme.quote_calls == []

    @pytest.mark.asyncio
    async def test_support_cannot_book(self, engine, acme, shipment_payload):
        support = Actor(user_id="agent", role=Role.SUPPORT)

        with pytest.raises(PermissionDeniedError):
            await engine.book({"shipment": shipment_payload, "carrier": "acme"}, support)

        assert acme.create_calls == []

    def test_support_can_list_carriers(self, engine):
        support = Actor(user_id="agent", role=Role.SUPPORT)
        assert engine.list_carriers(support) == ["acme", "bolt"]

    def test_list_services(self, engine, actor):
        services = engine.list_services(actor, "acme")
        assert [s.code for s in services] == ["ground", "air"]
        assert set(engine.list_services(actor)) == {"acme", "bolt"}


class TestFacade:

    @pytest.mark.asyncio
    async def test_quote_rates_from_request_body(self, engine, acme, actor, shipment_payload):
        body = {"shipment": shipment_payload, "carriers": ["acme"], "services": ["air"]}

        result = await engine.quote_rates(body, actor)

        assert [q.service_code for q in result.quotes] == ["air"]
        assert result.errors == []
        assert acme.quote_calls == ["air"]

    @pytest.mark.asyncio
    async def test_quote_rates_from_bare_shipment(self, engine, actor, shipment_payload):
        result = await engine.quote_rates(shipment_payload, actor, carriers=["acme"])

        assert [q.cost for q in result.quotes] == [20.0, 50.0]

    @pytest.mark.asyncio
    async def test_book_from_payload(self, engine, acme, actor, shipment_payload):
        result = await engine.book({"shipment": shipment_payload, "carrier": "acme", "reference": "PO-9"}, actor)

        assert result.shipment.reference == "PO-9"
        assert acme.create_calls[0].to_address.city == "New York"

    @pytest.mark.asyncio
    async def test_book_many_reports_invalid_items_in_place(self, engine, acme, actor, shipment_payload):
        items = [
            {"shipment": shipment_payload, "carrier": "acme"},
            {"shipment": shipment_payload},  # carrier missing
            {"shipment": shipment_payload, "carrier": "acme"},
        ]

        results = await engine.book_many(items, actor)

        assert [r.index for r in results] == [0, 1, 2]
        assert [r.success for r in results] == [True, False, True]
        assert results[1].code == "VALIDATION_FAILED"
        assert len(acme.create_calls) == 2

    @pytest.mark.asyncio
    async def test_book_many_over_limit(self, engine, acme, actor, shipment_payload):
        items = [{"shipment": shipment_payload, "carrier": "acme"}] * 4

        with pytest.raises(ShipmentValidationError):
            await engine.book_many(items, actor)

        assert acme.create_calls == []

    @pytest.mark.asyncio
    async def test_create_draft(self, engine, actor, shipment_payload):
        shipment_payload["service_type"] = ""

        draft = await engine.create_draft({"shipment": shipment_payload, "carrier": "acme"}, actor)

        assert draft.status == ShipmentStatus.CREATED

    @pytest.mark.asyncio
    async def test_compare_rates(self, engine, actor, shipment_payload):
        results = await engine.compare_rates({"shipments": [shipment_payload], "carriers": ["acme"]}, actor)

        assert results[0].success is True
        assert results[0].result.summary.total_rates == 2

    @pytest.mark.asyncio
    async def test_cancel_payload_validation(self, engine, actor):
        with pytest.raises(ShipmentValidationError):
            await engine.cancel({"tracking_number": "", "carrier": "acme"}, actor)

    @pytest.mark.asyncio
    async def test_cancel_draft(self, engine, mock_db, db_result, acme):
        draft = Shipment(id="shp_draft", owner_id="u1", carrier="acme", status=ShipmentStatus.CREATED)
        mock_db.execute.return_value = db_result(draft)
        support = Actor(user_id="agent", role=Role.SUPPORT)

        result = await engine.cancel_draft("shp_draft", support, reason="Duplicate")

        assert result.status == ShipmentStatus.CANCELLED
        assert acme.cancel_calls == []

        with pytest.raises(ShipmentValidationError):
            await engine.cancel_draft("", support)
