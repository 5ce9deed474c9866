"""
Tests for multi-carrier rate shopping.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from shipping_engine.core.exceptions import RateRequestNotFoundError, ShipmentValidationError
from shipping_engine.models.rate_request import RateRequestRecord
from shipping_engine.modules.shipping.carriers.base import RateQuote
from shipping_engine.modules.shipping.carriers.registry import CarrierRegistry
from shipping_engine.services.rate_aggregator import (
    RateAggregator,
    _QueryOutcome,
    collapse_errors,
    rank_quotes,
    summarize,
)


def quote(carrier, service, cost):
    return RateQuote(carrier=carrier, service_code=service, cost=cost)


class TestRankQuotes:

    def test_dense_ranks_and_savings(self):
        ranked = rank_quotes([quote("b", "x", 30.0), quote("a", "y", 20.0), quote("c", "z", 25.0)])

        assert [q.cost for q in ranked] == [20.0, 25.0, 30.0]
        assert [q.rank for q in ranked] == [1, 2, 3]
        assert [q.savings for q in ranked] == [0.0, 5.0, 10.0]
        assert ranked[2].percentage_savings == pytest.approx(50.0)

    def test_ties_keep_input_order(self):
        first = quote("a", "ground", 10.0)
        second = quote("b", "ground", 10.0)

        ranked = rank_quotes([first, second])

        assert ranked == [first, second]
        assert [q.rank for q in ranked] == [1, 2]
        assert second.savings == 0.0

    def test_free_cheapest_quote_gives_zero_percentage(self):
        ranked = rank_quotes([quote("a", "x", 0.0), quote("b", "y", 12.0)])

        assert ranked[1].savings == 12.0
        assert ranked[1].percentage_savings == 0.0

    def test_empty(self):
        assert rank_quotes([]) == []


class TestSummaries:

    def test_summarize(self):
        ranked = rank_quotes([quote("a", "x", 10.0), quote("b", "y", 30.0)])

        summary = summarize(ranked, carriers_queried=3, error_count=1)

        assert summary.total_rates == 2
        assert summary.carriers_queried == 3
        assert summary.errors == 1
        assert summary.cheapest is ranked[0]
        assert summary.average_cost == 20.0
        assert summary.price_range == (10.0, 30.0)
        assert summary.to_dict()["price_range"] == {"min": 10.0, "max": 30.0}

    def test_summarize_without_quotes(self):
        summary = summarize([], carriers_queried=2, error_count=2)

        assert summary.cheapest is None
        assert summary.average_cost is None
        assert summary.to_dict()["cheapest"] is None

    def test_collapse_identical_failures(self):
        outcomes = [
            _QueryOutcome("ups", "03", error="timeout"),
            _QueryOutcome("ups", "02", error="timeout"),
        ]
        assert collapse_errors("ups", outcomes) == ["ups: timeout"]

    def test_collapse_keeps_service_detail_on_partial_failure(self):
        outcomes = [
            _QueryOutcome("ups", "03", quotes=[quote("ups", "03", 9.0)]),
            _QueryOutcome("ups", "02", error="timeout"),
        ]
        assert collapse_errors("ups", outcomes) == ["ups 02: timeout"]

    def test_collapse_keeps_service_detail_on_mixed_reasons(self):
        outcomes = [
            _QueryOutcome("ups", "03", error="timeout"),
            _QueryOutcome("ups", "02", error="bad zip"),
        ]
        assert collapse_errors("ups", outcomes) == ["ups 03: timeout", "ups 02: bad zip"]


class TestGetRates:

    @pytest.mark.asyncio
    async def test_fan_out_with_one_carrier_timing_out(self, mock_db, registry, test_settings, actor, shipment_request):
        aggregator = RateAggregator(mock_db, registry, settings=test_settings)

        result = await aggregator.get_rates(shipment_request, actor)

        assert [(q.carrier, q.service_code, q.cost, q.rank) for q in result.quotes] == [
            ("acme", "ground", 20.0, 1),
            ("acme", "air", 50.0, 2),
        ]
        assert result.quotes[1].savings == 30.0
        assert result.quotes[1].percentage_savings == pytest.approx(150.0)
        assert result.errors == ["bolt: timeout"]
        assert result.summary.carriers_queried == 2
        assert result.summary.errors == 1
        assert result.summary.total_rates == 2
        assert all(q.requested_service == q.service_code for q in result.quotes)

    @pytest.mark.asyncio
    async def test_persists_record_with_quote_ids(self, mock_db, registry, test_settings, actor, shipment_request):
        aggregator = RateAggregator(mock_db, registry, settings=test_settings)

        result = await aggregator.get_rates(shipment_request, actor)

        mock_db.add.assert_called_once()
        mock_db.flush.assert_awaited_once()
        record = mock_db.add.call_args[0][0]
        assert isinstance(record, RateRequestRecord)
        assert record.id == result.request_id
        assert record.owner_id == "user-1"
        assert record.errors == ["bolt: timeout"]
        assert record.resolved_carriers == ["acme", "bolt"]
        assert [q.id for q in record.quotes] == [q.quote_id for q in result.quotes]
        assert all(q.quote_id.startswith("QT-") for q in result.quotes)

    @pytest.mark.asyncio
    async def test_unknown_carrier_is_reported_not_raised(self, mock_db, registry, test_settings, actor, shipment_request):
        aggregator = RateAggregator(mock_db, registry, settings=test_settings)

        result = await aggregator.get_rates(shipment_request, actor, target_carriers=["ACME", "ghostcarrier"])

        assert result.errors == ["ghostcarrier: carrier not available"]
        assert result.summary.carriers_queried == 2
        assert {q.carrier for q in result.quotes} == {"acme"}

    @pytest.mark.asyncio
    async def test_everything_failing_still_persists(self, mock_db, fake_carrier, test_settings, actor, shipment_request):
        down = fake_carrier("down", failures={"a": "service unavailable", "b": "service unavailable"})
        aggregator = RateAggregator(mock_db, CarrierRegistry({"down": down}), settings=test_settings)

        result = await aggregator.get_rates(shipment_request, actor)

        assert result.quotes == []
        assert result.errors == ["down: service unavailable"]
        assert result.summary.cheapest is None
        mock_db.add.assert_called_once()

    @pytest.mark.asyncio
    async def test_partial_carrier_failure_lists_services(self, mock_db, fake_carrier, test_settings, actor, shipment_request):
        flaky = fake_carrier("flaky", prices={"a": 7.0}, failures={"b": "invalid postal code"})
        aggregator = RateAggregator(mock_db, CarrierRegistry({"flaky": flaky}), settings=test_settings)

        result = await aggregator.get_rates(shipment_request, actor)

        assert [q.service_code for q in result.quotes] == ["a"]
        assert result.errors == ["flaky b: invalid postal code"]

    @pytest.mark.asyncio
    async def test_unexpected_adapter_exception_becomes_error(self, mock_db, fake_carrier, test_settings, actor, shipment_request):
        broken = fake_carrier("broken", prices={"a": 7.0})
        broken.quote_service = AsyncMock(side_effect=RuntimeError("parser exploded"))
        aggregator = RateAggregator(mock_db, CarrierRegistry({"broken": broken}), settings=test_settings)

        result = await aggregator.get_rates(shipment_request, actor)

        assert result.errors == ["broken: parser exploded"]

    @pytest.mark.asyncio
    async def test_flat_service_list_applies_where_offered(self, mock_db, registry, acme, test_settings, actor, shipment_request):
        aggregator = RateAggregator(mock_db, registry, settings=test_settings)

        result = await aggregator.get_rates(shipment_request, actor, target_services=["air"])

        assert [q.service_code for q in result.quotes] == ["air"]
        assert result.errors == ["bolt: no requested services offered"]
        assert acme.quote_calls == ["air"]

    @pytest.mark.asyncio
    async def test_per_carrier_service_mapping(self, mock_db, registry, acme, bolt, test_settings, actor, shipment_request):
        aggregator = RateAggregator(mock_db, registry, settings=test_settings)

        result = await aggregator.get_rates(
            shipment_request, actor, target_services={"ACME": ["ground"], "bolt": ["express"]}
        )

        assert acme.quote_calls == ["ground"]
        assert bolt.quote_calls == ["express"]
        assert result.errors == ["bolt: timeout"]

    @pytest.mark.asyncio
    async def test_default_services_are_capped(self, mock_db, fake_carrier, test_settings, actor, shipment_request):
        many = fake_carrier("many", prices={code: float(i) for i, code in enumerate("abcdefg", start=1)})
        aggregator = RateAggregator(mock_db, CarrierRegistry({"many": many}), settings=test_settings)

        result = await aggregator.get_rates(shipment_request, actor)

        assert sorted(many.quote_calls) == ["a", "b", "c", "d", "e"]
        assert len(result.quotes) == 5

    @pytest.mark.asyncio
    async def test_invalid_request_calls_no_carrier(self, mock_db, registry, acme, test_settings, actor, shipment_request):
        shipment_request.packages[0].weight = 0
        aggregator = RateAggregator(mock_db, registry, settings=test_settings)

        with pytest.raises(ShipmentValidationError):
            await aggregator.get_rates(shipment_request, actor)

        assert acme.quote_calls == []
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_audit_entry_per_resolved_carrier(self, mock_db, registry, test_settings, actor, shipment_request):
        sink = AsyncMock()
        aggregator = RateAggregator(mock_db, registry, audit=sink, settings=test_settings)

        await aggregator.get_rates(shipment_request, actor)

        carriers = [c.args[0] for c in sink.write.await_args_list]
        assert carriers == ["acme", "bolt"]
        assert all(c.args[1] == "rate_request" for c in sink.write.await_args_list)

    @pytest.mark.asyncio
    async def test_failing_audit_sink_does_not_fail_request(self, mock_db, registry, test_settings, actor, shipment_request):
        sink = AsyncMock()
        sink.write.side_effect = RuntimeError("audit db down")
        aggregator = RateAggregator(mock_db, registry, audit=sink, settings=test_settings)

        result = await aggregator.get_rates(shipment_request, actor)

        assert len(result.quotes) == 2


class TestStoredRequests:

    @pytest.mark.asyncio
    async def test_get_request_by_id_not_found(self, mock_db, db_result, registry, actor):
        mock_db.execute.return_value = db_result(None)
        aggregator = RateAggregator(mock_db, registry)

        with pytest.raises(RateRequestNotFoundError) as exc_info:
            await aggregator.get_request_by_id("rate_missing", actor)

        assert exc_info.value.code == "RATE_REQUEST_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_get_request_by_id(self, mock_db, db_result, registry, actor):
        record = RateRequestRecord(id="rate_1", owner_id="user-1")
        mock_db.execute.return_value = db_result(record)
        aggregator = RateAggregator(mock_db, registry)

        assert await aggregator.get_request_by_id("rate_1", actor) is record

    @pytest.mark.asyncio
    async def test_history_limit_is_clamped(self, mock_db, registry, actor):
        count_result = MagicMock()
        count_result.scalar.return_value = 250
        page_result = MagicMock()
        page_result.scalars.return_value.all.return_value = [RateRequestRecord(id="rate_1", owner_id="user-1")]
        mock_db.execute.side_effect = [count_result, page_result]
        aggregator = RateAggregator(mock_db, registry)

        page = await aggregator.get_rate_history(actor, limit=1000, offset=0)

        assert page.limit == 100
        assert page.total == 250
        assert len(page.items) == 1
        assert page.has_more is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit,offset", [(0, 0), (10, -1)])
    async def test_history_rejects_bad_paging(self, mock_db, registry, actor, limit, offset):
        aggregator = RateAggregator(mock_db, registry)

        with pytest.raises(ShipmentValidationError):
            await aggregator.get_rate_history(actor, limit=limit, offset=offset)

        mock_db.execute.assert_not_called()


class TestCompareRates:

    @pytest.mark.asyncio
    async def test_compare_each_request_independently(self, mock_db, registry, test_settings, actor, shipment_request):
        aggregator = RateAggregator(mock_db, registry, settings=test_settings)
        bad = shipment_request.for_service("")
        bad.packages = []

        results = await aggregator.compare_rates([shipment_request, bad], actor, target_carriers=["acme"])

        assert results[0].success is True
        assert results[0].result.quotes[0].cost == 20.0
        assert results[1].success is False
        assert results[1].code == "VALIDATION_FAILED"

    @pytest.mark.asyncio
    async def test_compare_over_limit(self, mock_db, registry, test_settings, actor, shipment_request):
        aggregator = RateAggregator(mock_db, registry, settings=test_settings)

        with pytest.raises(ShipmentValidationError):
            await aggregator.compare_rates([shipment_request] * 3, actor)

        mock_db.add.assert_not_called()
