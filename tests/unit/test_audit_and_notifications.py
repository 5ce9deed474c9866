"""
Tests for best-effort audit and notification hooks.
"""
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from shipping_engine.models.carrier_log import CarrierLog
from shipping_engine.services.audit import (
    DatabaseAuditSink,
    LoggingAuditSink,
    record_carrier_activity,
)
from shipping_engine.services.notifications import (
    LoggingNotificationSender,
    notify_shipment_event,
)


def session_factory(session):
    @asynccontextmanager
    async def factory():
        yield session
    return factory


class TestAudit:

    @pytest.mark.asyncio
    async def test_database_sink_adds_carrier_log(self):
        session = MagicMock()
        sink = DatabaseAuditSink(session_factory=session_factory(session))

        await sink.write("ups", "shipment_created", tracking_number="1Z9", details={"cost": 12.5})

        row = session.add.call_args[0][0]
        assert isinstance(row, CarrierLog)
        assert row.carrier == "ups"
        assert row.action == "shipment_created"
        assert row.tracking_number == "1Z9"
        assert row.details == {"cost": 12.5}

    @pytest.mark.asyncio
    async def test_database_sink_swallows_errors(self):
        session = MagicMock()
        session.add.side_effect = RuntimeError("connection reset")
        sink = DatabaseAuditSink(session_factory=session_factory(session))

        await sink.write("ups", "rate_request")

    @pytest.mark.asyncio
    async def test_record_carrier_activity_swallows_sink_errors(self):
        sink = AsyncMock()
        sink.write.side_effect = ValueError("bad payload")

        await record_carrier_activity(sink, "dhl", "shipment_cancelled", tracking_number="123")

        sink.write.assert_awaited_once_with("dhl", "shipment_cancelled", tracking_number="123", details=None)

    @pytest.mark.asyncio
    async def test_logging_sink(self, caplog):
        with caplog.at_level("INFO"):
            await LoggingAuditSink().write("fedex", "status_updated", tracking_number="7946")

        assert "[AUDIT] fedex status_updated tracking=7946" in caplog.text


class TestNotifications:

    @pytest.mark.asyncio
    async def test_logging_sender(self):
        sent = await LoggingNotificationSender().send("shp_1", "created", {"carrier": "ups"})
        assert sent is True

    @pytest.mark.asyncio
    async def test_failing_sender_reports_false(self):
        sender = AsyncMock()
        sender.send.side_effect = ConnectionError("smtp timeout")

        assert await notify_shipment_event(sender, "shp_1", "cancelled") is False

    @pytest.mark.asyncio
    async def test_sender_result_is_passed_through(self):
        sender = AsyncMock()
        sender.send.return_value = False

        assert await notify_shipment_event(sender, "shp_1", "status_changed", {"tracking_number": "1Z"}) is False
        sender.send.assert_awaited_once_with("shp_1", "status_changed", {"tracking_number": "1Z"})
