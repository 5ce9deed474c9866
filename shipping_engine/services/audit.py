"""
Carrier Activity Audit

Sinks that record every carrier interaction (rate request, label purchase,
cancellation, tracking refresh). Writes are best-effort: a failing sink logs
and returns, it never fails the business operation that triggered it.
"""

import logging
from typing import Any, Dict, Optional, Protocol

from shipping_engine.core.database import get_db_session
from shipping_engine.models.carrier_log import CarrierLog

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """Protocol for audit sinks."""

    async def write(
        self,
        carrier: str,
        action: str,
        tracking_number: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record one carrier interaction."""
        ...


class LoggingAuditSink:
    """Log-only sink for development/testing."""

    async def write(
        self,
        carrier: str,
        action: str,
        tracking_number: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info(
            f"[AUDIT] {carrier} {action}" + (f" tracking={tracking_number}" if tracking_number else ""),
            extra={"carrier": carrier, "action": action, "tracking_number": tracking_number, "details": details or {}},
        )


class DatabaseAuditSink:
    """
    Writes CarrierLog rows in a session of its own, so an audit failure never
    touches the caller's transaction.
    """

    def __init__(self, session_factory=get_db_session):
        self._session_factory = session_factory

    async def write(
        self,
        carrier: str,
        action: str,
        tracking_number: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(CarrierLog(
                    carrier=carrier,
                    action=action,
                    tracking_number=tracking_number,
                    details=details or {},
                ))
        except Exception as e:
            logger.warning(
                f"Failed to write carrier audit log ({carrier} {action}): {e}",
                exc_info=True,
                extra={"carrier": carrier, "action": action, "tracking_number": tracking_number},
            )


async def record_carrier_activity(
    sink: AuditSink,
    carrier: str,
    action: str,
    tracking_number: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Call a sink, swallowing and logging whatever it raises."""
    try:
        await sink.write(carrier, action, tracking_number=tracking_number, details=details)
    except Exception as e:
        logger.warning(
            f"Audit sink failed for {carrier} {action}: {e}",
            exc_info=True,
            extra={"carrier": carrier, "action": action, "tracking_number": tracking_number},
        )
