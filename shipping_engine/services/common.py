"""
Helpers shared by the rate aggregator and shipment orchestrator.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from shipping_engine.core.exceptions import ShipmentValidationError, ShippingEngineError
from shipping_engine.core.permissions import Actor

logger = logging.getLogger(__name__)

T = TypeVar("T")


def owned(stmt, owner_column, actor: Actor):
    """Restrict a select to the actor's own rows unless the actor is staff."""
    if actor.is_staff:
        return stmt
    return stmt.where(owner_column == actor.user_id)


@dataclass
class BulkItemResult:
    """Outcome of one element in a bulk operation."""
    index: int
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self.result.to_dict() if hasattr(self.result, "to_dict") else self.result
        return {
            "index": self.index,
            "success": self.success,
            "result": result,
            "error": self.error,
            "code": self.code,
        }


def check_batch_size(items: Sequence[Any], limit: int, label: str) -> None:
    if not items:
        raise ShipmentValidationError(f"At least one {label} is required", field="items")
    if len(items) > limit:
        raise ShipmentValidationError(
            f"Too many {label}s: {len(items)} (maximum {limit})",
            field="items",
            details={"limit": limit, "count": len(items)},
        )


async def run_each(
    items: Sequence[T],
    operation: Callable[[T], Awaitable[Any]],
    label: str,
) -> List[BulkItemResult]:
    """
    Run operation over items one at a time, recording each outcome.

    Elements share the caller's database session, so they never run
    concurrently. A failing element is reported and the loop moves on.
    """
    results: List[BulkItemResult] = []
    for index, item in enumerate(items):
        try:
            value = await operation(item)
            results.append(BulkItemResult(index=index, success=True, result=value))
        except ShippingEngineError as e:
            logger.warning(f"Bulk {label} item {index} failed: {e.code} {e.message}")
            results.append(BulkItemResult(index=index, success=False, error=e.message, code=e.code))
        except Exception as e:
            logger.error(f"Bulk {label} item {index} failed unexpectedly: {e}", exc_info=True)
            results.append(BulkItemResult(index=index, success=False, error=str(e), code="INTERNAL_ERROR"))

    succeeded = sum(1 for r in results if r.success)
    logger.info(f"Bulk {label}: {succeeded}/{len(results)} succeeded")
    return results
