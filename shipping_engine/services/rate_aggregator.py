"""
Rate Aggregator

- Fans out one query per (carrier, service) across the registry
- Each query runs under its own timeout; failures become error strings,
  never exceptions
- Merges, stable-sorts by cost, assigns dense ranks and savings
- Persists an immutable RateRequestRecord per call

Usage:
    aggregator = RateAggregator(db, registry, audit=DatabaseAuditSink())
    result = await aggregator.get_rates(request, actor, target_carriers=["ups", "fedex"])
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_engine.core.config import Settings, settings as default_settings
from shipping_engine.core.exceptions import (
    CarrierCallError,
    RateRequestNotFoundError,
    ShipmentValidationError,
)
from shipping_engine.core.permissions import Actor
from shipping_engine.models.rate_request import (
    RateRequestRecord,
    StoredRateQuote,
    generate_quote_id,
    generate_rate_request_id,
)
from shipping_engine.modules.shipping.carriers.base import (
    RateQuote,
    ShipmentRequest,
    default_service_codes,
    validate_shipment_request,
)
from shipping_engine.modules.shipping.carriers.registry import CarrierRegistry
from shipping_engine.services.audit import AuditSink, record_carrier_activity
from shipping_engine.services.common import BulkItemResult, check_batch_size, owned, run_each

logger = logging.getLogger(__name__)

ServiceSelection = Union[Sequence[str], Mapping[str, Sequence[str]], None]


@dataclass
class RateSummary:
    total_rates: int
    carriers_queried: int
    errors: int
    cheapest: Optional[RateQuote] = None
    average_cost: Optional[float] = None
    price_range: Optional[Tuple[float, float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_rates": self.total_rates,
            "carriers_queried": self.carriers_queried,
            "errors": self.errors,
            "cheapest": self.cheapest.to_dict() if self.cheapest else None,
            "average_cost": self.average_cost,
            "price_range": {"min": self.price_range[0], "max": self.price_range[1]} if self.price_range else None,
        }


@dataclass
class RateShopResult:
    request_id: str
    quotes: List[RateQuote]
    errors: List[str]
    summary: RateSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "quotes": [q.to_dict() for q in self.quotes],
            "errors": list(self.errors),
            "summary": self.summary.to_dict(),
        }


@dataclass
class RateHistoryPage:
    items: List[RateRequestRecord]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [r.to_dict() for r in self.items],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "has_more": self.has_more,
        }


@dataclass
class _QueryOutcome:
    """Result of one (carrier, service) branch. Branches only fill their own."""
    carrier: str
    service: str
    quotes: List[RateQuote] = field(default_factory=list)
    error: Optional[str] = None


def rank_quotes(quotes: List[RateQuote]) -> List[RateQuote]:
    """
    Stable-sort by cost and assign dense ranks 1..N.

    Savings are measured against the rank-1 quote, so they are never negative.
    A free rank-1 quote leaves percentage savings at 0.
    """
    ranked = sorted(quotes, key=lambda q: q.cost)
    if not ranked:
        return ranked

    base = ranked[0].cost
    for position, quote in enumerate(ranked, start=1):
        quote.rank = position
        if position == 1:
            quote.savings = 0.0
            quote.percentage_savings = 0.0
            continue
        quote.savings = quote.cost - base
        quote.percentage_savings = (quote.savings / base * 100) if base > 0 else 0.0
    return ranked


def summarize(quotes: List[RateQuote], carriers_queried: int, error_count: int) -> RateSummary:
    if not quotes:
        return RateSummary(total_rates=0, carriers_queried=carriers_queried, errors=error_count)
    costs = [q.cost for q in quotes]
    return RateSummary(
        total_rates=len(quotes),
        carriers_queried=carriers_queried,
        errors=error_count,
        cheapest=quotes[0],
        average_cost=sum(costs) / len(costs),
        price_range=(min(costs), max(costs)),
    )


def collapse_errors(carrier: str, outcomes: List[_QueryOutcome]) -> List[str]:
    """One entry per carrier when every query failed the same way, else one per failed service."""
    failed = [o for o in outcomes if o.error is not None]
    if not failed:
        return []
    reasons = {o.error for o in failed}
    if len(failed) == len(outcomes) and len(reasons) == 1:
        return [f"{carrier}: {failed[0].error}"]
    return [f"{carrier} {o.service}: {o.error}" for o in failed]


class RateAggregator:
    """Multi-carrier rate shopping over an injected CarrierRegistry."""

    def __init__(
        self,
        db: AsyncSession,
        registry: CarrierRegistry,
        audit: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.registry = registry
        self.audit = audit
        self.settings = settings or default_settings

    # ==================== Target resolution ====================

    def _resolve_carriers(self, target_carriers: Optional[Sequence[str]]) -> Tuple[List[str], List[str], List[str]]:
        """Returns (queried names, resolved names, unavailable names)."""
        if not target_carriers:
            names = self.registry.list_carriers()
            return names, names, []

        queried = list(dict.fromkeys(n.strip().lower() for n in target_carriers if n and n.strip()))
        resolved = [n for n in queried if n in self.registry]
        unavailable = [n for n in queried if n not in self.registry]
        return queried, resolved, unavailable

    def _services_for(self, carrier: str, target_services: ServiceSelection) -> List[str]:
        adapter = self.registry.get(carrier)
        limit = self.settings.DEFAULT_SERVICES_PER_CARRIER

        if isinstance(target_services, Mapping):
            by_name = {name.strip().lower(): codes for name, codes in target_services.items()}
            requested = by_name.get(carrier) or []
            return list(dict.fromkeys(requested)) or default_service_codes(adapter, limit)

        if target_services:
            # A flat list applies to every carrier that offers the code
            offered = {s.code for s in adapter.list_services()}
            return [code for code in dict.fromkeys(target_services) if code in offered]

        return default_service_codes(adapter, limit)

    # ==================== Fan-out ====================

    async def _query(self, carrier: str, service: str, request: ShipmentRequest) -> _QueryOutcome:
        adapter = self.registry.get(carrier)
        outcome = _QueryOutcome(carrier=carrier, service=service)
        try:
            quotes = await asyncio.wait_for(
                adapter.quote_service(request.for_service(service), service),
                timeout=self.settings.CARRIER_CALL_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Rate query {carrier}/{service} timed out after {self.settings.CARRIER_CALL_TIMEOUT_SECONDS}s")
            outcome.error = "timeout"
            return outcome
        except CarrierCallError as e:
            logger.warning(f"Rate query {carrier}/{service} failed: {e.message}")
            outcome.error = e.message
            return outcome
        except Exception as e:
            logger.error(f"Rate query {carrier}/{service} raised unexpectedly: {e}", exc_info=True)
            outcome.error = str(e) or e.__class__.__name__
            return outcome

        for quote in quotes:
            if not quote.requested_service:
                quote.requested_service = service
        outcome.quotes = list(quotes)
        return outcome

    async def get_rates(
        self,
        request: ShipmentRequest,
        actor: Actor,
        target_carriers: Optional[Sequence[str]] = None,
        target_services: ServiceSelection = None,
    ) -> RateShopResult:
        """
        Quote every targeted (carrier, service) pair and persist the ranked result.

        Raises:
            ShipmentValidationError: malformed request (no carrier is called)
        """
        validate_shipment_request(request, require_service=False)

        queried, resolved, unavailable = self._resolve_carriers(target_carriers)
        errors: List[str] = [f"{name}: carrier not available" for name in unavailable]

        plan: List[Tuple[str, str]] = []
        for carrier in resolved:
            services = self._services_for(carrier, target_services)
            if not services:
                errors.append(f"{carrier}: no requested services offered")
                continue
            plan.extend((carrier, service) for service in services)

        outcomes = await asyncio.gather(*(self._query(c, s, request) for c, s in plan))

        merged: List[RateQuote] = []
        by_carrier: Dict[str, List[_QueryOutcome]] = {}
        for outcome in outcomes:
            merged.extend(outcome.quotes)
            by_carrier.setdefault(outcome.carrier, []).append(outcome)
        for carrier in resolved:
            errors.extend(collapse_errors(carrier, by_carrier.get(carrier, [])))

        ranked = rank_quotes(merged)
        record = await self._persist(request, actor, target_carriers, resolved, target_services, ranked, errors)

        logger.info(
            f"Rate request {record.id}: {len(ranked)} quotes from {len(resolved)} carriers, {len(errors)} errors"
        )

        if self.audit is not None:
            for carrier in resolved:
                await record_carrier_activity(
                    self.audit,
                    carrier,
                    "rate_request",
                    details={
                        "rate_request_id": record.id,
                        "quotes": sum(1 for q in ranked if q.carrier == carrier),
                        "errors": [e for e in errors if e.startswith(f"{carrier}:") or e.startswith(f"{carrier} ")],
                    },
                )

        return RateShopResult(
            request_id=record.id,
            quotes=ranked,
            errors=errors,
            summary=summarize(ranked, carriers_queried=len(queried), error_count=len(errors)),
        )

    async def _persist(
        self,
        request: ShipmentRequest,
        actor: Actor,
        target_carriers: Optional[Sequence[str]],
        resolved: List[str],
        target_services: ServiceSelection,
        ranked: List[RateQuote],
        errors: List[str],
    ) -> RateRequestRecord:
        if isinstance(target_services, Mapping):
            requested_services: Any = {k: list(v) for k, v in target_services.items()}
        else:
            requested_services = list(target_services or [])

        stored = []
        for quote in ranked:
            quote.quote_id = generate_quote_id()
            stored.append(StoredRateQuote(
                id=quote.quote_id,
                carrier=quote.carrier,
                service_code=quote.service_code,
                service_name=quote.service_name,
                requested_service=quote.requested_service,
                cost=quote.cost,
                currency=quote.currency,
                transit_time=quote.transit_time,
                delivery_date=quote.delivery_date,
                guaranteed_delivery=quote.guaranteed_delivery,
                rank=quote.rank,
                savings=quote.savings,
                percentage_savings=quote.percentage_savings,
            ))

        record = RateRequestRecord(
            id=generate_rate_request_id(),
            owner_id=actor.user_id,
            from_address=request.from_address.to_dict(),
            to_address=request.to_address.to_dict(),
            packages=[p.to_dict() for p in request.packages],
            options=request.options.to_dict() if request.options else {},
            requested_carriers=list(target_carriers or []),
            resolved_carriers=list(resolved),
            requested_services=requested_services,
            errors=list(errors),
            quotes=stored,
        )
        self.db.add(record)
        await self.db.flush()
        return record

    # ==================== Stored requests ====================

    async def get_request_by_id(self, request_id: str, actor: Actor) -> RateRequestRecord:
        stmt = owned(
            select(RateRequestRecord).where(RateRequestRecord.id == request_id),
            RateRequestRecord.owner_id,
            actor,
        )
        result = await self.db.execute(stmt)
        record = result.scalar_one_or_none()
        if record is None:
            raise RateRequestNotFoundError(
                f"Rate request not found: {request_id}",
                details={"rate_request_id": request_id},
            )
        return record

    async def get_rate_history(self, actor: Actor, limit: int = 20, offset: int = 0) -> RateHistoryPage:
        """Newest first. limit is clamped to RATE_HISTORY_MAX_LIMIT."""
        if limit < 1:
            raise ShipmentValidationError("limit must be at least 1", field="limit")
        if offset < 0:
            raise ShipmentValidationError("offset cannot be negative", field="offset")
        limit = min(limit, self.settings.RATE_HISTORY_MAX_LIMIT)

        count_stmt = owned(
            select(func.count()).select_from(RateRequestRecord),
            RateRequestRecord.owner_id,
            actor,
        )
        total = (await self.db.execute(count_stmt)).scalar() or 0

        page_stmt = owned(select(RateRequestRecord), RateRequestRecord.owner_id, actor)
        page_stmt = page_stmt.order_by(RateRequestRecord.created_at.desc()).limit(limit).offset(offset)
        items = list((await self.db.execute(page_stmt)).scalars().all())

        return RateHistoryPage(items=items, total=total, limit=limit, offset=offset)

    # ==================== Comparison ====================

    async def compare_rates(
        self,
        requests: Sequence[ShipmentRequest],
        actor: Actor,
        target_carriers: Optional[Sequence[str]] = None,
        target_services: ServiceSelection = None,
    ) -> List[BulkItemResult]:
        """Aggregate several shipment requests independently."""
        check_batch_size(requests, self.settings.RATE_COMPARISON_LIMIT, "rate request")

        async def _one(request: ShipmentRequest) -> RateShopResult:
            return await self.get_rates(request, actor, target_carriers, target_services)

        return await run_each(requests, _one, "rate comparison")
