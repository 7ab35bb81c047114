"""
Row loading and guarded status transitions shared by the coordinator, the
bidding arena and the fraud detector.

Every transition is ``UPDATE ... WHERE id = :id AND status IN (:sources)``;
the rowcount says whether this caller won. ORM objects are reloaded with
``populate_existing`` afterwards so nobody acts on a stale copy.
"""
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.exceptions import RequestNotFound
from dispatch_engine.models.assignment import Assignment
from dispatch_engine.models.offer import Offer
from dispatch_engine.models.request import ServiceRequest
from dispatch_engine.schemas.schemas import (
    AssignmentStatusEnum, OfferStatusEnum, RequestStatusEnum,
)
from dispatch_engine.services.state_machine import sources_for


async def load_request(db: AsyncSession, request_id: str, *, for_update: bool = False) -> ServiceRequest:
    stmt = (
        select(ServiceRequest)
        .where(ServiceRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    request = (await db.execute(stmt)).scalar_one_or_none()
    if request is None:
        raise RequestNotFound(f"Request {request_id} not found")
    return request


async def load_assignment(db: AsyncSession, assignment_id: str) -> Assignment | None:
    result = await db.execute(
        select(Assignment)
        .where(Assignment.id == assignment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def transition_request(
    db: AsyncSession,
    request_id: str,
    target: RequestStatusEnum,
    now: datetime,
    sources: Iterable[RequestStatusEnum] | None = None,
    **values: Any,
) -> bool:
    sources = list(sources) if sources is not None else sources_for(target)
    result = await db.execute(
        update(ServiceRequest)
        .where(ServiceRequest.id == request_id, ServiceRequest.status.in_(sources))
        .values(status=target, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def transition_assignment(
    db: AsyncSession,
    assignment_id: str,
    source: AssignmentStatusEnum,
    target: AssignmentStatusEnum,
    now: datetime,
    *criteria: Any,
) -> bool:
    result = await db.execute(
        update(Assignment)
        .where(Assignment.id == assignment_id, Assignment.status == source, *criteria)
        .values(status=target, responded_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def tried_driver_ids(db: AsyncSession, request_id: str) -> set[str]:
    result = await db.execute(select(Assignment.driver_id).where(Assignment.request_id == request_id))
    return set(result.scalars().all())


async def open_assignments(db: AsyncSession, request_id: str, status: AssignmentStatusEnum) -> list[Assignment]:
    result = await db.execute(
        select(Assignment)
        .where(Assignment.request_id == request_id, Assignment.status == status)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def close_pending_offers(
    db: AsyncSession,
    request_id: str,
    target: OfferStatusEnum,
    now: datetime,
    *,
    except_offer_id: str | None = None,
) -> int:
    stmt = update(Offer).where(Offer.request_id == request_id, Offer.status == OfferStatusEnum.pending)
    if except_offer_id is not None:
        stmt = stmt.where(Offer.id != except_offer_id)
    result = await db.execute(
        stmt.values(status=target, updated_at=now).execution_options(synchronize_session=False)
    )
    return result.rowcount
