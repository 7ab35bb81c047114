"""
Requests router: POST /v1/requests, GET /v1/requests/{id}, cancel, fallback,
offers and the server-sent event stream.
"""
import json
import logging

from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import StreamingResponse
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.config import get_settings
from dispatch_engine.database import get_db
from dispatch_engine.engine import DispatchEngine, get_engine
from dispatch_engine.exceptions import RequestNotFound
from dispatch_engine.middleware.auth import get_current_requester
from dispatch_engine.middleware.idempotency import check_idempotency, store_idempotency_result
from dispatch_engine.models.request import ServiceRequest
from dispatch_engine.redis_client import cache_get, cache_set, request_channel, request_status_key
from dispatch_engine.schemas.schemas import (
    CancellationRecordResponse, CancelRequest, CancelResponse, OfferBoardResponse,
    OfferResponse, RequestCreateRequest, RequestResponse,
)
from dispatch_engine.services.intake import RequestDraft
from dispatch_engine.services.repository import load_request

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/requests", tags=["Requests"])


async def _owned_request(db: AsyncSession, request_id: str, requester_id: str) -> ServiceRequest:
    request = await load_request(db, request_id)
    if request.requester_id != requester_id:
        raise RequestNotFound(f"Request {request_id} not found")
    return request


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RequestResponse)
async def create_request(
    payload: RequestCreateRequest,
    engine: DispatchEngine = Depends(get_engine),
    requester_id: str = Depends(get_current_requester),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    redis = engine.events.redis
    cached = await check_idempotency(redis, requester_id, idempotency_key)
    if cached:
        return cached

    request = await engine.submit(RequestDraft(requester_id=requester_id, **payload.model_dump()))
    response = RequestResponse.model_validate(request)

    if idempotency_key:
        await store_idempotency_result(
            redis, requester_id, idempotency_key, status.HTTP_201_CREATED, response.model_dump(mode="json"),
        )
    return response


@router.get("/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    engine: DispatchEngine = Depends(get_engine),
    requester_id: str = Depends(get_current_requester),
):
    redis = engine.events.redis
    cache_key = request_status_key(request_id)

    # Cache-aside: check Redis first
    try:
        cached = await cache_get(redis, cache_key)
    except RedisError as exc:
        logger.warning("Status cache read failed for request=%s: %s", request_id, exc)
        cached = None
    if cached:
        resp = RequestResponse.model_validate_json(cached)
        if resp.requester_id != requester_id:
            raise RequestNotFound(f"Request {request_id} not found")
        return resp

    resp = RequestResponse.model_validate(await _owned_request(db, request_id, requester_id))
    try:
        await cache_set(redis, cache_key, resp.model_dump_json(), ttl=settings.status_cache_ttl_seconds)
    except RedisError as exc:
        logger.warning("Status cache write failed for request=%s: %s", request_id, exc)
    return resp


@router.post("/{request_id}/cancel", response_model=CancelResponse)
async def cancel_request(
    request_id: str,
    payload: CancelRequest | None = None,
    engine: DispatchEngine = Depends(get_engine),
    requester_id: str = Depends(get_current_requester),
):
    reason = payload.reason if payload else None
    request, record = await engine.cancel(request_id, requester_id, reason)
    return CancelResponse(
        request=RequestResponse.model_validate(request),
        cancellation=CancellationRecordResponse.model_validate(record) if record else None,
    )


@router.post("/{request_id}/fallback", response_model=RequestResponse)
async def fallback_to_dispatch(
    request_id: str,
    engine: DispatchEngine = Depends(get_engine),
    requester_id: str = Depends(get_current_requester),
):
    """Bidding closed without a winner: dispatch at the fixed surge price instead."""
    request = await engine.arena.fallback(request_id, requester_id)
    return RequestResponse.model_validate(request)


@router.get("/{request_id}/offers", response_model=OfferBoardResponse)
async def list_offers(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    engine: DispatchEngine = Depends(get_engine),
    requester_id: str = Depends(get_current_requester),
):
    await _owned_request(db, request_id, requester_id)
    board = await engine.arena.offer_board(request_id)
    return OfferBoardResponse(
        **{**board, "offers": [OfferResponse.model_validate(offer) for offer in board["offers"]]}
    )


@router.post("/{request_id}/offers/{offer_id}/accept", response_model=RequestResponse)
async def accept_offer(
    request_id: str,
    offer_id: str,
    engine: DispatchEngine = Depends(get_engine),
    requester_id: str = Depends(get_current_requester),
):
    request = await engine.arena.accept_offer(request_id, offer_id, requester_id)
    return RequestResponse.model_validate(request)


@router.get("/{request_id}/events")
async def stream_events(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    engine: DispatchEngine = Depends(get_engine),
    requester_id: str = Depends(get_current_requester),
):
    """Server-sent events: one ``data:`` frame per status change."""
    request = await _owned_request(db, request_id, requester_id)
    initial = json.dumps({"event": "snapshot", "request_id": request_id, "status": request.status.value})

    async def frames():
        yield f"data: {initial}\n\n"
        async for message in engine.events.subscribe(request_channel(request_id)):
            yield f"data: {message}\n\n"

    return StreamingResponse(frames(), media_type="text/event-stream")
