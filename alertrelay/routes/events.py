"""
Event ingestion route.

The signal source posts domain events here; rule evaluation and action
dispatch run before the response, webhook deliveries are queued.
"""
from fastapi import APIRouter, Depends

from alertrelay.dependencies.auth import get_current_user, TokenPayload
from alertrelay.engine import Engine, get_engine
from alertrelay.schemas.events import EventIngest, EventResult


router = APIRouter(prefix="/api/events", tags=["events"])


@router.post("", response_model=EventResult)
async def ingest_event(
    request: EventIngest,
    token: TokenPayload = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    """
    Evaluate one event against the organisation's notification rules.

    Returns the per-rule match outcome and, for rules that fired, the
    outcome of every action.
    """
    event = request.to_event(token.org_id)
    return await engine.pipeline.process(event)
