"""
Webhook API routes.

Endpoint registration, test firing, delivery history and manual retry.
Endpoint secrets are accepted on create/update and never returned.
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from alertrelay.database import get_db
from alertrelay.dependencies.auth import get_current_user, TokenPayload
from alertrelay.engine import Engine, get_engine
from alertrelay.models.enums import TriggerType
from alertrelay.schemas.webhooks import (
    DeliveryPage,
    DeliveryResponse,
    EndpointCreate,
    EndpointResponse,
    EndpointUpdate,
    TestEndpointRequest,
    TestEndpointResult,
)
from alertrelay.services.webhook_service import EndpointService


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def get_endpoint_service(
    db: AsyncSession = Depends(get_db),
    engine: Engine = Depends(get_engine),
) -> EndpointService:
    return EndpointService(db, engine.secret_box)


@router.get("/event-types", response_model=list[str])
async def list_event_types(token: TokenPayload = Depends(get_current_user)):
    """Trigger types an endpoint can subscribe to."""
    return [trigger.value for trigger in TriggerType]


@router.get("/endpoints", response_model=list[EndpointResponse])
async def list_endpoints(
    token: TokenPayload = Depends(get_current_user),
    endpoints: EndpointService = Depends(get_endpoint_service),
):
    return await endpoints.list_endpoints(token.org_id)


@router.post("/endpoints", response_model=EndpointResponse, status_code=status.HTTP_201_CREATED)
async def create_endpoint(
    request: EndpointCreate,
    token: TokenPayload = Depends(get_current_user),
    endpoints: EndpointService = Depends(get_endpoint_service),
):
    """
    Register a webhook endpoint.

    Deliveries are signed with HMAC-SHA256 of the raw body using the
    given secret, sent as `X-Signature-256: sha256=<hex>`.
    """
    return await endpoints.create(token.org_id, request)


@router.get("/endpoints/{endpoint_id}", response_model=EndpointResponse)
async def get_endpoint(
    endpoint_id: str,
    token: TokenPayload = Depends(get_current_user),
    endpoints: EndpointService = Depends(get_endpoint_service),
):
    return await endpoints.get(token.org_id, endpoint_id)


@router.patch("/endpoints/{endpoint_id}", response_model=EndpointResponse)
async def update_endpoint(
    endpoint_id: str,
    request: EndpointUpdate,
    token: TokenPayload = Depends(get_current_user),
    endpoints: EndpointService = Depends(get_endpoint_service),
):
    return await endpoints.update(token.org_id, endpoint_id, request)


@router.delete("/endpoints/{endpoint_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_endpoint(
    endpoint_id: str,
    token: TokenPayload = Depends(get_current_user),
    endpoints: EndpointService = Depends(get_endpoint_service),
):
    await endpoints.delete(token.org_id, endpoint_id)


@router.post("/endpoints/{endpoint_id}/test", response_model=TestEndpointResult)
async def test_endpoint(
    endpoint_id: str,
    request: TestEndpointRequest | None = None,
    token: TokenPayload = Depends(get_current_user),
    endpoints: EndpointService = Depends(get_endpoint_service),
    engine: Engine = Depends(get_engine),
):
    """Send one signed synthetic event. No retry and no delivery record."""
    endpoint = await endpoints.get(token.org_id, endpoint_id)
    event_type = request.event_type if request else None
    return await engine.deliveries.test_endpoint(endpoint, event_type)


@router.get("/endpoints/{endpoint_id}/deliveries", response_model=DeliveryPage)
async def list_deliveries(
    endpoint_id: str,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    token: TokenPayload = Depends(get_current_user),
    endpoints: EndpointService = Depends(get_endpoint_service),
    engine: Engine = Depends(get_engine),
):
    """Delivery history for an endpoint, newest first."""
    await endpoints.get(token.org_id, endpoint_id)
    items, total = await engine.deliveries.list_deliveries(token.org_id, endpoint_id, limit=limit, offset=offset)
    return DeliveryPage(
        items=[DeliveryResponse.model_validate(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/deliveries/{delivery_id}", response_model=DeliveryResponse)
async def get_delivery(
    delivery_id: str,
    token: TokenPayload = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    return await engine.deliveries.get_delivery(token.org_id, delivery_id)


@router.post("/deliveries/{delivery_id}/retry", response_model=DeliveryResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_delivery(
    delivery_id: str,
    token: TokenPayload = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    """
    Retry a failed delivery as a new attempt chain.

    The failed record is kept as is; 409 if the delivery is not failed.
    """
    retry = await engine.deliveries.retry_delivery(token.org_id, delivery_id)
    await engine.queue.enqueue(retry.id)
    return retry
