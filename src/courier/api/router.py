"""FastAPI router for Courier API endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from fastapi.security import HTTPAuthorizationCredentials

from courier import __version__
from courier.logging import get_logger
from courier.models import DeliveryStatus, WebhookEvent
from courier.webhooks import WebhookService

from .auth import BUSINESS_ID_HEADER, authenticate_business, security
from .schemas import (
    DeliveryListResponse,
    DeliveryResponse,
    HealthResponse,
    PublishEventRequest,
    PublishEventResponse,
    RetryResponse,
    WebhookCreatedResponse,
    WebhookCreateRequest,
    WebhookListResponse,
    WebhookResponse,
    WebhookStatsResponse,
    WebhookUpdateRequest,
)

logger = get_logger(__name__)

router = APIRouter()

# Service instance (set by app lifespan)
_service: WebhookService | None = None


def set_service(service: WebhookService | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> WebhookService:
    """Dependency to get the WebhookService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[WebhookService, Depends(get_service)]


async def get_business_id(
    service: ServiceDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    x_business_id: Annotated[str | None, Header(alias=BUSINESS_ID_HEADER)] = None,
) -> str:
    """Dependency resolving the calling business."""
    return authenticate_business(service.settings, credentials, x_business_id).business_id


BusinessDep = Annotated[str, Depends(get_business_id)]

Limit = Annotated[int, Query(ge=1, le=100)]
Offset = Annotated[int, Query(ge=0)]


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Check service health."""
    if _service is None:
        return HealthResponse(status="unhealthy", version=__version__, storage_connected=False)

    dispatcher_running = _service.dispatcher.is_running
    scheduler_running = _service.scheduler.is_running
    return HealthResponse(
        status="healthy" if dispatcher_running and scheduler_running else "degraded",
        version=__version__,
        storage_connected=True,
        dispatcher_running=dispatcher_running,
        scheduler_running=scheduler_running,
    )


# Webhooks


@router.post(
    "/webhooks",
    response_model=WebhookCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["webhooks"],
)
async def create_webhook(
    request: WebhookCreateRequest,
    service: ServiceDep,
    business_id: BusinessDep,
) -> WebhookCreatedResponse:
    """Register a webhook.

    The response includes the signing secret. It is not returned by any
    other endpoint.
    """
    webhook = await service.create_webhook(
        business_id,
        request.url,
        request.events,
        description=request.description,
        enabled=request.enabled,
    )
    return WebhookCreatedResponse.from_webhook(webhook)


@router.get("/webhooks", response_model=WebhookListResponse, tags=["webhooks"])
async def list_webhooks(
    service: ServiceDep,
    business_id: BusinessDep,
    limit: Limit = 50,
    offset: Offset = 0,
) -> WebhookListResponse:
    """List the business's webhooks, newest first."""
    webhooks, total = await service.list_webhooks(business_id, limit=limit, offset=offset)
    return WebhookListResponse(
        webhooks=[WebhookResponse.from_webhook(w) for w in webhooks],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/webhooks/{webhook_id}", response_model=WebhookResponse, tags=["webhooks"])
async def get_webhook(
    webhook_id: str,
    service: ServiceDep,
    business_id: BusinessDep,
) -> WebhookResponse:
    """Get a webhook."""
    webhook = await service.get_webhook(business_id, webhook_id)
    return WebhookResponse.from_webhook(webhook)


@router.patch("/webhooks/{webhook_id}", response_model=WebhookResponse, tags=["webhooks"])
async def update_webhook(
    webhook_id: str,
    request: WebhookUpdateRequest,
    service: ServiceDep,
    business_id: BusinessDep,
) -> WebhookResponse:
    """Update a webhook's URL, events, enabled flag or description."""
    changes = {name: getattr(request, name) for name in request.model_fields_set}
    webhook = await service.update_webhook(business_id, webhook_id, **changes)
    return WebhookResponse.from_webhook(webhook)


@router.delete(
    "/webhooks/{webhook_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    tags=["webhooks"],
)
async def delete_webhook(
    webhook_id: str,
    service: ServiceDep,
    business_id: BusinessDep,
) -> Response:
    """Delete a webhook. Delivery history is kept."""
    await service.delete_webhook(business_id, webhook_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/webhooks/{webhook_id}/stats",
    response_model=WebhookStatsResponse,
    tags=["webhooks"],
)
async def get_webhook_stats(
    webhook_id: str,
    service: ServiceDep,
    business_id: BusinessDep,
) -> WebhookStatsResponse:
    """Delivery counts and success rate for a webhook."""
    stats = await service.get_stats(business_id, webhook_id)
    return WebhookStatsResponse.from_stats(webhook_id, stats)


@router.post(
    "/webhooks/{webhook_id}/test",
    response_model=DeliveryResponse,
    tags=["webhooks"],
)
async def send_test_webhook(
    webhook_id: str,
    service: ServiceDep,
    business_id: BusinessDep,
) -> DeliveryResponse:
    """Send a ``webhook.test`` event and return the delivery after its first attempt."""
    delivery = await service.send_test(business_id, webhook_id)
    return DeliveryResponse.from_delivery(delivery)


# Deliveries


@router.get(
    "/webhooks/{webhook_id}/deliveries",
    response_model=DeliveryListResponse,
    tags=["deliveries"],
)
async def list_deliveries(
    webhook_id: str,
    service: ServiceDep,
    business_id: BusinessDep,
    status_filter: Annotated[DeliveryStatus | None, Query(alias="status")] = None,
    limit: Limit = 50,
    offset: Offset = 0,
) -> DeliveryListResponse:
    """List a webhook's deliveries, newest first."""
    deliveries, total = await service.list_deliveries(
        business_id,
        webhook_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return DeliveryListResponse(
        deliveries=[DeliveryResponse.from_delivery(d) for d in deliveries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/webhooks/{webhook_id}/deliveries/{delivery_id}",
    response_model=DeliveryResponse,
    tags=["deliveries"],
)
async def get_delivery(
    webhook_id: str,
    delivery_id: str,
    service: ServiceDep,
    business_id: BusinessDep,
) -> DeliveryResponse:
    """Get a single delivery."""
    delivery = await service.get_delivery(business_id, webhook_id, delivery_id)
    return DeliveryResponse.from_delivery(delivery)


@router.post(
    "/webhooks/{webhook_id}/deliveries/{delivery_id}/retry",
    response_model=RetryResponse,
    tags=["deliveries"],
)
async def retry_delivery(
    webhook_id: str,
    delivery_id: str,
    service: ServiceDep,
    business_id: BusinessDep,
) -> RetryResponse:
    """Manually retry a ``failed`` or ``retrying`` delivery now.

    Returns 400 if the delivery is pending, in flight, succeeded or has
    used all of its attempts; 404 if it is not the caller's.
    """
    result = await service.retry_delivery(business_id, webhook_id, delivery_id)
    logger.info(
        "Manual retry requested",
        delivery_id=delivery_id,
        business_id=business_id,
        attempted=result.attempted,
        status=result.delivery.status.value,
    )
    return RetryResponse(
        delivery=DeliveryResponse.from_delivery(result.delivery),
        attempted=result.attempted,
    )


# Events


@router.post(
    "/events",
    response_model=PublishEventResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["events"],
)
async def publish_event(
    request: PublishEventRequest,
    service: ServiceDep,
    business_id: BusinessDep,
) -> PublishEventResponse:
    """Publish a domain event to the business's subscribed webhooks."""
    fields: dict[str, object] = {
        "business_id": business_id,
        "event_type": request.event_type,
        "payload": request.payload,
    }
    if request.event_id is not None:
        fields["id"] = request.event_id
    if request.occurred_at is not None:
        fields["occurred_at"] = request.occurred_at
    event = WebhookEvent.model_validate(fields)

    deliveries = await service.publish(event)
    return PublishEventResponse(event_id=event.id, delivery_ids=[d.id for d in deliveries])
