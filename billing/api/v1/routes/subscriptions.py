import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field

from billing.api.v1.deps import get_event_publisher, get_subscription_service, http_error
from billing.core.exceptions import BillingError
from billing.events.publisher import EventPublisher
from billing.models.subscription import BillingCycle, SubscriptionStatus
from billing.services.subscription_service import LifecycleResult, SubscriptionService, SubscriptionStats, SweepResult

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateSubscriptionRequest(BaseModel):
    customer_id: str
    plan_id: str
    promotion_code: Optional[str] = None
    use_trial: bool = False
    metadata: Optional[Dict[str, Any]] = None


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = None
    cancel_at_period_end: bool = False


class ChangePlanRequest(BaseModel):
    new_plan_id: str
    immediate: bool = False


class UpdateStatusRequest(BaseModel):
    status: SubscriptionStatus
    reason: Optional[str] = None


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    plan_id: str
    plan_name: Optional[str] = None
    amount: float
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    is_trial_used: bool
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    meta: Optional[Dict[str, Any]] = Field(default=None, serialization_alias="metadata")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class HistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    subscription_id: str
    action: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    previous_plan_id: Optional[str] = None
    new_plan_id: Optional[str] = None
    details: Optional[str] = None
    meta: Optional[Dict[str, Any]] = Field(default=None, serialization_alias="metadata")
    created_at: Optional[datetime] = None


class SweepResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int


async def _publish(publisher: EventPublisher, result: LifecycleResult) -> SubscriptionResponse:
    await publisher.publish(result.events)
    return SubscriptionResponse.model_validate(result.subscription)


async def _publish_sweep(publisher: EventPublisher, sweep: SweepResult) -> SweepResponse:
    await publisher.publish(sweep.events)
    return SweepResponse(processed=sweep.processed, succeeded=sweep.succeeded, failed=sweep.failed)


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: CreateSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Start a subscription. Re-posting while the customer's subscription is
    still pending returns that same subscription.
    """
    logger.info(f"create_subscription: Entry - customer: {request.customer_id}, plan: {request.plan_id}")

    try:
        result = await service.create(
            request.customer_id,
            request.plan_id,
            promotion_code=request.promotion_code,
            use_trial=request.use_trial,
            metadata=request.metadata,
        )
        return await _publish(publisher, result)
    except BillingError as e:
        logger.error(f"create_subscription: Failure - {e.message}")
        raise http_error(e)


@router.get("", response_model=list[SubscriptionResponse])
async def list_subscriptions(service: SubscriptionService = Depends(get_subscription_service)):
    return service.list_all()


@router.get("/stats", response_model=SubscriptionStats)
async def get_stats(service: SubscriptionService = Depends(get_subscription_service)):
    return service.get_stats()


@router.post("/jobs/trial-expiry", response_model=SweepResponse)
async def run_trial_expiry(
    service: SubscriptionService = Depends(get_subscription_service),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """Manual trigger for the trial-expiry sweep"""
    return await _publish_sweep(publisher, service.process_trial_expiry())


@router.post("/jobs/renewals", response_model=SweepResponse)
async def run_renewals(
    service: SubscriptionService = Depends(get_subscription_service),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """Manual trigger for the renewal look-ahead sweep"""
    return await _publish_sweep(publisher, service.process_renewals())


@router.get("/customer/{customer_id}", response_model=list[SubscriptionResponse])
async def list_customer_subscriptions(
    customer_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.list_by_customer(customer_id)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        return service.get(subscription_id)
    except BillingError as e:
        raise http_error(e)


@router.get("/{subscription_id}/history", response_model=list[HistoryResponse])
async def get_subscription_history(
    subscription_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        return service.get_history(subscription_id)
    except BillingError as e:
        raise http_error(e)


@router.post("/{subscription_id}/activate", response_model=SubscriptionResponse)
async def activate_subscription(
    subscription_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    logger.info(f"activate_subscription: Entry - subscription: {subscription_id}")

    try:
        return await _publish(publisher, service.activate(subscription_id))
    except BillingError as e:
        logger.error(f"activate_subscription: Failure - {e.message}")
        raise http_error(e)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: str,
    request: CancelSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    logger.info(f"cancel_subscription: Entry - subscription: {subscription_id}")

    try:
        result = service.cancel(subscription_id, request.reason, request.cancel_at_period_end)
        return await _publish(publisher, result)
    except BillingError as e:
        logger.error(f"cancel_subscription: Failure - {e.message}")
        raise http_error(e)


@router.post("/{subscription_id}/renew", response_model=SubscriptionResponse)
async def renew_subscription(
    subscription_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    try:
        return await _publish(publisher, service.renew(subscription_id))
    except BillingError as e:
        logger.error(f"renew_subscription: Failure - {e.message}")
        raise http_error(e)


@router.post("/{subscription_id}/change-plan", response_model=SubscriptionResponse)
async def change_plan(
    subscription_id: str,
    request: ChangePlanRequest,
    service: SubscriptionService = Depends(get_subscription_service),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    logger.info(f"change_plan: Entry - subscription: {subscription_id}, plan: {request.new_plan_id}")

    try:
        result = await service.change_plan(subscription_id, request.new_plan_id, immediate=request.immediate)
        return await _publish(publisher, result)
    except BillingError as e:
        logger.error(f"change_plan: Failure - {e.message}")
        raise http_error(e)


@router.post("/{subscription_id}/status", response_model=SubscriptionResponse)
async def update_status(
    subscription_id: str,
    request: UpdateStatusRequest,
    service: SubscriptionService = Depends(get_subscription_service),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    try:
        result = service.update_status(subscription_id, request.status, request.reason)
        return await _publish(publisher, result)
    except BillingError as e:
        logger.error(f"update_status: Failure - {e.message}")
        raise http_error(e)
