import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from billing.api.v1.deps import get_retry_manager, get_retry_processor, http_error
from billing.core.config import settings
from billing.core.exceptions import BillingError
from billing.models.payment_retry import RetryStatus
from billing.services.payment_retry_manager import PaymentRetryManager, RetryStatistics
from billing.services.payment_retry_processor import PaymentRetryProcessor, RetryBatchResult
from billing.services.retry_policy import RetryStatusReport

router = APIRouter()
logger = logging.getLogger(__name__)


class ScheduleRetryRequest(BaseModel):
    payment_id: str
    invoice_id: str
    subscription_id: str
    failure_reason: str


class PaymentRetryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    payment_id: str
    invoice_id: str
    subscription_id: str
    attempt_number: int
    max_attempts: int
    status: RetryStatus
    first_failure_at: datetime
    last_retry_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    succeeded_at: Optional[datetime] = None
    failure_reason: str
    last_error: Optional[str] = None
    retry_history: List[Dict[str, Any]] = []
    meta: Optional[Dict[str, Any]] = Field(default=None, serialization_alias="metadata")


class PaymentRetryDetail(BaseModel):
    retry: PaymentRetryResponse
    status: Optional[RetryStatusReport] = None
    customer_message: Optional[str] = None


@router.post("", response_model=PaymentRetryResponse, status_code=status.HTTP_201_CREATED)
async def schedule_retry(
    request: ScheduleRetryRequest,
    manager: PaymentRetryManager = Depends(get_retry_manager),
):
    """Open a retry campaign for a failed payment (idempotent on payment_id)"""
    logger.info(f"schedule_retry: Entry - payment: {request.payment_id}")
    return manager.schedule_retry(
        request.payment_id,
        request.invoice_id,
        request.subscription_id,
        request.failure_reason,
    )


@router.get("/stats", response_model=RetryStatistics)
async def get_statistics(manager: PaymentRetryManager = Depends(get_retry_manager)):
    return manager.get_statistics()


@router.get("/policy")
async def get_policy(manager: PaymentRetryManager = Depends(get_retry_manager)):
    return {"policy": manager.policy.get_retry_policy()}


@router.post("/jobs/process", response_model=RetryBatchResult)
async def process_retries(processor: PaymentRetryProcessor = Depends(get_retry_processor)):
    """Manual trigger for the retry batch"""
    return await processor.process_retries()


@router.post("/jobs/cleanup")
async def cleanup_retries(
    days: int = Query(default=settings.retry_retention_days, ge=1),
    processor: PaymentRetryProcessor = Depends(get_retry_processor),
):
    deleted = processor.cleanup_old_retries(days)
    return {"deleted": deleted}


@router.get("/subscription/{subscription_id}", response_model=list[PaymentRetryResponse])
async def list_subscription_retries(
    subscription_id: str,
    manager: PaymentRetryManager = Depends(get_retry_manager),
):
    return manager.get_subscription_retries(subscription_id)


@router.get("/{payment_id}", response_model=PaymentRetryDetail)
async def get_retry(
    payment_id: str,
    manager: PaymentRetryManager = Depends(get_retry_manager),
):
    try:
        retry = manager.get_retry(payment_id)
    except BillingError as e:
        raise http_error(e)

    report = manager.get_retry_status(payment_id)
    return PaymentRetryDetail(
        retry=PaymentRetryResponse.model_validate(retry),
        status=report,
        customer_message=manager.policy.generate_customer_message(report) if report else None,
    )


@router.post("/{payment_id}/cancel", response_model=PaymentRetryResponse)
async def cancel_retry(
    payment_id: str,
    manager: PaymentRetryManager = Depends(get_retry_manager),
):
    logger.info(f"cancel_retry: Entry - payment: {payment_id}")

    retry = manager.cancel_retry(payment_id)
    if retry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No retry record for payment {payment_id}"
        )
    return retry
