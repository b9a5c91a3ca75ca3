from fastapi import APIRouter
from billing.api.v1.routes import subscriptions, payment_retries, events

api_router = APIRouter()

api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
api_router.include_router(payment_retries.router, prefix="/payment-retries", tags=["payment-retries"])
api_router.include_router(events.router, prefix="/events", tags=["events"])
