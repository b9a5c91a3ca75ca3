from billing.clients.base import ServiceClient
from billing.core.config import settings
from billing.core.exceptions import BillingError

FAILED_PAYMENT_STATUSES = ("failed", "declined", "cancelled")


class PaymentAttemptError(BillingError):
    """The payment collaborator processed the attempt and it did not go through"""

    def __init__(self, message: str, invoice_id: str = None):
        super().__init__(message, "PAYMENT_ATTEMPT_FAILED", status_code=402, context={"invoice_id": invoice_id})


class PaymentClient(ServiceClient):
    service_name = "payment-svc"

    def __init__(self, base_url: str = None, **kwargs):
        super().__init__(base_url or settings.payment_service_url, **kwargs)

    async def get_payments_by_invoice(self, invoice_id: str) -> list[dict]:
        body = await self._request("GET", f"/payments/invoice/{invoice_id}")
        if isinstance(body, dict):
            return body.get("payments", [])
        return body or []

    async def initiate_payment(self, payload: dict) -> dict:
        return await self._request("POST", "/payments/initiate", json=payload) or {}

    async def reinitiate_payment(self, invoice_id: str, attempt_number: int) -> dict:
        """
        Start a fresh attempt for an invoice's most recent payment.

        Raises PaymentAttemptError when there is nothing to retry or the
        collaborator reports the attempt as failed.
        """
        payments = await self.get_payments_by_invoice(invoice_id)
        if not payments:
            raise PaymentAttemptError(f"No payment found for invoice {invoice_id}", invoice_id=invoice_id)

        payment = payments[0]
        result = await self.initiate_payment({
            "invoiceId": invoice_id,
            "invoiceNumber": payment.get("invoiceNumber"),
            "amount": payment.get("totalAmount", payment.get("amount")),
            "customerId": payment.get("customerId"),
            "method": "auto_retry",
            "description": f"Retry attempt {attempt_number}",
        })

        if str(result.get("status", "")).lower() in FAILED_PAYMENT_STATUSES:
            raise PaymentAttemptError(
                result.get("reason") or result.get("error") or "Payment declined",
                invoice_id=invoice_id,
            )
        return result
