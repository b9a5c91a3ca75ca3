from billing.clients.base import ServiceClient
from billing.core.config import settings


class CustomerClient(ServiceClient):
    service_name = "customer-svc"

    def __init__(self, base_url: str = None, **kwargs):
        super().__init__(base_url or settings.customer_service_url, **kwargs)

    async def get_customer_by_id(self, customer_id: str) -> dict:
        """Existence check; NotFoundError when the customer is unknown"""
        body = await self._request(
            "GET",
            f"/customers/{customer_id}",
            not_found_message=f"Customer {customer_id} not found",
        )
        return body or {}
