import logging
from typing import Any, Optional

import httpx

from billing.core.config import settings
from billing.core.exceptions import CollaboratorError, NotFoundError

logger = logging.getLogger(__name__)


class ServiceClient:
    """Thin JSON-over-HTTP client for a collaborator service"""

    service_name = "service"

    def __init__(self, base_url: str, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self._transport = transport
        self.logger = logging.getLogger(self.__class__.__module__)

    async def _request(self, method: str, path: str, not_found_message: str = None, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            self.logger.error(f"{self.service_name}: {method} {path} failed - {e}")
            raise CollaboratorError(
                f"{self.service_name} request failed: {e}",
                service=self.service_name,
                context={"path": path},
            ) from e

        if response.status_code == 404 and not_found_message:
            raise NotFoundError(not_found_message, context={"path": path})

        if response.is_error:
            self.logger.error(f"{self.service_name}: {method} {path} returned {response.status_code}")
            raise CollaboratorError(
                f"{self.service_name} returned {response.status_code}",
                service=self.service_name,
                context={"path": path, "status_code": response.status_code, "body": response.text[:500]},
            )

        if not response.content:
            return None
        return response.json()
