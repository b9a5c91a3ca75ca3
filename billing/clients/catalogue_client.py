from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from billing.clients.base import ServiceClient
from billing.core.cache import get_cached_plan, set_cached_plan
from billing.core.config import settings
from billing.core.exceptions import NotFoundError
from billing.models.subscription import BillingCycle


class CataloguePlan(BaseModel):
    """Plan details needed by the subscription lifecycle"""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    price: Decimal
    billing_cycle: BillingCycle = Field(alias="billingCycle")
    trial_enabled: bool = Field(default=False, alias="trialEnabled")
    trial_days: int = Field(default=0, alias="trialDays")

    def offers_trial(self) -> bool:
        return self.trial_enabled and self.trial_days > 0


class CatalogueClient(ServiceClient):
    service_name = "catalogue-svc"

    def __init__(self, base_url: str = None, use_cache: bool = True, **kwargs):
        super().__init__(base_url or settings.catalogue_service_url, **kwargs)
        self.use_cache = use_cache

    async def get_plan_by_id(self, plan_id: str) -> CataloguePlan:
        """Look up a plan; NotFoundError when the catalogue has no such plan"""
        self.logger.info(f"get_plan_by_id: Entry - plan: {plan_id}")

        if self.use_cache:
            cached = get_cached_plan(str(plan_id))
            if cached:
                return CataloguePlan.model_validate(cached)

        body = await self._request("GET", f"/plans/{plan_id}", not_found_message=f"Plan {plan_id} not found")
        # Catalogue answers either {"plan": {...}} or the bare plan
        raw: Optional[dict] = body.get("plan", body) if isinstance(body, dict) else None
        if not raw:
            raise NotFoundError(f"Plan {plan_id} not found")

        plan = CataloguePlan.model_validate({**raw, "id": str(plan_id)})
        if self.use_cache:
            set_cached_plan(str(plan_id), plan.model_dump(mode="json", by_alias=True))

        self.logger.info(f"get_plan_by_id: Success - plan: {plan_id}, name: {plan.name}")
        return plan
