import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel
from sqlalchemy.orm import Session

from billing.clients.catalogue_client import CatalogueClient
from billing.clients.customer_client import CustomerClient
from billing.core.config import settings
from billing.core.exceptions import ConflictError, InvalidStateError, NotFoundError
from billing.core.timeutils import add_billing_cycle, utcnow
from billing.events.types import DomainEvent, EventTopics, make_event, to_jsonable
from billing.models.subscription import Subscription, SubscriptionStatus
from billing.models.subscription_history import SubscriptionHistory
from billing.repositories.outbox_repository import OutboxRepository
from billing.repositories.subscription_repository import (SubscriptionHistoryRepository,
                                                          SubscriptionRepository)
from billing.services.analytics_service import AnalyticsService
from billing.services.proration_service import ProrationService, round_currency

logger = logging.getLogger(__name__)


@dataclass
class LifecycleResult:
    """A committed subscription mutation and the events it produced"""
    subscription: Subscription
    events: list[DomainEvent] = field(default_factory=list)


@dataclass
class SweepResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    events: list[DomainEvent] = field(default_factory=list)


class SubscriptionStats(BaseModel):
    active_count: int
    cancelled_count: int
    expired_count: int
    monthly_revenue: float
    total_revenue: float
    avg_subscription_value: float


class SubscriptionService:
    """
    Subscription state machine.

        PENDING --activate--> ACTIVE
        TRIAL --trial expiry / convert--> ACTIVE
        ACTIVE | PAST_DUE --renew--> same status, next period
        any non-cancelled --cancel--> CANCELLED (or flagged for period end)

    Every mutation writes its history row and stages its events in the outbox
    within one transaction. Events are returned to the caller for publishing
    once that transaction has committed.
    """

    def __init__(
        self,
        db: Session,
        catalogue: CatalogueClient = None,
        customers: CustomerClient = None,
        proration: ProrationService = None,
        repository: SubscriptionRepository = None,
        history: SubscriptionHistoryRepository = None,
    ):
        self.db = db
        self.subscriptions = repository or SubscriptionRepository(db)
        self.history = history or SubscriptionHistoryRepository(db)
        self.outbox = OutboxRepository(db)
        self.catalogue = catalogue or CatalogueClient()
        self.customers = customers or CustomerClient()
        self.proration = proration or ProrationService(settings.proration_threshold)
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    # Queries

    def get(self, subscription_id: str) -> Subscription:
        subscription = self.subscriptions.find_by_id(subscription_id)
        if not subscription:
            raise NotFoundError(f"Subscription {subscription_id} not found", context={"subscription_id": subscription_id})
        return subscription

    def list_by_customer(self, customer_id: str) -> list[Subscription]:
        return self.subscriptions.list_by_customer(customer_id)

    def list_all(self) -> list[Subscription]:
        return self.subscriptions.list_all()

    def get_history(self, subscription_id: str) -> list[SubscriptionHistory]:
        self.get(subscription_id)
        return self.history.list_for_subscription(subscription_id)

    def find_subscriptions_to_renew(self, now: datetime = None) -> list[Subscription]:
        """ACTIVE subscriptions not ending at period end whose period closes within the look-ahead window"""
        cutoff = (now or utcnow()) + timedelta(days=settings.renewal_lookahead_days)
        return self.subscriptions.find_due_for_renewal(cutoff)

    def get_stats(self) -> SubscriptionStats:
        subscriptions = self.subscriptions.list_all()
        active = [s for s in subscriptions if s.status == SubscriptionStatus.ACTIVE]

        monthly_revenue = sum((Decimal(s.amount) for s in active), Decimal("0"))
        total_revenue = sum((Decimal(s.amount) for s in subscriptions), Decimal("0"))
        average = monthly_revenue / len(active) if active else Decimal("0")

        return SubscriptionStats(
            active_count=len(active),
            cancelled_count=sum(1 for s in subscriptions if s.status == SubscriptionStatus.CANCELLED),
            expired_count=sum(1 for s in subscriptions if s.status == SubscriptionStatus.EXPIRED),
            monthly_revenue=float(round_currency(monthly_revenue)),
            total_revenue=float(round_currency(total_revenue)),
            avg_subscription_value=float(round_currency(average)),
        )

    # Mutations

    async def create(
        self,
        customer_id: str,
        plan_id: str,
        promotion_code: str = None,
        use_trial: bool = False,
        metadata: dict = None,
    ) -> LifecycleResult:
        """
        Start a subscription for a customer.

        Returns the customer's existing PENDING subscription unchanged (with no
        events) so a retried checkout does not open a second one. Raises
        ConflictError when the customer already has an ACTIVE subscription.
        """
        self.logger.info(f"create: Entry - customer: {customer_id}, plan: {plan_id}, use_trial: {use_trial}")

        try:
            await self.customers.get_customer_by_id(customer_id)
            plan = await self.catalogue.get_plan_by_id(plan_id)

            existing = self.subscriptions.find_open_for_customer(customer_id)
            if existing and existing.status == SubscriptionStatus.ACTIVE:
                raise ConflictError(
                    f"Customer {customer_id} already has an active subscription (ID: {existing.id})",
                    context={"customer_id": customer_id, "subscription_id": existing.id},
                )
            if existing:
                self.logger.info(f"create: Success - customer {customer_id} already has pending subscription {existing.id}")
                return LifecycleResult(existing)

            now = utcnow()
            status = SubscriptionStatus.PENDING
            trial_start = trial_end = None
            if use_trial and plan.offers_trial():
                status = SubscriptionStatus.TRIAL
                trial_start = now
                trial_end = now + timedelta(days=plan.trial_days)

            meta = dict(metadata or {})
            if promotion_code:
                meta['promotionCode'] = promotion_code

            subscription = Subscription(
                id=str(uuid.uuid4()),
                customer_id=customer_id,
                plan_id=str(plan_id),
                plan_name=plan.name,
                amount=plan.price,
                billing_cycle=plan.billing_cycle,
                status=status,
                current_period_start=now,
                current_period_end=add_billing_cycle(now, plan.billing_cycle),
                is_trial_used=status == SubscriptionStatus.TRIAL,
                trial_start=trial_start,
                trial_end=trial_end,
                cancel_at_period_end=False,
                meta=to_jsonable(meta) or None,
                created_at=now,
                updated_at=now,
            )

            events = [make_event(EventTopics.SUBSCRIPTION_CREATED, {
                **self._identity(subscription),
                'planName': subscription.plan_name,
                'status': subscription.status,
                'currentPeriodStart': subscription.current_period_start,
                'currentPeriodEnd': subscription.current_period_end,
                'trialEnd': subscription.trial_end,
                'amount': subscription.amount,
                'billingCycle': subscription.billing_cycle,
                'createdAt': now,
            })]
            if status == SubscriptionStatus.TRIAL:
                events.append(make_event(EventTopics.SUBSCRIPTION_TRIAL_STARTED, {
                    **self._identity(subscription),
                    'trialStart': trial_start,
                    'trialEnd': trial_end,
                    'trialDays': plan.trial_days,
                }))

            self.subscriptions.save(subscription)
            result = self._commit(subscription, self._history_row(
                subscription,
                action='created',
                new_status=status,
                details=f"Subscription created for plan {plan.name}",
                meta={'planId': str(plan_id), 'useTrial': use_trial},
            ), events)

            self.analytics.log_success(action='create_subscription', subject_id=subscription.id, parameters={'status': status.value})
            self.logger.info(f"create: Success - subscription: {subscription.id}, status: {status.value}")
            return result
        except Exception as e:
            self._fail('create_subscription', customer_id, e)
            raise

    def activate(self, subscription_id: str) -> LifecycleResult:
        """PENDING -> ACTIVE once the first payment has cleared"""
        self.logger.info(f"activate: Entry - subscription: {subscription_id}")

        try:
            subscription = self.get(subscription_id)
            if subscription.status != SubscriptionStatus.PENDING:
                raise InvalidStateError(
                    f"Cannot activate subscription with status: {subscription.status.value}. Must be PENDING.",
                    context={"subscription_id": subscription_id, "status": subscription.status.value},
                )

            now = utcnow()
            subscription.status = SubscriptionStatus.ACTIVE
            result = self._commit(subscription, self._history_row(
                subscription,
                action='status_changed',
                previous_status=SubscriptionStatus.PENDING,
                new_status=SubscriptionStatus.ACTIVE,
                details="Subscription activated after payment",
            ), [make_event(EventTopics.SUBSCRIPTION_ACTIVATED, {
                **self._identity(subscription),
                'activatedAt': now,
            })])

            self.logger.info(f"activate: Success - subscription: {subscription_id}")
            return result
        except Exception as e:
            self._fail('activate_subscription', subscription_id, e)
            raise

    def cancel(self, subscription_id: str, reason: str = None, cancel_at_period_end: bool = False) -> LifecycleResult:
        """
        Cancel now, or flag the subscription to end with its current period.

        A period-end cancellation leaves the status untouched; a later
        immediate cancel on the same record still goes through.
        """
        self.logger.info(f"cancel: Entry - subscription: {subscription_id}, at_period_end: {cancel_at_period_end}")

        try:
            subscription = self.get(subscription_id)
            if subscription.is_cancelled():
                raise InvalidStateError("Subscription is already cancelled", context={"subscription_id": subscription_id})

            now = utcnow()
            previous_status = subscription.status
            subscription.cancellation_reason = reason
            if cancel_at_period_end:
                subscription.cancel_at_period_end = True
            else:
                subscription.status = SubscriptionStatus.CANCELLED
                subscription.cancelled_at = now

            result = self._commit(subscription, self._history_row(
                subscription,
                action='cancelled',
                previous_status=previous_status,
                new_status=subscription.status,
                details=reason or "Subscription cancelled by customer",
                meta={'cancelAtPeriodEnd': cancel_at_period_end},
            ), [make_event(EventTopics.SUBSCRIPTION_CANCELLED, {
                **self._identity(subscription),
                'cancelledAt': subscription.cancelled_at or now,
                'cancelAtPeriodEnd': subscription.cancel_at_period_end,
                'reason': reason,
            })])

            self.logger.info(f"cancel: Success - subscription: {subscription_id}, status: {subscription.status.value}")
            return result
        except Exception as e:
            self._fail('cancel_subscription', subscription_id, e)
            raise

    def renew(self, subscription_id: str) -> LifecycleResult:
        """Advance a billable subscription by one cycle, starting where the current period ends"""
        self.logger.info(f"renew: Entry - subscription: {subscription_id}")

        try:
            subscription = self.get(subscription_id)
            if not subscription.should_bill():
                raise InvalidStateError(
                    "Subscription cannot be renewed",
                    context={
                        "subscription_id": subscription_id,
                        "status": subscription.status.value,
                        "cancel_at_period_end": subscription.cancel_at_period_end,
                    },
                )

            previous_status = subscription.status
            previous_period_end = subscription.current_period_end
            subscription.current_period_start = previous_period_end
            subscription.current_period_end = add_billing_cycle(previous_period_end, subscription.billing_cycle)

            result = self._commit(subscription, self._history_row(
                subscription,
                action='renewed',
                previous_status=previous_status,
                new_status=subscription.status,
                details=f"Subscription renewed until {subscription.current_period_end.isoformat()}",
            ), [make_event(EventTopics.SUBSCRIPTION_RENEWED, {
                **self._identity(subscription),
                'previousPeriodEnd': previous_period_end,
                'currentPeriodStart': subscription.current_period_start,
                'currentPeriodEnd': subscription.current_period_end,
                'amount': subscription.amount,
                'renewedAt': utcnow(),
            })])

            self.logger.info(f"renew: Success - subscription: {subscription_id}, until: {subscription.current_period_end}")
            return result
        except Exception as e:
            self._fail('renew_subscription', subscription_id, e)
            raise

    async def change_plan(self, subscription_id: str, new_plan_id: str, immediate: bool = False) -> LifecycleResult:
        """
        Move an ACTIVE subscription to another plan with proration.

        immediate=True starts a fresh period now and charges the new plan in
        full; otherwise the current period is kept and both plans are prorated
        over its remaining days. A charge or credit event follows only when the
        net amount clears the proration threshold.
        """
        self.logger.info(f"change_plan: Entry - subscription: {subscription_id}, plan: {new_plan_id}, immediate: {immediate}")

        try:
            subscription = self.get(subscription_id)
            if not subscription.is_active():
                raise InvalidStateError(
                    "Can only change plan for active subscriptions",
                    context={"subscription_id": subscription_id, "status": subscription.status.value},
                )

            new_plan = await self.catalogue.get_plan_by_id(new_plan_id)

            now = utcnow()
            previous_plan_id = subscription.plan_id
            previous_amount = Decimal(subscription.amount)
            calculate = (
                self.proration.calculate_immediate_change_proration if immediate
                else self.proration.calculate_proration
            )
            proration = calculate(
                previous_amount,
                new_plan.price,
                subscription.current_period_start,
                subscription.current_period_end,
                now,
                new_plan.billing_cycle,
            )
            change_type = self.proration.get_change_type(previous_amount, new_plan.price)
            description = self.proration.generate_proration_description(proration, change_type)
            snapshot = proration.to_payload()

            self.logger.info(
                f"change_plan: {change_type} - old: {previous_amount}, new: {new_plan.price}, "
                f"credit: {proration.credit_amount}, charge: {proration.charge_amount}, "
                f"net: {proration.net_amount}, remaining days: {proration.remaining_days}"
            )

            subscription.plan_id = str(new_plan_id)
            subscription.plan_name = new_plan.name
            subscription.amount = new_plan.price
            subscription.billing_cycle = new_plan.billing_cycle
            if immediate:
                subscription.current_period_start = now
                subscription.current_period_end = proration.next_billing_date

            subscription.meta = {
                **(subscription.meta or {}),
                'lastProration': {
                    'date': now.isoformat(),
                    'changeType': change_type,
                    'oldAmount': float(previous_amount),
                    'newAmount': float(new_plan.price),
                    'creditAmount': float(proration.credit_amount),
                    'netAmount': float(proration.net_amount),
                    'description': description,
                },
            }

            events = [make_event(EventTopics.SUBSCRIPTION_PLAN_CHANGED, {
                **self._identity(subscription),
                'previousPlanId': previous_plan_id,
                'newPlanId': subscription.plan_id,
                'previousAmount': previous_amount,
                'newAmount': new_plan.price,
                'changeType': change_type,
                'effectiveDate': now if immediate else subscription.current_period_end,
                'proration': snapshot,
            })]
            events.extend(self._proration_billing_events(subscription, proration.net_amount, description, snapshot))

            result = self._commit(subscription, self._history_row(
                subscription,
                action='plan_changed',
                previous_plan_id=previous_plan_id,
                new_plan_id=subscription.plan_id,
                details=f"Plan {change_type}d from {previous_plan_id} to {new_plan.name}. {description}",
                meta={'immediate': immediate, 'changeType': change_type, 'proration': snapshot},
            ), events)

            self.analytics.log_success(
                action='change_plan',
                subject_id=subscription_id,
                parameters={'change_type': change_type, 'net_amount': float(proration.net_amount)}
            )
            self.logger.info(f"change_plan: Success - subscription: {subscription_id}, plan: {new_plan.name}")
            return result
        except Exception as e:
            self._fail('change_plan', subscription_id, e)
            raise

    def update_status(
        self,
        subscription_id: str,
        new_status: Union[SubscriptionStatus, str],
        reason: str = None,
    ) -> LifecycleResult:
        """Unconditional status overwrite for event handlers (e.g. payment failure -> PAST_DUE)"""
        new_status = SubscriptionStatus(new_status)
        self.logger.info(f"update_status: Entry - subscription: {subscription_id}, status: {new_status.value}")

        try:
            subscription = self.get(subscription_id)
            previous_status = subscription.status
            subscription.status = new_status

            result = self._commit(subscription, self._history_row(
                subscription,
                action='status_changed',
                previous_status=previous_status,
                new_status=new_status,
                details=reason or f"Status changed from {previous_status.value} to {new_status.value}",
            ), [make_event(EventTopics.SUBSCRIPTION_UPDATED, {
                **self._identity(subscription),
                'changes': {'status': {'from': previous_status, 'to': new_status}},
                'previousStatus': previous_status,
                'newStatus': new_status,
                'reason': reason,
            })])

            self.logger.info(f"update_status: Success - subscription: {subscription_id}, {previous_status.value} -> {new_status.value}")
            return result
        except Exception as e:
            self._fail('update_subscription_status', subscription_id, e)
            raise

    def convert_trial_to_active(self, subscription_id: str) -> LifecycleResult:
        """End a trial early or at expiry; the event lets billing issue the first real invoice"""
        self.logger.info(f"convert_trial_to_active: Entry - subscription: {subscription_id}")

        try:
            subscription = self.get(subscription_id)
            if not subscription.is_on_trial():
                raise InvalidStateError(
                    "Subscription is not on trial",
                    context={"subscription_id": subscription_id, "status": subscription.status.value},
                )

            subscription.status = SubscriptionStatus.ACTIVE
            result = self._commit(subscription, self._history_row(
                subscription,
                action='trial_ended',
                previous_status=SubscriptionStatus.TRIAL,
                new_status=SubscriptionStatus.ACTIVE,
                details="Trial period ended, converted to active subscription",
                meta={'trialEnd': subscription.trial_end.isoformat() if subscription.trial_end else None},
            ), [make_event(EventTopics.SUBSCRIPTION_TRIAL_ENDED, {
                **self._identity(subscription),
                'planName': subscription.plan_name,
                'amount': subscription.amount,
                'billingCycle': subscription.billing_cycle,
                'trialEnd': subscription.trial_end,
                'convertedToActive': True,
                'currentPeriodStart': subscription.current_period_start,
                'currentPeriodEnd': subscription.current_period_end,
            })])

            self.logger.info(f"convert_trial_to_active: Success - subscription: {subscription_id}")
            return result
        except Exception as e:
            self._fail('convert_trial_to_active', subscription_id, e)
            raise

    # Sweeps

    def process_trial_expiry(self, now: datetime = None) -> SweepResult:
        """Convert every TRIAL subscription whose trial has ended"""
        now = now or utcnow()
        self.logger.info(f"process_trial_expiry: Entry - now: {now.isoformat()}")

        expired = self.subscriptions.find_expired_trials(now)
        sweep = SweepResult(processed=len(expired))

        for subscription_id in [s.id for s in expired]:
            try:
                result = self.convert_trial_to_active(subscription_id)
            except Exception as e:
                sweep.failed += 1
                self.logger.error(f"process_trial_expiry: Failure - subscription: {subscription_id}, error: {e}")
                continue
            sweep.succeeded += 1
            sweep.events.extend(result.events)

        self.logger.info(
            f"process_trial_expiry: Success - processed: {sweep.processed}, "
            f"converted: {sweep.succeeded}, failed: {sweep.failed}"
        )
        return sweep

    def process_renewals(self, now: datetime = None) -> SweepResult:
        """Renew every subscription returned by the look-ahead query"""
        due = self.find_subscriptions_to_renew(now)
        self.logger.info(f"process_renewals: Entry - {len(due)} subscriptions due")

        sweep = SweepResult(processed=len(due))
        for subscription_id in [s.id for s in due]:
            try:
                result = self.renew(subscription_id)
            except Exception as e:
                sweep.failed += 1
                self.logger.error(f"process_renewals: Failure - subscription: {subscription_id}, error: {e}")
                continue
            sweep.succeeded += 1
            sweep.events.extend(result.events)

        self.logger.info(
            f"process_renewals: Success - processed: {sweep.processed}, "
            f"renewed: {sweep.succeeded}, failed: {sweep.failed}"
        )
        return sweep

    # Internals

    def _proration_billing_events(self, subscription: Subscription, net_amount: Decimal, description: str, snapshot: dict) -> list[DomainEvent]:
        if not self.proration.should_apply_proration(net_amount):
            return []

        if net_amount > 0:
            return [make_event(EventTopics.INVOICE_CREATED, {
                **self._identity(subscription),
                'amount': net_amount,
                'invoiceType': 'proration_charge',
                'description': f"Proration charge for plan upgrade: {description}",
                'dueDate': utcnow(),
                'metadata': {'changeType': 'upgrade', 'proration': snapshot},
            })]

        return [make_event(EventTopics.BILLING_CREDIT_APPLIED, {
            **self._identity(subscription),
            'amount': abs(net_amount),
            'reason': f"Proration credit for plan downgrade: {description}",
            'metadata': {'changeType': 'downgrade', 'proration': snapshot},
        })]

    @staticmethod
    def _identity(subscription: Subscription) -> dict:
        return {
            'subscriptionId': subscription.id,
            'customerId': subscription.customer_id,
            'planId': subscription.plan_id,
        }

    @staticmethod
    def _history_row(
        subscription: Subscription,
        action: str,
        previous_status: Optional[SubscriptionStatus] = None,
        new_status: Optional[SubscriptionStatus] = None,
        previous_plan_id: str = None,
        new_plan_id: str = None,
        details: str = None,
        meta: dict = None,
    ) -> SubscriptionHistory:
        return SubscriptionHistory(
            id=str(uuid.uuid4()),
            subscription_id=subscription.id,
            action=action,
            previous_status=previous_status.value if previous_status else None,
            new_status=new_status.value if new_status else None,
            previous_plan_id=previous_plan_id,
            new_plan_id=new_plan_id,
            details=details,
            meta=to_jsonable(meta) if meta else None,
            created_at=utcnow(),
        )

    def _commit(self, subscription: Subscription, history_row: SubscriptionHistory, events: list[DomainEvent]) -> LifecycleResult:
        """Write the mutation, its history row and its outbox events atomically"""
        subscription.updated_at = utcnow()
        self.subscriptions.save(subscription)
        self.history.save(history_row)
        self.outbox.add_events(events)
        self.db.commit()
        self.db.refresh(subscription)
        return LifecycleResult(subscription, events)

    def _fail(self, action: str, subject_id: str, error: Exception):
        self.db.rollback()
        self.analytics.log_failure(action=action, error=str(error), subject_id=subject_id)
        self.logger.error(f"{action}: Failure - {error}")
