"""
Tests for SubscriptionService
"""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from billing.core.exceptions import ConflictError, InvalidStateError, NotFoundError
from billing.models.outbox_event import OutboxEvent
from billing.models.subscription import BillingCycle, Subscription, SubscriptionStatus
from billing.models.subscription_history import SubscriptionHistory
from billing.services.proration_service import ProrationService
from billing.services.subscription_service import SubscriptionService


@pytest.fixture(autouse=True)
def frozen_clock(now):
    with patch("billing.services.subscription_service.utcnow", return_value=now):
        yield now


@pytest.fixture
def service(db_session, catalogue, customers):
    return SubscriptionService(db_session, catalogue=catalogue, customers=customers, proration=ProrationService())


def event_types(result):
    return [event.event_type for event in result.events]


def outbox_types(db_session):
    return [row.event_type for row in db_session.query(OutboxEvent).order_by(OutboxEvent.created_at).all()]


def history_actions(db_session, subscription_id):
    rows = db_session.query(SubscriptionHistory).filter(SubscriptionHistory.subscription_id == subscription_id).all()
    return sorted(row.action for row in rows)


class TestCreate:

    @pytest.mark.asyncio
    async def test_creates_pending_subscription(self, service, db_session, now):
        result = await service.create("cust_1", "plan_basic")
        subscription = result.subscription

        assert subscription.status == SubscriptionStatus.PENDING
        assert subscription.plan_name == "Basic"
        assert subscription.amount == Decimal("30.00")
        assert subscription.billing_cycle == BillingCycle.MONTHLY
        assert subscription.current_period_start == now
        assert subscription.current_period_end == datetime(2025, 2, 15, 12, 0, 0)
        assert subscription.is_trial_used is False
        assert subscription.trial_end is None

        assert event_types(result) == ["subscription.created"]
        assert result.events[0].data["subscriptionId"] == subscription.id
        assert result.events[0].data["customerId"] == "cust_1"
        assert result.events[0].data["planId"] == "plan_basic"
        assert outbox_types(db_session) == ["subscription.created"]
        assert history_actions(db_session, subscription.id) == ["created"]

    @pytest.mark.asyncio
    async def test_creates_trial_when_plan_offers_one(self, service, db_session, now):
        result = await service.create("cust_1", "plan_trial", use_trial=True)
        subscription = result.subscription

        assert subscription.status == SubscriptionStatus.TRIAL
        assert subscription.is_trial_used is True
        assert subscription.trial_start == now
        assert subscription.trial_end == now + timedelta(days=14)
        assert event_types(result) == ["subscription.created", "subscription.trial.started"]
        assert result.events[1].data["trialDays"] == 14
        assert sorted(outbox_types(db_session)) == ["subscription.created", "subscription.trial.started"]

    @pytest.mark.asyncio
    async def test_trial_request_ignored_when_plan_has_no_trial(self, service):
        result = await service.create("cust_1", "plan_basic", use_trial=True)

        assert result.subscription.status == SubscriptionStatus.PENDING
        assert result.subscription.trial_end is None

    @pytest.mark.asyncio
    async def test_yearly_plan_gets_yearly_period(self, service, now):
        result = await service.create("cust_1", "plan_yearly")

        assert result.subscription.billing_cycle == BillingCycle.YEARLY
        assert result.subscription.current_period_end == datetime(2026, 1, 15, 12, 0, 0)

    @pytest.mark.asyncio
    async def test_promotion_code_and_metadata_are_kept(self, service):
        result = await service.create("cust_1", "plan_basic", promotion_code="WELCOME10", metadata={"source": "web"})

        assert result.subscription.meta == {"source": "web", "promotionCode": "WELCOME10"}

    @pytest.mark.asyncio
    async def test_pending_subscription_is_returned_again(self, service, db_session):
        first = await service.create("cust_1", "plan_basic")
        second = await service.create("cust_1", "plan_pro")

        assert second.subscription.id == first.subscription.id
        assert second.events == []
        assert db_session.query(Subscription).count() == 1
        assert db_session.query(OutboxEvent).count() == 1

    @pytest.mark.asyncio
    async def test_active_subscription_conflicts(self, service, make_subscription, db_session):
        existing = make_subscription()

        with pytest.raises(ConflictError) as exc_info:
            await service.create("cust_1", "plan_pro")

        assert exc_info.value.status_code == 409
        assert existing.id in exc_info.value.message
        assert db_session.query(Subscription).count() == 1

    @pytest.mark.asyncio
    async def test_other_customers_are_independent(self, service, make_subscription):
        make_subscription(customer_id="cust_2")

        result = await service.create("cust_1", "plan_basic")

        assert result.subscription.customer_id == "cust_1"

    @pytest.mark.asyncio
    async def test_unknown_plan(self, service, db_session):
        with pytest.raises(NotFoundError):
            await service.create("cust_1", "plan_missing")

        assert db_session.query(Subscription).count() == 0
        assert db_session.query(OutboxEvent).count() == 0

    @pytest.mark.asyncio
    async def test_unknown_customer(self, service, customers, catalogue, db_session):
        customers.get_customer_by_id.side_effect = NotFoundError("Customer cust_9 not found")

        with pytest.raises(NotFoundError):
            await service.create("cust_9", "plan_basic")

        catalogue.get_plan_by_id.assert_not_awaited()
        assert db_session.query(Subscription).count() == 0


class TestActivate:

    def test_pending_becomes_active(self, service, make_subscription, db_session):
        subscription = make_subscription(status=SubscriptionStatus.PENDING)

        result = service.activate(subscription.id)

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert event_types(result) == ["subscription.activated"]
        assert history_actions(db_session, subscription.id) == ["status_changed"]

    @pytest.mark.parametrize("status", [SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL, SubscriptionStatus.CANCELLED])
    def test_only_pending_can_be_activated(self, service, make_subscription, db_session, status):
        subscription = make_subscription(status=status)

        with pytest.raises(InvalidStateError):
            service.activate(subscription.id)

        assert db_session.query(OutboxEvent).count() == 0

    def test_unknown_subscription(self, service):
        with pytest.raises(NotFoundError):
            service.activate("missing")


class TestCancel:

    def test_cancel_at_period_end_then_immediately(self, service, make_subscription, db_session, now):
        subscription = make_subscription()

        flagged = service.cancel(subscription.id, "Too expensive", cancel_at_period_end=True)

        assert flagged.subscription.status == SubscriptionStatus.ACTIVE
        assert flagged.subscription.cancel_at_period_end is True
        assert flagged.subscription.cancelled_at is None
        assert flagged.subscription.cancellation_reason == "Too expensive"
        assert flagged.events[0].data["cancelAtPeriodEnd"] is True

        cancelled = service.cancel(subscription.id, "Changed my mind")

        assert cancelled.subscription.status == SubscriptionStatus.CANCELLED
        assert cancelled.subscription.cancelled_at == now
        assert cancelled.subscription.cancellation_reason == "Changed my mind"
        assert outbox_types(db_session) == ["subscription.cancelled", "subscription.cancelled"]
        assert history_actions(db_session, subscription.id) == ["cancelled", "cancelled"]

    def test_cancelled_subscription_cannot_be_cancelled_again(self, service, make_subscription):
        subscription = make_subscription(status=SubscriptionStatus.CANCELLED)

        with pytest.raises(InvalidStateError):
            service.cancel(subscription.id)

    def test_trial_can_be_cancelled(self, service, make_subscription):
        subscription = make_subscription(status=SubscriptionStatus.TRIAL)

        assert service.cancel(subscription.id).subscription.status == SubscriptionStatus.CANCELLED


class TestRenew:

    def test_active_subscription_moves_one_cycle(self, service, make_subscription, db_session):
        subscription = make_subscription()

        result = service.renew(subscription.id)

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.current_period_start == datetime(2025, 1, 31)
        assert result.subscription.current_period_end == datetime(2025, 2, 28)
        assert event_types(result) == ["subscription.renewed"]
        assert result.events[0].data["previousPeriodEnd"] == datetime(2025, 1, 31)
        assert history_actions(db_session, subscription.id) == ["renewed"]

    def test_past_due_subscription_renews(self, service, make_subscription):
        subscription = make_subscription(status=SubscriptionStatus.PAST_DUE)

        result = service.renew(subscription.id)

        assert result.subscription.status == SubscriptionStatus.PAST_DUE
        assert result.subscription.current_period_end == datetime(2025, 2, 28)

    def test_yearly_renewal(self, service, make_subscription):
        subscription = make_subscription(billing_cycle=BillingCycle.YEARLY, current_period_end=datetime(2024, 2, 29))

        assert service.renew(subscription.id).subscription.current_period_end == datetime(2025, 2, 28)

    @pytest.mark.parametrize("overrides", [
        {"cancel_at_period_end": True},
        {"status": SubscriptionStatus.CANCELLED},
        {"status": SubscriptionStatus.TRIAL},
        {"status": SubscriptionStatus.PENDING},
    ])
    def test_non_billable_subscriptions_are_rejected(self, service, make_subscription, overrides):
        subscription = make_subscription(**overrides)

        with pytest.raises(InvalidStateError):
            service.renew(subscription.id)


class TestChangePlan:

    @pytest.mark.asyncio
    async def test_upgrade_keeps_period_and_invoices_difference(self, service, make_subscription, db_session):
        subscription = make_subscription()

        result = await service.change_plan(subscription.id, "plan_pro")
        updated = result.subscription

        assert updated.plan_id == "plan_pro"
        assert updated.plan_name == "Pro"
        assert updated.amount == Decimal("50.00")
        assert updated.current_period_start == datetime(2025, 1, 1)
        assert updated.current_period_end == datetime(2025, 1, 31)

        assert event_types(result) == ["subscription.plan.changed", "invoice.created"]
        changed, invoice = result.events
        assert changed.data["previousPlanId"] == "plan_basic"
        assert changed.data["changeType"] == "upgrade"
        assert changed.data["proration"]["netAmount"] == 10.67
        assert invoice.data["amount"] == Decimal("10.67")
        assert invoice.data["invoiceType"] == "proration_charge"

        last = updated.meta["lastProration"]
        assert last["changeType"] == "upgrade"
        assert last["oldAmount"] == 30.0
        assert last["newAmount"] == 50.0
        assert last["creditAmount"] == 16.0
        assert last["netAmount"] == 10.67
        assert "Total due today: $10.67" in last["description"]

        history = db_session.query(SubscriptionHistory).filter_by(subscription_id=subscription.id).one()
        assert history.action == "plan_changed"
        assert history.previous_plan_id == "plan_basic"
        assert history.new_plan_id == "plan_pro"
        assert sorted(outbox_types(db_session)) == ["invoice.created", "subscription.plan.changed"]

    @pytest.mark.asyncio
    async def test_downgrade_applies_credit(self, service, make_subscription):
        subscription = make_subscription(plan_id="plan_pro", plan_name="Pro", amount=Decimal("50.00"))

        result = await service.change_plan(subscription.id, "plan_basic")

        assert event_types(result) == ["subscription.plan.changed", "billing.credit.applied"]
        credit = result.events[1]
        assert credit.data["amount"] == Decimal("10.67")
        assert credit.data["metadata"]["changeType"] == "downgrade"
        assert result.subscription.meta["lastProration"]["netAmount"] == -10.67

    @pytest.mark.asyncio
    async def test_small_difference_emits_no_billing_event(self, service, make_subscription):
        subscription = make_subscription(amount=Decimal("29.50"), plan_id="plan_cheap")

        result = await service.change_plan(subscription.id, "plan_basic")

        assert event_types(result) == ["subscription.plan.changed"]
        assert result.subscription.meta["lastProration"]["netAmount"] == 0.27

    @pytest.mark.asyncio
    async def test_immediate_change_starts_new_period(self, service, make_subscription, now):
        subscription = make_subscription(meta={"promotionCode": "WELCOME10"})

        result = await service.change_plan(subscription.id, "plan_pro", immediate=True)
        updated = result.subscription

        assert updated.current_period_start == now
        assert updated.current_period_end == datetime(2025, 2, 15, 12, 0, 0)
        assert result.events[1].data["amount"] == Decimal("34.00")
        assert updated.meta["promotionCode"] == "WELCOME10"
        assert updated.meta["lastProration"]["netAmount"] == 34.0

    @pytest.mark.asyncio
    async def test_only_active_subscriptions_change_plan(self, service, make_subscription, catalogue):
        subscription = make_subscription(status=SubscriptionStatus.PAST_DUE)

        with pytest.raises(InvalidStateError):
            await service.change_plan(subscription.id, "plan_pro")

        catalogue.get_plan_by_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_plan_leaves_subscription_untouched(self, service, make_subscription, db_session):
        subscription = make_subscription()

        with pytest.raises(NotFoundError):
            await service.change_plan(subscription.id, "plan_missing")

        db_session.refresh(subscription)
        assert subscription.plan_id == "plan_basic"
        assert db_session.query(OutboxEvent).count() == 0


class TestStatusChanges:

    def test_update_status(self, service, make_subscription, db_session):
        subscription = make_subscription()

        result = service.update_status(subscription.id, SubscriptionStatus.PAST_DUE, "Payment failed: card_declined")

        assert result.subscription.status == SubscriptionStatus.PAST_DUE
        assert event_types(result) == ["subscription.updated"]
        assert result.events[0].data["previousStatus"] == SubscriptionStatus.ACTIVE
        assert result.events[0].data["newStatus"] == SubscriptionStatus.PAST_DUE

        history = db_session.query(SubscriptionHistory).filter_by(subscription_id=subscription.id).one()
        assert history.details == "Payment failed: card_declined"
        assert history.previous_status == "active"
        assert history.new_status == "past_due"

    def test_update_status_accepts_plain_strings(self, service, make_subscription):
        subscription = make_subscription()

        assert service.update_status(subscription.id, "expired").subscription.status == SubscriptionStatus.EXPIRED

    def test_convert_trial_to_active(self, service, make_subscription, db_session):
        subscription = make_subscription(status=SubscriptionStatus.TRIAL, trial_end=datetime(2025, 1, 14))

        result = service.convert_trial_to_active(subscription.id)

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert event_types(result) == ["subscription.trial.ended"]
        assert result.events[0].data["convertedToActive"] is True
        assert history_actions(db_session, subscription.id) == ["trial_ended"]

    def test_convert_requires_trial(self, service, make_subscription):
        subscription = make_subscription()

        with pytest.raises(InvalidStateError):
            service.convert_trial_to_active(subscription.id)


class TestSweeps:

    def test_trial_expiry_converts_ended_trials(self, service, make_subscription, now):
        ended = make_subscription(status=SubscriptionStatus.TRIAL, trial_end=now - timedelta(hours=1))
        make_subscription(status=SubscriptionStatus.TRIAL, trial_end=now + timedelta(days=3), customer_id="cust_2")

        sweep = service.process_trial_expiry(now)

        assert sweep.processed == 1
        assert sweep.succeeded == 1
        assert sweep.failed == 0
        assert [event.data["subscriptionId"] for event in sweep.events] == [ended.id]
        assert service.get(ended.id).status == SubscriptionStatus.ACTIVE

    def test_renewal_sweep_uses_look_ahead_window(self, service, make_subscription, now):
        due = make_subscription(current_period_end=now + timedelta(days=2))
        make_subscription(current_period_end=now + timedelta(days=10), customer_id="cust_2")
        make_subscription(current_period_end=now + timedelta(days=1), cancel_at_period_end=True, customer_id="cust_3")
        make_subscription(current_period_end=now + timedelta(days=1), status=SubscriptionStatus.PAST_DUE,
                          customer_id="cust_4")

        assert [s.id for s in service.find_subscriptions_to_renew(now)] == [due.id]

        sweep = service.process_renewals(now)

        assert sweep.processed == 1
        assert sweep.succeeded == 1
        assert [event.event_type for event in sweep.events] == ["subscription.renewed"]

    def test_sweep_counts_failures_and_continues(self, service, make_subscription, now):
        make_subscription(current_period_end=now + timedelta(days=1))
        make_subscription(current_period_end=now + timedelta(days=2), customer_id="cust_2")

        with patch.object(service, "renew", side_effect=InvalidStateError("boom")):
            sweep = service.process_renewals(now)

        assert sweep.processed == 2
        assert sweep.failed == 2
        assert sweep.succeeded == 0
        assert sweep.events == []


class TestQueries:

    def test_stats(self, service, make_subscription):
        make_subscription(amount=Decimal("30.00"))
        make_subscription(amount=Decimal("50.00"), customer_id="cust_2")
        make_subscription(amount=Decimal("20.00"), status=SubscriptionStatus.CANCELLED, customer_id="cust_3")
        make_subscription(amount=Decimal("10.00"), status=SubscriptionStatus.EXPIRED, customer_id="cust_4")

        stats = service.get_stats()

        assert stats.active_count == 2
        assert stats.cancelled_count == 1
        assert stats.expired_count == 1
        assert stats.monthly_revenue == 80.0
        assert stats.total_revenue == 110.0
        assert stats.avg_subscription_value == 40.0

    def test_stats_when_empty(self, service):
        stats = service.get_stats()

        assert stats.active_count == 0
        assert stats.avg_subscription_value == 0.0

    def test_history_of_unknown_subscription(self, service):
        with pytest.raises(NotFoundError):
            service.get_history("missing")

    def test_history_records_each_mutation(self, service, make_subscription):
        subscription = make_subscription()

        service.renew(subscription.id)
        service.update_status(subscription.id, SubscriptionStatus.PAST_DUE)
        service.cancel(subscription.id)

        assert sorted(row.action for row in service.get_history(subscription.id)) == [
            "cancelled", "renewed", "status_changed"
        ]

    def test_list_by_customer(self, service, make_subscription):
        make_subscription(status=SubscriptionStatus.CANCELLED)
        make_subscription()
        make_subscription(customer_id="cust_2")

        assert len(service.list_by_customer("cust_1")) == 2
        assert len(service.list_all()) == 3
