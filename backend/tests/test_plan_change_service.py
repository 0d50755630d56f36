"""Plan change service tests (checkout, upgrades, scheduled downgrades, self-service)"""
import pytest
import stripe

from app.core.errors import (
    InvalidPrice, MissingCustomer, NoActiveSubscription, NoScheduledChange,
    PlanChangeInProgress, ProcessorRejected, ProcessorUnavailable, SamePlan,
    SubscriptionCanceling, UserNotFound
)
from app.models.subscription import Subscription
from app.services.plan_change_service import (
    cancel_scheduled_downgrade, cancel_subscription_at_period_end, create_portal_session,
    get_subscription_view, list_invoices, list_public_plans, reactivate_subscription,
    request_plan_change
)
from stripe_payloads import PERIOD_END, ts

pytestmark = pytest.mark.usefixtures("mock_redis")


def remote_subscription(price_id: str, status: str = "active") -> dict:
    return {
        "id": "sub_123",
        "status": status,
        "items": {"data": [{"id": "si_123", "price": {"id": price_id}}]},
    }


def assert_no_processor_calls(stripe_client):
    stripe_client.subscriptions.retrieve.assert_not_called()
    stripe_client.subscriptions.update.assert_not_called()
    stripe_client.checkout.sessions.create.assert_not_called()


@pytest.mark.critical
class TestUpgrade:
    """Upgrades and interval changes are applied immediately with proration"""

    def test_upgrade_applies_new_price(self, db_session, catalog, test_user, make_subscription,
                                       processor, stripe_client):
        """Basic -> Pro swaps the item price at the processor, then locally"""
        subscription = make_subscription(test_user, catalog["price_basic_month"])
        stripe_client.subscriptions.retrieve.return_value = remote_subscription("price_basic_month")
        stripe_client.subscriptions.update.return_value = {"id": "sub_123", "status": "active"}

        outcome = request_plan_change(db_session, test_user.id, "price_pro_month", processor)

        assert outcome.type == "upgrade"
        assert outcome.subscription.plan_id == "PLAN_PRO"
        stripe_client.subscriptions.update.assert_called_once_with(
            "sub_123",
            params={
                "items": [{"id": "si_123", "price": "price_pro_month"}],
                "proration_behavior": "create_prorations",
            }
        )
        db_session.refresh(subscription)
        assert subscription.price_id == catalog["price_pro_month"].id
        assert subscription.scheduled_price_id is None

    def test_upgrade_discards_pending_downgrade(self, db_session, catalog, test_user, make_subscription,
                                                processor, stripe_client):
        """An upgrade supersedes a downgrade scheduled earlier in the period"""
        subscription = make_subscription(
            test_user, catalog["price_pro_month"],
            scheduled_price_id=catalog["price_basic_month"].id,
            scheduled_change_at=PERIOD_END,
        )
        stripe_client.subscriptions.retrieve.return_value = remote_subscription("price_pro_month")
        stripe_client.subscriptions.update.return_value = {"id": "sub_123", "status": "active"}

        request_plan_change(db_session, test_user.id, "price_enterprise_month", processor)

        db_session.refresh(subscription)
        assert subscription.price_id == catalog["price_enterprise_month"].id
        assert subscription.scheduled_price_id is None
        assert subscription.scheduled_change_at is None

    def test_interval_change_same_level(self, db_session, catalog, test_user, make_subscription,
                                        processor, stripe_client):
        """Monthly -> annual on the same plan is applied like an upgrade"""
        subscription = make_subscription(test_user, catalog["price_basic_month"])
        stripe_client.subscriptions.retrieve.return_value = remote_subscription("price_basic_month")
        stripe_client.subscriptions.update.return_value = {"id": "sub_123", "status": "active"}

        outcome = request_plan_change(db_session, test_user.id, "price_basic_year", processor)

        assert outcome.type == "interval_change"
        assert outcome.subscription.interval == "year"
        db_session.refresh(subscription)
        assert subscription.price_id == catalog["price_basic_year"].id

    def test_trialing_subscription_can_upgrade(self, db_session, catalog, test_user, make_subscription,
                                               processor, stripe_client):
        make_subscription(test_user, catalog["price_basic_month"], status="trialing")
        stripe_client.subscriptions.retrieve.return_value = remote_subscription("price_basic_month", "trialing")
        stripe_client.subscriptions.update.return_value = {"id": "sub_123", "status": "trialing"}

        outcome = request_plan_change(db_session, test_user.id, "price_pro_month", processor)

        assert outcome.type == "upgrade"
        assert outcome.subscription.status == "trialing"


@pytest.mark.critical
class TestProcessorFailure:
    """A failed processor call leaves local state untouched"""

    def test_unavailable_writes_nothing(self, db_session, catalog, test_user, make_subscription,
                                        processor, stripe_client):
        subscription = make_subscription(test_user, catalog["price_basic_month"])
        version = subscription.version
        stripe_client.subscriptions.retrieve.return_value = remote_subscription("price_basic_month")
        stripe_client.subscriptions.update.side_effect = stripe.APIConnectionError("Request timed out")

        with pytest.raises(ProcessorUnavailable) as exc_info:
            request_plan_change(db_session, test_user.id, "price_pro_month", processor)

        assert exc_info.value.retryable is True
        db_session.refresh(subscription)
        assert subscription.price_id == catalog["price_basic_month"].id
        assert subscription.version == version

    def test_rejected_writes_nothing(self, db_session, catalog, test_user, make_subscription,
                                     processor, stripe_client):
        """A 4xx from the processor (e.g. unknown price) maps to ProcessorRejected"""
        subscription = make_subscription(test_user, catalog["price_basic_month"])
        stripe_client.subscriptions.retrieve.return_value = remote_subscription("price_basic_month")
        stripe_client.subscriptions.update.side_effect = stripe.InvalidRequestError(
            "No such price: 'price_pro_month'", "items[0][price]"
        )

        with pytest.raises(ProcessorRejected):
            request_plan_change(db_session, test_user.id, "price_pro_month", processor)

        db_session.refresh(subscription)
        assert subscription.price_id == catalog["price_basic_month"].id

    def test_lock_released_after_failure(self, db_session, catalog, test_user, make_subscription,
                                         processor, stripe_client, mock_redis):
        make_subscription(test_user, catalog["price_basic_month"])
        stripe_client.subscriptions.retrieve.return_value = remote_subscription("price_basic_month")
        stripe_client.subscriptions.update.side_effect = stripe.APIConnectionError("Connection reset")

        with pytest.raises(ProcessorUnavailable):
            request_plan_change(db_session, test_user.id, "price_pro_month", processor)

        assert mock_redis.get(f"plan_change:{test_user.id}") is None


@pytest.mark.critical
class TestDowngrade:
    """Downgrades are recorded locally and never reach the processor immediately"""

    def test_downgrade_is_scheduled(self, db_session, catalog, test_user, make_subscription,
                                    processor, stripe_client):
        subscription = make_subscription(test_user, catalog["price_pro_month"])

        outcome = request_plan_change(db_session, test_user.id, "price_basic_month", processor)

        assert outcome.type == "downgrade_scheduled"
        assert outcome.effective_date.replace(tzinfo=None) == PERIOD_END.replace(tzinfo=None)
        assert outcome.subscription.plan_id == "PLAN_PRO"
        assert outcome.subscription.scheduled_plan_id == "PLAN_BASIC"
        assert_no_processor_calls(stripe_client)

        db_session.refresh(subscription)
        assert subscription.price_id == catalog["price_pro_month"].id
        assert subscription.scheduled_price_id == catalog["price_basic_month"].id
        assert subscription.scheduled_change_at.replace(tzinfo=None) == PERIOD_END.replace(tzinfo=None)

    def test_second_downgrade_replaces_the_first(self, db_session, catalog, test_user, make_subscription,
                                                 processor, stripe_client):
        subscription = make_subscription(test_user, catalog["price_enterprise_month"])

        request_plan_change(db_session, test_user.id, "price_pro_month", processor)
        request_plan_change(db_session, test_user.id, "price_basic_month", processor)

        db_session.refresh(subscription)
        assert subscription.scheduled_price_id == catalog["price_basic_month"].id
        assert_no_processor_calls(stripe_client)


@pytest.mark.critical
class TestRejectedChanges:
    """Requests that are refused before any processor call"""

    def test_same_price(self, db_session, catalog, test_user, make_subscription, processor, stripe_client):
        make_subscription(test_user, catalog["price_pro_month"])

        with pytest.raises(SamePlan) as exc_info:
            request_plan_change(db_session, test_user.id, "price_pro_month", processor)

        assert exc_info.value.to_dict()["error"]["current_plan"] == "Pro"
        assert_no_processor_calls(stripe_client)

    def test_canceling_subscription(self, db_session, catalog, test_user, make_subscription,
                                    processor, stripe_client):
        make_subscription(test_user, catalog["price_basic_month"], cancel_at_period_end=True)

        with pytest.raises(SubscriptionCanceling):
            request_plan_change(db_session, test_user.id, "price_pro_month", processor)

        assert_no_processor_calls(stripe_client)

    @pytest.mark.parametrize("price_ref", ["price_pro_retired", "price_legacy_month", "price_unknown", ""])
    def test_invalid_price(self, db_session, catalog, test_user, processor, stripe_client, price_ref):
        """Inactive prices, prices of inactive plans and unknown refs are refused"""
        with pytest.raises(InvalidPrice):
            request_plan_change(db_session, test_user.id, price_ref, processor)

        stripe_client.customers.list.assert_not_called()
        assert_no_processor_calls(stripe_client)

    def test_unknown_user(self, db_session, catalog, processor):
        with pytest.raises(UserNotFound):
            request_plan_change(db_session, 9999, "price_pro_month", processor)

    def test_lock_contention(self, db_session, catalog, test_user, make_subscription,
                             processor, stripe_client, mock_redis):
        """A second request while the per-user lock is held is refused as retryable"""
        subscription = make_subscription(test_user, catalog["price_basic_month"])
        mock_redis.set(f"plan_change:{test_user.id}", "held-by-another-request")

        with pytest.raises(PlanChangeInProgress) as exc_info:
            request_plan_change(db_session, test_user.id, "price_pro_month", processor)

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 409
        assert_no_processor_calls(stripe_client)
        db_session.refresh(subscription)
        assert subscription.price_id == catalog["price_basic_month"].id

    def test_unlinked_subscription_cannot_upgrade(self, db_session, catalog, test_user, make_subscription,
                                                  processor, stripe_client):
        make_subscription(test_user, catalog["price_basic_month"], stripe_subscription_id=None)

        with pytest.raises(NoActiveSubscription):
            request_plan_change(db_session, test_user.id, "price_pro_month", processor)

        assert_no_processor_calls(stripe_client)


@pytest.mark.critical
class TestCheckout:
    """Users without a subscription go through hosted checkout"""

    def test_checkout_creates_customer_and_session(self, db_session, catalog, test_user,
                                                   processor, stripe_client):
        stripe_client.customers.list.return_value = {"data": []}
        stripe_client.customers.create.return_value = {"id": "cus_new"}
        stripe_client.checkout.sessions.create.return_value = {
            "id": "cs_123", "url": "https://checkout.stripe.com/c/pay/cs_123"
        }

        outcome = request_plan_change(
            db_session, test_user.id, "price_pro_month", processor,
            success_url="https://app.example.com/ok", cancel_url="https://app.example.com/cancel"
        )

        assert outcome.type == "checkout"
        assert outcome.session_id == "cs_123"
        assert outcome.url == "https://checkout.stripe.com/c/pay/cs_123"

        db_session.refresh(test_user)
        assert test_user.stripe_customer_id == "cus_new"

        params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
        assert params["mode"] == "subscription"
        assert params["customer"] == "cus_new"
        assert params["line_items"] == [{"price": "price_pro_month", "quantity": 1}]
        assert params["client_reference_id"] == "user_ext_123"
        assert params["success_url"] == "https://app.example.com/ok"
        # No local subscription until the processor confirms it
        assert db_session.query(Subscription).count() == 0

    def test_checkout_reuses_known_customer(self, db_session, catalog, test_user, processor, stripe_client):
        test_user.stripe_customer_id = "cus_existing"
        db_session.commit()
        stripe_client.checkout.sessions.create.return_value = {"id": "cs_456", "url": "https://checkout.stripe.com/x"}

        request_plan_change(db_session, test_user.id, "price_basic_month", processor)

        stripe_client.customers.list.assert_not_called()
        stripe_client.customers.create.assert_not_called()
        params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
        assert params["customer"] == "cus_existing"

    def test_canceled_subscription_goes_to_checkout(self, db_session, catalog, test_user, make_subscription,
                                                    processor, stripe_client):
        make_subscription(test_user, catalog["price_basic_month"], status="canceled")
        test_user.stripe_customer_id = "cus_123"
        db_session.commit()
        stripe_client.checkout.sessions.create.return_value = {"id": "cs_789", "url": "https://checkout.stripe.com/y"}

        outcome = request_plan_change(db_session, test_user.id, "price_pro_month", processor)

        assert outcome.type == "checkout"
        stripe_client.subscriptions.update.assert_not_called()

    def test_checkout_failure_is_retryable(self, db_session, catalog, test_user, processor, stripe_client):
        test_user.stripe_customer_id = "cus_existing"
        db_session.commit()
        stripe_client.checkout.sessions.create.side_effect = stripe.APIConnectionError("timeout")

        with pytest.raises(ProcessorUnavailable):
            request_plan_change(db_session, test_user.id, "price_basic_month", processor)

    def test_subscription_created_during_customer_setup_aborts_checkout(
        self, db_session, catalog, test_user, make_subscription, processor, stripe_client
    ):
        """A notification can create the subscription while the customer is being resolved"""
        stripe_client.customers.list.return_value = {"data": []}

        def create_customer(params):
            make_subscription(test_user, catalog["price_basic_month"], stripe_customer_id="cus_new")
            return {"id": "cus_new"}

        stripe_client.customers.create.side_effect = create_customer

        with pytest.raises(PlanChangeInProgress):
            request_plan_change(db_session, test_user.id, "price_pro_month", processor)

        stripe_client.checkout.sessions.create.assert_not_called()
        db_session.refresh(test_user)
        assert test_user.stripe_customer_id == "cus_new"


@pytest.mark.high
class TestSelfService:
    """Cancel, reactivate, scheduled-change removal, portal and invoices"""

    def test_view_without_subscription_is_free_plan(self, db_session, catalog, test_user):
        view = get_subscription_view(db_session, test_user.id)
        assert view.status == "free"
        assert view.plan_id == "PLAN_FREE"
        assert view.id is None

    def test_view_ignores_canceled(self, db_session, catalog, test_user, make_subscription):
        make_subscription(test_user, catalog["price_pro_month"], status="canceled")
        assert get_subscription_view(db_session, test_user.id).plan_id == "PLAN_FREE"

    def test_view_past_due_keeps_entitlement(self, db_session, catalog, test_user, make_subscription):
        make_subscription(test_user, catalog["price_pro_month"], status="past_due")
        view = get_subscription_view(db_session, test_user.id)
        assert view.plan_id == "PLAN_PRO"
        assert view.status == "past_due"

    def test_cancel_at_period_end(self, db_session, catalog, test_user, make_subscription,
                                  processor, stripe_client):
        subscription = make_subscription(test_user, catalog["price_basic_month"])
        stripe_client.subscriptions.update.return_value = {
            "id": "sub_123", "cancel_at_period_end": True, "cancel_at": ts(PERIOD_END)
        }

        view = cancel_subscription_at_period_end(db_session, test_user.id, processor)

        assert view.cancel_at_period_end is True
        assert view.status == "active"
        stripe_client.subscriptions.update.assert_called_once_with(
            "sub_123", params={"cancel_at_period_end": True}
        )
        db_session.refresh(subscription)
        assert subscription.cancel_at is not None

    def test_cancel_twice_is_idempotent(self, db_session, catalog, test_user, make_subscription,
                                        processor, stripe_client):
        make_subscription(test_user, catalog["price_basic_month"], cancel_at_period_end=True)

        view = cancel_subscription_at_period_end(db_session, test_user.id, processor)

        assert view.cancel_at_period_end is True
        stripe_client.subscriptions.update.assert_not_called()

    def test_cancel_without_subscription(self, db_session, catalog, test_user, processor):
        with pytest.raises(NoActiveSubscription):
            cancel_subscription_at_period_end(db_session, test_user.id, processor)

    def test_reactivate(self, db_session, catalog, test_user, make_subscription, processor, stripe_client):
        subscription = make_subscription(
            test_user, catalog["price_basic_month"], cancel_at_period_end=True, cancel_at=PERIOD_END
        )
        stripe_client.subscriptions.update.return_value = {"id": "sub_123", "cancel_at_period_end": False}

        view = reactivate_subscription(db_session, test_user.id, processor)

        assert view.cancel_at_period_end is False
        stripe_client.subscriptions.update.assert_called_once_with(
            "sub_123", params={"cancel_at_period_end": False}
        )
        db_session.refresh(subscription)
        assert subscription.cancel_at is None

    def test_cancel_scheduled_downgrade(self, db_session, catalog, test_user, make_subscription, stripe_client):
        subscription = make_subscription(
            test_user, catalog["price_pro_month"],
            scheduled_price_id=catalog["price_basic_month"].id, scheduled_change_at=PERIOD_END
        )

        view = cancel_scheduled_downgrade(db_session, test_user.id)

        assert view.scheduled_plan_id is None
        db_session.refresh(subscription)
        assert subscription.scheduled_price_id is None
        assert subscription.scheduled_change_at is None
        stripe_client.subscriptions.update.assert_not_called()

    def test_cancel_scheduled_downgrade_when_none(self, db_session, catalog, test_user, make_subscription):
        make_subscription(test_user, catalog["price_pro_month"])
        with pytest.raises(NoScheduledChange):
            cancel_scheduled_downgrade(db_session, test_user.id)

    def test_portal_requires_customer(self, db_session, test_user, processor):
        with pytest.raises(MissingCustomer):
            create_portal_session(db_session, test_user.id, processor)

    def test_portal_session(self, db_session, test_user, processor, stripe_client):
        test_user.stripe_customer_id = "cus_123"
        db_session.commit()
        stripe_client.billing_portal.sessions.create.return_value = {"url": "https://billing.stripe.com/p/session"}

        url = create_portal_session(db_session, test_user.id, processor, return_url="https://app.example.com/billing")

        assert url == "https://billing.stripe.com/p/session"
        stripe_client.billing_portal.sessions.create.assert_called_once_with(
            params={"customer": "cus_123", "return_url": "https://app.example.com/billing"}
        )

    def test_invoices_without_customer(self, db_session, test_user, processor, stripe_client):
        assert list_invoices(db_session, test_user.id, processor) == {"invoices": [], "has_more": False}
        stripe_client.invoices.list.assert_not_called()


@pytest.mark.medium
class TestPublicPlans:
    def test_lists_active_public_plans_with_active_prices(self, db_session, catalog):
        plans = list_public_plans(db_session)

        assert [plan.id for plan in plans] == ["PLAN_FREE", "PLAN_BASIC", "PLAN_PRO", "PLAN_ENTERPRISE"]
        pro = next(plan for plan in plans if plan.id == "PLAN_PRO")
        assert sorted(price.id for price in pro.prices) == ["price_pro_month", "price_pro_year"]
        assert pro.popular is True
        assert pro.features
