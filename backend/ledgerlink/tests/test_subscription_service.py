"""
Local subscription creation and customer linking tests.

CRITICAL: These tests verify:
1. Local creation and the subscription webhook converge on one row in either order
2. A linked customer lets webhooks without user metadata find their user
3. One customer never maps to two users
"""

import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from helpers import TEST_WEBHOOK_SECRET, USER_ID, make_event, sign_payload, ts
from ledgerlink.billing.provider_client import StripeSubscriptionClient
from ledgerlink.billing.reconciler import WebhookReconciler, WebhookResultStatus
from ledgerlink.billing.state_machine import apply_subscription_snapshot
from ledgerlink.billing.subscriptions import SubscriptionService
from ledgerlink.models.subscription import BillingCustomer, Subscription, SubscriptionStatus
from ledgerlink.platform.errors import ConflictError, RetryableStorageError

OTHER_USER_ID = "user-test-002"
PERIOD_END = datetime.now(timezone.utc) + timedelta(days=20)


def subscription_obj(sub_id="sub_1", status="active", customer="cus_1", user_id=USER_ID):
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "current_period_start": ts(PERIOD_END - timedelta(days=30)),
        "current_period_end": ts(PERIOD_END),
        "cancel_at_period_end": False,
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {"data": [{"price": {"id": "price_basic"}}]},
    }


@pytest.fixture
def service(db_session):
    return SubscriptionService(db_session, client=AsyncMock(spec=StripeSubscriptionClient))


@pytest.fixture
def reconciler(db_session):
    return WebhookReconciler(
        db_session,
        client=AsyncMock(spec=StripeSubscriptionClient),
        webhook_secret=TEST_WEBHOOK_SECRET,
    )


async def deliver(reconciler, event_type, obj, event_id="evt_1"):
    payload = make_event(event_type, obj, event_id=event_id, created=int(time.time()) - 60)
    return await reconciler.handle(payload, sign_payload(payload))


# ============================================================================
# TEST SUITE: CUSTOMER LINK
# ============================================================================

class TestLinkCustomer:

    def test_creates_mapping(self, service, db_session):
        mapping = service.link_customer(USER_ID, "cus_1")

        assert mapping.user_id == USER_ID
        assert db_session.query(BillingCustomer).count() == 1

    def test_repeat_link_is_idempotent(self, service, db_session):
        first = service.link_customer(USER_ID, "cus_1")
        second = service.link_customer(USER_ID, "cus_1")

        assert second.id == first.id
        assert db_session.query(BillingCustomer).count() == 1

    def test_user_already_linked_to_other_customer(self, service):
        service.link_customer(USER_ID, "cus_1")

        with pytest.raises(ConflictError) as exc_info:
            service.link_customer(USER_ID, "cus_2")
        assert exc_info.value.code == "BILLING_CUSTOMER_CONFLICT"

    def test_customer_already_linked_to_other_user(self, service):
        service.link_customer(USER_ID, "cus_1")

        with pytest.raises(ConflictError):
            service.link_customer(OTHER_USER_ID, "cus_1")

    def test_requires_both_ids(self, service):
        with pytest.raises(ValueError):
            service.link_customer(USER_ID, "")


# ============================================================================
# TEST SUITE: LOCAL CREATION
# ============================================================================

class TestRecordLocalSubscription:

    def test_creates_row_and_links_customer(self, service, db_session):
        subscription = service.record_local_subscription(USER_ID, subscription_obj(status="incomplete"))

        assert subscription.status == SubscriptionStatus.INCOMPLETE.value
        assert subscription.external_customer_id == "cus_1"
        assert subscription.last_event_created_at is None
        assert db_session.query(BillingCustomer).one().user_id == USER_ID

    def test_repeat_call_returns_same_row(self, service, db_session):
        first = service.record_local_subscription(USER_ID, subscription_obj())
        second = service.record_local_subscription(USER_ID, subscription_obj())

        assert second.id == first.id
        assert db_session.query(Subscription).count() == 1

    @pytest.mark.asyncio
    async def test_local_then_webhook(self, service, reconciler, db_session):
        local = service.record_local_subscription(USER_ID, subscription_obj(status="incomplete"))

        result = await deliver(reconciler, "customer.subscription.created", subscription_obj())

        assert result.status == WebhookResultStatus.PROCESSED
        assert result.subscription_id == local.id
        row = db_session.query(Subscription).one()
        assert row.status == SubscriptionStatus.ACTIVE.value
        assert row.last_event_created_at is not None

    @pytest.mark.asyncio
    async def test_webhook_then_local(self, service, reconciler, db_session):
        await deliver(reconciler, "customer.subscription.created", subscription_obj())

        subscription = service.record_local_subscription(USER_ID, subscription_obj(status="incomplete"))

        assert db_session.query(Subscription).count() == 1
        # The webhook state is newer than the creation response
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_linked_customer_resolves_webhook_without_metadata(self, service, reconciler, db_session):
        service.record_local_subscription(USER_ID, subscription_obj(sub_id="sub_first", customer="cus_9"))

        result = await deliver(
            reconciler, "customer.subscription.created",
            subscription_obj(sub_id="sub_second", customer="cus_9", user_id=None),
        )

        assert result.status == WebhookResultStatus.PROCESSED
        row = db_session.query(Subscription).filter_by(external_subscription_id="sub_second").one()
        assert row.user_id == USER_ID

    def test_subscription_of_another_user(self, service):
        service.record_local_subscription(USER_ID, subscription_obj(customer=None))

        with pytest.raises(ConflictError) as exc_info:
            service.record_local_subscription(OTHER_USER_ID, subscription_obj(customer=None))
        assert exc_info.value.code == "SUBSCRIPTION_CONFLICT"

    def test_rejects_object_without_id(self, service):
        obj = subscription_obj()
        del obj["id"]
        with pytest.raises(ValueError):
            service.record_local_subscription(USER_ID, obj)

    def test_concurrent_insert_returns_winner(self, service, engine, db_session):
        def webhook_commits_first(subscription, obj, event_created):
            other = sessionmaker(bind=engine)()
            other.add(Subscription(
                user_id=USER_ID,
                external_subscription_id=obj["id"],
                status=SubscriptionStatus.ACTIVE.value,
                failed_payment_attempts=0,
            ))
            other.commit()
            other.close()
            apply_subscription_snapshot(subscription, obj, event_created)

        with patch(
            "ledgerlink.billing.subscriptions.apply_subscription_snapshot",
            side_effect=webhook_commits_first,
        ):
            subscription = service.record_local_subscription(
                USER_ID, subscription_obj(status="incomplete", customer=None),
            )

        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert db_session.query(Subscription).count() == 1

    def test_commit_failure_is_retryable(self, service, db_session):
        with patch.object(db_session, "commit", side_effect=OperationalError("stmt", {}, Exception("database is locked"))):
            with pytest.raises(RetryableStorageError):
                service.record_local_subscription(USER_ID, subscription_obj(customer=None))

        assert db_session.query(Subscription).count() == 0
