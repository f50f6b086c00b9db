from datetime import timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import stripe

from entitlements.billing.provider import StripeBillingProvider
from entitlements.billing.state_machine import EntitlementManager
from entitlements.errors import ExternalProviderError, InvalidWebhookSignature
from entitlements.extensions import db
from entitlements.models import GiftedSubscription, WebhookEvent
from entitlements.utils.time import utcnow
from entitlements.webhooks import ledger
from entitlements.webhooks.dispatcher import process_stripe_event

pytestmark = pytest.mark.webhook


def _period_end(days=30):
    end = utcnow().replace(microsecond=0) + timedelta(days=days)
    return end, int(end.replace(tzinfo=timezone.utc).timestamp())


def _subscription_event(event_id, customer, price="price_plus_month", status="active", days=30,
                        event_type="customer.subscription.updated"):
    end, timestamp = _period_end(days)
    return end, {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": "sub_live_1",
                "customer": customer,
                "status": status,
                "current_period_end": timestamp,
                "items": {"data": [{"price": {"id": price}}]},
                "metadata": {},
            }
        },
    }


@pytest.fixture()
def live_manager(app, provider):
    return EntitlementManager(provider)


# ---- ledger ----

def test_ledger_records_once(app):
    assert not ledger.already_processed("stripe", "evt_1")

    assert ledger.record_processed("stripe", "evt_1", "invoice.paid", {"id": "in_1"}, "u1") is True
    assert ledger.already_processed("stripe", "evt_1")
    assert ledger.record_processed("stripe", "evt_1", "invoice.paid", {"id": "in_1"}) is False

    assert WebhookEvent.query.count() == 1
    assert not ledger.already_processed("paypal", "evt_1")


def test_ledger_queries_and_purge(app):
    ledger.record_processed("stripe", "evt_old", "a", user_id="u1")
    ledger.record_processed("stripe", "evt_new", "b", user_id="u1")
    ledger.record_processed("apple", "evt_x", "c")
    old = WebhookEvent.query.filter_by(event_id="evt_old").one()
    old.processed_at = utcnow() - timedelta(days=45)
    db.session.commit()

    assert [e.event_id for e in ledger.events_for_user("u1")] == ["evt_new", "evt_old"]
    assert len(ledger.recent_events("stripe")) == 2
    assert ledger.statistics() == {"total": 3, "byProvider": {"stripe": 2, "apple": 1}}

    assert ledger.purge_older_than(30) == 1
    assert not ledger.already_processed("stripe", "evt_old")


# ---- dispatcher ----

def test_subscription_update_grants_tier(live_manager, make_user):
    user = make_user(external_customer_id="cus_123")
    end, event = _subscription_event("evt_sub_1", "cus_123")

    result = process_stripe_event(event, manager=live_manager)

    assert result == {"received": True, "duplicate": False}
    assert user.tier_plus
    assert user.subscription_end_date == end
    assert user.subscription_status == "PLUS"
    assert WebhookEvent.query.filter_by(event_id="evt_sub_1").one().related_user_id == user.id


def test_replayed_event_applies_once(live_manager, make_user):
    user = make_user(external_customer_id="cus_123")
    _, event = _subscription_event("evt_sub_2", "cus_123", price="price_mplus_month")

    process_stripe_event(event, manager=live_manager)
    version = user.version
    replay = process_stripe_event(event, manager=live_manager)

    assert replay == {"received": True, "duplicate": True}
    assert user.version == version
    assert user.tier_mini_plus
    assert WebhookEvent.query.count() == 1


def test_handler_failure_leaves_event_unrecorded(app, make_user):
    make_user(external_customer_id="cus_123")
    failing = MagicMock()
    failing.grant_paid_subscription.side_effect = ExternalProviderError("boom")
    _, event = _subscription_event("evt_fail", "cus_123")

    with pytest.raises(ExternalProviderError):
        process_stripe_event(event, manager=failing)

    assert not ledger.already_processed("stripe", "evt_fail")


def test_subscription_deleted_cancels(live_manager, make_user):
    user = make_user(external_customer_id="cus_123", tier_plus=True,
                     subscription_end_date=utcnow() + timedelta(days=3))
    _, event = _subscription_event("evt_del", "cus_123", status="canceled",
                                   event_type="customer.subscription.deleted")

    process_stripe_event(event, manager=live_manager)

    assert not user.tier_plus
    assert user.subscription_status == "FREE"


def test_canceled_status_update_cancels(live_manager, make_user):
    user = make_user(external_customer_id="cus_123", tier_mini_plus=True,
                     subscription_end_date=utcnow() + timedelta(days=3))
    _, event = _subscription_event("evt_cxl", "cus_123", status="unpaid")

    process_stripe_event(event, manager=live_manager)

    assert not user.tier_mini_plus


def test_unknown_customer_is_acknowledged(live_manager):
    _, event = _subscription_event("evt_nobody", "cus_missing")

    assert process_stripe_event(event, manager=live_manager)["duplicate"] is False
    assert ledger.already_processed("stripe", "evt_nobody")


def test_invoice_paid_refreshes_period(live_manager, provider, make_user):
    user = make_user(external_customer_id="cus_inv")
    end, timestamp = _period_end(31)
    provider.retrieve_subscription.return_value = {
        "id": "sub_inv",
        "current_period_end": timestamp,
        "items": {"data": [{"price": {"id": "price_plus_month"}}]},
        "metadata": {},
    }
    event = {
        "id": "evt_inv",
        "type": "invoice.payment_succeeded",
        "data": {"object": {"id": "in_1", "customer": "cus_inv", "subscription": "sub_inv"}},
    }

    process_stripe_event(event, manager=live_manager)

    provider.retrieve_subscription.assert_called_once_with("sub_inv")
    assert user.subscription_end_date == end


def test_gift_checkout_issues_one_token(live_manager, make_user):
    purchaser = make_user()
    session = {
        "id": "cs_gift_1",
        "mode": "payment",
        "payment_status": "paid",
        "metadata": {
            "isGift": "true",
            "userId": purchaser.id,
            "plan": "mplus",
            "subscriptionType": "year",
            "message": "enjoy",
        },
    }

    process_stripe_event(
        {"id": "evt_cs_1", "type": "checkout.session.completed", "data": {"object": session}},
        manager=live_manager,
    )
    # Stripe retries with a new event id for the same session
    process_stripe_event(
        {"id": "evt_cs_2", "type": "checkout.session.completed", "data": {"object": session}},
        manager=live_manager,
    )

    gift = GiftedSubscription.query.one()
    assert gift.tier == "mplus"
    assert gift.duration == "year"
    assert gift.purchased_by_user_id == purchaser.id
    assert gift.external_checkout_session_id == "cs_gift_1"


def test_unpaid_gift_checkout_issues_nothing(live_manager, make_user):
    session = {
        "id": "cs_gift_2",
        "mode": "payment",
        "payment_status": "unpaid",
        "metadata": {"isGift": "true", "userId": make_user().id, "plan": "plus"},
    }

    process_stripe_event(
        {"id": "evt_cs_3", "type": "checkout.session.completed", "data": {"object": session}},
        manager=live_manager,
    )

    assert GiftedSubscription.query.count() == 0


def test_customer_deleted_unlinks(live_manager, make_user):
    user = make_user(external_customer_id="cus_gone")

    process_stripe_event(
        {"id": "evt_cd", "type": "customer.deleted",
         "data": {"object": {"id": "cus_gone", "metadata": {"userId": user.id}}}},
        manager=live_manager,
    )

    assert user.external_customer_id is None


def test_unhandled_event_type_is_recorded(live_manager):
    result = process_stripe_event(
        {"id": "evt_misc", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}},
        manager=live_manager,
    )

    assert result["duplicate"] is False
    assert WebhookEvent.query.filter_by(event_id="evt_misc").one().event_type == "charge.refunded"


# ---- signature verification ----

def test_construct_event_requires_signature():
    provider = StripeBillingProvider(webhook_secret="whsec_test")

    with pytest.raises(InvalidWebhookSignature):
        provider.construct_event(b"{}", None)


def test_construct_event_wraps_bad_signature():
    provider = StripeBillingProvider(webhook_secret="whsec_test")

    with patch(
        "entitlements.billing.provider.stripe.Webhook.construct_event",
        side_effect=stripe.SignatureVerificationError("bad", "t=1,v1=x"),
    ):
        with pytest.raises(InvalidWebhookSignature):
            provider.construct_event(b"{}", "t=1,v1=x")


# ---- HTTP endpoint ----

@pytest.fixture()
def webhook_provider():
    provider = MagicMock(spec=StripeBillingProvider)
    with patch("entitlements.routes.webhooks.get_billing_provider", return_value=provider):
        yield provider


def test_webhook_endpoint_processes_event(client, webhook_provider, patched_provider, make_user):
    make_user(external_customer_id="cus_http")
    _, event = _subscription_event("evt_http", "cus_http")
    webhook_provider.construct_event.return_value = event

    first = client.post("/webhooks/stripe", data=b"{}", headers={"Stripe-Signature": "sig"})
    second = client.post("/webhooks/stripe", data=b"{}", headers={"Stripe-Signature": "sig"})

    assert first.status_code == 200
    assert first.get_json() == {"received": True, "duplicate": False}
    assert second.get_json()["duplicate"] is True


def test_webhook_endpoint_rejects_bad_signature(client, webhook_provider):
    webhook_provider.construct_event.side_effect = InvalidWebhookSignature()

    response = client.post("/webhooks/stripe", data=b"{}", headers={"Stripe-Signature": "bad"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "INVALID_WEBHOOK_SIGNATURE"


def test_webhook_endpoint_failure_is_retryable(client, webhook_provider):
    webhook_provider.construct_event.return_value = {
        "id": "evt_boom", "type": "charge.refunded", "data": {"object": {}},
    }

    with patch("entitlements.routes.webhooks.process_stripe_event", side_effect=RuntimeError("db down")):
        response = client.post("/webhooks/stripe", data=b"{}", headers={"Stripe-Signature": "sig"})

    assert response.status_code == 500
    assert not ledger.already_processed("stripe", "evt_boom")
